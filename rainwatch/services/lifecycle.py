"""Monitor state transitions.

    monitoring ──► triggered ──► reported
         └───────► matured ───┘

``reset`` is the only way back to ``monitoring``.  It is reserved for
operators retrying a failed or disputed report and only applies to
``reported`` and ``triggered`` monitors.
"""

import logging

from rainwatch.core.errors import InvalidTransitionError
from rainwatch.models.monitor import Monitor, MonitorState

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[MonitorState, frozenset[MonitorState]] = {
    MonitorState.MONITORING: frozenset({MonitorState.TRIGGERED, MonitorState.MATURED}),
    MonitorState.TRIGGERED: frozenset({MonitorState.REPORTED}),
    MonitorState.MATURED: frozenset({MonitorState.REPORTED}),
    MonitorState.REPORTED: frozenset(),
}

RESETTABLE_STATES = frozenset({MonitorState.REPORTED, MonitorState.TRIGGERED})


def can_transition(current: MonitorState, target: MonitorState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(monitor: Monitor, target: MonitorState) -> None:
    """Move ``monitor`` to ``target`` or raise ``InvalidTransitionError``."""
    current = MonitorState(monitor.state)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Monitor {monitor.id} cannot move from {current.value} to {target.value}"
        )
    monitor.state = target
    logger.info("Monitor %s: %s → %s", monitor.id, current.value, target.value)


def reset(monitor: Monitor) -> None:
    """Administrative escape hatch back to ``monitoring``."""
    previous = MonitorState(monitor.state)
    if previous not in RESETTABLE_STATES:
        raise InvalidTransitionError(
            f"Monitor {monitor.id} cannot be reset from {previous.value}"
        )
    monitor.state = MonitorState.MONITORING
    monitor.trigger_time = None
    monitor.report_tx_hash = None
    monitor.evidence_hash = None
    logger.warning("Monitor %s reset from %s to monitoring", monitor.id, previous.value)
