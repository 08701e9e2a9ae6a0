"""Authentication for the telemetry ingest gateway.

A trusted reporter signs each request body and sends three headers:

- ``X-HMAC-Signature``: hex signature (an optional ``0x`` prefix is accepted)
- ``X-Timestamp``: unix milliseconds at signing time
- ``X-Nonce``: single-use request id

Checks run in this order: rate limit, required headers, timestamp window,
signature, nonce replay.  The nonce is only recorded once the signature is
valid, so unsigned traffic cannot burn nonces.

Two signature schemes are accepted, tried in order:

- BLAKE2b-256 over ``secret || canonical(body) || timestamp || nonce``
  (the ledger's native hash)
- HMAC-SHA256 keyed by the secret over ``canonical(body) || timestamp || nonce``

Nonces are kept in memory for the replay window only; a nonce seen longer ago
than the window is accepted again.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import HTTPException, Request

from rainwatch.core.config import settings
from rainwatch.core.hashing import blake2_256_hex, canonical_json, hmac_sha256_hex

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hmac-signature"
TIMESTAMP_HEADER = "x-timestamp"
NONCE_HEADER = "x-nonce"


class IngestAuthError(Exception):
    def __init__(self, status: int, code: str, message: str, retry_after: int | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"{code}: {message}")


@dataclass
class AuthResult:
    client: str
    scheme: str
    rate_limit: int
    rate_limit_remaining: int


# ── Nonce store ───────────────────────────────────────────────────────────────


class NonceStore:
    """In-memory replay cache with windowed retention.

    Entries older than the window are dropped once the cache grows past
    ``max_entries`` and, while started, by a background sweep once per window.
    """

    def __init__(
        self,
        window_seconds: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._seen)

    def seen_recently(self, nonce: str, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        first_seen = self._seen.get(nonce)
        return first_seen is not None and now - first_seen <= self.window_seconds

    def record(self, nonce: str, now: float | None = None) -> None:
        now = self._clock() if now is None else now
        self._seen[nonce] = now
        if len(self._seen) > self.max_entries:
            self.prune(now)

    def prune(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        cutoff = now - self.window_seconds
        stale = [n for n, first_seen in self._seen.items() if first_seen < cutoff]
        for nonce in stale:
            del self._seen[nonce]
        if stale:
            logger.debug("Pruned %d expired nonce(s), %d cached", len(stale), len(self._seen))
        return len(stale)

    def clear(self) -> None:
        self._seen.clear()

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.window_seconds)
            self.prune()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sweep())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# ── Signature verifiers ───────────────────────────────────────────────────────


class SignatureVerifier(Protocol):
    name: str

    def expected(self, secret: str, body: str, timestamp: str, nonce: str) -> str: ...


class Blake2Verifier:
    name = "blake2b-256"

    def expected(self, secret: str, body: str, timestamp: str, nonce: str) -> str:
        return blake2_256_hex(secret + body + timestamp + nonce)


class HmacSha256Verifier:
    name = "hmac-sha256"

    def expected(self, secret: str, body: str, timestamp: str, nonce: str) -> str:
        return hmac_sha256_hex(secret, body + timestamp + nonce)


DEFAULT_VERIFIERS: tuple[SignatureVerifier, ...] = (Blake2Verifier(), HmacSha256Verifier())


def match_signature(
    signature: str,
    secret: str,
    body: Any,
    timestamp: str,
    nonce: str,
    verifiers: Sequence[SignatureVerifier] = DEFAULT_VERIFIERS,
) -> str | None:
    """Return the name of the first scheme that reproduces ``signature``."""
    provided = signature.strip().lower()
    if provided.startswith("0x"):
        provided = provided[2:]
    encoded = canonical_json(body)
    for verifier in verifiers:
        if hmac.compare_digest(provided, verifier.expected(secret, encoded, timestamp, nonce)):
            return verifier.name
    return None


# ── Rate limiter (fixed window) ───────────────────────────────────────────────


class FixedWindowRateLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}

    def check(self, client: str) -> tuple[bool, int, int]:
        """Returns ``(allowed, remaining, retry_after_seconds)``."""
        now = self._clock()
        started, count = self._windows.get(client, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0

        if count >= self.limit:
            retry_after = int(started + self.window_seconds - now) + 1
            return False, 0, retry_after

        count += 1
        self._windows[client] = (started, count)
        return True, self.limit - count, 0

    def reset(self) -> None:
        self._windows.clear()


# ── Authenticator ─────────────────────────────────────────────────────────────


class IngestAuthenticator:
    def __init__(
        self,
        secret: str,
        nonce_store: NonceStore,
        rate_limiter: FixedWindowRateLimiter,
        disabled: bool = False,
        verifiers: Sequence[SignatureVerifier] = DEFAULT_VERIFIERS,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.nonces = nonce_store
        self.rate_limiter = rate_limiter
        self.disabled = disabled
        self.verifiers = tuple(verifiers)
        self._clock = clock

    @classmethod
    def from_settings(cls) -> IngestAuthenticator:
        return cls(
            secret=settings.ingest_hmac_secret,
            nonce_store=NonceStore(
                window_seconds=settings.nonce_window_seconds,
                max_entries=settings.ingest_nonce_cache_max,
            ),
            rate_limiter=FixedWindowRateLimiter(settings.ingest_rate_limit_per_minute),
            disabled=settings.ingest_auth_disabled,
        )

    def start(self) -> None:
        if self.disabled:
            logger.warning("Ingest authentication DISABLED (dev mode), all requests accepted")
        self.nonces.start()

    async def stop(self) -> None:
        await self.nonces.stop()

    def authenticate(self, client: str, headers: Mapping[str, str], body: Any) -> AuthResult:
        """Validate one request or raise ``IngestAuthError``."""
        allowed, remaining, retry_after = self.rate_limiter.check(client)
        if not allowed:
            raise IngestAuthError(
                429,
                "RATE_LIMIT_EXCEEDED",
                f"Rate limit of {self.rate_limiter.limit}/min exceeded. Retry in {retry_after}s.",
                retry_after=retry_after,
            )
        limit = self.rate_limiter.limit

        if self.disabled:
            logger.warning("Dev mode: skipping ingest authentication for %s", client)
            return AuthResult(client, "dev-mode", limit, remaining)

        signature = headers.get(SIGNATURE_HEADER)
        timestamp = headers.get(TIMESTAMP_HEADER)
        nonce = headers.get(NONCE_HEADER)
        if not signature or not timestamp or not nonce:
            raise IngestAuthError(
                401,
                "MISSING_AUTH_HEADERS",
                "X-HMAC-Signature, X-Timestamp and X-Nonce headers are required.",
            )

        now = self._clock()
        try:
            sent_at = int(timestamp) / 1000
        except ValueError:
            raise IngestAuthError(
                401, "TIMESTAMP_OUT_OF_WINDOW", "X-Timestamp must be unix milliseconds."
            ) from None
        window = self.nonces.window_seconds
        if abs(now - sent_at) > window:
            raise IngestAuthError(
                401,
                "TIMESTAMP_OUT_OF_WINDOW",
                f"Request timestamp is more than {int(window)}s from server time.",
            )

        scheme = match_signature(signature, self.secret, body, timestamp, nonce, self.verifiers)
        if scheme is None:
            logger.warning("Invalid ingest signature from %s", client)
            raise IngestAuthError(401, "INVALID_SIGNATURE", "Signature verification failed.")

        if self.nonces.seen_recently(nonce, now):
            logger.warning("Replayed nonce from %s", client)
            raise IngestAuthError(401, "NONCE_ALREADY_USED", "Nonce has already been used.")
        self.nonces.record(nonce, now)

        return AuthResult(client, scheme, limit, remaining)


# ── FastAPI dependency ────────────────────────────────────────────────────────


def get_authenticator(request: Request) -> IngestAuthenticator:
    authenticator = getattr(request.app.state, "ingest_auth", None)
    if authenticator is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Ingest gateway is not running."},
        )
    return authenticator


async def require_ingest_auth(request: Request) -> AuthResult:
    """Authenticate the signed ingest request against its parsed JSON body."""
    authenticator = get_authenticator(request)
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_JSON", "message": "Request body must be valid JSON."},
        ) from None

    client = request.client.host if request.client else "unknown"
    try:
        result = authenticator.authenticate(client, request.headers, body)
    except IngestAuthError as exc:
        detail: dict[str, Any] = {"code": exc.code, "message": exc.message}
        headers = None
        if exc.retry_after is not None:
            detail["retry_after"] = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after)}
        raise HTTPException(status_code=exc.status, detail=detail, headers=headers) from None

    request.state.rate_limit = result.rate_limit
    request.state.rate_limit_remaining = result.rate_limit_remaining
    request.state.auth_scheme = result.scheme
    return result
