"""Deterministic hashing utilities for evidence records and ingest signatures.

Evidence submitted with a settlement report is hashed over its canonical JSON
form so the ledger and any auditor can recompute it byte-for-byte.  Ingest
signatures use the same canonical body encoding.
"""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any


def canonical_json(data: Any) -> str:
    """Produce a deterministic JSON string (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def compute_evidence_hash(payload: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON payload, hex-encoded."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def blake2_256_hex(data: str) -> str:
    """BLAKE2b with a 32-byte digest, matching the ledger's native hash."""
    return hashlib.blake2b(data.encode("utf-8"), digest_size=32).hexdigest()


def hmac_sha256_hex(secret: str, data: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_ingest_payload(
    secret: str,
    body: Any,
    timestamp: str,
    nonce: str,
    scheme: str = "blake2",
) -> str:
    """Produce the signature a trusted reporter attaches to an ingest request.

    ``blake2``: BLAKE2b-256(secret || body || timestamp || nonce).
    ``hmac``:   HMAC-SHA256(secret, body || timestamp || nonce).
    """
    encoded = canonical_json(body)
    if scheme == "blake2":
        return blake2_256_hex(secret + encoded + timestamp + nonce)
    if scheme == "hmac":
        return hmac_sha256_hex(secret, encoded + timestamp + nonce)
    raise ValueError(f"Unknown signature scheme: {scheme}")
