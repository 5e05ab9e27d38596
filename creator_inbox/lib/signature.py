"""Webhook signature verification.

Header format: ``t=<unix_ts>,v0=<hex>`` where the hex digest is
HMAC-SHA256(secret, f"{t}.{raw_body}").
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Tuple

DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str) -> Tuple[str, str] | None:
    parts: dict[str, str] = {}
    for part in (header or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip() and value.strip():
            parts[key.strip()] = value.strip()
    if parts.get("t") and parts.get("v0"):
        return parts["t"], parts["v0"]
    return None


def compute_signature(raw_body: str | bytes, timestamp: str, secret: str) -> str:
    body = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    signed = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_header(raw_body: str | bytes, secret: str, *, timestamp: int | None = None) -> str:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return f"t={ts},v0={compute_signature(raw_body, ts, secret)}"


def verify_signature(
    raw_body: str | bytes,
    header: str,
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> Tuple[bool, str | None]:
    """Return (valid, error_message)."""

    if not secret:
        return False, "No webhook secret configured"
    if not header:
        return False, "Missing X-Fanvue-Signature header"

    parsed = parse_signature_header(header)
    if not parsed:
        return False, "Invalid signature header format"
    timestamp, signature = parsed

    try:
        ts = int(timestamp)
    except ValueError:
        return False, "Invalid timestamp in signature"

    current = int(now if now is not None else time.time())
    if abs(current - ts) > tolerance_seconds:
        return False, f"Timestamp outside tolerance ({current - ts}s difference)"

    expected = compute_signature(raw_body, timestamp, secret)
    if not hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8")):
        return False, "Signature mismatch"
    return True, None


__all__ = [
    "compute_signature",
    "parse_signature_header",
    "sign_header",
    "verify_signature",
]
