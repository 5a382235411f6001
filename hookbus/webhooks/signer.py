"""HMAC-SHA256 signing of canonical JSON payloads.

Receivers must verify against the raw body bytes. The body we send is exactly
canonical_json(payload): sorted keys, no whitespace, UTF-8, non-ASCII kept.
"""

import hashlib
import hmac
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Deterministic serialization used for both the request body and the signature."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(body: str | bytes, secret: str | bytes) -> str:
    """Hex HMAC-SHA256 of body keyed by secret."""
    return hmac.new(_to_bytes(secret), _to_bytes(body), hashlib.sha256).hexdigest()


def sign_payload(payload: Any, secret: str | bytes) -> tuple[str, str]:
    """Serialize payload canonically and sign it. Returns (body, signature)."""
    body = canonical_json(payload)
    return body, sign(body, secret)


def verify(body: str | bytes, signature: str, secret: str | bytes) -> bool:
    """Constant-time comparison of signature against sign(body, secret)."""
    if not signature:
        return False
    expected = sign(body, secret).encode("ascii")
    return hmac.compare_digest(expected, signature.strip().lower().encode("utf-8"))
