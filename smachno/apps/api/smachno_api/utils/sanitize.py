"""Log redaction for gateway payloads.

WayForPay notifications carry a masked card PAN, an authorization code and a
merchant signature, and invoice requests are signed with merchant secrets.
Structured `extra` values are redacted by key; free text (messages, tracebacks,
exception strings) is scrubbed by pattern. Oversized text is replaced by a
length + digest marker instead of being scanned.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_TEXT_LEN = 2048
MAX_DEPTH = 6

REDACTED = "[REDACTED]"

# Notification / invoice fields never written to logs (compared lower-cased)
_SECRET_FIELDS: frozenset[str] = frozenset({
    "merchantsignature", "signature",
    "cardpan", "authcode", "clientname", "email", "phone",
    "secret_key", "merchant_password", "merchantpassword",
    "authorization", "redis_password",
})

_TEXT_PATTERNS: tuple[re.Pattern[str], ...] = (
    # "merchantSignature": "..." and merchantSignature=... (JSON and form bodies)
    re.compile(r'("?(?:merchantSignature|cardPan|authCode)"?\s*[:=]\s*)"?[^",&\s}]+"?', re.IGNORECASE),
    # Masked PANs as the gateway echoes them: 41****8217, 414949******1234
    re.compile(r"\b\d{2,6}\*{2,}\d{4}\b"),
    # Credentials embedded in connection URLs
    re.compile(r"(?<=://)[^/\s:@]*:[^@\s]+(?=@)"),
)


def payload_hash_bytes(raw: bytes) -> str:
    """sha256 of a raw webhook body, for correlating deliveries without logging them."""
    return hashlib.sha256(raw).hexdigest()


def sanitize_str(s: str) -> str:
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    if len(s) > MAX_TEXT_LEN:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={len(s)} sha256={digest}]"

    for pattern in _TEXT_PATTERNS:
        if pattern.groups:
            s = pattern.sub(lambda m: m.group(1) + REDACTED, s)
        else:
            s = pattern.sub(REDACTED, s)
    return s


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Redact secret fields in nested dicts/lists and scrub strings."""
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _SECRET_FIELDS
            else sanitize_obj(value, depth + 1)
            for key, value in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format exc_info without frame locals (they may hold merchant keys)."""
    _type, value, _tb = exc_info
    if value is None:
        return ""
    formatted = "".join(
        traceback.TracebackException.from_exception(value, capture_locals=False).format()
    )
    # Tracebacks are routinely longer than MAX_TEXT_LEN; keep the tail where the error is
    if len(formatted) > MAX_TEXT_LEN:
        formatted = "...\n" + formatted[-(MAX_TEXT_LEN - 4):]
    return sanitize_str(formatted)
