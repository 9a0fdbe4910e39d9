"""Order reference codec.

A reference embeds the paying user so that a notification for a payment the
ledger never recorded can still be attributed:

    creative_<telegramId>_<epochMillis>

Gateways may echo references back truncated or with a prefix of their own, so
user attribution only needs the `creative_<telegramId>_` segment anywhere in
the string. The timestamp is read from well-formed references only.
"""

import re
import time
from typing import Optional

REFERENCE_PREFIX = "creative"
_DELIMITER = "_"

_USER_SEGMENT_RE = re.compile(rf"{REFERENCE_PREFIX}_(\d+)_")
_REFERENCE_RE = re.compile(rf"^{REFERENCE_PREFIX}_(\d+)_(\d+)")


def encode(user_id: int, timestamp_ms: Optional[int] = None) -> str:
    """Build a reference for user_id.

    Args:
        user_id: Telegram user id (non-negative)
        timestamp_ms: Epoch milliseconds; defaults to now

    Raises:
        ValueError: If user_id is negative
    """
    if user_id < 0:
        raise ValueError(f"user_id must be non-negative, got {user_id}")
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return _DELIMITER.join((REFERENCE_PREFIX, str(user_id), str(timestamp_ms)))


def decode(reference: object) -> Optional[int]:
    """Extract the user id from a reference, or None if it does not parse."""
    if not isinstance(reference, str):
        return None
    match = _USER_SEGMENT_RE.search(reference)
    if match is None:
        return None
    return int(match.group(1))


def decode_timestamp(reference: object) -> Optional[int]:
    if not isinstance(reference, str):
        return None
    match = _REFERENCE_RE.match(reference)
    if match is None:
        return None
    return int(match.group(2))
