"""Gateway signature computation and verification (HMAC-MD5, hex).

Notification canonical string (fields joined with ';', absent -> ''):

    merchantAccount;orderReference;amount;currency;authCode;cardPan;
    transactionStatus;reasonCode

The merchant dashboard issues two credentials (merchant password and secret
key) and either may sign notifications, so verification tries each candidate
key in order and accepts on the first match.
"""

import hashlib
import hmac
import logging
from typing import Any, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

NOTIFICATION_FIELDS = (
    "merchantAccount",
    "orderReference",
    "amount",
    "currency",
    "authCode",
    "cardPan",
    "transactionStatus",
    "reasonCode",
)

INVOICE_FIELDS = (
    "merchantAccount",
    "merchantDomainName",
    "orderReference",
    "orderDate",
    "amount",
    "currency",
)


def format_field(value: Any) -> str:
    """Render a payload value the way the gateway does when signing.

    Integral floats lose their fraction (30.0 -> "30"); None becomes "".
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def hmac_md5(key: str, message: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.md5).hexdigest()


def notification_string(fields: Mapping[str, Any]) -> str:
    return ";".join(format_field(fields.get(name)) for name in NOTIFICATION_FIELDS)


def match_key_index(
    fields: Mapping[str, Any],
    signature: Optional[str],
    candidate_keys: Sequence[Optional[str]],
) -> Optional[int]:
    """Return the index of the first key that reproduces signature, else None.

    Empty keys are skipped. Comparison is constant-time.
    """
    if not signature or not isinstance(signature, str):
        return None

    message = notification_string(fields)
    received = signature.strip().lower()
    for index, key in enumerate(candidate_keys):
        if not key:
            continue
        if hmac.compare_digest(hmac_md5(key, message), received):
            return index
    return None


def verify(
    fields: Mapping[str, Any],
    signature: Optional[str],
    candidate_keys: Sequence[Optional[str]],
) -> bool:
    """True iff some candidate key reproduces the notification signature."""
    index = match_key_index(fields, signature, candidate_keys)
    if index is not None:
        logger.debug(
            "SIGNATURE_MATCHED",
            extra={"event": "signature.matched", "key_index": index},
        )
        return True
    return False


def sign_invoice(params: Mapping[str, Any], key: str) -> str:
    """Signature for CREATE_INVOICE requests and the widget checkout form.

    Product arrays (productName, productCount, productPrice) are appended
    element by element after the scalar fields.
    """
    parts = [format_field(params.get(name)) for name in INVOICE_FIELDS]
    for array_name in ("productName", "productCount", "productPrice"):
        parts.extend(format_field(item) for item in params.get(array_name, []))
    return hmac_md5(key, ";".join(parts))


def sign_accept_response(reference: str, status: str, time_value: int, key: str) -> str:
    return hmac_md5(key, f"{reference};{status};{time_value}")
