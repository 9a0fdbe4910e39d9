"""WayForPay HTTP boundary: service URL notifications, browser return, widget form.

Webhook error taxonomy (retry storm prevention):
  (A) Unparseable body / missing required fields -> 400
  (B) Signature matches no configured key -> 400 (never reaches the ledger)
  (C) Ledger or database error after verification -> 500 + Retry-After
      (the gateway redelivers; the ledger is idempotent per reference/status)
  500 is ONLY for (C). Signature mismatch is NEVER 500.
"""

import html
import json as _json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from smachno_api.billing import order_reference, signature
from smachno_api.billing.ledger import PaymentLedger
from smachno_api.billing.status import PaymentStatus, from_gateway
from smachno_api.billing.wayforpay import build_accept_response, get_wayforpay_client
from smachno_api.config.env import get_billing_settings
from smachno_api.context import reference_var, request_id_var, user_id_var
from smachno_api.db.session import get_db
from smachno_api.observability.metrics import log_signature_rejected
from smachno_api.schemas import PaymentAccept
from smachno_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/payment", tags=["payments"])
logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("merchantAccount", "orderReference", "merchantSignature")


# ============================================================================
# Webhook Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response with webhook extensions.

    4xx failures -> warning log.
    5xx failures -> error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get()
    instance = request_id or str(request.url.path)

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": "wayforpay",
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:smachno:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": "wayforpay",
        "error_code": code,
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash
    if instance:
        content["instance"] = instance

    response_headers = {"Content-Type": "application/problem+json"}
    if status >= 500:
        response_headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        headers=response_headers,
    )


def parse_notification(raw_body: bytes) -> Optional[dict[str, Any]]:
    """Decode a notification body.

    Accepts a JSON document, or a form-encoded body whose single key is the
    JSON document (the gateway posts it that way with a form content type),
    or plain form fields. Returns None if nothing usable was found.
    """
    if not raw_body:
        return None

    try:
        text_body = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return None

    try:
        parsed = _json.loads(text_body)
    except _json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    pairs = parse_qsl(text_body, keep_blank_values=True)
    if not pairs:
        return None

    if len(pairs) == 1:
        key, value = pairs[0]
        for candidate in (key, value):
            try:
                document = _json.loads(candidate)
            except _json.JSONDecodeError:
                continue
            if isinstance(document, dict):
                return document

    return dict(pairs)


def amount_to_minor(value: Any) -> Optional[int]:
    """Major units (30, "30.00", 30.5) to minor units, half-up. None if unparseable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        major = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not major.is_finite():
        return None
    return int((major * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# Service URL (gateway notifications)
# ============================================================================


@router.post("/webhook", response_model=PaymentAccept)
async def wayforpay_webhook(request: Request, db: Session = Depends(get_db)):
    """WayForPay service URL handler.

    Verifies the signature, maps the gateway status and applies it to the
    ledger exactly once per (reference, status).
    """
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    # ── Step 1: Parsing (A -> 400) ───────────────────────────────────────────
    payload = parse_notification(raw_body)
    if payload is None:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Request body is neither JSON nor a form-encoded JSON document",
            payload_hash=payload_hash,
        )

    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": "wayforpay",
            "payload_hash": payload_hash,
            "payload_size": len(raw_body),
            "transaction_status": payload.get("transactionStatus"),
        },
    )

    # ── Step 2: Required fields (A -> 400) ──────────────────────────────────
    missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
    if missing:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_FIELDS",
            title="Missing required fields",
            detail=f"Missing required fields: {', '.join(missing)}",
            payload_hash=payload_hash,
        )

    reference = str(payload["orderReference"])
    reference_token = reference_var.set(reference)
    telegram_id = order_reference.decode(reference)
    user_token = user_id_var.set(str(telegram_id) if telegram_id is not None else "")

    try:
        # ── Step 3: Signature verification (B -> 400) ────────────────────────
        settings = get_billing_settings()
        keys = settings.signature_keys
        if not signature.verify(payload, payload.get("merchantSignature"), keys):
            log_signature_rejected(
                reference,
                payload.get("merchantAccount"),
                payload.get("merchantSignature"),
                keys_tried=len(keys),
            )
            return _webhook_problem(
                request, 400,
                code="WEBHOOK_SIGNATURE_INVALID",
                title="Webhook signature verification failed",
                detail="Signature does not match any configured key",
                payload_hash=payload_hash,
            )

        # ── Step 4: Ledger (C -> 500) ────────────────────────────────────────
        transaction_status = payload.get("transactionStatus")
        new_status = from_gateway(transaction_status)
        reason_code = payload.get("reasonCode")

        try:
            intent = PaymentLedger(db, settings).apply_status(
                reference,
                new_status,
                amount=amount_to_minor(payload.get("amount")),
                currency=payload.get("currency") or None,
                gateway_status=transaction_status,
                reason_code=str(reason_code) if reason_code is not None else None,
                actor="WEBHOOK",
            )
        except Exception as exc:
            return _webhook_problem(
                request, 500,
                code="WEBHOOK_INTERNAL_ERROR",
                title="Internal processing error",
                detail="An internal error occurred while processing the notification",
                payload_hash=payload_hash,
                extra={
                    "error_type": type(exc).__name__,
                    "error_msg": sanitize_str(str(exc)),
                },
            )

        logger.info(
            "WEBHOOK_PROCESSED",
            extra={
                "provider": "wayforpay",
                "payload_hash": payload_hash,
                "requested_status": new_status.value,
                "ledger_status": intent.status,
            },
        )
        return build_accept_response(reference, settings)
    finally:
        user_id_var.reset(user_token)
        reference_var.reset(reference_token)


# ============================================================================
# Return URL (browser redirect after checkout)
# ============================================================================

_SUCCESS_STATUSES = {"Approved", PaymentStatus.COMPLETED.value}
_FAILURE_STATUSES = {
    "Declined",
    "Expired",
    "Refunded",
    "Voided",
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
}

_RESULT_PAGE = """<!DOCTYPE html>
<html lang="uk">
<head>
    <meta charset="UTF-8">
    <title>{title}</title>
</head>
<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">
    <h1>{title}</h1>
    <p>{message}</p>
    <p>{reference}</p>
</body>
</html>
"""


def render_result_page(outcome: str, reference: Optional[str]) -> str:
    if outcome == "success":
        title = "Оплата успішна!"
        message = "Поверніться в бот, щоб продовжити генерацію."
    elif outcome == "failure":
        title = "Оплата не пройшла"
        message = "Спробуйте ще раз або оберіть інший спосіб оплати."
    else:
        title = "Оплата обробляється"
        message = "Ми повідомимо вас у боті, щойно платіж буде підтверджено."
    return _RESULT_PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
        reference=html.escape(reference or ""),
    )


@router.api_route("/callback", methods=["GET", "POST"], response_class=HTMLResponse)
async def payment_callback(request: Request, db: Session = Depends(get_db)):
    """Browser return page. Read-only: never mutates the ledger."""
    params: dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        body = parse_notification(await request.body())
        if body:
            params.update(body)

    reference = params.get("orderReference")
    status_value = params.get("transactionStatus")

    if not status_value and reference:
        intent = PaymentLedger(db).get_intent(str(reference))
        status_value = intent.status if intent is not None else None

    if status_value in _SUCCESS_STATUSES:
        outcome = "success"
    elif status_value in _FAILURE_STATUSES:
        outcome = "failure"
    else:
        outcome = "pending"

    logger.info(
        "PAYMENT_CALLBACK",
        extra={
            "event": "payment.callback",
            "order_reference": reference,
            "outcome": outcome,
        },
    )
    return HTMLResponse(render_result_page(outcome, reference))


# ============================================================================
# Widget checkout form
# ============================================================================


@router.get("/form/{reference}", response_class=HTMLResponse)
async def payment_form(reference: str, request: Request):
    """Auto-submitting checkout form for widget mode."""
    if order_reference.decode(reference) is None:
        raise HTTPException(status_code=404, detail=f"Unknown order reference: {reference}")

    try:
        client = get_wayforpay_client()
    except ValueError:
        logger.error(
            "Payment form requested but gateway is not configured",
            extra={"event": "payment.form_misconfigured", "order_reference": reference},
        )
        raise HTTPException(status_code=503, detail="Payment service not configured")

    return HTMLResponse(client.build_widget_form(reference, dict(request.query_params)))
