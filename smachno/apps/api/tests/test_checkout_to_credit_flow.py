"""End-to-end: free quota -> checkout -> gateway notification -> paid credit -> refund.

Drives the generation gate directly (as the chat layer does) and delivers
gateway notifications through the HTTP service URL.
"""

from unittest.mock import AsyncMock

import pytest

from smachno_api.billing.entitlements import EntitlementCalculator
from smachno_api.billing.generation_gate import GenerationGate
from smachno_api.billing.signature import hmac_md5, notification_string
from smachno_api.billing.wayforpay import CheckoutHandle

TELEGRAM_ID = 123456789
MERCHANT_PASSWORD = "merchant-password-32-chars-xxxxx"


def _notification(reference: str, status: str) -> dict:
    payload = {
        "merchantAccount": "test_merch_n1",
        "orderReference": reference,
        "amount": 30,
        "currency": "UAH",
        "authCode": "541963",
        "cardPan": "41****8217",
        "transactionStatus": status,
        "reasonCode": 1100,
    }
    payload["merchantSignature"] = hmac_md5(MERCHANT_PASSWORD, notification_string(payload))
    return payload


@pytest.mark.asyncio
async def test_full_payment_cycle(test_client, db_session, billing_settings, guard):
    client = AsyncMock()
    client.create_invoice = AsyncMock(
        side_effect=lambda reference, amount_minor=None, order_date=None: CheckoutHandle(
            reference=reference,
            checkout_url=f"https://secure.wayforpay.com/invoice/{reference}",
            amount_minor=amount_minor,
            mode="invoice",
        )
    )
    gate = GenerationGate(db_session, guard=guard, client=client, settings=billing_settings)
    entitlements = EntitlementCalculator(db_session, billing_settings)

    # Two free generations
    first = await gate.begin(TELEGRAM_ID, username="olena")
    second = await gate.begin(TELEGRAM_ID)
    assert (first.kind, first.source, first.remaining) == ("proceed", "free", 1)
    assert (second.kind, second.source, second.remaining) == ("proceed", "free", 0)

    # Third request needs a payment
    checkout = await gate.begin(TELEGRAM_ID)
    assert checkout.kind == "checkout_required"
    assert checkout.amount_display == "30"
    reference = checkout.reference

    # Gateway confirms, then redelivers
    for _ in range(2):
        response = test_client.post("/payment/webhook", json=_notification(reference, "Approved"))
        assert response.status_code == 200
    db_session.expire_all()
    assert entitlements.available_paid(TELEGRAM_ID) == 1

    # Paid generation
    paid = await gate.begin(TELEGRAM_ID)
    assert (paid.kind, paid.source, paid.remaining) == ("proceed", "paid", 0)

    # Refund after the credit was spent: clamped, never negative
    response = test_client.post("/payment/webhook", json=_notification(reference, "Refunded"))
    assert response.status_code == 200
    db_session.expire_all()
    snapshot = entitlements.snapshot(TELEGRAM_ID)
    assert snapshot.paid_available == 0
    assert snapshot.corrected is True

    # Out of credits again -> a fresh checkout with a new reference
    again = await gate.begin(TELEGRAM_ID)
    assert again.kind == "checkout_required"
    assert again.reference != reference
    assert not guard.is_held(TELEGRAM_ID)
