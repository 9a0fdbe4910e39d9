"""Tests for the payment status transition table and gateway mapping."""

import pytest

from smachno_api.billing.errors import InvalidTransitionError
from smachno_api.billing.status import (
    PaymentStatus,
    from_gateway,
    is_allowed,
    require_allowed,
)

P = PaymentStatus


# ============================================================================
# Transition table
# ============================================================================


@pytest.mark.parametrize(
    "current,new",
    [
        (P.PENDING, P.COMPLETED),
        (P.PENDING, P.FAILED),
        (P.PENDING, P.REFUNDED),
        (P.COMPLETED, P.REFUNDED),
        (P.FAILED, P.COMPLETED),
    ],
)
def test_forward_transitions_allowed(current, new):
    assert is_allowed(current, new)
    require_allowed("creative_1_1", current, new)


@pytest.mark.parametrize("status", list(PaymentStatus))
def test_same_status_is_allowed(status):
    assert is_allowed(status, status)


@pytest.mark.parametrize(
    "current,new",
    [
        (P.COMPLETED, P.PENDING),
        (P.COMPLETED, P.FAILED),
        (P.FAILED, P.PENDING),
        (P.FAILED, P.REFUNDED),
        (P.REFUNDED, P.COMPLETED),
        (P.REFUNDED, P.PENDING),
        (P.REFUNDED, P.FAILED),
    ],
)
def test_illegal_transitions_rejected(current, new):
    assert not is_allowed(current, new)
    with pytest.raises(InvalidTransitionError) as exc_info:
        require_allowed("creative_1_1", current, new)

    assert exc_info.value.current == current.value
    assert exc_info.value.requested == new.value


# ============================================================================
# Gateway mapping
# ============================================================================


@pytest.mark.parametrize(
    "gateway_status,expected",
    [
        ("Approved", P.COMPLETED),
        ("Refunded", P.REFUNDED),
        ("Voided", P.REFUNDED),
        ("Declined", P.FAILED),
        ("Expired", P.FAILED),
        ("InProcessing", P.PENDING),
        ("WaitingAuthComplete", P.PENDING),
        ("Pending", P.PENDING),
        ("", P.PENDING),
        (None, P.PENDING),
    ],
)
def test_from_gateway(gateway_status, expected):
    assert from_gateway(gateway_status) == expected


def test_status_values_are_plain_strings():
    assert P.COMPLETED == "completed"
    assert P("refunded") is P.REFUNDED
