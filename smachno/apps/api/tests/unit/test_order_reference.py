"""Tests for the order reference codec.

Test Coverage:
1. encode produces creative_<user>_<millis>
2. decode recovers the user id
3. decode tolerates trailing segments, truncated timestamps and foreign prefixes
4. decode_timestamp only reads well-formed references
5. decode rejects foreign / malformed references without raising
6. negative user ids are rejected at encode time
"""

import pytest

from smachno_api.billing import order_reference


def test_encode_format():
    assert order_reference.encode(123456789, timestamp_ms=1700000000000) == (
        "creative_123456789_1700000000000"
    )


def test_encode_defaults_timestamp_to_now():
    reference = order_reference.encode(42)

    assert reference.startswith("creative_42_")
    assert order_reference.decode_timestamp(reference) > 1_600_000_000_000


def test_decode_recovers_user_id():
    reference = order_reference.encode(987654321, timestamp_ms=1700000000123)

    assert order_reference.decode(reference) == 987654321
    assert order_reference.decode_timestamp(reference) == 1700000000123


def test_decode_ignores_trailing_segments():
    assert order_reference.decode("creative_555_1700000000000_retry2") == 555


@pytest.mark.parametrize(
    "reference",
    [
        "creative_123_",
        "creative_123_17000",
        "WFP-creative_123_1700000000000",
        "xcreative_123_1700000000000",
    ],
)
def test_decode_tolerates_mangled_echoes(reference):
    assert order_reference.decode(reference) == 123


@pytest.mark.parametrize(
    "reference",
    ["creative_123_", "WFP-creative_123_1700000000000"],
)
def test_decode_timestamp_requires_well_formed_reference(reference):
    assert order_reference.decode_timestamp(reference) is None


def test_encode_zero_user():
    assert order_reference.decode(order_reference.encode(0, timestamp_ms=1)) == 0


@pytest.mark.parametrize(
    "reference",
    [
        "",
        "creative",
        "creative_",
        "creative_abc_1700000000000",
        "creative_42",
        "order_42_1700000000000",
        None,
        42,
    ],
)
def test_decode_unparseable_returns_none(reference):
    assert order_reference.decode(reference) is None
    assert order_reference.decode_timestamp(reference) is None


def test_encode_negative_user_rejected():
    with pytest.raises(ValueError, match="non-negative"):
        order_reference.encode(-1)
