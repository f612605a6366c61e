from __future__ import annotations

import pydantic
import pytest

from app.services.booking.rules import (
    CreditRules,
    MeteredRules,
    RestrictedAccessRules,
    UnlimitedRules,
    parse_booking_rules,
)


def test_current_shapes():
    assert parse_booking_rules({"type": "unlimited"}) == UnlimitedRules()
    assert parse_booking_rules({"type": "metered", "period": "week", "count": 2}) == MeteredRules(
        period="week", count=2
    )
    assert parse_booking_rules({"type": "credits", "initial_amount": 10}) == CreditRules(initial_amount=10)
    assert isinstance(parse_booking_rules({"type": "restricted_access"}), RestrictedAccessRules)


def test_legacy_shapes_are_normalized():
    limited = parse_booking_rules({"type": "limited", "limit": {"period": "month", "count": 8}})
    assert limited == MeteredRules(period="month", count=8)

    credits = parse_booking_rules({"type": "credits", "limit": {"count": 12}})
    assert credits == CreditRules(initial_amount=12)

    assert isinstance(parse_booking_rules({"type": "open_gym_only"}), RestrictedAccessRules)


def test_unknown_or_missing_rules_are_rejected():
    with pytest.raises(pydantic.ValidationError):
        parse_booking_rules({"type": "vip"})
    with pytest.raises(pydantic.ValidationError):
        parse_booking_rules({"type": "metered", "period": "day", "count": 1})
    with pytest.raises(ValueError):
        parse_booking_rules(None)
