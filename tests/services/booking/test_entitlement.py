from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from app.services.booking.entitlement import (
    NO_MEMBERSHIP_REASON,
    Decision,
    EntitlementContext,
    MembershipSnapshot,
    SessionSnapshot,
    evaluate_entitlement,
)
from app.services.booking.rules import (
    CreditRules,
    MeteredRules,
    RestrictedAccessRules,
    UnlimitedRules,
)
from app.utils.enums import MembershipStatus, Role, SessionType

AS_OF = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def _membership(rules, status=MembershipStatus.active, credits=0, start=date(2025, 1, 15), end=date(2025, 12, 31)):
    return MembershipSnapshot(
        id="m1",
        status=status,
        start_date=start,
        end_date=end,
        rules=rules,
        remaining_credits=credits,
    )


def _ctx(membership, on=date(2025, 3, 12), session_type=SessionType.course, booked=(), role=Role.member):
    return EntitlementContext(
        membership=membership,
        session=SessionSnapshot(session_type=session_type, session_date=on),
        as_of=AS_OF,
        role=role,
        booked_dates=booked,
    )


def test_unlimited_allows_without_debit():
    decision = evaluate_entitlement(_ctx(_membership(UnlimitedRules())))
    assert decision.decision == Decision.allow
    assert decision.debit == 0


def test_no_membership_denies_members_but_not_staff():
    denied = evaluate_entitlement(_ctx(None))
    assert denied.decision == Decision.deny
    assert denied.reason == NO_MEMBERSHIP_REASON

    trainer = evaluate_entitlement(_ctx(None, role=Role.trainer))
    assert trainer.allowed


@pytest.mark.parametrize(
    "status",
    [
        MembershipStatus.payment_failed,
        MembershipStatus.pending_activation,
        MembershipStatus.cancelled,
        MembershipStatus.superseded,
        MembershipStatus.upgraded,
    ],
)
def test_non_active_memberships_are_denied(status):
    decision = evaluate_entitlement(_ctx(_membership(UnlimitedRules(), status=status)))
    assert decision.decision == Decision.deny


def test_session_outside_membership_dates_is_denied():
    membership = _membership(UnlimitedRules(), start=date(2025, 3, 1), end=date(2025, 3, 31))
    assert not evaluate_entitlement(_ctx(membership, on=date(2025, 2, 28))).allowed
    assert evaluate_entitlement(_ctx(membership, on=date(2025, 3, 31))).allowed
    assert not evaluate_entitlement(_ctx(membership, on=date(2025, 4, 1))).allowed


def test_credits_allow_with_debit_until_exhausted():
    allowed = evaluate_entitlement(_ctx(_membership(CreditRules(initial_amount=10), credits=1)))
    assert allowed.decision == Decision.allow_with_debit
    assert allowed.debit == 1
    assert allowed.remaining == 1

    empty = evaluate_entitlement(_ctx(_membership(CreditRules(initial_amount=10), credits=0)))
    assert empty.decision == Decision.deny
    assert empty.reason == "No credits remaining"


def test_weekly_limit_counts_only_the_iso_week():
    rules = MeteredRules(period="week", count=2)
    # 2025-03-12 is a Wednesday; week is Mon 10th .. Sun 16th
    booked = [date(2025, 3, 10), date(2025, 3, 16), date(2025, 3, 9)]
    decision = evaluate_entitlement(_ctx(_membership(rules), booked=booked))
    assert decision.decision == Decision.deny
    assert decision.reason == "Weekly limit reached (2/2 used)"
    assert decision.period_start == date(2025, 3, 10)
    assert decision.period_end == date(2025, 3, 16)

    one_booked = evaluate_entitlement(_ctx(_membership(rules), booked=[date(2025, 3, 9)]))
    assert one_booked.decision == Decision.allow_with_debit
    assert one_booked.remaining == 2


def test_monthly_limit_is_anchored_to_membership_start():
    rules = MeteredRules(period="month", count=1)
    membership = _membership(rules, start=date(2025, 1, 15))
    # Period containing 2025-03-12 is 2025-02-15 .. 2025-03-14
    used = evaluate_entitlement(_ctx(membership, booked=[date(2025, 2, 20)]))
    assert used.decision == Decision.deny
    assert used.reason == "Monthly limit reached (1/1 used)"
    assert (used.period_start, used.period_end) == (date(2025, 2, 15), date(2025, 3, 14))

    next_period = evaluate_entitlement(_ctx(membership, on=date(2025, 3, 15), booked=[date(2025, 2, 20)]))
    assert next_period.allowed


def test_restricted_access_only_allows_open_gym():
    membership = _membership(RestrictedAccessRules())
    assert not evaluate_entitlement(_ctx(membership)).allowed
    assert evaluate_entitlement(_ctx(membership, session_type=SessionType.open_gym)).allowed


def test_waitlist_only_keeps_entitlement_but_drops_debit():
    decision = evaluate_entitlement(_ctx(_membership(CreditRules(initial_amount=5), credits=3)))
    waitlist = decision.waitlist_only()
    assert waitlist.decision == Decision.allow_waitlist_only
    assert waitlist.can_waitlist
    assert waitlist.debit == 0
    assert waitlist.remaining == 3
    assert not waitlist.allowed
