"""Entitlement rule evaluator.

A pure function of plan rules, membership snapshot, clock and target session.
All database reads happen before the call (see ``EntitlementService`` in
``app.services.booking.allowance``), so the decision can be unit tested
against synthetic clocks without a session.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Sequence

from app.services.booking.rules import (
    BookingRules,
    CreditRules,
    MeteredRules,
    RestrictedAccessRules,
    UnlimitedRules,
)
from app.utils.datetime_utils import anchored_month_period, iso_week_period
from app.utils.enums import MembershipStatus, Role, SessionType

NO_MEMBERSHIP_REASON = "No valid membership found"
STAFF_ROLES = (Role.admin, Role.trainer)


class Decision(str, enum.Enum):
    allow = "allow"
    allow_with_debit = "allow_with_debit"
    deny = "deny"
    allow_waitlist_only = "allow_waitlist_only"


@dataclass(frozen=True)
class MembershipSnapshot:
    id: object
    status: MembershipStatus
    start_date: date
    end_date: Optional[date]
    rules: BookingRules
    remaining_credits: int = 0


@dataclass(frozen=True)
class SessionSnapshot:
    session_type: SessionType
    session_date: date


@dataclass(frozen=True)
class EntitlementContext:
    membership: Optional[MembershipSnapshot]
    session: SessionSnapshot
    as_of: datetime
    role: Role = Role.member
    # Dates of the member's counted bookings (registered courses + open-gym check-ins)
    booked_dates: Sequence[date] = field(default_factory=tuple)


@dataclass(frozen=True)
class EntitlementDecision:
    decision: Decision
    debit: int = 0
    reason: Optional[str] = None
    remaining: Optional[int] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    used: Optional[int] = None
    limit: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.decision in (Decision.allow, Decision.allow_with_debit)

    @property
    def can_waitlist(self) -> bool:
        return self.decision == Decision.allow_waitlist_only

    def waitlist_only(self) -> "EntitlementDecision":
        """Same entitlement, but the session itself has no free seat."""
        return EntitlementDecision(
            decision=Decision.allow_waitlist_only,
            debit=0,
            reason="Course is full",
            remaining=self.remaining,
            period_start=self.period_start,
            period_end=self.period_end,
            used=self.used,
            limit=self.limit,
        )


def _deny(reason: str, **extra) -> EntitlementDecision:
    return EntitlementDecision(decision=Decision.deny, reason=reason, **extra)


def metered_period(rules: MeteredRules, membership_start: date, on: date) -> tuple[date, date]:
    if rules.period == "week":
        return iso_week_period(on)
    return anchored_month_period(membership_start, on)


def evaluate_entitlement(ctx: EntitlementContext) -> EntitlementDecision:
    """Decide whether the member may take one unit of the target session."""
    membership = ctx.membership

    if membership is None:
        if ctx.role in STAFF_ROLES:
            return EntitlementDecision(decision=Decision.allow, reason="Admin/Trainer access")
        return _deny(NO_MEMBERSHIP_REASON)

    # payment_failed deliberately denies, same as every other non-active status
    if membership.status != MembershipStatus.active:
        return _deny(f"Membership is {membership.status.value.replace('_', ' ')}")

    on = ctx.session.session_date
    if on < membership.start_date:
        return _deny("Membership is not active yet on the session date")
    if membership.end_date is not None and on > membership.end_date:
        return _deny("Membership has expired on the session date")

    rules = membership.rules

    if isinstance(rules, UnlimitedRules):
        return EntitlementDecision(decision=Decision.allow)

    if isinstance(rules, RestrictedAccessRules):
        if ctx.session.session_type == SessionType.open_gym:
            return EntitlementDecision(decision=Decision.allow)
        return _deny("Membership only allows Open Gym access")

    if isinstance(rules, CreditRules):
        balance = membership.remaining_credits
        if balance >= 1:
            return EntitlementDecision(
                decision=Decision.allow_with_debit, debit=1, remaining=balance
            )
        return _deny("No credits remaining", remaining=0)

    if isinstance(rules, MeteredRules):
        period_start, period_end = metered_period(rules, membership.start_date, on)
        used = sum(1 for d in ctx.booked_dates if period_start <= d <= period_end)
        window = {
            "period_start": period_start,
            "period_end": period_end,
            "used": used,
            "limit": rules.count,
            "remaining": max(0, rules.count - used),
        }
        if used < rules.count:
            return EntitlementDecision(decision=Decision.allow_with_debit, debit=1, **window)
        label = "Weekly" if rules.period == "week" else "Monthly"
        return _deny(f"{label} limit reached ({used}/{rules.count} used)", **window)

    raise TypeError(f"Unsupported booking rules: {rules!r}")
