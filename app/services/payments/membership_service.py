"""Membership lifecycle - creation, renewal and status changes driven by billing."""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ExternalUnavailableError, NotFoundError, ValidationError
from app.core.logging_config import get_logger
from app.models.membership import Membership
from app.models.plan import MembershipPlan
from app.services.booking.rules import CreditRules, parse_booking_rules
from app.utils.datetime_utils import add_months, get_current_utc_datetime, local_date
from app.utils.enums import MembershipStatus

logger = get_logger(__name__)

# Statuses a billing event may no longer change
TERMINAL_STATUSES = (
    MembershipStatus.cancelled,
    MembershipStatus.superseded,
    MembershipStatus.upgraded,
)

# Stripe subscription status -> membership status
SUBSCRIPTION_STATUS_MAP = {
    "active": MembershipStatus.active,
    "trialing": MembershipStatus.active,
    "past_due": MembershipStatus.payment_failed,
    "unpaid": MembershipStatus.payment_failed,
    "canceled": MembershipStatus.cancelled,
}


def today_local() -> date:
    return local_date(get_current_utc_datetime(), settings.GYM_TIMEZONE)


def initial_usage(plan: MembershipPlan) -> dict:
    rules = parse_booking_rules(plan.booking_rules)
    if isinstance(rules, CreditRules):
        return {"remaining_credits": rules.initial_amount}
    return {}


def plan_credit_amount(plan: MembershipPlan) -> int:
    rules = parse_booking_rules(plan.booking_rules)
    return rules.initial_amount if isinstance(rules, CreditRules) else 0


def membership_end_date(plan: MembershipPlan, start: date) -> date:
    return add_months(start, plan.duration_months or 1) - timedelta(days=1)


class MembershipService:
    """Writes membership rows. Flushes only; callers commit."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active(self, user_id: uuid.UUID) -> Optional[Membership]:
        result = await self.db.execute(
            select(Membership).where(
                Membership.user_id == user_id,
                Membership.status == MembershipStatus.active,
            )
        )
        return result.scalars().first()

    async def for_subscription(self, stripe_subscription_id: str) -> list[Membership]:
        """Non-terminal memberships billed by a Stripe subscription."""
        result = await self.db.execute(
            select(Membership)
            .where(
                Membership.stripe_subscription_id == stripe_subscription_id,
                Membership.status.not_in(TERMINAL_STATUSES),
            )
            .order_by(Membership.start_date)
        )
        return list(result.scalars().all())

    async def supersede_active(self, user_id: uuid.UUID, status: MembershipStatus, on: date) -> Optional[Membership]:
        """Retire the user's active membership, if any, ending it the day before ``on``."""
        current = await self.get_active(user_id)
        if current is None:
            return None
        current.status = status
        if current.end_date is None or current.end_date >= on:
            current.end_date = max(current.start_date, on - timedelta(days=1))
        await self.db.flush()
        logger.info(f"Membership {current.id} of user {user_id} -> {status.value}")
        return current

    async def create(
        self,
        user_id: uuid.UUID,
        plan: MembershipPlan,
        start_date: Optional[date] = None,
        status: MembershipStatus = MembershipStatus.active,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        usage_data: Optional[dict] = None,
    ) -> Membership:
        """Create a membership; an ``active`` one supersedes the current active row first."""
        start_date = start_date or today_local()
        if status == MembershipStatus.active:
            await self.supersede_active(user_id, MembershipStatus.superseded, start_date)

        membership = Membership(
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            start_date=start_date,
            end_date=membership_end_date(plan, start_date),
            usage_data=usage_data if usage_data is not None else initial_usage(plan),
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            auto_renewal=bool(plan.auto_renewal and stripe_subscription_id),
        )
        self.db.add(membership)
        await self.db.flush()
        logger.info(
            f"Created {status.value} membership {membership.id} for user {user_id} "
            f"on plan {plan.name} ({membership.start_date} - {membership.end_date})"
        )
        return membership

    async def extend(self, membership: Membership) -> Membership:
        """Push ``end_date`` forward one plan duration after a paid renewal."""
        plan = await self.db.get(MembershipPlan, membership.plan_id)
        months = plan.duration_months if plan is not None else 1
        if membership.end_date is None:
            membership.end_date = add_months(today_local(), months) - timedelta(days=1)
        else:
            # Months are counted from the start date so short months do not drift the anchor day
            next_start = membership.end_date + timedelta(days=1)
            elapsed = (next_start.year - membership.start_date.year) * 12 + (
                next_start.month - membership.start_date.month
            )
            membership.end_date = add_months(membership.start_date, elapsed + months) - timedelta(days=1)
        membership.status = MembershipStatus.active
        await self.db.flush()
        logger.info(f"Membership {membership.id} renewed until {membership.end_date}")
        return membership

    async def set_status(self, membership: Membership, status: MembershipStatus, reason: Optional[str] = None) -> bool:
        """Move a membership to ``status``; terminal memberships are left alone."""
        if membership.status in TERMINAL_STATUSES:
            logger.info(
                f"Ignoring {status.value} for membership {membership.id}: already {membership.status.value}"
            )
            return False
        if membership.status == status:
            return False
        previous = membership.status
        membership.status = status
        if reason:
            # Reassign so the JSON column is flagged dirty
            membership.usage_data = {**(membership.usage_data or {}), "cancelled_reason": reason}
        await self.db.flush()
        logger.info(f"Membership {membership.id}: {previous.value} -> {status.value}")
        return True

    async def apply_subscription_status(self, membership: Membership, stripe_status: str) -> bool:
        status = SUBSCRIPTION_STATUS_MAP.get(stripe_status)
        if status is None:
            logger.info(f"Unmapped Stripe subscription status {stripe_status!r} for membership {membership.id}")
            return False
        if membership.status == MembershipStatus.pending_activation and status == MembershipStatus.active:
            # Activation happens on the start date, not on subscription updates
            return False
        reason = "subscription_canceled" if status == MembershipStatus.cancelled else None
        return await self.set_status(membership, status, reason=reason)

    async def request_cancellation(self, user_id: uuid.UUID, stripe_client=None) -> Membership:
        """Member-initiated cancellation at the end of the paid period.

        The membership stays active until ``end_date``; the Stripe subscription
        is told to stop renewing and the request time is kept in ``usage_data``.
        """
        membership = await self.get_active(user_id)
        if membership is None:
            raise NotFoundError("No active membership found")
        plan = await self.db.get(MembershipPlan, membership.plan_id)
        if plan is None or not plan.cancellation_allowed:
            raise ValidationError("Cancellation is not allowed for this membership plan")
        usage = dict(membership.usage_data or {})
        if usage.get("cancellation_requested_at"):
            raise ValidationError("Membership is already scheduled for cancellation")

        if membership.stripe_subscription_id:
            if stripe_client is None:
                raise ExternalUnavailableError("Online payments are not configured")
            try:
                stripe_client.cancel_subscription(membership.stripe_subscription_id, at_period_end=True)
            except stripe.StripeError as e:
                raise ExternalUnavailableError("Could not reach the payment provider") from e

        usage["cancellation_requested_at"] = get_current_utc_datetime().isoformat()
        membership.usage_data = usage
        membership.auto_renewal = False
        await self.db.flush()
        logger.info(f"Membership {membership.id} of user {user_id} scheduled to end on {membership.end_date}")
        return membership
