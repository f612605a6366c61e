"""Deferred plan upgrades.

An upgrade bought mid-period starts billing when the current period ends.
Until then the new membership waits in ``pending_activation`` and the old one
keeps running, its ``end_date`` trimmed to the day before the new start.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import get_logger
from app.models.membership import Membership
from app.models.plan import MembershipPlan
from app.services.payments.membership_service import MembershipService, today_local
from app.utils.datetime_utils import unix_to_utc_date
from app.utils.enums import MembershipStatus

logger = get_logger(__name__)


def compute_billing_start_date(stripe_subscription: Any) -> date:
    """End of the subscription's current period, as a UTC date."""
    period_end = None
    items = (stripe_subscription.get("items") or {}).get("data") or []
    if items:
        period_end = items[0].get("current_period_end")
    if period_end is None:
        period_end = stripe_subscription.get("current_period_end")
    if period_end is None:
        raise ValueError("Subscription has no current_period_end")
    return unix_to_utc_date(int(period_end))


class UpgradeScheduler:
    def __init__(self, db: AsyncSession, stripe_client=None, memberships: Optional[MembershipService] = None):
        self.db = db
        self.stripe_client = stripe_client
        self.memberships = memberships or MembershipService(db)

    async def cancel_pending_upgrades(self, user_id: uuid.UUID, exclude_id: Optional[uuid.UUID] = None) -> list[uuid.UUID]:
        """Cancel the user's waiting upgrades and, best effort, their Stripe subscriptions."""
        result = await self.db.execute(
            select(Membership).where(
                Membership.user_id == user_id,
                Membership.status == MembershipStatus.pending_activation,
            )
        )
        cancelled = []
        for pending in result.scalars().all():
            if exclude_id is not None and pending.id == exclude_id:
                continue
            pending.status = MembershipStatus.cancelled
            pending.usage_data = {**(pending.usage_data or {}), "cancelled_reason": "replaced_by_new_upgrade"}
            cancelled.append(pending.id)
            self._cancel_stripe_subscription(pending.stripe_subscription_id)
        if cancelled:
            await self.db.flush()
            logger.info(f"Cancelled pending upgrade(s) {cancelled} for user {user_id}")
        return cancelled

    def _cancel_stripe_subscription(self, subscription_id: Optional[str], at_period_end: bool = False) -> None:
        if not subscription_id:
            return
        if self.stripe_client is None:
            logger.warning(f"Stripe not configured; subscription {subscription_id} left for manual cancellation")
            return
        try:
            self.stripe_client.cancel_subscription(subscription_id, at_period_end=at_period_end)
        except stripe.StripeError as e:
            logger.error(f"Best-effort cancel of Stripe subscription {subscription_id} failed: {e}")

    async def apply_upgrade(
        self,
        user_id: uuid.UUID,
        plan: MembershipPlan,
        billing_start_date: Optional[date] = None,
        old_membership_id: Optional[uuid.UUID] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Membership:
        today = today or today_local()
        billing_start_date = billing_start_date or today

        await self.cancel_pending_upgrades(user_id)

        old = await self.db.get(Membership, old_membership_id) if old_membership_id else None
        if old is None or old.status != MembershipStatus.active:
            old = await self.memberships.get_active(user_id)

        if old is not None and old.stripe_subscription_id and old.stripe_subscription_id != stripe_subscription_id:
            # Old plan must not renew once the new one takes over
            self._cancel_stripe_subscription(old.stripe_subscription_id, at_period_end=True)

        if billing_start_date <= today:
            if old is not None:
                old.status = MembershipStatus.upgraded
                old.end_date = max(old.start_date, today - timedelta(days=1))
                await self.db.flush()
            new = await self.memberships.create(
                user_id,
                plan,
                start_date=today,
                status=MembershipStatus.active,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
            )
            logger.info(f"Upgrade for user {user_id} applied immediately: membership {new.id}")
            return new

        if old is not None:
            usage = dict(old.usage_data or {})
            # A replaced upgrade already trimmed end_date; keep the first recorded value
            usage.setdefault("original_end_date", old.end_date.isoformat() if old.end_date else None)
            usage["upgrade_scheduled_for"] = billing_start_date.isoformat()
            old.usage_data = usage
            old.end_date = billing_start_date - timedelta(days=1)
            await self.db.flush()

        new = await self.memberships.create(
            user_id,
            plan,
            start_date=billing_start_date,
            status=MembershipStatus.pending_activation,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
        )
        logger.info(
            f"Upgrade for user {user_id} scheduled: membership {new.id} starts {billing_start_date}"
        )
        return new

    async def activate_pending(self, membership: Membership) -> Membership:
        """Swap the user's active membership for this pending one."""
        if membership.status != MembershipStatus.pending_activation:
            return membership
        current = await self.memberships.get_active(membership.user_id)
        if current is not None and current.id != membership.id:
            current.status = MembershipStatus.upgraded
            await self.db.flush()
        membership.status = MembershipStatus.active
        await self.db.flush()
        logger.info(f"Activated pending membership {membership.id} for user {membership.user_id}")
        return membership

    async def activate_due_memberships(self, today: Optional[date] = None) -> list[uuid.UUID]:
        """Activate every pending membership whose start date has arrived."""
        today = today or today_local()
        result = await self.db.execute(
            select(Membership)
            .where(
                Membership.status == MembershipStatus.pending_activation,
                Membership.start_date <= today,
            )
            .order_by(Membership.start_date)
        )
        activated = []
        for membership in result.scalars().all():
            await self.activate_pending(membership)
            activated.append(membership.id)
        return activated
