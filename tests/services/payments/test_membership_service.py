from __future__ import annotations

from datetime import date

import pytest
import stripe
from sqlalchemy import select

from app.core.exceptions import ExternalUnavailableError, NotFoundError, ValidationError
from app.models.membership import Membership
from app.services.payments.membership_service import MembershipService
from app.utils.enums import MembershipStatus

pytestmark = pytest.mark.anyio

UNLIMITED = {"type": "unlimited"}


async def _membership_row(db_session, membership_id):
    return (
        await db_session.execute(
            select(Membership.status, Membership.auto_renewal, Membership.usage_data).where(
                Membership.id == membership_id
            )
        )
    ).one()


async def test_cancellation_stops_renewal_at_period_end(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan(UNLIMITED)
    membership = await factory.membership(
        user, plan, end_date=date(2031, 1, 31), stripe_subscription_id="sub_cancel"
    )

    cancelled = await MembershipService(db_session).request_cancellation(user.id, fake_stripe)
    await db_session.commit()

    assert cancelled.id == membership.id
    assert fake_stripe.cancelled == [("sub_cancel", True)]
    row = await _membership_row(db_session, membership.id)
    # Still usable until the end of the paid period
    assert row.status == MembershipStatus.active
    assert row.auto_renewal is False
    assert row.usage_data["cancellation_requested_at"]
    assert cancelled.end_date == date(2031, 1, 31)


async def test_second_cancellation_request_is_rejected(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan(UNLIMITED)
    await factory.membership(user, plan, stripe_subscription_id="sub_twice")
    service = MembershipService(db_session)

    await service.request_cancellation(user.id, fake_stripe)
    await db_session.commit()

    with pytest.raises(ValidationError, match="already scheduled"):
        await service.request_cancellation(user.id, fake_stripe)
    assert len(fake_stripe.cancelled) == 1


async def test_plan_without_cancellation_is_rejected(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan(UNLIMITED, cancellation_allowed=False)
    await factory.membership(user, plan, stripe_subscription_id="sub_locked")

    with pytest.raises(ValidationError, match="not allowed"):
        await MembershipService(db_session).request_cancellation(user.id, fake_stripe)
    assert fake_stripe.cancelled == []


async def test_cancellation_needs_an_active_membership(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan(UNLIMITED)
    await factory.membership(user, plan, status=MembershipStatus.payment_failed)

    with pytest.raises(NotFoundError):
        await MembershipService(db_session).request_cancellation(user.id, fake_stripe)


async def test_one_time_membership_cancels_without_stripe(db_session, factory):
    user = await factory.user()
    plan = await factory.plan({"type": "credits", "initial_amount": 10})
    membership = await factory.membership(user, plan, credits=3)

    await MembershipService(db_session).request_cancellation(user.id, stripe_client=None)
    await db_session.commit()

    usage = (await _membership_row(db_session, membership.id)).usage_data
    assert usage["remaining_credits"] == 3
    assert "cancellation_requested_at" in usage


async def test_stripe_failure_leaves_membership_untouched(db_session, factory, fake_stripe, monkeypatch):
    user = await factory.user()
    plan = await factory.plan(UNLIMITED)
    membership = await factory.membership(user, plan, stripe_subscription_id="sub_down")
    membership_id = membership.id

    def unreachable(subscription_id, at_period_end=False):
        raise stripe.APIConnectionError("connection refused")

    monkeypatch.setattr(fake_stripe, "cancel_subscription", unreachable)

    with pytest.raises(ExternalUnavailableError):
        await MembershipService(db_session).request_cancellation(user.id, fake_stripe)
    await db_session.rollback()

    row = await _membership_row(db_session, membership_id)
    assert "cancellation_requested_at" not in (row.usage_data or {})
    assert row.status == MembershipStatus.active
