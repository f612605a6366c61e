from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.models.membership import Membership
from app.models.user import User
from app.services.booking.allowance import EntitlementService
from app.services.booking.entitlement import SessionSnapshot
from app.services.payments.upgrade_scheduler import UpgradeScheduler, compute_billing_start_date
from app.utils.enums import MembershipStatus, SessionType

pytestmark = pytest.mark.anyio

TODAY = date(2025, 6, 10)


async def _row(db_session, membership_id):
    return (
        await db_session.execute(
            select(Membership.status, Membership.start_date, Membership.end_date, Membership.usage_data).where(
                Membership.id == membership_id
            )
        )
    ).one()


async def _current_subscriber(factory):
    user = await factory.user()
    basic = await factory.plan({"type": "metered", "period": "week", "count": 1})
    premium = await factory.plan({"type": "unlimited"})
    current = await factory.membership(
        user,
        basic,
        start_date=TODAY - timedelta(days=10),
        end_date=TODAY + timedelta(days=20),
        stripe_subscription_id="sub_old",
    )
    return user, premium, current


def test_billing_start_date_reads_item_period_end():
    period_end = int(datetime(2025, 7, 1, 12, tzinfo=timezone.utc).timestamp())

    assert compute_billing_start_date({"items": {"data": [{"current_period_end": period_end}]}}) == date(2025, 7, 1)
    assert compute_billing_start_date({"current_period_end": period_end}) == date(2025, 7, 1)
    with pytest.raises(ValueError):
        compute_billing_start_date({})


async def test_deferred_upgrade_does_not_overlap(db_session, factory, fake_stripe):
    user, premium, current = await _current_subscriber(factory)
    starts = TODAY + timedelta(days=5)
    scheduler = UpgradeScheduler(db_session, stripe_client=fake_stripe)

    pending = await scheduler.apply_upgrade(
        user.id,
        premium,
        billing_start_date=starts,
        old_membership_id=current.id,
        stripe_subscription_id="sub_new",
        today=TODAY,
    )
    await db_session.commit()

    old = await _row(db_session, current.id)
    new = await _row(db_session, pending.id)
    assert old.status == MembershipStatus.active
    assert old.end_date == starts - timedelta(days=1)
    assert old.usage_data["original_end_date"] == (TODAY + timedelta(days=20)).isoformat()
    assert old.usage_data["upgrade_scheduled_for"] == starts.isoformat()
    assert new.status == MembershipStatus.pending_activation
    assert new.start_date == starts
    assert fake_stripe.cancelled == [("sub_old", True)]

    # No day on which both memberships apply
    decision, _ = await EntitlementService(db_session).evaluate(
        await db_session.get(User, user.id),
        SessionSnapshot(session_type=SessionType.course, session_date=starts),
        now=datetime.combine(TODAY, datetime.min.time(), tzinfo=timezone.utc),
    )
    assert decision.reason == "Membership has expired on the session date"


async def test_activation_on_start_date(db_session, factory, fake_stripe):
    user, premium, current = await _current_subscriber(factory)
    starts = TODAY + timedelta(days=5)
    scheduler = UpgradeScheduler(db_session, stripe_client=fake_stripe)
    pending = await scheduler.apply_upgrade(
        user.id, premium, billing_start_date=starts, old_membership_id=current.id,
        stripe_subscription_id="sub_new", today=TODAY,
    )
    await db_session.commit()

    assert await scheduler.activate_due_memberships(today=starts - timedelta(days=1)) == []
    activated = await scheduler.activate_due_memberships(today=starts)
    await db_session.commit()

    assert activated == [pending.id]
    assert (await _row(db_session, pending.id)).status == MembershipStatus.active
    assert (await _row(db_session, current.id)).status == MembershipStatus.upgraded


async def test_second_upgrade_replaces_pending_one(db_session, factory, fake_stripe):
    user, premium, current = await _current_subscriber(factory)
    other = await factory.plan({"type": "credits", "initial_amount": 20})
    starts = TODAY + timedelta(days=5)
    scheduler = UpgradeScheduler(db_session, stripe_client=fake_stripe)

    first = await scheduler.apply_upgrade(
        user.id, premium, billing_start_date=starts, old_membership_id=current.id,
        stripe_subscription_id="sub_new", today=TODAY,
    )
    second = await scheduler.apply_upgrade(
        user.id, other, billing_start_date=starts, old_membership_id=current.id,
        stripe_subscription_id="sub_newer", today=TODAY,
    )
    await db_session.commit()

    replaced = await _row(db_session, first.id)
    assert replaced.status == MembershipStatus.cancelled
    assert replaced.usage_data["cancelled_reason"] == "replaced_by_new_upgrade"
    assert (await _row(db_session, second.id)).status == MembershipStatus.pending_activation
    assert ("sub_new", False) in fake_stripe.cancelled
    old = await _row(db_session, current.id)
    assert old.usage_data["original_end_date"] == (TODAY + timedelta(days=20)).isoformat()


async def test_immediate_upgrade(db_session, factory, fake_stripe):
    user, premium, current = await _current_subscriber(factory)
    scheduler = UpgradeScheduler(db_session, stripe_client=fake_stripe)

    new = await scheduler.apply_upgrade(
        user.id, premium, old_membership_id=current.id, stripe_subscription_id="sub_new", today=TODAY
    )
    await db_session.commit()

    old = await _row(db_session, current.id)
    assert old.status == MembershipStatus.upgraded
    assert old.end_date == TODAY - timedelta(days=1)
    fresh = await _row(db_session, new.id)
    assert (fresh.status, fresh.start_date) == (MembershipStatus.active, TODAY)


async def test_missing_stripe_client_only_warns(db_session, factory):
    user, premium, current = await _current_subscriber(factory)

    pending = await UpgradeScheduler(db_session).apply_upgrade(
        user.id, premium, billing_start_date=TODAY + timedelta(days=3), old_membership_id=current.id,
        stripe_subscription_id="sub_new", today=TODAY,
    )
    await db_session.commit()

    assert (await _row(db_session, pending.id)).status == MembershipStatus.pending_activation
