from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
import stripe
from sqlalchemy import select

from app.core.exceptions import ExternalUnavailableError, ValidationError
from app.models.purchase import PurchaseRecord
from app.models.shop_product import ShopProduct
from app.services.payments.checkout_service import CheckoutService
from app.services.payments.membership_service import today_local
from app.utils.enums import PaymentType, PurchaseStatus, PurchaseType

pytestmark = pytest.mark.anyio

CREDITS = {"type": "credits", "initial_amount": 10}


async def test_membership_checkout_records_pending_purchase(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan({"type": "unlimited"})
    user_id, plan_id = user.id, plan.id

    result = await CheckoutService(db_session, fake_stripe).create_checkout(user, plan_id=plan_id)

    assert result["purchase_type"] == "membership"
    sent = fake_stripe.checkout_sessions[0]
    assert sent["mode"] == "subscription"
    assert sent["metadata"] == {"user_id": str(user_id), "plan_id": str(plan_id), "purchase_type": "membership"}
    assert sent["customer_email"] == user.email
    purchase = (
        await db_session.execute(
            select(PurchaseRecord).where(PurchaseRecord.stripe_session_id == result["session_id"])
        )
    ).scalars().one()
    assert purchase.status == PurchaseStatus.pending
    assert purchase.item_id == plan_id


async def test_credit_plan_on_credit_membership_is_a_topup(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan(CREDITS, payment_type=PaymentType.one_time)
    membership = await factory.membership(user, plan, credits=1)

    result = await CheckoutService(db_session, fake_stripe).create_checkout(user, plan_id=plan.id)

    assert result["purchase_type"] == PurchaseType.credit_topup.value
    sent = fake_stripe.checkout_sessions[0]
    assert sent["mode"] == "payment"
    assert sent["metadata"]["existing_membership_id"] == str(membership.id)


async def test_plan_and_product_are_mutually_exclusive(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan({"type": "unlimited"})
    service = CheckoutService(db_session, fake_stripe)

    with pytest.raises(ValidationError):
        await service.create_checkout(user)
    with pytest.raises(ValidationError):
        await service.create_checkout(user, plan_id=plan.id, product_id=plan.id)


async def test_out_of_stock_product_is_rejected(db_session, factory, fake_stripe):
    user = await factory.user()
    product = ShopProduct(name="Towel", price_minor=900, stock_quantity=0, stripe_price_id="price_towel")
    db_session.add(product)
    await db_session.commit()

    with pytest.raises(ValidationError, match="out of stock"):
        await CheckoutService(db_session, fake_stripe).create_checkout(user, product_id=product.id)
    assert fake_stripe.checkout_sessions == []


async def test_upgrade_checkout_anchors_billing_to_period_end(db_session, factory, fake_stripe):
    user = await factory.user()
    basic = await factory.plan({"type": "metered", "period": "week", "count": 1})
    premium = await factory.plan({"type": "unlimited"})
    current = await factory.membership(user, basic, stripe_subscription_id="sub_old")
    period_end = datetime(2030, 7, 1, 9, tzinfo=timezone.utc)
    fake_stripe.subscriptions["sub_old"] = {"items": {"data": [{"current_period_end": int(period_end.timestamp())}]}}

    result = await CheckoutService(db_session, fake_stripe).create_upgrade_checkout(user, premium.id)

    assert result["billing_start_date"] == date(2030, 7, 1)
    assert result["purchase_type"] == "membership_upgrade"
    sent = fake_stripe.checkout_sessions[0]
    assert sent["billing_cycle_anchor"] == date(2030, 7, 1)
    assert sent["customer_id"] == "cus_test"
    assert sent["metadata"]["old_membership_id"] == str(current.id)
    assert sent["metadata"]["billing_start_date"] == "2030-07-01"


async def test_upgrade_requires_a_subscription(db_session, factory, fake_stripe):
    user = await factory.user()
    plan = await factory.plan({"type": "unlimited"})
    premium = await factory.plan({"type": "unlimited"})
    await factory.membership(user, plan)

    with pytest.raises(ValidationError, match="active subscription"):
        await CheckoutService(db_session, fake_stripe).create_upgrade_checkout(user, premium.id)


async def test_stripe_failure_is_reported_as_unavailable(db_session, factory, fake_stripe, monkeypatch):
    user = await factory.user()
    plan = await factory.plan({"type": "unlimited"})
    plan_id = plan.id

    def unreachable(**kwargs):
        raise stripe.APIConnectionError("connection refused")

    monkeypatch.setattr(fake_stripe, "create_checkout_session", unreachable)

    with pytest.raises(ExternalUnavailableError):
        await CheckoutService(db_session, fake_stripe).create_checkout(user, plan_id=plan_id)
    rows = (await db_session.execute(select(PurchaseRecord.id))).all()
    assert rows == []


async def test_credits_conversion_checkout_starts_today(db_session, factory, fake_stripe):
    user = await factory.user()
    credit_plan = await factory.plan(CREDITS, payment_type=PaymentType.one_time)
    monthly = await factory.plan({"type": "unlimited"})
    current = await factory.membership(user, credit_plan, credits=4)

    result = await CheckoutService(db_session, fake_stripe).create_credits_conversion_checkout(user, monthly.id)

    assert result["purchase_type"] == PurchaseType.credits_to_subscription.value
    sent = fake_stripe.checkout_sessions[0]
    assert sent["mode"] == "subscription"
    assert sent["billing_cycle_anchor"] is None
    assert sent["metadata"]["old_membership_id"] == str(current.id)
    assert date.fromisoformat(sent["metadata"]["billing_start_date"]) == today_local()


async def test_credits_conversion_requires_a_credit_membership(db_session, factory, fake_stripe):
    user = await factory.user()
    weekly = await factory.plan({"type": "metered", "period": "week", "count": 2})
    monthly = await factory.plan({"type": "unlimited"})
    credit_plan = await factory.plan(CREDITS, payment_type=PaymentType.one_time)
    await factory.membership(user, weekly)
    service = CheckoutService(db_session, fake_stripe)

    with pytest.raises(ValidationError, match="not credits-based"):
        await service.create_credits_conversion_checkout(user, monthly.id)
    with pytest.raises(ValidationError, match="without credits"):
        await service.create_credits_conversion_checkout(user, credit_plan.id)
    assert fake_stripe.checkout_sessions == []
