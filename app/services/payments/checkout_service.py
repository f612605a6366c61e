"""Checkout initiation - Stripe checkout sessions plus a pending PurchaseRecord."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ExternalUnavailableError, NotFoundError, ValidationError
from app.core.logging_config import get_logger
from app.models.plan import MembershipPlan
from app.models.purchase import PurchaseRecord
from app.models.shop_product import ShopProduct
from app.models.user import User
from app.services.booking.rules import CreditRules, parse_booking_rules
from app.services.payments.membership_service import MembershipService, today_local
from app.services.payments.upgrade_scheduler import UpgradeScheduler, compute_billing_start_date
from app.utils.enums import PaymentType, PurchaseType

logger = get_logger(__name__)


def _default_urls(success_url: Optional[str], cancel_url: Optional[str]) -> tuple[str, str]:
    frontend_base = (settings.FRONTEND_APP_URL or f"http://{settings.HOST}:{settings.PORT}").rstrip("/")
    return (
        success_url or f"{frontend_base}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url or f"{frontend_base}/checkout/cancelled",
    )


class CheckoutService:
    def __init__(self, db: AsyncSession, stripe_client):
        self.db = db
        self.stripe_client = stripe_client
        self.memberships = MembershipService(db)

    async def create_checkout(
        self,
        user: User,
        plan_id: Optional[uuid.UUID] = None,
        product_id: Optional[uuid.UUID] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start a checkout for a membership plan, a credit top-up or a shop product.

        Returns:
            Dictionary with checkout_url, session_id, purchase_type
        """
        if (plan_id is None) == (product_id is None):
            raise ValidationError("Provide exactly one of plan_id or product_id")
        success_url, cancel_url = _default_urls(success_url, cancel_url)

        metadata: Dict[str, str] = {"user_id": str(user.id)}
        customer_id = None
        active = await self.memberships.get_active(user.id)
        if active is not None:
            customer_id = active.stripe_customer_id

        if product_id is not None:
            product = await self.db.get(ShopProduct, product_id)
            if product is None or not product.is_active:
                raise NotFoundError("Product not found")
            if product.stock_quantity <= 0:
                raise ValidationError("Product is out of stock")
            if not product.stripe_price_id:
                raise ValidationError("Product is not purchasable online")
            metadata.update(product_id=str(product.id), purchase_type=PurchaseType.product.value)
            return await self._start(
                user,
                price_id=product.stripe_price_id,
                mode="payment",
                metadata=metadata,
                item_id=product.id,
                item_name=product.name,
                amount_minor=product.price_minor,
                currency=product.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                customer_id=customer_id,
            )

        plan = await self._purchasable_plan(plan_id)
        purchase_type = PurchaseType.membership
        metadata["plan_id"] = str(plan.id)
        if isinstance(parse_booking_rules(plan.booking_rules), CreditRules) and active is not None:
            active_plan = await self.db.get(MembershipPlan, active.plan_id)
            if active_plan is not None and isinstance(parse_booking_rules(active_plan.booking_rules), CreditRules):
                purchase_type = PurchaseType.credit_topup
                metadata["existing_membership_id"] = str(active.id)
        metadata["purchase_type"] = purchase_type.value

        recurring = plan.payment_type == PaymentType.subscription and purchase_type == PurchaseType.membership
        return await self._start(
            user,
            price_id=plan.stripe_price_id,
            mode="subscription" if recurring else "payment",
            metadata=metadata,
            item_id=plan.id,
            item_name=plan.name,
            amount_minor=plan.price_minor,
            currency=plan.currency,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=customer_id,
        )

    async def create_upgrade_checkout(
        self,
        user: User,
        plan_id: uuid.UUID,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Checkout for a new subscription plan that starts when the current period ends."""
        success_url, cancel_url = _default_urls(success_url, cancel_url)
        plan = await self._purchasable_plan(plan_id)
        if plan.payment_type != PaymentType.subscription:
            raise ValidationError("Only subscription plans can be used for an upgrade")

        active = await self.memberships.get_active(user.id)
        if active is None or not active.stripe_subscription_id:
            raise ValidationError("An active subscription membership is required to upgrade")
        if active.plan_id == plan.id:
            raise ValidationError("You are already on this plan")

        await UpgradeScheduler(self.db, stripe_client=self.stripe_client).cancel_pending_upgrades(user.id)

        try:
            subscription = self.stripe_client.retrieve_subscription(active.stripe_subscription_id)
        except stripe.StripeError as e:
            raise ExternalUnavailableError("Could not reach the payment provider") from e
        billing_start_date = compute_billing_start_date(subscription)

        metadata = {
            "user_id": str(user.id),
            "plan_id": str(plan.id),
            "purchase_type": PurchaseType.membership_upgrade.value,
            "old_membership_id": str(active.id),
            "billing_start_date": billing_start_date.isoformat(),
        }
        result = await self._start(
            user,
            price_id=plan.stripe_price_id,
            mode="subscription",
            metadata=metadata,
            item_id=plan.id,
            item_name=plan.name,
            amount_minor=plan.price_minor,
            currency=plan.currency,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=active.stripe_customer_id,
            billing_cycle_anchor=billing_start_date,
        )
        result["billing_start_date"] = billing_start_date
        return result

    async def create_credits_conversion_checkout(
        self,
        user: User,
        plan_id: uuid.UUID,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Checkout that replaces an active credit membership with a plan starting today."""
        success_url, cancel_url = _default_urls(success_url, cancel_url)
        plan = await self._purchasable_plan(plan_id)
        if isinstance(parse_booking_rules(plan.booking_rules), CreditRules):
            raise ValidationError("Choose a plan without credits to convert to")

        active = await self.memberships.get_active(user.id)
        if active is None:
            raise ValidationError("No active membership found")
        active_plan = await self.db.get(MembershipPlan, active.plan_id)
        if active_plan is None or not isinstance(parse_booking_rules(active_plan.booking_rules), CreditRules):
            raise ValidationError("Current membership is not credits-based")

        metadata = {
            "user_id": str(user.id),
            "plan_id": str(plan.id),
            "purchase_type": PurchaseType.credits_to_subscription.value,
            "old_membership_id": str(active.id),
            "billing_start_date": today_local().isoformat(),
        }
        return await self._start(
            user,
            price_id=plan.stripe_price_id,
            mode="subscription" if plan.payment_type == PaymentType.subscription else "payment",
            metadata=metadata,
            item_id=plan.id,
            item_name=plan.name,
            amount_minor=plan.price_minor,
            currency=plan.currency,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=active.stripe_customer_id,
        )

    async def _purchasable_plan(self, plan_id: uuid.UUID) -> MembershipPlan:
        plan = await self.db.get(MembershipPlan, plan_id)
        if plan is None or not plan.is_active:
            raise NotFoundError("Plan not found")
        if not plan.stripe_price_id:
            raise ValidationError(f"Plan {plan.name} has no Stripe price configured")
        return plan

    async def _start(
        self,
        user: User,
        *,
        price_id: str,
        mode: str,
        metadata: Dict[str, str],
        item_id: uuid.UUID,
        item_name: str,
        amount_minor: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        billing_cycle_anchor=None,
    ) -> Dict[str, Any]:
        try:
            session = self.stripe_client.create_checkout_session(
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                mode=mode,
                customer_id=customer_id,
                customer_email=None if customer_id else user.email,
                billing_cycle_anchor=billing_cycle_anchor,
            )
        except stripe.StripeError as e:
            await self.db.rollback()
            raise ExternalUnavailableError("Could not reach the payment provider") from e

        purchase_type = PurchaseType(metadata["purchase_type"])
        self.db.add(
            PurchaseRecord(
                user_id=user.id,
                stripe_session_id=session.id,
                checkout_url=session.url,
                purchase_type=purchase_type,
                item_id=item_id,
                item_name=item_name,
                amount_minor=amount_minor or 0,
                currency=currency or settings.DEFAULT_CURRENCY,
            )
        )
        await self.db.commit()

        logger.info(
            f"Checkout created: session={session.id}, user={user.id}, "
            f"type={purchase_type.value}, item={item_name}"
        )
        return {
            "checkout_url": session.url,
            "session_id": session.id,
            "purchase_type": purchase_type.value,
        }
