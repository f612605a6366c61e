"""Payment event processor.

Each event runs in one transaction whose first write is the
``ProcessedEvent`` row. A duplicate ``event_id`` fails that insert and the
event becomes a no-op; a handler error rolls back everything, the marker
included, so the processor's redelivery retries it cleanly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import get_logger
from app.models.plan import MembershipPlan
from app.models.processed_event import ProcessedEvent
from app.models.purchase import PurchaseRecord
from app.models.shop_product import ShopProduct
from app.services.booking.ledger import CreditLedger
from app.services.payments.membership_service import MembershipService, plan_credit_amount, today_local
from app.services.payments.upgrade_scheduler import UpgradeScheduler
from app.utils.enums import MembershipStatus, PurchaseStatus, PurchaseType

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[bool]]


@dataclass
class EventOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = False


def _uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    # Newer API versions nest it under parent.subscription_details
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


class PaymentEventProcessor:
    def __init__(self, db: AsyncSession, stripe_client=None, ledger: Optional[CreditLedger] = None):
        self.db = db
        self.ledger = ledger or CreditLedger(db)
        self.memberships = MembershipService(db)
        self.upgrades = UpgradeScheduler(db, stripe_client=stripe_client, memberships=self.memberships)
        self.handlers: Dict[str, Handler] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "checkout.session.expired": self.handle_checkout_expired,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_failed,
        }

    async def process(
        self,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        source: str = "stripe",
    ) -> EventOutcome:
        outcome = EventOutcome(event_id=event_id, event_type=event_type)
        if metadata is None:
            metadata = dict(payload.get("metadata") or {})

        already = await self.db.execute(select(ProcessedEvent.id).where(ProcessedEvent.event_id == event_id))
        if already.first() is not None:
            logger.info(f"DUPLICATE_EVENT {event_id} ({event_type}) ignored")
            outcome.duplicate = True
            return outcome

        self.db.add(ProcessedEvent(event_id=event_id, event_type=event_type, source=source))
        try:
            await self.db.flush()
        except IntegrityError:
            # Concurrent delivery won the insert
            await self.db.rollback()
            logger.info(f"DUPLICATE_EVENT {event_id} ({event_type}) ignored")
            outcome.duplicate = True
            return outcome

        handler = self.handlers.get(event_type)
        try:
            if handler is None:
                logger.info(f"Unhandled event type {event_type} ({event_id}) recorded")
            else:
                outcome.handled = await handler(payload, metadata)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.exception(f"Event {event_id} ({event_type}) failed; rolled back for redelivery")
            raise

        logger.info(f"Processed event {event_id} ({event_type}) handled={outcome.handled}")
        return outcome

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    async def _purchase(self, stripe_session_id: Optional[str]) -> Optional[PurchaseRecord]:
        if not stripe_session_id:
            return None
        result = await self.db.execute(
            select(PurchaseRecord).where(PurchaseRecord.stripe_session_id == stripe_session_id)
        )
        return result.scalars().first()

    async def _plan(self, metadata: Dict[str, Any]) -> Optional[MembershipPlan]:
        plan_id = _uuid(metadata.get("plan_id"))
        return await self.db.get(MembershipPlan, plan_id) if plan_id else None

    async def handle_checkout_completed(self, session: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        session_id = session.get("id")
        purchase = await self._purchase(session_id)
        if purchase is not None and purchase.status != PurchaseStatus.pending:
            logger.info(f"Purchase for checkout {session_id} already {purchase.status.value}; skipping")
            return False

        purchase_type = metadata.get("purchase_type") or (
            purchase.purchase_type.value if purchase is not None else PurchaseType.membership.value
        )
        user_id = _uuid(metadata.get("user_id")) or (purchase.user_id if purchase is not None else None)
        if user_id is None:
            logger.error(f"Checkout {session_id} has no user_id in metadata; nothing to fulfil")
            return False

        if purchase_type == PurchaseType.membership.value:
            handled = await self._fulfil_membership(session, metadata, user_id)
        elif purchase_type == PurchaseType.credit_topup.value:
            handled = await self._fulfil_topup(session, metadata)
        elif purchase_type == PurchaseType.membership_upgrade.value:
            handled = await self._fulfil_upgrade(session, metadata, user_id)
        elif purchase_type == PurchaseType.credits_to_subscription.value:
            handled = await self._fulfil_credits_conversion(session, metadata, user_id)
        elif purchase_type == PurchaseType.product.value:
            handled = await self._fulfil_product(metadata)
        else:
            logger.warning(f"Unknown purchase_type {purchase_type!r} on checkout {session_id}")
            handled = False

        if purchase is not None:
            purchase.status = PurchaseStatus.completed
            purchase.stripe_payment_intent_id = session.get("payment_intent")
            await self.db.flush()
        return handled

    async def _fulfil_membership(self, session: Dict[str, Any], metadata: Dict[str, Any], user_id: uuid.UUID) -> bool:
        plan = await self._plan(metadata)
        if plan is None:
            logger.error(f"Checkout {session.get('id')}: plan {metadata.get('plan_id')} not found")
            return False
        await self.memberships.create(
            user_id,
            plan,
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
        )
        return True

    async def _fulfil_topup(self, session: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        plan = await self._plan(metadata)
        membership_id = _uuid(metadata.get("existing_membership_id"))
        amount = plan_credit_amount(plan) if plan is not None else 0
        if membership_id is None or amount <= 0:
            logger.error(
                f"Checkout {session.get('id')}: cannot top up "
                f"(membership={metadata.get('existing_membership_id')}, amount={amount})"
            )
            return False
        await self.ledger.credit(membership_id, amount, f"topup:{session.get('id')}", reason="topup")
        return True

    async def _fulfil_upgrade(self, session: Dict[str, Any], metadata: Dict[str, Any], user_id: uuid.UUID) -> bool:
        plan = await self._plan(metadata)
        if plan is None:
            logger.error(f"Upgrade checkout {session.get('id')}: plan {metadata.get('plan_id')} not found")
            return False
        raw_start = metadata.get("billing_start_date")
        await self.upgrades.apply_upgrade(
            user_id,
            plan,
            billing_start_date=date.fromisoformat(raw_start) if raw_start else None,
            old_membership_id=_uuid(metadata.get("old_membership_id")),
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
        )
        return True

    async def _fulfil_credits_conversion(
        self, session: Dict[str, Any], metadata: Dict[str, Any], user_id: uuid.UUID
    ) -> bool:
        plan = await self._plan(metadata)
        if plan is None:
            logger.error(f"Conversion checkout {session.get('id')}: plan {metadata.get('plan_id')} not found")
            return False
        raw_start = metadata.get("billing_start_date")
        start_date = date.fromisoformat(raw_start) if raw_start else today_local()
        # Remaining credits lapse with the old membership
        old = await self.memberships.supersede_active(user_id, MembershipStatus.upgraded, start_date)
        membership = await self.memberships.create(
            user_id,
            plan,
            start_date=start_date,
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
        )
        logger.info(
            f"User {user_id} converted credit membership {old.id if old else None} "
            f"to {plan.name} ({membership.id})"
        )
        return True

    async def _fulfil_product(self, metadata: Dict[str, Any]) -> bool:
        product_id = _uuid(metadata.get("product_id"))
        if product_id is None:
            logger.error("Product checkout without product_id")
            return False
        result = await self.db.execute(
            update(ShopProduct)
            .where(ShopProduct.id == product_id, ShopProduct.stock_quantity > 0)
            .values(stock_quantity=ShopProduct.stock_quantity - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Product {product_id} sold with no stock left; stock stays at 0")
        return True

    async def handle_checkout_expired(self, session: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        purchase = await self._purchase(session.get("id"))
        if purchase is None or purchase.status != PurchaseStatus.pending:
            return False
        purchase.status = PurchaseStatus.failed
        await self.db.flush()
        logger.info(f"Checkout {session.get('id')} expired; purchase {purchase.id} failed")
        return True

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------
    async def handle_subscription_updated(self, subscription: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        changed = False
        for membership in await self.memberships.for_subscription(subscription.get("id")):
            changed |= await self.memberships.apply_subscription_status(membership, subscription.get("status"))
        return changed

    async def handle_subscription_deleted(self, subscription: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        changed = False
        for membership in await self.memberships.for_subscription(subscription.get("id")):
            changed |= await self.memberships.set_status(
                membership, MembershipStatus.cancelled, reason="subscription_deleted"
            )
        return changed

    async def handle_invoice_paid(self, invoice: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        if invoice.get("billing_reason") != "subscription_cycle":
            return False
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return False

        handled = False
        for membership in await self.memberships.for_subscription(subscription_id):
            if membership.status == MembershipStatus.pending_activation:
                await self.upgrades.activate_pending(membership)
            else:
                await self.memberships.extend(membership)
            handled = True
        return handled

    async def handle_invoice_failed(self, invoice: Dict[str, Any], metadata: Dict[str, Any]) -> bool:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return False
        changed = False
        for membership in await self.memberships.for_subscription(subscription_id):
            if membership.status == MembershipStatus.active:
                changed |= await self.memberships.set_status(membership, MembershipStatus.payment_failed)
        return changed

