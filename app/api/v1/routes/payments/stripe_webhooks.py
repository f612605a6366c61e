"""Stripe webhook handler - verify the signature and hand off to the event processor."""

from __future__ import annotations

import json
from dataclasses import asdict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging_config import get_logger
from app.core.response import ResponseModel, success_response
from app.db.deps import get_db
from app.schemas.payments import EventOutcomeOut
from app.services.payments.event_processor import PaymentEventProcessor
from app.services.payments.stripe_client import get_optional_stripe_client

logger = get_logger(__name__)
router = APIRouter(prefix="/payments/stripe", tags=["webhooks"])


def _parse_event(payload: bytes, sig_header: str | None) -> dict:
    if not settings.STRIPE_WEBHOOK_SECRET:
        # Local development without a webhook secret
        logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unsigned webhook")
        try:
            return json.loads(payload)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid payload")

    if not sig_header:
        logger.warning("Stripe webhook: Missing signature header")
        raise HTTPException(status_code=400, detail="Missing signature")
    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.error("Stripe webhook: Invalid payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Stripe webhook: Invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")
    # Verified; work on plain JSON rather than StripeObject
    return json.loads(payload)


@router.post("/webhook", response_model=ResponseModel)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_client=Depends(get_optional_stripe_client),
):
    """Handle Stripe webhook events.

    Supported events:
    - checkout.session.completed / checkout.session.expired
    - customer.subscription.updated / customer.subscription.deleted
    - invoice.payment_succeeded / invoice.paid (subscription_cycle renewals)
    - invoice.payment_failed

    Errors propagate as 500 so Stripe redelivers the event.
    """
    event = _parse_event(await request.body(), request.headers.get("stripe-signature"))
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise HTTPException(status_code=400, detail="Invalid payload")

    obj = (event.get("data") or {}).get("object") or {}
    logger.info(f"Stripe webhook received: {event_type} ({event_id})")
    outcome = await PaymentEventProcessor(db, stripe_client=stripe_client).process(
        event_id, event_type, obj, metadata=dict(obj.get("metadata") or {})
    )
    msg = "Duplicate event ignored" if outcome.duplicate else "Webhook processed"
    return success_response(msg=msg, data=EventOutcomeOut(**asdict(outcome)).model_dump(mode="json"))
