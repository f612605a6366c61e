"""Stripe API client - thin wrapper for the Stripe calls the gym uses."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional

import stripe

from app.core.config import settings
from app.core.exceptions import ExternalUnavailableError
from app.core.logging_config import get_logger

logger = get_logger(__name__)


class StripeClient:
    """Clean wrapper for Stripe API calls.

    Services receive an instance through their constructor so tests can pass
    an in-memory fake with the same method names.
    """

    def __init__(self):
        """Initialize Stripe with API key."""
        if not settings.STRIPE_SECRET_KEY:
            raise RuntimeError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = settings.STRIPE_SECRET_KEY
        logger.info("Stripe client initialized")

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        mode: str = "subscription",
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        billing_cycle_anchor: Optional[date] = None,
    ) -> stripe.checkout.Session:
        """Create a Stripe checkout session.

        Args:
            price_id: Stripe Price ID (e.g., price_1234...)
            success_url: URL to redirect after successful payment
            cancel_url: URL to redirect if user cancels
            metadata: user_id, plan_id/product_id, purchase_type, ...
            mode: ``subscription`` for recurring plans, ``payment`` otherwise
            customer_id: Existing Stripe customer to reuse
            customer_email: Prefill when no customer exists yet
            billing_cycle_anchor: First billing date for deferred upgrades

        Returns:
            Stripe checkout session object

        Raises:
            stripe.StripeError: If Stripe API call fails
        """
        params: Dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        if mode == "subscription":
            subscription_data: Dict[str, Any] = {"metadata": metadata}
            if billing_cycle_anchor is not None:
                anchor = datetime.combine(billing_cycle_anchor, time.min, tzinfo=timezone.utc)
                subscription_data["billing_cycle_anchor"] = int(anchor.timestamp())
                subscription_data["proration_behavior"] = "none"
            params["subscription_data"] = subscription_data
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            logger.info(f"Creating Stripe checkout: price_id={price_id}, mode={mode}, metadata={metadata}")
            session = stripe.checkout.Session.create(**params)
            logger.info(f"Stripe checkout created: session_id={session.id}, url={session.url}")
            return session
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed: {e}")
            raise

    def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            logger.info(f"Retrieved Stripe subscription: {subscription_id}, status={subscription.status}")
            return subscription
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve Stripe subscription {subscription_id}: {e}")
            raise

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = False) -> stripe.Subscription:
        """Cancel a Stripe subscription, now or at the end of the current period."""
        try:
            if at_period_end:
                subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
                logger.info(f"Stripe subscription {subscription_id} will cancel at period end")
            else:
                subscription = stripe.Subscription.cancel(subscription_id)
                logger.info(f"Stripe subscription {subscription_id} cancelled immediately")
            return subscription
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel Stripe subscription {subscription_id}: {e}")
            raise


_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """FastAPI dependency; one client per process."""
    global _client
    if not settings.STRIPE_SECRET_KEY:
        raise ExternalUnavailableError("Online payments are not configured")
    if _client is None:
        _client = StripeClient()
    return _client


def get_optional_stripe_client() -> Optional[StripeClient]:
    """Webhook dependency: handlers skip best-effort Stripe calls when unconfigured."""
    if not settings.STRIPE_SECRET_KEY:
        return None
    return get_stripe_client()
