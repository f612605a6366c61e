"""Payment routes package - Stripe checkout and billing-event ingress."""

from .checkout import router as checkout_router
from .events import router as events_router
from .stripe_webhooks import router as stripe_webhooks_router

__all__ = ["checkout_router", "events_router", "stripe_webhooks_router"]
