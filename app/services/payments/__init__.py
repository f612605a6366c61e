"""Payment services for Stripe checkout and billing events."""

from .stripe_client import StripeClient
from .checkout_service import CheckoutService
from .event_processor import EventOutcome, PaymentEventProcessor
from .upgrade_scheduler import UpgradeScheduler

__all__ = [
    "StripeClient",
    "CheckoutService",
    "EventOutcome",
    "PaymentEventProcessor",
    "UpgradeScheduler",
]
