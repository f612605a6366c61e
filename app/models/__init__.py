# app/models/__init__.py

from .user import User
from .plan import MembershipPlan
from .membership import Membership
from .course_session import CourseSession
from .registration import Registration
from .training_session import TrainingSession
from .credit_ledger import CreditLedgerEntry
from .processed_event import ProcessedEvent
from .purchase import PurchaseRecord
from .shop_product import ShopProduct

__all__ = [
    "User",
    "MembershipPlan",
    "Membership",
    "CourseSession",
    "Registration",
    "TrainingSession",
    "CreditLedgerEntry",
    "ProcessedEvent",
    "PurchaseRecord",
    "ShopProduct",
]
