# app/schemas/payments.py
from datetime import date
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    """Checkout request payload; exactly one of plan_id / product_id."""
    plan_id: Optional[UUID] = None
    product_id: Optional[UUID] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class UpgradeCheckoutRequest(BaseModel):
    plan_id: UUID
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutOut(BaseModel):
    checkout_url: str
    session_id: str
    purchase_type: str
    billing_start_date: Optional[date] = None


class PaymentEventIn(BaseModel):
    """Billing event already verified by the ingress in front of this service."""
    event_id: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[dict[str, Any]] = None
    source: str = "stripe"


class EventOutcomeOut(BaseModel):
    event_id: str
    event_type: str
    duplicate: bool
    handled: bool


class ActivationOut(BaseModel):
    activated: list[UUID]


class MembershipCancellationOut(BaseModel):
    membership_id: UUID
    end_date: Optional[date] = None
    cancellation_requested_at: str
