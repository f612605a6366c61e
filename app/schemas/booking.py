# app/schemas/booking.py
from datetime import date
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.utils.enums import CreditAction


class BookingRequest(BaseModel):
    accept_waitlist: Optional[bool] = Field(
        None,
        description="Join the waitlist when the session is full (defaults to the gym setting)",
        json_schema_extra={"example": True},
    )


class BookingOut(BaseModel):
    status: str
    registration_id: Optional[UUID] = None
    reason: Optional[str] = None
    remaining: Optional[int] = None
    states: list[str] = []


class CancelOut(BaseModel):
    status: str
    registration_id: UUID
    refunded: int = 0
    already_cancelled: bool = False
    promoted_registration_id: Optional[UUID] = None


class EntitlementOut(BaseModel):
    allow: bool
    can_waitlist: bool = False
    decision: Optional[str] = None
    reason: Optional[str] = None
    remaining: Optional[int] = None


class CheckInOut(BaseModel):
    user_id: UUID
    session_date: date
    membership_type: str
    already_checked_in: bool = False
    credits_deducted: int = 0
    remaining: Optional[int] = None


class CreditAdjustRequest(BaseModel):
    action: CreditAction = Field(..., json_schema_extra={"example": "add"})
    amount: int = Field(..., ge=0, le=1000, json_schema_extra={"example": 5})
    reason: Optional[str] = Field(None, max_length=200)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=200,
        description="Replaying the same key returns the original result",
    )


class CreditBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    membership_id: UUID
    balance_before: Optional[int] = None
    balance_after: int
    replayed: bool = False
