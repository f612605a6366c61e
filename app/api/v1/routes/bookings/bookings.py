"""Booking endpoints - entitlement check, book, cancel and open-gym check-in."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_user
from app.core.response import ResponseModel, error_response, success_response
from app.core.logging_config import get_logger
from app.db.deps import get_db
from app.models.user import User
from app.schemas.booking import BookingOut, BookingRequest, CancelOut, CheckInOut, EntitlementOut
from app.services.booking.coordinator import BookingStatus, RegistrationCoordinator

logger = get_logger(__name__)
router = APIRouter(tags=["bookings"])


@router.get("/sessions/{session_id}/entitlement", response_model=ResponseModel)
async def check_entitlement(
    session_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Whether the current user may book the session right now (no side effects)."""
    check = await RegistrationCoordinator(db).check_entitlement(current_user.id, session_id)
    return success_response(
        msg="Entitlement checked",
        data=EntitlementOut(**asdict(check)).model_dump(mode="json"),
    )


@router.post("/sessions/{session_id}/book", response_model=ResponseModel)
async def book_session(
    session_id: UUID,
    req: Optional[BookingRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Book a seat; joins the waitlist when the session is full and the member accepts it.

    Response:
        - status: 'confirmed' or 'waitlisted'
        - registration_id
        - remaining: credits / period allowance left (null = unlimited)
    """
    accept_waitlist = req.accept_waitlist if req is not None else None
    logger.info(f"Booking requested: user={current_user.id}, session={session_id}")
    result = await RegistrationCoordinator(db).book(
        current_user.id, session_id, accept_waitlist=accept_waitlist
    )
    data = BookingOut(
        status=result.status.value,
        registration_id=result.registration_id,
        reason=result.reason,
        remaining=result.remaining,
        states=[state.value for state in result.states],
    ).model_dump(mode="json")

    if result.status == BookingStatus.denied:
        return error_response(
            result.reason or "Booking failed",
            data={**data, **result.details},
            status_code=result.http_status,
            error_code=result.error_code,
        )
    if result.status == BookingStatus.waitlisted:
        return success_response(msg="Added to waitlist", data=data, status_code=202)
    return success_response(msg="Booking confirmed", data=data, status_code=201)


@router.post("/registrations/{registration_id}/cancel", response_model=ResponseModel)
async def cancel_registration(
    registration_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await RegistrationCoordinator(db).cancel(registration_id, acting_user=current_user)
    data = CancelOut(
        status=result.status,
        registration_id=result.registration_id,
        refunded=result.refunded,
        already_cancelled=result.already_cancelled,
        promoted_registration_id=result.promoted_registration_id,
    ).model_dump(mode="json")
    if result.status == "deadline_passed":
        return error_response(
            result.reason or "Cancellation deadline has passed",
            data=data,
            status_code=409,
            error_code="DEADLINE_PASSED",
        )
    return success_response(msg="Registration cancelled", data=data)


@router.post("/open-gym/check-in", response_model=ResponseModel)
async def open_gym_check_in(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await RegistrationCoordinator(db).check_in_open_gym(current_user.id)
    msg = "Already checked in today" if result.already_checked_in else "Checked in"
    return success_response(msg=msg, data=CheckInOut(**asdict(result)).model_dump(mode="json"))
