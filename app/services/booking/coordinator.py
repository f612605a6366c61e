"""Registration coordinator.

Booking is a small state machine::

    CHECKING -> [WAITLIST_OFFERED] -> RESERVING -> DEBITING -> CONFIRMED
                                          |            |
                                          +------> ROLLING_BACK -> FAILED

The seat is reserved (and committed) before the ledger debit. If the debit
fails the reservation is soft-cancelled so a failed booking never keeps a
seat and never leaves a debit behind.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    BookingError,
    CapacityExceededError,
    ConflictError,
    DeadlinePassedError,
    NotEntitledError,
    NotFoundError,
    ValidationError,
)
from app.core.logging_config import get_logger
from app.models.course_session import CourseSession
from app.models.membership import Membership
from app.models.registration import Registration
from app.models.training_session import TrainingSession
from app.models.user import User
from app.services.booking.allowance import EntitlementService, get_active_membership, load_snapshot
from app.services.booking.entitlement import STAFF_ROLES, SessionSnapshot
from app.services.booking.ledger import CreditLedger
from app.services.booking.rules import CreditRules, MeteredRules, RestrictedAccessRules
from app.services.booking.waitlist import (
    PromotionResult,
    WaitlistPromoter,
    claim_seat,
    count_registered,
    debit_key,
)
from app.utils.datetime_utils import ensure_utc, get_current_utc_datetime, local_date
from app.utils.enums import CourseStatus, RegistrationStatus, SessionType

logger = get_logger(__name__)


class BookingState(str, enum.Enum):
    checking = "CHECKING"
    waitlist_offered = "WAITLIST_OFFERED"
    reserving = "RESERVING"
    debiting = "DEBITING"
    confirmed = "CONFIRMED"
    rolling_back = "ROLLING_BACK"
    failed = "FAILED"


class BookingStatus(str, enum.Enum):
    confirmed = "confirmed"
    waitlisted = "waitlisted"
    denied = "denied"


@dataclass
class BookingResult:
    status: BookingStatus
    registration_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
    http_status: int = 200
    remaining: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
    states: list[BookingState] = field(default_factory=list)


@dataclass
class CancelResult:
    status: str
    registration_id: uuid.UUID
    refunded: int = 0
    already_cancelled: bool = False
    reason: Optional[str] = None
    promoted_registration_id: Optional[uuid.UUID] = None
    promotion_attempts: int = 0


@dataclass
class EntitlementCheck:
    allow: bool
    can_waitlist: bool = False
    decision: Optional[str] = None
    reason: Optional[str] = None
    remaining: Optional[int] = None


@dataclass
class CheckInResult:
    user_id: uuid.UUID
    session_date: date
    membership_type: str
    already_checked_in: bool = False
    credits_deducted: int = 0
    remaining: Optional[int] = None


def refund_key(registration_id: uuid.UUID) -> str:
    return f"registration:{registration_id}:refund"


class RegistrationCoordinator:
    """Orchestrates evaluator, seat reservation, ledger debit and rollback."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CreditLedger] = None,
        entitlement: Optional[EntitlementService] = None,
        promoter: Optional[WaitlistPromoter] = None,
    ):
        self.db = db
        self.ledger = ledger or CreditLedger(db)
        self.entitlement = entitlement or EntitlementService(db)
        self.promoter = promoter or WaitlistPromoter(db, ledger=self.ledger, entitlement=self.entitlement)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def _load_user(self, user_id: uuid.UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        return user

    async def _load_session(self, session_id: uuid.UUID) -> CourseSession:
        course = await self.db.get(CourseSession, session_id)
        if course is None:
            raise NotFoundError("Session not found")
        if course.status == CourseStatus.cancelled:
            raise ValidationError("Session has been cancelled")
        return course

    async def _count_registered(self, session_id: uuid.UUID) -> int:
        return await count_registered(self.db, session_id)

    async def _live_registration(self, user_id: uuid.UUID, session_id: uuid.UUID) -> Optional[Registration]:
        result = await self.db.execute(
            select(Registration).where(
                Registration.user_id == user_id,
                Registration.session_id == session_id,
                Registration.status != RegistrationStatus.cancelled,
            )
        )
        return result.scalars().first()

    @staticmethod
    def _check_registration_deadline(course: CourseSession, now: datetime) -> None:
        starts_at = ensure_utc(course.starts_at)
        if now >= starts_at:
            raise DeadlinePassedError("Session has already started")
        deadline = starts_at - timedelta(minutes=course.registration_deadline_minutes or 0)
        if now > deadline:
            raise DeadlinePassedError("Registration deadline has passed")

    # ------------------------------------------------------------------
    # Entitlement check (read only)
    # ------------------------------------------------------------------
    async def check_entitlement(
        self, user_id: uuid.UUID, session_id: uuid.UUID, now: Optional[datetime] = None
    ) -> EntitlementCheck:
        now = ensure_utc(now or get_current_utc_datetime())
        user = await self._load_user(user_id)
        course = await self._load_session(session_id)
        try:
            self._check_registration_deadline(course, now)
        except DeadlinePassedError as exc:
            return EntitlementCheck(allow=False, reason=exc.message)

        decision, _ = await self.entitlement.evaluate_for_course(user, course, now=now)
        if not decision.allowed:
            return EntitlementCheck(
                allow=False,
                decision=decision.decision.value,
                reason=decision.reason,
                remaining=decision.remaining,
            )

        if await self._count_registered(session_id) >= course.capacity:
            decision = decision.waitlist_only()
            return EntitlementCheck(
                allow=False,
                can_waitlist=decision.can_waitlist and settings.ALLOW_WAITLIST,
                decision=decision.decision.value,
                reason=decision.reason,
                remaining=decision.remaining,
            )
        return EntitlementCheck(
            allow=True,
            decision=decision.decision.value,
            reason=decision.reason,
            remaining=decision.remaining,
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------
    async def book(
        self,
        user_id: uuid.UUID,
        session_id: uuid.UUID,
        accept_waitlist: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        """Book a seat, or a waitlist slot when the session is full.

        Failures come back as a ``denied`` result carrying the error code;
        unexpected database errors propagate.
        """
        now = ensure_utc(now or get_current_utc_datetime())
        if accept_waitlist is None:
            accept_waitlist = settings.ALLOW_WAITLIST
        accept_waitlist = accept_waitlist and settings.ALLOW_WAITLIST
        states: list[BookingState] = [BookingState.checking]

        try:
            user = await self._load_user(user_id)
            course = await self._load_session(session_id)
            capacity = course.capacity
            self._check_registration_deadline(course, now)

            if await self._live_registration(user_id, session_id) is not None:
                raise ValidationError("You are already registered for this session")

            decision, membership = await self.entitlement.evaluate_for_course(user, course, now=now)
            if not decision.allowed:
                raise NotEntitledError(decision.reason or "Not entitled to book this session")
            membership_id = membership.id if membership is not None else None

            waitlisted = await self._count_registered(session_id) >= capacity
            if waitlisted:
                decision = decision.waitlist_only()
                states.append(BookingState.waitlist_offered)
                if not accept_waitlist:
                    raise CapacityExceededError(
                        "Course is full", details={"can_waitlist": settings.ALLOW_WAITLIST}
                    )

            states.append(BookingState.reserving)
            seat_claim = None
            if not waitlisted:
                # Holds the session row lock from here until the reservation commits
                seat_claim = await claim_seat(self.db, session_id)
                if await self._count_registered(session_id) >= capacity:
                    waitlisted = True
                    decision = decision.waitlist_only()
                    states.append(BookingState.waitlist_offered)
                    if not accept_waitlist:
                        await self.db.commit()
                        raise CapacityExceededError(
                            "Course is full", details={"can_waitlist": settings.ALLOW_WAITLIST}
                        )
                    seat_claim = None
            registration_id = await self._reserve(
                user_id,
                session_id,
                membership_id,
                RegistrationStatus.waitlist if waitlisted else RegistrationStatus.registered,
                seat_claim,
            )

            if not waitlisted and not await self._holds_seat(registration_id, session_id, capacity):
                # Lost a race for the last seat
                decision = decision.waitlist_only()
                states.append(BookingState.waitlist_offered)
                if accept_waitlist:
                    await self._move_to_waitlist(registration_id)
                    waitlisted = True
                else:
                    await self._soft_cancel(registration_id, "capacity_exceeded", now)
                    raise CapacityExceededError(
                        "Course is full", details={"can_waitlist": settings.ALLOW_WAITLIST}
                    )

            if waitlisted:
                logger.info(f"User {user_id} waitlisted for session {session_id} ({registration_id})")
                return BookingResult(
                    status=BookingStatus.waitlisted,
                    registration_id=registration_id,
                    reason=decision.reason,
                    remaining=decision.remaining,
                    states=states,
                )

            remaining = decision.remaining
            if decision.debit and membership_id is not None:
                states.append(BookingState.debiting)
                remaining = await self._debit(registration_id, membership_id, decision.debit, now, states)
                if remaining is None and decision.remaining is not None:
                    remaining = max(0, decision.remaining - decision.debit)

            states.append(BookingState.confirmed)
            logger.info(f"User {user_id} booked session {session_id} ({registration_id})")
            return BookingResult(
                status=BookingStatus.confirmed,
                registration_id=registration_id,
                remaining=remaining,
                states=states,
            )

        except BookingError as exc:
            states.append(BookingState.failed)
            logger.info(f"Booking denied for user {user_id} on session {session_id}: {exc.code} {exc.message}")
            return BookingResult(
                status=BookingStatus.denied,
                reason=exc.message,
                error_code=exc.code,
                http_status=exc.status_code,
                details=exc.details,
                states=states,
            )

    async def _reserve(
        self,
        user_id: uuid.UUID,
        session_id: uuid.UUID,
        membership_id: Optional[uuid.UUID],
        status: RegistrationStatus,
        seat_claim: Optional[int] = None,
    ) -> uuid.UUID:
        registration = Registration(
            user_id=user_id,
            session_id=session_id,
            membership_id=membership_id,
            status=status,
            seat_claim=seat_claim,
            # Wall clock, not the caller's "now": this orders the waitlist
            registered_at=get_current_utc_datetime(),
        )
        self.db.add(registration)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError("You are already registered for this session")
        return registration.id

    async def _holds_seat(self, registration_id: uuid.UUID, session_id: uuid.UUID, capacity: int) -> bool:
        """True when the row's seat claim ranks within the first ``capacity`` registered rows."""
        result = await self.db.execute(
            select(Registration.id)
            .where(
                Registration.session_id == session_id,
                Registration.status == RegistrationStatus.registered,
            )
            .order_by(Registration.seat_claim, Registration.id)
            .limit(capacity)
        )
        return registration_id in set(result.scalars().all())

    async def _debit(
        self,
        registration_id: uuid.UUID,
        membership_id: uuid.UUID,
        amount: int,
        now: datetime,
        states: list[BookingState],
    ):
        try:
            ledger_result = await self.ledger.debit(
                membership_id, amount, debit_key(registration_id), reason="booking"
            )
            if ledger_result is not None:
                await self.db.execute(
                    update(Registration)
                    .where(Registration.id == registration_id)
                    .values(credits_debited=-ledger_result.delta)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
        except (BookingError, SQLAlchemyError) as exc:
            states.append(BookingState.rolling_back)
            await self.db.rollback()
            error = exc if isinstance(exc, BookingError) else ConflictError(
                "The booking could not be completed, please try again"
            )
            logger.warning(f"Debit failed for registration {registration_id}: {exc}; rolling back")
            await self._soft_cancel(registration_id, f"debit_failed:{error.code.lower()}", now)
            raise error from exc
        return ledger_result.balance_after if ledger_result is not None else None

    async def _move_to_waitlist(self, registration_id: uuid.UUID) -> None:
        await self.db.execute(
            update(Registration)
            .where(Registration.id == registration_id)
            .values(status=RegistrationStatus.waitlist, seat_claim=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _soft_cancel(self, registration_id: uuid.UUID, reason: str, now: datetime) -> None:
        try:
            await self.db.execute(
                update(Registration)
                .where(
                    Registration.id == registration_id,
                    Registration.status != RegistrationStatus.cancelled,
                )
                .values(status=RegistrationStatus.cancelled, cancelled_at=now, cancel_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.critical(
                f"Rollback of registration {registration_id} failed; phantom seat may remain",
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def cancel(
        self,
        registration_id: uuid.UUID,
        now: Optional[datetime] = None,
        acting_user: Optional[User] = None,
    ) -> CancelResult:
        now = ensure_utc(now or get_current_utc_datetime())
        # Booking writes status/credits_debited with core UPDATEs; reload the row
        registration = await self.db.get(Registration, registration_id, populate_existing=True)
        if registration is None:
            raise NotFoundError("Registration not found")
        if (
            acting_user is not None
            and acting_user.role not in STAFF_ROLES
            and registration.user_id != acting_user.id
        ):
            raise NotFoundError("Registration not found")

        if registration.status == RegistrationStatus.cancelled:
            return CancelResult(status="cancelled", registration_id=registration_id, already_cancelled=True)

        course = await self.db.get(CourseSession, registration.session_id)
        if course is None:
            raise NotFoundError("Session not found")
        deadline = ensure_utc(course.starts_at) - timedelta(minutes=course.cancellation_deadline_minutes or 0)
        if now > deadline:
            return CancelResult(
                status="deadline_passed",
                registration_id=registration_id,
                reason="Cancellation deadline has passed",
            )

        session_id = registration.session_id
        held_seat = registration.status == RegistrationStatus.registered
        debited = registration.credits_debited or 0
        membership_id = registration.membership_id

        registration.status = RegistrationStatus.cancelled
        registration.cancelled_at = now
        registration.cancel_reason = "cancelled_by_user"
        await self.db.commit()
        logger.info(f"Registration {registration_id} cancelled")

        refunded = 0
        if held_seat and debited > 0 and membership_id is not None:
            refunded = await self._refund(registration_id, membership_id, debited)

        promotion: Optional[PromotionResult] = None
        if held_seat:
            promotion = await self.promoter.promote(session_id, now=now)

        return CancelResult(
            status="cancelled",
            registration_id=registration_id,
            refunded=refunded,
            promoted_registration_id=promotion.promoted_registration_id if promotion else None,
            promotion_attempts=promotion.attempts if promotion else 0,
        )

    async def _refund(self, registration_id: uuid.UUID, membership_id: uuid.UUID, amount: int) -> int:
        try:
            result = await self.ledger.credit(
                membership_id, amount, refund_key(registration_id), reason="refund"
            )
            await self.db.commit()
        except (BookingError, SQLAlchemyError):
            await self.db.rollback()
            logger.error(
                f"Refund of {amount} credit(s) for registration {registration_id} failed",
                exc_info=True,
            )
            return 0
        return result.delta if result is not None else 0

    # ------------------------------------------------------------------
    # Open gym
    # ------------------------------------------------------------------
    async def check_in_open_gym(self, user_id: uuid.UUID, now: Optional[datetime] = None) -> CheckInResult:
        """Record a free-training check-in for today (one per local day)."""
        now = ensure_utc(now or get_current_utc_datetime())
        user = await self._load_user(user_id)
        today = local_date(now, settings.GYM_TIMEZONE)

        existing = (
            await self.db.execute(
                select(TrainingSession).where(
                    TrainingSession.user_id == user_id,
                    TrainingSession.session_date == today,
                    TrainingSession.session_type == SessionType.open_gym.value,
                )
            )
        ).scalars().first()

        membership = await get_active_membership(self.db, user_id)
        if existing is not None:
            return CheckInResult(
                user_id=user_id,
                session_date=today,
                membership_type=await self._membership_type(membership),
                already_checked_in=True,
                remaining=await self._remaining(membership),
            )

        decision, membership = await self.entitlement.evaluate(
            user, SessionSnapshot(session_type=SessionType.open_gym, session_date=today), now=now
        )
        if not decision.allowed:
            raise NotEntitledError(decision.reason or "Not entitled to open gym")

        self.db.add(
            TrainingSession(
                user_id=user_id,
                session_date=today,
                session_type=SessionType.open_gym.value,
            )
        )
        credits_deducted = 0
        try:
            await self.db.flush()
            membership_type = await self._membership_type(membership)
            if membership_type == "credits" and decision.debit:
                result = await self.ledger.debit(
                    membership.id, decision.debit, f"checkin:{user_id}:{today.isoformat()}", reason="open_gym"
                )
                credits_deducted = -result.delta if result is not None else 0
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError("Already checked in today")
        except BookingError:
            await self.db.rollback()
            raise

        logger.info(f"User {user_id} checked in to open gym on {today}")
        return CheckInResult(
            user_id=user_id,
            session_date=today,
            membership_type=membership_type,
            credits_deducted=credits_deducted,
            remaining=await self._remaining(membership),
        )

    async def _membership_type(self, membership: Optional[Membership]) -> str:
        if membership is None:
            return "staff"
        rules = (await load_snapshot(self.db, membership)).rules
        if isinstance(rules, CreditRules):
            return "credits"
        if isinstance(rules, MeteredRules):
            return "metered"
        if isinstance(rules, RestrictedAccessRules):
            return "open_gym_only"
        return "unlimited"

    async def _remaining(self, membership: Optional[Membership]) -> Optional[int]:
        if membership is None:
            return None
        return await self.entitlement.remaining_allowance(membership)
