"""Waitlist promotion after a seat frees up."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import BookingError
from app.core.logging_config import get_logger
from app.models.course_session import CourseSession
from app.models.registration import Registration
from app.models.user import User
from app.services.booking.allowance import EntitlementService
from app.services.booking.ledger import CreditLedger
from app.utils.datetime_utils import get_current_utc_datetime
from app.utils.enums import RegistrationStatus

logger = get_logger(__name__)


async def count_registered(db: AsyncSession, session_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(Registration.id)).where(
            Registration.session_id == session_id,
            Registration.status == RegistrationStatus.registered,
        )
    )
    return int(result.scalar_one())


async def claim_seat(db: AsyncSession, session_id: uuid.UUID) -> int:
    """Take the next seat claim number; the UPDATE row-locks the session until commit."""
    result = await db.execute(
        update(CourseSession)
        .where(CourseSession.id == session_id)
        .values(seat_claims=CourseSession.seat_claims + 1)
        .returning(CourseSession.seat_claims)
        .execution_options(synchronize_session=False)
    )
    return int(result.scalar_one())


def debit_key(registration_id: uuid.UUID) -> str:
    return f"registration:{registration_id}:debit"


@dataclass
class PromotionResult:
    session_id: uuid.UUID
    promoted_registration_id: Optional[uuid.UUID] = None
    promoted_user_id: Optional[uuid.UUID] = None
    attempts: int = 0
    skipped: list[uuid.UUID] = field(default_factory=list)


class WaitlistPromoter:
    """Moves the oldest entitled waitlist entry into a freed seat."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CreditLedger] = None,
        entitlement: Optional[EntitlementService] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.ledger = ledger or CreditLedger(db)
        self.entitlement = entitlement or EntitlementService(db)
        self.max_attempts = max_attempts or settings.WAITLIST_MAX_PROMOTION_ATTEMPTS

    async def promote(self, session_id: uuid.UUID, now: Optional[datetime] = None) -> PromotionResult:
        now = now or get_current_utc_datetime()
        outcome = PromotionResult(session_id=session_id)

        course = await self.db.get(CourseSession, session_id)
        if course is None:
            logger.warning(f"Waitlist promotion skipped: session {session_id} not found")
            return outcome
        capacity = course.capacity

        while outcome.attempts < self.max_attempts:
            if await count_registered(self.db, session_id) >= capacity:
                break
            candidate = await self._next_waitlisted(session_id, exclude=outcome.skipped)
            if candidate is None:
                break

            outcome.attempts += 1
            candidate_id, candidate_user_id = candidate.id, candidate.user_id
            # A failed attempt rolls back and expires loaded rows; reload before evaluating
            course = await self.db.get(CourseSession, session_id)
            if await self._try_promote(candidate, course, now):
                outcome.promoted_registration_id = candidate_id
                outcome.promoted_user_id = candidate_user_id
                logger.info(
                    f"Promoted waitlist registration {candidate_id} (user {candidate_user_id}) "
                    f"into session {session_id} after {outcome.attempts} attempt(s)"
                )
                return outcome
            outcome.skipped.append(candidate_id)

        if outcome.attempts:
            logger.info(
                f"No waitlist promotion for session {session_id} "
                f"({outcome.attempts} candidate(s) not entitled)"
            )
        return outcome

    async def _next_waitlisted(
        self, session_id: uuid.UUID, exclude: list[uuid.UUID]
    ) -> Optional[Registration]:
        stmt = (
            select(Registration)
            .where(
                Registration.session_id == session_id,
                Registration.status == RegistrationStatus.waitlist,
            )
            .order_by(Registration.registered_at, Registration.id)
            .limit(1)
        )
        if exclude:
            stmt = stmt.where(Registration.id.not_in(exclude))
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def _try_promote(self, candidate: Registration, course: CourseSession, now: datetime) -> bool:
        registration_id = candidate.id
        user = await self.db.get(User, candidate.user_id)
        if user is None or not user.is_active:
            return False

        decision, membership = await self.entitlement.evaluate_for_course(user, course, now=now)
        if not decision.allowed:
            logger.info(
                f"Waitlisted user {user.id} no longer entitled for session {course.id}: {decision.reason}"
            )
            return False
        membership_id = membership.id if membership is not None else None

        seat_claim = await claim_seat(self.db, course.id)
        if await count_registered(self.db, course.id) >= course.capacity:
            # A booker took the seat while this candidate was evaluated
            await self.db.rollback()
            return False

        # Only flip rows that are still on the waitlist
        result = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == registration_id,
                Registration.status == RegistrationStatus.waitlist,
            )
            .values(
                status=RegistrationStatus.registered,
                membership_id=membership_id,
                seat_claim=seat_claim,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()

        if not decision.debit or membership_id is None:
            return True

        try:
            ledger_result = await self.ledger.debit(
                membership_id, decision.debit, debit_key(registration_id), reason="waitlist_promotion"
            )
            if ledger_result is not None:
                await self.db.execute(
                    update(Registration)
                    .where(Registration.id == registration_id)
                    .values(credits_debited=-ledger_result.delta)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
            return True
        except (BookingError, SQLAlchemyError) as exc:
            logger.warning(f"Debit failed while promoting registration {registration_id}: {exc}")
            await self.db.rollback()
            await self._revert_to_waitlist(registration_id)
            return False

    async def _revert_to_waitlist(self, registration_id: uuid.UUID) -> None:
        try:
            await self.db.execute(
                update(Registration)
                .where(
                    Registration.id == registration_id,
                    Registration.status == RegistrationStatus.registered,
                )
                .values(status=RegistrationStatus.waitlist, seat_claim=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.critical(
                f"Could not revert promoted registration {registration_id} to waitlist; "
                "seat held without debit",
                exc_info=True,
            )
