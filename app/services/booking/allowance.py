"""Read side of the booking engine.

Loads everything the pure evaluator needs and exposes one
``remaining_allowance`` call that hides whether the plan keeps a stored
balance (credits) or derives it from booking history (metered).
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging_config import get_logger
from app.models.course_session import CourseSession
from app.models.membership import Membership
from app.models.plan import MembershipPlan
from app.models.registration import Registration
from app.models.training_session import TrainingSession
from app.models.user import User
from app.services.booking.entitlement import (
    EntitlementContext,
    EntitlementDecision,
    MembershipSnapshot,
    SessionSnapshot,
    evaluate_entitlement,
    metered_period,
)
from app.services.booking.rules import CreditRules, MeteredRules, parse_booking_rules
from app.utils.datetime_utils import day_bounds_utc, get_current_utc_datetime, local_date
from app.utils.enums import MembershipStatus, RegistrationStatus, Role, SessionType

logger = get_logger(__name__)


async def get_active_membership(db: AsyncSession, user_id: uuid.UUID) -> Optional[Membership]:
    """The user's single ``active`` membership, if any."""
    result = await db.execute(
        select(Membership)
        .where(
            Membership.user_id == user_id,
            Membership.status == MembershipStatus.active,
        )
        .order_by(Membership.start_date.desc())
        .limit(1)
    )
    return result.scalars().first()


async def load_snapshot(db: AsyncSession, membership: Membership) -> MembershipSnapshot:
    plan = await db.get(MembershipPlan, membership.plan_id)
    if plan is None:
        raise ValueError(f"Plan {membership.plan_id} not found for membership {membership.id}")
    # Column select bypasses the identity map so the balance is current
    row = (
        await db.execute(
            select(Membership.usage_data, Membership.status).where(
                Membership.id == membership.id
            )
        )
    ).one()
    usage = row.usage_data or {}
    return MembershipSnapshot(
        id=membership.id,
        status=row.status,
        start_date=membership.start_date,
        end_date=membership.end_date,
        rules=parse_booking_rules(plan.booking_rules),
        remaining_credits=int(usage.get("remaining_credits") or 0),
    )


async def count_booked_dates(
    db: AsyncSession,
    user_id: uuid.UUID,
    start: date,
    end: date,
) -> list[date]:
    """Dates of registered course sessions and open-gym check-ins in ``start..end``."""
    tz = settings.GYM_TIMEZONE
    lower, upper = day_bounds_utc(start, end, tz)
    course_rows = await db.execute(
        select(CourseSession.starts_at)
        .join(Registration, Registration.session_id == CourseSession.id)
        .where(
            Registration.user_id == user_id,
            Registration.status == RegistrationStatus.registered,
            CourseSession.starts_at >= lower - timedelta(days=1),
            CourseSession.starts_at < upper + timedelta(days=1),
        )
    )
    dates = [local_date(starts_at, tz) for (starts_at,) in course_rows.all()]

    checkin_rows = await db.execute(
        select(TrainingSession.session_date).where(
            TrainingSession.user_id == user_id,
            TrainingSession.session_date >= start,
            TrainingSession.session_date <= end,
        )
    )
    dates.extend(d for (d,) in checkin_rows.all())
    return [d for d in dates if start <= d <= end]


class EntitlementService:
    """Builds evaluator input from the database and runs the evaluator."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def evaluate(
        self,
        user: User,
        session: SessionSnapshot,
        now: Optional[datetime] = None,
        membership: Optional[Membership] = None,
    ) -> tuple[EntitlementDecision, Optional[Membership]]:
        now = now or get_current_utc_datetime()
        if membership is None:
            membership = await get_active_membership(self.db, user.id)

        snapshot = await load_snapshot(self.db, membership) if membership else None
        booked: list[date] = []
        if snapshot is not None and isinstance(snapshot.rules, MeteredRules):
            start, end = metered_period(snapshot.rules, snapshot.start_date, session.session_date)
            booked = await count_booked_dates(self.db, user.id, start, end)

        decision = evaluate_entitlement(
            EntitlementContext(
                membership=snapshot,
                session=session,
                as_of=now,
                role=user.role or Role.member,
                booked_dates=booked,
            )
        )
        logger.debug(
            f"Entitlement for user {user.id} on {session.session_date}: "
            f"{decision.decision.value} debit={decision.debit} reason={decision.reason}"
        )
        return decision, membership

    async def evaluate_for_course(
        self,
        user: User,
        course: CourseSession,
        now: Optional[datetime] = None,
    ) -> tuple[EntitlementDecision, Optional[Membership]]:
        return await self.evaluate(user, session_snapshot(course), now=now)

    async def remaining_allowance(
        self,
        membership: Membership,
        on: Optional[date] = None,
    ) -> Optional[int]:
        """Remaining bookable units; ``None`` means unbounded.

        Credit plans read the stored balance, metered plans recount the
        current period. Callers never need to know which one they hold.
        """
        snapshot = await load_snapshot(self.db, membership)
        if isinstance(snapshot.rules, CreditRules):
            return snapshot.remaining_credits
        if isinstance(snapshot.rules, MeteredRules):
            on = on or local_date(get_current_utc_datetime(), settings.GYM_TIMEZONE)
            start, end = metered_period(snapshot.rules, snapshot.start_date, on)
            used = len(await count_booked_dates(self.db, membership.user_id, start, end))
            return max(0, snapshot.rules.count - used)
        return None


def session_snapshot(course: CourseSession) -> SessionSnapshot:
    return SessionSnapshot(
        session_type=course.session_type or SessionType.course,
        session_date=local_date(course.starts_at, settings.GYM_TIMEZONE),
    )
