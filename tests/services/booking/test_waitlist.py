from __future__ import annotations

import pytest
from sqlalchemy import select

from app.core.exceptions import LedgerConflictError
from app.models.registration import Registration
from app.services.booking.coordinator import BookingStatus, RegistrationCoordinator
from app.services.booking.ledger import CreditLedger
from app.services.booking.waitlist import WaitlistPromoter, count_registered
from app.utils.enums import CreditAction, RegistrationStatus

pytestmark = pytest.mark.anyio

UNLIMITED = {"type": "unlimited"}
CREDITS = {"type": "credits", "initial_amount": 10}


async def _member(factory, rules, **membership_kwargs):
    user = await factory.user()
    plan = await factory.plan(rules)
    membership = await factory.membership(user, plan, **membership_kwargs)
    return user, membership


async def _status(db_session, registration_id):
    return (
        await db_session.execute(
            select(Registration.status, Registration.credits_debited).where(
                Registration.id == registration_id
            )
        )
    ).one()


async def test_cancellation_promotes_oldest_waitlist_entry(db_session, factory):
    holder, _ = await _member(factory, UNLIMITED)
    first_waiting, first_membership = await _member(factory, CREDITS, credits=1)
    second_waiting, _ = await _member(factory, UNLIMITED)
    course = await factory.course(capacity=1)
    coordinator = RegistrationCoordinator(db_session)

    seat = await coordinator.book(holder.id, course.id)
    first = await coordinator.book(first_waiting.id, course.id, accept_waitlist=True)
    second = await coordinator.book(second_waiting.id, course.id, accept_waitlist=True)
    assert first.status == second.status == BookingStatus.waitlisted
    # Joining the waitlist does not spend a credit
    assert await CreditLedger(db_session).balance(first_membership.id) == 1

    cancelled = await coordinator.cancel(seat.registration_id)

    assert cancelled.promoted_registration_id == first.registration_id
    promoted = await _status(db_session, first.registration_id)
    assert promoted.status == RegistrationStatus.registered
    assert promoted.credits_debited == 1
    assert await CreditLedger(db_session).balance(first_membership.id) == 0
    assert (await _status(db_session, second.registration_id)).status == RegistrationStatus.waitlist
    assert await count_registered(db_session, course.id) == 1


async def test_promotion_skips_entries_no_longer_entitled(db_session, factory):
    holder, _ = await _member(factory, UNLIMITED)
    broke, broke_membership = await _member(factory, CREDITS, credits=1)
    entitled, _ = await _member(factory, UNLIMITED)
    course = await factory.course(capacity=1)
    coordinator = RegistrationCoordinator(db_session)

    seat = await coordinator.book(holder.id, course.id)
    skipped = await coordinator.book(broke.id, course.id, accept_waitlist=True)
    next_in_line = await coordinator.book(entitled.id, course.id, accept_waitlist=True)

    # Credits spent elsewhere while waiting
    await CreditLedger(db_session).adjust(broke_membership.id, CreditAction.set, 0, "admin:drain")
    await db_session.commit()

    cancelled = await coordinator.cancel(seat.registration_id)

    assert cancelled.promoted_registration_id == next_in_line.registration_id
    assert (await _status(db_session, skipped.registration_id)).status == RegistrationStatus.waitlist
    assert (await _status(db_session, next_in_line.registration_id)).status == RegistrationStatus.registered


async def test_promotion_does_nothing_while_session_is_full(db_session, factory):
    holder, _ = await _member(factory, UNLIMITED)
    waiting, _ = await _member(factory, UNLIMITED)
    course = await factory.course(capacity=1)
    coordinator = RegistrationCoordinator(db_session)
    await coordinator.book(holder.id, course.id)
    queued = await coordinator.book(waiting.id, course.id, accept_waitlist=True)

    result = await WaitlistPromoter(db_session).promote(course.id)

    assert result.promoted_registration_id is None
    assert result.attempts == 0
    assert (await _status(db_session, queued.registration_id)).status == RegistrationStatus.waitlist


async def test_cancel_bounds_promotion_attempts(db_session, factory):
    course = await factory.course(capacity=1)
    coordinator = RegistrationCoordinator(
        db_session, promoter=WaitlistPromoter(db_session, max_attempts=2)
    )
    holder, _ = await _member(factory, UNLIMITED)
    seat = await coordinator.book(holder.id, course.id)
    waiting = []
    for _ in range(3):
        user, membership = await _member(factory, CREDITS, credits=1)
        waiting.append((await coordinator.book(user.id, course.id, accept_waitlist=True), membership.id))
    for _, membership_id in waiting:
        await CreditLedger(db_session).adjust(membership_id, CreditAction.set, 0, f"admin:drain:{membership_id}")
    await db_session.commit()

    cancelled = await coordinator.cancel(seat.registration_id)

    assert cancelled.status == "cancelled"
    assert cancelled.promoted_registration_id is None
    assert cancelled.promotion_attempts == 2
    # The third entry was never looked at
    for booking, _ in waiting:
        assert (await _status(db_session, booking.registration_id)).status == RegistrationStatus.waitlist


async def test_failed_promotion_debit_returns_entry_to_waitlist(db_session, factory, monkeypatch):
    holder, _ = await _member(factory, UNLIMITED)
    paying, paying_membership = await _member(factory, CREDITS, credits=1)
    free_rider, _ = await _member(factory, UNLIMITED)
    course = await factory.course(capacity=1)
    paying_membership_id = paying_membership.id
    coordinator = RegistrationCoordinator(db_session)

    seat = await coordinator.book(holder.id, course.id)
    first = await coordinator.book(paying.id, course.id, accept_waitlist=True)
    second = await coordinator.book(free_rider.id, course.id, accept_waitlist=True)
    seat_id, first_id, second_id = seat.registration_id, first.registration_id, second.registration_id

    async def conflicting_debit(membership_id, *args, **kwargs):
        raise LedgerConflictError(membership_id, 3)

    monkeypatch.setattr(coordinator.promoter.ledger, "debit", conflicting_debit)

    cancelled = await coordinator.cancel(seat_id)

    assert cancelled.promoted_registration_id == second_id
    assert cancelled.promotion_attempts == 2
    reverted = await _status(db_session, first_id)
    assert reverted.status == RegistrationStatus.waitlist
    assert reverted.credits_debited == 0
    assert (await _status(db_session, second_id)).status == RegistrationStatus.registered
    assert await CreditLedger(db_session).balance(paying_membership_id) == 1
    assert await count_registered(db_session, course.id) == 1


async def test_promotion_yields_to_a_booker_that_took_the_seat(db_session, factory, monkeypatch):
    waiting, _ = await _member(factory, UNLIMITED)
    course = await factory.course(capacity=1)
    coordinator = RegistrationCoordinator(db_session)
    holder, _ = await _member(factory, UNLIMITED)
    await coordinator.book(holder.id, course.id)
    queued = await coordinator.book(waiting.id, course.id, accept_waitlist=True)
    queued_id, course_id = queued.registration_id, course.id

    promoter = WaitlistPromoter(db_session)
    seen = []

    async def free_then_full(db, session_id):
        # First look says a seat is free; the re-check under the lock sees the holder
        seen.append(session_id)
        return 0 if len(seen) == 1 else 1

    monkeypatch.setattr("app.services.booking.waitlist.count_registered", free_then_full)

    result = await promoter.promote(course_id)

    assert result.promoted_registration_id is None
    assert (await _status(db_session, queued_id)).status == RegistrationStatus.waitlist
