from __future__ import annotations

import itertools
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.api.dependencies.auth import get_current_user
from app.api.v1.routes.router import router as api_router
from app.core.exceptions import BookingError
from app.db.deps import Base, get_db
from app.main import booking_exception_handler
from app.models.course_session import CourseSession
from app.models.membership import Membership
from app.models.plan import MembershipPlan
from app.models.user import User
from app.services.payments.stripe_client import get_optional_stripe_client, get_stripe_client
from app.utils.datetime_utils import add_months
from app.utils.enums import MembershipStatus, PaymentType, Role, SessionType


class FakeStripeClient:
    """In-memory stand-in for StripeClient."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.checkout_sessions: list[dict[str, Any]] = []
        self.cancelled: list[tuple[str, bool]] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}

    def create_checkout_session(self, **kwargs):
        session_id = f"cs_test_{next(self._ids)}"
        self.checkout_sessions.append({"id": session_id, **kwargs})
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def retrieve_subscription(self, subscription_id: str):
        return self.subscriptions[subscription_id]

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = False):
        self.cancelled.append((subscription_id, at_period_end))
        return {"id": subscription_id, "status": "canceled"}


class Factory:
    """Seeds rows and commits, returning the ORM objects."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._seq = itertools.count(1)

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        return obj

    async def user(self, role: Role = Role.member, email: Optional[str] = None) -> User:
        n = next(self._seq)
        return await self._save(
            User(
                first_name="Test",
                last_name=f"User{n}",
                email=email or f"user{n}@example.com",
                role=role,
                is_active=True,
            )
        )

    async def plan(
        self,
        booking_rules: dict,
        name: Optional[str] = None,
        payment_type: PaymentType = PaymentType.subscription,
        duration_months: int = 1,
        stripe_price_id: Optional[str] = "price_test",
        price_minor: int = 4900,
        cancellation_allowed: bool = True,
    ) -> MembershipPlan:
        return await self._save(
            MembershipPlan(
                name=name or f"Plan {next(self._seq)}",
                booking_rules=booking_rules,
                duration_months=duration_months,
                payment_type=payment_type,
                stripe_price_id=stripe_price_id,
                price_minor=price_minor,
                currency="eur",
                auto_renewal=payment_type == PaymentType.subscription,
                cancellation_allowed=cancellation_allowed,
            )
        )

    async def membership(
        self,
        user: User,
        plan: MembershipPlan,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: MembershipStatus = MembershipStatus.active,
        credits: Optional[int] = None,
        stripe_subscription_id: Optional[str] = None,
    ) -> Membership:
        start_date = start_date or datetime.now(timezone.utc).date()
        usage = {"remaining_credits": credits} if credits is not None else {}
        return await self._save(
            Membership(
                user_id=user.id,
                plan_id=plan.id,
                status=status,
                start_date=start_date,
                end_date=end_date or add_months(start_date, 3),
                usage_data=usage,
                stripe_customer_id="cus_test" if stripe_subscription_id else None,
                stripe_subscription_id=stripe_subscription_id,
            )
        )

    async def course(
        self,
        starts_at: Optional[datetime] = None,
        capacity: int = 10,
        registration_deadline_minutes: int = 0,
        cancellation_deadline_minutes: int = 0,
        session_type: SessionType = SessionType.course,
    ) -> CourseSession:
        starts_at = starts_at or datetime.now(timezone.utc) + timedelta(days=1)
        return await self._save(
            CourseSession(
                title=f"Course {next(self._seq)}",
                session_type=session_type,
                starts_at=starts_at,
                ends_at=starts_at + timedelta(hours=1),
                capacity=capacity,
                registration_deadline_minutes=registration_deadline_minutes,
                cancellation_deadline_minutes=cancellation_deadline_minutes,
            )
        )


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Ensure pytest-anyio uses asyncio for all async tests."""
    return "asyncio"


@pytest.fixture(scope="session")
def test_app() -> FastAPI:
    app = FastAPI()
    app.include_router(api_router, prefix="/api/v1")
    app.add_exception_handler(BookingError, booking_exception_handler)
    return app


@pytest.fixture(scope="session")
def test_db_url(tmp_path_factory: pytest.TempPathFactory) -> str:
    db_path = tmp_path_factory.mktemp("data") / "test_booking.sqlite"
    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture(scope="session")
async def engine(test_db_url: str):
    engine = create_async_engine(test_db_url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture()
def factory(db_session: AsyncSession) -> Factory:
    return Factory(db_session)


@pytest.fixture()
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture()
def auth_state() -> SimpleNamespace:
    """Set ``auth_state.user`` to choose who the API client is authenticated as."""
    return SimpleNamespace(user=None)


@pytest_asyncio.fixture()
async def client(
    test_app: FastAPI,
    db_session: AsyncSession,
    fake_stripe: FakeStripeClient,
    auth_state: SimpleNamespace,
) -> AsyncGenerator[AsyncClient, None]:
    async def _get_test_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def _get_user():
        if auth_state.user is None:
            raise HTTPException(status_code=401, detail="Could not validate credentials")
        return await db_session.get(User, auth_state.user)

    test_app.dependency_overrides[get_db] = _get_test_db
    test_app.dependency_overrides[get_current_user] = _get_user
    test_app.dependency_overrides[get_stripe_client] = lambda: fake_stripe
    test_app.dependency_overrides[get_optional_stripe_client] = lambda: fake_stripe

    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client

    test_app.dependency_overrides.clear()
