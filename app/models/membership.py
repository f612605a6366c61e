import uuid
from sqlalchemy import (
    Column, Date, DateTime, Enum, ForeignKey, Index, Integer, JSON, String, Boolean, func, text
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import MembershipStatus


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        # One active membership per user
        Index(
            "uq_memberships_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("membership_plans.id"), nullable=False)

    status = Column(
        Enum(MembershipStatus),
        nullable=False,
        default=MembershipStatus.active,
    )
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)

    # remaining_credits for credit plans plus audit keys (original_end_date, cancelled_reason, ...)
    usage_data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    # Bumped on every write; the ledger compares-and-swaps on it, ORM flushes check it via version_id_col
    version = Column(Integer, nullable=False, default=1)

    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    auto_renewal = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # relationships
    plan = relationship("MembershipPlan", back_populates="memberships")
    user = relationship("User", back_populates="memberships")
    ledger_entries = relationship("CreditLedgerEntry", back_populates="membership")

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_credits(self) -> int:
        return int((self.usage_data or {}).get("remaining_credits") or 0)
