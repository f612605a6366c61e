import uuid
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum, JSON, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID, JSONB
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import PaymentType


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, unique=True)
    # Raw JSON as edited by admins; decode with app.services.booking.rules.parse_booking_rules
    booking_rules = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    duration_months = Column(Integer, nullable=False, default=1)
    payment_type = Column(Enum(PaymentType), nullable=False, default=PaymentType.subscription)
    stripe_price_id = Column(String, nullable=True)
    price_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="eur")
    auto_renewal = Column(Boolean, nullable=False, default=False)
    cancellation_allowed = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    memberships = relationship("Membership", back_populates="plan")
