import uuid
from sqlalchemy import Column, String, Integer, DateTime, Enum, ForeignKey, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import PurchaseStatus, PurchaseType


class PurchaseRecord(Base):
    __tablename__ = "purchase_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    stripe_session_id = Column(String, nullable=False, unique=True)
    checkout_url = Column(String, nullable=True)
    purchase_type = Column(Enum(PurchaseType), nullable=False)
    item_id = Column(UUID(as_uuid=True), nullable=True)
    item_name = Column(String, nullable=True)
    amount_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="eur")
    status = Column(Enum(PurchaseStatus), nullable=False, default=PurchaseStatus.pending)
    stripe_payment_intent_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # NULL until the first actual update; filled via onupdate
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    user = relationship("User", back_populates="purchases")
