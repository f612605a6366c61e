import uuid
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime


class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger_entries"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    membership_id = Column(PG_UUID(as_uuid=True), ForeignKey("memberships.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=get_current_utc_datetime)

    membership = relationship("Membership", back_populates="ledger_entries")
