import uuid
from sqlalchemy import (
    Column, DateTime, Enum, ForeignKey, Index, Integer, String, text
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import RegistrationStatus
from app.utils.datetime_utils import get_current_utc_datetime


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        # At most one live registration per (user, session); cancelled rows are kept for audit
        Index(
            "uq_registrations_live_user_session",
            "user_id",
            "session_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
        Index("ix_registrations_session_status", "session_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(UUID(as_uuid=True), ForeignKey("course_sessions.id"), nullable=False)
    membership_id = Column(UUID(as_uuid=True), ForeignKey("memberships.id"), nullable=True)

    status = Column(Enum(RegistrationStatus), nullable=False)
    # Waitlist FIFO order
    registered_at = Column(DateTime(timezone=True), nullable=False, default=get_current_utc_datetime)
    # Claim number taken from the session counter; ranks seat holders
    seat_claim = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String, nullable=True)
    credits_debited = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="registrations")
    session = relationship("CourseSession", back_populates="registrations")
