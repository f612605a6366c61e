import uuid
from sqlalchemy import Column, Date, DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from app.db.deps import Base


class TrainingSession(Base):
    """Open-gym check-in; counts toward metered booking periods."""

    __tablename__ = "training_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "session_date", "session_type", name="uq_training_sessions_user_day_type"),
    )

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    session_date = Column(Date, nullable=False)
    session_type = Column(String, nullable=False, default="open_gym")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
