import uuid
from sqlalchemy import Column, DateTime, Enum, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship
from app.db.deps import Base
from app.utils.enums import CourseStatus, SessionType


class CourseSession(Base):
    __tablename__ = "course_sessions"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String, nullable=False)
    session_type = Column(Enum(SessionType), nullable=False, default=SessionType.course)
    starts_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    capacity = Column(Integer, nullable=False)
    # Incremented under the row lock each time a seat is claimed
    seat_claims = Column(Integer, nullable=False, default=0, server_default="0")
    registration_deadline_minutes = Column(Integer, nullable=False, default=0)
    cancellation_deadline_minutes = Column(Integer, nullable=False, default=0)
    status = Column(Enum(CourseStatus), nullable=False, default=CourseStatus.active)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    registrations = relationship("Registration", back_populates="session")
