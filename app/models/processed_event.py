import uuid
from sqlalchemy import Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from app.db.deps import Base
from app.utils.datetime_utils import get_current_utc_datetime


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Unique constraint is the only guard against double processing
    event_id = Column(String, nullable=False, unique=True)
    event_type = Column(String, nullable=False)
    source = Column(String, nullable=False, default="stripe")
    processed_at = Column(DateTime(timezone=True), nullable=False, default=get_current_utc_datetime)
