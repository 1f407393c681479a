"""WebhookEvent model used to claim and settle gateway callbacks once."""

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


EVENT_PROCESSING = "processing"
EVENT_SUCCEEDED = "succeeded"
EVENT_FAILED = "failed"


class WebhookEvent(Base):
    """Claim record for a distinct payment event (transaction + outcome)."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_status_claimed", "status", "claimed_at"),
    )

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=EVENT_PROCESSING)
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
