"""Per-owner per-day quota counter."""

from sqlalchemy import Column, Date, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class QuotaCounter(Base):
    """Daily request count; a new day key starts a fresh row."""

    __tablename__ = "quota_counters"

    key = Column(String, primary_key=True)
    day = Column(Date, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
