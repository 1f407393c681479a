"""Guest-to-user credit transfer log."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class CreditTransfer(Base):
    """One row per (device owner, user owner) pair; the unique key makes migration run once."""

    __tablename__ = "credit_transfers"
    __table_args__ = (
        UniqueConstraint("device_owner_id", "user_owner_id", name="uq_credit_transfers_pair"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    device_owner_id = Column(String, nullable=False, index=True)
    user_owner_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
