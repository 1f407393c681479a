"""CreditTransaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


KIND_PURCHASE = "purchase"
KIND_USAGE = "usage"
KIND_SUPPORT_GRANT = "support-grant"
KIND_REFUND_REVERSAL = "refund-reversal"
KIND_MIGRATION = "migration"


class CreditTransaction(Base):
    """Immutable credit ledger entry.

    ``reference_id`` is unique: it is the replay guard for payment credits,
    job charges and refund reversals.
    """

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    reference_id = Column(String, nullable=True, unique=True)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    amount_minor = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
