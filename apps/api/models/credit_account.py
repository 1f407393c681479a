"""CreditAccount model holding a single owner's page balance."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


ACCOUNT_ACTIVE = "active"
ACCOUNT_ON_HOLD = "on_hold"
ACCOUNT_STATUSES = (ACCOUNT_ACTIVE, ACCOUNT_ON_HOLD)


class CreditAccount(Base):
    """Per-owner balance. Mutated only through services.credits."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("pages_remaining >= 0", name="ck_credit_accounts_pages_non_negative"),
        CheckConstraint("total_pages_used >= 0", name="ck_credit_accounts_used_non_negative"),
    )

    owner_id = Column(String, primary_key=True)
    pages_remaining = Column(Integer, nullable=False, default=0)
    total_pages_used = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=ACCOUNT_ACTIVE, index=True)
    is_early_adopter = Column(Boolean, nullable=False, default=False)
    registration_bonus_granted = Column(Boolean, nullable=False, default=False)
    user_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
