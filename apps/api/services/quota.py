"""Per-owner daily job quota."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.quota_counter import QuotaCounter
from services.owner import mask_id

logger = logging.getLogger(__name__)

QUOTA_MAX_ATTEMPTS = 3


@dataclass
class QuotaResult:
    allowed: bool
    current_count: int


def quota_key(owner_id: str) -> str:
    return f"jobs:{owner_id}"


def _today() -> date:
    return datetime.now(timezone.utc).date()


async def check_and_increment(
    owner_id: str,
    limit: int,
    db: AsyncSession,
    *,
    day: Optional[date] = None,
) -> QuotaResult:
    """Count one job for today if the owner is under ``limit``.

    The increment is conditional on ``count < limit`` so the stored count
    never passes the limit, whatever the concurrency.
    """
    key = quota_key(owner_id)
    current_day = day or _today()
    daily_limit = int(limit)
    if daily_limit <= 0:
        return QuotaResult(allowed=False, current_count=0)

    for _ in range(QUOTA_MAX_ATTEMPTS):
        bumped = await db.execute(
            update(QuotaCounter)
            .where(
                QuotaCounter.key == key,
                QuotaCounter.day == current_day,
                QuotaCounter.count < daily_limit,
            )
            .values(count=QuotaCounter.count + 1, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 1:
            count_result = await db.execute(
                select(QuotaCounter.count).where(QuotaCounter.key == key, QuotaCounter.day == current_day)
            )
            count = int(count_result.scalar() or 0)
            await db.commit()
            return QuotaResult(allowed=True, current_count=count)

        existing = await db.execute(
            select(QuotaCounter.count).where(QuotaCounter.key == key, QuotaCounter.day == current_day)
        )
        count = existing.scalar()
        if count is not None:
            await db.rollback()
            logger.warning("Daily quota exceeded for %s (%s/%s)", mask_id(owner_id), count, daily_limit)
            return QuotaResult(allowed=False, current_count=int(count))

        db.add(QuotaCounter(key=key, day=current_day, count=1))
        try:
            await db.commit()
            return QuotaResult(allowed=True, current_count=1)
        except IntegrityError:
            # A concurrent first call created today's row; retry the conditional increment.
            await db.rollback()

    raise RuntimeError(f"quota counter for {mask_id(owner_id)} could not be updated")
