"""Durable generation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

import redis.asyncio as aioredis
from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import update

from config import settings
from database import async_session_maker
from models.generation_job import ACTIVE_JOB_STATUSES, JOB_FAILED, GenerationJob
from models.pending_payment import PAYMENT_EXPIRED, PAYMENT_PENDING, PendingPayment

logger = logging.getLogger(__name__)

GENERATION_QUEUE_NAME = "generation_jobs"
QUEUE_TIMEOUT_MARGIN_SECONDS = 60


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=int(settings.JOB_TIMEOUT_SECONDS) + QUEUE_TIMEOUT_MARGIN_SECONDS,
    )


def enqueue_generation_job(job_id: str) -> Job:
    """Enqueue a generation job. The worker enforces the hard timeout itself."""
    queue = get_generation_queue()
    return queue.enqueue(
        "services.generation.process_generation_job",
        job_id,
        job_id=f"generation:{job_id}",
        retry=Retry(max=2, interval=[15, 60]),
        job_timeout=int(settings.JOB_TIMEOUT_SECONDS) + QUEUE_TIMEOUT_MARGIN_SECONDS,
        result_ttl=int(settings.JOB_RESULT_TTL_SECONDS),
        failure_ttl=int(settings.JOB_RESULT_TTL_SECONDS),
    )


async def broker_available() -> bool:
    """PING the broker once; used to pick the dispatcher at startup."""
    client = aioredis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        return True
    except Exception as exc:
        logger.warning("Broker unreachable at %s: %s", settings.REDIS_URL, exc)
        return False
    finally:
        await client.aclose()


async def recover_stalled_jobs(max_age_minutes: int = 30, session_maker=None) -> int:
    """Fail jobs left queued/processing by a crashed worker. No charge is applied."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    maker = session_maker or async_session_maker
    async with maker() as db:
        result = await db.execute(
            update(GenerationJob)
            .where(
                GenerationJob.status.in_(ACTIVE_JOB_STATUSES),
                GenerationJob.created_at < cutoff,
            )
            .values(
                status=JOB_FAILED,
                charge_status="not_charged",
                error_code="stalled",
                error_message="Generation was interrupted. Submit the pages again; you were not charged.",
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)


async def expire_stale_pending_payments(max_age_hours: int = 48, session_maker=None) -> int:
    """Mark checkouts that never settled as expired."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(max_age_hours, 1))
    maker = session_maker or async_session_maker
    async with maker() as db:
        result = await db.execute(
            update(PendingPayment)
            .where(PendingPayment.status == PAYMENT_PENDING, PendingPayment.created_at < cutoff)
            .values(status=PAYMENT_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)
