"""Job submission and polling."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_account import ACCOUNT_ON_HOLD
from models.generation_job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    GenerationJob,
)
from services.credits import ensure_account
from services.dispatch import JobDispatcher
from services.errors import (
    AccountOnHoldError,
    BrokerUnavailableError,
    DuplicateInFlightError,
    InsufficientBalanceError,
    QuotaExceededError,
)
from services.idempotency import IdempotencyStore, generate_idempotency_key
from services.owner import mask_id
from services.quota import check_and_increment

logger = logging.getLogger(__name__)

DEFAULT_ETA_SECONDS = 60


@dataclass
class SubmitResult:
    result_id: str
    job_id: str
    status: str
    cached: bool


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def estimate_eta_seconds(job: GenerationJob, now: Optional[datetime] = None) -> int:
    """Linear extrapolation from elapsed time and reported progress."""
    progress = int(job.progress or 0)
    started = _as_utc(job.started_at)
    if not started or progress <= 0:
        return DEFAULT_ETA_SECONDS
    elapsed = ((now or datetime.now(timezone.utc)) - started).total_seconds()
    if progress >= 100:
        return 0
    return max(int(elapsed * (100 - progress) / progress), 1)


async def get_job_by_result_id(result_id: str, db: AsyncSession) -> Optional[GenerationJob]:
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.result_id == result_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def submit_job(
    *,
    owner_id: str,
    payload: Dict[str, Any],
    billable_amount: int,
    request_id: str,
    db: AsyncSession,
    store: IdempotencyStore,
    dispatcher: JobDispatcher,
    daily_limit: int,
) -> SubmitResult:
    """Deduplicate, meter, pre-check the balance and dispatch one job.

    The balance is only checked here; the charge happens when the worker
    completes the job.
    """
    key = generate_idempotency_key(owner_id, request_id)
    cached = await store.lookup(key)
    if cached:
        existing = await get_job_by_result_id(cached.result_id, db)
        status = JOB_QUEUED if existing is not None and existing.status == JOB_QUEUED else JOB_PROCESSING
        logger.info("Idempotency hit for %s; returning result %s", mask_id(owner_id), cached.result_id)
        return SubmitResult(result_id=cached.result_id, job_id=cached.job_id, status=status, cached=True)

    if not await store.reserve(key):
        raise DuplicateInFlightError(
            "This request is already being processed. Wait and poll for the result.",
        )

    try:
        quota = await check_and_increment(owner_id, daily_limit, db)
        if not quota.allowed:
            raise QuotaExceededError(
                "Daily generation limit reached. Try again tomorrow.",
                daily_limit=int(daily_limit),
                current_count=quota.current_count,
            )

        account = await ensure_account(owner_id, db)
        if account.status == ACCOUNT_ON_HOLD:
            raise AccountOnHoldError("Account is on hold. Contact support.")
        pages_remaining = int(account.pages_remaining or 0)
        if pages_remaining < int(billable_amount):
            raise InsufficientBalanceError(
                "Not enough pages remaining. Purchase more pages to continue.",
                pages_needed=int(billable_amount),
                pages_remaining=pages_remaining,
            )

        job = GenerationJob(
            owner_id=owner_id,
            payload_json=payload,
            billable_amount=int(billable_amount),
            dispatch_mode=dispatcher.mode,
            status=JOB_QUEUED,
            progress=0,
        )
        db.add(job)
        await db.commit()
        job_id, result_id = job.id, job.result_id

        try:
            receipt = await dispatcher.dispatch(job_id)
        except BrokerUnavailableError:
            await db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)
                .values(
                    status=JOB_FAILED,
                    charge_status="not_charged",
                    error_code="broker_unavailable",
                    error_message="Generation could not be scheduled. You were not charged.",
                    completed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            raise

        await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(queue_job_id=receipt.queue_job_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await store.release(key)
        raise

    await store.complete(key, job_id, result_id)
    logger.info(
        "Generation job %s submitted for %s (%s pages, %s)",
        job_id,
        mask_id(owner_id),
        billable_amount,
        dispatcher.mode,
    )
    return SubmitResult(result_id=result_id, job_id=job_id, status=receipt.status, cached=False)


def serialize_job(job: GenerationJob) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "result_id": job.result_id,
        "job_id": job.id,
        "status": job.status,
    }
    if job.status in (JOB_QUEUED, JOB_PROCESSING):
        body.update(
            {
                "progress_percent": int(job.progress or 0),
                "stage": job.stage or ("queued" if job.status == JOB_QUEUED else None),
                "eta_seconds": estimate_eta_seconds(job),
            }
        )
    elif job.status == JOB_COMPLETED:
        body.update({"result": job.result_json, "charged": job.charge_status == "charged"})
    elif job.status == JOB_FAILED:
        body.update(
            {
                "error": {
                    "code": job.error_code or "JOB_FAILED",
                    "message": job.error_message or "Generation failed.",
                },
                "charged": False,
            }
        )
    return body
