"""Generation job runner: claims a job, runs the generator under a hard timeout, bills on success."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import importlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, engine
from models.generation_job import (
    ACTIVE_JOB_STATUSES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    GenerationJob,
)
from models.credit_transaction import KIND_REFUND_REVERSAL, KIND_USAGE
from services.credits import credit, debit_if_sufficient
from services.errors import AccountOnHoldError, JobFailure, JobTimeoutError, UpstreamServiceError
from services.owner import mask_id

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]
Generator = Callable[[Dict[str, Any], ProgressCallback], Awaitable[Dict[str, Any]]]

STAGE_STARTING = "starting"
STAGE_SAVING = "saving results"
STAGE_DONE = "done"


async def manifest_generator(payload: Dict[str, Any], report_progress: ProgressCallback) -> Dict[str, Any]:
    """Default generator: returns a page manifest.

    Deployments set JOB_GENERATOR to the real content generator, which must
    accept the same arguments and raise services.errors job failures.
    """
    pages = list(payload.get("pages") or [])
    for index, _ in enumerate(pages, start=1):
        await report_progress(10 + int(70 * index / max(len(pages), 1)), f"page {index}/{len(pages)}")
    return {"page_count": len(pages), "options": payload.get("options") or {}}


def load_generator(path: Optional[str] = None) -> Generator:
    dotted = (path or settings.JOB_GENERATOR or "").strip()
    module_name, _, attr = dotted.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"JOB_GENERATOR must be a dotted path, got {dotted!r}")
    return getattr(importlib.import_module(module_name), attr)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _transition(session_maker, job_id: str, from_statuses, **values: Any) -> bool:
    """Apply ``values`` only while the job is in one of ``from_statuses``."""
    if "progress" in values:
        values["progress"] = max(0, min(int(values["progress"]), 100))
    if "error_message" in values and values["error_message"]:
        values["error_message"] = str(values["error_message"])[:1000]
    async with session_maker() as db:
        result = await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status.in_(tuple(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1


async def _run_with_timeout(generator: Generator, payload: Dict[str, Any], progress: ProgressCallback, timeout: float):
    task = asyncio.ensure_future(generator(payload, progress))
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if not done:
        # The generator may not honour cancellation; the job is failed regardless.
        task.cancel()
        raise JobTimeoutError(f"generation exceeded {timeout:.0f}s")
    return task.result()


async def run_generation_job(
    job_id: str,
    *,
    session_maker=None,
    generator: Optional[Generator] = None,
    timeout_seconds: Optional[float] = None,
) -> str:
    """Run one job to a terminal state and return that state."""
    maker = session_maker or async_session_maker
    claimed = await _transition(
        maker,
        job_id,
        ACTIVE_JOB_STATUSES,
        status=JOB_PROCESSING,
        progress=5,
        stage=STAGE_STARTING,
        started_at=_utcnow(),
    )
    if not claimed:
        logger.warning("Generation job %s missing or already terminal; skipping", job_id)
        async with maker() as db:
            result = await db.execute(select(GenerationJob.status).where(GenerationJob.id == job_id))
            return result.scalar() or "missing"

    async with maker() as db:
        result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
        job = result.scalar_one()
        payload = dict(job.payload_json or {})
        owner_id = job.owner_id
        billable = int(job.billable_amount or 0)

    async def report_progress(progress: int, stage: str) -> None:
        await _transition(maker, job_id, (JOB_PROCESSING,), progress=progress, stage=stage)

    run = generator or load_generator()
    timeout = float(timeout_seconds if timeout_seconds is not None else settings.JOB_TIMEOUT_SECONDS)
    started = _utcnow()
    try:
        artifact = await _run_with_timeout(run, payload, report_progress, timeout)
    except JobFailure as exc:
        failure: JobFailure = exc
    except Exception as exc:
        logger.exception("Generation job %s raised", job_id)
        failure = UpstreamServiceError(str(exc))
    else:
        failure = None

    if failure is not None:
        await _transition(
            maker,
            job_id,
            (JOB_PROCESSING,),
            status=JOB_FAILED,
            charge_status="not_charged",
            error_code=failure.code,
            error_message=failure.public_message,
            completed_at=_utcnow(),
        )
        logger.warning(
            "Generation job %s failed with %s after %.1fs (%s); not charged",
            job_id,
            failure.code,
            (_utcnow() - started).total_seconds(),
            failure.message,
        )
        return JOB_FAILED

    await report_progress(90, STAGE_SAVING)

    charge_status = "not_billable"
    if billable > 0:
        async with maker() as db:
            try:
                charged = await debit_if_sufficient(
                    owner_id,
                    billable,
                    db,
                    kind=KIND_USAGE,
                    reference_id=f"job:{job_id}",
                    reason=f"Generation job {job_id}",
                )
            except AccountOnHoldError:
                charged = False
        charge_status = "charged" if charged else "uncharged"
        if not charged:
            logger.warning(
                "Generation job %s completed but %s pages could not be charged to %s",
                job_id,
                billable,
                mask_id(owner_id),
            )

    completed = await _transition(
        maker,
        job_id,
        (JOB_PROCESSING,),
        status=JOB_COMPLETED,
        progress=100,
        stage=STAGE_DONE,
        charge_status=charge_status,
        result_json=artifact,
        error_code=None,
        error_message=None,
        completed_at=_utcnow(),
    )
    if not completed:
        logger.error("Generation job %s left processing before completion was recorded", job_id)
        if charge_status == "charged":
            async with maker() as db:
                await credit(
                    owner_id,
                    billable,
                    db,
                    kind=KIND_REFUND_REVERSAL,
                    reference_id=f"job:{job_id}:reversal",
                    reason=f"Charge reversed for unfinished job {job_id}",
                )
        return JOB_FAILED
    logger.info("Generation job %s completed (%s)", job_id, charge_status)
    return JOB_COMPLETED


def process_generation_job(job_id: str) -> None:
    """RQ worker entrypoint for generation jobs."""

    async def _run() -> None:
        try:
            await run_generation_job(job_id)
        finally:
            # Each RQ job runs in a fresh event loop; pooled connections cannot cross loops.
            await engine.dispose()

    asyncio.run(_run())
