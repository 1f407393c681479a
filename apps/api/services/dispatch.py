"""Job dispatch strategies.

``select_dispatcher`` runs once at startup: RemoteDispatcher when the broker
answers, LocalDispatcher otherwise. Callers only see ``dispatch(job_id)``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Callable, Optional, Set

from rq.job import Job

from services.errors import BrokerUnavailableError
from services.generation import Generator, run_generation_job
from services.job_queue import broker_available, enqueue_generation_job

logger = logging.getLogger(__name__)

MODE_REMOTE = "remote"
MODE_LOCAL = "local"


@dataclass
class DispatchReceipt:
    queue_job_id: str
    status: str


class JobDispatcher:
    mode = ""

    async def dispatch(self, job_id: str) -> DispatchReceipt:
        raise NotImplementedError

    async def shutdown(self) -> None:
        return None


class RemoteDispatcher(JobDispatcher):
    """Hands jobs to RQ workers through Redis."""

    mode = MODE_REMOTE

    def __init__(self, enqueue: Callable[[str], Job] = enqueue_generation_job):
        self._enqueue = enqueue

    async def dispatch(self, job_id: str) -> DispatchReceipt:
        try:
            queue_job = await asyncio.to_thread(self._enqueue, job_id)
        except Exception as exc:
            logger.error("Enqueue failed for generation job %s: %s", job_id, exc)
            raise BrokerUnavailableError(
                "Generation queue is unavailable. Try again shortly.",
                retry_after=30,
            ) from exc
        return DispatchReceipt(queue_job_id=str(queue_job.id), status="queued")


class LocalDispatcher(JobDispatcher):
    """Runs jobs as detached in-process tasks, at most ``max_concurrency`` at a time."""

    mode = MODE_LOCAL

    def __init__(
        self,
        session_maker=None,
        *,
        max_concurrency: int = 4,
        generator: Optional[Generator] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._session_maker = session_maker
        self._generator = generator
        self._timeout_seconds = timeout_seconds
        self.max_concurrency = max(int(max_concurrency), 1)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def dispatch(self, job_id: str) -> DispatchReceipt:
        if len(self._tasks) >= self.max_concurrency:
            logger.warning(
                "Local dispatch saturated (%s in flight); rejecting job %s", len(self._tasks), job_id
            )
            raise BrokerUnavailableError(
                "Generation capacity is exhausted. Try again shortly.",
                retry_after=30,
            )
        task = asyncio.create_task(self._run(job_id), name=f"generation:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return DispatchReceipt(queue_job_id=f"local:{job_id}", status="processing")

    async def _run(self, job_id: str) -> None:
        try:
            await run_generation_job(
                job_id,
                session_maker=self._session_maker,
                generator=self._generator,
                timeout_seconds=self._timeout_seconds,
            )
        except Exception:
            logger.exception("Local generation job %s crashed", job_id)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def select_dispatcher(session_maker=None, *, max_concurrency: int = 4) -> JobDispatcher:
    if await broker_available():
        logger.info("Broker reachable; jobs will run on RQ workers")
        return RemoteDispatcher()
    logger.warning(
        "Broker unreachable; running jobs in-process (max %s concurrent). Not shared across instances.",
        max_concurrency,
    )
    return LocalDispatcher(session_maker, max_concurrency=max_concurrency)
