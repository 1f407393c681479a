"""Idempotency store for job submissions (Redis with a bounded local fallback).

The durable path is Redis ``SET NX EX``. When Redis cannot be reached the
store serves reservations from a BoundedTTLCache; that degraded mode is only
consistent within one process and is logged as such on every use.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from services.local_cache import BoundedTTLCache
from services.owner import mask_id

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
KEY_PREFIX = "idem:"


@dataclass
class IdempotencyOutcome:
    job_id: str
    result_id: str


def generate_idempotency_key(owner_id: str, request_id: str) -> str:
    digest = hashlib.sha256(f"{owner_id}:{request_id}".encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest[:32]}"


class IdempotencyStore:
    def __init__(self, redis_client: Any, local_cache: BoundedTTLCache, ttl_seconds: int = 1800):
        self._redis = redis_client
        self._local = local_cache
        self.ttl_seconds = int(ttl_seconds)

    @staticmethod
    def _record(status: str, job_id: Optional[str] = None, result_id: Optional[str] = None) -> Dict[str, Any]:
        record: Dict[str, Any] = {"status": status, "created_at": int(time.time())}
        if job_id:
            record["job_id"] = job_id
        if result_id:
            record["result_id"] = result_id
        return record

    @staticmethod
    def _outcome(record: Optional[Dict[str, Any]]) -> Optional[IdempotencyOutcome]:
        if not record or record.get("status") != STATUS_COMPLETED:
            return None
        if not record.get("result_id"):
            return None
        return IdempotencyOutcome(job_id=str(record.get("job_id") or ""), result_id=str(record["result_id"]))

    async def reserve(self, key: str) -> bool:
        """Create a pending record if none exists. First reserver wins."""
        if self._local.get(key) is not None:
            logger.info("Idempotency slot %s already held (local)", mask_id(key, 16))
            return False

        try:
            reserved = await self._redis.set(
                key,
                json.dumps(self._record(STATUS_PENDING)),
                ex=self.ttl_seconds,
                nx=True,
            )
        except (RedisError, OSError) as exc:
            logger.warning(
                "Redis unavailable for idempotency reserve, using process-local cache (degraded): %s", exc
            )
            return self._local.add_if_absent(key, self._record(STATUS_PENDING))

        if not reserved:
            logger.info("Idempotency slot %s already held (redis)", mask_id(key, 16))
        return bool(reserved)

    async def complete(self, key: str, job_id: str, result_id: str) -> None:
        record = self._record(STATUS_COMPLETED, job_id=job_id, result_id=result_id)
        if self._local.get(key) is not None:
            self._local.set(key, record)
        try:
            await self._redis.set(key, json.dumps(record), ex=self.ttl_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable for idempotency complete, recording locally (degraded): %s", exc)
            self._local.set(key, record)

    async def lookup(self, key: str) -> Optional[IdempotencyOutcome]:
        """Return the completed outcome for ``key``; pending or absent keys return None."""
        local = self._outcome(self._local.get(key))
        if local:
            return local
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable for idempotency lookup (degraded): %s", exc)
            return None
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable idempotency record %s", mask_id(key, 16))
            return None
        return self._outcome(record)

    async def release(self, key: str) -> None:
        """Drop a reservation so an aborted submission can be retried immediately."""
        self._local.pop(key)
        try:
            await self._redis.delete(key)
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable for idempotency release: %s", exc)
