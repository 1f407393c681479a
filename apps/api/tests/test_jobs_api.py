import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from main import app
from models.generation_job import GenerationJob
from services.credits import get_account, set_status
from services.dispatch import LocalDispatcher, RemoteDispatcher
from services.errors import InvalidInputError
from services.generation import run_generation_job
from services.idempotency import generate_idempotency_key


DEVICE_HEADERS = {"x-device-id": "device-jobs"}


class _FakeQueueJob:
    def __init__(self, job_id: str):
        self.id = job_id


async def _poll(client, result_id: str, headers=DEVICE_HEADERS):
    response = await client.get(f"/jobs/{result_id}", headers=headers)
    assert response.status_code == 200
    return response.json()


async def _balance(session_maker, owner_id: str = "device-jobs") -> int:
    async with session_maker() as db:
        account = await get_account(owner_id, db)
        return int(account.pages_remaining)


async def _job_count(session_maker) -> int:
    async with session_maker() as db:
        return int((await db.execute(select(func.count()).select_from(GenerationJob))).scalar())


@pytest.mark.asyncio
async def test_submit_is_idempotent_and_charges_once_on_completion(api_client, session_maker):
    with patch("config.settings.GUEST_FREE_PAGES", 2):
        body = {"pages": ["page-1"], "request_id": "req-1"}
        first = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)
        second = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)

    assert first.status_code == 202
    assert second.status_code == 202
    assert first.json()["cached"] is False
    assert first.json()["status"] == "processing"
    assert second.json()["cached"] is True
    assert second.json()["result_id"] == first.json()["result_id"]
    assert second.json()["status"] in {"queued", "processing"}

    await app.state.dispatcher.wait_idle()
    result = await _poll(api_client, first.json()["result_id"])
    assert result["status"] == "completed"
    assert result["charged"] is True
    assert result["result"]["page_count"] == 1
    assert await _balance(session_maker) == 1
    assert await _job_count(session_maker) == 1


@pytest.mark.asyncio
async def test_request_id_header_is_used_for_dedup(api_client, session_maker):
    headers = {**DEVICE_HEADERS, "x-request-id": "hdr-1"}
    first = await api_client.post("/jobs", json={"pages": ["p"]}, headers=headers)
    second = await api_client.post("/jobs", json={"pages": ["p"]}, headers=headers)
    assert second.json()["result_id"] == first.json()["result_id"]
    await app.state.dispatcher.wait_idle()
    assert await _job_count(session_maker) == 1


@pytest.mark.asyncio
async def test_timed_out_job_fails_without_charge(api_client, session_maker):
    async def slow_generator(payload, report_progress):
        await asyncio.sleep(5)
        return {}

    app.state.dispatcher = LocalDispatcher(session_maker, generator=slow_generator, timeout_seconds=0.05)
    response = await api_client.post("/jobs", json={"pages": ["p1", "p2"]}, headers=DEVICE_HEADERS)
    assert response.status_code == 202

    await app.state.dispatcher.wait_idle()
    result = await _poll(api_client, response.json()["result_id"])
    assert result["status"] == "failed"
    assert result["error"]["code"] == "JOB_TIMEOUT"
    assert result["charged"] is False
    assert await _balance(session_maker) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, code",
    [
        (RuntimeError("upstream 500: secret internals"), "JOB_UPSTREAM_ERROR"),
        (InvalidInputError("page 1 unreadable"), "JOB_INVALID_INPUT"),
    ],
)
async def test_failed_job_is_classified_and_not_charged(api_client, session_maker, exc, code):
    async def failing_generator(payload, report_progress):
        await report_progress(30, "reading pages")
        raise exc

    app.state.dispatcher = LocalDispatcher(session_maker, generator=failing_generator)
    response = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
    await app.state.dispatcher.wait_idle()

    result = await _poll(api_client, response.json()["result_id"])
    assert result["status"] == "failed"
    assert result["error"]["code"] == code
    assert "secret internals" not in result["error"]["message"]
    assert await _balance(session_maker) == 2


@pytest.mark.asyncio
async def test_processing_job_reports_progress_and_eta(api_client, session_maker):
    release = asyncio.Event()

    async def gated_generator(payload, report_progress):
        await report_progress(50, "page 1/2")
        await release.wait()
        return {"ok": True}

    app.state.dispatcher = LocalDispatcher(session_maker, generator=gated_generator)
    response = await api_client.post("/jobs", json={"pages": ["p1", "p2"]}, headers=DEVICE_HEADERS)
    result_id = response.json()["result_id"]

    status = {}
    for _ in range(50):
        status = await _poll(api_client, result_id)
        if status.get("progress_percent") == 50:
            break
        await asyncio.sleep(0.02)

    assert status["status"] == "processing"
    assert status["stage"] == "page 1/2"
    assert isinstance(status["eta_seconds"], int)

    release.set()
    await app.state.dispatcher.wait_idle()
    assert (await _poll(api_client, result_id))["status"] == "completed"


@pytest.mark.asyncio
async def test_insufficient_balance_releases_the_request_id(api_client, session_maker):
    body = {"pages": ["p1", "p2", "p3"], "request_id": "req-big"}
    rejected = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)
    assert rejected.status_code == 402
    assert rejected.json()["detail"]["code"] == "INSUFFICIENT_BALANCE"
    assert rejected.json()["detail"]["pages_remaining"] == 2

    again = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)
    assert again.status_code == 402
    assert await _job_count(session_maker) == 0


@pytest.mark.asyncio
async def test_on_hold_account_cannot_submit(api_client, session_maker):
    async with session_maker() as db:
        await set_status("device-jobs", "on_hold", db)
    response = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "ACCOUNT_ON_HOLD"


@pytest.mark.asyncio
async def test_daily_quota_rejects_extra_submissions(api_client):
    with patch("config.settings.DAILY_JOB_LIMIT", 1):
        ok = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
        over = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
    assert ok.status_code == 202
    assert over.status_code == 429
    assert over.json()["detail"]["code"] == "QUOTA_EXCEEDED"
    await app.state.dispatcher.wait_idle()


@pytest.mark.asyncio
async def test_in_flight_duplicate_is_rejected(api_client):
    store = app.state.idempotency_store
    assert await store.reserve(generate_idempotency_key("device-jobs", "req-busy")) is True
    response = await api_client.post(
        "/jobs",
        json={"pages": ["p1"], "request_id": "req-busy"},
        headers=DEVICE_HEADERS,
    )
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "DUPLICATE_IN_FLIGHT"


@pytest.mark.asyncio
async def test_saturated_local_dispatcher_rejects_with_retry_after(api_client, session_maker):
    release = asyncio.Event()

    async def gated_generator(payload, report_progress):
        await release.wait()
        return {}

    app.state.dispatcher = LocalDispatcher(session_maker, max_concurrency=1, generator=gated_generator)
    with patch("config.settings.GUEST_FREE_PAGES", 5):
        first = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
        second = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)

    assert first.status_code == 202
    assert second.status_code == 503
    assert second.json()["detail"]["code"] == "BROKER_UNAVAILABLE"
    assert second.headers["retry-after"] == "30"

    async with session_maker() as db:
        failed = (
            await db.execute(select(GenerationJob).where(GenerationJob.error_code == "broker_unavailable"))
        ).scalars().all()
    assert len(failed) == 1
    assert failed[0].charge_status == "not_charged"

    release.set()
    await app.state.dispatcher.wait_idle()
    assert await _balance(session_maker) == 4


@pytest.mark.asyncio
async def test_remote_dispatcher_queues_and_records_queue_job(api_client, session_maker):
    enqueued = []

    def fake_enqueue(job_id: str):
        enqueued.append(job_id)
        return _FakeQueueJob(f"generation:{job_id}")

    app.state.dispatcher = RemoteDispatcher(enqueue=fake_enqueue)
    response = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
    assert response.status_code == 202
    assert response.json()["status"] == "queued"
    assert enqueued == [response.json()["job_id"]]

    polled = await _poll(api_client, response.json()["result_id"])
    assert polled["status"] == "queued"
    assert polled["stage"] == "queued"

    async with session_maker() as db:
        job = (await db.execute(select(GenerationJob))).scalar_one()
    assert job.queue_job_id == f"generation:{job.id}"
    assert job.dispatch_mode == "remote"

    # The worker side of the same job.
    assert await run_generation_job(job.id, session_maker=session_maker) == "completed"
    assert await run_generation_job(job.id, session_maker=session_maker) == "completed"
    assert await _balance(session_maker) == 1


@pytest.mark.asyncio
async def test_enqueue_failure_is_retriable_and_not_blocked_by_dedup(api_client):
    def broken_enqueue(job_id: str):
        raise ConnectionError("redis down")

    app.state.dispatcher = RemoteDispatcher(enqueue=broken_enqueue)
    body = {"pages": ["p1"], "request_id": "req-retry"}
    first = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)
    second = await api_client.post("/jobs", json=body, headers=DEVICE_HEADERS)
    assert first.status_code == 503
    assert second.status_code == 503


@pytest.mark.asyncio
async def test_poll_is_scoped_to_owner(api_client):
    response = await api_client.post("/jobs", json={"pages": ["p1"]}, headers=DEVICE_HEADERS)
    other = await api_client.get(
        f"/jobs/{response.json()['result_id']}",
        headers={"x-device-id": "device-other"},
    )
    assert other.status_code == 404
    missing = await api_client.get("/jobs/does-not-exist", headers=DEVICE_HEADERS)
    assert missing.status_code == 404
    await app.state.dispatcher.wait_idle()


@pytest.mark.asyncio
async def test_too_many_pages_rejected(api_client):
    with patch("config.settings.MAX_PAGES_PER_JOB", 2):
        response = await api_client.post("/jobs", json={"pages": ["a", "b", "c"]}, headers=DEVICE_HEADERS)
    assert response.status_code == 400
