import asyncio
from datetime import date, timedelta

import pytest

from services.quota import check_and_increment


@pytest.mark.asyncio
async def test_quota_boundary_and_day_rollover(session_maker):
    today = date(2026, 3, 1)
    async with session_maker() as db:
        results = [await check_and_increment("device-q", 60, db, day=today) for _ in range(61)]
        tomorrow = await check_and_increment("device-q", 60, db, day=today + timedelta(days=1))

    assert all(r.allowed for r in results[:60])
    assert results[59].current_count == 60
    assert results[60].allowed is False
    assert results[60].current_count == 60
    assert tomorrow.allowed is True
    assert tomorrow.current_count == 1


@pytest.mark.asyncio
async def test_concurrent_increments_never_pass_the_limit(session_maker):
    today = date(2026, 3, 2)

    async def attempt():
        async with session_maker() as db:
            return await check_and_increment("device-burst", 3, db, day=today)

    results = await asyncio.gather(*(attempt() for _ in range(6)))

    assert sum(1 for r in results if r.allowed) == 3
    assert max(r.current_count for r in results) == 3


@pytest.mark.asyncio
async def test_quota_is_per_owner(session_maker):
    today = date(2026, 3, 3)
    async with session_maker() as db:
        assert (await check_and_increment("device-1", 1, db, day=today)).allowed is True
        assert (await check_and_increment("device-1", 1, db, day=today)).allowed is False
        assert (await check_and_increment("device-2", 1, db, day=today)).allowed is True
