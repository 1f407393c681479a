import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.dispatch import LocalDispatcher
from services.payments import PaylinkClient

from fakes import FakeRedis, make_store


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker):
    """HTTP client against the app with a fresh database, store and local dispatcher."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    def gateway(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "gateway not mocked"})

    app.dependency_overrides[get_db] = override_get_db
    app.state.redis = FakeRedis()
    app.state.idempotency_store = make_store(app.state.redis)
    app.state.dispatcher = LocalDispatcher(session_maker, max_concurrency=4)
    app.state.paylink_client = PaylinkClient(
        api_id="api-id",
        secret_key="secret-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(gateway)),
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await app.state.dispatcher.shutdown()
    await app.state.paylink_client.aclose()
    app.dependency_overrides.pop(get_db, None)
    for name in ("redis", "idempotency_store", "dispatcher", "paylink_client"):
        if hasattr(app.state, name):
            delattr(app.state, name)
