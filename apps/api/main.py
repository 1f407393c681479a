"""
Generation Credits API - FastAPI Backend
Job submission, credit ledger, and payment settlement.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    jobs,
    credits,
    payments,
    admin,
    device,
)
from services.dispatch import select_dispatcher
from services.errors import CoreError
from services.idempotency import IdempotencyStore
from services.job_queue import expire_stale_pending_payments, recover_stalled_jobs
from services.local_cache import BoundedTTLCache
from services.payments import PaylinkClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Generation Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_jobs(int(settings.JOB_STALL_MINUTES))
        if recovered:
            print(f"♻️ Failed {recovered} stalled generation jobs after startup (not charged).")
    except Exception as exc:
        print(f"⚠️ Stalled job recovery skipped: {exc}")
    try:
        expired = await expire_stale_pending_payments(int(settings.PENDING_PAYMENT_TTL_HOURS))
        if expired:
            print(f"⌛ Expired {expired} stale pending payments.")
    except Exception as exc:
        print(f"⚠️ Pending payment expiry skipped: {exc}")

    app.state.redis = redis.from_url(settings.REDIS_URL, decode_responses=True)
    app.state.idempotency_store = IdempotencyStore(
        app.state.redis,
        BoundedTTLCache(
            max_entries=int(settings.IDEMPOTENCY_LOCAL_MAX_ENTRIES),
            ttl_seconds=int(settings.IDEMPOTENCY_TTL_SECONDS),
        ),
        ttl_seconds=int(settings.IDEMPOTENCY_TTL_SECONDS),
    )
    app.state.dispatcher = await select_dispatcher(
        max_concurrency=int(settings.LOCAL_DISPATCH_MAX_CONCURRENCY),
    )
    print(f"📮 Job dispatcher: {app.state.dispatcher.mode}")
    app.state.paylink_client = PaylinkClient()
    yield
    # Shutdown
    await app.state.dispatcher.shutdown()
    await app.state.paylink_client.aclose()
    await app.state.redis.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Generation Credits API",
    description="Submit paid generation jobs and settle page purchases exactly once",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    headers = {}
    retry_after = exc.extra.get("retry_after")
    if retry_after:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])
app.include_router(payments.webhook_router, prefix="/webhooks", tags=["Payments"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
app.include_router(device.router, prefix="/device", tags=["Device"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Generation Credits API",
        "version": "0.1.0",
        "status": "running"
    }
