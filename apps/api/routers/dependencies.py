"""Accessors for the long-lived collaborators built in the app lifespan."""

from fastapi import HTTPException, Request

from services.dispatch import JobDispatcher
from services.idempotency import IdempotencyStore
from services.payments import PaylinkClient


def get_idempotency_store(request: Request) -> IdempotencyStore:
    store = getattr(request.app.state, "idempotency_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Idempotency store is not ready.")
    return store


def get_dispatcher(request: Request) -> JobDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher is not ready.")
    return dispatcher


def get_paylink_client(request: Request) -> PaylinkClient:
    client = getattr(request.app.state, "paylink_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Payment gateway client is not ready.")
    return client
