"""Generation job router: submit and poll."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.dependencies import get_dispatcher, get_idempotency_store
from routers.owner_scope import OwnerContext, get_owner_context
from routers.rate_limit import rate_limit
from services.dispatch import JobDispatcher
from services.idempotency import IdempotencyStore
from services.jobs import get_job_by_result_id, serialize_job, submit_job

router = APIRouter()


class SubmitJobRequest(BaseModel):
    pages: List[str] = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = Field(default=None, max_length=200)


class SubmitJobResponse(BaseModel):
    result_id: str
    job_id: str
    status: str
    cached: bool


@router.post("", response_model=SubmitJobResponse, status_code=202)
async def submit_generation_job(
    request: SubmitJobRequest,
    x_request_id: Optional[str] = Header(default=None, max_length=200),
    _rate_limit: None = Depends(rate_limit("jobs_submit", limit=120, window_seconds=3600)),
    owner: OwnerContext = Depends(get_owner_context),
    db: AsyncSession = Depends(get_db),
    store: IdempotencyStore = Depends(get_idempotency_store),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    if len(request.pages) > int(settings.MAX_PAGES_PER_JOB):
        raise HTTPException(
            status_code=400,
            detail=f"At most {int(settings.MAX_PAGES_PER_JOB)} pages per job.",
        )

    request_id = request.request_id or x_request_id or str(uuid.uuid4())
    result = await submit_job(
        owner_id=owner.owner_id,
        payload={"pages": list(request.pages), "options": dict(request.options)},
        billable_amount=len(request.pages),
        request_id=request_id,
        db=db,
        store=store,
        dispatcher=dispatcher,
        daily_limit=int(settings.DAILY_JOB_LIMIT),
    )
    return SubmitJobResponse(
        result_id=result.result_id,
        job_id=result.job_id,
        status=result.status,
        cached=result.cached,
    )


@router.get("/{result_id}")
async def poll_generation_job(
    result_id: str,
    owner: OwnerContext = Depends(get_owner_context),
    db: AsyncSession = Depends(get_db),
):
    job = await get_job_by_result_id(result_id, db)
    if not job or job.owner_id != owner.owner_id:
        raise HTTPException(status_code=404, detail="Result not found.")
    return serialize_job(job)
