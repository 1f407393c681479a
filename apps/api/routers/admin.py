"""Administrative router: payment reconciliation and account holds."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.credit_account import ACCOUNT_ACTIVE, ACCOUNT_ON_HOLD
from models.credit_transaction import KIND_PURCHASE
from routers.owner_scope import require_admin
from services.credits import credit, get_account, get_credit_summary, set_status
from services.owner import mask_id
from services.payments import apply_purchase, get_pending_by_transaction, purchase_reference

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class ReconcileRequest(BaseModel):
    transaction_no: str = Field(min_length=1, max_length=120)
    owner_id: Optional[str] = Field(default=None, max_length=120)
    pages: Optional[int] = Field(default=None, ge=1, le=10000)


class AccountStatusRequest(BaseModel):
    status: Literal["active", "on_hold"]


@router.post("/reconcile-payment")
async def reconcile_payment(request: ReconcileRequest, db: AsyncSession = Depends(get_db)):
    """Credit a paid transaction that never settled. Safe to repeat."""
    pending = await get_pending_by_transaction(request.transaction_no, db)
    if pending is not None:
        owner_id = pending.owner_id
        result = await apply_purchase(pending, db)
    else:
        if not request.owner_id or not request.pages:
            raise HTTPException(
                status_code=400,
                detail="No pending payment for this transaction; owner_id and pages are required.",
            )
        owner_id = request.owner_id
        result = await credit(
            owner_id,
            request.pages,
            db,
            kind=KIND_PURCHASE,
            reference_id=purchase_reference(request.transaction_no),
            reason="Manual reconciliation",
            amount_minor=0,
        )

    logger.info(
        "Reconciliation of %s for %s: applied=%s",
        mask_id(request.transaction_no),
        mask_id(owner_id),
        result.applied,
    )
    return {
        "applied": result.applied,
        "reason": None if result.applied else "already_processed",
        "owner_id": owner_id,
        "transaction_id": result.transaction_id,
        "balance_after": result.balance_after,
    }


@router.post("/accounts/{owner_id}/status")
async def update_account_status(
    owner_id: str,
    request: AccountStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    status = ACCOUNT_ON_HOLD if request.status == ACCOUNT_ON_HOLD else ACCOUNT_ACTIVE
    account = await set_status(owner_id, status, db)
    return {
        "owner_id": owner_id,
        "status": account.status,
        "pages_remaining": int(account.pages_remaining or 0),
    }


@router.get("/accounts/{owner_id}")
async def read_account(owner_id: str, db: AsyncSession = Depends(get_db)):
    if await get_account(owner_id, db) is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return await get_credit_summary(owner_id, db)
