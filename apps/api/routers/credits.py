"""Credit balance and login migration router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.owner_scope import OwnerContext, get_owner_context, require_user
from services.credits import ensure_account, get_credit_summary, grant_registration_bonus, migrate_guest_to_user
from services.owner import mask_id

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/balance")
async def credits_balance(
    owner: OwnerContext = Depends(get_owner_context),
    db: AsyncSession = Depends(get_db),
):
    summary = await get_credit_summary(owner.owner_id, db)
    summary["authenticated"] = owner.authenticated
    return summary


@router.post("/migrate")
async def migrate_guest_credits(
    owner: OwnerContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """Login hook: one-time registration bonus, then move earned guest pages to the user."""
    bonus = await grant_registration_bonus(owner.owner_id, db)
    migration = await migrate_guest_to_user(
        owner.device_id,
        owner.owner_id,
        int(settings.GUEST_FREE_PAGES),
        db,
    )
    account = await ensure_account(owner.owner_id, db)
    logger.info(
        "Login migration for %s: bonus=%s transferred=%s",
        mask_id(owner.owner_id),
        bonus,
        migration.amount,
    )
    return {
        "owner_id": owner.owner_id,
        "registration_bonus": bonus,
        "transferred": migration.amount,
        "pages_remaining": int(account.pages_remaining or 0),
        "status": account.status,
    }
