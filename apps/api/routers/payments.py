"""Payments router: package catalog, Paylink checkout, return verification and webhook."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.dependencies import get_paylink_client
from routers.owner_scope import OwnerContext, get_owner_context, require_user
from routers.rate_limit import rate_limit
from services.payments import PACKAGES, PaylinkClient, create_checkout, get_package, verify_payment
from services.settlement import SIGNATURE_HEADERS, handle_webhook

router = APIRouter()
webhook_router = APIRouter()


class CheckoutRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=40)
    client_name: Optional[str] = Field(default=None, max_length=120)
    client_email: Optional[str] = Field(default=None, max_length=200)
    client_mobile: Optional[str] = Field(default=None, max_length=30)


class VerifyRequest(BaseModel):
    order_number: str = Field(min_length=1, max_length=120)


@router.get("/packages")
async def list_packages():
    return {"packages": [package.to_dict() for package in PACKAGES]}


@router.post("/checkout")
async def create_payment_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("payments_checkout", limit=20, window_seconds=3600)),
    owner: OwnerContext = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    client: PaylinkClient = Depends(get_paylink_client),
):
    package = get_package(request.package_id)
    if not package:
        raise HTTPException(status_code=400, detail="Unknown package.")
    return await create_checkout(
        owner_id=owner.owner_id,
        package=package,
        client=client,
        db=db,
        client_name=request.client_name,
        client_email=request.client_email,
        client_mobile=request.client_mobile,
    )


@router.post("/verify")
async def verify_payment_return(
    request: VerifyRequest,
    _rate_limit: None = Depends(rate_limit("payments_verify", limit=60, window_seconds=3600)),
    owner: OwnerContext = Depends(get_owner_context),
    db: AsyncSession = Depends(get_db),
    client: PaylinkClient = Depends(get_paylink_client),
):
    result = await verify_payment(
        owner_id=owner.owner_id,
        order_number=request.order_number,
        client=client,
        db=db,
    )
    if result is None:
        raise HTTPException(status_code=404, detail="Payment not found.")
    return result


async def _paylink_webhook(request: Request, db: AsyncSession):
    raw_body = await request.body()
    signature = next((request.headers.get(name) for name in SIGNATURE_HEADERS if request.headers.get(name)), None)
    outcome = await handle_webhook(raw_body, signature, db)
    return outcome.to_dict()


@router.post("/webhook")
async def paylink_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await _paylink_webhook(request, db)


@webhook_router.post("/paylink")
async def paylink_webhook_alias(request: Request, db: AsyncSession = Depends(get_db)):
    return await _paylink_webhook(request, db)
