"""Paylink checkout: package catalog, gateway client and purchase settlement.

The PendingPayment row written at checkout is the only record trusted to say
who receives the pages. Anything the gateway echoes back is compared against
it for logging and nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import KIND_PURCHASE
from models.pending_payment import (
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PendingPayment,
)
from services.credits import CreditResult, credit
from services.errors import CheckoutPersistError, PaymentGatewayError
from services.owner import mask_id

logger = logging.getLogger(__name__)

PAYLINK_BASE_URLS = {
    "production": "https://restapi.paylink.sa",
    "testing": "https://restpilot.paylink.sa",
}
# Paylink persistent tokens live 30 hours; refresh an hour early.
TOKEN_TTL_SECONDS = 29 * 3600
OUTCOME_PAID = "PAID"


@dataclass(frozen=True)
class Package:
    id: str
    name: str
    pages: int
    price: int  # halalas

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "pages": self.pages,
            "price": self.price,
            "price_sar": self.price / 100,
        }


PACKAGES: List[Package] = [
    Package(id="basic", name="Basic", pages=10, price=500),
    Package(id="popular", name="Popular", pages=25, price=1200),
    Package(id="best", name="Best value", pages=60, price=2500),
    Package(id="family", name="Family", pages=150, price=5500),
]


def get_package(package_id: str) -> Optional[Package]:
    for package in PACKAGES:
        if package.id == str(package_id):
            return package
    return None


def purchase_reference(transaction_no: str) -> str:
    return f"pl_{transaction_no}"


def parse_gateway_amount(value: Any) -> Optional[int]:
    """Convert a gateway SAR amount to halalas; None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return round(float(value) * 100)
    except (TypeError, ValueError, OverflowError):
        return None


class PaylinkClient:
    """Minimal async client for the Paylink REST invoice API."""

    def __init__(
        self,
        *,
        api_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        environment: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_id = api_id if api_id is not None else settings.PAYLINK_API_ID
        self.secret_key = secret_key if secret_key is not None else settings.PAYLINK_SECRET_KEY
        env = (environment or settings.PAYLINK_ENVIRONMENT or "testing").strip().lower()
        self.base_url = PAYLINK_BASE_URLS.get(env, PAYLINK_BASE_URLS["testing"])
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(20.0))
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.api_id and self.secret_key)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Paylink %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError("Payment gateway is unreachable. Try again shortly.") from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            logger.error("Paylink %s %s returned %s: %s", method, path, response.status_code, body)
            raise PaymentGatewayError(
                "Payment gateway rejected the request.",
                gateway_status=response.status_code,
            )
        return body if isinstance(body, dict) else {}

    async def get_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token
        if not self.configured:
            raise PaymentGatewayError("Payment gateway credentials are not configured.")

        body = await self._request(
            "POST",
            "/api/auth",
            json={"apiId": self.api_id, "secretKey": self.secret_key, "persistToken": True},
        )
        token = body.get("id_token")
        if not token:
            raise PaymentGatewayError("Payment gateway did not return an auth token.")
        self._token = str(token)
        self._token_expires_at = self._clock() + TOKEN_TTL_SECONDS
        return self._token

    async def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {await self.get_token()}",
            "Accept": "application/json",
        }

    async def add_invoice(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", "/api/addInvoice", json=invoice, headers=await self._headers())
        if not body.get("success") or not body.get("transactionNo"):
            logger.error("Paylink invoice creation failed: %s", body.get("detail") or body)
            raise PaymentGatewayError(str(body.get("detail") or "Failed to create payment."))
        return body

    async def get_invoice(self, transaction_no: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/api/getInvoice/{transaction_no}",
            headers=await self._headers(),
        )


def _order_number() -> str:
    return f"ORD_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


async def create_checkout(
    *,
    owner_id: str,
    package: Package,
    client: PaylinkClient,
    db: AsyncSession,
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    client_mobile: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a gateway invoice and persist its PendingPayment before returning the URL."""
    order_number = _order_number()
    amount_sar = package.price / 100
    app_url = (settings.APP_URL or "").rstrip("/")
    invoice = {
        "orderNumber": order_number,
        "amount": amount_sar,
        "callBackUrl": f"{app_url}/payment-success?orderId={order_number}",
        "cancelUrl": f"{app_url}/pricing",
        "clientName": client_name or "Customer",
        "clientEmail": client_email or "",
        "clientMobile": client_mobile or "0500000000",
        "currency": "SAR",
        "products": [
            {
                "title": f"{package.pages} pages",
                "price": amount_sar,
                "qty": 1,
                "description": f"{package.name} package",
                "isDigital": True,
            }
        ],
        "displayPending": True,
        "note": json.dumps(
            {
                "owner_id": owner_id,
                "package_id": package.id,
                "pages": package.pages,
                "order_number": order_number,
                "amount": package.price,
            }
        ),
    }
    result = await client.add_invoice(invoice)
    transaction_no = str(result["transactionNo"])

    db.add(
        PendingPayment(
            order_number=order_number,
            transaction_no=transaction_no,
            owner_id=owner_id,
            package_id=package.id,
            pages=package.pages,
            amount=package.price,
            status=PAYMENT_PENDING,
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "Failed to save pending payment %s (txn %s); aborting checkout: %s",
            order_number,
            mask_id(transaction_no),
            exc,
        )
        raise CheckoutPersistError("Could not save the payment. Try again.") from exc

    logger.info(
        "Checkout %s created for %s (%s pages, txn %s)",
        order_number,
        mask_id(owner_id),
        package.pages,
        mask_id(transaction_no),
    )
    return {
        "payment_url": result.get("url"),
        "mobile_url": result.get("mobileUrl"),
        "transaction_no": transaction_no,
        "order_number": order_number,
        "pages": package.pages,
        "amount": package.price,
    }


async def get_pending_by_transaction(transaction_no: str, db: AsyncSession) -> Optional[PendingPayment]:
    result = await db.execute(
        select(PendingPayment)
        .where(PendingPayment.transaction_no == str(transaction_no))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_pending_by_order(order_number: str, db: AsyncSession) -> Optional[PendingPayment]:
    result = await db.execute(
        select(PendingPayment)
        .where(PendingPayment.order_number == str(order_number))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def apply_purchase(pending: PendingPayment, db: AsyncSession) -> CreditResult:
    """Credit the pending payment's owner once and mark the payment paid."""
    transaction_no = pending.transaction_no
    result = await credit(
        pending.owner_id,
        int(pending.pages),
        db,
        kind=KIND_PURCHASE,
        reference_id=purchase_reference(transaction_no),
        reason=f"Package {pending.package_id or 'unknown'} ({pending.order_number})",
        amount_minor=int(pending.amount),
    )
    if result.applied:
        await db.execute(
            update(PendingPayment)
            .where(
                PendingPayment.id == pending.id,
                PendingPayment.status.in_((PAYMENT_PENDING, PAYMENT_EXPIRED, PAYMENT_FAILED)),
            )
            .values(status=PAYMENT_PAID)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return result


async def mark_pending_failed(
    pending_id: str,
    db: AsyncSession,
    from_statuses=(PAYMENT_PENDING, PAYMENT_EXPIRED),
) -> None:
    await db.execute(
        update(PendingPayment)
        .where(PendingPayment.id == pending_id, PendingPayment.status.in_(tuple(from_statuses)))
        .values(status=PAYMENT_FAILED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def verify_payment(
    *,
    owner_id: str,
    order_number: str,
    client: PaylinkClient,
    db: AsyncSession,
) -> Optional[Dict[str, Any]]:
    """Ask the gateway for the invoice behind ``order_number`` and settle it if paid.

    Returns None when the order does not exist or belongs to another owner.
    """
    pending = await get_pending_by_order(order_number, db)
    if pending is None or pending.owner_id != owner_id:
        return None

    transaction_no = pending.transaction_no
    pages = int(pending.pages)
    status = pending.status
    invoice = await client.get_invoice(transaction_no)
    order_status = str(invoice.get("orderStatus") or "").strip().upper()
    credited = False
    if order_status == OUTCOME_PAID:
        gateway_amount = invoice.get("amount")
        if gateway_amount is not None and parse_gateway_amount(gateway_amount) != int(pending.amount):
            logger.warning(
                "Gateway amount %r differs from pending payment %s (%s halalas)",
                gateway_amount,
                order_number,
                pending.amount,
            )
        result = await apply_purchase(pending, db)
        credited = result.applied
        if credited:
            logger.info("Payment %s settled via client verification", order_number)

    refreshed = await get_pending_by_order(order_number, db)
    return {
        "order_number": order_number,
        "transaction_no": transaction_no,
        "order_status": order_status.lower() or "unknown",
        "payment_status": refreshed.status if refreshed else status,
        "pages": pages,
        "credited": credited,
    }
