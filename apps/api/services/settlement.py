"""Paylink webhook settlement.

Each callback runs through four stages: verify the signature, claim the
event, settle against the authoritative PendingPayment, then record the
disposition. Every stage either returns a result or raises; nothing is
retried locally because the gateway redelivers on any non-200.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, insert, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import ACCOUNT_ON_HOLD
from models.credit_transaction import KIND_PURCHASE, KIND_REFUND_REVERSAL
from models.pending_payment import PAYMENT_EXPIRED, PAYMENT_PAID, PAYMENT_PENDING, PendingPayment
from models.webhook_event import EVENT_FAILED, EVENT_PROCESSING, EVENT_SUCCEEDED, WebhookEvent
from services.credits import credit, debit_if_sufficient, get_transaction_by_reference, set_status
from services.errors import InvalidWebhookPayloadError, SignatureInvalidError, WebhookNotConfiguredError
from services.owner import mask_id
from services.payments import (
    apply_purchase,
    get_pending_by_transaction,
    mark_pending_failed,
    purchase_reference,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-paylink-signature", "x-signature")

OUTCOME_PAID = "PAID"
OUTCOME_REFUNDED = "REFUNDED"
FAILED_OUTCOMES = {"FAILED", "CANCELED", "CANCELLED", "DECLINED"}


class Disposition(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"
    IGNORED = "ignored"


@dataclass
class PaymentEvent:
    transaction_no: str
    outcome: str
    amount: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_id(self) -> str:
        return f"pl_{self.transaction_no}_{self.outcome}"


@dataclass
class WebhookOutcome:
    disposition: Disposition
    event_id: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True, "disposition": self.disposition.value}
        if self.event_id:
            body["event_id"] = self.event_id
        if self.detail:
            body["detail"] = self.detail
        return body


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    """Raise unless ``signature`` is the HMAC-SHA256 hex digest of the raw body."""
    key = secret if secret is not None else settings.WEBHOOK_SECRET
    if not key:
        logger.error("WEBHOOK_SECRET is not configured; rejecting webhook")
        raise WebhookNotConfiguredError("Webhook verification is not configured.")
    if not signature:
        logger.warning("Webhook rejected: missing signature header")
        raise SignatureInvalidError("Missing signature.")

    supplied = signature.strip().lower()
    if supplied.startswith("sha256="):
        supplied = supplied[len("sha256="):]
    if not hmac.compare_digest(compute_signature(raw_body, key), supplied):
        logger.warning("Webhook rejected: invalid signature (length %s)", len(supplied))
        raise SignatureInvalidError("Invalid signature.")


def _parse_note(body: Dict[str, Any]) -> Dict[str, Any]:
    gateway_request = body.get("gatewayOrderRequest")
    raw = body.get("note") or (gateway_request.get("note") if isinstance(gateway_request, dict) else None)
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_event(raw_body: bytes) -> PaymentEvent:
    try:
        body = json.loads(raw_body or b"{}")
    except (TypeError, ValueError) as exc:
        raise InvalidWebhookPayloadError("Webhook body is not valid JSON.") from exc
    if not isinstance(body, dict):
        raise InvalidWebhookPayloadError("Webhook body must be a JSON object.")

    transaction_no = str(body.get("transactionNo") or "").strip()
    outcome = str(body.get("orderStatus") or "").strip().upper()
    if not transaction_no or not outcome:
        raise InvalidWebhookPayloadError("Webhook body is missing transactionNo or orderStatus.")

    amount = body.get("amount")
    try:
        amount = float(amount) if amount is not None else None
    except (TypeError, ValueError):
        amount = None
    return PaymentEvent(transaction_no=transaction_no, outcome=outcome, amount=amount, metadata=_parse_note(body))


async def claim_event(
    event: PaymentEvent,
    db: AsyncSession,
    *,
    lease_minutes: Optional[int] = None,
) -> Optional[Disposition]:
    """Claim ``event`` for this processor.

    Returns None when the claim is won, otherwise the disposition to report:
    DUPLICATE for settled events, IN_PROGRESS while another processor holds
    an unexpired claim.
    """
    now = _utcnow()
    try:
        await db.execute(
            insert(WebhookEvent).values(
                event_id=event.event_id,
                event_type=f"paylink_{event.outcome.lower()}",
                status=EVENT_PROCESSING,
                attempts=1,
                claimed_at=now,
            )
        )
        await db.commit()
        return None
    except IntegrityError:
        await db.rollback()

    lease = int(lease_minutes if lease_minutes is not None else settings.WEBHOOK_LEASE_MINUTES)
    stale_before = now - timedelta(minutes=max(lease, 0))
    reclaimed = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.event_id == event.event_id,
            or_(
                WebhookEvent.status == EVENT_FAILED,
                and_(WebhookEvent.status == EVENT_PROCESSING, WebhookEvent.claimed_at < stale_before),
            ),
        )
        .values(
            status=EVENT_PROCESSING,
            attempts=WebhookEvent.attempts + 1,
            claimed_at=now,
            last_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if reclaimed.rowcount == 1:
        logger.info("Webhook event %s re-claimed for retry", event.event_id)
        return None

    result = await db.execute(select(WebhookEvent.status).where(WebhookEvent.event_id == event.event_id))
    status = result.scalar()
    if status == EVENT_SUCCEEDED:
        logger.info("Webhook event %s already settled; skipping", event.event_id)
        return Disposition.DUPLICATE
    logger.info("Webhook event %s is being processed elsewhere", event.event_id)
    return Disposition.IN_PROGRESS


async def record_invalid_payload(raw_body: bytes, error: str, db: AsyncSession) -> str:
    """Keep a failed WebhookEvent for a signed body that cannot be settled."""
    event_id = f"invalid_{hashlib.sha256(raw_body or b'').hexdigest()[:32]}"
    logger.error("Webhook %s ignored: %s", event_id, error)
    try:
        await db.execute(
            insert(WebhookEvent).values(
                event_id=event_id,
                event_type="paylink_invalid",
                status=EVENT_FAILED,
                attempts=1,
                last_error=str(error)[:1000],
                claimed_at=_utcnow(),
            )
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(attempts=WebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return event_id


async def mark_event(event_id: str, status: str, db: AsyncSession, error: Optional[str] = None) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(status=status, last_error=(error or None) and str(error)[:1000])
        .execution_options(synchronize_session=False)
    )
    await db.commit()


def _log_metadata_mismatch(event: PaymentEvent, pending: PendingPayment) -> None:
    mismatches = []
    echoed_owner = event.metadata.get("owner_id") or event.metadata.get("deviceId")
    if echoed_owner and str(echoed_owner) != pending.owner_id:
        mismatches.append("owner")
    echoed_pages = event.metadata.get("pages")
    if echoed_pages is not None and str(echoed_pages) != str(pending.pages):
        mismatches.append("pages")
    echoed_order = event.metadata.get("order_number") or event.metadata.get("orderNumber")
    if echoed_order and str(echoed_order) != pending.order_number:
        mismatches.append("order_number")
    if event.amount is not None and round(event.amount * 100) != int(pending.amount):
        mismatches.append("amount")
    if mismatches:
        logger.warning(
            "Webhook %s metadata disagrees with pending payment on %s; settling from the pending payment",
            mask_id(event.transaction_no),
            ", ".join(mismatches),
        )


async def _settle_paid(event: PaymentEvent, pending: PendingPayment, db: AsyncSession) -> Tuple[Disposition, str]:
    _log_metadata_mismatch(event, pending)
    result = await apply_purchase(pending, db)
    if not result.applied:
        return Disposition.PROCESSED, "already_credited"
    logger.info(
        "Webhook credited %s pages to %s (txn %s)",
        pending.pages,
        mask_id(pending.owner_id),
        mask_id(event.transaction_no),
    )
    return Disposition.PROCESSED, "credited"


async def _settle_refund(event: PaymentEvent, pending: PendingPayment, db: AsyncSession) -> Tuple[Disposition, str]:
    reference = purchase_reference(event.transaction_no)
    pending_id = pending.id
    order_number = pending.order_number
    refundable_statuses = (PAYMENT_PENDING, PAYMENT_EXPIRED, PAYMENT_PAID)
    purchase = await get_transaction_by_reference(reference, db)

    if purchase is None:
        # Refund arrived first: occupy the purchase reference so a late PAID cannot credit.
        await credit(
            pending.owner_id,
            0,
            db,
            kind=KIND_REFUND_REVERSAL,
            reference_id=reference,
            reason="Refunded before payment settled",
        )
        await mark_pending_failed(pending_id, db, from_statuses=refundable_statuses)
        logger.warning("Refund for %s arrived before payment; purchase blocked", mask_id(event.transaction_no))
        return Disposition.PROCESSED, "refund_before_payment"

    owner_id = purchase.owner_id
    pages = int(purchase.amount or 0)
    if purchase.kind != KIND_PURCHASE or pages <= 0:
        return Disposition.PROCESSED, "nothing_to_reverse"

    # A short balance rolls the session back, so only plain values are used past this point.
    reversed_ = await debit_if_sufficient(
        owner_id,
        pages,
        db,
        kind=KIND_REFUND_REVERSAL,
        reference_id=f"{reference}:refund",
        reason=f"Refund of {order_number}",
        enforce_status=False,
    )
    await mark_pending_failed(pending_id, db, from_statuses=refundable_statuses)
    if reversed_:
        logger.info("Refund reversed %s pages for %s", pages, mask_id(owner_id))
        return Disposition.PROCESSED, "reversed"

    await set_status(owner_id, ACCOUNT_ON_HOLD, db)
    logger.warning(
        "Refund for %s could not be reversed (pages already spent); %s placed on hold",
        mask_id(event.transaction_no),
        mask_id(owner_id),
    )
    return Disposition.PROCESSED, "account_on_hold"


async def settle(event: PaymentEvent, db: AsyncSession) -> Tuple[Disposition, str]:
    """Apply the ledger effect of a claimed event."""
    if event.outcome not in {OUTCOME_PAID, OUTCOME_REFUNDED} and event.outcome not in FAILED_OUTCOMES:
        logger.info("Webhook outcome %s for %s needs no action", event.outcome, mask_id(event.transaction_no))
        return Disposition.PROCESSED, "no_action"

    pending = await get_pending_by_transaction(event.transaction_no, db)
    if pending is None:
        logger.error(
            "Webhook %s (%s) has no pending payment; use admin reconciliation",
            mask_id(event.transaction_no),
            event.outcome,
        )
        return Disposition.IGNORED, "no_pending_payment"

    if event.outcome == OUTCOME_PAID:
        return await _settle_paid(event, pending, db)
    if event.outcome == OUTCOME_REFUNDED:
        return await _settle_refund(event, pending, db)

    if pending.status == PAYMENT_PAID:
        logger.warning("Ignoring %s for already paid %s", event.outcome, pending.order_number)
        return Disposition.PROCESSED, "already_paid"
    await mark_pending_failed(pending.id, db)
    return Disposition.PROCESSED, "payment_failed"


async def handle_webhook(
    raw_body: bytes,
    signature: Optional[str],
    db: AsyncSession,
    *,
    secret: Optional[str] = None,
    lease_minutes: Optional[int] = None,
) -> WebhookOutcome:
    verify_signature(raw_body, signature, secret)
    try:
        event = parse_event(raw_body)
    except InvalidWebhookPayloadError as exc:
        # Signed bodies are always acknowledged; only signature and internal faults answer non-200.
        event_id = await record_invalid_payload(raw_body, exc.message, db)
        return WebhookOutcome(disposition=Disposition.IGNORED, event_id=event_id, detail="invalid_payload")
    logger.info(
        "Paylink webhook received: txn %s outcome %s amount %s",
        mask_id(event.transaction_no),
        event.outcome,
        event.amount,
    )

    blocked = await claim_event(event, db, lease_minutes=lease_minutes)
    if blocked is not None:
        return WebhookOutcome(disposition=blocked, event_id=event.event_id)

    try:
        disposition, detail = await settle(event, db)
    except Exception as exc:
        await db.rollback()
        logger.exception("Webhook settlement failed for %s", event.event_id)
        await mark_event(event.event_id, EVENT_FAILED, db, error=f"{type(exc).__name__}: {exc}")
        raise

    if disposition is Disposition.IGNORED:
        # Failed keeps the event re-claimable once the payment is reconciled.
        await mark_event(event.event_id, EVENT_FAILED, db, error=detail)
    else:
        await mark_event(event.event_id, EVENT_SUCCEEDED, db)
    return WebhookOutcome(disposition=disposition, event_id=event.event_id, detail=detail)
