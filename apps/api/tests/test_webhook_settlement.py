import asyncio
from datetime import datetime, timedelta, timezone
import json
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.credit_account import CreditAccount
from models.pending_payment import PendingPayment
from models.webhook_event import WebhookEvent
from services.credits import debit_if_sufficient, get_account
from services.errors import SignatureInvalidError, WebhookNotConfiguredError
from services.settlement import (
    Disposition,
    PaymentEvent,
    claim_event,
    compute_signature,
    handle_webhook,
    verify_signature,
)


WEBHOOK_SECRET = "webhook-secret-for-tests"


def _body(transaction_no: str, status: str, amount: float = 12.0, note=None) -> bytes:
    payload = {"transactionNo": transaction_no, "orderStatus": status, "amount": amount}
    if note is not None:
        payload["note"] = json.dumps(note)
    return json.dumps(payload).encode("utf-8")


async def _send(client, body: bytes, signature=None, path="/payments/webhook"):
    headers = {"content-type": "application/json"}
    signature = signature if signature is not None else compute_signature(body, WEBHOOK_SECRET)
    if signature:
        headers["x-paylink-signature"] = signature
    with patch("config.settings.WEBHOOK_SECRET", WEBHOOK_SECRET):
        return await client.post(path, content=body, headers=headers)


async def _seed_pending(session_maker, transaction_no: str, owner_id: str = "user_buyer", pages: int = 25):
    async with session_maker() as db:
        db.add(
            PendingPayment(
                order_number=f"ORD_{transaction_no}",
                transaction_no=transaction_no,
                owner_id=owner_id,
                package_id="popular",
                pages=pages,
                amount=1200,
            )
        )
        await db.commit()


async def _account(session_maker, owner_id: str = "user_buyer"):
    async with session_maker() as db:
        return await get_account(owner_id, db)


async def _pending_status(session_maker, transaction_no: str) -> str:
    async with session_maker() as db:
        result = await db.execute(
            select(PendingPayment.status).where(PendingPayment.transaction_no == transaction_no)
        )
        return result.scalar()


def test_signature_is_mandatory_and_checked():
    body = b'{"transactionNo": "1"}'
    verify_signature(body, compute_signature(body, WEBHOOK_SECRET), WEBHOOK_SECRET)
    verify_signature(body, "sha256=" + compute_signature(body, WEBHOOK_SECRET).upper(), WEBHOOK_SECRET)
    with pytest.raises(SignatureInvalidError):
        verify_signature(body, None, WEBHOOK_SECRET)
    with pytest.raises(SignatureInvalidError):
        verify_signature(body, compute_signature(b"tampered", WEBHOOK_SECRET), WEBHOOK_SECRET)
    with pytest.raises(WebhookNotConfiguredError):
        verify_signature(body, "anything", "")


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(api_client, session_maker):
    await _seed_pending(session_maker, "9001")
    response = await _send(api_client, _body("9001", "PAID"), signature="deadbeef")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "SIGNATURE_INVALID"
    assert await _account(session_maker) is None


@pytest.mark.asyncio
async def test_paid_webhook_credits_once_and_replay_is_a_noop(api_client, session_maker):
    await _seed_pending(session_maker, "9002")

    first = await _send(api_client, _body("9002", "PAID"))
    replay = await _send(api_client, _body("9002", "Paid"), path="/webhooks/paylink")

    assert first.status_code == 200
    assert first.json()["disposition"] == "processed"
    assert replay.status_code == 200
    assert replay.json()["disposition"] == "duplicate"
    assert (await _account(session_maker)).pages_remaining == 25
    assert await _pending_status(session_maker, "9002") == "paid"


@pytest.mark.asyncio
async def test_concurrent_deliveries_credit_once(api_client, session_maker):
    await _seed_pending(session_maker, "9003")
    responses = await asyncio.gather(*(_send(api_client, _body("9003", "PAID")) for _ in range(3)))

    assert all(r.status_code == 200 for r in responses)
    assert (await _account(session_maker)).pages_remaining == 25


@pytest.mark.asyncio
async def test_echoed_metadata_never_redirects_credit(api_client, session_maker):
    await _seed_pending(session_maker, "9004", owner_id="user_buyer", pages=25)
    forged = {"owner_id": "user_attacker", "pages": 150, "order_number": "ORD_forged"}

    response = await _send(api_client, _body("9004", "PAID", amount=55.0, note=forged))

    assert response.status_code == 200
    assert (await _account(session_maker, "user_buyer")).pages_remaining == 25
    assert await _account(session_maker, "user_attacker") is None


@pytest.mark.asyncio
async def test_paid_without_pending_payment_is_ignored_and_retriable(api_client, session_maker):
    response = await _send(api_client, _body("9005", "PAID"))
    assert response.status_code == 200
    assert response.json()["disposition"] == "ignored"

    async with session_maker() as db:
        event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.status == "failed"
    assert event.last_error == "no_pending_payment"

    await _seed_pending(session_maker, "9005")
    retried = await _send(api_client, _body("9005", "PAID"))
    assert retried.json()["disposition"] == "processed"
    assert (await _account(session_maker)).pages_remaining == 25


@pytest.mark.asyncio
async def test_refund_reverses_unspent_purchase(api_client, session_maker):
    await _seed_pending(session_maker, "9006")
    await _send(api_client, _body("9006", "PAID"))
    refund = await _send(api_client, _body("9006", "REFUNDED"))

    assert refund.status_code == 200
    assert refund.json()["detail"] == "reversed"
    account = await _account(session_maker)
    assert account.pages_remaining == 0
    assert account.status == "active"
    assert await _pending_status(session_maker, "9006") == "failed"


@pytest.mark.asyncio
async def test_refund_of_spent_purchase_places_account_on_hold(api_client, session_maker):
    await _seed_pending(session_maker, "9007")
    await _send(api_client, _body("9007", "PAID"))
    async with session_maker() as db:
        assert await debit_if_sufficient("user_buyer", 20, db) is True

    refund = await _send(api_client, _body("9007", "REFUNDED"))

    assert refund.status_code == 200
    assert refund.json()["detail"] == "account_on_hold"
    account = await _account(session_maker)
    assert account.status == "on_hold"
    assert account.pages_remaining == 5
    assert await _pending_status(session_maker, "9007") == "failed"

    redelivered = await _send(api_client, _body("9007", "REFUNDED"))
    assert redelivered.json()["disposition"] == "duplicate"
    assert (await _account(session_maker)).pages_remaining == 5


@pytest.mark.asyncio
async def test_refund_settlement_reuses_session_after_short_balance(session_maker):
    await _seed_pending(session_maker, "9013", pages=10)
    async with session_maker() as db:
        raw = _body("9013", "PAID")
        paid = await handle_webhook(raw, compute_signature(raw, WEBHOOK_SECRET), db, secret=WEBHOOK_SECRET)
        assert paid.detail == "credited"
        assert await debit_if_sufficient("user_buyer", 7, db) is True

        raw = _body("9013", "REFUNDED")
        outcome = await handle_webhook(raw, compute_signature(raw, WEBHOOK_SECRET), db, secret=WEBHOOK_SECRET)

    assert outcome.disposition is Disposition.PROCESSED
    assert outcome.detail == "account_on_hold"
    account = await _account(session_maker)
    assert account.status == "on_hold"
    assert account.pages_remaining == 3


@pytest.mark.asyncio
async def test_refund_before_payment_blocks_late_credit(api_client, session_maker):
    await _seed_pending(session_maker, "9008")
    refund = await _send(api_client, _body("9008", "REFUNDED"))
    paid = await _send(api_client, _body("9008", "PAID"))

    assert refund.json()["detail"] == "refund_before_payment"
    assert paid.status_code == 200
    assert paid.json()["detail"] == "already_credited"
    assert (await _account(session_maker)).pages_remaining == 0


@pytest.mark.asyncio
async def test_failed_outcome_marks_pending_failed(api_client, session_maker):
    await _seed_pending(session_maker, "9009")
    response = await _send(api_client, _body("9009", "Canceled"))
    assert response.json()["detail"] == "payment_failed"
    assert await _pending_status(session_maker, "9009") == "failed"


@pytest.mark.asyncio
async def test_unknown_outcome_is_acknowledged(api_client, session_maker):
    response = await _send(api_client, _body("9010", "PENDING_REVIEW"))
    assert response.status_code == 200
    assert response.json()["detail"] == "no_action"


@pytest.mark.asyncio
async def test_signed_malformed_body_is_acknowledged_and_recorded(api_client, session_maker):
    body = b'{"orderStatus": "PAID"}'
    first = await _send(api_client, body)
    again = await _send(api_client, body)

    assert first.status_code == 200
    assert first.json()["disposition"] == "ignored"
    assert first.json()["detail"] == "invalid_payload"
    assert again.json()["event_id"] == first.json()["event_id"]
    async with session_maker() as db:
        event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.status == "failed"
    assert event.attempts == 2
    assert "transactionNo" in event.last_error


@pytest.mark.asyncio
async def test_unsigned_malformed_body_is_still_rejected(api_client, session_maker):
    response = await _send(api_client, b"not json", signature="deadbeef")
    assert response.status_code == 401
    async with session_maker() as db:
        assert (await db.execute(select(WebhookEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_settlement_error_marks_event_failed_and_redelivery_succeeds(api_client, session_maker):
    await _seed_pending(session_maker, "9011")
    with patch("services.settlement.apply_purchase", side_effect=RuntimeError("db blew up")):
        with pytest.raises(RuntimeError):
            await _send(api_client, _body("9011", "PAID"))

    async with session_maker() as db:
        event = (await db.execute(select(WebhookEvent))).scalar_one()
    assert event.status == "failed"
    assert "db blew up" in event.last_error

    redelivered = await _send(api_client, _body("9011", "PAID"))
    assert redelivered.json()["disposition"] == "processed"
    assert (await _account(session_maker)).pages_remaining == 25


@pytest.mark.asyncio
async def test_stale_processing_claim_can_be_taken_over(session_maker):
    event = PaymentEvent(transaction_no="9012", outcome="PAID")
    async with session_maker() as db:
        assert await claim_event(event, db, lease_minutes=5) is None
        assert await claim_event(event, db, lease_minutes=5) is Disposition.IN_PROGRESS

        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event.event_id)
            .values(claimed_at=datetime.now(timezone.utc) - timedelta(minutes=10))
        )
        await db.commit()
        assert await claim_event(event, db, lease_minutes=5) is None
        attempts = (
            await db.execute(select(WebhookEvent.attempts).where(WebhookEvent.event_id == event.event_id))
        ).scalar()
    assert attempts == 2


@pytest.mark.asyncio
async def test_handle_webhook_requires_configured_secret(session_maker):
    async with session_maker() as db:
        with pytest.raises(WebhookNotConfiguredError):
            await handle_webhook(_body("1", "PAID"), "sig", db, secret="")
        balance_rows = (await db.execute(select(CreditAccount))).scalars().all()
    assert balance_rows == []
