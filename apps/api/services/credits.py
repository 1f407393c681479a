"""Credit ledger: balances, debits, idempotent credits and guest migration.

Every mutation is one conditional statement plus its ledger row inside a
single transaction, so concurrent callers never observe a read-then-write
window.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import ACCOUNT_ACTIVE, ACCOUNT_ON_HOLD, ACCOUNT_STATUSES, CreditAccount
from models.credit_transaction import (
    KIND_MIGRATION,
    KIND_SUPPORT_GRANT,
    KIND_USAGE,
    CreditTransaction,
)
from models.credit_transfer import CreditTransfer
from services.errors import AccountOnHoldError
from services.owner import is_user_owner, mask_id

logger = logging.getLogger(__name__)

MIGRATION_MAX_ATTEMPTS = 3


@dataclass
class CreditResult:
    applied: bool
    balance_after: int
    transaction_id: Optional[str] = None


@dataclass
class MigrationResult:
    transferred: bool
    amount: int


async def get_account(owner_id: str, db: AsyncSession) -> Optional[CreditAccount]:
    result = await db.execute(
        select(CreditAccount)
        .where(CreditAccount.owner_id == owner_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_transaction_by_reference(reference_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.reference_id == reference_id))
    return result.scalar_one_or_none()


async def _balance(owner_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(CreditAccount.pages_remaining).where(CreditAccount.owner_id == owner_id))
    return int(result.scalar() or 0)


async def ensure_account(owner_id: str, db: AsyncSession) -> CreditAccount:
    """Return the owner's account, creating it on first contact.

    Guest devices start with the free allocation; user owners start empty and
    receive their one-time registration bonus through grant_registration_bonus.
    """
    account = await get_account(owner_id, db)
    if account:
        return account

    initial_pages = 0 if is_user_owner(owner_id) else max(int(settings.GUEST_FREE_PAGES), 0)
    db.add(
        CreditAccount(
            owner_id=owner_id,
            pages_remaining=initial_pages,
            total_pages_used=0,
            status=ACCOUNT_ACTIVE,
        )
    )
    if initial_pages > 0:
        db.add(
            CreditTransaction(
                owner_id=owner_id,
                amount=initial_pages,
                kind=KIND_SUPPORT_GRANT,
                reference_id=f"guest-allocation:{owner_id}",
                balance_after=initial_pages,
                reason="Guest free allocation",
            )
        )
    try:
        await db.commit()
        logger.info("Credit account created for %s (pages=%s)", mask_id(owner_id), initial_pages)
    except IntegrityError:
        await db.rollback()

    account = await get_account(owner_id, db)
    if account is None:
        raise RuntimeError(f"credit account for {mask_id(owner_id)} could not be created")
    return account


async def debit_if_sufficient(
    owner_id: str,
    amount: int,
    db: AsyncSession,
    *,
    kind: str = KIND_USAGE,
    reference_id: Optional[str] = None,
    reason: Optional[str] = None,
    enforce_status: bool = True,
) -> bool:
    """Atomically take ``amount`` pages if the balance covers it.

    Returns False without mutation when the balance is short. Raises
    AccountOnHoldError for held accounts unless ``enforce_status`` is off
    (refund reversals still apply to held accounts). A repeated
    ``reference_id`` is treated as already applied.
    """
    debit = int(amount)
    if debit <= 0:
        raise ValueError("debit amount must be greater than 0")

    await ensure_account(owner_id, db)
    if reference_id and await get_transaction_by_reference(reference_id, db):
        return True

    conditions = [CreditAccount.owner_id == owner_id, CreditAccount.pages_remaining >= debit]
    if enforce_status:
        conditions.append(CreditAccount.status == ACCOUNT_ACTIVE)
    values: Dict[str, Any] = {
        "pages_remaining": CreditAccount.pages_remaining - debit,
        "updated_at": func.now(),
    }
    if kind == KIND_USAGE:
        values["total_pages_used"] = CreditAccount.total_pages_used + debit

    result = await db.execute(
        update(CreditAccount)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        account = await get_account(owner_id, db)
        if enforce_status and account is not None and account.status == ACCOUNT_ON_HOLD:
            raise AccountOnHoldError(
                "Account is on hold. Contact support.",
                pages_remaining=int(account.pages_remaining or 0),
            )
        return False

    balance_after = await _balance(owner_id, db)
    db.add(
        CreditTransaction(
            owner_id=owner_id,
            amount=-debit,
            kind=kind,
            reference_id=reference_id,
            balance_after=balance_after,
            reason=reason,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Another caller recorded the same reference first; this debit is rolled back.
        await db.rollback()
        logger.info("Debit reference %s already applied", reference_id)
        return True
    return True


async def credit(
    owner_id: str,
    amount: int,
    db: AsyncSession,
    *,
    kind: str,
    reference_id: str,
    reason: Optional[str] = None,
    amount_minor: Optional[int] = None,
) -> CreditResult:
    """Add pages exactly once per ``reference_id``.

    A replayed reference is a no-op returning the original transaction.
    A zero amount records the reference without changing the balance.
    """
    grant = int(amount)
    if grant < 0:
        raise ValueError("credit amount must not be negative")
    if not reference_id:
        raise ValueError("reference_id is required for credits")

    existing = await get_transaction_by_reference(reference_id, db)
    if existing:
        return CreditResult(applied=False, balance_after=await _balance(owner_id, db), transaction_id=existing.id)

    await ensure_account(owner_id, db)
    entry = CreditTransaction(
        owner_id=owner_id,
        amount=grant,
        kind=kind,
        reference_id=reference_id,
        reason=reason,
        amount_minor=amount_minor,
    )
    db.add(entry)
    try:
        await db.flush()
        if grant > 0:
            await db.execute(
                update(CreditAccount)
                .where(CreditAccount.owner_id == owner_id)
                .values(pages_remaining=CreditAccount.pages_remaining + grant, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
        entry.balance_after = await _balance(owner_id, db)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_transaction_by_reference(reference_id, db)
        logger.info("Credit reference %s already applied", reference_id)
        return CreditResult(
            applied=False,
            balance_after=await _balance(owner_id, db),
            transaction_id=existing.id if existing else None,
        )

    logger.info("Credited %s pages to %s (%s, ref=%s)", grant, mask_id(owner_id), kind, reference_id)
    return CreditResult(applied=True, balance_after=int(entry.balance_after or 0), transaction_id=entry.id)


async def set_status(owner_id: str, status: str, db: AsyncSession) -> CreditAccount:
    """Place an account on hold or release it."""
    if status not in ACCOUNT_STATUSES:
        raise ValueError(f"unknown account status: {status}")
    await ensure_account(owner_id, db)
    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.owner_id == owner_id)
        .values(status=status, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning("Account %s status set to %s", mask_id(owner_id), status)
    return await get_account(owner_id, db)


async def migrate_guest_to_user(
    device_owner_id: str,
    user_owner_id: str,
    free_allocation: int,
    db: AsyncSession,
) -> MigrationResult:
    """Move a guest's balance above the free allocation to the user owner, once per pair."""
    if device_owner_id == user_owner_id:
        raise ValueError("device and user owners must differ")
    free_pages = max(int(free_allocation), 0)
    await ensure_account(user_owner_id, db)

    for _ in range(MIGRATION_MAX_ATTEMPTS):
        transfer = CreditTransfer(device_owner_id=device_owner_id, user_owner_id=user_owner_id, amount=0)
        db.add(transfer)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            return MigrationResult(transferred=False, amount=0)

        guest_balance = await _balance(device_owner_id, db)
        amount = max(0, guest_balance - free_pages)
        if amount > 0:
            taken = await db.execute(
                update(CreditAccount)
                .where(
                    CreditAccount.owner_id == device_owner_id,
                    CreditAccount.pages_remaining == guest_balance,
                )
                .values(pages_remaining=guest_balance - amount, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                # Guest balance moved underneath us; start over with a fresh read.
                await db.rollback()
                continue
            await db.execute(
                update(CreditAccount)
                .where(CreditAccount.owner_id == user_owner_id)
                .values(pages_remaining=CreditAccount.pages_remaining + amount, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            reference = f"migration:{device_owner_id}:{user_owner_id}"
            db.add_all(
                [
                    CreditTransaction(
                        owner_id=device_owner_id,
                        amount=-amount,
                        kind=KIND_MIGRATION,
                        reference_id=f"{reference}:out",
                        balance_after=guest_balance - amount,
                        reason="Guest balance moved to user account",
                    ),
                    CreditTransaction(
                        owner_id=user_owner_id,
                        amount=amount,
                        kind=KIND_MIGRATION,
                        reference_id=f"{reference}:in",
                        balance_after=await _balance(user_owner_id, db),
                        reason="Guest balance received from device",
                    ),
                ]
            )
        transfer.amount = amount
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return MigrationResult(transferred=False, amount=0)

        logger.info(
            "Guest migration %s -> %s transferred %s pages",
            mask_id(device_owner_id),
            mask_id(user_owner_id),
            amount,
        )
        return MigrationResult(transferred=amount > 0, amount=amount)

    raise RuntimeError("guest balance kept changing during migration; retry the login")


async def grant_registration_bonus(user_owner_id: str, db: AsyncSession) -> int:
    """Grant the one-time registration bonus. Returns pages granted (0 if already granted)."""
    await ensure_account(user_owner_id, db)

    early_adopters = await db.execute(
        select(func.count()).select_from(CreditAccount).where(CreditAccount.is_early_adopter.is_(True))
    )
    is_early_adopter = int(early_adopters.scalar() or 0) < max(int(settings.EARLY_ADOPTER_LIMIT), 0)
    pages = int(settings.EARLY_ADOPTER_FREE_PAGES if is_early_adopter else settings.DEFAULT_FREE_PAGES)
    pages = max(pages, 0)

    claimed = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.owner_id == user_owner_id,
            CreditAccount.registration_bonus_granted.is_(False),
        )
        .values(
            registration_bonus_granted=True,
            is_early_adopter=is_early_adopter,
            pages_remaining=CreditAccount.pages_remaining + pages,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        return 0

    db.add(
        CreditTransaction(
            owner_id=user_owner_id,
            amount=pages,
            kind=KIND_SUPPORT_GRANT,
            reference_id=f"registration:{user_owner_id}",
            balance_after=await _balance(user_owner_id, db),
            reason="Early adopter registration bonus" if is_early_adopter else "Registration bonus",
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return 0
    logger.info("Registration bonus of %s pages granted to %s", pages, mask_id(user_owner_id))
    return pages


async def get_credit_summary(owner_id: str, db: AsyncSession) -> Dict[str, Any]:
    account = await ensure_account(owner_id, db)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.owner_id == owner_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "owner_id": owner_id,
        "pages_remaining": int(account.pages_remaining or 0),
        "total_pages_used": int(account.total_pages_used or 0),
        "status": account.status,
        "is_early_adopter": bool(account.is_early_adopter),
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
