"""Credit ledger: append-only balance history plus the cached account balance."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.account import Account
from models.credit_ledger import (
    ENTRY_KIND_REFUND,
    ENTRY_KIND_SESSION_CHARGE,
    ENTRY_KIND_TOP_UP,
    ENTRY_KINDS,
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_FAILED,
    ENTRY_STATUS_PENDING,
    LedgerEntry,
)
from services.account_locks import account_locks
from services.clock import utcnow
from services.errors import (
    ConcurrentModification,
    DuplicateReference,
    InsufficientFunds,
    InvalidAmount,
    NotFound,
)
from services.metering import ZERO, RateSchedule, to_money

logger = logging.getLogger(__name__)

T = TypeVar("T")


def settlement_key(kind: str, reference: Optional[str]) -> Optional[str]:
    if reference and kind in (ENTRY_KIND_TOP_UP, ENTRY_KIND_REFUND):
        return f"{kind}:{reference}"
    return None


async def load_account(account_id: str, db: AsyncSession) -> Account:
    """Load an account with fresh column values, or raise ``NotFound``."""
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFound(f"Account {account_id} not found.", account_id=account_id)
    return account


async def get_balance(account_id: str, db: AsyncSession) -> Decimal:
    account = await load_account(account_id, db)
    return to_money(account.balance)


async def run_with_retries(db: AsyncSession, operation: Callable[[], Awaitable[T]], *, attempts: Optional[int] = None) -> T:
    """Run a committing operation, retrying lost optimistic-concurrency races.

    Any failure rolls the session back so no partial ledger state survives.
    """
    max_attempts = max(int(attempts or settings.LEDGER_MAX_RETRIES), 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except ConcurrentModification:
            await db.rollback()
            if attempt >= max_attempts:
                raise
            logger.warning("Ledger write lost a concurrent race; retrying (attempt %s/%s)", attempt, max_attempts)
        except Exception:
            await db.rollback()
            raise
    raise ConcurrentModification("Ledger write could not be applied.")


async def locked_transaction(account_id: str, db: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
    """Serialize ``operation`` with every other billing write for the account."""
    async with account_locks.hold(account_id):
        return await run_with_retries(db, operation)


async def _find_settled(db: AsyncSession, key: str) -> Optional[LedgerEntry]:
    result = await db.execute(select(LedgerEntry).where(LedgerEntry.settlement_key == key))
    return result.scalar_one_or_none()


async def find_entry_by_reference(
    db: AsyncSession,
    reference: str,
    *,
    kind: str = ENTRY_KIND_TOP_UP,
    status: Optional[str] = None,
) -> Optional[LedgerEntry]:
    query = select(LedgerEntry).where(
        LedgerEntry.external_reference == reference,
        LedgerEntry.kind == kind,
    )
    if status:
        query = query.where(LedgerEntry.status == status)
    result = await db.execute(query.order_by(LedgerEntry.created_at.desc()).limit(1))
    return result.scalars().first()


def _validate_amount(kind: str, amount: Decimal, reference: Optional[str]) -> None:
    if kind not in ENTRY_KINDS:
        raise InvalidAmount(f"Unknown ledger entry kind: {kind}", kind=kind)
    if kind == ENTRY_KIND_TOP_UP:
        if not reference:
            raise InvalidAmount("Top-up entries require an external reference.", kind=kind)
        if amount <= 0:
            raise InvalidAmount("Top-up amount must be positive.", amount=amount)
    elif kind == ENTRY_KIND_REFUND and amount <= 0:
        raise InvalidAmount("Refund amount must be positive.", amount=amount)
    elif kind == ENTRY_KIND_SESSION_CHARGE and amount > 0:
        raise InvalidAmount("Session charges must be debits.", amount=amount)


async def _flush_balance_write(db: AsyncSession, key: Optional[str], reference: Optional[str]) -> None:
    try:
        await db.flush()
    except StaleDataError as exc:
        raise ConcurrentModification("Account balance changed during the write.") from exc
    except IntegrityError as exc:
        if key:
            raise DuplicateReference(
                f"Reference {reference} was already settled.",
                reference=reference or "",
            ) from exc
        raise


async def apply_entry(
    account: Account,
    db: AsyncSession,
    *,
    amount: Decimal,
    kind: str,
    external_reference: Optional[str] = None,
    session_id: Optional[str] = None,
    description: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Insert a completed entry and move the cached balance by ``amount``.

    Flushes but does not commit; the caller holds the account lock and owns
    the transaction.
    """
    signed_amount = to_money(amount)
    _validate_amount(kind, signed_amount, external_reference)

    key = settlement_key(kind, external_reference)
    if key:
        existing = await _find_settled(db, key)
        if existing is not None:
            raise DuplicateReference(
                f"Reference {external_reference} was already settled.",
                reference=external_reference or "",
                entry_id=existing.id,
            )

    current = to_money(account.balance)
    next_balance = current + signed_amount
    if next_balance < ZERO:
        raise InsufficientFunds(
            f"Insufficient credits. Required: {-signed_amount}, available: {current}.",
            required=-signed_amount,
            available=current,
        )

    entry = LedgerEntry(
        id=str(uuid.uuid4()),
        account_id=account.id,
        amount=signed_amount,
        kind=kind,
        status=ENTRY_STATUS_COMPLETED,
        external_reference=external_reference,
        settlement_key=key,
        session_id=session_id,
        description=description,
        balance_after=next_balance,
        created_at=at_time or utcnow(),
        settled_at=at_time or utcnow(),
    )
    db.add(entry)
    account.balance = next_balance
    await _flush_balance_write(db, key, external_reference)
    logger.info(
        "ledger_entry account=%s kind=%s amount=%s balance_after=%s ref=%s",
        account.id,
        kind,
        signed_amount,
        next_balance,
        external_reference,
    )
    return entry


async def append_entry(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal,
    kind: str,
    external_reference: Optional[str] = None,
    session_id: Optional[str] = None,
    description: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Atomically append a completed entry and update the balance."""

    async def _operation() -> LedgerEntry:
        account = await load_account(account_id, db)
        entry = await apply_entry(
            account,
            db,
            amount=amount,
            kind=kind,
            external_reference=external_reference,
            session_id=session_id,
            description=description,
            at_time=at_time,
        )
        await db.commit()
        return entry

    return await locked_transaction(account_id, db, _operation)


async def record_pending_entry(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal,
    external_reference: str,
    description: Optional[str] = None,
) -> LedgerEntry:
    """Record an expected top-up that has not been paid yet. Balance is untouched."""
    credit = to_money(amount)
    _validate_amount(ENTRY_KIND_TOP_UP, credit, external_reference)

    async def _operation() -> LedgerEntry:
        await load_account(account_id, db)
        existing = await find_entry_by_reference(db, external_reference, status=ENTRY_STATUS_PENDING)
        if existing is not None:
            return existing
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            account_id=account_id,
            amount=credit,
            kind=ENTRY_KIND_TOP_UP,
            status=ENTRY_STATUS_PENDING,
            external_reference=external_reference,
            description=description,
            created_at=utcnow(),
        )
        db.add(entry)
        await db.commit()
        return entry

    return await locked_transaction(account_id, db, _operation)


async def complete_pending_entry(
    entry: LedgerEntry,
    account: Account,
    db: AsyncSession,
    *,
    amount: Optional[Decimal] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Transition a pending top-up to completed and credit the balance.

    Caller holds the account lock and commits.
    """
    if entry.status != ENTRY_STATUS_PENDING:
        raise InvalidAmount(f"Ledger entry {entry.id} is already {entry.status}.", entry_id=entry.id)
    credit = to_money(amount if amount is not None else entry.amount)
    _validate_amount(entry.kind, credit, entry.external_reference)

    key = settlement_key(entry.kind, entry.external_reference)
    if key:
        existing = await _find_settled(db, key)
        if existing is not None:
            raise DuplicateReference(
                f"Reference {entry.external_reference} was already settled.",
                reference=entry.external_reference or "",
                entry_id=existing.id,
            )

    next_balance = to_money(account.balance) + credit
    entry.amount = credit
    entry.status = ENTRY_STATUS_COMPLETED
    entry.settlement_key = key
    entry.balance_after = next_balance
    entry.settled_at = at_time or utcnow()
    account.balance = next_balance
    await _flush_balance_write(db, key, entry.external_reference)
    logger.info(
        "ledger_entry_settled account=%s entry=%s amount=%s balance_after=%s",
        account.id,
        entry.id,
        credit,
        next_balance,
    )
    return entry


async def fail_pending_entry(entry: LedgerEntry, db: AsyncSession, *, at_time: Optional[datetime] = None) -> LedgerEntry:
    """Transition a pending entry to failed. Never touches the balance."""
    if entry.status != ENTRY_STATUS_PENDING:
        raise InvalidAmount(f"Ledger entry {entry.id} is already {entry.status}.", entry_id=entry.id)
    entry.status = ENTRY_STATUS_FAILED
    entry.settled_at = at_time or utcnow()
    await db.flush()
    return entry


async def record_failed_entry(
    account_id: str,
    db: AsyncSession,
    *,
    external_reference: str,
    amount: Decimal = ZERO,
    description: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Add a failed top-up marker for audit. Caller holds the lock and commits."""
    entry = LedgerEntry(
        id=str(uuid.uuid4()),
        account_id=account_id,
        amount=to_money(amount),
        kind=ENTRY_KIND_TOP_UP,
        status=ENTRY_STATUS_FAILED,
        external_reference=external_reference,
        description=description,
        created_at=at_time or utcnow(),
        settled_at=at_time or utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def ledger_total(account_id: str, db: AsyncSession) -> Decimal:
    """Sum of completed entry amounts; must equal the cached balance."""
    result = await db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.status == ENTRY_STATUS_COMPLETED,
        )
    )
    return to_money(result.scalar())


async def list_entries(
    account_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    skip: int = 0,
) -> Tuple[List[LedgerEntry], int]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(max(int(skip), 0))
        .limit(max(int(limit), 1))
    )
    entries = list(result.scalars().all())
    total_result = await db.execute(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id)
    )
    return entries, int(total_result.scalar() or 0)


def serialize_entry(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind,
        "status": entry.status,
        "amount": str(to_money(entry.amount)),
        "balance_after": str(to_money(entry.balance_after)) if entry.balance_after is not None else None,
        "external_reference": entry.external_reference,
        "session_id": entry.session_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
        "settled_at": entry.settled_at.isoformat() if entry.settled_at else None,
    }


async def get_credit_summary(account_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_balance(account_id, db)
    entries, _total = await list_entries(account_id, db, limit=30)
    return {
        "balance": str(balance),
        "minimum_topup": str(to_money(settings.MINIMUM_TOPUP)),
        "minimum_start_balance": str(to_money(settings.SANDBOX_MIN_START_BALANCE)),
        "rates": RateSchedule.from_settings().as_dict(),
        "recent_entries": [serialize_entry(entry) for entry in entries],
    }
