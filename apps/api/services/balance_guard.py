"""Balance guard: the pre-check every credit-consuming operation passes through."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.account import Account
from models.credit_ledger import ENTRY_KIND_SESSION_CHARGE, LedgerEntry
from services.credits import apply_entry, get_balance, load_account, locked_transaction
from services.errors import InsufficientFunds, InvalidAmount
from services.metering import ZERO, to_money


def check_sufficient(account: Account, required: Decimal) -> Decimal:
    available = to_money(account.balance)
    needed = to_money(required)
    if available < needed:
        raise InsufficientFunds(
            f"Insufficient credits. Required: {needed}, available: {available}.",
            required=needed,
            available=available,
        )
    return available


async def ensure_sufficient(account_id: str, db: AsyncSession, required: Decimal) -> Decimal:
    """Return the current balance, or raise ``InsufficientFunds`` if below ``required``."""
    available = await get_balance(account_id, db)
    needed = to_money(required)
    if available < needed:
        raise InsufficientFunds(
            f"Insufficient credits. Required: {needed}, available: {available}.",
            required=needed,
            available=available,
        )
    return available


async def apply_debit(
    account: Account,
    db: AsyncSession,
    *,
    amount: Decimal,
    kind: str = ENTRY_KIND_SESSION_CHARGE,
    reference: Optional[str] = None,
    session_id: Optional[str] = None,
    description: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Check-then-debit for callers already inside the account's critical section."""
    debit_amount = to_money(amount)
    if debit_amount < ZERO:
        raise InvalidAmount("Debit amount must not be negative.", amount=debit_amount)
    check_sufficient(account, debit_amount)
    return await apply_entry(
        account,
        db,
        amount=-debit_amount,
        kind=kind,
        external_reference=reference,
        session_id=session_id,
        description=description,
        at_time=at_time,
    )


async def debit(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal,
    kind: str = ENTRY_KIND_SESSION_CHARGE,
    reference: Optional[str] = None,
    description: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> LedgerEntry:
    """Debit ``amount`` as one logical operation.

    The balance check and the ledger append run under the same per-account
    lock and transaction, so concurrent debits cannot jointly overdraw.
    """

    async def _operation() -> LedgerEntry:
        account = await load_account(account_id, db)
        entry = await apply_debit(
            account,
            db,
            amount=amount,
            kind=kind,
            reference=reference,
            description=description,
            at_time=at_time,
        )
        await db.commit()
        return entry

    return await locked_transaction(account_id, db, _operation)
