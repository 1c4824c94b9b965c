"""Periodic ledger reconciliation sweep.

Compares each account's cached balance against the sum of its completed
ledger entries and reports drift. It never rewrites balances.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.account import Account
from models.credit_ledger import ENTRY_STATUS_COMPLETED, LedgerEntry
from services.metering import to_money

logger = logging.getLogger(__name__)


async def find_balance_mismatches(db: AsyncSession) -> List[Dict[str, Any]]:
    totals = (
        select(
            LedgerEntry.account_id.label("account_id"),
            func.sum(LedgerEntry.amount).label("ledger_total"),
        )
        .where(LedgerEntry.status == ENTRY_STATUS_COMPLETED)
        .group_by(LedgerEntry.account_id)
        .subquery()
    )
    result = await db.execute(
        select(Account.id, Account.balance, totals.c.ledger_total).outerjoin(
            totals, totals.c.account_id == Account.id
        )
    )
    mismatches: List[Dict[str, Any]] = []
    for account_id, balance, ledger_sum in result.all():
        cached = to_money(balance)
        expected = to_money(ledger_sum)
        if cached != expected:
            mismatches.append(
                {
                    "account_id": account_id,
                    "balance": str(cached),
                    "ledger_total": str(expected),
                    "drift": str(cached - expected),
                }
            )
    return mismatches


async def run_reconciliation(session_maker: async_sessionmaker) -> Dict[str, Any]:
    async with session_maker() as db:
        checked = int((await db.execute(select(func.count(Account.id)))).scalar() or 0)
        mismatches = await find_balance_mismatches(db)
    for mismatch in mismatches:
        logger.error(
            "Ledger drift for account %s: balance=%s ledger_total=%s",
            mismatch["account_id"],
            mismatch["balance"],
            mismatch["ledger_total"],
        )
    return {"checked": checked, "mismatches": mismatches}
