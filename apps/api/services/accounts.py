"""Account lifecycle: signup with starting credits, login, soft deactivation."""

from __future__ import annotations

from datetime import datetime
import logging
import re
from typing import Any, Dict, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_ledger import ENTRY_KIND_TOP_UP
from services.clock import utcnow
from services.credits import apply_entry, load_account, locked_transaction
from services.metering import ZERO, to_money
from services.passwords import MIN_PASSWORD_LENGTH, hash_password, verify_password

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def signup_bonus_reference(account_id: str) -> str:
    return f"signup-bonus:{account_id}"


async def find_account_by_email(email: str, db: AsyncSession) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def create_account(
    email: str,
    password: str,
    db: AsyncSession,
    *,
    name: Optional[str] = None,
    account_id: Optional[str] = None,
    at_time: Optional[datetime] = None,
) -> Account:
    """Create an account and book the starting bonus as a completed top-up."""
    normalized = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )
    if await find_account_by_email(normalized, db):
        raise HTTPException(status_code=409, detail="User already exists")

    new_id = account_id or str(uuid.uuid4())
    bonus = to_money(settings.INITIAL_CREDITS)

    async def _operation() -> Account:
        account = Account(
            id=new_id,
            email=normalized,
            name=name or normalized.split("@")[0],
            password_hash=hash_password(password),
            balance=ZERO,
            is_active=True,
        )
        db.add(account)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise HTTPException(status_code=409, detail="User already exists") from exc
        if bonus > ZERO:
            await apply_entry(
                account,
                db,
                amount=bonus,
                kind=ENTRY_KIND_TOP_UP,
                external_reference=signup_bonus_reference(new_id),
                description="Initial signup bonus",
                at_time=at_time,
            )
        await db.commit()
        return account

    account = await locked_transaction(new_id, db, _operation)
    logger.info("account_created account=%s bonus=%s", account.id, bonus)
    return account


async def authenticate(email: str, password: str, db: AsyncSession) -> Account:
    account = await find_account_by_email(email or "", db)
    if account is None or not verify_password(password or "", account.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not account.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return account


async def deactivate_account(account_id: str, db: AsyncSession, *, at_time: Optional[datetime] = None) -> Account:
    """Soft-deactivate an account. Ledger and sessions are kept as history."""

    async def _operation() -> Account:
        account = await load_account(account_id, db)
        if account.is_active:
            account.is_active = False
            account.deactivated_at = at_time or utcnow()
            await db.commit()
        return account

    account = await locked_transaction(account_id, db, _operation)
    logger.info("account_deactivated account=%s", account_id)
    return account


def serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "credits": str(to_money(account.balance)),
        "is_active": bool(account.is_active),
    }
