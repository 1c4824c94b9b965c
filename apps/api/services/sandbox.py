"""Sandbox session billing engine.

A session moves NONE -> RUNNING -> STOPPED and never back. Session rows are
committed at start, so a process restart never loses a running session.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import LedgerEntry
from models.sandbox_session import SESSION_STATUS_RUNNING, SESSION_STATUS_STOPPED, SandboxSession
from services.balance_guard import apply_debit
from services.clock import as_utc
from services.credits import load_account, locked_transaction
from services.errors import (
    AccountInactive,
    AlreadyRunning,
    AlreadyStopped,
    DailyJobLimitReached,
    InsufficientBalance,
    NotFound,
    NotRunning,
)
from services.metering import (
    ZERO,
    MachineSpec,
    RateSchedule,
    compute_accrued_cost,
    format_duration,
    to_money,
)

logger = logging.getLogger(__name__)


@dataclass
class StopResult:
    session: SandboxSession
    final_cost: Decimal
    charged: Decimal
    unpaid: Decimal
    entry: Optional[LedgerEntry] = None
    balance_after: Optional[Decimal] = None


def _day_bounds(at_time: datetime) -> Tuple[datetime, datetime]:
    current = as_utc(at_time)
    start = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


async def get_running_session(account_id: str, db: AsyncSession) -> Optional[SandboxSession]:
    result = await db.execute(
        select(SandboxSession)
        .where(
            SandboxSession.account_id == account_id,
            SandboxSession.status == SESSION_STATUS_RUNNING,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_session(session_id: str, db: AsyncSession) -> SandboxSession:
    result = await db.execute(
        select(SandboxSession)
        .where(SandboxSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise NotFound(f"Sandbox session {session_id} not found.", session_id=session_id)
    return session


async def count_sessions_started_on(account_id: str, db: AsyncSession, at_time: datetime) -> int:
    day_start, day_end = _day_bounds(at_time)
    result = await db.execute(
        select(func.count(SandboxSession.id)).where(
            SandboxSession.account_id == account_id,
            SandboxSession.start_time >= day_start,
            SandboxSession.start_time < day_end,
        )
    )
    return int(result.scalar() or 0)


async def start_session(
    account_id: str,
    db: AsyncSession,
    *,
    at_time: datetime,
    rates: Optional[RateSchedule] = None,
    machine: Optional[MachineSpec] = None,
) -> SandboxSession:
    """Open a running session for ``account_id`` with a snapshot of ``rates``."""
    schedule = rates or RateSchedule.from_settings()
    spec = machine or MachineSpec.from_settings()

    async def _operation() -> SandboxSession:
        account = await load_account(account_id, db)
        if not account.is_active:
            raise AccountInactive("Account is deactivated.", account_id=account_id)

        running = await get_running_session(account_id, db)
        if running is not None:
            raise AlreadyRunning("A sandbox session is already running.", session_id=running.id)

        minimum = to_money(settings.SANDBOX_MIN_START_BALANCE)
        balance = to_money(account.balance)
        if balance < minimum:
            raise InsufficientBalance(
                f"Insufficient credits. Minimum required: {minimum}, available: {balance}.",
                required=minimum,
                available=balance,
            )

        jobs_per_day = max(int(settings.SANDBOX_JOBS_PER_DAY), 0)
        if jobs_per_day:
            started_today = await count_sessions_started_on(account_id, db, at_time)
            if started_today >= jobs_per_day:
                raise DailyJobLimitReached(
                    f"Daily job limit reached ({jobs_per_day} jobs per day).",
                    limit=jobs_per_day,
                )

        session = SandboxSession(
            id=str(uuid.uuid4()),
            account_id=account_id,
            status=SESSION_STATUS_RUNNING,
            running_key=account_id,
            hourly_rate=schedule.hourly,
            daily_rate=schedule.daily,
            cpu=spec.cpu,
            memory_gb=spec.memory_gb,
            storage_gb=spec.storage_gb,
            start_time=as_utc(at_time),
        )
        db.add(session)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise AlreadyRunning("A sandbox session is already running.") from exc
        await db.commit()
        logger.info("sandbox_start account=%s session=%s rates=%s", account_id, session.id, schedule.as_dict())
        return session

    return await locked_transaction(account_id, db, _operation)


async def stop_session(
    session_id: str,
    db: AsyncSession,
    *,
    at_time: datetime,
    account_id: Optional[str] = None,
) -> StopResult:
    """Stop a running session, compute its final cost and debit it.

    The debit is capped at the available balance; any shortfall is recorded
    as ``unpaid_amount`` on the session. Stopping an already-stopped session
    raises ``AlreadyStopped`` carrying the originally recorded cost.
    """
    existing = await get_session(session_id, db)
    if account_id is not None and existing.account_id != account_id:
        raise NotFound(f"Sandbox session {session_id} not found.", session_id=session_id)
    owner_id = existing.account_id

    async def _operation() -> StopResult:
        session = await get_session(session_id, db)
        if session.status == SESSION_STATUS_STOPPED:
            raise AlreadyStopped(
                "Sandbox session is already stopped.",
                session_id=session.id,
                final_cost=to_money(session.final_cost),
            )

        account = await load_account(owner_id, db)
        stop_time = max(as_utc(at_time), as_utc(session.start_time))
        final_cost = compute_accrued_cost(session, stop_time)
        available = to_money(account.balance)
        charge = min(final_cost, available)
        unpaid = final_cost - charge

        session.status = SESSION_STATUS_STOPPED
        session.running_key = None
        session.end_time = stop_time
        session.final_cost = final_cost
        session.charged_amount = charge
        session.unpaid_amount = unpaid

        entry = None
        if charge > ZERO:
            entry = await apply_debit(
                account,
                db,
                amount=charge,
                session_id=session.id,
                description="Sandbox usage charge",
                at_time=stop_time,
            )
            session.charge_entry_id = entry.id
        await db.flush()
        await db.commit()

        if unpaid > ZERO:
            logger.warning(
                "sandbox_stop_shortfall account=%s session=%s final_cost=%s unpaid=%s",
                owner_id,
                session.id,
                final_cost,
                unpaid,
            )
        logger.info("sandbox_stop account=%s session=%s final_cost=%s", owner_id, session.id, final_cost)
        return StopResult(
            session=session,
            final_cost=final_cost,
            charged=charge,
            unpaid=unpaid,
            entry=entry,
            balance_after=to_money(account.balance),
        )

    return await locked_transaction(owner_id, db, _operation)


async def stop_running_session(account_id: str, db: AsyncSession, *, at_time: datetime) -> StopResult:
    running = await get_running_session(account_id, db)
    if running is None:
        raise NotRunning("No running sandbox session found.", account_id=account_id)
    return await stop_session(running.id, db, at_time=at_time, account_id=account_id)


def serialize_session(session: SandboxSession, *, at_time: Optional[datetime] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": session.id,
        "status": session.status,
        "start_time": as_utc(session.start_time).isoformat(),
        "end_time": as_utc(session.end_time).isoformat() if session.end_time else None,
        "billing_rate": {"hourly": str(to_money(session.hourly_rate)), "daily": str(to_money(session.daily_rate))},
        "machine_specs": {"cpu": session.cpu, "memory_gb": session.memory_gb, "storage_gb": session.storage_gb},
        "final_cost": str(to_money(session.final_cost)) if session.final_cost is not None else None,
        "charged_amount": str(to_money(session.charged_amount)) if session.charged_amount is not None else None,
        "unpaid_amount": str(to_money(session.unpaid_amount)) if session.unpaid_amount is not None else None,
    }
    if session.status == SESSION_STATUS_RUNNING and at_time is not None:
        payload["current_cost"] = str(compute_accrued_cost(session, at_time))
        payload["duration"] = format_duration(session.start_time, at_time=at_time)
    elif session.end_time is not None:
        payload["duration"] = format_duration(session.start_time, session.end_time)
    return payload


async def get_session_status(account_id: str, db: AsyncSession, *, at_time: datetime) -> Dict[str, Any]:
    running = await get_running_session(account_id, db)
    if running is None:
        return {"is_running": False, "sandbox": None}
    return {"is_running": True, "sandbox": serialize_session(running, at_time=at_time)}


async def list_sessions(account_id: str, db: AsyncSession, *, limit: int = 20, skip: int = 0) -> List[SandboxSession]:
    result = await db.execute(
        select(SandboxSession)
        .where(SandboxSession.account_id == account_id)
        .order_by(SandboxSession.start_time.desc())
        .offset(max(int(skip), 0))
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())
