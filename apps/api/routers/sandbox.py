"""Sandbox session router: start, stop, and live status."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.clock import Clock, as_utc, get_clock
from services.credits import get_balance
from services.sandbox import (
    get_session_status,
    list_sessions,
    serialize_session,
    start_session,
    stop_running_session,
    stop_session,
)

router = APIRouter()


class StopSandboxRequest(BaseModel):
    session_id: Optional[str] = None


@router.post("/start")
async def start_sandbox(
    _rate_limit: None = Depends(rate_limit("sandbox_start", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock()
    session = await start_session(auth.account_id, db, at_time=now)
    return {
        "message": "Sandbox started successfully",
        "session_id": session.id,
        "sandbox": serialize_session(session, at_time=now),
        "credits_remaining": str(await get_balance(auth.account_id, db)),
    }


@router.post("/stop")
async def stop_sandbox(
    request: Optional[StopSandboxRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    now = clock()
    if request is not None and request.session_id:
        result = await stop_session(request.session_id, db, at_time=now, account_id=auth.account_id)
    else:
        result = await stop_running_session(auth.account_id, db, at_time=now)

    session = result.session
    return {
        "message": "Sandbox stopped successfully",
        "sandbox": serialize_session(session),
        "billing": {
            "total_cost": str(result.final_cost),
            "charged": str(result.charged),
            "unpaid": str(result.unpaid),
            "duration": {
                "start": as_utc(session.start_time).isoformat(),
                "end": as_utc(session.end_time).isoformat() if session.end_time else None,
            },
            "remaining_credits": str(result.balance_after),
        },
    }


@router.get("/status")
async def sandbox_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return await get_session_status(auth.account_id, db, at_time=clock())


@router.get("/sessions")
async def sandbox_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    sessions = await list_sessions(auth.account_id, db, limit=limit, skip=skip)
    return {"sessions": [serialize_session(session) for session in sessions]}
