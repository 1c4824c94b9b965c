"""Billing and credits router."""

from __future__ import annotations

from decimal import Decimal
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.clock import Clock, get_clock
from services.credits import get_credit_summary, list_entries, serialize_entry
from services.payments import PaymentGateway, WebhookVerificationError, get_payment_gateway
from services.settlement import create_top_up_intent, dispatch_payment_event

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentIntentRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=10000, decimal_places=2)


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(auth.account_id, db)


@router.get("/history")
async def credit_history(
    limit: int = Query(default=50, ge=1, le=200),
    skip: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entries, total = await list_entries(auth.account_id, db, limit=limit, skip=skip)
    return {
        "transactions": [serialize_entry(entry) for entry in entries],
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "has_more": skip + limit < total,
        },
    }


@router.post("/payment-intent")
async def create_payment_intent(
    request: PaymentIntentRequest,
    _rate_limit: None = Depends(rate_limit("billing_payment_intent", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to top up credits.")
    if not gateway.configured:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    return await create_top_up_intent(
        auth.account_id,
        db,
        amount=request.amount,
        gateway=gateway,
        email=auth.email,
    )


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Clock = Depends(get_clock),
):
    payload = await request.body()
    try:
        event = gateway.parse_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    outcome = await dispatch_payment_event(event, db, at_time=clock())
    return {"received": True, "event_id": event.event_id, **outcome}
