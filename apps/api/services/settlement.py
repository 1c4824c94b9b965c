"""Payment settlement: turn processor notifications into ledger top-ups exactly once."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_ledger import (
    ENTRY_KIND_TOP_UP,
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_FAILED,
    ENTRY_STATUS_PENDING,
)
from services.credits import (
    apply_entry,
    complete_pending_entry,
    fail_pending_entry,
    find_entry_by_reference,
    load_account,
    locked_transaction,
    record_failed_entry,
    record_pending_entry,
)
from services.errors import DuplicateReference, InvalidAmount, NotFound
from services.metering import ZERO, to_money
from services.payments import PaymentEvent, PaymentGateway

logger = logging.getLogger(__name__)

RESULT_CREDITED = "credited"
RESULT_ALREADY_PROCESSED = "already_processed"
RESULT_FAILED_RECORDED = "failed_recorded"
RESULT_IGNORED = "ignored"


async def handle_payment_succeeded(
    external_reference: str,
    account_id: str,
    amount: Decimal,
    db: AsyncSession,
    *,
    at_time: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Credit a successful payment. Safe under at-least-once delivery."""
    credit = to_money(amount)
    if credit <= ZERO:
        raise InvalidAmount("Settled amount must be positive.", amount=credit)

    async def _operation() -> Dict[str, Any]:
        account = await load_account(account_id, db)
        pending = await find_entry_by_reference(db, external_reference, status=ENTRY_STATUS_PENDING)
        if pending is not None and pending.account_id == account_id:
            entry = await complete_pending_entry(pending, account, db, amount=credit, at_time=at_time)
        else:
            if pending is not None:
                logger.warning(
                    "Payment %s opened by account %s settled for account %s; failing the stale pending entry",
                    external_reference,
                    pending.account_id,
                    account_id,
                )
                await fail_pending_entry(pending, db, at_time=at_time)
            entry = await apply_entry(
                account,
                db,
                amount=credit,
                kind=ENTRY_KIND_TOP_UP,
                external_reference=external_reference,
                description="Credit top-up via Stripe",
                at_time=at_time,
            )
        await db.commit()
        return {
            "result": RESULT_CREDITED,
            "entry_id": entry.id,
            "amount": str(credit),
            "balance_after": str(to_money(account.balance)),
        }

    try:
        outcome = await locked_transaction(account_id, db, _operation)
    except DuplicateReference as exc:
        logger.info("Payment %s already settled; ignoring duplicate notification", external_reference)
        return {"result": RESULT_ALREADY_PROCESSED, "entry_id": exc.entry_id, "amount": str(credit)}
    logger.info("Payment succeeded: %s, credits added: %s (account=%s)", external_reference, credit, account_id)
    return outcome


async def handle_payment_failed(
    external_reference: str,
    account_id: str,
    db: AsyncSession,
    *,
    at_time: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record a failed payment. Never changes the balance."""

    async def _operation() -> Dict[str, Any]:
        await load_account(account_id, db)
        completed = await find_entry_by_reference(db, external_reference, status=ENTRY_STATUS_COMPLETED)
        if completed is not None:
            return {"result": RESULT_IGNORED, "entry_id": completed.id}

        pending = await find_entry_by_reference(db, external_reference, status=ENTRY_STATUS_PENDING)
        if pending is not None:
            entry = await fail_pending_entry(pending, db, at_time=at_time)
        else:
            already_failed = await find_entry_by_reference(db, external_reference, status=ENTRY_STATUS_FAILED)
            if already_failed is not None:
                return {"result": RESULT_ALREADY_PROCESSED, "entry_id": already_failed.id}
            entry = await record_failed_entry(
                account_id,
                db,
                external_reference=external_reference,
                description="Stripe payment failed",
                at_time=at_time,
            )
        await db.commit()
        return {"result": RESULT_FAILED_RECORDED, "entry_id": entry.id}

    outcome = await locked_transaction(account_id, db, _operation)
    logger.info("Payment failed: %s (account=%s, result=%s)", external_reference, account_id, outcome["result"])
    return outcome


async def _resolve_account_id(event: PaymentEvent, db: AsyncSession) -> str:
    if event.external_reference:
        entry = await find_entry_by_reference(db, event.external_reference)
        if entry is not None:
            if event.account_id and event.account_id != entry.account_id:
                logger.warning(
                    "Payment %s metadata names account %s but the ledger owner is %s",
                    event.external_reference,
                    event.account_id,
                    entry.account_id,
                )
            return entry.account_id
    if event.account_id:
        return event.account_id
    raise NotFound(
        f"No account linked to payment {event.external_reference}.",
        reference=event.external_reference,
    )


async def dispatch_payment_event(event: PaymentEvent, db: AsyncSession, *, at_time: Optional[datetime] = None) -> Dict[str, Any]:
    """Route a verified webhook event to the matching settlement handler."""
    if not (event.succeeded or event.failed):
        logger.info("Unhandled event type: %s", event.event_type)
        return {"result": RESULT_IGNORED, "event_type": event.event_type}
    if not event.external_reference:
        raise InvalidAmount("Payment event is missing the payment id.", event_id=event.event_id)

    account_id = await _resolve_account_id(event, db)
    if event.succeeded:
        if event.amount is None:
            raise InvalidAmount("Payment event is missing the amount.", event_id=event.event_id)
        return await handle_payment_succeeded(event.external_reference, account_id, event.amount, db, at_time=at_time)
    return await handle_payment_failed(event.external_reference, account_id, db, at_time=at_time)


async def create_top_up_intent(
    account_id: str,
    db: AsyncSession,
    *,
    amount: Decimal,
    gateway: PaymentGateway,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a processor payment intent and the matching pending ledger entry."""
    requested = to_money(amount)
    minimum = to_money(settings.MINIMUM_TOPUP)
    if requested < minimum:
        raise InvalidAmount(f"Minimum top-up amount is {minimum}.", minimum=minimum)

    account = await load_account(account_id, db)
    intent = await gateway.create_payment_intent(requested, account_id=account.id, email=email or account.email)
    entry = await record_pending_entry(
        account_id,
        db,
        amount=requested,
        external_reference=intent.id,
        description="Credit top-up via Stripe",
    )
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "amount": str(requested),
        "currency": intent.currency,
        "entry_id": entry.id,
    }
