"""Shared builders for billing tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from models.account import Account
from models.credit_ledger import ENTRY_KIND_TOP_UP
from services.credits import append_entry, get_balance, ledger_total
from services.metering import to_money
from services.payments import PaymentGateway, PaymentIntentResult

TEST_WEBHOOK_SECRET = "whsec_test_secret_for_signatures"
T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Manually advanced clock for deterministic metering."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePaymentGateway(PaymentGateway):
    """Real webhook verification, canned payment intents."""

    def __init__(self) -> None:
        super().__init__("", TEST_WEBHOOK_SECRET)
        self.created: list = []

    @property
    def configured(self) -> bool:
        return True

    async def create_payment_intent(
        self, amount: Decimal, *, account_id: str, email: Optional[str] = None
    ) -> PaymentIntentResult:
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append({"id": intent_id, "amount": amount, "account_id": account_id, "email": email})
        return PaymentIntentResult(id=intent_id, client_secret=f"{intent_id}_secret", amount=amount, currency="usd")


def sign_webhook(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def payment_event_payload(
    event_type: str,
    payment_id: str,
    *,
    amount_cents: int = 1000,
    account_id: Optional[str] = None,
) -> str:
    data_object: Dict[str, Any] = {
        "id": payment_id,
        "object": "payment_intent",
        "amount": amount_cents,
        "amount_received": amount_cents if event_type == "payment_intent.succeeded" else 0,
        "currency": "usd",
        "metadata": {"account_id": account_id} if account_id else {},
    }
    return json.dumps(
        {
            "id": f"evt_{uuid.uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    )


async def create_funded_account(db: AsyncSession, balance: Decimal, *, email: Optional[str] = None) -> str:
    """Insert an account whose balance is backed by a seed top-up entry."""
    account_id = str(uuid.uuid4())
    db.add(
        Account(
            id=account_id,
            email=email or f"{account_id[:8]}@example.com",
            password_hash="not-a-real-hash",
            balance=Decimal("0"),
            is_active=True,
        )
    )
    await db.commit()
    if to_money(balance) > 0:
        await append_entry(
            account_id,
            db,
            amount=balance,
            kind=ENTRY_KIND_TOP_UP,
            external_reference=f"seed:{account_id}",
            at_time=T0,
        )
    return account_id


async def assert_ledger_consistent(db: AsyncSession, account_id: str) -> Decimal:
    balance = await get_balance(account_id, db)
    assert balance == await ledger_total(account_id, db)
    assert balance >= 0
    return balance
