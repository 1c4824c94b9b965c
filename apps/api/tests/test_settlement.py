import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from helpers import T0, assert_ledger_consistent, create_funded_account
from models.credit_ledger import (
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_FAILED,
    ENTRY_STATUS_PENDING,
    LedgerEntry,
)
from services.errors import InvalidAmount, NotFound
from services.payments import EVENT_PAYMENT_FAILED, EVENT_PAYMENT_SUCCEEDED, PaymentEvent
from services.settlement import (
    create_top_up_intent,
    dispatch_payment_event,
    handle_payment_failed,
    handle_payment_succeeded,
)


async def _entries_for(db, reference):
    result = await db.execute(select(LedgerEntry).where(LedgerEntry.external_reference == reference))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_duplicate_success_notification_credits_once(db):
    account_id = await create_funded_account(db, Decimal("5.00"))

    first = await handle_payment_succeeded("pi_123", account_id, Decimal("10.00"), db, at_time=T0)
    second = await handle_payment_succeeded("pi_123", account_id, Decimal("10.00"), db, at_time=T0)

    assert first["result"] == "credited"
    assert second["result"] == "already_processed"
    assert second["entry_id"] == first["entry_id"]
    assert await assert_ledger_consistent(db, account_id) == Decimal("15.0000")


@pytest.mark.asyncio
async def test_success_for_unknown_account_is_not_found(db):
    with pytest.raises(NotFound):
        await handle_payment_succeeded("pi_orphan", "no-such-account", Decimal("10.00"), db)


@pytest.mark.asyncio
async def test_success_with_non_positive_amount_is_rejected(db):
    account_id = await create_funded_account(db, Decimal("5.00"))

    with pytest.raises(InvalidAmount):
        await handle_payment_succeeded("pi_zero", account_id, Decimal("0"), db)


@pytest.mark.asyncio
async def test_failed_payment_never_changes_balance(db):
    account_id = await create_funded_account(db, Decimal("5.00"))

    outcome = await handle_payment_failed("pi_declined", account_id, db, at_time=T0)
    repeat = await handle_payment_failed("pi_declined", account_id, db, at_time=T0)

    assert outcome["result"] == "failed_recorded"
    assert repeat["result"] == "already_processed"
    entries = await _entries_for(db, "pi_declined")
    assert [entry.status for entry in entries] == [ENTRY_STATUS_FAILED]
    assert await assert_ledger_consistent(db, account_id) == Decimal("5.0000")


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(db):
    account_id = await create_funded_account(db, Decimal("5.00"))
    await handle_payment_succeeded("pi_ok", account_id, Decimal("10.00"), db, at_time=T0)

    outcome = await handle_payment_failed("pi_ok", account_id, db, at_time=T0)

    assert outcome["result"] == "ignored"
    assert await assert_ledger_consistent(db, account_id) == Decimal("15.0000")


@pytest.mark.asyncio
async def test_success_after_recorded_failure_still_credits(db):
    account_id = await create_funded_account(db, Decimal("5.00"))
    await handle_payment_failed("pi_retry", account_id, db, at_time=T0)

    outcome = await handle_payment_succeeded("pi_retry", account_id, Decimal("10.00"), db, at_time=T0)

    assert outcome["result"] == "credited"
    assert await assert_ledger_consistent(db, account_id) == Decimal("15.0000")


@pytest.mark.asyncio
async def test_top_up_intent_records_pending_entry_and_webhook_completes_it(db, gateway):
    account_id = await create_funded_account(db, Decimal("5.00"))

    intent = await create_top_up_intent(account_id, db, amount=Decimal("20.00"), gateway=gateway)

    assert intent["payment_intent_id"] == "pi_test_1"
    assert intent["client_secret"] == "pi_test_1_secret"
    assert intent["amount"] == "20.0000"
    assert gateway.created[0]["account_id"] == account_id
    pending = await _entries_for(db, "pi_test_1")
    assert [entry.status for entry in pending] == [ENTRY_STATUS_PENDING]
    assert await assert_ledger_consistent(db, account_id) == Decimal("5.0000")

    outcome = await handle_payment_succeeded("pi_test_1", account_id, Decimal("20.00"), db, at_time=T0)

    assert outcome["entry_id"] == intent["entry_id"]
    settled = await _entries_for(db, "pi_test_1")
    assert [entry.status for entry in settled] == [ENTRY_STATUS_COMPLETED]
    assert await assert_ledger_consistent(db, account_id) == Decimal("25.0000")


@pytest.mark.asyncio
async def test_failed_notification_fails_pending_entry(db, gateway):
    account_id = await create_funded_account(db, Decimal("5.00"))
    intent = await create_top_up_intent(account_id, db, amount=Decimal("20.00"), gateway=gateway)

    outcome = await handle_payment_failed(intent["payment_intent_id"], account_id, db, at_time=T0)

    assert outcome == {"result": "failed_recorded", "entry_id": intent["entry_id"]}
    assert await assert_ledger_consistent(db, account_id) == Decimal("5.0000")


@pytest.mark.asyncio
async def test_top_up_below_minimum_is_rejected(db, gateway):
    account_id = await create_funded_account(db, Decimal("5.00"))

    with pytest.raises(InvalidAmount):
        await create_top_up_intent(account_id, db, amount=Decimal("4.99"), gateway=gateway)
    assert gateway.created == []


@pytest.mark.asyncio
async def test_dispatch_resolves_account_from_pending_entry(db, gateway):
    account_id = await create_funded_account(db, Decimal("5.00"))
    intent = await create_top_up_intent(account_id, db, amount=Decimal("10.00"), gateway=gateway)
    event = PaymentEvent(
        event_id="evt_1",
        event_type=EVENT_PAYMENT_SUCCEEDED,
        external_reference=intent["payment_intent_id"],
        account_id=None,
        amount=Decimal("10.00"),
    )

    outcome = await dispatch_payment_event(event, db, at_time=T0)

    assert outcome["result"] == "credited"
    assert await assert_ledger_consistent(db, account_id) == Decimal("15.0000")


@pytest.mark.asyncio
async def test_dispatch_without_known_account_is_not_found(db):
    event = PaymentEvent(
        event_id="evt_2",
        event_type=EVENT_PAYMENT_FAILED,
        external_reference="pi_unknown",
        account_id=None,
        amount=None,
    )

    with pytest.raises(NotFound):
        await dispatch_payment_event(event, db)


@pytest.mark.asyncio
async def test_dispatch_ignores_unrelated_event_types(db):
    event = PaymentEvent(
        event_id="evt_3",
        event_type="customer.created",
        external_reference="cus_1",
        account_id=None,
        amount=None,
    )

    assert await dispatch_payment_event(event, db) == {"result": "ignored", "event_type": "customer.created"}


@pytest.mark.asyncio
async def test_concurrent_success_notifications_credit_once(session_maker):
    async with session_maker() as setup:
        account_id = await create_funded_account(setup, Decimal("5.00"))

    async def _settle():
        async with session_maker() as db:
            return await handle_payment_succeeded("pi_dup", account_id, Decimal("10.00"), db, at_time=T0)

    outcomes = await asyncio.gather(*[_settle() for _ in range(4)])

    results = sorted(outcome["result"] for outcome in outcomes)
    assert results == ["already_processed"] * 3 + ["credited"]
    assert len({outcome["entry_id"] for outcome in outcomes}) == 1
    async with session_maker() as check:
        assert await assert_ledger_consistent(check, account_id) == Decimal("15.0000")
        entries = await _entries_for(check, "pi_dup")
        assert [entry.status for entry in entries] == [ENTRY_STATUS_COMPLETED]


@pytest.mark.asyncio
async def test_dispatch_credits_pending_owner_when_metadata_disagrees(db, gateway):
    owner_id = await create_funded_account(db, Decimal("5.00"))
    other_id = await create_funded_account(db, Decimal("5.00"))
    intent = await create_top_up_intent(owner_id, db, amount=Decimal("10.00"), gateway=gateway)
    event = PaymentEvent(
        event_id="evt_4",
        event_type=EVENT_PAYMENT_SUCCEEDED,
        external_reference=intent["payment_intent_id"],
        account_id=other_id,
        amount=Decimal("10.00"),
    )

    outcome = await dispatch_payment_event(event, db, at_time=T0)

    assert outcome["result"] == "credited"
    assert outcome["entry_id"] == intent["entry_id"]
    assert await assert_ledger_consistent(db, owner_id) == Decimal("15.0000")
    assert await assert_ledger_consistent(db, other_id) == Decimal("5.0000")


@pytest.mark.asyncio
async def test_settling_for_another_account_fails_the_stale_pending_entry(db, gateway):
    owner_id = await create_funded_account(db, Decimal("5.00"))
    other_id = await create_funded_account(db, Decimal("5.00"))
    intent = await create_top_up_intent(owner_id, db, amount=Decimal("10.00"), gateway=gateway)

    outcome = await handle_payment_succeeded(intent["payment_intent_id"], other_id, Decimal("10.00"), db, at_time=T0)

    assert outcome["result"] == "credited"
    entries = await _entries_for(db, intent["payment_intent_id"])
    assert sorted((entry.account_id, entry.status) for entry in entries) == sorted(
        [(owner_id, ENTRY_STATUS_FAILED), (other_id, ENTRY_STATUS_COMPLETED)]
    )
    assert await assert_ledger_consistent(db, owner_id) == Decimal("5.0000")
    assert await assert_ledger_consistent(db, other_id) == Decimal("15.0000")
