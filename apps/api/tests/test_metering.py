from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from services.metering import (
    RateSchedule,
    compute_accrued_cost,
    compute_cost,
    format_duration,
    to_money,
)

START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
DEFAULT_RATES = RateSchedule(hourly=Decimal("0.85"), daily=Decimal("2.00"))


def test_ten_hours_bills_at_prorated_daily_rate():
    cost = compute_cost(START, DEFAULT_RATES, START + timedelta(hours=10))

    # hourly would be 8.50, daily is 10/24 * 2.00
    assert cost == Decimal("0.8333")


def test_one_hour_bills_at_hourly_rate_when_cheaper():
    rates = RateSchedule(hourly=Decimal("0.85"), daily=Decimal("50.00"))

    assert compute_cost(START, rates, START + timedelta(hours=1)) == Decimal("0.8500")


def test_zero_elapsed_costs_nothing():
    assert compute_cost(START, DEFAULT_RATES, START) == Decimal("0.0000")


def test_clock_skew_never_produces_negative_cost():
    assert compute_cost(START, DEFAULT_RATES, START - timedelta(minutes=5)) == Decimal("0.0000")


@pytest.mark.parametrize(
    "earlier,later",
    [
        (timedelta(seconds=1), timedelta(seconds=2)),
        (timedelta(minutes=30), timedelta(hours=1)),
        (timedelta(hours=2), timedelta(hours=23)),
        (timedelta(days=1), timedelta(days=3, hours=4)),
    ],
)
def test_cost_is_monotonic_in_elapsed_time(earlier, later):
    assert compute_cost(START, DEFAULT_RATES, START + earlier) <= compute_cost(START, DEFAULT_RATES, START + later)


def test_naive_timestamps_are_treated_as_utc():
    naive_start = START.replace(tzinfo=None)

    assert compute_cost(naive_start, DEFAULT_RATES, START + timedelta(hours=10)) == Decimal("0.8333")


def test_accrued_cost_uses_session_rate_snapshot():
    session = SimpleNamespace(start_time=START, hourly_rate=Decimal("1.20"), daily_rate=Decimal("100.00"))

    assert compute_accrued_cost(session, START + timedelta(hours=2)) == Decimal("2.4000")


def test_rate_schedule_rejects_negative_rates():
    with pytest.raises(ValueError):
        RateSchedule(hourly=Decimal("-0.01"), daily=Decimal("2.00"))


def test_rate_schedule_normalises_to_money():
    rates = RateSchedule(hourly=0.85, daily="2")

    assert rates.hourly == Decimal("0.8500")
    assert rates.as_dict() == {"hourly": "0.8500", "daily": "2.0000"}


def test_to_money_rounds_half_up():
    assert to_money(Decimal("0.00005")) == Decimal("0.0001")
    assert to_money(0.1) == Decimal("0.1000")
    assert to_money(None) == Decimal("0.0000")


@pytest.mark.parametrize(
    "elapsed,expected",
    [
        (timedelta(seconds=9), "9s"),
        (timedelta(minutes=5, seconds=9), "5m 9s"),
        (timedelta(hours=2, minutes=5, seconds=9), "2h 5m 9s"),
        (timedelta(hours=26), "26h 0m 0s"),
    ],
)
def test_format_duration(elapsed, expected):
    assert format_duration(START, START + elapsed) == expected


def test_format_duration_for_running_session_uses_at_time():
    assert format_duration(START, at_time=START + timedelta(minutes=1)) == "1m 0s"
