"""Usage-based cost computation for sandbox sessions.

Billing is continuous: the cost of a session is the cheaper of the prorated
hourly price and the prorated daily price for the exact elapsed time. There
is no minimum billable increment, so a session stopped immediately costs 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

from config import settings
from services.clock import as_utc

MONEY_QUANTUM = Decimal("0.0001")
SECONDS_PER_HOUR = Decimal(3600)
SECONDS_PER_DAY = Decimal(86400)
ZERO = Decimal("0")


def to_money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Normalise an amount to a 4-decimal ``Decimal``.

    Floats go through ``str`` so SQLite's float round-trip does not leak
    binary noise into ledger arithmetic.
    """
    if value is None:
        return ZERO.quantize(MONEY_QUANTUM)
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateSchedule:
    """Hourly and daily prices fixed for the lifetime of a session."""

    hourly: Decimal
    daily: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "hourly", to_money(self.hourly))
        object.__setattr__(self, "daily", to_money(self.daily))
        if self.hourly < 0 or self.daily < 0:
            raise ValueError("Rates must be non-negative.")

    @classmethod
    def from_settings(cls) -> "RateSchedule":
        return cls(hourly=settings.SANDBOX_HOURLY_RATE, daily=settings.SANDBOX_DAILY_RATE)

    def as_dict(self) -> Dict[str, str]:
        return {"hourly": str(self.hourly), "daily": str(self.daily)}


@dataclass(frozen=True)
class MachineSpec:
    cpu: int
    memory_gb: int
    storage_gb: int

    @classmethod
    def from_settings(cls) -> "MachineSpec":
        return cls(
            cpu=settings.SANDBOX_CPU,
            memory_gb=settings.SANDBOX_MEMORY_GB,
            storage_gb=settings.SANDBOX_STORAGE_GB,
        )

    def as_dict(self) -> Dict[str, int]:
        return {"cpu": self.cpu, "memory_gb": self.memory_gb, "storage_gb": self.storage_gb}


def elapsed_seconds(start_time: datetime, at_time: datetime) -> Decimal:
    delta = as_utc(at_time) - as_utc(start_time)
    seconds = Decimal(str(delta.total_seconds()))
    return seconds if seconds > 0 else ZERO


def compute_cost(start_time: datetime, rates: RateSchedule, at_time: datetime) -> Decimal:
    """Return ``min(hours * hourly, days * daily)`` for the elapsed time."""
    seconds = elapsed_seconds(start_time, at_time)
    hourly_cost = seconds / SECONDS_PER_HOUR * rates.hourly
    daily_cost = seconds / SECONDS_PER_DAY * rates.daily
    return to_money(min(hourly_cost, daily_cost))


def session_rates(session: Any) -> RateSchedule:
    return RateSchedule(hourly=session.hourly_rate, daily=session.daily_rate)


def compute_accrued_cost(session: Any, at_time: datetime) -> Decimal:
    """Cost accrued by ``session`` at ``at_time``, using its rate snapshot.

    Side-effect free; safe to call repeatedly for live cost display.
    """
    return compute_cost(session.start_time, session_rates(session), at_time)


def format_duration(start_time: datetime, end_time: Optional[datetime] = None, *, at_time: Optional[datetime] = None) -> str:
    """Human-readable duration such as ``2h 5m 9s``, ``5m 9s`` or ``9s``."""
    finish = end_time or at_time
    if finish is None:
        raise ValueError("format_duration requires end_time or at_time")
    total = int(elapsed_seconds(start_time, finish))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
