"""Billing error taxonomy.

Every error is an expected, recoverable condition that the HTTP layer renders
with its own status code and machine-readable ``code``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing-core failures surfaced to callers."""

    code = "billing_error"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.context.items():
            detail[key] = str(value) if isinstance(value, Decimal) else value
        return detail


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class AccountInactive(BillingError):
    code = "account_inactive"
    status_code = 403


class AlreadyRunning(BillingError):
    code = "already_running"
    status_code = 409


class NotRunning(BillingError):
    code = "not_running"
    status_code = 409


class AlreadyStopped(BillingError):
    code = "already_stopped"
    status_code = 409

    def __init__(self, message: str, *, session_id: str, final_cost: Optional[Decimal]) -> None:
        super().__init__(message, session_id=session_id, final_cost=final_cost)
        self.session_id = session_id
        self.final_cost = final_cost


class InsufficientFunds(BillingError):
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, message: str, *, required: Decimal, available: Decimal) -> None:
        super().__init__(message, required=required, available=available)
        self.required = required
        self.available = available


class InsufficientBalance(InsufficientFunds):
    """Balance is below the minimum needed to start a session."""

    code = "insufficient_balance"


class DuplicateReference(BillingError):
    code = "duplicate_reference"
    status_code = 409

    def __init__(self, message: str, *, reference: str, entry_id: Optional[str] = None) -> None:
        super().__init__(message, reference=reference)
        self.reference = reference
        self.entry_id = entry_id


class ConcurrentModification(BillingError):
    code = "concurrent_modification"
    status_code = 409


class DailyJobLimitReached(BillingError):
    code = "daily_job_limit_reached"
    status_code = 429


class InvalidAmount(BillingError):
    code = "invalid_amount"
    status_code = 422


class PaymentGatewayError(BillingError):
    code = "payment_gateway_error"
    status_code = 502
