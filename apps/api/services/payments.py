"""Stripe payment gateway adapter.

Constructed once by the application lifespan and stored on ``app.state``;
handlers receive it through ``get_payment_gateway``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import json
import logging
from typing import Any, Dict, Optional, Union

from fastapi import Request
import stripe

from config import settings
from services.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"

CENTS = Decimal(100)


class WebhookVerificationError(ValueError):
    """Webhook payload or signature could not be verified."""


@dataclass
class PaymentIntentResult:
    id: str
    client_secret: Optional[str]
    amount: Decimal
    currency: str


@dataclass
class PaymentEvent:
    """Processor-neutral view of a webhook delivery."""

    event_id: str
    event_type: str
    external_reference: Optional[str]
    account_id: Optional[str]
    amount: Optional[Decimal]

    @property
    def succeeded(self) -> bool:
        return self.event_type == EVENT_PAYMENT_SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.event_type == EVENT_PAYMENT_FAILED


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * CENTS).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Union[int, str, None]) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(int(value)) / CENTS).quantize(Decimal("0.01"))


def parse_payment_event(event: Dict[str, Any]) -> PaymentEvent:
    data_object = (event.get("data") or {}).get("object") or {}
    metadata = data_object.get("metadata") or {}
    amount_minor = data_object.get("amount_received")
    if not amount_minor:
        amount_minor = data_object.get("amount")
    return PaymentEvent(
        event_id=str(event.get("id", "")),
        event_type=str(event.get("type", "")),
        external_reference=data_object.get("id"),
        account_id=metadata.get("account_id"),
        amount=from_minor_units(amount_minor),
    )


class PaymentGateway:
    """Thin wrapper over the Stripe SDK used by the settlement flow."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        currency: str = "usd",
        webhook_tolerance: int = 300,
    ) -> None:
        self.currency = currency
        self.webhook_tolerance = webhook_tolerance
        self._webhook_secret = webhook_secret
        self._client: Optional[stripe.StripeClient] = stripe.StripeClient(secret_key) if secret_key else None

    @classmethod
    def from_settings(cls) -> "PaymentGateway":
        return cls(
            settings.STRIPE_SECRET_KEY,
            settings.STRIPE_WEBHOOK_SECRET,
            currency=settings.STRIPE_CURRENCY,
            webhook_tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def create_payment_intent(
        self, amount: Decimal, *, account_id: str, email: Optional[str] = None
    ) -> PaymentIntentResult:
        if self._client is None:
            raise PaymentGatewayError("Stripe is not configured.")
        metadata = {"account_id": account_id}
        if email:
            metadata["email"] = email
        try:
            intent = await asyncio.to_thread(
                self._client.payment_intents.create,
                params={
                    "amount": to_minor_units(amount),
                    "currency": self.currency,
                    "metadata": metadata,
                    "automatic_payment_methods": {"enabled": True},
                },
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe payment intent creation failed for account %s: %s", account_id, exc)
            raise PaymentGatewayError(f"Payment processor error: {exc}") from exc
        return PaymentIntentResult(
            id=intent.id,
            client_secret=intent.client_secret,
            amount=Decimal(amount),
            currency=self.currency,
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """Verify the Stripe signature header and parse the event body."""
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header.")
        if not self._webhook_secret:
            raise WebhookVerificationError("Webhook secret is not configured.")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook body is not valid UTF-8.") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret, self.webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid webhook signature.") from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise WebhookVerificationError("Webhook body is not valid JSON.") from exc
        return parse_payment_event(event)

    def close(self) -> None:
        self._client = None


def get_payment_gateway(request: Request) -> PaymentGateway:
    """FastAPI dependency returning the process-wide gateway built at startup."""
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise PaymentGatewayError("Payment gateway is not initialised.")
    return gateway
