"""
Stripe adapter. The rest of the app only ever:

  - creates a chargeable intent for an amount,
  - refunds part of an intent,
  - verifies a signed webhook body.

The gateway lives in ``app.extensions["payment_gateway"]`` so tests can swap
in a subclass that records calls instead of hitting the network.
"""

from dataclasses import dataclass
from decimal import Decimal

import stripe
from flask import current_app

from .helpers import to_cents


class PaymentError(RuntimeError):
    """The processor rejected a call or is not configured."""


@dataclass(frozen=True)
class PaymentIntentHandle:
    payment_reference: str
    client_secret: str


class StripeGateway:
    def __init__(self, api_key: str, webhook_secret: str, currency: str = "usd"):
        self.api_key = api_key or ""
        self.webhook_secret = webhook_secret or ""
        self.currency = currency or "usd"

    def _require_key(self) -> str:
        if not self.api_key:
            raise PaymentError("STRIPE_SECRET_KEY is not set.")
        return self.api_key

    def create_intent(
        self, amount: Decimal, metadata: dict[str, str]
    ) -> PaymentIntentHandle:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._require_key(),
                amount=to_cents(amount),
                currency=self.currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Failed to create PaymentIntent: {e}") from e
        if not intent.get("client_secret"):
            raise PaymentError("Failed to create PaymentIntent: no client_secret.")
        return PaymentIntentHandle(
            payment_reference=intent["id"], client_secret=intent["client_secret"]
        )

    def refund(self, payment_reference: str, amount: Decimal) -> str:
        try:
            refund = stripe.Refund.create(
                api_key=self._require_key(),
                payment_intent=payment_reference,
                amount=to_cents(amount),
            )
        except stripe.StripeError as e:
            raise PaymentError(f"Refund failed: {e}") from e
        return refund["id"]

    def construct_event(self, payload: bytes, signature: str):
        """Verify and parse a webhook body.

        Raises ``stripe.SignatureVerificationError`` on a bad signature and
        ``ValueError`` on a malformed body.
        """
        if not self.webhook_secret:
            raise PaymentError("STRIPE_WEBHOOK_SECRET is not set.")
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def get_payment_gateway() -> StripeGateway:
    return current_app.extensions["payment_gateway"]
