"""
Shared test doubles and helpers.

- ``FakeGateway``: records processor calls but verifies webhook signatures
  with the real Stripe library
- ``FakeClock``: drives the admin throttle without sleeping
- seeding helpers that go through the ledger like production code does
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

from redacted.ledger import admin_insert_linebreak, create_pending_word, publish_word
from redacted.models import Word, db
from redacted.payments import PaymentError, PaymentIntentHandle, StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_IP = "127.0.0.1"
ADMIN_TOKEN = "let-me-in"


class FakeGateway(StripeGateway):
    """Records processor calls instead of making them."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        super().__init__("sk_test_fake", webhook_secret)
        self.intents: list[tuple[str, Decimal, dict]] = []
        self.refunds: list[tuple[str, Decimal]] = []
        self.fail_intent = False
        self.fail_refund = False

    def create_intent(self, amount, metadata):
        if self.fail_intent:
            raise PaymentError("Failed to create PaymentIntent: card network down")
        ref = f"pi_test_{len(self.intents) + 1}"
        self.intents.append((ref, amount, metadata))
        return PaymentIntentHandle(payment_reference=ref, client_secret=f"{ref}_secret")

    def refund(self, payment_reference, amount):
        if self.fail_refund:
            raise PaymentError("Refund failed: processor unavailable")
        self.refunds.append((payment_reference, amount))
        return f"re_test_{len(self.refunds)}"


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def publish(content: str) -> str:
    """Write and publish one word through the ledger; returns its id."""
    word = create_pending_word(content, None)
    assert publish_word(word.id)
    db.session.commit()
    return word.id


def linebreak(position: int) -> str | None:
    marker = admin_insert_linebreak(position)
    db.session.commit()
    return marker


def story_positions() -> list[tuple[int, str | None]]:
    rows = (
        Word.query.filter(Word.position.isnot(None))
        .order_by(Word.position.asc())
        .all()
    )
    return [(w.position, w.content) for w in rows]


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs webhooks."""
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def payment_event(payment_reference: str, event_type="payment_intent.succeeded") -> str:
    return json.dumps(
        {
            "id": "evt_test_1",
            "object": "event",
            "type": event_type,
            "data": {"object": {"id": payment_reference, "object": "payment_intent"}},
        }
    )
