"""
Paid actions: cart validation at checkout time and reconciliation once the
processor confirms the payment.

Reconciliation replays the stored batch in submission order. Each action runs
in its own SAVEPOINT, so an action that is stale by confirmation time (or
blows up) is refunded on its own while its siblings in the batch stand.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal

import sqlalchemy as sa
import stripe
from flask import current_app

from .helpers import _pick, _utcnow_naive, to_decimal, validate_word
from .ledger import create_pending_word, publish_word, redact_word, uncover_word
from .models import Checkout, CheckoutStatus, db
from .payments import PaymentError, PaymentIntentHandle, StripeGateway


class ActionType(str, enum.Enum):
    WRITE = "write"
    REDACT = "redact"
    UNCOVER = "uncover"
    FLAG = "flag"


PRICING = {
    ActionType.WRITE: Decimal("1.00"),
    ActionType.REDACT: Decimal("2.00"),
    ActionType.UNCOVER: Decimal("2.00"),
    ActionType.FLAG: Decimal("0.00"),
}
STRIPE_MINIMUM = Decimal("0.50")

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
INTERNAL_ERROR_REASON = "Internal error processing action."


class CartError(ValueError):
    """A cart that cannot be accepted; the message is shown to the client."""


@dataclass(frozen=True)
class CartAction:
    type: str
    price: Decimal
    word_id: str | None = None
    word_content: str | None = None

    @classmethod
    def from_payload(cls, data) -> "CartAction":
        """Build an action from client JSON (camelCase or snake_case keys)."""
        if not isinstance(data, dict):
            raise CartError("Each cart action must be an object.")
        kind = str(data.get("type") or "").strip().lower()
        if kind not in {t.value for t in ActionType}:
            raise CartError(f"Unknown action type: {kind or 'missing'}.")
        price = to_decimal(data.get("price"))
        if price is None or price < 0:
            raise CartError(f"Invalid price for {kind} action.")
        word_id = _pick(data, "word_id", "wordId")
        content = _pick(data, "word_content", "wordContent")
        return cls(
            type=kind,
            price=price,
            word_id=str(word_id) if word_id is not None else None,
            word_content=str(content) if content is not None else None,
        )

    @classmethod
    def from_stored(cls, data: dict) -> "CartAction":
        """Rebuild a stored action; tolerant of older batch formats."""
        return cls(
            type=str(data.get("type") or ""),
            price=to_decimal(data.get("price")) or Decimal("0.00"),
            word_id=_pick(data, "word_id", "wordId"),
            word_content=_pick(data, "word_content", "wordContent"),
        )

    def to_json(self) -> dict:
        return {
            "type": self.type,
            "word_id": self.word_id,
            "word_content": self.word_content,
            "price": str(self.price),
        }


def normalize_actions(raw_actions) -> list[CartAction]:
    if raw_actions is None:
        return []
    if not isinstance(raw_actions, list):
        raise CartError("actions must be a list.")
    return [CartAction.from_payload(a) for a in raw_actions]


def cart_total(actions: list[CartAction]) -> Decimal:
    return sum((a.price for a in actions), Decimal("0.00"))


def validate_cart(actions: list[CartAction]) -> str | None:
    """Return the first rejection reason for the batch, or None to accept.

    The whole batch is accepted or rejected together.
    """
    if not actions:
        return "Cart is empty."

    for action in actions:
        kind = ActionType(action.type)
        if kind is ActionType.WRITE:
            if not action.word_content:
                return "Write action requires word content."
            check = validate_word(action.word_content)
            if not check.valid:
                return check.error
        elif kind in (ActionType.REDACT, ActionType.UNCOVER) and not action.word_id:
            return f"{kind.value.capitalize()} action requires a word id."
        if action.price < PRICING[kind]:
            return f"Price for {kind.value} must be at least ${PRICING[kind]:.2f}."

    # Conflicting intents on the same word
    per_word: dict[str, set[str]] = {}
    for action in actions:
        if action.word_id:
            per_word.setdefault(action.word_id, set()).add(action.type)
    for word_id, kinds in per_word.items():
        if ActionType.REDACT.value in kinds and ActionType.UNCOVER.value in kinds:
            return (
                f"Conflicting actions on word {word_id}: cannot redact and "
                "uncover in the same checkout."
            )

    if cart_total(actions) < STRIPE_MINIMUM:
        return f"Cart total must be at least ${STRIPE_MINIMUM:.2f}."
    return None


def open_checkout(
    actions: list[CartAction], gateway: StripeGateway
) -> tuple[Checkout, PaymentIntentHandle]:
    """Create the payment intent and the durable pending checkout record.

    Raises ``PaymentError`` if the processor refuses the intent; nothing is
    stored in that case.
    """
    total = cart_total(actions)
    handle = gateway.create_intent(total, {"action_count": str(len(actions))})
    checkout = Checkout(
        payment_reference=handle.payment_reference,
        status=CheckoutStatus.PENDING.value,
        cart_actions=[a.to_json() for a in actions],
        total_amount=total,
        refund_amount=Decimal("0.00"),
        created_at=_utcnow_naive(),
    )
    db.session.add(checkout)
    db.session.commit()
    current_app.logger.info(
        "[checkout] opened ref=%s actions=%s total=%s",
        handle.payment_reference,
        len(actions),
        total,
    )
    return checkout, handle


# --- Reconciliation ---


@dataclass(frozen=True)
class ActionResult:
    type: str
    word_id: str
    success: bool
    reason: str | None = None

    def to_json(self) -> dict:
        out = {"type": self.type, "word_id": self.word_id, "success": self.success}
        if self.reason:
            out["reason"] = self.reason
        return out


def apply_action(action: CartAction, payment_reference: str) -> ActionResult | None:
    """Apply one paid action to the ledger; None for types we do not act on."""
    match action.type:
        case ActionType.WRITE.value:
            if not action.word_content:
                return ActionResult(
                    action.type, "", False, "Write action is missing word content."
                )
            word = create_pending_word(action.word_content, payment_reference)
            ok = publish_word(word.id)
            return ActionResult(
                action.type, word.id, ok, None if ok else "Word could not be published."
            )
        case ActionType.REDACT.value:
            ok = redact_word(action.word_id or "")
            return ActionResult(
                action.type,
                action.word_id or "",
                ok,
                None if ok else "Word is already redacted, removed, or protected.",
            )
        case ActionType.UNCOVER.value:
            ok = uncover_word(action.word_id or "")
            return ActionResult(
                action.type,
                action.word_id or "",
                ok,
                None if ok else "Word is not currently redacted.",
            )
        case _:
            return None


def reconcile_payment(payment_reference: str, gateway: StripeGateway) -> Checkout | None:
    """Apply a confirmed checkout's batch exactly once.

    Returns the completed checkout, or None when there was nothing to do
    (unknown reference, or already claimed by an earlier delivery).
    """
    checkout = Checkout.query.filter_by(payment_reference=payment_reference).first()
    if checkout is None or checkout.status != CheckoutStatus.PENDING.value:
        current_app.logger.info(
            "[webhook] nothing to do for ref=%s (status=%s)",
            payment_reference,
            checkout.status if checkout else None,
        )
        return None

    # Claim it before touching the ledger; a second delivery loses this race
    claimed = db.session.execute(
        sa.update(Checkout)
        .where(
            Checkout.id == checkout.id,
            Checkout.status == CheckoutStatus.PENDING.value,
        )
        .values(status=CheckoutStatus.PROCESSING.value)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()
    if claimed != 1:
        return None

    results: list[dict] = []
    refund_total = Decimal("0.00")
    for raw in checkout.cart_actions or []:
        if not isinstance(raw, dict):
            current_app.logger.warning(
                "[webhook] skipping unreadable action ref=%s action=%r",
                payment_reference,
                raw,
            )
            continue
        action = CartAction.from_stored(raw)
        try:
            with db.session.begin_nested():
                result = apply_action(action, payment_reference)
        except Exception:
            current_app.logger.exception(
                "[webhook] action failed ref=%s action=%s", payment_reference, raw
            )
            result = ActionResult(
                action.type, action.word_id or "", False, INTERNAL_ERROR_REASON
            )
        if result is None:
            continue
        if not result.success and action.price > 0:
            refund_total += action.price
        results.append(result.to_json())

    # Ledger effects are durable before any money moves back
    checkout.results = results
    checkout.refund_amount = refund_total
    db.session.commit()

    if refund_total > 0:
        try:
            gateway.refund(payment_reference, refund_total)
            current_app.logger.info(
                "[webhook] refunded ref=%s amount=%s", payment_reference, refund_total
            )
        except Exception:
            # No automatic retry; the amount stays recorded on the checkout
            current_app.logger.exception(
                "[webhook] refund failed ref=%s amount=%s",
                payment_reference,
                refund_total,
            )

    checkout.status = CheckoutStatus.COMPLETED.value
    checkout.completed_at = _utcnow_naive()
    db.session.commit()
    current_app.logger.info(
        "[webhook] completed ref=%s ok=%s failed=%s refund=%s",
        payment_reference,
        sum(1 for r in results if r["success"]),
        sum(1 for r in results if not r["success"]),
        refund_total,
    )
    return checkout


class WebhookOutcome(str, enum.Enum):
    INVALID = "invalid"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    PROCESSED = "processed"


def handle_webhook(
    payload: bytes, signature: str | None, gateway: StripeGateway
) -> WebhookOutcome:
    if not signature:
        return WebhookOutcome.INVALID
    try:
        event = gateway.construct_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError, PaymentError) as e:
        current_app.logger.warning("[webhook] rejected: %s", e)
        return WebhookOutcome.INVALID

    if event["type"] != PAYMENT_SUCCEEDED:
        return WebhookOutcome.IGNORED

    payment_reference = event["data"]["object"]["id"]
    checkout = reconcile_payment(payment_reference, gateway)
    if checkout is None:
        return WebhookOutcome.DUPLICATE
    return WebhookOutcome.PROCESSED
