"""
Tests for payment reconciliation: applying a confirmed batch exactly once,
refunding the actions that went stale, and containing per-action failures.
"""

from decimal import Decimal

import pytest

from redacted import checkout as checkout_module
from redacted.checkout import (
    INTERNAL_ERROR_REASON,
    WebhookOutcome,
    handle_webhook,
    normalize_actions,
    open_checkout,
    reconcile_payment,
)
from redacted.ledger import admin_redact_word, get_word
from redacted.models import Checkout, CheckoutStatus, Word, WordStatus, db
from tests.support import payment_event, publish, story_positions, stripe_signature

pytestmark = pytest.mark.integration


def checkout_for(gateway, *raw_actions):
    _, handle = open_checkout(normalize_actions(list(raw_actions)), gateway)
    return handle.payment_reference


def write(content):
    return {"type": "write", "word_content": content, "price": "1.00"}


def redact(word_id):
    return {"type": "redact", "word_id": word_id, "price": "2.00"}


def confirm(gateway, ref):
    payload = payment_event(ref)
    return handle_webhook(payload.encode("utf-8"), stripe_signature(payload), gateway)


# ============================================================================
# END-TO-END SCENARIOS
# ============================================================================


def test_write_and_redact_both_apply(ctx, gateway):
    target = publish("target")
    ref = checkout_for(gateway, write("fresh"), redact(target))

    assert confirm(gateway, ref) == WebhookOutcome.PROCESSED

    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.status == CheckoutStatus.COMPLETED.value
    assert ck.refund_amount == Decimal("0.00")
    assert ck.completed_at is not None
    assert [r["success"] for r in ck.results] == [True, True]
    assert gateway.refunds == []

    assert story_positions() == [(1, "target"), (2, "fresh")]
    assert get_word(target).status == WordStatus.REDACTED
    new_word = get_word(ck.results[0]["word_id"])
    assert new_word.payment_reference == ref
    assert new_word.status == WordStatus.VISIBLE


def test_stale_redact_is_refunded_while_write_stands(ctx, gateway):
    target = publish("target")
    ref = checkout_for(gateway, write("fresh"), redact(target))

    # An administrator gets there first
    admin_redact_word(target)
    db.session.commit()

    assert confirm(gateway, ref) == WebhookOutcome.PROCESSED

    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.refund_amount == Decimal("2.00")
    assert gateway.refunds == [(ref, Decimal("2.00"))]
    write_result, redact_result = ck.results
    assert write_result["success"] is True
    assert redact_result["success"] is False
    assert redact_result["word_id"] == target
    assert redact_result["reason"]
    assert get_word(target).status == WordStatus.ADMIN_REDACTED


def test_redelivered_confirmation_is_inert(ctx, gateway):
    target = publish("target")
    ref = checkout_for(gateway, write("fresh"), redact(target))
    admin_redact_word(target)
    db.session.commit()

    assert confirm(gateway, ref) == WebhookOutcome.PROCESSED
    before = story_positions()

    assert confirm(gateway, ref) == WebhookOutcome.DUPLICATE

    assert story_positions() == before
    assert Word.query.filter_by(payment_reference=ref).count() == 1
    assert gateway.refunds == [(ref, Decimal("2.00"))]
    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.refund_amount == Decimal("2.00")


def test_words_are_ordered_by_confirmation_not_submission(ctx, gateway):
    early = checkout_for(gateway, write("early"))
    late = checkout_for(gateway, write("late"))
    confirm(gateway, late)
    confirm(gateway, early)
    assert story_positions() == [(1, "late"), (2, "early")]


# ============================================================================
# FAILURE CONTAINMENT
# ============================================================================


def test_raising_action_is_contained_and_refunded(ctx, gateway, monkeypatch):
    target = publish("target")
    ref = checkout_for(gateway, redact(target), write("after"))

    def boom(word_id):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(checkout_module, "redact_word", boom)

    reconcile_payment(ref, gateway)

    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.status == CheckoutStatus.COMPLETED.value
    assert ck.results[0] == {
        "type": "redact",
        "word_id": target,
        "success": False,
        "reason": INTERNAL_ERROR_REASON,
    }
    assert ck.results[1]["success"] is True
    assert ck.refund_amount == Decimal("2.00")
    assert get_word(target).status == WordStatus.VISIBLE


def test_refund_failure_does_not_block_completion(ctx, gateway):
    target = publish("target")
    ref = checkout_for(gateway, write("fresh"), redact(target))
    admin_redact_word(target)
    db.session.commit()
    gateway.fail_refund = True

    assert confirm(gateway, ref) == WebhookOutcome.PROCESSED

    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.status == CheckoutStatus.COMPLETED.value
    assert ck.refund_amount == Decimal("2.00")
    assert gateway.refunds == []
    assert [p for p, _ in story_positions()] == [1, 2]


def test_unknown_action_types_in_old_batches_are_ignored(ctx, gateway):
    ck = Checkout(
        payment_reference="pi_legacy",
        status=CheckoutStatus.PENDING.value,
        cart_actions=[
            {"type": "signal", "price": "5.00"},
            {"type": "write", "wordContent": "legacy", "price": "1.00"},
        ],
        total_amount=Decimal("6.00"),
    )
    db.session.add(ck)
    db.session.commit()

    reconcile_payment("pi_legacy", gateway)

    ck = Checkout.query.filter_by(payment_reference="pi_legacy").one()
    assert len(ck.results) == 1
    assert ck.results[0]["type"] == "write"
    assert ck.refund_amount == Decimal("0.00")
    assert gateway.refunds == []


def test_unreadable_stored_entries_are_skipped(ctx, gateway):
    ck = Checkout(
        payment_reference="pi_mixed",
        status=CheckoutStatus.PENDING.value,
        cart_actions=[
            "legacy-string",
            None,
            {"type": "write", "word_content": "survivor", "price": "1.00"},
        ],
        total_amount=Decimal("1.00"),
    )
    db.session.add(ck)
    db.session.commit()

    reconcile_payment("pi_mixed", gateway)

    ck = Checkout.query.filter_by(payment_reference="pi_mixed").one()
    assert ck.status == CheckoutStatus.COMPLETED.value
    assert [r["type"] for r in ck.results] == ["write"]
    assert ck.results[0]["success"] is True
    assert ck.refund_amount == Decimal("0.00")
    assert story_positions() == [(1, "survivor")]


def test_processing_checkout_is_not_run_again(ctx, gateway):
    ref = checkout_for(gateway, write("fresh"))
    ck = Checkout.query.filter_by(payment_reference=ref).one()
    ck.status = CheckoutStatus.PROCESSING.value
    db.session.commit()

    assert reconcile_payment(ref, gateway) is None
    assert story_positions() == []


# ============================================================================
# WEBHOOK VERIFICATION
# ============================================================================


def test_bad_signature_touches_nothing(ctx, gateway):
    ref = checkout_for(gateway, write("fresh"))
    payload = payment_event(ref)
    forged = stripe_signature(payload, secret="whsec_wrong")

    assert handle_webhook(payload.encode("utf-8"), forged, gateway) == WebhookOutcome.INVALID
    assert handle_webhook(payload.encode("utf-8"), None, gateway) == WebhookOutcome.INVALID
    ck = Checkout.query.filter_by(payment_reference=ref).one()
    assert ck.status == CheckoutStatus.PENDING.value


def test_other_event_types_are_acknowledged_without_action(ctx, gateway):
    ref = checkout_for(gateway, write("fresh"))
    payload = payment_event(ref, event_type="payment_intent.payment_failed")

    outcome = handle_webhook(payload.encode("utf-8"), stripe_signature(payload), gateway)

    assert outcome == WebhookOutcome.IGNORED
    assert Checkout.query.filter_by(payment_reference=ref).one().status == "pending"


def test_unknown_reference_is_acknowledged(ctx, gateway):
    assert confirm(gateway, "pi_never_seen") == WebhookOutcome.DUPLICATE
