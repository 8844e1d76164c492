from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from .admin import AdminDecision, get_admin_authority
from .checkout import (
    CartError,
    WebhookOutcome,
    cart_total,
    handle_webhook,
    normalize_actions,
    open_checkout,
    validate_cart,
)
from .helpers import (
    _pick,
    client_ip,
    session_fingerprint,
    to_decimal,
    validate_admin_content,
)
from .ledger import (
    FlagOutcome,
    admin_delete_word,
    admin_edit_word,
    admin_flag_word,
    admin_insert_linebreak,
    admin_insert_words_at,
    admin_protect_word,
    admin_redact_word,
    admin_remove_word,
    admin_reorder_word,
    admin_restore_word,
    admin_uncover_word,
    admin_unflag_word,
    admin_unprotect_word,
    admin_write_words,
    flag_word,
    get_story,
    get_word_count,
    redact_word,
    story_stats,
)
from .models import Checkout, PositionCounter, Word, WordStatus, db
from .payments import PaymentError, get_payment_gateway

api_bp = Blueprint("api", __name__)

RATE_LIMIT_MESSAGE = (
    "look, I see what you're doing. take it easy man, and leave some fun for others"
)


@api_bp.route("/words")
def api_words():
    return jsonify({"words": get_story(), "word_count": get_word_count()})


@api_bp.route("/flag", methods=["POST"])
def api_flag():
    data = request.get_json(force=True, silent=True) or {}
    word_id = str(_pick(data, "word_id", "wordId") or "").strip()
    visitor_id = str(_pick(data, "visitor_id", "visitorId") or "").strip()
    if not word_id:
        return jsonify({"success": False, "error": "missing word_id"}), 400
    if not visitor_id:
        return jsonify({"success": False, "error": "missing visitor_id"}), 400

    fingerprint = session_fingerprint(client_ip(), visitor_id)
    try:
        result = flag_word(word_id, fingerprint)
        db.session.commit()
    except IntegrityError:
        # Same fingerprint raced us onto the unique (word, fingerprint) pair
        db.session.rollback()
        return jsonify({"success": False, "error": "Already flagged."}), 409

    match result.outcome:
        case FlagOutcome.ACCEPTED | FlagOutcome.CEILING:
            return jsonify(
                {
                    "success": True,
                    "flag_count": result.flag_count,
                    "opacity": result.opacity,
                }
            )
        case FlagOutcome.RATE_LIMITED:
            current_app.logger.info("[flag] rate limited fp=%s", fingerprint[:12])
            return jsonify({"success": False, "error": RATE_LIMIT_MESSAGE}), 429
        case FlagOutcome.NOT_FOUND:
            return jsonify({"success": False, "error": "Word not found."}), 404
        case FlagOutcome.DUPLICATE:
            return jsonify({"success": False, "error": "Already flagged."}), 409
        case FlagOutcome.NOT_FLAGGABLE:
            return jsonify(
                {"success": False, "error": "Word cannot be flagged."}
            ), 409


@api_bp.route("/checkout", methods=["POST"])
def api_checkout():
    data = request.get_json(force=True, silent=True) or {}
    try:
        actions = normalize_actions(data.get("actions"))
    except CartError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    reason = validate_cart(actions)
    if reason is not None:
        return jsonify({"success": False, "error": reason}), 400

    total = cart_total(actions)
    declared = to_decimal(_pick(data, "total_amount", "totalAmount"))
    if declared is not None and declared != total:
        current_app.logger.info(
            "[checkout] client total %s differs from cart sum %s", declared, total
        )

    try:
        _, handle = open_checkout(actions, get_payment_gateway())
    except PaymentError as e:
        current_app.logger.error("[checkout] intent creation failed: %s", e)
        return jsonify({"success": False, "error": "Payment setup failed."}), 502
    return jsonify(
        {
            "success": True,
            "client_secret": handle.client_secret,
            "payment_reference": handle.payment_reference,
        }
    )


@api_bp.route("/webhook", methods=["POST"])
def api_webhook():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature")
    outcome = handle_webhook(payload, signature, get_payment_gateway())
    if outcome is WebhookOutcome.INVALID:
        return jsonify({"error": "Invalid signature"}), 400
    return jsonify({"received": True})


@api_bp.route("/checkout/status")
def api_checkout_status():
    ref = (request.args.get("payment_reference") or "").strip()
    if not ref:
        return jsonify({"success": False, "error": "missing payment_reference"}), 400
    checkout = Checkout.query.filter_by(payment_reference=ref).first()
    if checkout is None:
        return jsonify({"success": False, "error": "not found"}), 404
    out = {"status": checkout.status}
    if checkout.results is not None:
        out["results"] = checkout.results
        out["refund_amount"] = float(checkout.refund_amount or 0)
    return jsonify(out)


@api_bp.route("/stats")
def api_stats():
    return jsonify(story_stats())


@api_bp.route("/status")
def api_status():
    ck = db.session.get(PositionCounter, 1)
    return jsonify(
        {
            "words": Word.query.filter(Word.status != WordStatus.PENDING).count(),
            "pending_checkouts": Checkout.query.filter_by(status="pending").count(),
            "last_position": ck.last_position if ck else 0,
        }
    )


# --- Admin ---


def _int_arg(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _run_admin_action(action: str, data: dict):
    """Dispatch one admin action. Returns (payload, status)."""
    word_id = str(_pick(data, "word_id", "wordId") or "").strip()
    content = _pick(data, "word_content", "wordContent", "content")

    def done(ok: bool, **extra):
        if not ok:
            return {"success": False, "error": f"{action} not applicable"}, 409
        return {"success": True, **extra}, 200

    match action:
        case "write" | "insert_at":
            check = validate_admin_content(content)
            if not check.valid:
                return {"success": False, "error": check.error}, 400
            if action == "write":
                return done(True, word_ids=admin_write_words(str(content)))
            position = _int_arg(data.get("position"))
            if position is None or position < 1:
                return {"success": False, "error": "position required"}, 400
            return done(True, word_ids=admin_insert_words_at(str(content), position))
        case "insert_linebreak":
            position = _int_arg(data.get("position"))
            if position is None or position < 1:
                return {"success": False, "error": "position required"}, 400
            marker = admin_insert_linebreak(position)
            if marker is None:
                return {
                    "success": False,
                    "error": "Another line break is too close to that position.",
                }, 409
            return done(True, word_id=marker)
        case "reorder":
            new_position = _int_arg(_pick(data, "new_position", "newPosition"))
            if new_position is None:
                return {"success": False, "error": "new_position required"}, 400
            return done(admin_reorder_word(word_id, new_position))
        case "edit":
            check = validate_admin_content(content)
            if not check.valid or len(str(content).split()) != 1:
                return {"success": False, "error": "Edit takes exactly one word."}, 400
            return done(admin_edit_word(word_id, str(content).strip()))
        case "redact":
            # Plain redaction; a paid uncover can still reverse it
            return done(redact_word(word_id))
        case "admin_redact":
            return done(admin_redact_word(word_id))
        case "uncover":
            return done(admin_uncover_word(word_id))
        case "nuclear_remove":
            return done(admin_remove_word(word_id))
        case "restore":
            return done(admin_restore_word(word_id))
        case "flag":
            return done(admin_flag_word(word_id))
        case "unflag":
            return done(admin_unflag_word(word_id))
        case "protect":
            return done(admin_protect_word(word_id))
        case "unprotect":
            return done(admin_unprotect_word(word_id))
        case "delete":
            return done(admin_delete_word(word_id))
        case _:
            return {"success": False, "error": f"unknown action: {action}"}, 400


@api_bp.route("/admin", methods=["POST"])
def api_admin():
    ip = client_ip()
    decision = get_admin_authority().check(ip, request.headers.get("X-Admin-Token"))
    if decision is AdminDecision.THROTTLED:
        return "", 429
    if decision is not AdminDecision.AUTHORIZED:
        return "", 404

    data = request.get_json(force=True, silent=True) or {}
    action = str(data.get("action") or "").strip().lower()
    try:
        payload, status = _run_admin_action(action, data)
        if status == 200:
            db.session.commit()
        else:
            db.session.rollback()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("[admin] action %s failed", action)
        return jsonify({"success": False, "error": "internal error"}), 500
    current_app.logger.info(
        "[admin] %s word=%s status=%s", action, data.get("word_id"), status
    )
    return jsonify(payload), status
