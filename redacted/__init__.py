import os
import secrets

from flask import Flask, abort, jsonify, request, session
from werkzeug.middleware.proxy_fix import ProxyFix

from .admin import AdminAuthority, CacheFailureStore
from .extensions import cache
from .ledger import ensure_position_counter
from .models import configure_sqlite, db
from .payments import StripeGateway

TRUTHY = ("1", "true", "yes", "on")

# Mutating routes that authenticate some other way
CSRF_EXEMPT_PATHS = ("/api/v1/webhook", "/api/v1/admin")


def create_app(config_overrides=None):
    app = Flask(__name__)
    # Use a stable secret so session cookies remain valid across reloads
    app.config["SECRET_KEY"] = os.environ.get(
        "FLASK_SECRET_KEY", "dev-secret-key-change-me"
    )
    # Database & Cache config
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
        "DATABASE_URL", "sqlite:///redacted.db"
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["CACHE_TYPE"] = os.environ.get("CACHE_TYPE", "SimpleCache")
    app.config.setdefault("CACHE_DEFAULT_TIMEOUT", 60)
    # Security settings
    app.config.setdefault("SESSION_COOKIE_SAMESITE", "Lax")
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("SESSION_COOKIE_SECURE", "0").lower() in TRUTHY
    )
    app.config["CSRF_ENABLED"] = os.environ.get("REDACTED_CSRF", "1").lower() in TRUTHY
    # Payments
    app.config["STRIPE_SECRET_KEY"] = os.environ.get("STRIPE_SECRET_KEY", "")
    app.config["STRIPE_WEBHOOK_SECRET"] = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    app.config["STRIPE_CURRENCY"] = os.environ.get("STRIPE_CURRENCY", "usd").lower()
    # Admin gate
    app.config["ADMIN_ALLOWED_IP"] = os.environ.get("ADMIN_ALLOWED_IP", "").strip()
    app.config["ADMIN_SECRET_TOKEN"] = os.environ.get("ADMIN_SECRET_TOKEN", "")
    try:
        app.config["ADMIN_MAX_FAILURES"] = int(
            os.environ.get("ADMIN_MAX_FAILURES", "3")
        )
    except Exception:
        app.config["ADMIN_MAX_FAILURES"] = 3
    try:
        app.config["ADMIN_BLOCK_SECONDS"] = int(
            os.environ.get("ADMIN_BLOCK_SECONDS", "900")
        )
    except Exception:
        app.config["ADMIN_BLOCK_SECONDS"] = 900
    # Reverse proxies in front of the app; 0 trusts no forwarding headers
    try:
        app.config["TRUSTED_PROXY_HOPS"] = int(
            os.environ.get("REDACTED_PROXY_HOPS", "0")
        )
    except Exception:
        app.config["TRUSTED_PROXY_HOPS"] = 0

    if config_overrides:
        app.config.update(config_overrides)

    hops = app.config["TRUSTED_PROXY_HOPS"]
    if hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)

    db.init_app(app)
    cache.init_app(app)

    # Tests swap these for fakes after the factory returns
    app.extensions["payment_gateway"] = StripeGateway(
        app.config["STRIPE_SECRET_KEY"],
        app.config["STRIPE_WEBHOOK_SECRET"],
        app.config["STRIPE_CURRENCY"],
    )
    app.extensions["admin_authority"] = AdminAuthority(
        app.config["ADMIN_ALLOWED_IP"],
        app.config["ADMIN_SECRET_TOKEN"],
        CacheFailureStore(cache),
        max_failures=app.config["ADMIN_MAX_FAILURES"],
        block_seconds=app.config["ADMIN_BLOCK_SECONDS"],
    )

    from .api import api_bp

    app.register_blueprint(api_bp, url_prefix="/api/v1")

    with app.app_context():
        configure_sqlite(db.engine)
        db.create_all()
        ensure_position_counter()

    # --- CSRF token setup and validation ---
    @app.before_request
    def _ensure_csrf_token():
        if "csrf_token" not in session:
            session["csrf_token"] = secrets.token_urlsafe(32)

    @app.after_request
    def _set_csrf_cookie(resp):
        # Double-submit cookie for frontend to read and send back in header
        token = session.get("csrf_token", "")
        resp.set_cookie(
            "XSRF-TOKEN",
            token,
            samesite="Lax",
            secure=app.config.get("SESSION_COOKIE_SECURE", False),
            httponly=False,
            path="/",
        )
        return resp

    @app.before_request
    def _csrf_protect():
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.path in CSRF_EXEMPT_PATHS:
            return None
        if request.method in (
            "POST",
            "PUT",
            "PATCH",
            "DELETE",
        ) and request.path.startswith("/api/v1/"):
            hdr = request.headers.get("X-CSRF-Token", "")
            cky = request.cookies.get("XSRF-TOKEN", "")
            tok = session.get("csrf_token", "")
            if not tok or hdr != tok or cky != tok:
                return abort(403)
        return None

    # --- JSON errors ---
    def _json_error(status, message):
        def handler(e):
            return jsonify({"success": False, "error": message}), status

        return handler

    for status, message in (
        (400, "bad request"),
        (403, "forbidden"),
        (404, "not found"),
        (405, "method not allowed"),
        (429, "too many requests"),
        (500, "internal error"),
    ):
        app.register_error_handler(status, _json_error(status, message))

    return app
