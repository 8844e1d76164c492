"""
Shared pytest fixtures for the redacted test suite.

Every test gets its own app and temporary SQLite database, with the payment
gateway replaced by ``FakeGateway`` (see ``tests/support.py``).
"""

from collections.abc import Generator

import pytest

from redacted import create_app
from redacted.admin import AdminAuthority, MemoryFailureStore
from redacted.models import db
from tests.support import (
    ADMIN_IP,
    ADMIN_TOKEN,
    WEBHOOK_SECRET,
    FakeClock,
    FakeGateway,
)

# ============================================================================
# APP FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def app(tmp_path) -> Generator:
    """A fresh app and database for each test."""
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'redacted.db'}",
            "CSRF_ENABLED": False,
            "CACHE_TYPE": "SimpleCache",
            "STRIPE_SECRET_KEY": "sk_test_fake",
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "ADMIN_ALLOWED_IP": ADMIN_IP,
            "ADMIN_SECRET_TOKEN": ADMIN_TOKEN,
        }
    )
    app.extensions["payment_gateway"] = FakeGateway()
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    """Run the test body inside an application context."""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app) -> FakeGateway:
    return app.extensions["payment_gateway"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_authority(app, clock) -> AdminAuthority:
    """Swap the cache-backed admin gate for one driven by the fake clock."""
    authority = AdminAuthority(
        ADMIN_IP, ADMIN_TOKEN, MemoryFailureStore(clock=clock), clock=clock
    )
    app.extensions["admin_authority"] = authority
    return authority
