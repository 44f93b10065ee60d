"""Shared test fixtures for the StagePay test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: a customer, an admin and a funded customer
- file_app: app on a file-backed SQLite database, for threaded tests
- stripe_session: builder for checkout session payloads
- make_user, login, event_for: helper callables
"""

import pytest
from werkzeug.security import generate_password_hash

from stagepay import create_app
from stagepay.extensions import db as _db
from stagepay.models.ledger import LedgerReason
from stagepay.models.user import User
from stagepay.services import ledger_service

PASSWORD = "correct-horse-battery"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def _make_user(email, is_admin=False, full_name=None):
    user = User(
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        full_name=full_name,
        is_admin=is_admin,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture
def seed_data(app, db_session):
    """A plain customer, a customer holding 10 credits, and an admin.

    Returns plain IDs/emails so tests can use them after the session
    expires the ORM objects.
    """
    customer = _make_user("jane@example.com", full_name="Jane Doe")
    funded = _make_user("rich@example.com", full_name="Rich Buyer")
    admin = _make_user("admin@stagepay.local", is_admin=True, full_name="Admin")

    ledger_service.apply_delta(
        funded.id, 10, LedgerReason.ADMIN_ADD, note="seed"
    )

    return {
        "customer_id": customer.id,
        "customer_email": customer.email,
        "funded_id": funded.id,
        "funded_email": funded.email,
        "admin_id": admin.id,
        "admin_email": admin.email,
    }


def _login(client, email, password=PASSWORD):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def stripe_session():
    """Build a Stripe checkout session dict the way Stripe sends it."""

    def _build(session_id="cs_test_001", credits=5, bundle_id="bundle_5",
               email="jane@example.com", account_id="", payment_status="paid",
               checkout_token=""):
        return {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "amount_total": 4500,
            "customer_details": {"email": email},
            "metadata": {
                "credits": str(credits),
                "bundle_id": bundle_id,
                "customer_email": email,
                "account_id": account_id,
                "checkout_token": checkout_token,
            },
        }

    return _build


def _event_for(session, event_type="checkout.session.completed", event_id=None):
    return {
        "id": event_id or f"evt_{session['id']}",
        "type": event_type,
        "data": {"object": session},
    }


@pytest.fixture
def file_app(tmp_path):
    """App bound to a SQLite file so several threads can share the database."""
    app = create_app(
        "testing",
        config_overrides={
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'stagepay.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        },
    )
    with app.app_context():
        _db.create_all()
    yield app
    with app.app_context():
        _db.session.remove()
        _db.drop_all()
        _db.engine.dispose()


@pytest.fixture
def make_user(db_session):
    """make_user(email, is_admin=False, full_name=None) -> committed User."""
    return _make_user


@pytest.fixture
def login():
    """login(client, email, password=PASSWORD) -> response of POST /auth/login."""
    return _login


@pytest.fixture
def event_for():
    """event_for(session, event_type=..., event_id=None) -> Stripe event dict."""
    return _event_for
