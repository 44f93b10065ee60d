"""Tests for the auth blueprint — registration, login, logout.

Covers:
- Registration (valid, duplicate email, short password)
- Login with valid / invalid credentials, deactivated account
- Session introspection and logout
- Set-password links for accounts provisioned from guest payments
- CSRF enforced on JSON routes, webhooks exempt
"""

import json

from conftest import PASSWORD
from stagepay import create_app
from stagepay.extensions import db
from stagepay.models.audit import AuditEvent
from stagepay.models.user import User
from stagepay.services import account_service


class TestRegistration:
    """Tests for the /auth/register route."""

    def test_register_creates_account(self, client, seed_data):
        resp = client.post("/auth/register", json={
            "email": "New.Customer@Example.com",
            "password": "long-enough-pw",
            "full_name": "New Customer",
        })

        assert resp.status_code == 201
        user = json.loads(resp.data)["user"]
        assert user["email"] == "new.customer@example.com"
        assert user["balance"] == 0
        assert AuditEvent.query.filter_by(action="user.registered").count() == 1

    def test_duplicate_email_rejected(self, client, seed_data):
        resp = client.post("/auth/register", json={
            "email": seed_data["customer_email"], "password": "long-enough-pw",
        })
        assert resp.status_code == 400
        assert User.query.filter_by(email=seed_data["customer_email"]).count() == 1

    def test_short_password_rejected(self, client, seed_data):
        resp = client.post("/auth/register", json={"email": "x@example.com", "password": "short"})
        assert resp.status_code == 400


class TestLogin:
    """Tests for the /auth/login route."""

    def test_login_valid(self, client, seed_data, login):
        resp = login(client, seed_data["funded_email"])
        user = json.loads(resp.data)["user"]
        assert user["id"] == seed_data["funded_id"]
        assert user["balance"] == 10

    def test_login_wrong_password(self, client, seed_data):
        resp = client.post("/auth/login", json={
            "email": seed_data["customer_email"], "password": "nope-nope-nope",
        })
        assert resp.status_code == 401
        assert json.loads(resp.data)["error"] == "invalid_credentials"

    def test_login_deactivated(self, client, seed_data):
        db.session.get(User, seed_data["customer_id"]).is_active = False
        db.session.commit()

        resp = client.post("/auth/login", json={
            "email": seed_data["customer_email"], "password": PASSWORD,
        })
        assert resp.status_code == 403

    def test_me_requires_login(self, client, seed_data):
        assert client.get("/auth/me").status_code == 401

    def test_me_and_logout(self, client, seed_data, login):
        login(client, seed_data["customer_email"])

        me = json.loads(client.get("/auth/me").data)
        assert me["user"]["email"] == seed_data["customer_email"]

        assert client.post("/auth/logout").status_code == 200


class TestSetPassword:
    """Accounts provisioned at payment time."""

    def test_token_sets_password_once(self, client, seed_data, login):
        user = account_service.resolve_account(email="guest@example.com")
        assert user.provisioned is True
        token = account_service.make_set_password_token(user)

        resp = client.post("/auth/set-password", json={
            "token": token, "password": "my-new-password",
        })
        assert resp.status_code == 200
        assert db.session.get(User, user.id).provisioned is False

        # The token is bound to the old password hash.
        again = client.post("/auth/set-password", json={
            "token": token, "password": "another-password",
        })
        assert again.status_code == 400

        login(client, "guest@example.com", password="my-new-password")

    def test_tampered_token_rejected(self, client, seed_data):
        resp = client.post("/auth/set-password", json={
            "token": "not-a-token", "password": "my-new-password",
        })
        assert resp.status_code == 400


class TestCsrf:
    """A second app with CSRF on; no database access needed."""

    def test_json_post_without_token_rejected(self):
        app = create_app("testing", config_overrides={"WTF_CSRF_ENABLED": True})

        resp = app.test_client().post("/auth/login", json={"email": "a@b.c", "password": "x"})

        assert resp.status_code == 400
        assert json.loads(resp.data)["error"] == "csrf_failed"

    def test_webhook_exempt(self):
        app = create_app("testing", config_overrides={"WTF_CSRF_ENABLED": True})

        resp = app.test_client().post("/stripe/webhooks", data="{}",
                                      content_type="application/json")

        assert resp.status_code == 400
        assert json.loads(resp.data)["error"] == "Invalid signature."

    def test_csrf_endpoint(self, client):
        data = json.loads(client.get("/auth/csrf").data)
        assert data["csrf_token"]
