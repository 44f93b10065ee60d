"""Auth blueprint — /auth/*

JSON registration, login, logout and session introspection.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from stagepay.errors import ValidationFailure
from stagepay.extensions import limiter
from stagepay.services import account_service, ledger_service

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": bool(user.is_admin),
        "balance": ledger_service.get_balance(user.id),
    }


# ──────────────────────────────────────────────
# GET /auth/csrf
# ──────────────────────────────────────────────

@auth_bp.route("/csrf")
def csrf_token():
    """CSRF token for API clients; send it back as the X-CSRFToken header."""
    return jsonify({"csrf_token": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/register
# ──────────────────────────────────────────────

@auth_bp.route("/register", methods=["POST"])
@limiter.limit("10 per minute")
def register():
    data = request.get_json(silent=True) or {}
    email = account_service.normalize_email(data.get("email"))
    password = data.get("password") or ""
    full_name = (data.get("full_name") or "").strip()

    # --- Validation ---
    errors = []
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    if len(password) < 8:
        errors.append("Password must be at least 8 characters.")
    if errors:
        raise ValidationFailure("; ".join(errors), user_message=" ".join(errors))

    user = account_service.create_user(email, password, full_name=full_name or None)

    login_user(user)
    return jsonify({"success": True, "user": _user_dict(user)}), 201


# ──────────────────────────────────────────────
# POST /auth/set-password
# ──────────────────────────────────────────────

@auth_bp.route("/set-password", methods=["POST"])
@limiter.limit("10 per minute")
def set_password():
    """Guest accounts created at payment time choose their password here.

    Body: {token, password}; the token comes from the welcome email.
    """
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    if len(password) < 8:
        raise ValidationFailure(
            "password too short", user_message="Password must be at least 8 characters."
        )
    user = account_service.set_password_with_token(data.get("token") or "", password)
    login_user(user)
    return jsonify({"success": True, "user": _user_dict(user)})


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    data = request.get_json(silent=True) or {}
    email = account_service.normalize_email(data.get("email"))
    password = data.get("password") or ""

    user = account_service.get_by_email(email)
    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({
            "success": False,
            "error": "invalid_credentials",
            "message": "Invalid email or password.",
        }), 401

    if not user.is_active:
        return jsonify({
            "success": False,
            "error": "account_disabled",
            "message": "Your account has been deactivated.",
        }), 403

    login_user(user, remember=bool(data.get("remember")))
    return jsonify({"success": True, "user": _user_dict(user)})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify({"success": True})


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"success": True, "user": _user_dict(current_user)})
