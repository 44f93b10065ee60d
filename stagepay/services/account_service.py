"""Account service — resolving payment identities to credit accounts.

Responsible for:
- Creating accounts on registration
- Resolving the account a payment belongs to (metadata account_id, then email)
- Applying UNRESOLVED_ACCOUNT_POLICY when a paying email has no account
- Set-password tokens for accounts provisioned from guest payments
"""

import logging
import secrets

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from stagepay.errors import AccountNotFound, ValidationFailure
from stagepay.extensions import db
from stagepay.models.user import User
from stagepay.services import audit_service

logger = logging.getLogger(__name__)

SET_PASSWORD_SALT = "set-password"
SET_PASSWORD_MAX_AGE = 7 * 24 * 3600


def normalize_email(email):
    return (email or "").strip().lower()


def get_by_email(email):
    email = normalize_email(email)
    if not email:
        return None
    return User.query.filter_by(email=email).first()


def create_user(email, password, full_name=None, is_admin=False):
    """Register a customer. Raises ValidationFailure if the email is taken."""
    email = normalize_email(email)
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name,
        is_admin=is_admin,
    )
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ValidationFailure(
            f"Email {email} already registered",
            user_message="An account with this email already exists.",
        )

    audit_service.log_event(
        "user.registered",
        account_id=user.id,
        actor_user_id=user.id,
        metadata={"email": email},
        commit=False,
    )
    db.session.commit()
    return user


def _provision(email):
    """Create a passwordless account for a guest who paid.

    The customer picks a password through the welcome email link. A concurrent
    provisioning of the same email loses on the unique index and reuses
    the winner's row.
    """
    user = User(
        email=email,
        password_hash=generate_password_hash(secrets.token_urlsafe(32)),
        provisioned=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = get_by_email(email)
        if existing is None:
            raise
        return existing

    logger.info(f"Provisioned account {user.id} for {email}")
    audit_service.log_event(
        "account.provisioned", account_id=user.id, metadata={"email": email}
    )

    from stagepay.services import notification_service

    try:
        notification_service.notify(
            notification_service.EVENT_ACCOUNT_PROVISIONED,
            user.id,
            {"set_password_url": set_password_url(user)},
        )
    except Exception as e:
        logger.error(f"Welcome email for {email} failed: {e}", exc_info=True)
    return user


# ──────────────────────────────────────────────
# Set-password tokens (provisioned accounts)
# ──────────────────────────────────────────────

def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=SET_PASSWORD_SALT)


def make_set_password_token(user):
    """Signed token bound to the current password hash, so it works once."""
    return _serializer().dumps({"uid": user.id, "ph": user.password_hash[-16:]})


def set_password_url(user):
    base = current_app.config["APP_BASE_URL"].rstrip("/")
    return f"{base}/set-password?token={make_set_password_token(user)}"


def set_password_with_token(token, password):
    """Set a password from a welcome-email token. Returns the user."""
    invalid = ValidationFailure(
        "invalid or expired set-password token",
        user_message="This link is invalid or has expired.",
    )
    try:
        data = _serializer().loads(token, max_age=SET_PASSWORD_MAX_AGE)
    except (BadSignature, SignatureExpired):
        raise invalid

    user = db.session.get(User, data.get("uid"))
    if user is None or user.password_hash[-16:] != data.get("ph"):
        raise invalid

    user.password_hash = generate_password_hash(password)
    user.provisioned = False
    audit_service.log_event(
        "account.password_set", account_id=user.id, actor_user_id=user.id, commit=False
    )
    db.session.commit()
    return user


def resolve_account(account_id=None, email=None):
    """Find the account a payment belongs to.

    Lookup order: explicit account_id, then customer email. If neither
    matches, UNRESOLVED_ACCOUNT_POLICY decides: "provision" creates the
    account, "reject" raises AccountNotFound.
    """
    if account_id:
        user = db.session.get(User, account_id)
        if user is not None:
            return user
        logger.warning(f"Payment references unknown account {account_id}")

    email = normalize_email(email)
    if email:
        user = get_by_email(email)
        if user is not None:
            return user

    if not email:
        raise AccountNotFound("Payment carries neither a known account nor an email")

    policy = current_app.config.get("UNRESOLVED_ACCOUNT_POLICY", "provision")
    if policy == "provision":
        return _provision(email)
    raise AccountNotFound(f"No account for {email} and policy is {policy!r}")
