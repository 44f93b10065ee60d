"""Checkout lock manager — one in-flight checkout per customer identity.

A lock is a row in checkout_locks with a TTL. Expired rows are treated as
absent (lazy expiry): a new acquire takes them over with a conditional
UPDATE, so a crashed holder never blocks the customer for longer than
CHECKOUT_LOCK_TTL_SECONDS.
"""

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from stagepay.errors import CheckoutInProgress
from stagepay.extensions import db
from stagepay.models.checkout_lock import CheckoutLock
from stagepay.services.db_helpers import insert_or_ignore

logger = logging.getLogger(__name__)


def identity_key_for(email=None, account_id=None):
    """Normalise a customer identity into a lock key."""
    if email:
        return f"email:{email.strip().lower()}"
    if account_id:
        return f"account:{account_id}"
    raise ValueError("identity_key_for() needs an email or an account_id")


def _default_ttl():
    return current_app.config.get("CHECKOUT_LOCK_TTL_SECONDS", 30)


def acquire(identity_key, ttl=None):
    """Try to take the lock. Returns the lock token, or None if it is held.

    Not re-entrant: a second acquire by the same holder also returns None.
    """
    ttl = ttl or _default_ttl()
    now = datetime.now(timezone.utc)
    token = secrets.token_hex(16)
    values = {
        "identity_key": identity_key,
        "token": token,
        "acquired_at": now,
        "expires_at": now + timedelta(seconds=ttl),
    }

    try:
        acquired = insert_or_ignore(CheckoutLock, values, ["identity_key"])
        if not acquired:
            taken_over = db.session.execute(
                update(CheckoutLock)
                .where(
                    CheckoutLock.identity_key == identity_key,
                    CheckoutLock.expires_at < now,
                )
                .values(
                    token=token,
                    acquired_at=now,
                    expires_at=values["expires_at"],
                )
                .execution_options(synchronize_session=False)
            )
            acquired = taken_over.rowcount == 1
        db.session.commit()
    except OperationalError as e:
        db.session.rollback()
        logger.warning(f"Lock store unavailable for {identity_key}: {e}")
        return None

    if not acquired:
        logger.info(f"Checkout lock for {identity_key} is held")
        return None
    return token


def release(identity_key, token=None):
    """Drop the lock. With a token, only the matching holder's lock is dropped."""
    stmt = delete(CheckoutLock).where(CheckoutLock.identity_key == identity_key)
    if token is not None:
        stmt = stmt.where(CheckoutLock.token == token)
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    db.session.commit()
    return result.rowcount == 1


def is_held(identity_key):
    now = datetime.now(timezone.utc)
    row = db.session.execute(
        db.select(CheckoutLock.identity_key).where(
            CheckoutLock.identity_key == identity_key,
            CheckoutLock.expires_at >= now,
        )
    ).first()
    return row is not None


def release_expired():
    """Sweep lock rows whose TTL has passed. Returns the count."""
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        delete(CheckoutLock)
        .where(CheckoutLock.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount


@contextmanager
def checkout_lock(identity_key, ttl=None):
    """Hold the lock for the duration of the block.

    Raises CheckoutInProgress if another checkout for the identity is running.
    """
    token = acquire(identity_key, ttl)
    if token is None:
        raise CheckoutInProgress(f"Checkout already in progress for {identity_key}")
    try:
        yield token
    finally:
        db.session.rollback()
        release(identity_key, token)
