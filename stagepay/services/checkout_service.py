"""Checkout initiation — server-side cart plus Stripe session.

Responsible for:
- Serializing checkout starts per customer (checkout lock)
- Recording the cart as a PendingCheckout keyed by a random token
- Cancelling a checkout and purging carts that were never paid
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import delete

from stagepay import pricing
from stagepay.errors import CheckoutInProgress, ValidationFailure
from stagepay.extensions import db
from stagepay.models.pending_checkout import PendingCheckout
from stagepay.services import account_service, checkout_lock_service, stripe_service

logger = logging.getLogger(__name__)


def start_checkout(bundle_id, email, account_id=None, image_refs=None, staging_style=None):
    """Start a Stripe checkout for a credit bundle.

    The customer's checkout lock is held from here until the webhook
    completes the checkout, the customer cancels, or the TTL passes.
    Returns (pending_checkout, checkout_url).
    """
    bundle = pricing.get_bundle(bundle_id)
    if bundle is None:
        raise ValidationFailure(
            f"Unknown bundle {bundle_id!r}", user_message="Please choose a valid bundle."
        )

    email = account_service.normalize_email(email)
    if not email or "@" not in email:
        raise ValidationFailure(
            "A customer email is required", user_message="Please enter a valid email."
        )

    image_refs = list(image_refs or [])
    if len(image_refs) > bundle.credits:
        raise ValidationFailure(
            f"{len(image_refs)} images for a {bundle.credits}-credit bundle",
            user_message=f"This bundle covers {bundle.credits} photos; you uploaded {len(image_refs)}.",
        )

    identity = checkout_lock_service.identity_key_for(email=email)
    lock_token = checkout_lock_service.acquire(identity)
    if lock_token is None:
        raise CheckoutInProgress(f"Checkout already in progress for {identity}")

    try:
        pending = PendingCheckout(
            token=secrets.token_urlsafe(32),
            account_id=account_id,
            customer_email=email,
            bundle_id=bundle.id,
            credits=bundle.credits,
            image_refs=image_refs,
            staging_style=staging_style,
            lock_token=lock_token,
        )
        db.session.add(pending)
        db.session.commit()

        session = stripe_service.create_checkout_session(pending)
        pending.stripe_session_id = session.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        checkout_lock_service.release(identity, lock_token)
        raise

    logger.info(f"Checkout {session.id} started for {email}: {bundle.id}")
    return pending, session.url


def cancel_checkout(token, email):
    """Abandon an unpaid checkout and free the customer's lock.

    Returns True if a pending checkout was cancelled.
    """
    email = account_service.normalize_email(email)
    pending = PendingCheckout.query.filter_by(token=token).first()
    if pending is None or pending.customer_email != email:
        return False
    if pending.completed_at is not None:
        raise ValidationFailure(
            f"Checkout {token[:8]} already completed",
            user_message="This checkout has already been paid.",
        )

    lock_token = pending.lock_token
    db.session.delete(pending)
    db.session.commit()
    if lock_token:
        checkout_lock_service.release(
            checkout_lock_service.identity_key_for(email=email), lock_token
        )
    logger.info(f"Checkout {token[:8]} cancelled by {email}")
    return True


def purge_stale_pending(hours=None):
    """Delete uncompleted carts older than N hours. Returns the count."""
    if hours is None:
        hours = current_app.config.get("PENDING_CHECKOUT_RETENTION_HOURS", 48)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    result = db.session.execute(
        delete(PendingCheckout)
        .where(
            PendingCheckout.completed_at.is_(None),
            PendingCheckout.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.info(f"Purged {result.rowcount} abandoned checkouts older than {hours}h")
    return result.rowcount
