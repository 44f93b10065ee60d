"""Stripe service — all Stripe API calls and webhook verification.

Responsible for:
- Creating one-off Checkout Sessions for credit bundles
- Verifying webhook signatures (signature + timestamp tolerance)
- Retrieving sessions for client-side verification and claim recovery
- Parsing a checkout session into a PaymentConfirmation
- Translating Stripe errors into the application error taxonomy
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe
from flask import current_app

from stagepay import pricing
from stagepay.errors import (
    AuthenticityFailure,
    TransientInfrastructureFailure,
    ValidationFailure,
)

logger = logging.getLogger(__name__)

HANDLED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


@dataclass
class PaymentConfirmation:
    """A paid checkout session, reduced to what reconciliation needs."""

    session_id: str
    credits: int
    account_id: Optional[str] = None
    email: Optional[str] = None
    bundle_id: Optional[str] = None
    checkout_token: Optional[str] = None
    amount_total: Optional[int] = None


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    stripe.default_http_client = stripe.RequestsClient(
        timeout=current_app.config.get("STRIPE_TIMEOUT_SECONDS", 10)
    )


def _translate(e, action):
    """Map a Stripe exception onto StagePayError."""
    if isinstance(e, stripe.InvalidRequestError):
        logger.warning(f"Stripe rejected {action}: {e}")
        return ValidationFailure(f"Stripe rejected {action}: {e}")
    logger.error(f"Stripe unavailable during {action}: {e}")
    return TransientInfrastructureFailure(f"Stripe unavailable during {action}: {e}")


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def create_checkout_session(pending_checkout):
    """Create a Stripe Checkout Session for a credit bundle.

    Amount and credits come from the server-side bundle table, never from
    the browser. The checkout token in metadata links the session back to
    its PendingCheckout (uploaded images, staging style).

    Returns the Stripe session object.
    """
    _configure()
    app_base_url = current_app.config["APP_BASE_URL"]
    bundle = pricing.get_bundle(pending_checkout.bundle_id)
    if bundle is None:
        raise ValidationFailure(f"Unknown bundle {pending_checkout.bundle_id}")

    try:
        return stripe.checkout.Session.create(
            mode="payment",
            customer_email=pending_checkout.customer_email,
            client_reference_id=pending_checkout.token,
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "unit_amount": bundle.price_cents,
                        "product_data": {
                            "name": f"Virtual staging credits: {bundle.label}",
                        },
                    },
                    "quantity": 1,
                },
            ],
            success_url=(
                f"{app_base_url}/billing/success"
                f"?session_id={{CHECKOUT_SESSION_ID}}"
            ),
            cancel_url=f"{app_base_url}/billing/cancelled?token={pending_checkout.token}",
            metadata={
                "checkout_token": pending_checkout.token,
                "account_id": pending_checkout.account_id or "",
                "customer_email": pending_checkout.customer_email,
                "bundle_id": bundle.id,
                "credits": str(bundle.credits),
            },
        )
    except stripe.StripeError as e:
        raise _translate(e, "checkout session creation")


def retrieve_session(session_id):
    """Fetch a checkout session from Stripe."""
    _configure()
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise _translate(e, f"retrieve {session_id}")


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    The signature covers the raw body and a timestamp; events older than
    STRIPE_WEBHOOK_TOLERANCE seconds are refused as replays.

    Returns the verified Stripe event object.
    Raises AuthenticityFailure on a missing, invalid or stale signature.
    """
    if not sig_header:
        raise AuthenticityFailure("Missing Stripe-Signature header")

    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    tolerance = current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300)
    try:
        return stripe.Webhook.construct_event(
            payload, sig_header, webhook_secret, tolerance=tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise AuthenticityFailure(f"Invalid signature: {e}")
    except ValueError as e:
        raise AuthenticityFailure(f"Unparseable payload: {e}")


def parse_confirmation(session):
    """Turn a checkout session into a PaymentConfirmation.

    Raises ValidationFailure if the session is unpaid or incomplete.
    """
    session_id = session.get("id")
    if not session_id:
        raise ValidationFailure("Checkout session has no id")

    if session.get("payment_status") != "paid":
        raise ValidationFailure(
            f"Session {session_id} is not paid ({session.get('payment_status')})"
        )

    metadata = session.get("metadata") or {}
    try:
        credits = int(metadata.get("credits") or 0)
    except (TypeError, ValueError):
        raise ValidationFailure(f"Session {session_id} has malformed credits metadata")
    if credits <= 0:
        raise ValidationFailure(f"Session {session_id} has non-positive credit count")

    bundle_id = metadata.get("bundle_id") or None
    if bundle_id:
        bundle = pricing.get_bundle(bundle_id)
        if bundle is None or bundle.credits != credits:
            raise ValidationFailure(
                f"Session {session_id} credits {credits} do not match bundle {bundle_id}"
            )

    customer_details = session.get("customer_details") or {}
    email = (
        metadata.get("customer_email")
        or customer_details.get("email")
        or session.get("customer_email")
    )
    account_id = metadata.get("account_id") or None

    if not account_id and not email:
        raise ValidationFailure(f"Session {session_id} carries no customer identity")

    return PaymentConfirmation(
        session_id=session_id,
        credits=credits,
        account_id=account_id,
        email=email.strip().lower() if email else None,
        bundle_id=bundle_id,
        checkout_token=metadata.get("checkout_token") or None,
        amount_total=session.get("amount_total"),
    )
