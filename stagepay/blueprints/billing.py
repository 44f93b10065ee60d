"""Billing blueprint — /billing/*

Credit bundle checkout and client-side payment verification.

Routes:
- GET  /billing/bundles   — credit bundles and prices
- POST /billing/checkout  — start a Stripe Checkout Session for a bundle
- POST /billing/cancel    — abandon an unpaid checkout, free the lock
- POST /billing/verify    — confirm a session from the success page
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from stagepay import pricing
from stagepay.errors import TransientInfrastructureFailure, Unauthorized, ValidationFailure
from stagepay.extensions import limiter
from stagepay.services import (
    checkout_service,
    idempotency_service,
    reconciliation_service,
    stripe_service,
)

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


# ──────────────────────────────────────────────
# GET /billing/bundles
# ──────────────────────────────────────────────

@billing_bp.route("/bundles")
def bundles():
    return jsonify({"success": True, "bundles": pricing.list_bundles()})


# ──────────────────────────────────────────────
# POST /billing/checkout
# ──────────────────────────────────────────────

@billing_bp.route("/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout():
    """Create a Stripe Checkout Session and return its URL.

    Guests may check out with an email; a logged-in customer always pays
    into their own account. Body: {bundle_id, email?, image_refs?, staging_style?}
    """
    data = request.get_json(silent=True) or {}

    if current_user.is_authenticated:
        email = current_user.email
        account_id = current_user.id
    else:
        email = data.get("email")
        account_id = None

    pending, checkout_url = checkout_service.start_checkout(
        bundle_id=data.get("bundle_id"),
        email=email,
        account_id=account_id,
        image_refs=data.get("image_refs"),
        staging_style=data.get("staging_style"),
    )
    return jsonify({
        "success": True,
        "checkout_url": checkout_url,
        "checkout_token": pending.token,
    })


# ──────────────────────────────────────────────
# POST /billing/cancel
# ──────────────────────────────────────────────

@billing_bp.route("/cancel", methods=["POST"])
def cancel():
    """Customer backed out of Stripe Checkout. Body: {token, email?}"""
    data = request.get_json(silent=True) or {}
    email = current_user.email if current_user.is_authenticated else data.get("email")
    cancelled = checkout_service.cancel_checkout(data.get("token") or "", email)
    return jsonify({"success": True, "cancelled": cancelled})


# ──────────────────────────────────────────────
# POST /billing/verify
# ──────────────────────────────────────────────

@billing_bp.route("/verify", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def verify():
    """Confirm a checkout session from the success page.

    Covers the window where the customer lands back before the webhook:
    the session is fetched from Stripe and run through the same
    idempotent reconciliation, so the webhook and this call can race
    without double-crediting.

    The session must belong to the caller (account id or email in the
    session metadata), otherwise 403.
    """
    data = request.get_json(silent=True) or {}
    session_id = (data.get("session_id") or "").strip()
    if not session_id:
        raise ValidationFailure("session_id missing", user_message="Missing session_id.")

    session = stripe_service.retrieve_session(session_id)
    metadata = session.get("metadata") or {}
    owner_id = metadata.get("account_id") or None
    owner_email = (metadata.get("customer_email") or "").strip().lower() or None
    if owner_id != current_user.id and owner_email != current_user.email:
        logger.warning(f"{current_user.email} tried to verify session {session_id} of another customer")
        raise Unauthorized(f"Session {session_id} does not belong to {current_user.id}")

    confirmation = stripe_service.parse_confirmation(session)
    result = reconciliation_service.reconcile(confirmation)

    if result.status == reconciliation_service.STATUS_PROCESSED:
        return jsonify({"success": True, "credits": result.credits})
    if result.status == reconciliation_service.STATUS_DUPLICATE:
        record = idempotency_service.get_record(session_id)
        if record is not None and record.is_finalized:
            return jsonify({
                "success": True,
                "credits": record.credits_applied,
                "message": "Payment already processed.",
            })
        # Claimed by a webhook still in flight, or deferred for recovery.
        return jsonify({
            "success": False,
            "status": "processing",
            "message": "Your payment was received and credits are still being applied.",
        }), 202
    if result.status == reconciliation_service.STATUS_DEFERRED:
        raise TransientInfrastructureFailure(f"Reconciliation of {session_id} deferred")
    return jsonify({"success": False, "message": result.message}), 400
