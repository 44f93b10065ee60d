"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from stagepay.errors import AuthenticityFailure, TransientInfrastructureFailure
from stagepay.extensions import db
from stagepay.services import reconciliation_service
from stagepay.services.stripe_service import verify_webhook_signature

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and reconcile Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature + timestamp with STRIPE_WEBHOOK_SECRET
    3. Hand the event to the reconciliation engine (idempotent per session)
    4. Acknowledge with 200, including duplicates and rejected payloads

    Only an authenticity failure answers 400. A 503 means the event could
    not be durably claimed and Stripe should redeliver it.
    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except AuthenticityFailure as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": e.user_message}), 400

    # --- Reconcile ---
    try:
        result = reconciliation_service.handle_event(event)
    except TransientInfrastructureFailure as e:
        logger.error(f"Webhook {event['id']} not recorded, asking Stripe to retry: {e}")
        return jsonify({"error": "temporarily_unavailable"}), 503
    except Exception as e:
        # The claim, if taken, stays open and is picked up by recover-claims.
        db.session.rollback()
        logger.error(f"Webhook {event['id']} failed after receipt: {e}", exc_info=True)
        return jsonify({"status": reconciliation_service.STATUS_DEFERRED}), 200

    return jsonify({"status": result.status, "state": result.state}), 200
