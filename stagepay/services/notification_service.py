"""Notification service — customer notifications and support alerts.

notify() maps a domain event to a templated email for the account owner.
Callers treat notification as best-effort: a failure here must never undo
a ledger change.
"""

import logging

from flask import current_app

from stagepay.extensions import db
from stagepay.models.user import User
from stagepay.services.email_service import send_email

logger = logging.getLogger(__name__)

EVENT_CREDITS_PURCHASED = "credits.purchased"
EVENT_ORDER_CREATED = "order.created"
EVENT_ORDER_COMPLETED = "order.completed"
EVENT_CREDITS_EXPIRING = "credits.expiring"
EVENT_CREDITS_EXPIRED = "credits.expired"
EVENT_ACCOUNT_PROVISIONED = "account.provisioned"

# event type -> (subject, template)
EVENTS = {
    EVENT_CREDITS_PURCHASED: (
        "Your StagePay credits are ready",
        "emails/credits_purchased.html",
    ),
    EVENT_ORDER_CREATED: (
        "We received your staging order",
        "emails/order_created.html",
    ),
    EVENT_ORDER_COMPLETED: (
        "Your staged photo is ready",
        "emails/order_completed.html",
    ),
    EVENT_CREDITS_EXPIRING: (
        "Your StagePay credits expire soon",
        "emails/credits_expiring.html",
    ),
    EVENT_CREDITS_EXPIRED: (
        "Your StagePay credits have expired",
        "emails/credits_expired.html",
    ),
    EVENT_ACCOUNT_PROVISIONED: (
        "Your StagePay account is ready",
        "emails/account_provisioned.html",
    ),
}


def notify(event_type, account_id, payload=None):
    """Send the notification for `event_type` to the account owner.

    Raises ValueError for an unknown event or account; delivery errors
    propagate to the caller.
    """
    try:
        subject, template = EVENTS[event_type]
    except KeyError:
        raise ValueError(f"Unknown notification event {event_type!r}")

    user = db.session.get(User, account_id)
    if user is None:
        raise ValueError(f"Cannot notify unknown account {account_id}")

    context = dict(payload or {})
    context.setdefault("customer_name", user.full_name or "")
    context.setdefault("dashboard_url", f"{current_app.config['APP_BASE_URL']}/dashboard")

    send_email(to=user.email, subject=subject, template=template, context=context)
    logger.info(f"Notified {user.email}: {event_type}")


def alert_support(subject, details=None):
    """Email the support inbox. Never raises."""
    support_email = current_app.config.get("SUPPORT_EMAIL")
    logger.error(f"Support alert: {subject} {details or ''}")
    if not support_email:
        return
    try:
        send_email(
            to=support_email,
            subject=f"[StagePay] {subject}",
            template="emails/support_alert.html",
            context={"subject": subject, "details": details or {}},
        )
    except Exception as e:
        logger.error(f"Failed to send support alert '{subject}': {e}", exc_info=True)
