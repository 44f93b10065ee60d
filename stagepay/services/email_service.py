"""
Transactional email over SMTP.

Sends receipts, order confirmations, expiry notices and support alerts.
Delivery happens in a background thread so a slow mail server never holds
up a webhook or request. Set MAIL_ENABLED=false to turn delivery off
(messages are rendered and logged, not sent).

Usage:
    from stagepay.services.email_service import send_email

    send_email(
        to="user@example.com",
        subject="Your credits are ready",
        template="emails/credits_purchased.html",
        context={"credits": 10},
    )
"""

import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

logger = logging.getLogger(__name__)


def _send_smtp(app, msg):
    """Send an email via SMTP (runs in a background thread for send_email)."""
    with app.app_context():
        host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
        port = app.config.get("MAIL_SMTP_PORT", 587)
        username = app.config.get("MAIL_USERNAME")
        password = app.config.get("MAIL_PASSWORD")
        timeout = app.config.get("MAIL_TIMEOUT_SECONDS", 30)

        if not username or not password:
            logger.warning("Email not sent — MAIL_USERNAME or MAIL_PASSWORD not configured.")
            return

        try:
            with smtplib.SMTP(host, port, timeout=timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(username, password)
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {msg['To']}: {e}")


def _build_message(app, to, subject, template, context, reply_to):
    from_name = app.config.get("MAIL_FROM_NAME", "StagePay")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    html_body = render_template(template, **context)

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)

    if reply_to:
        msg["Reply-To"] = reply_to

    msg.attach(MIMEText(html_body, "html"))
    return msg


def send_email(to, subject, template, context=None, reply_to=None):
    """
    Send a templated HTML email without blocking the caller.

    Args:
        to:        Recipient email address (str or list).
        subject:   Email subject line.
        template:  Path to Jinja2 HTML template (relative to templates/).
        context:   Dict of variables to pass to the template.
        reply_to:  Optional reply-to address.

    Returns True if the message was handed to a sender thread.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context or {}, reply_to)

    if not app.config.get("MAIL_ENABLED", True):
        logger.info(f"Mail disabled, not sending to {msg['To']} — {subject}")
        return False

    thread = threading.Thread(target=_send_smtp, args=(app, msg))
    thread.daemon = True
    thread.start()
    return True


def send_email_sync(to, subject, template, context=None, reply_to=None):
    """
    Same as send_email but blocks until sent. Used by CLI commands, where
    a daemon thread would die with the process.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context or {}, reply_to)

    if not app.config.get("MAIL_ENABLED", True):
        logger.info(f"Mail disabled, not sending to {msg['To']} — {subject}")
        return False

    _send_smtp(app, msg)
    return True
