"""Tests for customer notifications, support alerts and SMTP delivery."""

from unittest.mock import patch

import pytest

from stagepay.services import email_service, notification_service


class TestNotify:

    def test_unknown_event(self, seed_data):
        with pytest.raises(ValueError):
            notification_service.notify("credits.teleported", seed_data["customer_id"])

    def test_unknown_account(self, seed_data):
        with pytest.raises(ValueError):
            notification_service.notify(notification_service.EVENT_CREDITS_PURCHASED, "nobody")

    @patch("stagepay.services.notification_service.send_email")
    def test_renders_for_owner(self, mock_send, seed_data):
        notification_service.notify(
            notification_service.EVENT_CREDITS_PURCHASED,
            seed_data["customer_id"],
            {"credits": 5, "balance": 5, "orders_created": 0, "session_id": "cs_1"},
        )

        kwargs = mock_send.call_args.kwargs
        assert kwargs["to"] == seed_data["customer_email"]
        assert kwargs["template"] == "emails/credits_purchased.html"
        assert kwargs["context"]["customer_name"] == "Jane Doe"

    @pytest.mark.parametrize("event,payload", [
        (notification_service.EVENT_CREDITS_PURCHASED,
         {"credits": 5, "balance": 5, "orders_created": 2, "session_id": "cs_1"}),
        (notification_service.EVENT_ORDER_CREATED,
         {"order_numbers": ["ORD-1"], "balance": 4}),
        (notification_service.EVENT_ORDER_COMPLETED,
         {"order_number": "ORD-1", "staging_style": "modern", "image_ref": "a.jpg"}),
        (notification_service.EVENT_CREDITS_EXPIRING,
         {"credits": 3, "days_left": 6, "threshold_days": 7, "expires_on": "2026-01-01"}),
        (notification_service.EVENT_CREDITS_EXPIRED, {"credits": 3, "expiry_days": 365}),
        (notification_service.EVENT_ACCOUNT_PROVISIONED,
         {"set_password_url": "http://localhost:5000/set-password?token=x"}),
    ])
    def test_templates_render(self, seed_data, event, payload):
        """MAIL_ENABLED is off in tests: the message is built, not sent."""
        notification_service.notify(event, seed_data["customer_id"], payload)


class TestSupportAlerts:

    @patch("stagepay.services.notification_service.send_email")
    def test_never_raises(self, mock_send, seed_data):
        mock_send.side_effect = RuntimeError("smtp down")
        notification_service.alert_support("Stuck payment", {"external_key": "cs_1"})
        mock_send.assert_called_once()

    @patch("stagepay.services.notification_service.send_email")
    def test_sent_to_support_inbox(self, mock_send, app, seed_data):
        notification_service.alert_support("Stuck payment", {"external_key": "cs_1"})

        kwargs = mock_send.call_args.kwargs
        assert kwargs["to"] == app.config["SUPPORT_EMAIL"]
        assert kwargs["subject"] == "[StagePay] Stuck payment"


class TestEmailDelivery:

    def test_disabled_mail_not_sent(self, app):
        assert email_service.send_email(
            to="a@example.com", subject="Hi", template="emails/support_alert.html",
            context={"subject": "Hi", "details": {}},
        ) is False

    @patch("stagepay.services.email_service.smtplib.SMTP")
    def test_sync_send_over_smtp(self, mock_smtp, app, monkeypatch):
        monkeypatch.setitem(app.config, "MAIL_ENABLED", True)
        monkeypatch.setitem(app.config, "MAIL_USERNAME", "robot@stagepay.local")
        monkeypatch.setitem(app.config, "MAIL_PASSWORD", "secret")

        sent = email_service.send_email_sync(
            to="a@example.com", subject="Alert", template="emails/support_alert.html",
            context={"subject": "Alert", "details": {"k": "v"}},
        )

        assert sent is True
        server = mock_smtp.return_value.__enter__.return_value
        server.login.assert_called_once_with("robot@stagepay.local", "secret")
        msg = server.send_message.call_args.args[0]
        assert msg["To"] == "a@example.com"
        assert msg["From"] == "StagePay <robot@stagepay.local>"
