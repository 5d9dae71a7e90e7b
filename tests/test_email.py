"""
Tests for SMTP delivery and email rendering.
"""

import smtplib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from cyberkey.core.errors import EmailDeliveryError
from cyberkey.notifications.email import (
    SecurityAlertMailer,
    SmtpEmailSender,
    render_key_expiration,
    render_low_balance,
    render_security_alert,
    send_test_email,
)
from cyberkey.storage.models import (
    ActivityType,
    AlertActivity,
    AlertSeverity,
    ApiKeyRecord,
    SecurityAlertRecord,
    SmtpSettings,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

PLAIN = SmtpSettings(
    host="smtp.example.com",
    port=587,
    secure=False,
    username="mailer",
    password="pw",
    from_email="noreply@example.com",
)

SECURE = SmtpSettings(
    host="smtp.example.com",
    port=465,
    secure=True,
    username="",
    password="",
    from_email="noreply@example.com",
)

ALERT = SecurityAlertRecord(
    id="a1",
    user_id="user-1",
    type="RAPID_API_KEY_CREATION",
    severity=AlertSeverity.HIGH,
    timestamp=NOW,
    activity_count=2,
    recent_activities=(
        AlertActivity(type=ActivityType.API_KEY_CREATED, timestamp=NOW, ip_address="203.0.113.7"),
        AlertActivity(type=ActivityType.API_KEY_CREATED, timestamp=NOW - timedelta(seconds=30)),
    ),
)


def make_key(**overrides):
    fields = dict(
        id="k1",
        user_id="user-1",
        name="prod <main>",
        secret="sealed",
        provider_name="openai",
        created_at=NOW,
        updated_at=NOW,
        balance=3.5,
        expires_at=NOW + timedelta(days=2),
    )
    fields.update(overrides)
    return ApiKeyRecord(**fields)


class TestSmtpEmailSender:
    """Test the SMTP transport."""

    @patch("cyberkey.notifications.email.smtplib.SMTP")
    def test_plain_connection_upgrades_and_logs_in(self, mock_smtp):
        connection = mock_smtp.return_value
        connection.has_extn.return_value = True

        SmtpEmailSender(PLAIN, from_name="CyberKey Security").send(
            "owner@example.com", "Subject", "<p>hi</p>", "hi"
        )

        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        connection.starttls.assert_called_once()
        connection.login.assert_called_once_with("mailer", "pw")
        message = connection.send_message.call_args[0][0]
        assert message["To"] == "owner@example.com"
        assert message["Subject"] == "Subject"
        assert message["From"] == "CyberKey Security <noreply@example.com>"
        assert message.is_multipart()

    @patch("cyberkey.notifications.email.smtplib.SMTP")
    def test_no_starttls_when_not_offered(self, mock_smtp):
        connection = mock_smtp.return_value
        connection.has_extn.return_value = False

        SmtpEmailSender(PLAIN).send("owner@example.com", "Subject", "<p>hi</p>")

        connection.starttls.assert_not_called()
        message = connection.send_message.call_args[0][0]
        assert message["From"] == "noreply@example.com"

    @patch("cyberkey.notifications.email.smtplib.SMTP_SSL")
    def test_secure_connection_without_credentials(self, mock_smtp_ssl):
        connection = mock_smtp_ssl.return_value

        SmtpEmailSender(SECURE).send("owner@example.com", "Subject", "<p>hi</p>")

        assert mock_smtp_ssl.call_args[0] == ("smtp.example.com", 465)
        connection.login.assert_not_called()
        connection.send_message.assert_called_once()

    @patch("cyberkey.notifications.email.smtplib.SMTP")
    def test_authentication_failure(self, mock_smtp):
        connection = mock_smtp.return_value
        connection.has_extn.return_value = False
        connection.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        with pytest.raises(EmailDeliveryError, match="Failed to send email"):
            SmtpEmailSender(PLAIN).send("owner@example.com", "Subject", "<p>hi</p>")

    @patch("cyberkey.notifications.email.smtplib.SMTP")
    def test_connection_refused(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(EmailDeliveryError):
            SmtpEmailSender(PLAIN).send("owner@example.com", "Subject", "<p>hi</p>")

    def test_recipient_required(self):
        with pytest.raises(EmailDeliveryError, match="Recipient"):
            SmtpEmailSender(PLAIN).send("", "Subject", "<p>hi</p>")

    @patch("cyberkey.notifications.email.smtplib.SMTP")
    def test_send_test_email(self, mock_smtp):
        mock_smtp.return_value.has_extn.return_value = False

        send_test_email(PLAIN, "owner@example.com")

        message = mock_smtp.return_value.send_message.call_args[0][0]
        assert message["Subject"] == "CyberKey - Test Email"


class TestRendering:
    """Test email templates."""

    def test_security_alert(self):
        email = render_security_alert(ALERT, "https://app.example.com/")

        assert email["subject"] == "CyberKey Security Alert: RAPID_API_KEY_CREATION"
        assert "203.0.113.7" in email["text"]
        assert "Unknown" in email["text"]
        assert "https://app.example.com/security" in email["html"]
        assert "2024-06-01 12:00:00 UTC" in email["html"]

    def test_key_expiration_escapes_html(self):
        email = render_key_expiration(make_key(), 2)

        assert email["subject"] == 'API Key "prod <main>" Expiring Soon'
        assert "prod &lt;main&gt;" in email["html"]
        assert "<main>" not in email["html"]
        assert 'Your API key "prod <main>" will expire in 2 days.' in email["text"]
        assert "2024-06-03" in email["text"]

    def test_low_balance(self):
        email = render_low_balance(make_key(funding_link="https://billing.example.com"), 10.0)

        assert "3.50" in email["text"]
        assert "10.00" in email["text"]
        assert "https://billing.example.com" in email["html"]

    def test_mailer_sends_rendered_alert(self):
        sender = MagicMock()

        SecurityAlertMailer(sender, "https://app.example.com").send_security_alert("owner@example.com", ALERT)

        to, subject, html, text = sender.send.call_args[0]
        assert to == "owner@example.com"
        assert subject == "CyberKey Security Alert: RAPID_API_KEY_CREATION"
        assert "RAPID_API_KEY_CREATION" in html
