"""
SMTP email delivery and message templates.

Unlike push dispatch, sending mail surfaces every transport error to the
caller as ``EmailDeliveryError``: SMTP settings are user supplied and
failures need to be diagnosable.
"""

import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Dict, Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from cyberkey.core.errors import EmailDeliveryError
from cyberkey.storage.models import ApiKeyRecord, SecurityAlertRecord, SmtpSettings

logger = logging.getLogger(__name__)

_templates = Environment(
    loader=PackageLoader("cyberkey.notifications", "templates"),
    autoescape=select_autoescape(["html", "xml"]),
)


def _render(name: str, context: Dict[str, Any]) -> str:
    return _templates.get_template(name).render(**context)


class SmtpEmailSender:
    """Sends single messages through one SMTP account."""

    def __init__(self, settings: SmtpSettings, from_name: Optional[str] = None, timeout: float = 30.0):
        self.settings = settings
        self.from_name = from_name
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        """Send one message.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body
            text: Optional plain-text alternative

        Raises:
            EmailDeliveryError: On any connection, authentication or transport failure
        """
        if not to:
            raise EmailDeliveryError("Recipient address is required")

        message = EmailMessage()
        sender = self.settings.from_email
        message["From"] = formataddr((self.from_name, sender)) if self.from_name else sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text or subject)
        message.add_alternative(html, subtype="html")

        settings = self.settings
        try:
            if settings.secure:
                smtp = smtplib.SMTP_SSL(
                    settings.host, settings.port, timeout=self.timeout,
                    context=ssl.create_default_context(),
                )
            else:
                smtp = smtplib.SMTP(settings.host, settings.port, timeout=self.timeout)
            with smtp:
                if not settings.secure:
                    smtp.ehlo()
                    if smtp.has_extn("starttls"):
                        smtp.starttls(context=ssl.create_default_context())
                        smtp.ehlo()
                if settings.username:
                    smtp.login(settings.username, settings.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s via %s:%s: %s", to, settings.host, settings.port, e)
            raise EmailDeliveryError(f"Failed to send email: {e}") from e

        logger.info("Sent email '%s' to %s", subject, to)


def render_security_alert(alert: SecurityAlertRecord, app_url: str) -> Dict[str, str]:
    """Render subject and bodies for a security alert email."""
    context = {"alert": alert, "app_url": app_url.rstrip("/")}
    return {
        "subject": f"CyberKey Security Alert: {alert.type}",
        "html": _render("security_alert.html", context),
        "text": _render("security_alert.txt", context),
    }


def render_key_expiration(key: ApiKeyRecord, days_until_expiration: int) -> Dict[str, str]:
    """Render subject and bodies for an expiring key email."""
    context = {"key": key, "days": days_until_expiration}
    return {
        "subject": f'API Key "{key.name}" Expiring Soon',
        "html": _render("key_expiration.html", context),
        "text": _render("key_expiration.txt", context),
    }


def render_low_balance(key: ApiKeyRecord, threshold: float) -> Dict[str, str]:
    """Render subject and bodies for a low balance email."""
    context = {"key": key, "threshold": threshold}
    return {
        "subject": f'API Key "{key.name}" Balance Is Low',
        "html": _render("low_balance.html", context),
        "text": _render("low_balance.txt", context),
    }


class SecurityAlertMailer:
    """Mails security alerts from the system mailbox."""

    def __init__(self, sender: SmtpEmailSender, app_url: str):
        self.sender = sender
        self.app_url = app_url

    def send_security_alert(self, to: str, alert: SecurityAlertRecord) -> None:
        message = render_security_alert(alert, self.app_url)
        self.sender.send(to, message["subject"], message["html"], message["text"])


def send_test_email(settings: SmtpSettings, to: str) -> None:
    """Send the SMTP settings test message.

    Raises:
        EmailDeliveryError: If the message could not be delivered
    """
    SmtpEmailSender(settings).send(
        to,
        "CyberKey - Test Email",
        _render("smtp_test.html", {}),
        _render("smtp_test.txt", {}),
    )
