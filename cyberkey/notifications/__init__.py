"""
Notification delivery for CyberKey.

Push dispatch to registered devices and SMTP email.
"""

from .email import SecurityAlertMailer, SmtpEmailSender, send_test_email
from .push import (
    DispatchResult,
    Notification,
    NotificationDispatcher,
    PushGateway,
    ServiceAccountCredentials,
    StaticTokenCredentials,
)

__all__ = [
    "DispatchResult",
    "Notification",
    "NotificationDispatcher",
    "PushGateway",
    "SecurityAlertMailer",
    "ServiceAccountCredentials",
    "SmtpEmailSender",
    "StaticTokenCredentials",
    "send_test_email",
]
