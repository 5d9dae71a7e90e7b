"""
Service wiring.

Builds the repositories, dispatchers and scanners from an AppConfig so the
CLI and the HTTP app share one construction path.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from cyberkey.config.loader import AppConfig, PushConfig
from cyberkey.notifications.email import SecurityAlertMailer, SmtpEmailSender
from cyberkey.notifications.push import (
    NotificationDispatcher,
    PushGateway,
    ServiceAccountCredentials,
    StaticTokenCredentials,
)
from cyberkey.sdk.balance_client import BalanceClient
from cyberkey.storage.repository import Store
from .activity import ActivityRecorder
from .alerting import ActivityAlerter
from .api_keys import ApiKeyService
from .crypto import KeyCodec
from .scanner import ExpiringKeyScanner, LowBalanceScanner, PushChannel, SmtpChannel

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a trigger or endpoint needs."""
    config: AppConfig
    store: Store
    dispatcher: NotificationDispatcher
    recorder: ActivityRecorder
    balance: BalanceClient
    api_keys: Optional[ApiKeyService] = None

    def expiring_key_scanner(self, channel: str = "smtp") -> ExpiringKeyScanner:
        """Scanner delivering through ``"smtp"`` or ``"push"``."""
        return ExpiringKeyScanner(
            self.store.api_keys,
            self.store.settings,
            self._channel(channel),
            lookahead_days=self.config.scanner.lookahead_days,
        )

    def low_balance_scanner(self, channel: str = "smtp") -> LowBalanceScanner:
        return LowBalanceScanner(self.store.api_keys, self.store.settings, self._channel(channel))

    def _channel(self, name: str):
        if name == "smtp":
            return SmtpChannel(self.store.users)
        if name == "push":
            return PushChannel(self.dispatcher)
        raise ValueError(f"Unknown delivery channel: {name}")


def push_credentials(push: PushConfig):
    """Credentials for the push gateway, or None when push is not configured."""
    if push.credentials_file:
        return ServiceAccountCredentials(push.credentials_file)
    if push.access_token:
        return StaticTokenCredentials(push.access_token)
    return None


def build_services(
    config: AppConfig,
    store: Optional[Store] = None,
    gateway: Optional[PushGateway] = None,
    mailer=None,
    balance: Optional[BalanceClient] = None,
) -> Services:
    """Wire services from configuration.

    Args:
        config: Application configuration
        store: Store to use (defaults to one on ``config.storage.db_path``)
        gateway: Push gateway override
        mailer: Security alert mailer override; defaults to the system
            mailbox when ``email.smtp`` is configured, else no email
        balance: Balance client override

    Returns:
        Services bundle; ``api_keys`` is None without an encryption key
    """
    store = store or Store(config.storage.db_path)

    if gateway is None:
        gateway = PushGateway(
            push_credentials(config.push),
            project_id=config.push.project_id,
            url=config.push.gateway_url,
            timeout=config.push.timeout_seconds,
        )

    if mailer is None and config.email.smtp is not None:
        mailer = SecurityAlertMailer(
            SmtpEmailSender(config.email.smtp, from_name=config.email.from_name),
            app_url=config.email.app_url,
        )

    alerter = ActivityAlerter(
        store.activity_logs,
        store.alerts,
        store.users,
        mailer=mailer,
        window_minutes=config.alerting.window_minutes,
        patterns=config.alerting.patterns,
    )
    recorder = ActivityRecorder(store.activity_logs, alerter)

    api_keys = None
    if config.encryption_key:
        api_keys = ApiKeyService(store.api_keys, KeyCodec(config.encryption_key), recorder=recorder)
    else:
        logger.warning("No encryption key configured, API key service disabled")

    return Services(
        config=config,
        store=store,
        dispatcher=NotificationDispatcher(store.device_tokens, gateway),
        recorder=recorder,
        balance=balance or BalanceClient(
            usage_url=config.balance.usage_url,
            timeout=config.balance.timeout_seconds,
        ),
        api_keys=api_keys,
    )
