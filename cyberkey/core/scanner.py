"""
Scheduled key scans.

The expiring-key scan looks ahead a fixed number of days and notifies key
owners whose preferences allow it. The low balance scan does the same for
active keys that dropped under the owner's threshold. Both are read-only
against the keys, never raise to the trigger, and always report counts.
"""

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from cyberkey.notifications.email import SmtpEmailSender, render_key_expiration, render_low_balance
from cyberkey.notifications.push import Notification, NotificationDispatcher
from cyberkey.storage.models import ApiKeyRecord, SmtpSettings, UserNotificationPreferences
from cyberkey.storage.repository import (
    ApiKeyRepository,
    UserRepository,
    UserSettingsRepository,
    as_utc,
    utcnow,
)
from .errors import PushGatewayError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class ScanResult:
    """Counts reported by one scan invocation."""
    keys_found: int = 0
    notified: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def days_until_expiration(expires_at: datetime, now: datetime) -> int:
    """Whole days left before expiry, rounded up."""
    return math.ceil((as_utc(expires_at) - as_utc(now)).total_seconds() / SECONDS_PER_DAY)


class PushChannel:
    """Delivers scan notifications to the user's devices."""

    name = "push"

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    def route(self, user_id: str, preferences: UserNotificationPreferences) -> Optional[str]:
        return user_id

    def deliver(self, route: str, preferences: UserNotificationPreferences,
                notification: Notification, email: Dict[str, str]) -> bool:
        """Return False when the user has no devices.

        Raises:
            PushGatewayError: If dispatch failed
        """
        result = self.dispatcher.dispatch(route, notification)
        if not result.success:
            raise PushGatewayError(result.error or "dispatch failed")
        return not result.no_devices


class SmtpChannel:
    """Delivers scan notifications through the user's own SMTP settings."""

    name = "smtp"

    def __init__(self, users: UserRepository,
                 sender_factory: Callable[[SmtpSettings], SmtpEmailSender] = SmtpEmailSender):
        self.users = users
        self.sender_factory = sender_factory

    def route(self, user_id: str, preferences: UserNotificationPreferences) -> Optional[str]:
        """Recipient address, or None if the user has no SMTP route."""
        if preferences.smtp_settings is None:
            return None
        return preferences.notification_email or self.users.get_email(user_id)

    def deliver(self, route: str, preferences: UserNotificationPreferences,
                notification: Notification, email: Dict[str, str]) -> bool:
        sender = self.sender_factory(preferences.smtp_settings)
        sender.send(route, email["subject"], email["html"], email["text"])
        return True


class _KeyScanner:
    def __init__(self, api_keys: ApiKeyRepository, settings: UserSettingsRepository, channel):
        self.api_keys = api_keys
        self.settings = settings
        self.channel = channel

    def _preferences(self, user_id: str) -> UserNotificationPreferences:
        # Missing rows behave like the defaults; the scan never creates them.
        return self.settings.get(user_id) or UserNotificationPreferences()

    def _deliver(self, key: ApiKeyRecord, route: str, preferences: UserNotificationPreferences,
                 notification: Notification, email: Dict[str, str], result: ScanResult) -> None:
        if self.channel.deliver(route, preferences, notification, email):
            result.notified += 1
            logger.info("Sent %s notification for key %s to user %s",
                        notification.data.get("type"), key.id, key.user_id)
        else:
            result.skipped += 1


class ExpiringKeyScanner(_KeyScanner):
    """Notifies owners of keys that expire inside the lookahead window."""

    def __init__(self, api_keys: ApiKeyRepository, settings: UserSettingsRepository,
                 channel, lookahead_days: int = 3):
        super().__init__(api_keys, settings, channel)
        if lookahead_days <= 0:
            raise ValueError("lookahead_days must be > 0")
        self.lookahead = timedelta(days=lookahead_days)

    def scan(self, now: Optional[datetime] = None) -> ScanResult:
        """Scan keys with ``now < expires_at <= now + lookahead``. Never raises."""
        now = as_utc(now) if now else utcnow()
        result = ScanResult()

        try:
            keys = self.api_keys.find_expiring(now, now + self.lookahead)
        except Exception as e:
            logger.exception("Error checking expiring keys")
            result.error = str(e)
            return result

        result.keys_found = len(keys)
        logger.info("Found %d keys expiring soon", len(keys))

        for key in keys:
            try:
                self._process(key, now, result)
            except Exception:
                logger.exception("Failed to notify user %s about key %s", key.user_id, key.id)
                result.failed += 1

        return result

    def _process(self, key: ApiKeyRecord, now: datetime, result: ScanResult) -> None:
        preferences = self._preferences(key.user_id)
        if not preferences.email_enabled:
            logger.info("Notifications disabled for user %s", key.user_id)
            result.skipped += 1
            return

        route = self.channel.route(key.user_id, preferences)
        if not route:
            logger.info("No %s delivery route for user %s", self.channel.name, key.user_id)
            result.skipped += 1
            return

        days = days_until_expiration(key.expires_at, now)
        if days > preferences.days_before_expiration:
            result.skipped += 1
            return

        notification = Notification(
            title="API Key Expiring Soon",
            body=f'Your API key "{key.name}" will expire in {days} days',
            data={
                "type": "key_expiring",
                "keyId": key.id,
                "daysLeft": str(days),
                "keyName": key.name,
            },
        )
        self._deliver(key, route, preferences, notification, render_key_expiration(key, days), result)


class LowBalanceScanner(_KeyScanner):
    """Notifies owners whose active keys fell under their balance threshold."""

    def scan(self) -> ScanResult:
        """Never raises."""
        result = ScanResult()

        try:
            keys = self.api_keys.list_active()
        except Exception as e:
            logger.exception("Error checking key balances")
            result.error = str(e)
            return result

        result.keys_found = len(keys)
        preferences_by_user: Dict[str, UserNotificationPreferences] = {}

        for key in keys:
            try:
                if key.user_id not in preferences_by_user:
                    preferences_by_user[key.user_id] = self._preferences(key.user_id)
                self._process(key, preferences_by_user[key.user_id], result)
            except Exception:
                logger.exception("Failed to check balance of key %s for user %s", key.id, key.user_id)
                result.failed += 1

        return result

    def _process(self, key: ApiKeyRecord, preferences: UserNotificationPreferences,
                 result: ScanResult) -> None:
        if not preferences.balance_alerts or key.balance >= preferences.low_balance_threshold:
            result.skipped += 1
            return

        route = self.channel.route(key.user_id, preferences)
        if not route:
            result.skipped += 1
            return

        notification = Notification(
            title="API Key Balance Low",
            body=f'Your API key "{key.name}" has a balance of {key.balance:.2f}',
            data={
                "type": "low_balance",
                "keyId": key.id,
                "balance": f"{key.balance:.2f}",
                "keyName": key.name,
            },
        )
        email = render_low_balance(key, preferences.low_balance_threshold)
        self._deliver(key, route, preferences, notification, email, result)
