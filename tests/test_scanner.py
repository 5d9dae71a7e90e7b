"""
Tests for the expiring key and low balance scans.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from cyberkey.core.errors import EmailDeliveryError, TransientStoreError
from cyberkey.core.scanner import (
    ExpiringKeyScanner,
    LowBalanceScanner,
    PushChannel,
    SmtpChannel,
    days_until_expiration,
)
from cyberkey.notifications.push import DispatchResult
from cyberkey.storage.models import (
    ApiKeyRecord,
    SmtpSettings,
    UserNotificationPreferences,
    UserRecord,
)
from cyberkey.storage.repository import Store, initialize_schema

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

SMTP = SmtpSettings(
    host="smtp.example.com",
    port=587,
    secure=False,
    username="mailer",
    password="pw",
    from_email="noreply@example.com",
)


def make_key(key_id, user_id="user-1", expires_in=None, **overrides):
    fields = dict(
        id=key_id,
        user_id=user_id,
        name=f"key-{key_id}",
        secret="sealed",
        provider_name="openai",
        created_at=NOW - timedelta(days=30),
        updated_at=NOW - timedelta(days=30),
        expires_at=NOW + expires_in if expires_in is not None else None,
    )
    fields.update(overrides)
    return ApiKeyRecord(**fields)


class RecordingChannel:
    """Channel that accepts every route and records deliveries."""

    name = "recording"

    def __init__(self, route="route"):
        self._route = route
        self.delivered = []

    def route(self, user_id, preferences):
        return self._route

    def deliver(self, route, preferences, notification, email):
        self.delivered.append((route, notification, email))
        return True


class ScannerTestCase:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(db_path)
        self.store = Store(db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir)

    def _enable(self, user_id="user-1", **overrides):
        fields = dict(email_enabled=True, smtp_settings=SMTP)
        fields.update(overrides)
        self.store.settings.save(user_id, UserNotificationPreferences(**fields))


class TestDaysUntilExpiration:
    """Test whole-day rounding."""

    def test_rounds_up(self):
        assert days_until_expiration(NOW + timedelta(days=1, hours=12), NOW) == 2
        assert days_until_expiration(NOW + timedelta(hours=1), NOW) == 1

    def test_exact_days(self):
        assert days_until_expiration(NOW + timedelta(days=3), NOW) == 3

    def test_naive_now_is_utc(self):
        naive_now = NOW.replace(tzinfo=None)
        assert days_until_expiration(NOW + timedelta(days=2), naive_now) == 2


class TestExpiringKeyScanner(ScannerTestCase):
    """Test the expiring key scan."""

    def _scanner(self, channel, lookahead_days=3):
        return ExpiringKeyScanner(self.store.api_keys, self.store.settings, channel, lookahead_days)

    def test_window_bounds(self):
        self._enable()
        self.store.api_keys.insert(make_key("now", expires_in=timedelta(0)))
        self.store.api_keys.insert(make_key("one-day", expires_in=timedelta(days=1)))
        self.store.api_keys.insert(make_key("three-days", expires_in=timedelta(days=3)))
        self.store.api_keys.insert(make_key("too-far", expires_in=timedelta(days=3, seconds=1)))
        self.store.api_keys.insert(make_key("never"))
        channel = RecordingChannel()

        result = self._scanner(channel).scan(now=NOW)

        assert result.keys_found == 2
        assert result.notified == 2
        assert [n.data["keyId"] for _, n, _ in channel.delivered] == ["one-day", "three-days"]

    def test_naive_now_is_treated_as_utc(self):
        self._enable()
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=2)))
        channel = RecordingChannel()

        result = self._scanner(channel).scan(now=NOW.replace(tzinfo=None))

        assert result.keys_found == 1
        assert result.notified == 1
        assert result.failed == 0
        assert channel.delivered[0][1].data["daysLeft"] == "2"

    def test_notification_content(self):
        self._enable()
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=2)))
        channel = RecordingChannel()

        self._scanner(channel).scan(now=NOW)

        [(route, notification, email)] = channel.delivered
        assert notification.title == "API Key Expiring Soon"
        assert notification.body == 'Your API key "key-k1" will expire in 2 days'
        assert notification.data == {
            "type": "key_expiring",
            "keyId": "k1",
            "daysLeft": "2",
            "keyName": "key-k1",
        }
        assert email["subject"] == 'API Key "key-k1" Expiring Soon'
        assert "key-k1" in email["text"]

    def test_missing_settings_use_defaults_without_persisting(self):
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))
        channel = RecordingChannel()

        result = self._scanner(channel).scan(now=NOW)

        assert result.keys_found == 1
        assert result.skipped == 1
        assert channel.delivered == []
        assert self.store.settings.get("user-1") is None

    def test_user_lead_time_respected(self):
        self._enable(days_before_expiration=1)
        self.store.api_keys.insert(make_key("soon", expires_in=timedelta(hours=20)))
        self.store.api_keys.insert(make_key("later", expires_in=timedelta(days=2)))
        channel = RecordingChannel()

        result = self._scanner(channel).scan(now=NOW)

        assert result.notified == 1
        assert result.skipped == 1
        assert channel.delivered[0][1].data["keyId"] == "soon"

    def test_no_route_skips(self):
        self._enable()
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))

        result = self._scanner(RecordingChannel(route=None)).scan(now=NOW)

        assert result.skipped == 1
        assert result.notified == 0

    def test_delivery_failure_does_not_stop_scan(self):
        self._enable("user-1")
        self._enable("user-2")
        self.store.api_keys.insert(make_key("k1", user_id="user-1", expires_in=timedelta(days=1)))
        self.store.api_keys.insert(make_key("k2", user_id="user-2", expires_in=timedelta(days=2)))
        channel = MagicMock()
        channel.name = "mock"
        channel.route.return_value = "someone@example.com"
        channel.deliver.side_effect = [EmailDeliveryError("refused"), True]

        result = self._scanner(channel).scan(now=NOW)

        assert result.failed == 1
        assert result.notified == 1
        assert result.error is None

    def test_query_failure_reported(self):
        api_keys = MagicMock()
        api_keys.find_expiring.side_effect = TransientStoreError("unavailable")
        scanner = ExpiringKeyScanner(api_keys, self.store.settings, RecordingChannel())

        result = scanner.scan(now=NOW)

        assert result.error == "unavailable"
        assert result.keys_found == 0

    def test_scan_does_not_modify_keys(self):
        self._enable()
        key = make_key("k1", expires_in=timedelta(days=1))
        self.store.api_keys.insert(key)

        self._scanner(RecordingChannel()).scan(now=NOW)

        assert self.store.api_keys.get("k1") == key

    def test_lookahead_must_be_positive(self):
        with pytest.raises(ValueError):
            self._scanner(RecordingChannel(), lookahead_days=0)


class TestChannels(ScannerTestCase):
    """Test the push and SMTP delivery channels."""

    def test_push_channel_delivers(self):
        self._enable(smtp_settings=None)
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))
        dispatcher = MagicMock()
        dispatcher.dispatch.return_value = DispatchResult(success=True, success_count=1)

        result = ExpiringKeyScanner(
            self.store.api_keys, self.store.settings, PushChannel(dispatcher)
        ).scan(now=NOW)

        assert result.notified == 1
        user_id, notification = dispatcher.dispatch.call_args[0]
        assert user_id == "user-1"
        assert notification.data["type"] == "key_expiring"

    def test_push_channel_without_devices_skips(self):
        self._enable()
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))
        dispatcher = MagicMock()
        dispatcher.dispatch.return_value = DispatchResult(success=True, no_devices=True)

        result = ExpiringKeyScanner(
            self.store.api_keys, self.store.settings, PushChannel(dispatcher)
        ).scan(now=NOW)

        assert result.skipped == 1
        assert result.notified == 0

    def test_push_channel_failure_counts_as_failed(self):
        self._enable()
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))
        dispatcher = MagicMock()
        dispatcher.dispatch.return_value = DispatchResult(success=False, error="gateway down")

        result = ExpiringKeyScanner(
            self.store.api_keys, self.store.settings, PushChannel(dispatcher)
        ).scan(now=NOW)

        assert result.failed == 1

    def test_smtp_channel_uses_user_settings(self):
        self._enable()
        self.store.users.upsert(UserRecord(id="user-1", email="owner@example.com"))
        self.store.api_keys.insert(make_key("k1", expires_in=timedelta(days=1)))
        sender = MagicMock()
        factory = MagicMock(return_value=sender)

        result = ExpiringKeyScanner(
            self.store.api_keys, self.store.settings, SmtpChannel(self.store.users, factory)
        ).scan(now=NOW)

        assert result.notified == 1
        factory.assert_called_once_with(SMTP)
        to, subject, html, text = sender.send.call_args[0]
        assert to == "owner@example.com"
        assert subject == 'API Key "key-k1" Expiring Soon'

    def test_smtp_channel_prefers_notification_email(self):
        channel = SmtpChannel(self.store.users, MagicMock())
        self.store.users.upsert(UserRecord(id="user-1", email="owner@example.com"))
        preferences = UserNotificationPreferences(smtp_settings=SMTP, notification_email="ops@example.com")
        assert channel.route("user-1", preferences) == "ops@example.com"

    def test_smtp_channel_without_settings_has_no_route(self):
        channel = SmtpChannel(self.store.users, MagicMock())
        self.store.users.upsert(UserRecord(id="user-1", email="owner@example.com"))
        assert channel.route("user-1", UserNotificationPreferences()) is None


class TestLowBalanceScanner(ScannerTestCase):
    """Test the low balance scan."""

    def test_notifies_below_threshold_only(self):
        self._enable(balance_alerts=True, low_balance_threshold=10.0)
        self.store.api_keys.insert(make_key("low", balance=4.5))
        self.store.api_keys.insert(make_key("ok", balance=10.0))
        self.store.api_keys.insert(make_key("inactive", balance=1.0, active=False))
        channel = RecordingChannel()

        result = LowBalanceScanner(self.store.api_keys, self.store.settings, channel).scan()

        assert result.keys_found == 2
        assert result.notified == 1
        assert result.skipped == 1
        [(_, notification, email)] = channel.delivered
        assert notification.data == {
            "type": "low_balance",
            "keyId": "low",
            "balance": "4.50",
            "keyName": "key-low",
        }
        assert "key-low" in email["subject"]

    def test_balance_alerts_off_by_default(self):
        self.store.api_keys.insert(make_key("low", balance=0.0))
        channel = RecordingChannel()

        result = LowBalanceScanner(self.store.api_keys, self.store.settings, channel).scan()

        assert result.skipped == 1
        assert channel.delivered == []

    def test_query_failure_reported(self):
        api_keys = MagicMock()
        api_keys.list_active.side_effect = TransientStoreError("unavailable")

        result = LowBalanceScanner(api_keys, self.store.settings, RecordingChannel()).scan()

        assert result.error == "unavailable"
