"""
Repository pattern for data access.

Each collection of the document store gets a small repository class.
Every operation opens its own connection so handlers share no state
between invocations.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from cyberkey.core.errors import NotFoundError, PermissionDeniedError, TransientStoreError
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ActivityLogRecord,
    ActivityType,
    AlertActivity,
    AlertSeverity,
    AlertStatus,
    ApiKeyRecord,
    DeviceToken,
    RateLimit,
    SecurityAlertRecord,
    SmtpSettings,
    UserNotificationPreferences,
    UserRecord,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime so that string order matches time order."""
    return as_utc(value).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class _Repository:
    """Shared connection handling for the collection repositories."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise TransientStoreError(f"Unable to open store {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise TransientStoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _check_owner(self, conn: sqlite3.Connection, table: str, record_id: str,
                     user_id: Optional[str], label: str) -> None:
        """Raise NotFoundError or PermissionDeniedError for a guarded write."""
        row = conn.execute(f"SELECT user_id FROM {table} WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"{label} not found.")
        if user_id is not None and row["user_id"] != user_id:
            raise PermissionDeniedError(f"Permission denied. You can only modify your own {label}s.")


class UserRepository(_Repository):
    """Directory of users and their account email addresses."""

    def upsert(self, user: UserRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (id, email) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET email = excluded.email",
                (user.id, user.email),
            )

    def get(self, user_id: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT id, email FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return UserRecord(id=row["id"], email=row["email"])

    def get_email(self, user_id: str) -> Optional[str]:
        """Resolve a user's email, or None if the user or address is unknown."""
        user = self.get(user_id)
        return user.email if user else None


class UserSettingsRepository(_Repository):
    """Notification preferences, one row per user."""

    def get(self, user_id: str) -> Optional[UserNotificationPreferences]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        smtp_raw = row["smtp_settings"]
        return UserNotificationPreferences(
            email_enabled=bool(row["email_enabled"]),
            browser_enabled=bool(row["browser_enabled"]),
            days_before_expiration=row["days_before_expiration"],
            balance_alerts=bool(row["balance_alerts"]),
            low_balance_threshold=row["low_balance_threshold"],
            notification_frequency=row["notification_frequency"],
            smtp_settings=SmtpSettings.from_dict(json.loads(smtp_raw)) if smtp_raw else None,
            notification_email=row["notification_email"],
        )

    def get_or_create(self, user_id: str) -> UserNotificationPreferences:
        """Load preferences, creating the default row on first access."""
        preferences = self.get(user_id)
        if preferences is None:
            preferences = UserNotificationPreferences()
            self.save(user_id, preferences)
            logger.info("Created default notification settings for user %s", user_id)
        return preferences

    def save(self, user_id: str, preferences: UserNotificationPreferences) -> None:
        smtp = preferences.smtp_settings
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_settings
                (user_id, email_enabled, browser_enabled, days_before_expiration,
                 balance_alerts, low_balance_threshold, notification_frequency,
                 smtp_settings, notification_email)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email_enabled = excluded.email_enabled,
                    browser_enabled = excluded.browser_enabled,
                    days_before_expiration = excluded.days_before_expiration,
                    balance_alerts = excluded.balance_alerts,
                    low_balance_threshold = excluded.low_balance_threshold,
                    notification_frequency = excluded.notification_frequency,
                    smtp_settings = excluded.smtp_settings,
                    notification_email = excluded.notification_email
                """,
                (
                    user_id,
                    int(preferences.email_enabled),
                    int(preferences.browser_enabled),
                    preferences.days_before_expiration,
                    int(preferences.balance_alerts),
                    preferences.low_balance_threshold,
                    preferences.notification_frequency,
                    json.dumps(smtp.to_dict()) if smtp else None,
                    preferences.notification_email,
                ),
            )


class ApiKeyRepository(_Repository):
    """Stored API keys. Secrets arrive here already encrypted."""

    _COLUMNS = """
        id, user_id, name, secret, provider_name, balance, active, created_at,
        updated_at, expires_at, allowed_origins, rate_limit_requests,
        rate_limit_duration, funding_link, last_used_at
    """

    def insert(self, record: ApiKeyRecord) -> ApiKeyRecord:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO api_keys ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.name,
                    record.secret,
                    record.provider_name,
                    record.balance,
                    int(record.active),
                    to_db_timestamp(record.created_at),
                    to_db_timestamp(record.updated_at),
                    to_db_timestamp(record.expires_at) if record.expires_at else None,
                    json.dumps(list(record.allowed_origins)),
                    record.rate_limit.requests,
                    record.rate_limit.duration_seconds,
                    record.funding_link,
                    to_db_timestamp(record.last_used_at) if record.last_used_at else None,
                ),
            )
        return record

    def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {self._COLUMNS} FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_for_user(self, user_id: str, limit: int = 100) -> List[ApiKeyRecord]:
        """Return a user's keys, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM api_keys WHERE user_id = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def find_expiring(self, after: datetime, until: datetime) -> List[ApiKeyRecord]:
        """Keys with ``after < expires_at <= until``. Keys without expiry never match."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM api_keys "
                "WHERE expires_at IS NOT NULL AND expires_at > ? AND expires_at <= ? "
                "ORDER BY expires_at ASC",
                (to_db_timestamp(after), to_db_timestamp(until)),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def find_expired(self, now: datetime) -> List[ApiKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM api_keys "
                "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (to_db_timestamp(now),),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_active(self) -> List[ApiKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM api_keys WHERE active = 1 ORDER BY user_id"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def update(self, key_id: str, changes: Dict[str, Any], user_id: Optional[str] = None) -> ApiKeyRecord:
        """Apply field changes to a key and bump ``updated_at``.

        Args:
            key_id: Key to update
            changes: Mapping of record field name to new value
            user_id: When given, the key must belong to this user

        Raises:
            NotFoundError: If the key does not exist
            PermissionDeniedError: If the key belongs to another user
        """
        changes = dict(changes)
        columns = {"updated_at": to_db_timestamp(changes.pop("updated_at", utcnow()))}
        for name, value in changes.items():
            if name == "rate_limit":
                columns["rate_limit_requests"] = value.requests
                columns["rate_limit_duration"] = value.duration_seconds
            elif name == "allowed_origins":
                columns["allowed_origins"] = json.dumps(list(value))
            elif name in ("expires_at", "last_used_at"):
                columns[name] = to_db_timestamp(value) if value else None
            elif name == "active":
                columns["active"] = int(value)
            elif name in ("name", "secret", "provider_name", "balance", "funding_link"):
                columns[name] = value
            else:
                raise ValueError(f"Unknown api key field: {name}")

        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._connect() as conn:
            self._check_owner(conn, "api_keys", key_id, user_id, "API key")
            conn.execute(
                f"UPDATE api_keys SET {assignments} WHERE id = ?",
                (*columns.values(), key_id),
            )
            row = conn.execute(f"SELECT {self._COLUMNS} FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        return self._row_to_record(row)

    def delete(self, key_id: str, user_id: Optional[str] = None) -> None:
        with self._connect() as conn:
            self._check_owner(conn, "api_keys", key_id, user_id, "API key")
            conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))

    def delete_many(self, key_ids: List[str]) -> int:
        """Delete keys by id; ids already gone are ignored."""
        if not key_ids:
            return 0
        placeholders = ", ".join("?" for _ in key_ids)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM api_keys WHERE id IN ({placeholders})", key_ids)
            return cursor.rowcount

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ApiKeyRecord:
        return ApiKeyRecord(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            secret=row["secret"],
            provider_name=row["provider_name"],
            balance=row["balance"],
            active=bool(row["active"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
            expires_at=from_db_timestamp(row["expires_at"]),
            allowed_origins=tuple(json.loads(row["allowed_origins"] or "[]")),
            rate_limit=RateLimit(
                requests=row["rate_limit_requests"],
                duration_seconds=row["rate_limit_duration"],
            ),
            funding_link=row["funding_link"],
            last_used_at=from_db_timestamp(row["last_used_at"]),
        )


class ActivityLogRepository(_Repository):
    """Append-only activity ledger.

    The only mutation allowed after insertion is the IP address enrichment.
    """

    def append(self, log: ActivityLogRecord) -> ActivityLogRecord:
        """Insert a log and return it with its assigned id."""
        log_id = log.id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_logs
                (id, user_id, type, timestamp, details, ip_address, user_agent)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    log.user_id,
                    log.type.value,
                    to_db_timestamp(log.timestamp),
                    json.dumps(log.details) if log.details is not None else None,
                    log.ip_address,
                    log.user_agent,
                ),
            )
        return ActivityLogRecord(
            id=log_id,
            user_id=log.user_id,
            type=log.type,
            timestamp=log.timestamp,
            details=log.details,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
        )

    def get(self, log_id: str) -> Optional[ActivityLogRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM activity_logs WHERE id = ?", (log_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_since(self, user_id: str, since: datetime) -> List[ActivityLogRecord]:
        """Activities for a user with ``timestamp > since``, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_logs WHERE user_id = ? AND timestamp > ? ORDER BY timestamp ASC",
                (user_id, to_db_timestamp(since)),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_for_user(self, user_id: str, limit: int = 50) -> List[ActivityLogRecord]:
        """Most recent activities for a user, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_logs WHERE user_id = ? ORDER BY timestamp DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def set_ip_address(self, log_id: str, ip_address: str) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE activity_logs SET ip_address = ? WHERE id = ?", (ip_address, log_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Activity log not found.")

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete logs with ``timestamp < cutoff`` in one transaction and return the count."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM activity_logs WHERE timestamp < ?", (to_db_timestamp(cutoff),)
            )
            return cursor.rowcount

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ActivityLogRecord:
        return ActivityLogRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=ActivityType(row["type"]),
            timestamp=from_db_timestamp(row["timestamp"]),
            details=json.loads(row["details"]) if row["details"] else None,
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
        )


class SecurityAlertRepository(_Repository):
    """Security alerts. Never deleted by the application."""

    def create(
        self,
        user_id: str,
        alert_type: str,
        severity: AlertSeverity,
        activities: List[AlertActivity],
        timestamp: Optional[datetime] = None,
    ) -> SecurityAlertRecord:
        alert = SecurityAlertRecord(
            id=_new_id(),
            user_id=user_id,
            type=alert_type,
            severity=severity,
            timestamp=timestamp or utcnow(),
            activity_count=len(activities),
            status=AlertStatus.NEW,
            recent_activities=tuple(activities),
        )
        details = {
            "recentActivities": [
                {
                    "type": activity.type.value,
                    "timestamp": to_db_timestamp(activity.timestamp),
                    "ipAddress": activity.ip_address,
                }
                for activity in alert.recent_activities
            ]
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_alerts
                (id, user_id, type, severity, timestamp, activity_count, status, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.user_id,
                    alert.type,
                    alert.severity.value,
                    to_db_timestamp(alert.timestamp),
                    alert.activity_count,
                    alert.status.value,
                    json.dumps(details),
                ),
            )
        return alert

    def list_for_user(
        self, user_id: str, status: Optional[AlertStatus] = None, limit: int = 50
    ) -> List[SecurityAlertRecord]:
        query = "SELECT * FROM security_alerts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def update_status(self, alert_id: str, status: AlertStatus, user_id: Optional[str] = None) -> None:
        with self._connect() as conn:
            self._check_owner(conn, "security_alerts", alert_id, user_id, "security alert")
            conn.execute("UPDATE security_alerts SET status = ? WHERE id = ?", (status.value, alert_id))

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SecurityAlertRecord:
        details = json.loads(row["details"] or "{}")
        activities = tuple(
            AlertActivity(
                type=ActivityType(item["type"]),
                timestamp=from_db_timestamp(item["timestamp"]),
                ip_address=item.get("ipAddress"),
            )
            for item in details.get("recentActivities", [])
        )
        return SecurityAlertRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            severity=AlertSeverity(row["severity"]),
            timestamp=from_db_timestamp(row["timestamp"]),
            activity_count=row["activity_count"],
            status=AlertStatus(row["status"]),
            recent_activities=activities,
        )


class DeviceTokenRepository(_Repository):
    """Push registrations. Deletions are idempotent."""

    def register(self, user_id: str, token: str) -> DeviceToken:
        """Register a token for a user; re-registering moves it to that user."""
        token_id = _new_id()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO device_tokens (id, user_id, token) VALUES (?, ?, ?) "
                "ON CONFLICT(token) DO UPDATE SET user_id = excluded.user_id",
                (token_id, user_id, token),
            )
            row = conn.execute("SELECT id FROM device_tokens WHERE token = ?", (token,)).fetchone()
        return DeviceToken(id=row["id"], user_id=user_id, token=token)

    def list_for_user(self, user_id: str) -> List[DeviceToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, user_id, token FROM device_tokens WHERE user_id = ? ORDER BY rowid",
                (user_id,),
            ).fetchall()
        return [DeviceToken(id=row["id"], user_id=row["user_id"], token=row["token"]) for row in rows]

    def delete_by_token(self, token: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM device_tokens WHERE token = ?", (token,))
            return cursor.rowcount


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the document store collections if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT
            );

            CREATE TABLE IF NOT EXISTS user_settings (
                user_id TEXT PRIMARY KEY,
                email_enabled INTEGER NOT NULL DEFAULT 0,
                browser_enabled INTEGER NOT NULL DEFAULT 0,
                days_before_expiration INTEGER NOT NULL DEFAULT 3,
                balance_alerts INTEGER NOT NULL DEFAULT 0,
                low_balance_threshold REAL NOT NULL DEFAULT 10,
                notification_frequency TEXT NOT NULL DEFAULT 'daily',
                smtp_settings TEXT,
                notification_email TEXT
            );

            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                secret TEXT NOT NULL,
                provider_name TEXT NOT NULL,
                balance REAL NOT NULL DEFAULT 0,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                expires_at TEXT,
                allowed_origins TEXT NOT NULL DEFAULT '[]',
                rate_limit_requests INTEGER NOT NULL DEFAULT 100,
                rate_limit_duration INTEGER NOT NULL DEFAULT 60,
                funding_link TEXT,
                last_used_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys (user_id);
            CREATE INDEX IF NOT EXISTS idx_api_keys_expires ON api_keys (expires_at);

            CREATE TABLE IF NOT EXISTS activity_logs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                details TEXT,
                ip_address TEXT,
                user_agent TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_activity_logs_user_time ON activity_logs (user_id, timestamp);

            CREATE TABLE IF NOT EXISTS security_alerts (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                activity_count INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'new',
                details TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_security_alerts_user ON security_alerts (user_id, timestamp);

            CREATE TABLE IF NOT EXISTS device_tokens (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                token TEXT NOT NULL UNIQUE
            );
            CREATE INDEX IF NOT EXISTS idx_device_tokens_user ON device_tokens (user_id);
        """)
        conn.commit()
    finally:
        conn.close()


class Store:
    """Bundle of repositories sharing one database path."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self.users = UserRepository(db_path)
        self.settings = UserSettingsRepository(db_path)
        self.api_keys = ApiKeyRepository(db_path)
        self.activity_logs = ActivityLogRepository(db_path)
        self.alerts = SecurityAlertRepository(db_path)
        self.device_tokens = DeviceTokenRepository(db_path)
