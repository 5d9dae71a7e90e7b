"""
Data models for storage layer.

Defines the records held in the document store. Every record is owned
by the user referenced by ``user_id``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ActivityType(Enum):
    """Kinds of user activity recorded in the activity log."""
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    API_KEY_CREATED = "API_KEY_CREATED"
    API_KEY_UPDATED = "API_KEY_UPDATED"
    API_KEY_DELETED = "API_KEY_DELETED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    SESSION_EXTENDED = "SESSION_EXTENDED"
    SESSION_EXPIRED = "SESSION_EXPIRED"


class AlertSeverity(Enum):
    """Severity attached to a security alert."""
    HIGH = "high"
    MEDIUM = "medium"


class AlertStatus(Enum):
    """Lifecycle of a security alert."""
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class RateLimit:
    """Request allowance attached to an API key."""
    requests: int = 100
    duration_seconds: int = 60

    def __post_init__(self):
        if self.requests <= 0:
            raise ValueError("rate limit requests must be > 0")
        if self.duration_seconds <= 0:
            raise ValueError("rate limit duration must be > 0")


@dataclass(frozen=True)
class ApiKeyRecord:
    """Stored metadata and ciphertext for a user's third-party credential.

    ``secret`` always holds the codec blob, never plaintext.
    """
    id: str
    user_id: str
    name: str
    secret: str
    provider_name: str
    created_at: datetime
    updated_at: datetime
    balance: float = 0.0
    active: bool = True
    expires_at: Optional[datetime] = None
    allowed_origins: Tuple[str, ...] = ()
    rate_limit: RateLimit = field(default_factory=RateLimit)
    funding_link: Optional[str] = None
    last_used_at: Optional[datetime] = None


@dataclass(frozen=True)
class ActivityLogRecord:
    """Append-only record of something a user did."""
    user_id: str
    type: ActivityType
    timestamp: datetime
    id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AlertActivity:
    """Activity summary embedded in a security alert."""
    type: ActivityType
    timestamp: datetime
    ip_address: Optional[str] = None


@dataclass(frozen=True)
class SecurityAlertRecord:
    """Alert raised when a detection pattern crosses its threshold."""
    id: str
    user_id: str
    type: str
    severity: AlertSeverity
    timestamp: datetime
    activity_count: int
    status: AlertStatus = AlertStatus.NEW
    recent_activities: Tuple[AlertActivity, ...] = ()


_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


def _parse_bool(value: Any, name: str) -> bool:
    """Accept real booleans and the string forms form posts send."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"{name} must be a boolean")


@dataclass(frozen=True)
class SmtpSettings:
    """User supplied SMTP transport settings."""
    host: str
    port: int
    secure: bool
    username: str
    password: str
    from_email: str

    def __post_init__(self):
        if not self.host:
            raise ValueError("smtp host is required")
        if self.port <= 0 or self.port > 65535:
            raise ValueError("smtp port must be between 1 and 65535")
        if not self.from_email:
            raise ValueError("smtp from_email is required")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmtpSettings":
        """Build settings from the camelCase shape used by the settings page."""
        try:
            return cls(
                host=data["host"],
                port=int(data["port"]),
                secure=_parse_bool(data.get("secure", False), "smtp secure"),
                username=data.get("username", ""),
                password=data.get("password", ""),
                from_email=data.get("fromEmail") or data.get("from_email", ""),
            )
        except KeyError as e:
            raise ValueError(f"smtp settings missing {e.args[0]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "username": self.username,
            "password": self.password,
            "fromEmail": self.from_email,
        }


@dataclass(frozen=True)
class UserNotificationPreferences:
    """Per-user notification settings, created with these defaults on first access."""
    email_enabled: bool = False
    browser_enabled: bool = False
    days_before_expiration: int = 3
    balance_alerts: bool = False
    low_balance_threshold: float = 10.0
    notification_frequency: str = "daily"
    smtp_settings: Optional[SmtpSettings] = None
    notification_email: Optional[str] = None


@dataclass(frozen=True)
class DeviceToken:
    """Push registration for one of a user's devices."""
    user_id: str
    token: str
    id: Optional[str] = None


@dataclass(frozen=True)
class UserRecord:
    """Directory entry resolving a user id to an email address."""
    id: str
    email: Optional[str] = None


def summarize_activities(logs: List[ActivityLogRecord]) -> Tuple[AlertActivity, ...]:
    """Reduce activity logs to the fields embedded in an alert."""
    return tuple(
        AlertActivity(type=log.type, timestamp=log.timestamp, ip_address=log.ip_address)
        for log in logs
    )
