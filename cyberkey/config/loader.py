"""
Configuration management and loading.

Settings come from an optional YAML file and are overridden by
``CYBERKEY_*`` environment variables for secrets and paths.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from cyberkey.core.alerting import DEFAULT_PATTERNS, DEFAULT_WINDOW_MINUTES, DetectionPattern
from cyberkey.storage.db import DEFAULT_DB_PATH
from cyberkey.storage.models import ActivityType, AlertSeverity, SmtpSettings

ENV_CONFIG_PATH = "CYBERKEY_CONFIG"
ENV_DB_PATH = "CYBERKEY_DB_PATH"
ENV_ENCRYPTION_KEY = "CYBERKEY_ENCRYPTION_KEY"
ENV_PUSH_CREDENTIALS = "CYBERKEY_PUSH_CREDENTIALS"
ENV_PUSH_ACCESS_TOKEN = "CYBERKEY_PUSH_ACCESS_TOKEN"
ENV_PUSH_PROJECT_ID = "CYBERKEY_PUSH_PROJECT_ID"
ENV_SMTP_PASSWORD = "CYBERKEY_SMTP_PASSWORD"

DEFAULT_PUSH_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
DEFAULT_USAGE_URL = "https://api.anthropic.com/v1/usage"


@dataclass(frozen=True)
class StorageConfig:
    """Location of the document store."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class ScannerConfig:
    """Expiring-key scan window."""
    lookahead_days: int = 3

    def __post_init__(self):
        if self.lookahead_days <= 0:
            raise ValueError("lookahead_days must be > 0")


@dataclass(frozen=True)
class AlertingConfig:
    """Suspicious activity detection."""
    window_minutes: int = DEFAULT_WINDOW_MINUTES
    patterns: Tuple[DetectionPattern, ...] = DEFAULT_PATTERNS

    def __post_init__(self):
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be > 0")


@dataclass(frozen=True)
class RetentionConfig:
    """How long activity logs are kept."""
    activity_log_days: int = 90

    def __post_init__(self):
        if self.activity_log_days <= 0:
            raise ValueError("activity_log_days must be > 0")


@dataclass(frozen=True)
class PushConfig:
    """Push gateway endpoint and credentials.

    ``credentials_file`` is a service account key; ``access_token`` is a
    pre-issued OAuth token used when no key file is given.
    """
    gateway_url: str = DEFAULT_PUSH_URL
    project_id: Optional[str] = None
    credentials_file: Optional[str] = None
    access_token: Optional[str] = None
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if "{project_id}" not in self.gateway_url:
            raise ValueError("push gateway_url must contain a {project_id} placeholder")
        if self.timeout_seconds <= 0:
            raise ValueError("push timeout_seconds must be > 0")


@dataclass(frozen=True)
class EmailConfig:
    """System mailbox used for security alert emails."""
    smtp: Optional[SmtpSettings] = None
    from_name: str = "CyberKey Security"
    app_url: str = "http://localhost:3000"


@dataclass(frozen=True)
class BalanceConfig:
    """Upstream usage API used for balance checks."""
    usage_url: str = DEFAULT_USAGE_URL
    timeout_seconds: float = 15.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("balance timeout_seconds must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    push: PushConfig = field(default_factory=PushConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    encryption_key: Optional[str] = None


_SECTION_KEYS = {
    "storage": {"db_path"},
    "scanner": {"lookahead_days"},
    "alerting": {"window_minutes", "patterns"},
    "retention": {"activity_log_days"},
    "push": {"gateway_url", "project_id", "credentials_file", "access_token", "timeout_seconds"},
    "email": {"smtp", "from_name", "app_url"},
    "balance": {"usage_url", "timeout_seconds"},
    "encryption": {"key"},
}


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate configuration.

    The file path defaults to ``$CYBERKEY_CONFIG``; without a file the
    built-in defaults are used. Environment overrides are applied last.

    Args:
        path: Path to YAML configuration file
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(ENV_CONFIG_PATH)

    config = AppConfig()
    if path:
        config = _load_file(path)

    return _apply_environment(config, environ)


def _load_file(path: str) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    alerting = sections["alerting"]
    patterns = DEFAULT_PATTERNS
    if "patterns" in alerting:
        patterns = _parse_patterns(alerting["patterns"])

    email = sections["email"]
    smtp = None
    if email.get("smtp") is not None:
        if not isinstance(email["smtp"], dict):
            raise ValueError("'email.smtp' must be a dictionary")
        smtp = SmtpSettings.from_dict(email["smtp"])

    return AppConfig(
        storage=StorageConfig(**sections["storage"]),
        scanner=ScannerConfig(**sections["scanner"]),
        alerting=AlertingConfig(
            window_minutes=alerting.get("window_minutes", DEFAULT_WINDOW_MINUTES),
            patterns=patterns,
        ),
        retention=RetentionConfig(**sections["retention"]),
        push=PushConfig(**sections["push"]),
        email=EmailConfig(
            smtp=smtp,
            **{k: v for k, v in email.items() if k != "smtp"}
        ),
        balance=BalanceConfig(**sections["balance"]),
        encryption_key=sections["encryption"].get("key"),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    """Return a validated section dictionary (empty when absent)."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_patterns(data) -> Tuple[DetectionPattern, ...]:
    """Parse the ordered detection pattern list.

    Raises:
        ValueError: If a pattern is malformed
    """
    if not isinstance(data, list) or not data:
        raise ValueError("'alerting.patterns' must be a non-empty list")

    patterns = []
    allowed_keys = {"type", "activities", "threshold", "severity"}
    for index, item in enumerate(data):
        path = f"alerting.patterns[{index}]"
        if not isinstance(item, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown_keys = set(item.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = allowed_keys - set(item.keys())
        if missing:
            raise ValueError(f"Missing keys in {path}: {sorted(missing)}")

        try:
            activity_types = frozenset(ActivityType(name) for name in item["activities"])
        except (TypeError, ValueError):
            valid = [t.value for t in ActivityType]
            raise ValueError(f"'activities' in {path} must be a list of: {valid}")

        try:
            severity = AlertSeverity(str(item["severity"]).lower())
        except ValueError:
            valid = [s.value for s in AlertSeverity]
            raise ValueError(f"'severity' in {path} must be one of: {valid}")

        threshold = item["threshold"]
        if not isinstance(threshold, int) or isinstance(threshold, bool):
            raise ValueError(f"'threshold' in {path} must be an integer")

        patterns.append(DetectionPattern(
            type=str(item["type"]),
            activity_types=activity_types,
            threshold=threshold,
            severity=severity,
        ))
    return tuple(patterns)


def _apply_environment(config: AppConfig, environ: Mapping[str, str]) -> AppConfig:
    """Overlay secrets and paths from the environment."""
    if environ.get(ENV_DB_PATH):
        config = replace(config, storage=StorageConfig(db_path=environ[ENV_DB_PATH]))
    if environ.get(ENV_ENCRYPTION_KEY):
        config = replace(config, encryption_key=environ[ENV_ENCRYPTION_KEY])
    push_overrides = {
        name: environ[key]
        for name, key in (
            ("credentials_file", ENV_PUSH_CREDENTIALS),
            ("access_token", ENV_PUSH_ACCESS_TOKEN),
            ("project_id", ENV_PUSH_PROJECT_ID),
        )
        if environ.get(key)
    }
    if push_overrides:
        config = replace(config, push=replace(config.push, **push_overrides))
    if environ.get(ENV_SMTP_PASSWORD) and config.email.smtp is not None:
        smtp = replace(config.email.smtp, password=environ[ENV_SMTP_PASSWORD])
        config = replace(config, email=replace(config.email, smtp=smtp))
    return config
