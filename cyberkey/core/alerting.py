"""
Activity-based security alerting.

Runs once for each newly created activity log. The user's activities in a
trailing window are matched against a fixed, ordered list of detection
patterns; every pattern that reaches its threshold produces its own alert.

Alerts are not deduplicated across invocations: a burst that stays above a
threshold raises a fresh alert on every further qualifying activity.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import FrozenSet, List, Optional, Sequence, Tuple

from cyberkey.storage.models import (
    ActivityLogRecord,
    ActivityType,
    AlertSeverity,
    SecurityAlertRecord,
    summarize_activities,
)
from cyberkey.storage.repository import (
    ActivityLogRepository,
    SecurityAlertRepository,
    UserRepository,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MINUTES = 5


@dataclass(frozen=True)
class DetectionPattern:
    """A rate rule over one or more activity types."""
    type: str
    activity_types: FrozenSet[ActivityType]
    threshold: int
    severity: AlertSeverity

    def __post_init__(self):
        """Validate the pattern can ever fire."""
        if not self.type:
            raise ValueError("pattern type cannot be empty")
        if not self.activity_types:
            raise ValueError(f"pattern {self.type} must name at least one activity type")
        if self.threshold <= 0:
            raise ValueError(f"pattern {self.type} threshold must be > 0")


DEFAULT_PATTERNS: Tuple[DetectionPattern, ...] = (
    DetectionPattern(
        type="RAPID_API_KEY_CREATION",
        activity_types=frozenset({ActivityType.API_KEY_CREATED}),
        threshold=5,
        severity=AlertSeverity.HIGH,
    ),
    DetectionPattern(
        type="MULTIPLE_LOGIN_ATTEMPTS",
        activity_types=frozenset({ActivityType.LOGIN}),
        threshold=10,
        severity=AlertSeverity.HIGH,
    ),
    DetectionPattern(
        type="RAPID_SETTING_CHANGES",
        activity_types=frozenset({ActivityType.SETTINGS_UPDATED}),
        threshold=8,
        severity=AlertSeverity.MEDIUM,
    ),
)


@dataclass(frozen=True)
class PatternMatch:
    """A pattern whose threshold was reached, with the activities that matched."""
    pattern: DetectionPattern
    activities: Tuple[ActivityLogRecord, ...]

    @property
    def count(self) -> int:
        return len(self.activities)


@dataclass
class AlertingResult:
    """Outcome of one alerting invocation."""
    alerts_created: List[SecurityAlertRecord] = field(default_factory=list)
    emails_sent: int = 0
    errors: List[str] = field(default_factory=list)


def match_patterns(
    activities: Sequence[ActivityLogRecord],
    patterns: Sequence[DetectionPattern] = DEFAULT_PATTERNS,
) -> List[PatternMatch]:
    """Return the patterns reached by a set of activities, in pattern order.

    Args:
        activities: Activities inside the detection window
        patterns: Ordered detection patterns

    Returns:
        One PatternMatch per pattern with ``count >= threshold``
    """
    matches = []
    for pattern in patterns:
        matching = tuple(a for a in activities if a.type in pattern.activity_types)
        if len(matching) >= pattern.threshold:
            matches.append(PatternMatch(pattern=pattern, activities=matching))
    return matches


class ActivityAlerter:
    """Raises security alerts from bursts of user activity."""

    def __init__(
        self,
        activity_logs: ActivityLogRepository,
        alerts: SecurityAlertRepository,
        users: UserRepository,
        mailer=None,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        patterns: Sequence[DetectionPattern] = DEFAULT_PATTERNS,
    ):
        """Initialize the alerter.

        Args:
            activity_logs: Activity log collection
            alerts: Security alert collection
            users: Directory used to resolve the user's email
            mailer: Object with ``send_security_alert(to, alert)``; None disables email
            window_minutes: Length of the trailing detection window
            patterns: Ordered detection patterns
        """
        if window_minutes <= 0:
            raise ValueError("window_minutes must be > 0")
        self.activity_logs = activity_logs
        self.alerts = alerts
        self.users = users
        self.mailer = mailer
        self.window = timedelta(minutes=window_minutes)
        self.patterns = tuple(patterns)

    def handle_activity_created(
        self, log: ActivityLogRecord, now: Optional[datetime] = None
    ) -> AlertingResult:
        """Evaluate the user's recent activity after ``log`` was appended.

        Never raises. Alert creation for one pattern failing leaves the
        others untouched; email failures never block alert creation.
        """
        now = as_utc(now) if now else utcnow()
        result = AlertingResult()

        try:
            recent = self.activity_logs.list_since(log.user_id, now - self.window)
        except Exception as e:
            logger.exception("Failed to load recent activity for user %s", log.user_id)
            result.errors.append(f"activity query failed: {e}")
            return result

        for match in match_patterns(recent, self.patterns):
            pattern = match.pattern
            try:
                alert = self.alerts.create(
                    user_id=log.user_id,
                    alert_type=pattern.type,
                    severity=pattern.severity,
                    activities=list(summarize_activities(list(match.activities))),
                    timestamp=now,
                )
            except Exception as e:
                logger.exception("Failed to create %s alert for user %s", pattern.type, log.user_id)
                result.errors.append(f"{pattern.type}: alert creation failed: {e}")
                continue

            result.alerts_created.append(alert)
            logger.warning(
                "Created security alert %s (%s, %d activities) for user %s",
                alert.id, pattern.type, match.count, log.user_id,
            )

            if self._send_alert_email(alert, result):
                result.emails_sent += 1

        return result

    def _send_alert_email(self, alert: SecurityAlertRecord, result: AlertingResult) -> bool:
        if self.mailer is None:
            logger.info("No security mailer configured, skipping email for alert %s", alert.id)
            return False

        try:
            email = self.users.get_email(alert.user_id)
        except Exception as e:
            logger.exception("Failed to resolve email for user %s", alert.user_id)
            result.errors.append(f"{alert.type}: email lookup failed: {e}")
            return False

        if not email:
            logger.info("User %s has no email address, alert %s not mailed", alert.user_id, alert.id)
            return False

        try:
            self.mailer.send_security_alert(email, alert)
        except Exception as e:
            logger.error("Failed to send alert %s to %s: %s", alert.id, email, e)
            result.errors.append(f"{alert.type}: email send failed: {e}")
            return False
        return True
