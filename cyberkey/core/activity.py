"""
Activity recording and its on-create triggers.

Appending an activity log runs, in order, the IP address enrichment and
the suspicious activity alerting. Neither trigger can fail the append.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

from cyberkey.storage.models import ActivityLogRecord, ActivityType
from cyberkey.storage.repository import ActivityLogRepository, utcnow
from .alerting import ActivityAlerter, AlertingResult

logger = logging.getLogger(__name__)


def client_ip_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Pick the client address from reverse proxy headers.

    ``X-Forwarded-For`` wins over ``X-Real-IP``; of a comma separated list
    only the first value is kept.
    """
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items()}
    raw = lowered.get("x-forwarded-for") or lowered.get("x-real-ip")
    if not raw:
        return None
    first = raw.split(",")[0].strip()
    return first or None


def enrich_ip_address(
    activity_logs: ActivityLogRepository,
    log: ActivityLogRecord,
    headers: Optional[Mapping[str, str]],
) -> Optional[str]:
    """Best-effort update of a new log's IP address. Never raises.

    Returns:
        The stored address, or None when nothing was stored
    """
    ip_address = client_ip_from_headers(headers)
    if not ip_address or log.id is None:
        return None
    try:
        activity_logs.set_ip_address(log.id, ip_address)
    except Exception as e:
        logger.error("Failed to update activity log %s with IP address: %s", log.id, e)
        return None
    return ip_address


@dataclass
class RecordedActivity:
    """A stored activity and what its triggers did."""
    log: ActivityLogRecord
    alerting: AlertingResult


class ActivityRecorder:
    """Appends activity logs and runs the on-create triggers in process."""

    def __init__(self, activity_logs: ActivityLogRepository, alerter: ActivityAlerter):
        self.activity_logs = activity_logs
        self.alerter = alerter

    def record(
        self,
        user_id: str,
        activity_type: ActivityType,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        user_agent: Optional[str] = None,
    ) -> RecordedActivity:
        """Append an activity for a user.

        Raises:
            ValueError: If user_id is missing
            TransientStoreError: If the append itself fails
        """
        if not user_id:
            raise ValueError("user_id is required")

        log = self.activity_logs.append(ActivityLogRecord(
            user_id=user_id,
            type=activity_type,
            timestamp=utcnow(),
            details=details,
            user_agent=user_agent,
        ))

        ip_address = enrich_ip_address(self.activity_logs, log, headers)
        if ip_address:
            log = replace(log, ip_address=ip_address)

        return RecordedActivity(log=log, alerting=self.alerter.handle_activity_created(log))
