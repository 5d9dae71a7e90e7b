"""
Periodic sweeps over the document store.

- Activity logs older than the retention window are purged.
- Keys whose ``expires_at`` has passed are deleted.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from cyberkey.storage.repository import ActivityLogRepository, ApiKeyRepository, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def purge_old_activity_logs(
    activity_logs: ActivityLogRepository,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: Optional[datetime] = None,
) -> int:
    """Delete activity logs older than the retention window.

    Args:
        activity_logs: Activity log collection
        retention_days: Days of history to keep
        now: Reference time (defaults to current UTC time)

    Returns:
        Number of deleted logs
    """
    if retention_days <= 0:
        raise ValueError("retention_days must be > 0")
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = activity_logs.delete_older_than(cutoff)
    logger.info("Deleted %d old activity logs", deleted)
    return deleted


def sweep_expired_keys(api_keys: ApiKeyRepository, now: Optional[datetime] = None) -> int:
    """Delete every key whose expiry has passed and return the count."""
    expired = api_keys.find_expired(now or utcnow())
    if not expired:
        return 0
    deleted = api_keys.delete_many([key.id for key in expired])
    logger.info("Deleted %d expired API keys", deleted)
    return deleted
