# cyberkey/demo/seed_demo_data.py

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from cyberkey.core.api_keys import ApiKeyService
from cyberkey.storage.models import SmtpSettings, UserNotificationPreferences, UserRecord
from cyberkey.storage.repository import Store, utcnow

logger = logging.getLogger(__name__)

DEMO_USER_ID = "demo-user"
DEMO_EMAIL = "demo@example.com"


def seed_demo_data(store: Store, api_keys: ApiKeyService, now: Optional[datetime] = None) -> Dict[str, int]:
    """Insert a demo user with keys at various distances from expiry.

    Returns:
        Counts of inserted records by kind
    """
    now = now or utcnow()

    store.users.upsert(UserRecord(id=DEMO_USER_ID, email=DEMO_EMAIL))
    store.settings.save(DEMO_USER_ID, UserNotificationPreferences(
        email_enabled=True,
        balance_alerts=True,
        low_balance_threshold=10.0,
        smtp_settings=SmtpSettings(
            host="localhost",
            port=1025,
            secure=False,
            username="",
            password="",
            from_email="alerts@example.com",
        ),
    ))

    keys = [
        ("production-openai", "sk-demo-production", "openai", 120.0, timedelta(days=1)),
        ("staging-anthropic", "sk-ant-demo-staging", "anthropic", 4.5, timedelta(days=3)),
        ("batch-jobs", "sk-demo-batch", "openai", 55.0, timedelta(days=30)),
        ("local-dev", "sk-demo-local", "openai", 2.0, None),
    ]
    for name, secret, provider, balance, lifetime in keys:
        api_keys.create_api_key(
            user_id=DEMO_USER_ID,
            name=name,
            secret=secret,
            provider_name=provider,
            balance=balance,
            expires_at=now + lifetime if lifetime else None,
            now=now,
        )

    api_keys.create_internal_key(DEMO_USER_ID, "cyberkey-internal", balance=25.0)
    store.device_tokens.register(DEMO_USER_ID, "demo-device-token")

    logger.info("Demo data inserted for user %s", DEMO_USER_ID)
    return {"users": 1, "api_keys": len(keys) + 1, "device_tokens": 1}
