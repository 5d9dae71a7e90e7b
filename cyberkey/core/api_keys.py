"""
API key management.

Secrets pass through the key codec on the way in and out, so plaintext
only exists inside the create and reveal calls. Expired keys are dropped
lazily when a user lists their keys, in addition to the periodic sweep.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cyberkey.storage.models import ActivityType, ApiKeyRecord, RateLimit
from cyberkey.storage.repository import ApiKeyRepository, as_utc, utcnow
from .crypto import KeyCodec, generate_secure_key, is_valid_api_key, safe_compare
from .errors import IntegrityError, NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

INTERNAL_PROVIDER = "cyberkey"

_UPDATABLE_FIELDS = {
    "name", "secret", "provider_name", "balance", "active", "expires_at",
    "allowed_origins", "rate_limit", "funding_link",
}


def _require(value: Optional[str], message: str) -> None:
    if not value or not str(value).strip():
        raise ValidationError(message)


class ApiKeyService:
    """Create, read, update and delete a user's API keys."""

    def __init__(self, api_keys: ApiKeyRepository, codec: KeyCodec, recorder=None):
        """Initialize the service.

        Args:
            api_keys: API key collection
            codec: Codec sealing secrets at rest
            recorder: Optional ActivityRecorder for audit entries
        """
        self.api_keys = api_keys
        self.codec = codec
        self.recorder = recorder

    def create_api_key(
        self,
        user_id: str,
        name: str,
        secret: str,
        provider_name: str,
        balance: float = 0.0,
        expires_at: Optional[datetime] = None,
        allowed_origins: Iterable[str] = (),
        rate_limit: Optional[RateLimit] = None,
        funding_link: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApiKeyRecord:
        """Store a new key with its secret encrypted.

        Raises:
            ValidationError: If a required field is missing or expires_at is not in the future
        """
        _require(user_id, "User ID is required")
        _require(name, "Name is required")
        _require(secret, "API key is required")
        _require(provider_name, "Provider name is required")

        now = as_utc(now) if now else utcnow()
        if expires_at is not None:
            expires_at = as_utc(expires_at)
            if expires_at <= now:
                raise ValidationError("Expiration date must be in the future")

        record = ApiKeyRecord(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            secret=self.codec.encrypt(secret),
            provider_name=provider_name,
            balance=float(balance or 0),
            active=True,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            allowed_origins=tuple(allowed_origins),
            rate_limit=rate_limit or RateLimit(),
            funding_link=funding_link or None,
        )
        self.api_keys.insert(record)
        logger.info("Created API key %s for user %s", record.id, user_id)
        self._audit(user_id, ActivityType.API_KEY_CREATED, {"keyId": record.id, "name": name})
        return record

    def create_internal_key(
        self, user_id: str, name: str, balance: float = 0.0, **kwargs: Any
    ) -> Tuple[ApiKeyRecord, str]:
        """Generate a ``ck_`` key, store it and return it with its plaintext."""
        plaintext = generate_secure_key()
        record = self.create_api_key(
            user_id=user_id,
            name=name,
            secret=plaintext,
            provider_name=INTERNAL_PROVIDER,
            balance=balance,
            **kwargs
        )
        return record, plaintext

    def get_api_key(self, key_id: str, user_id: Optional[str] = None) -> ApiKeyRecord:
        """Fetch a key's metadata (secret stays encrypted).

        Raises:
            NotFoundError: If the key doesn't exist
            PermissionDeniedError: If it belongs to another user
        """
        record = self.api_keys.get(key_id)
        if record is None:
            raise NotFoundError("API key not found.")
        if user_id is not None and record.user_id != user_id:
            raise PermissionDeniedError("Permission denied. You can only view your own API keys.")
        return record

    def reveal_secret(self, key_id: str, user_id: Optional[str] = None) -> str:
        """Decrypt and return a key's secret.

        Raises:
            IntegrityError: If the stored ciphertext was tampered with
        """
        return self.codec.decrypt(self.get_api_key(key_id, user_id).secret)

    def find_by_internal_key(self, user_id: str, key: str) -> Optional[ApiKeyRecord]:
        """Look up one of a user's internal keys by its plaintext value.

        Records whose ciphertext fails to decrypt are logged and skipped.
        """
        if not is_valid_api_key(key):
            return None
        for record in self.api_keys.list_for_user(user_id):
            if record.provider_name != INTERNAL_PROVIDER:
                continue
            try:
                secret = self.codec.decrypt(record.secret)
            except IntegrityError:
                logger.error("Skipping API key %s of user %s: stored secret failed to decrypt", record.id, user_id)
                continue
            if safe_compare(secret, key):
                return record
        return None

    def list_api_keys(self, user_id: str, now: Optional[datetime] = None) -> List[ApiKeyRecord]:
        """Return a user's live keys, deleting the expired ones afterwards.

        The listing is taken from one snapshot before any delete is issued,
        so callers never see a half-deleted key.
        """
        _require(user_id, "User ID is required")
        now = as_utc(now) if now else utcnow()
        snapshot = self.api_keys.list_for_user(user_id)

        live, expired_ids = [], []
        for record in snapshot:
            if record.expires_at is not None and record.expires_at <= now:
                expired_ids.append(record.id)
            else:
                live.append(record)

        if expired_ids:
            try:
                deleted = self.api_keys.delete_many(expired_ids)
                logger.info("Deleted %d expired keys for user %s", deleted, user_id)
            except Exception as e:
                logger.error("Failed to delete expired keys for user %s: %s", user_id, e)

        return live

    def update_api_key(
        self, key_id: str, user_id: str, changes: Dict[str, Any], now: Optional[datetime] = None
    ) -> ApiKeyRecord:
        """Update editable fields of a key.

        Raises:
            ValidationError: On unknown fields, empty required fields, or a past expiry
            NotFoundError: If the key doesn't exist
            PermissionDeniedError: If it belongs to another user
        """
        _require(key_id, "API key ID is required")
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {sorted(unknown)}")

        updates = dict(changes)
        for field_name, label in (("name", "Name"), ("secret", "API key"), ("provider_name", "Provider name")):
            if field_name in updates:
                _require(updates[field_name], f"{label} cannot be empty")
        if "secret" in updates:
            updates["secret"] = self.codec.encrypt(updates["secret"])
        if updates.get("expires_at") is not None:
            updates["expires_at"] = as_utc(updates["expires_at"])
            if updates["expires_at"] <= (as_utc(now) if now else utcnow()):
                raise ValidationError("Expiration date must be in the future")
        if "balance" in updates:
            updates["balance"] = float(updates["balance"])

        record = self.api_keys.update(key_id, updates, user_id=user_id)
        self._audit(user_id, ActivityType.API_KEY_UPDATED,
                    {"keyId": key_id, "fields": sorted(changes)})
        return record

    def update_balance(self, key_id: str, amount: float, user_id: Optional[str] = None) -> ApiKeyRecord:
        return self.api_keys.update(key_id, {"balance": float(amount)}, user_id=user_id)

    def mark_used(self, key_id: str) -> None:
        self.api_keys.update(key_id, {"last_used_at": utcnow()})

    def delete_api_key(self, key_id: str, user_id: str) -> None:
        """Delete one of the user's keys.

        Raises:
            NotFoundError: "API key not found."
            PermissionDeniedError: "Permission denied. You can only delete your own API keys."
        """
        _require(key_id, "Key ID is required")
        try:
            self.api_keys.delete(key_id, user_id=user_id)
        except PermissionDeniedError:
            raise PermissionDeniedError("Permission denied. You can only delete your own API keys.") from None
        logger.info("Deleted API key %s for user %s", key_id, user_id)
        self._audit(user_id, ActivityType.API_KEY_DELETED, {"keyId": key_id})

    def _audit(self, user_id: str, activity_type: ActivityType, details: Dict[str, Any]) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.record(user_id, activity_type, details=details)
        except Exception as e:
            logger.error("Failed to log activity %s for user %s: %s", activity_type.value, user_id, e)
