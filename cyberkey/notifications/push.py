"""
Push notification dispatch.

Sends a notification to every device token a user registered through the
FCM HTTP v1 API and prunes tokens the gateway reports as invalid. Delivery
is best effort: dispatch reports failures in its result instead of raising.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import jwt
from jwt.exceptions import PyJWTError

from cyberkey.config.loader import DEFAULT_PUSH_URL
from cyberkey.core.errors import PushGatewayError
from cyberkey.storage.repository import DeviceTokenRepository

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60

# FCM error codes that mean the token itself is unusable
INVALID_TOKEN_ERRORS = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"})


@dataclass(frozen=True)
class Notification:
    """Message shown on the user's devices.

    ``data`` is passed to the devices unchanged, so values must be strings.
    """
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.title:
            raise ValueError("notification title is required")
        if not self.body:
            raise ValueError("notification body is required")
        for key, value in self.data.items():
            if not isinstance(value, str):
                raise ValueError(f"notification data value for '{key}' must be a string")


@dataclass(frozen=True)
class TokenResult:
    """Gateway verdict for a single device token."""
    token: str
    success: bool
    error: Optional[str] = None

    @property
    def invalid(self) -> bool:
        return self.error in INVALID_TOKEN_ERRORS


@dataclass(frozen=True)
class BatchResponse:
    """Per-token results of one batched send."""
    results: Tuple[TokenResult, ...]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching a notification to a user."""
    success: bool
    success_count: int = 0
    failure_count: int = 0
    error: Optional[str] = None
    no_devices: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        payload = {
            "success": True,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
        }
        if self.no_devices:
            payload["noDevices"] = True
        return payload


class StaticTokenCredentials:
    """An OAuth access token issued elsewhere, e.g. by ``gcloud auth print-access-token``."""

    def __init__(self, token: str, project_id: Optional[str] = None):
        self.token = token
        self.project_id = project_id

    def access_token(self, client: httpx.Client) -> str:
        return self.token


class ServiceAccountCredentials:
    """Mints OAuth access tokens from a service account key file.

    A signed assertion is exchanged at the account's token endpoint and the
    token is reused until shortly before it expires. The key file is read
    on first use, so a bad file surfaces as a dispatch failure.
    """

    def __init__(self, path: str):
        self.path = path
        self._info: Optional[Dict[str, Any]] = None
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _load(self) -> Dict[str, Any]:
        if self._info is not None:
            return self._info
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                info = json.load(f)
        except (OSError, ValueError) as e:
            raise PushGatewayError(f"Cannot read push credentials file {self.path}: {e}") from e
        if not isinstance(info, dict):
            raise PushGatewayError("Push credentials file must contain a JSON object")
        missing = sorted(k for k in ("client_email", "private_key", "token_uri") if not info.get(k))
        if missing:
            raise PushGatewayError(f"Push credentials file is missing {missing}")
        self._info = info
        return info

    @property
    def project_id(self) -> Optional[str]:
        return self._load().get("project_id")

    def access_token(self, client: httpx.Client, now: Optional[float] = None) -> str:
        """Return a cached token or fetch a fresh one.

        Raises:
            PushGatewayError: If the assertion cannot be signed or the token
                endpoint fails
        """
        now = time.time() if now is None else now
        if self._token and now < self._expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        info = self._load()
        claims = {
            "iss": info["client_email"],
            "scope": FCM_SCOPE,
            "aud": info["token_uri"],
            "iat": int(now),
            "exp": int(now) + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": info["private_key_id"]} if info.get("private_key_id") else None
        try:
            assertion = jwt.encode(claims, info["private_key"], algorithm="RS256", headers=headers)
        except (PyJWTError, ValueError, TypeError) as e:
            raise PushGatewayError(f"Cannot sign push token assertion: {e}") from e

        try:
            response = client.post(info["token_uri"], data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion})
        except httpx.HTTPError as e:
            raise PushGatewayError(f"Push token endpoint unreachable: {e}") from e
        if response.status_code >= 400:
            raise PushGatewayError(f"Push token endpoint returned HTTP {response.status_code}")

        try:
            body = response.json()
            token = body["access_token"]
            expires_in = float(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        except (ValueError, KeyError, TypeError) as e:
            raise PushGatewayError("Push token endpoint returned a malformed response") from e

        self._token = token
        self._expires_at = now + expires_in
        logger.debug("Fetched push access token for %s", info["client_email"])
        return token


def _error_code(response: httpx.Response) -> str:
    """FCM error code of a failed send, falling back to the HTTP status."""
    try:
        error = response.json()["error"]
        for detail in error.get("details") or []:
            if detail.get("errorCode"):
                return detail["errorCode"]
        if error.get("status"):
            return error["status"]
    except (ValueError, KeyError, TypeError, AttributeError):
        pass
    return f"HTTP {response.status_code}"


class PushGateway:
    """Client for the FCM HTTP v1 send endpoint.

    v1 has no multicast call, so ``send_multicast`` issues one request per
    token and collects the per-token verdicts into one batch response.
    """

    def __init__(
        self,
        credentials,
        project_id: Optional[str] = None,
        url: str = DEFAULT_PUSH_URL,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the gateway.

        Args:
            credentials: ServiceAccountCredentials or StaticTokenCredentials;
                None leaves the gateway unconfigured
            project_id: Firebase project (defaults to the credentials' project)
            url: Send endpoint with a ``{project_id}`` placeholder
            timeout: Per-request timeout in seconds
            client: HTTP client to reuse instead of one per batch
        """
        self.credentials = credentials
        self.project_id = project_id
        self.url = url
        self.timeout = timeout
        self._client = client

    @staticmethod
    def build_message(token: str, notification: Notification) -> Dict[str, Any]:
        """Build one v1 message with fixed platform delivery hints."""
        return {
            "token": token,
            "notification": {
                "title": notification.title,
                "body": notification.body,
            },
            "data": dict(notification.data),
            "android": {
                "priority": "high",
                "notification": {
                    "click_action": "FLUTTER_NOTIFICATION_CLICK",
                    "sound": "default",
                    "notification_priority": "PRIORITY_MAX",
                    "channel_id": "high_importance_channel",
                },
            },
            "apns": {
                "payload": {
                    "aps": {
                        "sound": "default",
                        "badge": 1,
                        "content-available": 1,
                    }
                }
            },
        }

    def send_multicast(self, tokens: List[str], notification: Notification) -> BatchResponse:
        """Send one notification to many tokens.

        Raises:
            PushGatewayError: If the gateway is not configured, no access
                token can be obtained, or the gateway rejects the token
        """
        if self.credentials is None:
            raise PushGatewayError("Push gateway credentials are not configured")

        if self._client is not None:
            return self._send_all(self._client, tokens, notification)
        with httpx.Client(timeout=self.timeout) as client:
            return self._send_all(client, tokens, notification)

    def _send_all(self, client: httpx.Client, tokens: List[str], notification: Notification) -> BatchResponse:
        project_id = self.project_id or self.credentials.project_id
        if not project_id:
            raise PushGatewayError("Push gateway project id is not configured")

        url = self.url.format(project_id=project_id)
        headers = {"Authorization": f"Bearer {self.credentials.access_token(client)}"}
        return BatchResponse(results=tuple(
            self._send_one(client, url, headers, token, notification) for token in tokens
        ))

    def _send_one(self, client: httpx.Client, url: str, headers: Dict[str, str],
                  token: str, notification: Notification) -> TokenResult:
        try:
            response = client.post(
                url,
                json={"message": self.build_message(token, notification)},
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("Push send to token %s... failed: %s", token[:8], e)
            return TokenResult(token=token, success=False, error="UNAVAILABLE")

        if response.status_code == 401:
            raise PushGatewayError("Push gateway rejected the access token (HTTP 401)")
        if response.status_code >= 400:
            return TokenResult(token=token, success=False, error=_error_code(response))
        return TokenResult(token=token, success=True)


class NotificationDispatcher:
    """Delivers notifications to every device a user registered."""

    def __init__(self, device_tokens: DeviceTokenRepository, gateway: PushGateway):
        self.device_tokens = device_tokens
        self.gateway = gateway

    def dispatch(self, user_id: str, notification: Notification) -> DispatchResult:
        """Send a notification to all of a user's devices.

        Returns:
            DispatchResult; ``no_devices`` is set when the user registered
            none, which is not a failure
        """
        try:
            tokens = [t.token for t in self.device_tokens.list_for_user(user_id)]
            if not tokens:
                logger.info("No devices found for user %s", user_id)
                return DispatchResult(success=True, no_devices=True)

            response = self.gateway.send_multicast(tokens, notification)
        except Exception as e:
            logger.error("Error sending notification to user %s: %s", user_id, e)
            return DispatchResult(success=False, error=str(e) or "Unknown error occurred")

        for result in response.results:
            if result.invalid:
                self._prune(result.token)

        logger.info(
            "Dispatched notification to user %s: %d delivered, %d failed",
            user_id, response.success_count, response.failure_count,
        )
        return DispatchResult(
            success=True,
            success_count=response.success_count,
            failure_count=response.failure_count,
        )

    def _prune(self, token: str) -> None:
        try:
            self.device_tokens.delete_by_token(token)
            logger.info("Removed invalid device token %s...", token[:8])
        except Exception as e:
            logger.error("Failed to remove invalid device token %s...: %s", token[:8], e)
