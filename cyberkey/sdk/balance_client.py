"""
Provider balance client.

Queries the upstream usage API with a user's key and normalizes every
outcome into a ``{balance, error, status}`` envelope with an HTTP status.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from cyberkey.config.loader import DEFAULT_USAGE_URL

logger = logging.getLogger(__name__)

_UPSTREAM_ERRORS = {
    401: "Invalid API key or Organization ID",
    403: "Access forbidden. Please check your credentials",
    429: "Rate limit exceeded. Please try again later",
    500: "Anthropic API is temporarily unavailable",
    502: "Anthropic API is temporarily unavailable",
    503: "Anthropic API is temporarily unavailable",
    504: "Anthropic API is temporarily unavailable",
}


@dataclass(frozen=True)
class BalanceResponse:
    """Normalized result of a balance check."""
    status: str
    balance: Optional[float] = None
    error: Optional[str] = None
    http_status: int = 200

    @classmethod
    def failure(cls, error: str, http_status: int) -> "BalanceResponse":
        return cls(status="error", error=error, http_status=http_status)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"balance": self.balance, "status": self.status}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class BalanceClient:
    """Async client for the provider usage endpoint."""

    def __init__(
        self,
        usage_url: str = DEFAULT_USAGE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.usage_url = usage_url
        self.timeout = timeout
        self._transport = transport

    async def check_balance(self, api_key: Optional[str], organization_id: Optional[str]) -> BalanceResponse:
        """Balance of an organization, reported by the API in cents."""
        if not api_key or not organization_id:
            return BalanceResponse.failure("API key and Organization ID are required", 400)

        response = await self._fetch(api_key, organization_id)
        if isinstance(response, BalanceResponse):
            return response
        try:
            return BalanceResponse(status="success", balance=response.json()["balance_cents"] / 100)
        except (ValueError, KeyError, TypeError):
            logger.error("Usage API returned an unexpected body")
            return BalanceResponse.failure("Failed to check balance. Please try again later", 500)

    async def available_credit(self, api_key: Optional[str]) -> BalanceResponse:
        """Credit left on a single key."""
        if not api_key:
            return BalanceResponse.failure("API key is required", 400)

        response = await self._fetch(api_key, None)
        if isinstance(response, BalanceResponse):
            return response
        try:
            data = response.json()
        except ValueError:
            logger.error("Usage API returned a non-JSON body")
            return BalanceResponse.failure("Failed to check balance. Please try again later", 500)
        return BalanceResponse(status="success", balance=data.get("available_credit") or 0)

    async def _fetch(self, api_key: str, organization_id: Optional[str]):
        """Call the usage API; return the response, or a failure envelope."""
        headers = {"x-api-key": api_key, "Content-Type": "application/json"}
        if organization_id:
            headers["anthropic-organization"] = organization_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.usage_url, headers=headers)
        except httpx.ConnectError as e:
            logger.error("Balance check connection error: %s", e)
            return BalanceResponse.failure(
                "Unable to connect to Anthropic API. Please check your internet connection", 503
            )
        except httpx.TransportError as e:
            logger.error("Balance check network error: %s", e)
            return BalanceResponse.failure(
                "Network error: Unable to reach Anthropic API. Please try again later", 503
            )

        if response.is_success:
            return response

        status = response.status_code
        error = _UPSTREAM_ERRORS.get(status, f"API Error: {status} {response.reason_phrase}")
        logger.warning("Usage API returned HTTP %d", status)
        return BalanceResponse.failure(error, status)
