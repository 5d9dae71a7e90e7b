"""
Tests for the provider balance client.
"""

import asyncio

import httpx
import pytest

from cyberkey.sdk import BalanceClient, BalanceResponse


def client_with(handler):
    return BalanceClient(usage_url="https://usage.test/v1/usage", transport=httpx.MockTransport(handler))


def run(coro):
    return asyncio.run(coro)


class TestCheckBalance:
    """Test the organization balance check."""

    def test_success_converts_cents(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json={"balance_cents": 12345})

        response = run(client_with(handler).check_balance("sk-ant", "org-1"))

        assert response == BalanceResponse(status="success", balance=123.45)
        assert response.to_dict() == {"balance": 123.45, "status": "success"}
        assert seen["headers"]["x-api-key"] == "sk-ant"
        assert seen["headers"]["anthropic-organization"] == "org-1"

    @pytest.mark.parametrize("api_key,organization_id", [
        (None, "org-1"),
        ("sk-ant", None),
        ("", ""),
    ])
    def test_missing_fields(self, api_key, organization_id):
        response = run(client_with(lambda request: httpx.Response(200)).check_balance(api_key, organization_id))

        assert response.http_status == 400
        assert response.to_dict() == {
            "balance": None,
            "status": "error",
            "error": "API key and Organization ID are required",
        }

    @pytest.mark.parametrize("status,message", [
        (401, "Invalid API key or Organization ID"),
        (403, "Access forbidden. Please check your credentials"),
        (429, "Rate limit exceeded. Please try again later"),
        (500, "Anthropic API is temporarily unavailable"),
        (502, "Anthropic API is temporarily unavailable"),
        (503, "Anthropic API is temporarily unavailable"),
        (504, "Anthropic API is temporarily unavailable"),
        (404, "API Error: 404 Not Found"),
    ])
    def test_upstream_status_mapping(self, status, message):
        response = run(client_with(lambda request: httpx.Response(status)).check_balance("sk-ant", "org-1"))

        assert response.http_status == status
        assert response.status == "error"
        assert response.balance is None
        assert response.error == message

    def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        response = run(client_with(handler).check_balance("sk-ant", "org-1"))

        assert response.http_status == 503
        assert response.error == "Unable to connect to Anthropic API. Please check your internet connection"

    def test_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        response = run(client_with(handler).check_balance("sk-ant", "org-1"))

        assert response.http_status == 503
        assert response.error == "Network error: Unable to reach Anthropic API. Please try again later"

    def test_unexpected_body(self):
        response = run(client_with(lambda request: httpx.Response(200, json={})).check_balance("sk-ant", "org-1"))

        assert response.http_status == 500
        assert response.error == "Failed to check balance. Please try again later"


class TestAvailableCredit:
    """Test the single key credit check."""

    def test_success(self):
        def handler(request):
            assert "anthropic-organization" not in request.headers
            return httpx.Response(200, json={"available_credit": 42.5})

        response = run(client_with(handler).available_credit("sk-ant"))

        assert response.to_dict() == {"balance": 42.5, "status": "success"}

    def test_missing_credit_defaults_to_zero(self):
        response = run(client_with(lambda request: httpx.Response(200, json={})).available_credit("sk-ant"))
        assert response.balance == 0

    def test_missing_key(self):
        response = run(client_with(lambda request: httpx.Response(200)).available_credit(None))
        assert response.http_status == 400
        assert response.error == "API key is required"

    def test_unauthorized(self):
        response = run(client_with(lambda request: httpx.Response(401)).available_credit("sk-ant"))
        assert response.http_status == 401
