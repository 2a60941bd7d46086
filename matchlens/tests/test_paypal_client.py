"""
PayPalClient tests — OAuth token caching, 401 refresh, idempotent capture,
and the four failure kinds. PayPal is an httpx.MockTransport; Redis is either
absent (in-process cache) or an AsyncMock.
"""
from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from matchlens.cache import PAYPAL_TOKEN_KEY, token_ttl
from matchlens.payments.paypal_client import (
    INVALID_RESPONSE,
    PayPalAPIError,
    PayPalAuthError,
    PayPalClient,
    PayPalConfigError,
    PayPalTransportError,
)
from matchlens.tests.demo_payloads import paypal_order

BASE = "https://api-m.sandbox.paypal.com"


class FakePayPal:
    """Records requests and answers them from a route → handler table."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.routes: dict[tuple[str, str], object] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            self.tokens_issued += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.tokens_issued}", "expires_in": 32400}
            )
        handler = self.routes[(request.method, request.url.path)]
        return handler(request) if callable(handler) else handler

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def _client(fake: FakePayPal, **kwargs) -> PayPalClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return PayPalClient(
        http,
        base_url=BASE,
        client_id=kwargs.pop("client_id", "client-id"),
        client_secret=kwargs.pop("client_secret", "client-secret"),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

def test_token_ttl_keeps_safety_margin() -> None:
    assert token_ttl(32400) == 32340
    assert token_ttl(10) == 30


@pytest.mark.asyncio
async def test_missing_credentials_is_config_error() -> None:
    fake = FakePayPal()
    client = _client(fake, client_secret="")
    assert client.configured is False
    with pytest.raises(PayPalConfigError, match="PAYPAL_CLIENT_SECRET"):
        await client.get_access_token()
    assert fake.requests == []


@pytest.mark.asyncio
async def test_token_is_cached_in_process_without_redis() -> None:
    fake = FakePayPal()
    client = _client(fake)
    assert await client.get_access_token() == "token-1"
    assert await client.get_access_token() == "token-1"
    assert fake.tokens_issued == 1

    token_request = fake.calls("/v1/oauth2/token")[0]
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert b"grant_type=client_credentials" in token_request.content


@pytest.mark.asyncio
async def test_token_is_cached_in_redis() -> None:
    fake = FakePayPal()
    redis = AsyncMock()
    redis.get.return_value = None
    client = _client(fake, redis=redis)

    assert await client.get_access_token() == "token-1"
    redis.setex.assert_awaited_once_with(PAYPAL_TOKEN_KEY, 32340, "token-1")

    redis.get.return_value = "token-from-redis"
    assert await client.get_access_token() == "token-from-redis"
    assert fake.tokens_issued == 1


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_fetching() -> None:
    fake = FakePayPal()
    redis = AsyncMock()
    redis.get.side_effect = RedisConnectionError("redis down")
    redis.setex.side_effect = RedisConnectionError("redis down")
    client = _client(fake, redis=redis)

    assert await client.get_access_token() == "token-1"


@pytest.mark.asyncio
async def test_rejected_credentials_is_auth_error() -> None:
    def reject(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    client = PayPalClient(
        httpx.AsyncClient(transport=httpx.MockTransport(reject)),
        base_url=BASE, client_id="bad", client_secret="bad",
    )
    with pytest.raises(PayPalAuthError):
        await client.get_access_token()


@pytest.mark.asyncio
async def test_network_failure_is_transport_error() -> None:
    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = PayPalClient(
        httpx.AsyncClient(transport=httpx.MockTransport(boom)),
        base_url=BASE, client_id="id", client_secret="secret",
    )
    with pytest.raises(PayPalTransportError):
        await client.get_access_token()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json={"token_type": "Bearer"}),
    ],
)
async def test_unreadable_token_response_is_api_error(response) -> None:
    client = PayPalClient(
        httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)),
        base_url=BASE, client_id="id", client_secret="secret",
    )
    with pytest.raises(PayPalAPIError) as exc_info:
        await client.get_access_token()
    assert exc_info.value.name == INVALID_RESPONSE


# ---------------------------------------------------------------------------
# Orders API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stale_token_is_refreshed_once_on_401() -> None:
    fake = FakePayPal()
    path = "/v2/checkout/orders/ORDER-1"
    responses = iter([httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"}),
                      httpx.Response(200, json=paypal_order("ORDER-1"))])
    fake.routes[("GET", path)] = lambda request: next(responses)
    client = _client(fake)

    order = await client.get_order("ORDER-1")

    assert order["id"] == "ORDER-1"
    assert fake.tokens_issued == 2
    calls = fake.calls(path)
    assert calls[0].headers["Authorization"] == "Bearer token-1"
    assert calls[1].headers["Authorization"] == "Bearer token-2"


@pytest.mark.asyncio
async def test_second_401_is_not_retried_again() -> None:
    fake = FakePayPal()
    fake.routes[("GET", "/v2/checkout/orders/ORDER-1")] = lambda request: httpx.Response(401, json={})
    client = _client(fake)

    with pytest.raises(PayPalAPIError) as exc_info:
        await client.get_order("ORDER-1")
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_create_order_body() -> None:
    fake = FakePayPal()
    fake.routes[("POST", "/v2/checkout/orders")] = httpx.Response(
        201,
        json={
            "id": "ORDER-NEW",
            "status": "CREATED",
            "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-NEW"}],
        },
    )
    client = _client(fake, merchant_email="merchant@example.com", frontend_url="https://app.example.com/")

    order = await client.create_order(Decimal("49.9"), "USD", "Profile Pro", "pro")

    assert order["id"] == "ORDER-NEW"
    request = fake.calls("/v2/checkout/orders")[0]
    assert request.headers["PayPal-Request-Id"].startswith("create-order_")
    body = json.loads(request.content)
    unit = body["purchase_units"][0]
    assert body["intent"] == "CAPTURE"
    assert unit["amount"] == {"currency_code": "USD", "value": "49.90"}
    assert unit["custom_id"] == "pro"
    assert unit["payee"] == {"email_address": "merchant@example.com"}
    assert body["application_context"]["return_url"] == "https://app.example.com/onboarding/success"


@pytest.mark.asyncio
async def test_capture_uses_order_derived_request_id() -> None:
    fake = FakePayPal()
    fake.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = httpx.Response(
        201, json=paypal_order("ORDER-1")
    )
    client = _client(fake)

    order = await client.capture_order("ORDER-1")

    assert order["status"] == "COMPLETED"
    request = fake.calls("/v2/checkout/orders/ORDER-1/capture")[0]
    assert request.headers["PayPal-Request-Id"] == "capture-ORDER-1"


@pytest.mark.asyncio
async def test_already_captured_order_is_read_back() -> None:
    fake = FakePayPal()
    fake.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = httpx.Response(
        422,
        json={
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
            "debug_id": "abc123",
        },
    )
    fake.routes[("GET", "/v2/checkout/orders/ORDER-1")] = httpx.Response(200, json=paypal_order("ORDER-1"))
    client = _client(fake)

    order = await client.capture_order("ORDER-1")

    assert order["purchase_units"][0]["payments"]["captures"][0]["status"] == "COMPLETED"
    assert len(fake.calls("/v2/checkout/orders/ORDER-1")) == 1


@pytest.mark.asyncio
async def test_unprocessable_capture_carries_paypal_details() -> None:
    fake = FakePayPal()
    fake.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = httpx.Response(
        422,
        json={
            "name": "UNPROCESSABLE_ENTITY",
            "message": "The requested action could not be performed",
            "details": [{"issue": "ORDER_NOT_APPROVED"}],
            "debug_id": "dbg-1",
        },
    )
    client = _client(fake)

    with pytest.raises(PayPalAPIError) as exc_info:
        await client.capture_order("ORDER-1")

    error = exc_info.value
    assert error.status_code == 422
    assert error.name == "UNPROCESSABLE_ENTITY"
    assert error.issue == "ORDER_NOT_APPROVED"
    assert error.debug_id == "dbg-1"


@pytest.mark.asyncio
async def test_non_json_order_response_is_api_error() -> None:
    fake = FakePayPal()
    fake.routes[("GET", "/v2/checkout/orders/ORDER-1")] = httpx.Response(200, text="<html>proxy</html>")
    client = _client(fake)

    with pytest.raises(PayPalAPIError) as exc_info:
        await client.get_order("ORDER-1")
    assert exc_info.value.name == INVALID_RESPONSE
