"""
paypal_client.py — Thin async client for the PayPal Orders v2 REST API.

Components:
  PayPalClient.get_access_token(): OAuth client-credentials, cached in Redis
  PayPalClient.create_order()     — POST /v2/checkout/orders
  PayPalClient.capture_order()    — POST /v2/checkout/orders/{id}/capture (idempotent)
  PayPalClient.get_order()        — GET  /v2/checkout/orders/{id}

One httpx.AsyncClient is created in main.py lifespan and passed in; this module
never opens its own connections. Every call inherits that client's timeout.

Failure kinds are kept apart so callers can choose retry vs hard-fail:
  PayPalConfigError    credentials missing, nothing to retry
  PayPalAuthError      token endpoint rejected the credentials
  PayPalTransportError timeout / connection failure, retryable
  PayPalAPIError       PayPal answered 4xx/5xx on an order call

No HTTPException anywhere: this is pure integration logic, HTTP layer is routes.py.
"""
from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Optional

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from matchlens.cache import clear_paypal_token, get_paypal_token, set_paypal_token, token_ttl

logger = logging.getLogger(__name__)

ALREADY_CAPTURED_ISSUE = "ORDER_ALREADY_CAPTURED"
INVALID_RESPONSE = "INVALID_RESPONSE"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PayPalError(Exception):
    """Base class for everything this module raises."""


class PayPalConfigError(PayPalError):
    pass


class PayPalAuthError(PayPalError):
    pass


class PayPalTransportError(PayPalError):
    pass


class PayPalAPIError(PayPalError):
    def __init__(
        self,
        status_code: int,
        name: str = "",
        issue: str = "",
        debug_id: Optional[str] = None,
        message: str = "",
    ):
        super().__init__(message or f"PayPal API error {status_code} {name} {issue}".strip())
        self.status_code = status_code
        self.name = name
        self.issue = issue
        self.debug_id = debug_id

    @classmethod
    def from_response(cls, response: httpx.Response) -> "PayPalAPIError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        details = body.get("details") or [{}]
        return cls(
            status_code=response.status_code,
            name=body.get("name", ""),
            issue=details[0].get("issue", ""),
            debug_id=body.get("debug_id"),
            message=body.get("message", ""),
        )


def _json_body(response: httpx.Response, context: str) -> dict[str, Any]:
    """Parse a 2xx body; anything but a JSON object is a processor fault."""
    try:
        body = response.json()
    except ValueError as exc:
        raise PayPalAPIError(
            response.status_code,
            name=INVALID_RESPONSE,
            message=f"PayPal {context} returned a non-JSON body",
        ) from exc
    if not isinstance(body, dict):
        raise PayPalAPIError(
            response.status_code,
            name=INVALID_RESPONSE,
            message=f"PayPal {context} returned an unexpected body",
        )
    return body


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PayPalClient:
    """PayPal REST client bound to one environment (sandbox or live)."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        client_id: str,
        client_secret: str,
        redis: Optional[aioredis.Redis] = None,
        merchant_email: str = "",
        frontend_url: str = "",
    ):
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._redis = redis
        self._merchant_email = merchant_email
        self._frontend_url = frontend_url.rstrip("/")
        # Process-local fallback when Redis is not configured
        self._token: Optional[str] = None
        self._token_deadline: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    # -- OAuth ---------------------------------------------------------------

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """Return a bearer token, fetching a new one only on cache miss or force_refresh."""
        if not self.configured:
            missing = [
                name for name, value in (
                    ("PAYPAL_CLIENT_ID", self._client_id),
                    ("PAYPAL_CLIENT_SECRET", self._client_secret),
                ) if not value
            ]
            raise PayPalConfigError(f"PayPal credentials not found: {', '.join(missing)}")

        if not force_refresh:
            cached = await self._cached_token()
            if cached:
                return cached

        try:
            response = await self._http.post(
                f"{self._base_url}/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise PayPalTransportError(f"PayPal token request failed: {exc}") from exc

        if response.status_code in (400, 401, 403):
            raise PayPalAuthError(
                f"PayPal rejected client credentials (HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise PayPalAPIError.from_response(response)

        body = _json_body(response, "token request")
        token = body.get("access_token")
        if not token:
            raise PayPalAPIError(
                response.status_code,
                name=INVALID_RESPONSE,
                message="PayPal token response has no access_token",
            )
        await self._store_token(token, int(body.get("expires_in", 3600)))
        logger.info("PayPal access token acquired")
        return token

    async def _cached_token(self) -> Optional[str]:
        if self._redis is None:
            if self._token and time.monotonic() < self._token_deadline:
                return self._token
            return None
        try:
            return await get_paypal_token(self._redis)
        except RedisError as exc:
            logger.warning("PayPal token cache read failed, fetching a new token: %s", exc)
            return None

    async def _store_token(self, token: str, expires_in: int) -> None:
        if self._redis is None:
            self._token = token
            self._token_deadline = time.monotonic() + token_ttl(expires_in)
            return
        try:
            await set_paypal_token(self._redis, token, expires_in)
        except RedisError as exc:
            logger.warning("PayPal token cache write failed: %s", exc)

    async def _forget_token(self) -> None:
        self._token = None
        self._token_deadline = 0.0
        if self._redis is not None:
            try:
                await clear_paypal_token(self._redis)
            except RedisError as exc:
                logger.warning("PayPal token cache delete failed: %s", exc)

    # -- Orders API ----------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Authenticated call against the Orders API.
        A 401 means the cached token went stale: evict it and retry exactly once.
        """
        url = f"{self._base_url}{path}"
        for attempt in (1, 2):
            token = await self.get_access_token(force_refresh=attempt == 2)
            request_headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                **(headers or {}),
            }
            try:
                response = await self._http.request(method, url, json=json, headers=request_headers)
            except httpx.HTTPError as exc:
                raise PayPalTransportError(f"PayPal {method} {path} failed: {exc}") from exc

            if response.status_code == 401 and attempt == 1:
                logger.info("PayPal returned 401 for %s %s, refreshing token", method, path)
                await self._forget_token()
                continue
            if response.status_code >= 400:
                error = PayPalAPIError.from_response(response)
                logger.warning(
                    "PayPal %s %s failed status=%d name=%s issue=%s debug_id=%s",
                    method, path, error.status_code, error.name, error.issue, error.debug_id,
                )
                raise error
            return _json_body(response, f"{method} {path}")

        raise PayPalAuthError("PayPal rejected a freshly issued access token")

    def build_order_body(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        package_id: str,
        custom_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Orders v2 create body: immediate capture, no shipping, pay-now button."""
        purchase_unit: dict[str, Any] = {
            "reference_id": f"order_{uuid.uuid4().hex[:16]}",
            "description": description,
            "custom_id": custom_id or package_id or "matchlens_package",
            "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
        }
        if self._merchant_email:
            purchase_unit["payee"] = {"email_address": self._merchant_email}
        return {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": f"{self._frontend_url}/onboarding/success",
                "cancel_url": f"{self._frontend_url}/checkout",
            },
        }

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        package_id: str,
    ) -> dict[str, Any]:
        body = self.build_order_body(amount, currency, description, package_id)
        started = time.monotonic()
        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={
                "PayPal-Request-Id": f"create-{body['purchase_units'][0]['reference_id']}",
                "Prefer": "return=representation",
            },
        )
        logger.info(
            "PayPal order created order_id=%s in %dms",
            order.get("id"), int((time.monotonic() - started) * 1000),
        )
        return order

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}")

    async def capture_order(self, order_id: str) -> dict[str, Any]:
        """
        Capture an approved order.

        Idempotent: the PayPal-Request-Id is derived from the order id so PayPal
        replays the original response for a retried call, and an order that was
        already captured is read back instead of surfacing as an error.
        """
        try:
            order = await self._request(
                "POST",
                f"/v2/checkout/orders/{order_id}/capture",
                json={},
                headers={
                    "PayPal-Request-Id": f"capture-{order_id}",
                    "Prefer": "return=representation",
                },
            )
        except PayPalAPIError as exc:
            if exc.status_code == 422 and exc.issue == ALREADY_CAPTURED_ISSUE:
                logger.info("PayPal order already captured order_id=%s, reading back", order_id)
                return await self.get_order(order_id)
            raise
        logger.info("PayPal order captured order_id=%s status=%s", order_id, order.get("status"))
        return order
