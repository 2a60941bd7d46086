"""
verifier.py — Payment Verifier: turns PayPal order state into a CaptureResult.

The orchestrator only ever sees CaptureResult or UpstreamVerificationError;
PayPal response shapes and PayPalError subclasses stop here.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from matchlens.errors import UpstreamVerificationError
from matchlens.payments.paypal_client import (
    INVALID_RESPONSE,
    PayPalAPIError,
    PayPalAuthError,
    PayPalClient,
    PayPalConfigError,
    PayPalError,
    PayPalTransportError,
)
from matchlens.payments.schemas import (
    PAYPAL_STATUS_MAP,
    CaptureResult,
    CreateOrderRequest,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


def parse_capture(order_id: str, order: dict[str, Any]) -> CaptureResult:
    """
    Normalize a PayPal order (capture response or GET order) into a CaptureResult.

    The first capture of the first purchase unit is authoritative. An order with
    no capture yet reports the order-level status and an empty capture_id.
    """
    units = order.get("purchase_units") or [{}]
    unit = units[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else {}

    paypal_status = (capture.get("status") or order.get("status") or "").upper()
    money = capture.get("amount") or unit.get("amount") or {}
    try:
        amount = Decimal(str(money.get("value", "0")))
    except InvalidOperation:
        amount = Decimal("0")

    payer = order.get("payer") or {}
    name = payer.get("name") or {}
    payer_name = " ".join(
        part for part in (name.get("given_name"), name.get("surname")) if part
    ) or None

    return CaptureResult(
        order_id=order.get("id") or order_id,
        capture_id=capture.get("id", ""),
        status=PAYPAL_STATUS_MAP.get(paypal_status, PaymentStatus.pending),
        amount=amount,
        currency=money.get("currency_code", "USD"),
        payer_email=payer.get("email_address"),
        payer_name=payer_name,
        raw=order,
    )


def _translate(exc: PayPalError, action: str) -> UpstreamVerificationError:
    """Map PayPal failure kinds onto the verification error reasons."""
    if isinstance(exc, PayPalConfigError):
        return UpstreamVerificationError(
            f"Payment processor is not configured: {exc}", reason="configuration"
        )
    if isinstance(exc, PayPalAuthError):
        return UpstreamVerificationError(
            "Payment processor rejected our credentials", reason="authentication"
        )
    if isinstance(exc, PayPalTransportError):
        return UpstreamVerificationError(
            f"Payment processor unreachable during {action}", reason="unavailable", retryable=True
        )
    if isinstance(exc, PayPalAPIError):
        if exc.name == INVALID_RESPONSE:
            return UpstreamVerificationError(
                f"Payment processor sent an unreadable response during {action}",
                reason="processor",
                retryable=True,
            )
        if exc.status_code in (401, 403):
            return UpstreamVerificationError(
                "Payment processor rejected our credentials", reason="authentication"
            )
        if exc.status_code >= 500:
            return UpstreamVerificationError(
                f"Payment processor error during {action}", reason="processor", retryable=True
            )
        if exc.status_code in (404, 422):
            return UpstreamVerificationError(
                f"Order cannot be captured ({exc.issue or exc.name or exc.status_code})",
                reason="not_captured",
            )
        return UpstreamVerificationError(
            f"Payment processor refused {action} ({exc.name or exc.status_code})",
            reason="processor",
        )
    return UpstreamVerificationError(f"Payment processor error during {action}", reason="processor")


class PaymentVerifier:
    """Confirms orders with PayPal on behalf of the intake orchestrator."""

    def __init__(self, client: PayPalClient):
        self._client = client

    async def create_order(self, request: CreateOrderRequest) -> dict[str, Any]:
        """Create a PayPal order before the buyer approves it (not the commit path)."""
        try:
            order = await self._client.create_order(
                amount=request.amount,
                currency=request.currency.value,
                description=request.description,
                package_id=request.package_id,
            )
        except PayPalError as exc:
            raise _translate(exc, "order creation") from exc

        approve_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return {"orderId": order.get("id"), "status": order.get("status"), "approveUrl": approve_url}

    async def confirm_capture(self, order_id: str) -> CaptureResult:
        """Capture (or read back an already-captured) order and normalize it."""
        try:
            order = await self._client.capture_order(order_id)
        except PayPalError as exc:
            raise _translate(exc, "capture") from exc
        return parse_capture(order_id, order)

    async def verify(
        self,
        order_id: str,
        payment_id: str,
        amount: Decimal,
        currency: str,
    ) -> CaptureResult:
        """
        Independently confirm the client's claim that order_id was paid.

        Raises UpstreamVerificationError unless PayPal reports a completed capture
        whose id, amount and currency agree with the claim.
        """
        result = await self.confirm_capture(order_id)

        if result.status != PaymentStatus.completed:
            logger.warning(
                "Payment verification failed order_id=%s processor_status=%s",
                order_id, result.status.value,
            )
            raise UpstreamVerificationError(
                f"Payment processor reports order as '{result.status.value}', not completed",
                reason="not_captured",
            )

        mismatches: list[str] = []
        if result.capture_id != payment_id:
            mismatches.append("paymentId")
        if result.amount != Decimal(amount):
            mismatches.append("amount")
        if result.currency.upper() != currency.upper():
            mismatches.append("currency")
        if mismatches:
            logger.warning(
                "Payment verification mismatch order_id=%s fields=%s",
                order_id, ",".join(mismatches),
            )
            raise UpstreamVerificationError(
                f"Payment processor record disagrees with the request on: {', '.join(mismatches)}",
                reason="mismatch",
            )

        logger.info("Payment verified order_id=%s capture_id=%s", order_id, result.capture_id)
        return result

    @staticmethod
    def summarize(result: Optional[CaptureResult]) -> Optional[dict[str, Any]]:
        """JSON-safe capture snapshot stored alongside the payment row."""
        if result is None:
            return None
        return {
            "orderId": result.order_id,
            "captureId": result.capture_id,
            "status": result.status.value,
            "amount": str(result.amount),
            "currency": result.currency,
            "order": result.raw,
        }
