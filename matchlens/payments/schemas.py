"""
schemas.py — Payment data contracts.

Defines:
  - Currency, PaymentStatus enums and the explicit status transition table
  - CaptureResult  (normalized PayPal capture, produced by PaymentVerifier)
  - CreateOrderRequest, StatusUpdateRequest  (HTTP bodies)
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Currency(str, Enum):
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


# Allowed moves. Anything absent here (including "un-completing") is rejected.
STATUS_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.pending: frozenset(
        {PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.cancelled}
    ),
    PaymentStatus.completed: frozenset({PaymentStatus.refunded}),
    PaymentStatus.failed: frozenset(),
    PaymentStatus.cancelled: frozenset(),
    PaymentStatus.refunded: frozenset(),
}


def can_transition(current: PaymentStatus, requested: PaymentStatus) -> bool:
    return requested in STATUS_TRANSITIONS[current]


# PayPal capture/order status → our status
PAYPAL_STATUS_MAP: dict[str, PaymentStatus] = {
    "COMPLETED": PaymentStatus.completed,
    "PENDING": PaymentStatus.pending,
    "APPROVED": PaymentStatus.pending,
    "CREATED": PaymentStatus.pending,
    "SAVED": PaymentStatus.pending,
    "PAYER_ACTION_REQUIRED": PaymentStatus.pending,
    "DECLINED": PaymentStatus.failed,
    "FAILED": PaymentStatus.failed,
    "REFUNDED": PaymentStatus.refunded,
    "PARTIALLY_REFUNDED": PaymentStatus.refunded,
    "VOIDED": PaymentStatus.cancelled,
}


# ---------------------------------------------------------------------------
# CaptureResult: what the rest of the system knows about a PayPal capture
# ---------------------------------------------------------------------------

class CaptureResult(BaseModel):
    """Canonical capture record, independent of PayPal's response layout."""

    order_id: str
    capture_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# HTTP bodies
# ---------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    """Body for POST /api/paypal/orders, camelCase like the checkout page sends."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    amount: Decimal = Field(..., gt=0, le=10_000, decimal_places=2)
    currency: Currency = Currency.USD
    description: str = Field(default="MatchLens package", max_length=127)
    package_id: str = Field(..., min_length=1, max_length=50)
    package_name: Optional[str] = Field(default=None, max_length=100)


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: PaymentStatus


__all__ = [
    "Currency",
    "PaymentStatus",
    "STATUS_TRANSITIONS",
    "PAYPAL_STATUS_MAP",
    "can_transition",
    "CaptureResult",
    "CreateOrderRequest",
    "StatusUpdateRequest",
]
