"""
errors.py — MatchLens error taxonomy.

Every failure the intake workflow can surface is one of these. main.py maps
them onto the standard {success, error: {code, message, details}} envelope;
routes and services never build HTTP errors for these cases themselves.

  ValidationError              422  malformed/missing fields, raised before any I/O
  PaymentNotCompletedError     400  payment status claim is not "completed"
  UpstreamVerificationError    402/502/503  PayPal could not confirm the capture
  DuplicateOrderError          409  order_id already committed (idempotency key)
  DuplicateEmailError          409  onboarding email already registered
  InvalidStatusTransitionError 409  payment status move not in the transition table
  NotFoundError                404  lookup miss
  StorageError                 503  transaction/connection failure, rolled back
"""
from __future__ import annotations

from typing import Any, Optional


class IntakeError(Exception):
    """Base class: carries the stable machine-checkable code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(IntakeError):
    code = "VALIDATION_ERROR"
    status_code = 422


class PaymentNotCompletedError(IntakeError):
    code = "PAYMENT_NOT_COMPLETED"
    status_code = 400


class UpstreamVerificationError(IntakeError):
    """
    PayPal could not confirm the claimed capture.

    reason is one of: configuration, authentication, unavailable, processor,
    not_captured, mismatch. Only 'unavailable' and 'processor' are worth a
    client retry; configuration problems need an operator.
    """

    code = "PAYMENT_VERIFICATION_FAILED"

    _STATUS_BY_REASON = {
        "configuration": 503,
        "authentication": 503,
        "unavailable": 502,
        "processor": 502,
        "not_captured": 402,
        "mismatch": 402,
    }

    def __init__(self, message: str, reason: str, retryable: bool = False):
        super().__init__(message, details=[{"field": None, "issue": reason}])
        self.reason = reason
        self.retryable = retryable
        self.status_code = self._STATUS_BY_REASON.get(reason, 502)


class DuplicateOrderError(IntakeError):
    """order_id already has a PaymentRecord. receipt is filled in when known."""

    code = "DUPLICATE_ORDER"
    status_code = 409

    def __init__(self, order_id: str, receipt: Optional[dict[str, Any]] = None):
        super().__init__(f"Order '{order_id}' has already been processed")
        self.order_id = order_id
        self.receipt = receipt


class DuplicateEmailError(IntakeError):
    code = "DUPLICATE_EMAIL"
    status_code = 409

    def __init__(self) -> None:
        super().__init__("An onboarding submission with this email already exists")


class InvalidStatusTransitionError(IntakeError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Payment status cannot move from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class NotFoundError(IntakeError):
    code = "NOT_FOUND"
    status_code = 404


class StorageError(IntakeError):
    code = "STORAGE_ERROR"
    status_code = 503
    retryable = True
