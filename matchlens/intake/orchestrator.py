"""
orchestrator.py — Intake Orchestrator: the payment-gated commit workflow.

submit() runs, strictly in order:
  1. parse + validate the composite request      (ValidationError, no I/O)
  2. payment-status gate: must be "completed"     (PaymentNotCompletedError, no I/O)
  3. pre-checks: order_id, then onboarding email  (DuplicateOrderError / DuplicateEmailError, read only)
  4. PayPal verification when enabled             (UpstreamVerificationError, no writes)
  5. both photo collections uploaded concurrently (degrades to [], never fails)
  6. one transaction: submission + payment        (DuplicateOrderError / StorageError)
  7. receipt

The unique constraint on payments.order_id, not step 3, is what serializes two
racing requests for the same order; step 3 only spares a resubmitting browser
a second PayPal call and a second round of photo uploads, and keeps a new order
for an already-registered email from being captured and then refused.

A client disconnect does not cancel an in-flight commit: step 6 is shielded.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchlens import store
from matchlens.assets.cloudinary_client import CloudinaryError
from matchlens.assets.uploader import AssetUploader
from matchlens.errors import (
    DuplicateEmailError,
    DuplicateOrderError,
    PaymentNotCompletedError,
    StorageError,
    ValidationError,
)
from matchlens.intake.schemas import IntakeRequest, Photo
from matchlens.payments.schemas import CaptureResult, PaymentStatus
from matchlens.payments.verifier import PaymentVerifier

logger = logging.getLogger(__name__)


def parse_intake_request(payload: Any) -> IntakeRequest:
    """
    Structural validation of the raw request body.
    All field violations are reported at once, with camelCase field paths.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return IntakeRequest.model_validate(payload)
    except PydanticValidationError as exc:
        details = [
            {
                "field": ".".join(str(loc) for loc in err["loc"]) or None,
                "issue": err["msg"],
            }
            for err in exc.errors()
        ]
        raise ValidationError("Missing or invalid payment fields", details=details) from exc


class IntakeOrchestrator:
    """Top-level workflow; every collaborator is injected by main.py lifespan."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        uploader: AssetUploader,
        verifier: Optional[PaymentVerifier] = None,
        verify_payments: bool = True,
        original_photos_folder: str = "matchlens-onboarding-photos",
        screenshot_photos_folder: str = "matchlens-onboarding-screenshots",
    ):
        if verify_payments and verifier is None:
            raise ValueError("verify_payments=True requires a PaymentVerifier")
        self._sessionmaker = sessionmaker
        self._uploader = uploader
        self._verifier = verifier
        self._verify_payments = verify_payments
        self._original_folder = original_photos_folder
        self._screenshot_folder = screenshot_photos_folder

    async def submit(self, payload: Any) -> dict[str, Any]:
        """Run the full workflow for one intake call and return the receipt."""
        request = parse_intake_request(payload)

        if request.status != PaymentStatus.completed.value:
            logger.info(
                "Intake rejected order_id=%s status=%s (payment not completed)",
                request.order_id, request.status,
            )
            raise PaymentNotCompletedError(
                "Payment must be completed before storing questionnaire data"
            )

        existing = await self._existing_receipt(request.order_id)
        if existing is not None:
            logger.info("Intake replay order_id=%s, returning existing receipt", request.order_id)
            raise DuplicateOrderError(request.order_id, receipt=existing)

        if await self._email_registered(request.onboarding_data.email):
            # A twin of this request may have committed since the order check
            existing = await self._existing_receipt(request.order_id)
            if existing is not None:
                raise DuplicateOrderError(request.order_id, receipt=existing)
            logger.info("Intake rejected order_id=%s (email already registered)", request.order_id)
            raise DuplicateEmailError()

        capture: Optional[CaptureResult] = None
        if self._verify_payments:
            capture = await self._verifier.verify(
                order_id=request.order_id,
                payment_id=request.payment_id,
                amount=request.amount,
                currency=request.currency.value,
            )

        profile = request.onboarding_data
        original_urls, screenshot_urls = await asyncio.gather(
            self._upload_collection(profile.original_photos, self._original_folder, request.order_id),
            self._upload_collection(profile.screenshot_photos, self._screenshot_folder, request.order_id),
        )

        # Shielded: the commit finishes (or rolls back) even if the client goes away
        commit = asyncio.ensure_future(
            store.commit_submission(
                self._sessionmaker,
                request,
                original_urls,
                screenshot_urls,
                status=PaymentStatus.completed,
                paypal_data=PaymentVerifier.summarize(capture),
            )
        )
        try:
            user_id, payment_id = await asyncio.shield(commit)
        except asyncio.CancelledError:
            commit.add_done_callback(functools.partial(_log_detached_commit, request.order_id))
            raise
        except DuplicateOrderError as exc:
            # Lost the race against a concurrent submission of the same order
            exc.receipt = await self._existing_receipt(request.order_id)
            raise
        except DuplicateEmailError:
            # A replayed order trips the email constraint first (the submission
            # row is inserted before the payment row)
            existing = await self._existing_receipt(request.order_id)
            if existing is not None:
                raise DuplicateOrderError(request.order_id, receipt=existing) from None
            raise

        assets = {
            "original": {"requested": len(profile.original_photos), "uploaded": len(original_urls)},
            "screenshots": {"requested": len(profile.screenshot_photos), "uploaded": len(screenshot_urls)},
        }
        degraded = any(a["uploaded"] < a["requested"] for a in assets.values())
        logger.info(
            "Intake committed order_id=%s user_id=%s payment_id=%s verified=%s degraded=%s",
            request.order_id, user_id, payment_id, capture is not None, degraded,
        )
        return {
            "userId": user_id,
            "paymentId": payment_id,
            "orderId": request.order_id,
            "verified": capture is not None,
            "assets": assets,
            "degraded": degraded,
        }

    async def _upload_collection(self, photos: list[Photo], folder: str, order_id: str) -> list[str]:
        """A whole collection failing degrades to no URLs rather than failing the intake."""
        try:
            return await self._uploader.upload_batch(photos, folder)
        except CloudinaryError as exc:
            logger.warning(
                "Photo collection dropped order_id=%s folder=%s count=%d: %s",
                order_id, folder, len(photos), exc,
            )
            return []
        except Exception:
            logger.exception(
                "Photo collection dropped order_id=%s folder=%s count=%d: unexpected error",
                order_id, folder, len(photos),
            )
            return []

    async def _existing_receipt(self, order_id: str) -> Optional[dict[str, str]]:
        try:
            async with self._sessionmaker() as session:
                return await store.get_receipt_by_order_id(session, order_id)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError("Could not check for an existing order, please retry") from exc

    async def _email_registered(self, email: str) -> bool:
        try:
            async with self._sessionmaker() as session:
                return await store.email_registered(session, email)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError("Could not check for an existing submission, please retry") from exc


def _log_detached_commit(order_id: str, task: asyncio.Future) -> None:
    """Report the outcome of a commit whose caller was cancelled while it ran."""
    if task.cancelled():
        logger.warning("Detached commit cancelled order_id=%s", order_id)
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "Detached commit failed order_id=%s error=%s: %s", order_id, type(exc).__name__, exc
        )
        return
    user_id, payment_id = task.result()
    logger.info(
        "Detached commit stored order_id=%s user_id=%s payment_id=%s", order_id, user_id, payment_id
    )
