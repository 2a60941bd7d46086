"""
Intake Orchestrator tests — the payment-gated commit workflow end to end,
with PayPal and Cloudinary replaced by AsyncMock fakes (see conftest.py).

Covers:
  - gating: validation and payment-status failures perform no I/O at all
  - verification failures leave the database untouched
  - photo upload degradation still commits, with degraded=True
  - idempotency: replay and concurrent duplicates yield one stored row
"""
from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from matchlens.assets.cloudinary_client import CloudinaryConfigError
from matchlens.errors import (
    DuplicateEmailError,
    DuplicateOrderError,
    PaymentNotCompletedError,
    StorageError,
    UpstreamVerificationError,
    ValidationError,
)
from matchlens.intake.orchestrator import IntakeOrchestrator, parse_intake_request
from matchlens.models.payment import PaymentORM
from matchlens.models.submission import SubmissionORM
from matchlens.tests.demo_payloads import make_intake_payload


async def _count(sessionmaker, model) -> int:
    async with sessionmaker() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_stores_everything_and_returns_receipt(orchestrator, sessionmaker, uploader, verifier) -> None:
    receipt = await orchestrator.submit(make_intake_payload())

    assert receipt["orderId"] == "5O190127TN364715T"
    assert receipt["userId"]
    assert receipt["paymentId"]
    assert receipt["verified"] is True
    assert receipt["degraded"] is False
    assert receipt["assets"] == {
        "original": {"requested": 2, "uploaded": 2},
        "screenshots": {"requested": 1, "uploaded": 1},
    }
    verifier.verify.assert_awaited_once()
    assert uploader.upload_batch.await_count == 2
    folders = {call.args[1] for call in uploader.upload_batch.await_args_list}
    assert folders == {"matchlens-onboarding-photos", "matchlens-onboarding-screenshots"}

    async with sessionmaker() as session:
        payment = (await session.execute(select(PaymentORM))).scalar_one()
        submission = (await session.execute(select(SubmissionORM))).scalar_one()
    assert payment.user_id == submission.user_id == receipt["userId"]
    assert payment.payment_id == receipt["paymentId"]
    assert payment.status == "completed"
    assert payment.paypal_data["captureId"] == "3C679366HH908993F"
    assert len(submission.original_photos) == 2
    assert all(url.startswith("https://") for url in submission.original_photos)


@pytest.mark.asyncio
async def test_submit_without_verification_trusts_claim(sessionmaker, uploader, verifier) -> None:
    orchestrator = IntakeOrchestrator(sessionmaker, uploader, verifier=verifier, verify_payments=False)
    receipt = await orchestrator.submit(make_intake_payload())

    assert receipt["verified"] is False
    verifier.verify.assert_not_awaited()
    async with sessionmaker() as session:
        payment = (await session.execute(select(PaymentORM))).scalar_one()
    assert payment.paypal_data is None


def test_verification_requires_a_verifier(sessionmaker, uploader) -> None:
    with pytest.raises(ValueError):
        IntakeOrchestrator(sessionmaker, uploader, verifier=None, verify_payments=True)


# ---------------------------------------------------------------------------
# Gating: no side effects
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["pending", "COMPLETED", "", None])
async def test_non_completed_status_is_rejected_before_any_io(orchestrator, sessionmaker, uploader, verifier, status) -> None:
    with pytest.raises(PaymentNotCompletedError):
        await orchestrator.submit(make_intake_payload(status=status))

    verifier.verify.assert_not_awaited()
    uploader.upload_batch.assert_not_awaited()
    assert await _count(sessionmaker, PaymentORM) == 0


@pytest.mark.asyncio
async def test_missing_fields_are_all_reported(orchestrator, uploader, verifier) -> None:
    payload = make_intake_payload()
    del payload["orderId"]
    payload["amount"] = "-5"
    payload["onboardingData"]["email"] = "not-an-email"

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.submit(payload)

    fields = {d["field"] for d in exc_info.value.details}
    assert {"orderId", "amount", "onboardingData.email"} <= fields
    verifier.verify.assert_not_awaited()
    uploader.upload_batch.assert_not_awaited()


def test_parse_rejects_non_object_body() -> None:
    with pytest.raises(ValidationError):
        parse_intake_request(["not", "an", "object"])


def test_parse_normalizes_profile_fields() -> None:
    payload = make_intake_payload(email="Jordan.Avery@Example.COM")
    payload["onboardingData"].update(
        {"name": "  Jordan  ", "age": "", "phone": None, "screenshotPhotos": None}
    )
    request = parse_intake_request(payload)
    assert request.customer_email == "jordan.avery@example.com"
    assert request.onboarding_data.email == "jordan.avery@example.com"
    assert request.onboarding_data.name == "Jordan"
    assert request.onboarding_data.age is None
    assert request.onboarding_data.phone == ""
    assert request.onboarding_data.screenshot_photos == []


@pytest.mark.parametrize(
    "email",
    ["jo@example..com", "jo@.example.com", "jo example@example.com", "@example.com", "jo@example"],
)
def test_malformed_emails_are_rejected(email) -> None:
    payload = make_intake_payload()
    payload["customerEmail"] = email
    payload["onboardingData"]["email"] = email

    with pytest.raises(ValidationError) as exc_info:
        parse_intake_request(payload)

    fields = {d["field"] for d in exc_info.value.details}
    assert {"customerEmail", "onboardingData.email"} <= fields


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field,value",
    [
        ("datingGoal", "marriage"),
        ("currentMatches", "11+"),
        ("interests", []),
        ("interests", [f"i{n}" for n in range(11)]),
        ("age", 17),
        ("currentBio", "x" * 501),
    ],
)
async def test_invalid_questionnaire_answers_are_rejected(orchestrator, field, value) -> None:
    payload = make_intake_payload()
    payload["onboardingData"][field] = value
    with pytest.raises(ValidationError):
        await orchestrator.submit(payload)


# ---------------------------------------------------------------------------
# Verification failures: no writes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("reason,status_code", [("mismatch", 402), ("unavailable", 502), ("configuration", 503)])
async def test_verification_failure_writes_nothing(orchestrator, sessionmaker, uploader, verifier, reason, status_code) -> None:
    verifier.verify.side_effect = UpstreamVerificationError("PayPal says no", reason=reason)

    with pytest.raises(UpstreamVerificationError) as exc_info:
        await orchestrator.submit(make_intake_payload())

    assert exc_info.value.status_code == status_code
    uploader.upload_batch.assert_not_awaited()
    assert await _count(sessionmaker, PaymentORM) == 0
    assert await _count(sessionmaker, SubmissionORM) == 0


# ---------------------------------------------------------------------------
# Upload degradation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unconfigured_object_store_still_commits(orchestrator, sessionmaker, uploader) -> None:
    uploader.upload_batch.side_effect = CloudinaryConfigError("Cloudinary credentials are not configured")

    receipt = await orchestrator.submit(make_intake_payload())

    assert receipt["degraded"] is True
    assert receipt["assets"]["original"] == {"requested": 2, "uploaded": 0}
    async with sessionmaker() as session:
        submission = (await session.execute(select(SubmissionORM))).scalar_one()
    assert submission.original_photos == []
    assert submission.screenshot_photos == []


@pytest.mark.asyncio
async def test_unexpected_upload_failure_still_commits(orchestrator, sessionmaker, uploader) -> None:
    uploader.upload_batch.side_effect = RuntimeError("uploader blew up")

    receipt = await orchestrator.submit(make_intake_payload())

    assert receipt["degraded"] is True
    assert receipt["assets"]["screenshots"] == {"requested": 1, "uploaded": 0}
    assert await _count(sessionmaker, SubmissionORM) == 1


@pytest.mark.asyncio
async def test_partial_upload_marks_receipt_degraded(orchestrator, uploader) -> None:
    async def _lose_one(photos, folder):
        return [f"https://res.cloudinary.com/demo/{folder}/0.jpg"] if photos else []

    uploader.upload_batch.side_effect = _lose_one
    receipt = await orchestrator.submit(make_intake_payload())

    assert receipt["degraded"] is True
    assert receipt["assets"]["original"] == {"requested": 2, "uploaded": 1}
    assert receipt["assets"]["screenshots"] == {"requested": 1, "uploaded": 1}


@pytest.mark.asyncio
async def test_no_photos_is_not_degraded(orchestrator, uploader) -> None:
    payload = make_intake_payload()
    payload["onboardingData"]["originalPhotos"] = []
    payload["onboardingData"]["screenshotPhotos"] = []

    receipt = await orchestrator.submit(payload)

    assert receipt["degraded"] is False
    assert receipt["assets"]["original"] == {"requested": 0, "uploaded": 0}


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_replayed_order_returns_existing_receipt_without_side_effects(orchestrator, sessionmaker, uploader, verifier) -> None:
    first = await orchestrator.submit(make_intake_payload())
    verifier.verify.reset_mock()
    uploader.upload_batch.reset_mock()

    with pytest.raises(DuplicateOrderError) as exc_info:
        await orchestrator.submit(make_intake_payload())

    assert exc_info.value.receipt == {
        "userId": first["userId"],
        "paymentId": first["paymentId"],
        "orderId": first["orderId"],
    }
    verifier.verify.assert_not_awaited()
    uploader.upload_batch.assert_not_awaited()
    assert await _count(sessionmaker, PaymentORM) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_submissions_store_one_row(orchestrator, sessionmaker) -> None:
    results = await asyncio.gather(
        orchestrator.submit(make_intake_payload()),
        orchestrator.submit(make_intake_payload()),
        return_exceptions=True,
    )

    receipts = [r for r in results if isinstance(r, dict)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(receipts) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], DuplicateOrderError)
    assert errors[0].receipt["paymentId"] == receipts[0]["paymentId"]
    assert await _count(sessionmaker, PaymentORM) == 1
    assert await _count(sessionmaker, SubmissionORM) == 1


@pytest.mark.asyncio
async def test_same_email_new_order_is_refused_before_capture(orchestrator, sessionmaker, uploader, verifier) -> None:
    await orchestrator.submit(make_intake_payload(order_id="ORDER-ONE", payment_id="CAP-ONE"))
    verifier.verify.reset_mock()
    uploader.upload_batch.reset_mock()

    with pytest.raises(DuplicateEmailError):
        await orchestrator.submit(make_intake_payload(order_id="ORDER-TWO", payment_id="CAP-TWO"))

    # Refused before PayPal or Cloudinary are touched
    verifier.verify.assert_not_awaited()
    uploader.upload_batch.assert_not_awaited()
    assert await _count(sessionmaker, PaymentORM) == 1


@pytest.mark.asyncio
async def test_email_constraint_still_backs_up_the_pre_check(orchestrator, sessionmaker, monkeypatch) -> None:
    from matchlens import store

    await orchestrator.submit(make_intake_payload(order_id="ORDER-ONE", payment_id="CAP-ONE"))
    # A racing request can pass the read-only check before the first one commits
    monkeypatch.setattr(store, "email_registered", AsyncMock(return_value=False))

    with pytest.raises(DuplicateEmailError):
        await orchestrator.submit(make_intake_payload(order_id="ORDER-TWO", payment_id="CAP-TWO"))
    assert await _count(sessionmaker, PaymentORM) == 1


# ---------------------------------------------------------------------------
# Storage failure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_storage_failure_surfaces_as_storage_error(sessionmaker, uploader, verifier, monkeypatch) -> None:
    from matchlens import store

    orchestrator = IntakeOrchestrator(sessionmaker, uploader, verifier=verifier)
    monkeypatch.setattr(
        store, "commit_submission", AsyncMock(side_effect=StorageError("Could not store submission, please retry"))
    )

    with pytest.raises(StorageError) as exc_info:
        await orchestrator.submit(make_intake_payload())
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_commit_outcome_is_logged_when_caller_is_cancelled(sessionmaker, uploader, verifier, monkeypatch, caplog) -> None:
    from matchlens import store

    started = asyncio.Event()
    release = asyncio.Event()

    async def _slow_failing_commit(*args, **kwargs):
        started.set()
        await release.wait()
        raise StorageError("Could not store submission, please retry")

    monkeypatch.setattr(store, "commit_submission", _slow_failing_commit)
    orchestrator = IntakeOrchestrator(sessionmaker, uploader, verifier=verifier)

    with caplog.at_level(logging.WARNING, logger="matchlens.intake.orchestrator"):
        submit = asyncio.create_task(orchestrator.submit(make_intake_payload()))
        await started.wait()
        submit.cancel()
        with pytest.raises(asyncio.CancelledError):
            await submit

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)

    assert "Detached commit failed order_id=5O190127TN364715T error=StorageError" in caplog.text
