"""
store.py — Data access facade for MatchLens.

Provides a consistent, high-level API for persisting and retrieving submissions
and payments. Routes and the intake orchestrator use these functions; nothing
else touches SQLAlchemy directly.

Design principles:
  - Reads are async and accept an AsyncSession (request-scoped via get_db)
  - commit_submission() owns its own session + transaction: both rows or neither
  - No raw SQL: ORM-only queries
  - Logs only ids, never names, emails, or photo URLs
  - Unique-constraint violations surface as DuplicateOrderError / DuplicateEmailError,
    every other database failure as StorageError
"""
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchlens.errors import (
    DuplicateEmailError,
    DuplicateOrderError,
    InvalidStatusTransitionError,
    StorageError,
)
from matchlens.intake.schemas import IntakeRequest
from matchlens.models.payment import PaymentORM
from matchlens.models.submission import SubmissionORM
from matchlens.payments.schemas import PaymentStatus, can_transition

logger = logging.getLogger(__name__)

# Substrings identifying which unique constraint fired: Postgres reports the
# constraint name, SQLite reports table.column
_ORDER_ID_MARKERS = ("uq_payments_order_id", "payments.order_id")
_EMAIL_MARKERS = ("uq_onboarding_submissions_email", "onboarding_submissions.email")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return f"{value:.2f}" if value is not None else None


def receipt(payment: PaymentORM) -> dict[str, str]:
    """The stable receipt the client keeps: userId, paymentId, orderId."""
    return {
        "userId": payment.user_id,
        "paymentId": payment.payment_id,
        "orderId": payment.order_id,
    }


def payment_to_dict(payment: PaymentORM) -> dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "user_id": payment.user_id,
        "order_id": payment.order_id,
        "paypal_payment_id": payment.paypal_payment_id,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "package_id": payment.package_id,
        "package_name": payment.package_name,
        "customer_email": payment.customer_email,
        "customer_name": payment.customer_name,
        "status": payment.status,
        "created_at": _iso(payment.created_at),
        "updated_at": _iso(payment.updated_at),
    }


def submission_to_dict(submission: SubmissionORM) -> dict[str, Any]:
    return {
        "user_id": submission.user_id,
        "name": submission.name,
        "age": submission.age,
        "dating_goal": submission.dating_goal,
        "current_matches": submission.current_matches,
        "body_type": submission.body_type,
        "style_preference": submission.style_preference,
        "ethnicity": submission.ethnicity,
        "interests": submission.interests,
        "current_bio": submission.current_bio,
        "email": submission.email,
        "phone": submission.phone,
        "weekly_tips": submission.weekly_tips,
        "original_photos": submission.original_photos,
        "screenshot_photos": submission.screenshot_photos,
        "created_at": _iso(submission.created_at),
        "updated_at": _iso(submission.updated_at),
    }


def payment_details(payment: PaymentORM, submission: SubmissionORM) -> dict[str, Any]:
    """Payment joined with its submission, flattened like the old payment_details view."""
    details = payment_to_dict(payment)
    details["payment_created_at"] = details.pop("created_at")
    details["payment_updated_at"] = details.pop("updated_at")
    profile = submission_to_dict(submission)
    profile.pop("user_id")
    profile["onboarding_created_at"] = profile.pop("created_at")
    profile["onboarding_updated_at"] = profile.pop("updated_at")
    return {**details, **profile}


def _classify_integrity_error(exc: IntegrityError, order_id: str) -> Exception:
    message = str(exc.orig).lower()
    if any(marker in message for marker in _ORDER_ID_MARKERS):
        return DuplicateOrderError(order_id)
    if any(marker in message for marker in _EMAIL_MARKERS):
        return DuplicateEmailError()
    return StorageError("Could not store submission: integrity check failed")


# ---------------------------------------------------------------------------
# Transactional write
# ---------------------------------------------------------------------------

async def commit_submission(
    sessionmaker: async_sessionmaker[AsyncSession],
    request: IntakeRequest,
    original_photos: list[str],
    screenshot_photos: list[str],
    status: PaymentStatus = PaymentStatus.completed,
    paypal_data: Optional[dict[str, Any]] = None,
) -> tuple[str, str]:
    """
    Insert the onboarding submission and its payment as one atomic unit.

    Returns (user_id, payment_id). The submission is flushed first so the
    payment row can reference its generated user_id; any failure rolls back
    both inserts and the session is released on every path.

    Raises:
        DuplicateOrderError: order_id already committed (possibly by a racing request).
        DuplicateEmailError: onboarding email already registered.
        StorageError: any other database failure.
    """
    profile = request.onboarding_data
    try:
        async with sessionmaker() as session:
            async with session.begin():
                submission = SubmissionORM(
                    name=profile.name,
                    age=profile.age,
                    dating_goal=profile.dating_goal.value,
                    current_matches=profile.current_matches.value,
                    body_type=profile.body_type.value,
                    style_preference=profile.style_preference.value,
                    ethnicity=profile.ethnicity.value,
                    interests=list(profile.interests),
                    current_bio=profile.current_bio,
                    email=profile.email,
                    phone=profile.phone,
                    weekly_tips=profile.weekly_tips,
                    original_photos=list(original_photos),
                    screenshot_photos=list(screenshot_photos),
                )
                session.add(submission)
                await session.flush()

                payment = PaymentORM(
                    user_id=submission.user_id,
                    order_id=request.order_id,
                    paypal_payment_id=request.payment_id,
                    amount=request.amount,
                    currency=request.currency.value,
                    package_id=request.package_id,
                    package_name=request.package_name,
                    customer_email=request.customer_email,
                    customer_name=request.customer_name,
                    status=status.value,
                    paypal_data=paypal_data,
                )
                session.add(payment)
                await session.flush()
                user_id, payment_id = submission.user_id, payment.payment_id
    except IntegrityError as exc:
        error = _classify_integrity_error(exc, request.order_id)
        logger.warning(
            "Submission rolled back order_id=%s reason=%s", request.order_id, type(error).__name__
        )
        raise error from exc
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Submission transaction failed order_id=%s: %s", request.order_id, exc)
        raise StorageError("Could not store submission, please retry") from exc

    logger.info(
        "Stored submission user_id=%s payment_id=%s order_id=%s",
        user_id, payment_id, request.order_id,
    )
    return user_id, payment_id


# ---------------------------------------------------------------------------
# Point lookups
# ---------------------------------------------------------------------------

def _joined():
    return select(PaymentORM, SubmissionORM).join(
        SubmissionORM, PaymentORM.user_id == SubmissionORM.user_id
    )


async def get_payment_by_order_id(db: AsyncSession, order_id: str) -> Optional[dict[str, Any]]:
    """Payment + submission for an order id. None if no such order (caller raises 404)."""
    row = (await db.execute(_joined().where(PaymentORM.order_id == order_id))).first()
    if row is None:
        return None
    return payment_details(*row)


async def get_payment_by_payment_id(db: AsyncSession, payment_id: str) -> Optional[dict[str, Any]]:
    row = (await db.execute(_joined().where(PaymentORM.payment_id == payment_id))).first()
    if row is None:
        return None
    return payment_details(*row)


async def get_receipt_by_order_id(db: AsyncSession, order_id: str) -> Optional[dict[str, str]]:
    result = await db.execute(select(PaymentORM).where(PaymentORM.order_id == order_id))
    payment = result.scalar_one_or_none()
    return receipt(payment) if payment is not None else None


async def email_registered(db: AsyncSession, email: str) -> bool:
    """True if an onboarding submission already uses this (normalized) email."""
    result = await db.execute(
        select(SubmissionORM.user_id).where(SubmissionORM.email == email).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_user_with_payments(db: AsyncSession, user_id: str) -> Optional[dict[str, Any]]:
    """
    Submission by user_id with all of its payments, newest first.
    Returns None if the user does not exist.
    """
    result = await db.execute(select(SubmissionORM).where(SubmissionORM.user_id == user_id))
    submission = result.scalar_one_or_none()
    if submission is None:
        return None
    payments = (
        await db.execute(
            select(PaymentORM)
            .where(PaymentORM.user_id == user_id)
            .order_by(PaymentORM.created_at.desc())
        )
    ).scalars().all()
    return {
        "user": submission_to_dict(submission),
        "payments": [payment_to_dict(p) for p in payments],
        "paymentCount": len(payments),
    }


# ---------------------------------------------------------------------------
# Listing & statistics
# ---------------------------------------------------------------------------

async def list_payments(
    db: AsyncSession,
    limit: int,
    offset: int = 0,
    max_limit: int = 100,
) -> list[dict[str, Any]]:
    """
    Payments joined with their submission, newest first.
    limit is clamped to [1, max_limit] so a client cannot ask for the whole table.
    """
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    rows = (
        await db.execute(
            _joined()
            .order_by(PaymentORM.created_at.desc(), PaymentORM.payment_id)
            .limit(limit)
            .offset(offset)
        )
    ).all()
    return [payment_details(payment, submission) for payment, submission in rows]


async def get_payment_stats(db: AsyncSession) -> dict[str, Any]:
    """Totals across all payments: count, revenue, per-status counts, average order value."""
    def _count(status: PaymentStatus):
        return func.coalesce(func.sum(case((PaymentORM.status == status.value, 1), else_=0)), 0)

    row = (
        await db.execute(
            select(
                func.count(PaymentORM.payment_id),
                func.coalesce(func.sum(PaymentORM.amount), 0),
                func.coalesce(func.avg(PaymentORM.amount), 0),
                _count(PaymentStatus.completed),
                _count(PaymentStatus.pending),
                _count(PaymentStatus.failed),
                _count(PaymentStatus.refunded),
                _count(PaymentStatus.cancelled),
            )
        )
    ).one()
    total, revenue, average, completed, pending, failed, refunded, cancelled = row
    return {
        "total_payments": int(total),
        "total_revenue": _money(Decimal(str(revenue))),
        "avg_order_value": _money(Decimal(str(average)).quantize(Decimal("0.01"))),
        "completed_payments": int(completed),
        "pending_payments": int(pending),
        "failed_payments": int(failed),
        "refunded_payments": int(refunded),
        "cancelled_payments": int(cancelled),
    }


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def update_payment_status(
    db: AsyncSession,
    payment_id: str,
    new_status: PaymentStatus,
) -> Optional[dict[str, Any]]:
    """
    Move a payment to new_status if the transition table allows it.
    Returns None if the payment does not exist.
    Uses flush() (not commit()); caller / get_db() dependency handles commit.

    Raises:
        InvalidStatusTransitionError: e.g. completed → pending.
    """
    result = await db.execute(
        select(PaymentORM).where(PaymentORM.payment_id == payment_id).with_for_update()
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        return None

    current = PaymentStatus(payment.status)
    if not can_transition(current, new_status):
        raise InvalidStatusTransitionError(current.value, new_status.value)

    payment.status = new_status.value
    await db.flush()
    logger.info(
        "Payment status changed payment_id=%s %s->%s", payment_id, current.value, new_status.value
    )
    return payment_to_dict(payment)
