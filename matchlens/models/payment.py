"""
models/payment.py — SQLAlchemy ORM model for captured PayPal payments.

Table: payments
order_id is the idempotency key: the unique constraint is what makes two racing
submissions of the same order commit exactly one row.
customer_email / customer_name are a denormalized audit copy, independent of
later edits to the submission.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matchlens.database import Base
from matchlens.models.submission import JSONType

if TYPE_CHECKING:
    from matchlens.models.submission import SubmissionORM


class PaymentORM(Base):
    """
    ORM model for a single payment tied to one onboarding submission.

    status: 'pending' | 'completed' | 'failed' | 'cancelled' | 'refunded'.
        Supplied at insert time by the orchestrator; later moves go through
        store.update_payment_status() which checks the transition table.
    paypal_data: PayPal's capture record when the server verified the order,
        NULL on the legacy trust-the-client path.
    """
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_payments_order_id"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    payment_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("onboarding_submissions.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="References onboarding_submissions.user_id, cascade delete",
    )
    order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    paypal_payment_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="PayPal capture id",
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    package_id: Mapped[str] = mapped_column(String(50), nullable=False)
    package_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    paypal_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    submission: Mapped["SubmissionORM"] = relationship(back_populates="payments")
