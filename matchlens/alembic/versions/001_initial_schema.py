"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 12:00:00.000000 UTC

Creates the two intake tables:
  - onboarding_submissions  (questionnaire answers + Cloudinary photo URLs)
  - payments                (one row per PayPal order, FK → onboarding_submissions)

uq_payments_order_id is the idempotency key for POST /api/payments/store.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # --- onboarding_submissions table ---
    op.create_table(
        "onboarding_submissions",
        sa.Column("user_id", sa.String(length=36), nullable=False, comment="UUID primary key, returned to the client as userId"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("dating_goal", sa.String(length=20), nullable=False),
        sa.Column("current_matches", sa.String(length=10), nullable=False),
        sa.Column("body_type", sa.String(length=20), nullable=False),
        sa.Column("style_preference", sa.String(length=20), nullable=False),
        sa.Column("ethnicity", sa.String(length=20), nullable=False),
        sa.Column("interests", JSONB, nullable=False),
        sa.Column("current_bio", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("weekly_tips", sa.Boolean(), nullable=False),
        sa.Column("original_photos", JSONB, nullable=False, comment="Ordered Cloudinary URLs, never image bytes"),
        sa.Column("screenshot_photos", JSONB, nullable=False, comment="Ordered Cloudinary URLs, never image bytes"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.UniqueConstraint("email", name="uq_onboarding_submissions_email"),
    )
    op.create_index(op.f("ix_onboarding_submissions_email"), "onboarding_submissions", ["email"], unique=False)
    op.create_index(op.f("ix_onboarding_submissions_created_at"), "onboarding_submissions", ["created_at"], unique=False)

    # --- payments table ---
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False, comment="References onboarding_submissions.user_id, cascade delete"),
        sa.Column("order_id", sa.String(length=100), nullable=False),
        sa.Column("paypal_payment_id", sa.String(length=100), nullable=False, comment="PayPal capture id"),
        sa.Column("amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("package_id", sa.String(length=50), nullable=False),
        sa.Column("package_name", sa.String(length=100), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("customer_name", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("paypal_data", JSONB, nullable=True, comment="PayPal capture snapshot; NULL when the server did not verify"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("payment_id"),
        sa.UniqueConstraint("order_id", name="uq_payments_order_id"),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["onboarding_submissions.user_id"],
            name="fk_payments_user_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index(op.f("ix_payments_user_id"), "payments", ["user_id"], unique=False)
    op.create_index(op.f("ix_payments_status"), "payments", ["status"], unique=False)
    op.create_index(op.f("ix_payments_created_at"), "payments", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_payments_created_at"), table_name="payments")
    op.drop_index(op.f("ix_payments_status"), table_name="payments")
    op.drop_index(op.f("ix_payments_user_id"), table_name="payments")
    op.drop_table("payments")
    op.drop_index(op.f("ix_onboarding_submissions_created_at"), table_name="onboarding_submissions")
    op.drop_index(op.f("ix_onboarding_submissions_email"), table_name="onboarding_submissions")
    op.drop_table("onboarding_submissions")
