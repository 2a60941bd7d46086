"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order matters: payments has a FK onto onboarding_submissions.
"""
from matchlens.models.submission import SubmissionORM
from matchlens.models.payment import PaymentORM

__all__ = ["SubmissionORM", "PaymentORM"]
