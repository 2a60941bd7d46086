"""
models/submission.py — SQLAlchemy ORM model for onboarding questionnaires.

Table: onboarding_submissions
Parent of payments (one submission → its payments, cascade delete).
Categorical answers are stored as plain strings; membership is enforced by the
Pydantic request schema before a row is ever built.
"""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from matchlens.database import Base

if TYPE_CHECKING:
    from matchlens.models.payment import PaymentORM

# JSONB on Postgres, plain JSON elsewhere (SQLite test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class SubmissionORM(Base):
    """
    ORM model for a paid onboarding submission.

    original_photos / screenshot_photos: ordered lists of Cloudinary HTTPS URLs,
        never raw image bytes.
    email: unique; the second questionnaire for the same address is a conflict.
    """
    __tablename__ = "onboarding_submissions"
    __table_args__ = (
        UniqueConstraint("email", name="uq_onboarding_submissions_email"),
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID primary key, returned to the client as userId",
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    dating_goal: Mapped[str] = mapped_column(String(20), nullable=False)
    current_matches: Mapped[str] = mapped_column(String(10), nullable=False)
    body_type: Mapped[str] = mapped_column(String(20), nullable=False)
    style_preference: Mapped[str] = mapped_column(String(20), nullable=False)
    ethnicity: Mapped[str] = mapped_column(String(20), nullable=False)
    interests: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    current_bio: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    weekly_tips: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_photos: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    screenshot_photos: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
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

    payments: Mapped[list["PaymentORM"]] = relationship(
        back_populates="submission",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
