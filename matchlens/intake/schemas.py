"""
schemas.py — Intake Pydantic v2 data contracts.

Defines:
  - DatingGoal, CurrentMatches, BodyType, StylePreference, Ethnicity enums
  - PhotoPayload, OnboardingData  (the questionnaire embedded in an intake call)
  - IntakeRequest                 (POST /api/payments/store body)
  - ErrorDetail, ErrorBody, ErrorResponse  (cross-cutting error envelope)

Wire format is camelCase (orderId, onboardingData.datingGoal, ...) because that
is what the checkout page posts; attributes are snake_case in Python.
extra="ignore" on IntakeRequest: the capture page also forwards captureTime
and paypalData, which the server does not trust.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from matchlens.payments.schemas import Currency

MAX_INTERESTS = 10
MAX_BIO_LENGTH = 500
MIN_AGE = 18
MAX_AGE = 100


def _strip_email(value):
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Questionnaire enums
# ---------------------------------------------------------------------------

class DatingGoal(str, Enum):
    serious = "serious"
    casual = "casual"
    friends = "friends"
    explore = "explore"


class CurrentMatches(str, Enum):
    zero_two = "0-2"
    three_five = "3-5"
    six_ten = "6-10"
    ten_plus = "10+"


class BodyType(str, Enum):
    slim = "slim"
    average = "average"
    athletic = "athletic"
    curvy = "curvy"
    muscular = "muscular"


class StylePreference(str, Enum):
    casual = "casual"
    professional = "professional"
    trendy = "trendy"
    classic = "classic"
    edgy = "edgy"


class Ethnicity(str, Enum):
    white = "white"
    black = "black"
    hispanic = "hispanic"
    asian = "asian"
    middle_eastern = "middle-eastern"
    mixed = "mixed"
    other = "other"


# ---------------------------------------------------------------------------
# Onboarding questionnaire
# ---------------------------------------------------------------------------

class PhotoPayload(BaseModel):
    """File object form: {data: <base64>, type: 'image/png', name: 'me.png'}."""
    model_config = ConfigDict(extra="ignore")

    data: str = Field(..., min_length=1)
    type: Optional[str] = None
    name: Optional[str] = None


# A photo is either a bare base64 / data-URL string or a PhotoPayload object
Photo = Union[str, PhotoPayload]


class OnboardingData(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    age: Optional[int] = Field(default=None, ge=MIN_AGE, le=MAX_AGE)
    dating_goal: DatingGoal
    current_matches: CurrentMatches
    body_type: BodyType
    style_preference: StylePreference
    ethnicity: Ethnicity
    interests: List[str] = Field(..., min_length=1, max_length=MAX_INTERESTS)
    current_bio: str = Field(default="", max_length=MAX_BIO_LENGTH)
    phone: str = Field(default="", max_length=20)
    weekly_tips: bool = False
    original_photos: List[Photo] = Field(default_factory=list)
    screenshot_photos: List[Photo] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("name must be at least 2 non-blank characters")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _trim_email(cls, value):
        return _strip_email(value)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("age", mode="before")
    @classmethod
    def _blank_age_is_none(cls, value):
        # Form posts send age as a string; an untouched field arrives as ""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("phone", "current_bio", mode="before")
    @classmethod
    def _none_is_blank(cls, value):
        return "" if value is None else value

    @field_validator("original_photos", "screenshot_photos", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return [] if value is None else value


# ---------------------------------------------------------------------------
# IntakeRequest: POST /api/payments/store
# ---------------------------------------------------------------------------

class IntakeRequest(BaseModel):
    """
    Composite "store payment + profile" call.

    status is deliberately a free string: anything other than "completed" is a
    PaymentNotCompletedError (checked by the orchestrator), not a schema error.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    order_id: str = Field(..., min_length=3, max_length=100)
    payment_id: str = Field(..., min_length=3, max_length=100)
    amount: Decimal = Field(..., gt=0, le=10_000, decimal_places=2)
    currency: Currency = Currency.USD
    package_id: str = Field(..., min_length=1, max_length=50)
    package_name: str = Field(..., min_length=1, max_length=100)
    customer_email: EmailStr
    customer_name: Optional[str] = Field(default=None, max_length=100)
    status: Optional[str] = None
    onboarding_data: OnboardingData

    @field_validator("order_id", "payment_id", "package_id", "package_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("customer_email", mode="before")
    @classmethod
    def _strip_customer_email(cls, value):
        return _strip_email(value)

    @field_validator("customer_email")
    @classmethod
    def _lower_customer_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, value):
        return Currency.USD if value in (None, "") else value


# ---------------------------------------------------------------------------
# Error response models: used by main.py exception handlers (cross-cutting)
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single field-level validation or business-rule error."""
    model_config = ConfigDict(extra="forbid")

    field: Optional[str] = None   # Dot-notation field path, e.g. "onboardingData.email"
    issue: str                     # Human-readable description of the problem


class ErrorBody(BaseModel):
    """Error envelope body."""
    model_config = ConfigDict(extra="allow")

    code: str                                      # VALIDATION_ERROR, DUPLICATE_ORDER, etc.
    message: str                                   # High-level error description
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """
    Standard error response format for all MatchLens endpoints.

    Structure: {"success": false, "error": {"code": "...", "message": "...", "details": [...]}}
    """
    model_config = ConfigDict(extra="forbid")

    success: bool = False
    error: ErrorBody


__all__ = [
    "DatingGoal",
    "CurrentMatches",
    "BodyType",
    "StylePreference",
    "Ethnicity",
    "PhotoPayload",
    "Photo",
    "OnboardingData",
    "IntakeRequest",
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
]
