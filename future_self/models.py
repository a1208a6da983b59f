"""Request and response models using Pydantic."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_core import PydanticCustomError

from .events import DomainEvent


class LetterResponse(BaseModel):
    """Letter returned by the API."""

    id: str
    subject_id: str
    variant: str
    trigger: str
    content: str
    generated_at: datetime
    user_age: int
    future_age: int
    simulation: dict[str, Any] | None = None


class LetterHistoryItem(BaseModel):
    id: str
    variant: str
    trigger: str
    content: str
    created_at: datetime
    read_at: datetime | None = None


class LetterDetailResponse(BaseModel):
    """A single letter with the figures it was written from."""

    id: str
    subject_id: str
    variant: str
    trigger: str
    content: str
    created_at: datetime
    read_at: datetime | None = None
    read_duration_ms: int | None = None
    user_age: int | None = None
    future_age: int | None = None
    current_savings_rate: float | None = None
    optimized_savings_rate: float | None = None
    difference_20yr: float | None = None


class MarkReadResponse(BaseModel):
    success: bool


class EngagementInput(BaseModel):
    read_duration_ms: int | None = Field(None, ge=0, le=24 * 60 * 60 * 1000)


class EngagementResponse(BaseModel):
    letter_id: str
    read_at: datetime | None = None
    read_duration_ms: int | None = None


class TimelineResponse(BaseModel):
    subject_id: str
    years: int
    horizon: str
    current_path: float
    optimized_path: float
    difference: float


class StatisticsResponse(BaseModel):
    """Letter engagement statistics for a subject."""

    total_letters: int
    letters_read: int
    avg_read_duration_ms: float | None = None
    first_letter_at: datetime | None = None
    last_letter_at: datetime | None = None
    by_trigger: dict[str, int] = Field(default_factory=dict)
    this_month: int


class PreferencesInput(BaseModel):
    weekly_letters_enabled: bool | None = None


class PreferencesResponse(BaseModel):
    weekly_letters_enabled: bool
    updated_at: datetime | None = None


class EventBatch(BaseModel):
    """Domain events published by upstream modules."""

    events: list[DomainEvent] = Field(..., min_length=1, max_length=100)


class EventBatchResponse(BaseModel):
    accepted: int


class GoalInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    target_amount: float = Field(..., gt=0)


class SubjectProfileInput(BaseModel):
    """Subject profile written by the upstream user and finance modules."""

    name: str | None = Field(None, max_length=100)
    age: int = Field(..., ge=13, le=120)
    city: str | None = Field(None, max_length=100)
    currency: str = Field("NGN", min_length=3, max_length=3)
    monthly_income: float = Field(..., ge=0)
    net_worth: float | None = None
    savings_rate: float = Field(0.0, ge=0.0, le=1.0)
    weekly_letters_enabled: bool | None = None
    goals: list[GoalInput] = Field(default_factory=list)

    @field_validator("currency", mode="before")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        if not isinstance(value, str) or not value.strip().isalpha():
            raise PydanticCustomError(
                "invalid_currency", "Currency must be a 3-letter code", {"input": value}
            )
        return value.strip().upper()
