"""Type definitions for the Future Self service."""

from enum import Enum
from typing import Any

from typing_extensions import TypedDict


class LetterTrigger(str, Enum):
    """What caused a letter to be generated."""

    USER_REQUEST = "user_request"
    WEEKLY_SCHEDULED = "weekly_scheduled"
    POST_DECISION = "post_decision"
    GOAL_MILESTONE = "goal_milestone"


class TokenUsage(TypedDict, total=False):
    """Token usage information from LLM API."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float


class PathProjection(TypedDict):
    """Savings rate and projected net worth per horizon for one path."""

    savings_rate: float
    projected_net_worth: dict[str, float]


class Simulation(TypedDict):
    """Dual-path projection: current behavior against the optimized path."""

    subject_id: str
    current_path: PathProjection
    optimized_path: PathProjection
    difference_20yr: float


class LetterDraft(TypedDict, total=False):
    """Letter produced by a generator, before it is persisted."""

    content: str
    variant: str
    simulation: Simulation | None
    user_age: int
    future_age: int
    usage: TokenUsage


class LetterResult(TypedDict, total=False):
    """Persisted letter as returned to callers and stored in the cache."""

    id: str
    subject_id: str
    variant: str
    trigger: str
    content: str
    generated_at: str
    simulation: Simulation | None
    user_age: int
    future_age: int
    usage: TokenUsage


class LetterRecord(TypedDict, total=False):
    """Database record for a persisted letter."""

    id: str
    subject_id: str
    variant: str
    trigger: str
    content: str
    created_at: str
    read_at: str | None
    read_duration_ms: int | None
    metadata: dict[str, Any]


class TimelinePoint(TypedDict):
    """Both paths at the projection horizon nearest a number of years."""

    subject_id: str
    years: int
    horizon: str
    current_path: float
    optimized_path: float
    difference: float


class Engagement(TypedDict):
    letter_id: str
    read_at: str | None
    read_duration_ms: int | None


class LetterStats(TypedDict):
    """Engagement statistics over a subject's letters."""

    total_letters: int
    letters_read: int
    avg_read_duration_ms: float | None
    first_letter_at: str | None
    last_letter_at: str | None
    by_trigger: dict[str, int]
    this_month: int


class Preferences(TypedDict):
    weekly_letters_enabled: bool
    updated_at: str | None


class RetryEntry(TypedDict):
    """Failed generation awaiting a backoff-scheduled retry.

    Timestamps are epoch milliseconds.
    """

    subject_id: str
    attempt_count: int
    last_attempt: int
    next_retry: int
    last_error: str


class JobOutcome(TypedDict):
    """Result of a manual job trigger."""

    success: bool
    message: str


class HealthStatus(TypedDict):
    """Health status of system components."""

    storage: bool
    cache: bool
