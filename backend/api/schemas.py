"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Cards ---


class CardResponse(BaseModel):
    """A card and its current schedule."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    item_id: str
    ease_factor: float
    interval_days: int
    repetitions: int
    next_review_at: datetime
    last_reviewed_at: datetime | None
    active: bool
    version: int


class EnrollRequest(BaseModel):
    """Request to enroll one or more items for an owner."""

    owner_id: str
    item_ids: list[str] = Field(min_length=1)


class ArchiveResponse(BaseModel):
    archived: int


# --- Session ---


class SessionResponse(BaseModel):
    """Current state of an owner's review session."""

    owner_id: str
    state: str  # idle, loaded, reviewing, complete
    card: CardResponse | None
    item: dict[str, Any] | None = None
    position: int
    total: int
    remaining: int


class AnswerRequest(BaseModel):
    """Request to grade the surfaced card."""

    card_id: int
    quality: int  # 0-5, validated by the scheduler
    time_spent: float | None = Field(default=None, ge=0)  # Seconds
    confidence: int | None = Field(default=None, ge=0, le=10)


class ReviewResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    card_id: int
    item_id: str
    quality: int
    is_success: bool
    time_spent: float | None
    confidence: int | None
    previous_interval: int
    new_interval: int
    new_ease_factor: float
    graded_at: datetime


class AnswerResponse(BaseModel):
    """Response after grading: the recorded result and where the session stands."""

    result: ReviewResultResponse
    session: SessionResponse


class SkipRequest(BaseModel):
    card_id: int


class SessionSummaryResponse(BaseModel):
    """Totals for a completed review session."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: str
    total: int
    correct: int
    incorrect: int
    skipped: int
    abandoned: int
    started_at: datetime
    completed_at: datetime | None


# --- Stats ---


class MasteryDistributionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    learning: int
    reviewing: int
    mastered: int


class OwnerStatsResponse(BaseModel):
    """Overall statistics for an owner."""

    model_config = ConfigDict(from_attributes=True)

    total_cards: int
    active_cards: int
    due_today: int
    overdue: int
    average_ease_factor: float
    retention_rate: float
    streak_days: int
    reviews_today: int
    next_review_at: datetime | None
    mastery: MasteryDistributionResponse


class RetentionResponse(BaseModel):
    window_days: int
    retention_rate: float


class StreakResponse(BaseModel):
    streak_days: int


class DailyProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day: date
    reviews: int
    average_quality: float
    new_cards: int
