"""SM-2 spaced repetition scheduler.

A forgetting-curve model that grows review intervals geometrically with a
per-card ease factor, adjusted by the learner's recall quality.
Reference: https://super-memory.com/english/ol/sm2.htm

Key concepts:
- Ease factor (EF): Multiplier for interval growth. Lower means harder to remember.
- Interval: Days until the next review after a successful grade.
- Repetitions: Consecutive successful reviews since the last failure.
- Quality: 0=Blackout, 1-2=Incorrect, 3-4=Correct, 5=Perfect. Success is quality >= 3.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from backend.config import settings, utcnow
from backend.srs.errors import InvalidQuality

logger = logging.getLogger(__name__)

INITIAL_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3  # Fixed floor of the algorithm, not configurable
DEFAULT_MAX_EASE_FACTOR = 5.0
INITIAL_INTERVAL = 1
SECOND_INTERVAL = 6
FAILURE_EASE_PENALTY = 0.2
PASSING_QUALITY = 3
MIN_QUALITY = 0
MAX_QUALITY = 5
DEFAULT_MASTERY_INTERVAL_DAYS = 365

# Adjusted strategy bounds
MAX_CONFIDENCE = 10
BASELINE_TIME_SECONDS = 30
TIME_SCALE_SECONDS = 120
MIN_TIME_MULTIPLIER = 0.5
MAX_TIME_MULTIPLIER = 1.5


class Strategy(Enum):
    """How a successful interval is computed."""

    SM2 = "sm2"                    # Base algorithm
    SM2_ADJUSTED = "sm2_adjusted"  # Base + confidence and response-time multipliers


class MasteryLevel(Enum):
    LEARNING = "learning"
    REVIEWING = "reviewing"
    MASTERED = "mastered"


@dataclass(frozen=True)
class CardState:
    """The SM-2 schedule of a card."""

    ease_factor: float
    interval_days: int
    repetitions: int
    next_review_at: datetime
    last_reviewed_at: datetime | None = None
    active: bool = True


def is_success(quality: int) -> bool:
    """Return True if the quality counts as a successful recall."""
    return quality >= PASSING_QUALITY


def validate_quality(quality: object) -> int:
    """Return the quality unchanged or raise InvalidQuality."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQuality(quality)
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise InvalidQuality(quality)
    return quality


def mastery_level(repetitions: int, interval_days: int) -> MasteryLevel:
    """Classify a schedule as learning, reviewing or mastered."""
    if repetitions < 3:
        return MasteryLevel.LEARNING
    if repetitions < 10 and interval_days < 30:
        return MasteryLevel.REVIEWING
    return MasteryLevel.MASTERED


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


class SM2:
    """SuperMemo-2 scheduler with a selectable interval strategy."""

    def __init__(
        self,
        strategy: Strategy = Strategy.SM2,
        max_ease_factor: float | None = DEFAULT_MAX_EASE_FACTOR,
        mastery_interval_days: int = DEFAULT_MASTERY_INTERVAL_DAYS,
    ) -> None:
        """Initialize the scheduler.

        Args:
            strategy: Interval strategy for successful reviews.
            max_ease_factor: Ease ceiling applied after a success; None leaves it unbounded.
            mastery_interval_days: Interval at which a card is deactivated as mastered.
        """
        if max_ease_factor is not None and max_ease_factor < MIN_EASE_FACTOR:
            raise ValueError(f"max_ease_factor must be >= {MIN_EASE_FACTOR}")
        self.strategy = strategy
        self.max_ease_factor = max_ease_factor
        self.mastery_interval_days = mastery_interval_days

    def initial_state(self, now: datetime | None = None) -> CardState:
        """Create the schedule of a freshly enrolled card (due one day from now)."""
        now = now or utcnow()
        return CardState(
            ease_factor=INITIAL_EASE_FACTOR,
            interval_days=INITIAL_INTERVAL,
            repetitions=0,
            next_review_at=now + timedelta(days=INITIAL_INTERVAL),
            last_reviewed_at=None,
            active=True,
        )

    def grade(
        self,
        state: CardState,
        quality: int,
        review_time: datetime | None = None,
        time_spent: float | None = None,
        confidence: int | None = None,
    ) -> CardState:
        """Apply a review grade and return the next schedule.

        Args:
            state: Current card state.
            quality: Recall quality (0-5).
            review_time: When the review happened (defaults to now).
            time_spent: Seconds spent answering; used by the adjusted strategy.
            confidence: Self-reported confidence (0-10); used by the adjusted strategy.

        Returns:
            The new CardState. The input state is never modified.

        Raises:
            InvalidQuality: If quality is not an integer in [0, 5].
        """
        quality = validate_quality(quality)
        review_time = review_time or utcnow()

        if is_success(quality):
            repetitions = state.repetitions + 1
            ease_factor = self._clamp_ease(state.ease_factor + self._ease_delta(quality))
            if repetitions == 1:
                interval = INITIAL_INTERVAL
            elif repetitions == 2:
                interval = SECOND_INTERVAL
            else:
                interval = _round_half_up(state.interval_days * ease_factor)
            interval = self._adjust_interval(interval, time_spent, confidence)
        else:
            repetitions = 0
            interval = INITIAL_INTERVAL
            ease_factor = max(MIN_EASE_FACTOR, state.ease_factor - FAILURE_EASE_PENALTY)

        interval = max(INITIAL_INTERVAL, interval)
        active = state.active
        if interval >= self.mastery_interval_days:
            active = False

        logger.debug(
            "Graded q=%d: reps %d->%d, interval %d->%d, ease %.2f->%.2f",
            quality,
            state.repetitions,
            repetitions,
            state.interval_days,
            interval,
            state.ease_factor,
            ease_factor,
        )

        return replace(
            state,
            ease_factor=ease_factor,
            interval_days=interval,
            repetitions=repetitions,
            next_review_at=review_time + timedelta(days=interval),
            last_reviewed_at=review_time,
            active=active,
        )

    def _ease_delta(self, quality: int) -> float:
        """EF' = EF + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02))"""
        miss = MAX_QUALITY - quality
        return 0.1 - miss * (0.08 + miss * 0.02)

    def _clamp_ease(self, ease_factor: float) -> float:
        ease_factor = max(MIN_EASE_FACTOR, ease_factor)
        if self.max_ease_factor is not None:
            ease_factor = min(self.max_ease_factor, ease_factor)
        return ease_factor

    def _adjust_interval(
        self,
        interval: int,
        time_spent: float | None,
        confidence: int | None,
    ) -> int:
        """Scale a successful interval by confidence and response time.

        Only the adjusted strategy does this, and only when both signals are present.
        Confidence maps 0..10 onto 0.8..1.2; answering faster than 30s lengthens
        the interval, slower shortens it, bounded to 0.5..1.5.
        """
        if self.strategy is not Strategy.SM2_ADJUSTED:
            return interval
        if time_spent is None or confidence is None:
            return interval

        confidence = max(0, min(MAX_CONFIDENCE, confidence))
        confidence_multiplier = 0.8 + (confidence / MAX_CONFIDENCE) * 0.4
        time_multiplier = max(
            MIN_TIME_MULTIPLIER,
            min(MAX_TIME_MULTIPLIER, 1 - (time_spent - BASELINE_TIME_SECONDS) / TIME_SCALE_SECONDS),
        )
        return _round_half_up(interval * confidence_multiplier * time_multiplier)


def default_scheduler() -> SM2:
    """Return an SM2 scheduler configured from application settings."""
    return SM2(
        strategy=Strategy(settings.scheduling_strategy),
        max_ease_factor=settings.max_ease_factor,
        mastery_interval_days=settings.mastery_interval_days,
    )
