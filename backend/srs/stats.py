"""Read-only learning statistics computed from stored cards and review history."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from backend.config import settings, utcnow
from backend.srs.repository import CardRepository
from backend.srs.scheduler import MasteryLevel, mastery_level

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MasteryDistribution:
    learning: int = 0
    reviewing: int = 0
    mastered: int = 0


@dataclass(frozen=True)
class DailyProgress:
    """Review activity on one calendar day."""

    day: date
    reviews: int
    average_quality: float
    new_cards: int  # Cards reviewed for the first time that day


@dataclass(frozen=True)
class OwnerStats:
    """Dashboard summary for one owner."""

    total_cards: int
    active_cards: int
    due_today: int
    overdue: int
    average_ease_factor: float
    retention_rate: float
    streak_days: int
    reviews_today: int
    next_review_at: datetime | None
    mastery: MasteryDistribution


def _start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), datetime.min.time())


class StatisticsAggregator:
    """Computes owner statistics on demand through the card repository."""

    def __init__(self, repository: CardRepository) -> None:
        self.repository = repository

    async def retention_rate(
        self,
        owner_id: str,
        window: timedelta = timedelta(days=settings.retention_window_days),
        now: datetime | None = None,
    ) -> float:
        """Return the fraction of successful reviews in the trailing window.

        Returns 0.0 when the window holds no reviews.
        """
        now = now or utcnow()
        reviews = await self.repository.reviews_since(owner_id, since=now - window)
        reviews = [r for r in reviews if r.graded_at <= now]
        if not reviews:
            return 0.0
        passed = sum(1 for r in reviews if r.is_success)
        return passed / len(reviews)

    async def mastery_distribution(self, owner_id: str) -> MasteryDistribution:
        """Count active cards per mastery level."""
        counts: dict[MasteryLevel, int] = defaultdict(int)
        for card in await self.repository.list_cards(owner_id, active_only=True):
            counts[mastery_level(card.repetitions, card.interval_days)] += 1
        return MasteryDistribution(
            learning=counts[MasteryLevel.LEARNING],
            reviewing=counts[MasteryLevel.REVIEWING],
            mastered=counts[MasteryLevel.MASTERED],
        )

    async def streak(self, owner_id: str, today: date | None = None) -> int:
        """Count consecutive review days ending today or yesterday."""
        today = today or utcnow().date()
        days = [d for d in await self.repository.review_days(owner_id) if d <= today]
        if not days:
            return 0

        # A streak is still alive if the learner hasn't reviewed yet today
        expected = today if days[0] == today else today - timedelta(days=1)
        streak = 0
        for review_day in days:
            if review_day != expected:
                break
            streak += 1
            expected -= timedelta(days=1)
        return streak

    async def due_today(self, owner_id: str, now: datetime | None = None) -> int:
        """Count active cards due at ``now`` (same rule as the due queue)."""
        now = now or utcnow()
        return await self.repository.count_due(owner_id, before=now)

    async def overdue(self, owner_id: str, now: datetime | None = None) -> int:
        """Count active cards that were already due before today started."""
        now = now or utcnow()
        return await self.repository.count_due(owner_id, before=_start_of_day(now) - timedelta(microseconds=1))

    async def daily_progress(
        self,
        owner_id: str,
        days: int = 30,
        now: datetime | None = None,
    ) -> list[DailyProgress]:
        """Return per-day review activity for the last ``days`` days, oldest first.

        Days without reviews are included with zero counts.
        """
        now = now or utcnow()
        first_day = now.date() - timedelta(days=days - 1)

        history = await self.repository.reviews_since(owner_id)
        first_seen: dict[int, date] = {}
        for review in history:
            first_seen.setdefault(review.card_id, review.graded_at.date())

        qualities: dict[date, list[int]] = defaultdict(list)
        for review in history:
            review_day = review.graded_at.date()
            if first_day <= review_day <= now.date():
                qualities[review_day].append(review.quality)

        new_cards: dict[date, int] = defaultdict(int)
        for seen_day in first_seen.values():
            new_cards[seen_day] += 1

        progress = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            values = qualities.get(day, [])
            progress.append(
                DailyProgress(
                    day=day,
                    reviews=len(values),
                    average_quality=round(sum(values) / len(values), 2) if values else 0.0,
                    new_cards=new_cards.get(day, 0),
                )
            )
        return progress

    async def summary(self, owner_id: str, now: datetime | None = None) -> OwnerStats:
        """Return the dashboard summary for an owner."""
        now = now or utcnow()
        cards = await self.repository.list_cards(owner_id)
        active = [c for c in cards if c.active]

        average_ease = sum(c.ease_factor for c in active) / len(active) if active else 0.0
        next_review_at = min((c.next_review_at for c in active), default=None)
        today_start = _start_of_day(now)
        reviews_today = len(
            [r for r in await self.repository.reviews_since(owner_id, since=today_start) if r.graded_at <= now]
        )

        stats = OwnerStats(
            total_cards=len(cards),
            active_cards=len(active),
            due_today=await self.due_today(owner_id, now=now),
            overdue=await self.overdue(owner_id, now=now),
            average_ease_factor=round(average_ease, 2),
            retention_rate=round(await self.retention_rate(owner_id, now=now), 3),
            streak_days=await self.streak(owner_id, today=now.date()),
            reviews_today=reviews_today,
            next_review_at=next_review_at,
            mastery=await self.mastery_distribution(owner_id),
        )
        logger.debug("Computed stats for owner %s: %s", owner_id, stats)
        return stats
