"""Persistence gateway for SRS cards and their review history.

All reads and writes go through here. Schedule updates use an optimistic
version check so concurrent grades on one card cannot overwrite each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import and_, delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.config import settings, utcnow
from backend.models.card import Card
from backend.models.review_log import ReviewLog
from backend.srs.errors import CardNotFound, ConcurrentModification, DuplicateCard, StorageTimeout
from backend.srs.scheduler import (
    DEFAULT_MASTERY_INTERVAL_DAYS,
    INITIAL_EASE_FACTOR,
    INITIAL_INTERVAL,
    CardState,
    is_success,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewAudit:
    """Inputs of a grading event that are recorded alongside the new schedule."""

    quality: int
    time_spent: float | None = None
    confidence: int | None = None


@dataclass(frozen=True)
class ReviewResult:
    """An immutable record of one grading event."""

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

    @classmethod
    def from_log(cls, log: ReviewLog) -> ReviewResult:
        return cls(
            card_id=log.card_id,
            item_id=log.item_id,
            quality=log.quality,
            is_success=log.is_success,
            time_spent=log.time_spent,
            confidence=log.confidence,
            previous_interval=log.previous_interval,
            new_interval=log.new_interval,
            new_ease_factor=log.new_ease_factor,
            graded_at=log.graded_at,
        )


@dataclass(frozen=True)
class GradeOutcome:
    """The card after a grade was applied, with the state it had before."""

    card: Card
    previous: CardState
    current: CardState
    review: ReviewResult | None = None


def card_state(card: Card) -> CardState:
    """Snapshot the schedule fields of a card."""
    return CardState(
        ease_factor=card.ease_factor,
        interval_days=card.interval_days,
        repetitions=card.repetitions,
        next_review_at=card.next_review_at,
        last_reviewed_at=card.last_reviewed_at,
        active=card.active,
    )


class CardRepository:
    """Owner-scoped access to cards and review logs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = settings.storage_timeout_seconds,
    ) -> None:
        """Initialize with a session factory and a per-operation timeout."""
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session bounded by the storage timeout."""
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with self.session_factory() as db:
                    yield db
        except TimeoutError as exc:
            logger.warning("Storage operation %s timed out after %.1fs", operation, self.timeout_seconds)
            raise StorageTimeout(operation, self.timeout_seconds) from exc

    # --- Cards ---

    async def create(self, owner_id: str, item_id: str, now: datetime | None = None) -> Card:
        """Enroll one item for an owner.

        Raises:
            DuplicateCard: If the owner already has a card for the item.
        """
        cards = await self.bulk_create(owner_id, [item_id], now=now)
        return cards[0]

    async def bulk_create(
        self,
        owner_id: str,
        item_ids: list[str],
        now: datetime | None = None,
    ) -> list[Card]:
        """Enroll several items at once.

        The batch is all-or-nothing: a repeated item in ``item_ids`` or an item
        the owner already has a card for aborts the whole batch.

        Raises:
            DuplicateCard: Naming every offending item ID.
        """
        if not item_ids:
            return []
        now = now or utcnow()

        seen: set[str] = set()
        repeated: list[str] = []
        for item_id in item_ids:
            if item_id in seen and item_id not in repeated:
                repeated.append(item_id)
            seen.add(item_id)

        async with self._session("bulk_create") as db:
            existing_stmt = select(Card.item_id).where(
                and_(Card.owner_id == owner_id, Card.item_id.in_(list(seen)))
            )
            existing = set((await db.execute(existing_stmt)).scalars().all())
            duplicates = repeated + [i for i in item_ids if i in existing and i not in repeated]
            if duplicates:
                raise DuplicateCard(owner_id, list(dict.fromkeys(duplicates)))

            cards = [
                Card(
                    owner_id=owner_id,
                    item_id=item_id,
                    ease_factor=INITIAL_EASE_FACTOR,
                    interval_days=INITIAL_INTERVAL,
                    repetitions=0,
                    next_review_at=_first_review_at(now),
                    last_reviewed_at=None,
                    active=True,
                    version=1,
                )
                for item_id in item_ids
            ]
            db.add_all(cards)
            try:
                await db.commit()
            except IntegrityError as exc:
                # Lost a race with a concurrent enrollment of the same item
                await db.rollback()
                raise DuplicateCard(owner_id, list(item_ids)) from exc

        logger.info("Enrolled %d cards for owner %s", len(cards), owner_id)
        return cards

    async def get(self, card_id: int) -> Card:
        """Fetch a card by ID.

        Raises:
            CardNotFound: If no such card exists.
        """
        async with self._session("get") as db:
            card = await db.get(Card, card_id)
        if card is None:
            raise CardNotFound(card_id)
        return card

    async def get_for_item(self, owner_id: str, item_id: str) -> Card | None:
        """Return the owner's card for an item, or None."""
        stmt = select(Card).where(and_(Card.owner_id == owner_id, Card.item_id == item_id))
        async with self._session("get_for_item") as db:
            return (await db.execute(stmt)).scalar_one_or_none()

    async def list_cards(self, owner_id: str, active_only: bool = False) -> list[Card]:
        """Return the owner's cards ordered by next review time."""
        stmt = select(Card).where(Card.owner_id == owner_id)
        if active_only:
            stmt = stmt.where(Card.active.is_(True))
        stmt = stmt.order_by(Card.next_review_at.asc(), Card.id.asc())
        async with self._session("list_cards") as db:
            return list((await db.execute(stmt)).scalars().all())

    async def fetch_due(self, owner_id: str, now: datetime | None = None, limit: int | None = None) -> list[Card]:
        """Return active cards due at ``now``, most overdue first.

        Args:
            owner_id: The owner whose cards to query.
            now: Reference time (defaults to utcnow).
            limit: Maximum number of cards to return (None for no cap).
        """
        now = now or utcnow()
        stmt = (
            select(Card)
            .where(
                and_(
                    Card.owner_id == owner_id,
                    Card.active.is_(True),
                    Card.next_review_at <= now,
                )
            )
            .order_by(Card.next_review_at.asc(), Card.id.asc())  # Most overdue first
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session("fetch_due") as db:
            return list((await db.execute(stmt)).scalars().all())

    async def count_due(self, owner_id: str, before: datetime) -> int:
        """Count active cards with ``next_review_at <= before``."""
        stmt = select(func.count(Card.id)).where(
            and_(
                Card.owner_id == owner_id,
                Card.active.is_(True),
                Card.next_review_at <= before,
            )
        )
        async with self._session("count_due") as db:
            return (await db.execute(stmt)).scalar() or 0

    async def apply_grade(
        self,
        card_id: int,
        grade_fn: Callable[[CardState], CardState],
        audit: ReviewAudit | None = None,
        expected_version: int | None = None,
    ) -> GradeOutcome:
        """Read a card, compute its next schedule and write it back atomically.

        The write only succeeds if the card's version is unchanged since the
        read. When ``audit`` is given, the review log row is written in the
        same transaction. Callers holding a version token from an earlier read
        pass it as ``expected_version`` to reject grading a stale card.

        Raises:
            CardNotFound: If no such card exists.
            ConcurrentModification: If another writer updated the card first.
        """
        async with self._session("apply_grade") as db:
            card = await db.get(Card, card_id)
            if card is None:
                raise CardNotFound(card_id)
            previous = card_state(card)
            version = card.version
            if expected_version is not None and expected_version != version:
                raise ConcurrentModification(card_id)
            current = grade_fn(previous)

            stmt = (
                update(Card)
                .where(and_(Card.id == card_id, Card.version == version))
                .values(
                    ease_factor=current.ease_factor,
                    interval_days=current.interval_days,
                    repetitions=current.repetitions,
                    next_review_at=current.next_review_at,
                    last_reviewed_at=current.last_reviewed_at,
                    active=current.active,
                    version=version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                await db.rollback()
                logger.warning("Lost update on card %d at version %d", card_id, version)
                raise ConcurrentModification(card_id)

            log = None
            if audit is not None:
                log = ReviewLog(
                    card_id=card.id,
                    owner_id=card.owner_id,
                    item_id=card.item_id,
                    quality=audit.quality,
                    is_success=is_success(audit.quality),
                    time_spent=audit.time_spent,
                    confidence=audit.confidence,
                    previous_interval=previous.interval_days,
                    new_interval=current.interval_days,
                    new_ease_factor=current.ease_factor,
                    graded_at=current.last_reviewed_at or utcnow(),
                )
                db.add(log)
            await db.commit()
            await db.refresh(card)

        return GradeOutcome(
            card=card,
            previous=previous,
            current=current,
            review=ReviewResult.from_log(log) if log is not None else None,
        )

    async def suspend(self, card_id: int) -> Card:
        """Exclude a card from due queries without touching its schedule."""
        return await self._set_active(card_id, False)

    async def restore(self, card_id: int) -> Card:
        """Return a suspended or archived card to due queries."""
        return await self._set_active(card_id, True)

    async def _set_active(self, card_id: int, active: bool) -> Card:
        async with self._session("set_active") as db:
            card = await db.get(Card, card_id)
            if card is None:
                raise CardNotFound(card_id)
            card.active = active
            card.version += 1
            await db.commit()
            await db.refresh(card)
        logger.info("Card %d %s", card_id, "restored" if active else "suspended")
        return card

    async def reset(self, card_id: int, now: datetime | None = None) -> Card:
        """Discard a card's progress and put it back to its enrollment state."""
        now = now or utcnow()
        async with self._session("reset") as db:
            card = await db.get(Card, card_id)
            if card is None:
                raise CardNotFound(card_id)
            card.ease_factor = INITIAL_EASE_FACTOR
            card.interval_days = INITIAL_INTERVAL
            card.repetitions = 0
            card.next_review_at = _first_review_at(now)
            card.last_reviewed_at = None
            card.active = True
            card.version += 1
            await db.commit()
            await db.refresh(card)
        return card

    async def delete(self, card_id: int) -> None:
        """Delete a card and its review history."""
        async with self._session("delete") as db:
            card = await db.get(Card, card_id)
            if card is None:
                raise CardNotFound(card_id)
            await db.execute(delete(ReviewLog).where(ReviewLog.card_id == card_id))
            await db.execute(delete(Card).where(Card.id == card_id))
            await db.commit()
        logger.info("Deleted card %d", card_id)

    async def archive_mastered(
        self,
        owner_id: str,
        mastery_interval_days: int = DEFAULT_MASTERY_INTERVAL_DAYS,
    ) -> int:
        """Deactivate every active card whose interval reached mastery.

        Returns:
            The number of cards archived by this call (0 on a repeat call).
        """
        stmt = (
            update(Card)
            .where(
                and_(
                    Card.owner_id == owner_id,
                    Card.active.is_(True),
                    Card.interval_days >= mastery_interval_days,
                )
            )
            .values(active=False, version=Card.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session("archive_mastered") as db:
            result = await db.execute(stmt)
            await db.commit()
        archived = result.rowcount or 0
        if archived:
            logger.info("Archived %d mastered cards for owner %s", archived, owner_id)
        return archived

    # --- Review history ---

    async def reviews_since(self, owner_id: str, since: datetime | None = None) -> list[ReviewResult]:
        """Return the owner's review results graded at or after ``since``, oldest first."""
        stmt = select(ReviewLog).where(ReviewLog.owner_id == owner_id)
        if since is not None:
            stmt = stmt.where(ReviewLog.graded_at >= since)
        stmt = stmt.order_by(ReviewLog.graded_at.asc(), ReviewLog.id.asc())
        async with self._session("reviews_since") as db:
            logs = (await db.execute(stmt)).scalars().all()
        return [ReviewResult.from_log(log) for log in logs]

    async def review_at(self, card_id: int, graded_at: datetime) -> ReviewResult | None:
        """Return the card's review logged at exactly ``graded_at``, if any."""
        stmt = (
            select(ReviewLog)
            .where(and_(ReviewLog.card_id == card_id, ReviewLog.graded_at == graded_at))
            .order_by(ReviewLog.id.desc())
            .limit(1)
        )
        async with self._session("review_at") as db:
            log = (await db.execute(stmt)).scalar_one_or_none()
        return ReviewResult.from_log(log) if log is not None else None

    async def review_days(self, owner_id: str) -> list[date]:
        """Return the distinct calendar days with at least one review, newest first."""
        day = func.date(ReviewLog.graded_at)
        stmt = (
            select(distinct(day))
            .where(ReviewLog.owner_id == owner_id)
            .order_by(day.desc())
        )
        async with self._session("review_days") as db:
            rows = (await db.execute(stmt)).all()
        return [_as_date(row[0]) for row in rows]


def _first_review_at(now: datetime) -> datetime:
    return now + timedelta(days=INITIAL_INTERVAL)


def _as_date(value: date | str) -> date:
    # SQLite returns DATE() as an ISO string
    if isinstance(value, str):
        return date.fromisoformat(value)
    return value
