"""Review session state machine.

A session snapshots the owner's due cards once, serves them one at a time,
applies each grade through the repository, and reports totals at the end.

States: IDLE -> LOADED -> REVIEWING -> COMPLETE. Cards that fall due while a
session is running are left for the next session.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backend.config import settings, utcnow
from backend.models.card import Card
from backend.srs.errors import (
    ConcurrentModification,
    NoActiveSession,
    OutOfOrder,
    SessionInProgress,
    SessionStateError,
    StorageTimeout,
)
from backend.srs.items import ItemSource
from backend.srs.repository import CardRepository, GradeOutcome, ReviewAudit, ReviewResult, card_state
from backend.srs.scheduler import SM2, CardState, default_scheduler, validate_quality

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    LOADED = "loaded"
    REVIEWING = "reviewing"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SessionSummary:
    """Totals for a finished (or abandoned) review session."""

    owner_id: str
    total: int
    correct: int
    incorrect: int
    skipped: int
    abandoned: int
    started_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class SessionView:
    """What the presentation layer needs to render the session."""

    owner_id: str
    state: SessionState
    card: Card | None
    item: Mapping[str, Any] | None
    position: int  # 1-based index of the surfaced card, 0 when none
    total: int
    remaining: int


@dataclass
class ReviewSession:
    """One owner's review session over a point-in-time snapshot of due cards."""

    owner_id: str
    card_ids: tuple[int, ...]
    started_at: datetime
    cards: dict[int, Card] = field(default_factory=dict)
    state: SessionState = SessionState.LOADED
    results: list[ReviewResult] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    abandoned: int = 0
    completed_at: datetime | None = None
    _pending: deque[int] = field(default_factory=deque)

    def __post_init__(self) -> None:
        """Fill the pending queue from the snapshot."""
        self._pending = deque(self.card_ids)

    @property
    def current_card_id(self) -> int | None:
        """Return the surfaced card ID, or None if nothing is left."""
        if self.state is not SessionState.REVIEWING:
            return None
        return self._pending[0]

    @property
    def remaining(self) -> int:
        return len(self._pending)

    @property
    def position(self) -> int:
        if self.current_card_id is None:
            return 0
        return len(self.card_ids) - len(self._pending) + 1

    def begin(self, now: datetime) -> None:
        """Move from LOADED to REVIEWING, or straight to COMPLETE if the snapshot is empty."""
        if self.state is not SessionState.LOADED:
            raise SessionStateError(f"Cannot begin a session in state {self.state.value}")
        if self._pending:
            self.state = SessionState.REVIEWING
        else:
            self._finish(now)

    def advance(self, now: datetime) -> None:
        """Drop the surfaced card and complete the session once the queue is empty."""
        self._pending.popleft()
        if not self._pending:
            self._finish(now)

    def abandon(self, now: datetime) -> None:
        """Discard the rest of the queue. Grades already applied stay committed."""
        self.abandoned += len(self._pending)
        self._pending.clear()
        self._finish(now)

    def summary(self) -> SessionSummary:
        correct = sum(1 for r in self.results if r.is_success)
        return SessionSummary(
            owner_id=self.owner_id,
            total=len(self.card_ids),
            correct=correct,
            incorrect=len(self.results) - correct,
            skipped=len(self.skipped),
            abandoned=self.abandoned,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def _finish(self, now: datetime) -> None:
        self.state = SessionState.COMPLETE
        self.completed_at = now


@dataclass
class _OwnerLock:
    """An owner's mutex and the number of callers holding or waiting on it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionManager:
    """Runs review sessions, at most one in progress per owner.

    Starting a session while the owner's previous one is still REVIEWING is
    rejected with SessionInProgress; the caller must complete it first.
    Finished sessions stay readable for ``finished_session_ttl`` and are then
    forgotten.
    """

    def __init__(
        self,
        repository: CardRepository,
        scheduler: SM2 | None = None,
        max_cards: int = settings.max_reviews_per_session,
        max_attempts: int = settings.grade_max_attempts,
        retry_wait_seconds: float = 0.1,
        item_source: ItemSource | None = None,
        finished_session_ttl: timedelta = timedelta(seconds=settings.finished_session_ttl_seconds),
    ) -> None:
        """Initialize the manager.

        Args:
            repository: Card persistence gateway.
            scheduler: SM-2 scheduler (defaults to one built from settings).
            max_cards: Maximum cards snapshotted into one session.
            max_attempts: Attempts for a grade write before the error is surfaced.
            retry_wait_seconds: Base of the exponential backoff between attempts.
            item_source: Optional source of item payloads for session views.
            finished_session_ttl: How long a COMPLETE session is kept after it ends.
        """
        self.repository = repository
        self.scheduler = scheduler or default_scheduler()
        self.max_cards = max_cards
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.item_source = item_source
        self.finished_session_ttl = finished_session_ttl
        self._sessions: dict[str, ReviewSession] = {}
        self._locks: dict[str, _OwnerLock] = {}

    def state(self, owner_id: str) -> SessionState:
        """Return the owner's session state (IDLE when there is none)."""
        session = self._sessions.get(owner_id)
        return session.state if session else SessionState.IDLE

    async def start_review(self, owner_id: str, now: datetime | None = None) -> SessionView:
        """Snapshot the owner's due cards and surface the first one.

        Raises:
            SessionInProgress: If the owner already has a session in REVIEWING.
        """
        now = now or utcnow()
        self.evict_finished(now)
        async with self._owner_lock(owner_id):
            existing = self._sessions.get(owner_id)
            if existing is not None and existing.state is SessionState.REVIEWING:
                raise SessionInProgress(owner_id)

            cards = await self.repository.fetch_due(owner_id, now=now, limit=self.max_cards)
            session = ReviewSession(
                owner_id=owner_id,
                card_ids=tuple(card.id for card in cards),
                started_at=now,
                cards={card.id: card for card in cards},
            )
            self._sessions[owner_id] = session
            session.begin(now)

        logger.info("Started session for owner %s: %d cards queued", owner_id, len(session.card_ids))
        return self._view(session)

    def current(self, owner_id: str) -> SessionView:
        """Return the owner's session view without changing it."""
        return self._view(self._require(owner_id))

    async def answer(
        self,
        owner_id: str,
        card_id: int,
        quality: int,
        time_spent: float | None = None,
        confidence: int | None = None,
        now: datetime | None = None,
    ) -> ReviewResult:
        """Grade the surfaced card and advance the session.

        Args:
            owner_id: The reviewing owner.
            card_id: Must be the surfaced card.
            quality: Recall quality (0-5).
            time_spent: Seconds taken to answer.
            confidence: Self-reported confidence (0-10).
            now: Grading time (defaults to utcnow).

        Returns:
            The recorded ReviewResult. If an earlier attempt for this card
            already committed, that result is returned and nothing is
            graded again.

        Raises:
            InvalidQuality: If quality is outside 0-5 (nothing is written).
            OutOfOrder: If card_id is not the surfaced card.
            ConcurrentModification: If the card changed since the snapshot.
        """
        validate_quality(quality)
        now = now or utcnow()
        async with self._owner_lock(owner_id):
            session = self._require_reviewing(owner_id)
            self._check_head(session, card_id)

            outcome = await self._apply_grade(session.cards[card_id], quality, time_spent, confidence, now)
            review = outcome.review
            if review is None:
                raise SessionStateError(f"Grade for card {card_id} was stored without a review log")
            session.results.append(review)
            session.advance(now)

        logger.info(
            "Owner %s graded card %d q=%d: interval %d -> %d days",
            owner_id,
            card_id,
            review.quality,
            outcome.previous.interval_days,
            outcome.current.interval_days,
        )
        if session.state is SessionState.COMPLETE:
            logger.info("Session for owner %s exhausted its queue", owner_id)
        return review

    async def skip(self, owner_id: str, card_id: int, now: datetime | None = None) -> SessionView:
        """Drop the surfaced card from this session without grading it.

        Raises:
            OutOfOrder: If card_id is not the surfaced card.
        """
        now = now or utcnow()
        async with self._owner_lock(owner_id):
            session = self._require_reviewing(owner_id)
            self._check_head(session, card_id)
            session.skipped.append(card_id)
            session.advance(now)
        logger.debug("Owner %s skipped card %d", owner_id, card_id)
        return self._view(session)

    async def complete(self, owner_id: str, force: bool = False, now: datetime | None = None) -> SessionSummary:
        """Finish the session and return its totals.

        Args:
            owner_id: The reviewing owner.
            force: End early, discarding the cards still queued.
            now: Completion time (defaults to utcnow).

        Raises:
            NoActiveSession: If the owner has no session.
            SessionStateError: If cards remain and force is False.
        """
        now = now or utcnow()
        async with self._owner_lock(owner_id):
            return self._complete(owner_id, force, now)

    async def close(self, owner_id: str, now: datetime | None = None) -> SessionSummary:
        """Force-complete the session if needed and return the owner to IDLE."""
        now = now or utcnow()
        async with self._owner_lock(owner_id):
            summary = self._complete(owner_id, True, now)
            del self._sessions[owner_id]
        return summary

    def evict_finished(self, now: datetime) -> int:
        """Forget COMPLETE sessions that ended more than ``finished_session_ttl`` ago.

        Returns:
            The number of sessions dropped.
        """
        cutoff = now - self.finished_session_ttl
        stale = [
            owner_id
            for owner_id, session in self._sessions.items()
            if session.state is SessionState.COMPLETE
            and session.completed_at is not None
            and session.completed_at < cutoff
            and owner_id not in self._locks
        ]
        for owner_id in stale:
            del self._sessions[owner_id]
        if stale:
            logger.debug("Evicted %d finished sessions", len(stale))
        return len(stale)

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str) -> AsyncIterator[None]:
        """Serialise one owner's mutations; the lock lives only while in use."""
        entry = self._locks.get(owner_id)
        if entry is None:
            entry = self._locks[owner_id] = _OwnerLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[owner_id]

    def _complete(self, owner_id: str, force: bool, now: datetime) -> SessionSummary:
        session = self._require(owner_id)
        if session.state is SessionState.REVIEWING:
            if not force:
                raise SessionStateError(
                    f"Session for owner {owner_id!r} still has {session.remaining} cards; "
                    "pass force=True to end it early"
                )
            session.abandon(now)
        summary = session.summary()
        logger.info(
            "Completed session for owner %s: %d total, %d correct, %d incorrect, %d skipped, %d abandoned",
            owner_id,
            summary.total,
            summary.correct,
            summary.incorrect,
            summary.skipped,
            summary.abandoned,
        )
        return summary

    async def _apply_grade(
        self,
        snapshot: Card,
        quality: int,
        time_spent: float | None,
        confidence: int | None,
        now: datetime,
    ) -> GradeOutcome:
        """Write the grade, retrying lost updates and timeouts a bounded number of times.

        Every attempt is pinned to the snapshot's version. A timeout can fire
        after the commit has landed, so a version conflict is first checked
        against our own earlier write before it is treated as a real conflict.
        """

        def grade_fn(state: CardState) -> CardState:
            return self.scheduler.grade(
                state,
                quality,
                review_time=now,
                time_spent=time_spent,
                confidence=confidence,
            )

        audit = ReviewAudit(quality=quality, time_spent=time_spent, confidence=confidence)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=2),
            retry=retry_if_exception_type((ConcurrentModification, StorageTimeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                try:
                    return await self.repository.apply_grade(
                        snapshot.id, grade_fn, audit=audit, expected_version=snapshot.version
                    )
                except ConcurrentModification:
                    committed = await self._committed_grade(snapshot)
                    if committed is None:
                        raise
                    logger.warning("Card %d was already graded by an earlier attempt; not grading again", snapshot.id)
                    return committed
        raise AssertionError("unreachable")  # pragma: no cover

    async def _committed_grade(self, snapshot: Card) -> GradeOutcome | None:
        """Return the grade this session already wrote for ``snapshot``, if any.

        A card counts as graded by us when exactly one write landed since the
        snapshot, that write moved ``last_reviewed_at``, and a review log row
        exists at that time.
        """
        card = await self.repository.get(snapshot.id)
        if card.version != snapshot.version + 1:
            return None
        if card.last_reviewed_at is None or card.last_reviewed_at == snapshot.last_reviewed_at:
            return None
        review = await self.repository.review_at(card.id, card.last_reviewed_at)
        if review is None:
            return None
        return GradeOutcome(card=card, previous=card_state(snapshot), current=card_state(card), review=review)

    def _require(self, owner_id: str) -> ReviewSession:
        session = self._sessions.get(owner_id)
        if session is None:
            raise NoActiveSession(owner_id)
        return session

    def _require_reviewing(self, owner_id: str) -> ReviewSession:
        session = self._require(owner_id)
        if session.state is not SessionState.REVIEWING:
            raise SessionStateError(f"Session for owner {owner_id!r} is {session.state.value}, not reviewing")
        return session

    def _check_head(self, session: ReviewSession, card_id: int) -> None:
        if session.current_card_id != card_id:
            raise OutOfOrder(card_id, session.current_card_id)

    def _view(self, session: ReviewSession) -> SessionView:
        card_id = session.current_card_id
        card = session.cards.get(card_id) if card_id is not None else None
        item = None
        if card is not None and self.item_source is not None:
            item = self.item_source.get_item(card.item_id)
        return SessionView(
            owner_id=session.owner_id,
            state=session.state,
            card=card,
            item=item,
            position=session.position,
            total=len(session.card_ids),
            remaining=session.remaining,
        )
