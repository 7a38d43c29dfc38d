"""Tests for the card repository: enrollment, due queries and guarded updates."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy import Update, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.models.card import Card
from backend.srs.errors import (
    CardNotFound,
    ConcurrentModification,
    DuplicateCard,
    InvalidQuality,
    StorageTimeout,
)
from backend.srs.repository import CardRepository, ReviewAudit
from backend.srs.scheduler import SM2, CardState


def _grade(sm2: SM2, quality: int, at: datetime):
    def grade_fn(state: CardState) -> CardState:
        return sm2.grade(state, quality, review_time=at)

    return grade_fn


def _set(**fields):
    def grade_fn(state: CardState) -> CardState:
        return replace(state, **fields)

    return grade_fn


# --- Enrollment ---


@pytest.mark.asyncio
async def test_create_defaults(repository: CardRepository, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now)
    assert card.id is not None
    assert card.owner_id == "alice"
    assert card.item_id == "q-1"
    assert card.ease_factor == 2.5
    assert card.interval_days == 1
    assert card.repetitions == 0
    assert card.next_review_at == now + timedelta(days=1)
    assert card.last_reviewed_at is None
    assert card.active
    assert card.version == 1


@pytest.mark.asyncio
async def test_create_duplicate(repository: CardRepository, now: datetime) -> None:
    await repository.create("alice", "q-1", now=now)
    with pytest.raises(DuplicateCard) as exc_info:
        await repository.create("alice", "q-1", now=now)
    assert exc_info.value.item_ids == ["q-1"]

    # Same item for another owner is fine
    other = await repository.create("bob", "q-1", now=now)
    assert other.owner_id == "bob"


@pytest.mark.asyncio
async def test_duplicate_is_recoverable_by_lookup(repository: CardRepository, now: datetime) -> None:
    original = await repository.create("alice", "q-1", now=now)
    with pytest.raises(DuplicateCard):
        await repository.create("alice", "q-1", now=now)
    existing = await repository.get_for_item("alice", "q-1")
    assert existing is not None
    assert existing.id == original.id
    assert await repository.get_for_item("alice", "q-404") is None


@pytest.mark.asyncio
async def test_bulk_create(repository: CardRepository, now: datetime) -> None:
    cards = await repository.bulk_create("alice", ["q-1", "q-2", "q-3"], now=now)
    assert [c.item_id for c in cards] == ["q-1", "q-2", "q-3"]
    assert len({c.id for c in cards}) == 3
    assert await repository.bulk_create("alice", []) == []


@pytest.mark.asyncio
async def test_bulk_create_is_all_or_nothing(repository: CardRepository, now: datetime) -> None:
    await repository.create("alice", "q-2", now=now)

    with pytest.raises(DuplicateCard) as exc_info:
        await repository.bulk_create("alice", ["q-1", "q-2", "q-3"], now=now)
    assert exc_info.value.item_ids == ["q-2"]

    with pytest.raises(DuplicateCard) as exc_info:
        await repository.bulk_create("alice", ["q-4", "q-5", "q-4"], now=now)
    assert exc_info.value.item_ids == ["q-4"]

    remaining = await repository.list_cards("alice")
    assert [c.item_id for c in remaining] == ["q-2"]


# --- Due queries ---


@pytest.mark.asyncio
async def test_fresh_card_not_due_until_tomorrow(repository: CardRepository, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now)
    assert await repository.fetch_due("alice", now=now, limit=10) == []

    due = await repository.fetch_due("alice", now=card.next_review_at, limit=10)
    assert [c.id for c in due] == [card.id]


@pytest.mark.asyncio
async def test_fetch_due_order_limit_and_scope(repository: CardRepository, now: datetime) -> None:
    newest = await repository.create("alice", "q-new", now=now - timedelta(days=2))
    oldest = await repository.create("alice", "q-old", now=now - timedelta(days=5))
    middle = await repository.create("alice", "q-mid", now=now - timedelta(days=3))
    await repository.create("alice", "q-future", now=now)
    await repository.create("bob", "q-old", now=now - timedelta(days=9))

    due = await repository.fetch_due("alice", now=now, limit=10)
    assert [c.id for c in due] == [oldest.id, middle.id, newest.id]

    capped = await repository.fetch_due("alice", now=now, limit=2)
    assert [c.id for c in capped] == [oldest.id, middle.id]

    assert await repository.count_due("alice", before=now) == 3


@pytest.mark.asyncio
async def test_suspend_and_restore(repository: CardRepository, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=3))

    suspended = await repository.suspend(card.id)
    assert not suspended.active
    assert suspended.next_review_at == card.next_review_at
    assert suspended.interval_days == card.interval_days
    assert suspended.ease_factor == card.ease_factor
    assert await repository.fetch_due("alice", now=now, limit=10) == []

    restored = await repository.restore(card.id)
    assert restored.active
    assert restored.next_review_at == card.next_review_at
    assert [c.id for c in await repository.fetch_due("alice", now=now, limit=10)] == [card.id]


@pytest.mark.asyncio
async def test_unknown_card(repository: CardRepository) -> None:
    with pytest.raises(CardNotFound):
        await repository.get(999)
    with pytest.raises(CardNotFound):
        await repository.suspend(999)
    with pytest.raises(CardNotFound):
        await repository.apply_grade(999, _set(interval_days=2))


# --- Grading ---


@pytest.mark.asyncio
async def test_apply_grade_writes_schedule_and_log(
    repository: CardRepository, scheduler: SM2, now: datetime
) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=1))

    outcome = await repository.apply_grade(
        card.id,
        _grade(scheduler, 5, now),
        audit=ReviewAudit(quality=5, time_spent=12.5, confidence=8),
    )
    assert outcome.previous.repetitions == 0
    assert outcome.current.repetitions == 1
    assert outcome.card.repetitions == 1
    assert outcome.card.version == 2
    assert outcome.card.last_reviewed_at == now
    assert outcome.card.next_review_at == now + timedelta(days=1)

    review = outcome.review
    assert review is not None
    assert review.card_id == card.id
    assert review.item_id == "q-1"
    assert review.quality == 5
    assert review.is_success
    assert review.time_spent == 12.5
    assert review.confidence == 8
    assert review.previous_interval == 1
    assert review.new_interval == 1
    assert review.new_ease_factor == pytest.approx(2.6)
    assert review.graded_at == now

    stored = await repository.get(card.id)
    assert stored.ease_factor == pytest.approx(2.6)
    assert stored.repetitions == 1

    history = await repository.reviews_since("alice")
    assert history == [review]


@pytest.mark.asyncio
async def test_apply_grade_without_audit(repository: CardRepository, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now)
    outcome = await repository.apply_grade(card.id, _set(interval_days=3))
    assert outcome.review is None
    assert outcome.card.interval_days == 3
    assert await repository.reviews_since("alice") == []


@pytest.mark.asyncio
async def test_stale_version_is_rejected(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now)
    await repository.apply_grade(card.id, _grade(scheduler, 4, now), expected_version=card.version)

    with pytest.raises(ConcurrentModification):
        await repository.apply_grade(card.id, _grade(scheduler, 1, now), expected_version=card.version)

    stored = await repository.get(card.id)
    assert stored.version == 2
    assert stored.repetitions == 1


def _interleaving_factory(session_factory: async_sessionmaker[AsyncSession]) -> async_sessionmaker[AsyncSession]:
    """Sessions where another writer bumps every card's version just before our first UPDATE."""

    class InterleavingSession(AsyncSession):
        async def execute(self, statement, *args, **kwargs):  # type: ignore[no-untyped-def]
            if isinstance(statement, Update) and not self.info.get("interleaved"):
                self.info["interleaved"] = True
                await super().execute(
                    update(Card).values(version=Card.version + 1).execution_options(synchronize_session=False)
                )
            return await super().execute(statement, *args, **kwargs)

    return async_sessionmaker(session_factory.kw["bind"], class_=InterleavingSession, expire_on_commit=False)


@pytest.mark.asyncio
async def test_lost_update_is_rejected(
    repository: CardRepository,
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: SM2,
    now: datetime,
) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=1))
    racing = CardRepository(_interleaving_factory(session_factory), timeout_seconds=5)

    with pytest.raises(ConcurrentModification):
        await racing.apply_grade(card.id, _grade(scheduler, 5, now), audit=ReviewAudit(quality=5))

    # The losing write and its review log were rolled back together
    stored = await repository.get(card.id)
    assert stored.version == 1
    assert stored.repetitions == 0
    assert stored.last_reviewed_at is None
    assert await repository.reviews_since("alice") == []


@pytest.mark.asyncio
async def test_review_at(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=1))
    outcome = await repository.apply_grade(card.id, _grade(scheduler, 4, now), audit=ReviewAudit(quality=4))

    assert await repository.review_at(card.id, now) == outcome.review
    assert await repository.review_at(card.id, now - timedelta(seconds=1)) is None


@pytest.mark.asyncio
async def test_invalid_grade_writes_nothing(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now)
    with pytest.raises(InvalidQuality):
        await repository.apply_grade(card.id, _grade(scheduler, 9, now), audit=ReviewAudit(quality=9))
    stored = await repository.get(card.id)
    assert stored.version == 1
    assert await repository.reviews_since("alice") == []


# --- Maintenance ---


@pytest.mark.asyncio
async def test_archive_mastered(repository: CardRepository, now: datetime) -> None:
    mastered = await repository.create("alice", "q-1", now=now - timedelta(days=2))
    young = await repository.create("alice", "q-2", now=now - timedelta(days=2))
    await repository.apply_grade(mastered.id, _set(interval_days=365, next_review_at=now - timedelta(hours=1)))
    await repository.apply_grade(young.id, _set(interval_days=364))

    assert await repository.archive_mastered("alice") == 1
    assert await repository.archive_mastered("alice") == 0

    due = await repository.fetch_due("alice", now=now, limit=10)
    assert [c.id for c in due] == [young.id]
    assert [c.id for c in await repository.list_cards("alice", active_only=True)] == [young.id]
    assert len(await repository.list_cards("alice")) == 2


@pytest.mark.asyncio
async def test_reset(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=1))
    await repository.apply_grade(card.id, _grade(scheduler, 5, now))
    await repository.suspend(card.id)

    later = now + timedelta(days=3)
    reset = await repository.reset(card.id, now=later)
    assert reset.ease_factor == 2.5
    assert reset.interval_days == 1
    assert reset.repetitions == 0
    assert reset.last_reviewed_at is None
    assert reset.next_review_at == later + timedelta(days=1)
    assert reset.active


@pytest.mark.asyncio
async def test_delete_removes_history(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=1))
    await repository.apply_grade(card.id, _grade(scheduler, 2, now), audit=ReviewAudit(quality=2))

    await repository.delete(card.id)
    with pytest.raises(CardNotFound):
        await repository.get(card.id)
    assert await repository.reviews_since("alice") == []
    with pytest.raises(CardNotFound):
        await repository.delete(card.id)


@pytest.mark.asyncio
async def test_review_days(repository: CardRepository, scheduler: SM2, now: datetime) -> None:
    card = await repository.create("alice", "q-1", now=now - timedelta(days=10))
    for days_ago in (4, 1, 1, 0):
        at = now - timedelta(days=days_ago)
        await repository.apply_grade(card.id, _grade(scheduler, 4, at), audit=ReviewAudit(quality=4))

    assert await repository.review_days("alice") == [
        now.date(),
        (now - timedelta(days=1)).date(),
        (now - timedelta(days=4)).date(),
    ]


# --- Timeouts ---


class _SlowSession:
    async def __aenter__(self) -> "_SlowSession":
        await asyncio.sleep(1)
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        return False


@pytest.mark.asyncio
async def test_timeout_surfaces_as_storage_timeout() -> None:
    repository = CardRepository(lambda: _SlowSession(), timeout_seconds=0.01)  # type: ignore[arg-type]
    with pytest.raises(StorageTimeout) as exc_info:
        await repository.fetch_due("alice", limit=5)
    assert exc_info.value.retryable
    assert exc_info.value.operation == "fetch_due"
