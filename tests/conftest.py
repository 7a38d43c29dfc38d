"""Shared fixtures: an isolated in-memory database per test."""

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime
from pathlib import Path

# The application engine is created at import time, so point it at a scratch
# database before anything from ``backend`` is imported.
_scratch_dir = tempfile.mkdtemp(prefix="study_srs_tests_")
os.environ.setdefault("STUDY_SRS_DATABASE_URL", f"sqlite+aiosqlite:///{Path(_scratch_dir) / 'test.db'}")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from backend.database import enable_sqlite_foreign_keys  # noqa: E402
from backend.models import Base  # noqa: E402
from backend.srs.repository import CardRepository  # noqa: E402
from backend.srs.scheduler import SM2  # noqa: E402
from backend.srs.session import SessionManager  # noqa: E402
from backend.srs.stats import StatisticsAggregator  # noqa: E402

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> CardRepository:
    return CardRepository(session_factory, timeout_seconds=5)


@pytest.fixture
def scheduler() -> SM2:
    return SM2()


@pytest.fixture
def manager(repository: CardRepository, scheduler: SM2) -> SessionManager:
    return SessionManager(repository, scheduler=scheduler, max_cards=20, max_attempts=3, retry_wait_seconds=0)


@pytest.fixture
def stats(repository: CardRepository) -> StatisticsAggregator:
    return StatisticsAggregator(repository)
