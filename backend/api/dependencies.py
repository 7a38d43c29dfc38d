"""FastAPI dependencies wiring the SRS core to the database."""

from fastapi import Depends, Request

from backend.database import async_session
from backend.srs.repository import CardRepository
from backend.srs.session import SessionManager
from backend.srs.stats import StatisticsAggregator


def get_repository() -> CardRepository:
    """Return a card repository bound to the application database."""
    return CardRepository(async_session)


def get_session_manager(
    request: Request,
    repository: CardRepository = Depends(get_repository),
) -> SessionManager:
    """Return the application's session manager, creating it on first use."""
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        manager = SessionManager(repository)
        request.app.state.session_manager = manager
    return manager


def get_statistics(repository: CardRepository = Depends(get_repository)) -> StatisticsAggregator:
    return StatisticsAggregator(repository)
