"""API routes for review sessions."""

from fastapi import APIRouter, Depends

from backend.api.dependencies import get_session_manager
from backend.api.schemas import (
    AnswerRequest,
    AnswerResponse,
    CardResponse,
    ReviewResultResponse,
    SessionResponse,
    SessionSummaryResponse,
    SkipRequest,
)
from backend.srs.session import SessionManager, SessionView

router = APIRouter(prefix="/api/session", tags=["session"])


def _session_response(view: SessionView) -> SessionResponse:
    return SessionResponse(
        owner_id=view.owner_id,
        state=view.state.value,
        card=CardResponse.model_validate(view.card) if view.card is not None else None,
        item=dict(view.item) if view.item is not None else None,
        position=view.position,
        total=view.total,
        remaining=view.remaining,
    )


@router.post("/start", response_model=SessionResponse)
async def session_start(
    owner_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    """Start a review session over the owner's currently due cards."""
    return _session_response(await manager.start_review(owner_id))


@router.get("/current", response_model=SessionResponse)
async def session_current(
    owner_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    """Get the surfaced card of the owner's session."""
    return _session_response(manager.current(owner_id))


@router.post("/answer", response_model=AnswerResponse)
async def session_answer(
    owner_id: str,
    request: AnswerRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> AnswerResponse:
    """Grade the surfaced card."""
    result = await manager.answer(
        owner_id,
        request.card_id,
        request.quality,
        time_spent=request.time_spent,
        confidence=request.confidence,
    )
    return AnswerResponse(
        result=ReviewResultResponse.model_validate(result),
        session=_session_response(manager.current(owner_id)),
    )


@router.post("/skip", response_model=SessionResponse)
async def session_skip(
    owner_id: str,
    request: SkipRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    """Leave the surfaced card for a future session without grading it."""
    return _session_response(await manager.skip(owner_id, request.card_id))


@router.post("/complete", response_model=SessionSummaryResponse)
async def session_complete(
    owner_id: str,
    force: bool = False,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionSummaryResponse:
    """Finish the session; ``force`` ends it early and drops the remaining cards."""
    summary = await manager.complete(owner_id, force=force)
    return SessionSummaryResponse.model_validate(summary)


@router.post("/end", response_model=SessionSummaryResponse)
async def session_end(
    owner_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionSummaryResponse:
    """End a session and clean up."""
    return SessionSummaryResponse.model_validate(await manager.close(owner_id))
