"""API routes for enrolling and managing cards."""

from fastapi import APIRouter, Depends, status

from backend.api.dependencies import get_repository
from backend.api.schemas import ArchiveResponse, CardResponse, EnrollRequest
from backend.config import settings
from backend.srs.repository import CardRepository

router = APIRouter(prefix="/api/cards", tags=["cards"])


@router.post("", response_model=list[CardResponse], status_code=status.HTTP_201_CREATED)
async def enroll_items(
    request: EnrollRequest,
    repository: CardRepository = Depends(get_repository),
) -> list[CardResponse]:
    """Create cards for a batch of items. Any duplicate rejects the whole batch."""
    cards = await repository.bulk_create(request.owner_id, request.item_ids)
    return [CardResponse.model_validate(card) for card in cards]


@router.get("", response_model=list[CardResponse])
async def list_cards(
    owner_id: str,
    active_only: bool = False,
    repository: CardRepository = Depends(get_repository),
) -> list[CardResponse]:
    """List an owner's cards by next review time."""
    cards = await repository.list_cards(owner_id, active_only=active_only)
    return [CardResponse.model_validate(card) for card in cards]


@router.get("/due", response_model=list[CardResponse])
async def due_cards(
    owner_id: str,
    limit: int = settings.max_reviews_per_session,
    repository: CardRepository = Depends(get_repository),
) -> list[CardResponse]:
    """List an owner's due cards, most overdue first."""
    cards = await repository.fetch_due(owner_id, limit=limit)
    return [CardResponse.model_validate(card) for card in cards]


@router.post("/archive-mastered", response_model=ArchiveResponse)
async def archive_mastered(
    owner_id: str,
    repository: CardRepository = Depends(get_repository),
) -> ArchiveResponse:
    """Deactivate the owner's mastered cards."""
    archived = await repository.archive_mastered(owner_id, settings.mastery_interval_days)
    return ArchiveResponse(archived=archived)


@router.get("/{card_id}", response_model=CardResponse)
async def get_card(card_id: int, repository: CardRepository = Depends(get_repository)) -> CardResponse:
    return CardResponse.model_validate(await repository.get(card_id))


@router.post("/{card_id}/suspend", response_model=CardResponse)
async def suspend_card(card_id: int, repository: CardRepository = Depends(get_repository)) -> CardResponse:
    return CardResponse.model_validate(await repository.suspend(card_id))


@router.post("/{card_id}/restore", response_model=CardResponse)
async def restore_card(card_id: int, repository: CardRepository = Depends(get_repository)) -> CardResponse:
    return CardResponse.model_validate(await repository.restore(card_id))


@router.post("/{card_id}/reset", response_model=CardResponse)
async def reset_card(card_id: int, repository: CardRepository = Depends(get_repository)) -> CardResponse:
    """Discard a card's progress."""
    return CardResponse.model_validate(await repository.reset(card_id))


@router.delete("/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_card(card_id: int, repository: CardRepository = Depends(get_repository)) -> None:
    await repository.delete(card_id)
