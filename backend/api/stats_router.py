"""API routes for owner statistics and dashboard data."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from backend.api.dependencies import get_statistics
from backend.api.schemas import (
    DailyProgressResponse,
    MasteryDistributionResponse,
    OwnerStatsResponse,
    RetentionResponse,
    StreakResponse,
)
from backend.config import settings
from backend.srs.stats import StatisticsAggregator

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("/{owner_id}", response_model=OwnerStatsResponse)
async def get_owner_stats(
    owner_id: str,
    stats: StatisticsAggregator = Depends(get_statistics),
) -> OwnerStatsResponse:
    """Get overall statistics for an owner."""
    return OwnerStatsResponse.model_validate(await stats.summary(owner_id))


@router.get("/{owner_id}/retention", response_model=RetentionResponse)
async def get_retention(
    owner_id: str,
    window_days: int = Query(default=settings.retention_window_days, ge=1),
    stats: StatisticsAggregator = Depends(get_statistics),
) -> RetentionResponse:
    rate = await stats.retention_rate(owner_id, window=timedelta(days=window_days))
    return RetentionResponse(window_days=window_days, retention_rate=round(rate, 3))


@router.get("/{owner_id}/mastery", response_model=MasteryDistributionResponse)
async def get_mastery(
    owner_id: str,
    stats: StatisticsAggregator = Depends(get_statistics),
) -> MasteryDistributionResponse:
    return MasteryDistributionResponse.model_validate(await stats.mastery_distribution(owner_id))


@router.get("/{owner_id}/streak", response_model=StreakResponse)
async def get_streak(
    owner_id: str,
    stats: StatisticsAggregator = Depends(get_statistics),
) -> StreakResponse:
    return StreakResponse(streak_days=await stats.streak(owner_id))


@router.get("/{owner_id}/progress", response_model=list[DailyProgressResponse])
async def get_progress(
    owner_id: str,
    days: int = Query(default=30, ge=1, le=365),
    stats: StatisticsAggregator = Depends(get_statistics),
) -> list[DailyProgressResponse]:
    """Per-day review activity, oldest first."""
    progress = await stats.daily_progress(owner_id, days=days)
    return [DailyProgressResponse.model_validate(day) for day in progress]
