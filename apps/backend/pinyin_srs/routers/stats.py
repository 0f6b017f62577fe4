from __future__ import annotations

from functools import partial

import anyio
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user_id
from ..errors import SRSError
from ..models.stats import DailyStatsResponse, StatsRangeResponse
from ..service import MAX_STATS_RANGE_DAYS, ReviewService, get_review_service
from . import http_error_for

router = APIRouter(tags=["stats"])


@router.get("/today", response_model=DailyStatsResponse)
async def today_stats(
    timezone: str | None = Query(default=None, max_length=64, description="IANA タイムゾーン名"),
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> DailyStatsResponse:
    """Today's review counters, accuracy and streak for the caller."""

    try:
        summary = await anyio.to_thread.run_sync(partial(service.daily_stats, user_id, timezone=timezone))
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return DailyStatsResponse(**summary)


@router.get("/range", response_model=StatsRangeResponse)
async def stats_range(
    days: int = Query(default=30, ge=1, le=MAX_STATS_RANGE_DAYS, description="今日を含む日数"),
    timezone: str | None = Query(default=None, max_length=64, description="IANA タイムゾーン名"),
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> StatsRangeResponse:
    """ダッシュボードのグラフ用: 日毎のレビュー数・正答率（30 日推移、365 日の活動カレンダー）。"""

    try:
        result = await anyio.to_thread.run_sync(
            partial(service.stats_range, user_id, days=days, timezone=timezone)
        )
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return StatsRangeResponse(**result)
