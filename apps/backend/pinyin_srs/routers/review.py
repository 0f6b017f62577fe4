from __future__ import annotations

from functools import partial

import anyio  # オフロード用
from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user_id
from ..errors import SRSError
from ..models.review import (
    EnrollRequest,
    EnrollResponse,
    ForecastBucketResponse,
    ItemStateResponse,
    ReviewHistoryEntry,
    ReviewHistoryResponse,
    ReviewQueueResponse,
    ReviewSubmitRequest,
    ReviewSubmitResponse,
    UpcomingReviewsResponse,
)
from ..service import MAX_FORECAST_HOURS, MAX_HISTORY_LIMIT, ReviewService, get_review_service
from . import http_error_for

router = APIRouter(tags=["reviews"])


@router.get("/queue", response_model=ReviewQueueResponse)
async def get_review_queue(
    limit: int | None = Query(default=None, ge=1, description="上限は設定値で丸める"),
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> ReviewQueueResponse:
    """期限到来済みのアイテムを次回出題日の早い順に返す。

    キャッシュ経由で読み込むため、回答直後を除き最大 TTL の間は同じ結果になり得る。
    """

    try:
        # anyio.to_thread.run_sync はキーワード引数を転送しないため partial で包む
        result = await anyio.to_thread.run_sync(partial(service.get_queue, user_id, limit=limit))
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return ReviewQueueResponse(
        items=[ItemStateResponse.from_state(state) for state in result.items],
        count=result.count,
    )


@router.post("/submit", response_model=ReviewSubmitResponse)
async def submit_review(
    req: ReviewSubmitRequest,
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> ReviewSubmitResponse:
    """回答を採点し、次回出題日を更新して返す。"""

    try:
        result = await anyio.to_thread.run_sync(
            partial(
                service.submit_review,
                user_id,
                req.item_id,
                req.item_type,
                req.user_answer,
                req.correct_answer,
                grade=req.grade,
                response_time_ms=req.response_time_ms,
                timezone=req.timezone,
            )
        )
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return ReviewSubmitResponse(
        is_correct=result.is_correct,
        grade=result.grade,
        updated_state=ItemStateResponse.from_state(result.updated_state),
    )


@router.post("/items", response_model=EnrollResponse)
async def enroll_items(
    req: EnrollRequest,
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> EnrollResponse:
    """レッスン開始: 未学習アイテムを new として登録し、即時出題対象にする。"""

    pairs = [(item.item_id, item.item_type) for item in req.items]
    try:
        created = await anyio.to_thread.run_sync(
            partial(service.enroll_items, user_id, pairs, timezone=req.timezone)
        )
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return EnrollResponse(created=created)


@router.get("/upcoming", response_model=UpcomingReviewsResponse)
async def upcoming_reviews(
    hours: int = Query(default=24, ge=1, le=MAX_FORECAST_HOURS),
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> UpcomingReviewsResponse:
    try:
        result = await anyio.to_thread.run_sync(partial(service.upcoming_forecast, user_id, hours=hours))
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return UpcomingReviewsResponse(
        forecast=[
            ForecastBucketResponse(hour=bucket.hour, starts_at=bucket.starts_at, count=bucket.count)
            for bucket in result.buckets
        ],
        total=result.total,
    )


@router.get("/history", response_model=ReviewHistoryResponse)
async def review_history(
    limit: int = Query(default=20, ge=1, le=MAX_HISTORY_LIMIT),
    user_id: str = Depends(get_current_user_id),
    service: ReviewService = Depends(get_review_service),
) -> ReviewHistoryResponse:
    """直近の回答履歴を新しい順に返す。"""

    try:
        rows = await anyio.to_thread.run_sync(partial(service.review_history, user_id, limit=limit))
    except SRSError as exc:
        raise http_error_for(exc) from exc
    return ReviewHistoryResponse(entries=[ReviewHistoryEntry(**row) for row in rows])
