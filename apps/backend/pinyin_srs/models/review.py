from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ..srs import Grade, ItemState, ItemType, Stage


class ItemStateResponse(BaseModel):
    """Scheduling state of one item as returned to the client."""

    item_id: int
    item_type: ItemType
    stage: Stage
    ease_factor: float = Field(description="2.5 = 標準。内部は ×1000 の整数で保持")
    interval_days: int
    repetition_count: int
    next_review_date: datetime
    last_reviewed_at: datetime | None = None
    total_reviews: int = 0
    correct_count: int = 0
    incorrect_count: int = 0

    @classmethod
    def from_state(cls, state: ItemState) -> "ItemStateResponse":
        return cls(
            item_id=state.item_id,
            item_type=state.item_type,
            stage=state.stage,
            ease_factor=state.ease,
            interval_days=state.interval_days,
            repetition_count=state.repetition_count,
            next_review_date=state.next_review_date,
            last_reviewed_at=state.last_reviewed_at,
            total_reviews=state.total_reviews,
            correct_count=state.correct_count,
            incorrect_count=state.incorrect_count,
        )


class ReviewQueueResponse(BaseModel):
    items: list[ItemStateResponse] = Field(default_factory=list)
    count: int = 0


class ReviewSubmitRequest(BaseModel):
    """Answer submitted for one due item.

    - grade: 自己評価 (0=Again .. 3=Easy)。省略時は正誤と回答時間から決める
    - timezone: 日次統計/streak の日付境界に使う IANA 名（省略時は設定値）
    """

    model_config = ConfigDict(extra="ignore")

    item_id: int = Field(gt=0)
    item_type: ItemType
    user_answer: str = Field(max_length=200)
    correct_answer: str = Field(min_length=1, max_length=200)
    grade: int | None = Field(default=None, description="0=Again, 1=Hard, 2=Good, 3=Easy")
    response_time_ms: int = Field(ge=0, description="回答にかかった時間 (ms)。grade 省略時の判定に使う")
    timezone: str | None = Field(default=None, max_length=64)


class ReviewSubmitResponse(BaseModel):
    is_correct: bool
    grade: Grade
    updated_state: ItemStateResponse


class EnrollItem(BaseModel):
    item_id: int = Field(gt=0)
    item_type: ItemType


class EnrollRequest(BaseModel):
    items: list[EnrollItem] = Field(min_length=1, max_length=100)
    timezone: str | None = Field(default=None, max_length=64)


class EnrollResponse(BaseModel):
    created: int


class ForecastBucketResponse(BaseModel):
    hour: int = Field(description="0 = 今から 1 時間以内")
    starts_at: datetime
    count: int


class UpcomingReviewsResponse(BaseModel):
    forecast: list[ForecastBucketResponse] = Field(default_factory=list)
    total: int = 0


class ReviewHistoryEntry(BaseModel):
    item_id: int
    item_type: ItemType
    user_answer: str
    correct_answer: str
    is_correct: bool
    grade: Grade
    response_time_ms: int
    new_stage: Stage
    new_interval_days: int
    reviewed_at: datetime


class ReviewHistoryResponse(BaseModel):
    entries: list[ReviewHistoryEntry] = Field(default_factory=list)
