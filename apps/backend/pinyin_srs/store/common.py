from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..clock import ensure_utc


DAILY_STAT_FIELDS: tuple[str, ...] = (
    "reviews_completed",
    "correct_answers",
    "time_spent_ms",
    "new_items_learned",
)


@dataclass(frozen=True)
class ReviewLog:
    """One row of review history written together with the new ItemState."""

    user_answer: str
    correct_answer: str
    is_correct: bool
    grade: int
    response_time_ms: int
    reviewed_at: datetime


def normalize_non_negative_int(value: Any) -> int:
    """与えられた値を非負整数に正規化する。

    学習進捗カウンタは UI のバグで負値が送られてしまうと集計が破綻するため、
    ここでゼロ以上に矯正しておく。"""

    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return 0
    return ivalue if ivalue >= 0 else 0


def to_db_timestamp(value: datetime) -> str:
    """UTC・マイクロ秒固定の ISO 文字列。桁が揃うため文字列比較で時刻順になる。"""

    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return ensure_utc(datetime.fromisoformat(raw))
