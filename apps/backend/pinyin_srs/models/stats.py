from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field


class DailyStatsResponse(BaseModel):
    """Today's counters in the caller's timezone plus the current streak."""

    date: dt.date
    reviews_completed: int = 0
    correct_answers: int = 0
    accuracy_percent: int = 0
    time_spent_ms: int = 0
    new_items_learned: int = 0
    streak_maintained: bool = False
    current_streak: int = 0
    longest_streak: int = 0


class DailyStatsDay(BaseModel):
    date: dt.date
    reviews_completed: int = 0
    correct_answers: int = 0
    accuracy_percent: int = 0
    time_spent_ms: int = 0
    new_items_learned: int = 0


class StatsRangeResponse(BaseModel):
    """One entry per local day from ``start`` to ``end``; days without activity are zero."""

    start: dt.date
    end: dt.date
    days: list[DailyStatsDay] = Field(default_factory=list)
    total_reviews: int = 0
    accuracy_percent: int = 0
    active_days: int = 0
