"""Daily counters and streak maintenance.

回答送信パイプラインの最終段で呼ばれる集計処理。ここでの失敗は
StatsUpdateError に包まれ、呼び出し元（パイプライン）でログのみ残す。
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Protocol

from .errors import StatsUpdateError
from .store.common import normalize_non_negative_int


class StatsStore(Protocol):
    def increment_daily_stat(self, user_id: str, stat_date: date, field: str, delta: int) -> None: ...

    def mark_streak(self, user_id: str, stat_date: date) -> int: ...

    def get_daily_stats(self, user_id: str, stat_date: date) -> dict[str, Any]: ...

    def get_daily_stats_range(self, user_id: str, start: date, end: date) -> list[dict[str, Any]]: ...

    def get_streak(self, user_id: str) -> dict[str, Any]: ...


def accuracy_percent(correct: int, total: int) -> int:
    """正答率(%)。レビュー 0 件の日は 0 とし、ゼロ除算を避ける。"""

    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


class StatsUpdater:
    def __init__(self, store: StatsStore) -> None:
        self.store = store

    def record_review(self, user_id: str, stat_date: date, *, is_correct: bool, response_time_ms: int) -> int:
        """Count one completed review and keep the streak alive for ``stat_date``.

        Returns the current streak length. Any failure is raised as StatsUpdateError.
        """

        try:
            self.store.increment_daily_stat(user_id, stat_date, "reviews_completed", 1)
            if is_correct:
                self.store.increment_daily_stat(user_id, stat_date, "correct_answers", 1)
            spent = normalize_non_negative_int(response_time_ms)
            if spent:
                self.store.increment_daily_stat(user_id, stat_date, "time_spent_ms", spent)
            return self.store.mark_streak(user_id, stat_date)
        except StatsUpdateError:
            raise
        except Exception as exc:
            raise StatsUpdateError(f"failed to update daily stats for {user_id}: {exc}") from exc

    def record_new_items(self, user_id: str, stat_date: date, count: int) -> None:
        if count <= 0:
            return
        try:
            self.store.increment_daily_stat(user_id, stat_date, "new_items_learned", count)
        except Exception as exc:
            raise StatsUpdateError(f"failed to record new items for {user_id}: {exc}") from exc

    def summary(self, user_id: str, stat_date: date) -> dict[str, Any]:
        daily = self.store.get_daily_stats(user_id, stat_date)
        streak = self.store.get_streak(user_id)
        reviews = int(daily.get("reviews_completed", 0))
        correct = int(daily.get("correct_answers", 0))
        return {
            "date": stat_date,
            "reviews_completed": reviews,
            "correct_answers": correct,
            "accuracy_percent": accuracy_percent(correct, reviews),
            "time_spent_ms": int(daily.get("time_spent_ms", 0)),
            "new_items_learned": int(daily.get("new_items_learned", 0)),
            "streak_maintained": bool(daily.get("streak_maintained", False)),
            "current_streak": int(streak.get("current_streak", 0)),
            "longest_streak": int(streak.get("longest_streak", 0)),
        }

    def history(self, user_id: str, start: date, end: date) -> dict[str, Any]:
        """Per-day counters for ``start..end`` inclusive, one entry per calendar day.

        活動の無い日も 0 件として埋め、グラフや活動カレンダーがそのまま描けるようにする。
        全体の正答率は日毎の率の平均ではなく、期間内の合計から計算する。
        """

        stored = {row["date"]: row for row in self.store.get_daily_stats_range(user_id, start, end)}
        days: list[dict[str, Any]] = []
        total_reviews = 0
        total_correct = 0
        active_days = 0
        current = start
        while current <= end:
            row = stored.get(current, {})
            reviews = int(row.get("reviews_completed", 0))
            correct = int(row.get("correct_answers", 0))
            days.append(
                {
                    "date": current,
                    "reviews_completed": reviews,
                    "correct_answers": correct,
                    "accuracy_percent": accuracy_percent(correct, reviews),
                    "time_spent_ms": int(row.get("time_spent_ms", 0)),
                    "new_items_learned": int(row.get("new_items_learned", 0)),
                }
            )
            total_reviews += reviews
            total_correct += correct
            if reviews:
                active_days += 1
            current += timedelta(days=1)
        return {
            "start": start,
            "end": end,
            "days": days,
            "total_reviews": total_reviews,
            "accuracy_percent": accuracy_percent(total_correct, total_reviews),
            "active_days": active_days,
        }
