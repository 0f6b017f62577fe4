"""Review queue reads, the answer-submission pipeline and lesson enrollment.

送信パイプラインの順序:
  1. 入力検証（I/O より前）
  2. 状態読込（読み込み系のみ有限回リトライ）
  3. 正誤判定 → 4. grade 決定 → 5. 状態遷移
  6. 状態と履歴を 1 トランザクションで保存（version 比較で競合検出）
  7. ユーザーのキュー/統計キャッシュを無効化（失敗はログのみ）
  8. 日次統計と streak の更新（失敗はログのみ）
6 までの失敗は呼び出し元へ伝播する。7・8 は回答の記録を巻き戻さない。
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, tzinfo
from functools import lru_cache
from typing import Any, Callable, Iterable, Protocol, TypeVar

from .cache import QueueCache
from .clock import SystemClock, local_date, resolve_timezone
from .config import Settings, settings as default_settings
from .errors import BackendUnavailableError, ItemNotFoundError, StatsUpdateError, ValidationError
from .logging import logger
from .pinyin import compare_pinyin
from .srs import Grade, ItemState, ItemType, coerce_grade, coerce_item_type, derive_grade, transition
from .stats import StatsUpdater
from .store import ReviewLog, SQLiteItemStore


T = TypeVar("T")

MAX_FORECAST_HOURS = 168
MAX_STATS_RANGE_DAYS = 365
MAX_HISTORY_LIMIT = 100
_LOCK_STRIPES = 64


class ItemStore(Protocol):
    def load_item_state(self, user_id: str, item_id: int, item_type: ItemType) -> ItemState | None: ...

    def save_item_state(
        self,
        user_id: str,
        item_id: int,
        item_type: ItemType,
        new_state: ItemState,
        *,
        expected_version: int,
        review: ReviewLog | None = None,
    ) -> ItemState: ...

    def list_due_items(self, user_id: str, limit: int, now: datetime) -> list[ItemState]: ...

    def create_item_state(self, user_id: str, item_id: int, item_type: ItemType, now: datetime) -> bool: ...

    def list_upcoming_due_dates(self, user_id: str, start: datetime, end: datetime) -> list[datetime]: ...

    def list_review_history(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class QueueResult:
    items: list[ItemState]
    count: int


@dataclass(frozen=True)
class SubmissionResult:
    is_correct: bool
    grade: Grade
    updated_state: ItemState


@dataclass(frozen=True)
class ForecastBucket:
    hour: int
    starts_at: datetime
    count: int


@dataclass(frozen=True)
class ForecastResult:
    buckets: list[ForecastBucket]
    total: int


def queue_cache_prefix(user_id: str) -> str:
    return f"reviews:queue:{user_id}:"


def queue_cache_key(user_id: str, limit: int) -> str:
    return f"{queue_cache_prefix(user_id)}{limit}"


def stats_cache_prefix(user_id: str) -> str:
    return f"stats:daily:{user_id}:"


def stats_cache_key(user_id: str, stat_date: date) -> str:
    return f"{stats_cache_prefix(user_id)}{stat_date.isoformat()}"


def stats_range_cache_key(user_id: str, end: date, days: int) -> str:
    return f"{stats_cache_prefix(user_id)}range:{end.isoformat()}:{days}"


def _require_user_id(user_id: object) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id is required")
    return user_id


def _require_item_id(item_id: object) -> int:
    if isinstance(item_id, bool) or not isinstance(item_id, int) or item_id <= 0:
        raise ValidationError(f"item_id must be a positive integer, got {item_id!r}")
    return item_id


def _require_text(name: str, value: object) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _require_bounded_int(name: str, value: object, upper: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= upper:
        raise ValidationError(f"{name} must be between 1 and {upper}, got {value!r}")
    return value


class ReviewService:
    """Coordinates the item store, the queue cache and the stats updater.

    依存はすべてコンストラクタで注入する（テストでは偽の store/clock/cache を渡す）。
    """

    def __init__(
        self,
        store: ItemStore,
        cache: QueueCache,
        *,
        stats: StatsUpdater | None = None,
        clock: SystemClock | None = None,
        compare_answer: Callable[[str, str], bool] = compare_pinyin,
        config: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.cache = cache
        self.stats = stats
        self.clock = clock or SystemClock()
        self.compare_answer = compare_answer
        self.settings = config or default_settings
        self._sleep = sleep
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    # --- helpers ---
    def _lock_for(self, user_id: str, item_id: int, item_type: ItemType) -> threading.Lock:
        return self._locks[hash((user_id, item_id, item_type.value)) % len(self._locks)]

    def _resolve_limit(self, limit: object) -> int:
        if limit is None:
            return self.settings.queue_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        return min(limit, self.settings.queue_max_limit)

    def _resolve_zone(self, timezone: str | None) -> tzinfo:
        return resolve_timezone(timezone, self.settings.default_timezone)

    def _read_with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        """読み込み系ストア呼出しを BackendUnavailableError に限り再試行する。

        書き込みは再試行しない（二重適用を避けるため、呼び出し元へ即伝播）。
        """

        attempts = max(1, self.settings.store_read_max_retries)
        last_exc: BackendUnavailableError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except BackendUnavailableError as exc:
                last_exc = exc
                logger.info(
                    "store_read_error",
                    operation=operation,
                    attempt=attempt,
                    retries=attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt >= attempts:
                    break
                self._sleep(self.settings.store_read_backoff_ms / 1000.0 * attempt)
        assert last_exc is not None
        raise last_exc

    def _invalidate(self, *prefixes: str) -> None:
        for prefix in prefixes:
            try:
                self.cache.invalidate_prefix(prefix)
            except Exception as exc:
                logger.warning(
                    "queue_cache_invalidation_failed",
                    prefix=prefix,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    # --- queue ---
    def get_queue(self, user_id: str, limit: int | None = None) -> QueueResult:
        """Return due items, soonest first, through the queue cache."""

        user_id = _require_user_id(user_id)
        resolved = self._resolve_limit(limit)

        def _load() -> tuple[ItemState, ...]:
            return tuple(
                self._read_with_retry(
                    "list_due_items",
                    lambda: self.store.list_due_items(user_id, resolved, self.clock.now()),
                )
            )

        items = self.cache.get_or_load(
            queue_cache_key(user_id, resolved),
            _load,
            self.settings.queue_cache_ttl_seconds,
            timeout=self.settings.store_timeout_ms / 1000.0,
        )
        return QueueResult(items=list(items), count=len(items))

    # --- submission ---
    def submit_review(
        self,
        user_id: str,
        item_id: int,
        item_type: ItemType | str,
        user_answer: str,
        correct_answer: str,
        grade: Grade | int | None = None,
        response_time_ms: int | None = None,
        timezone: str | None = None,
    ) -> SubmissionResult:
        """Grade one answer and persist the next schedule.

        grade も response_time_ms も無い場合は計測値が無いとみなし Good を記録する
        （回答時間 0 扱いで Easy のボーナスを与えない）。
        """

        user_id = _require_user_id(user_id)
        item_id = _require_item_id(item_id)
        kind = coerce_item_type(item_type)
        user_answer = _require_text("user_answer", user_answer)
        correct_answer = _require_text("correct_answer", correct_answer)
        supplied = coerce_grade(grade) if grade is not None else None
        if response_time_ms is not None and (
            isinstance(response_time_ms, bool) or not isinstance(response_time_ms, int) or response_time_ms < 0
        ):
            raise ValidationError(f"response_time_ms must be a non-negative integer, got {response_time_ms!r}")
        zone = self._resolve_zone(timezone)

        with self._lock_for(user_id, item_id, kind):
            state = self._read_with_retry(
                "load_item_state", lambda: self.store.load_item_state(user_id, item_id, kind)
            )
            if state is None:
                raise ItemNotFoundError(user_id, item_id, kind.value)

            is_correct = bool(self.compare_answer(user_answer, correct_answer))
            if not is_correct:
                chosen = Grade.AGAIN
            elif supplied is not None:
                chosen = supplied
            elif response_time_ms is None:
                chosen = Grade.GOOD
            else:
                chosen = derive_grade(response_time_ms, correct_answer, is_correct)

            now = self.clock.now()
            next_state = replace(
                transition(state, chosen, now),
                last_reviewed_at=now,
                total_reviews=state.total_reviews + 1,
                correct_count=state.correct_count + (1 if is_correct else 0),
                incorrect_count=state.incorrect_count + (0 if is_correct else 1),
            )
            saved = self.store.save_item_state(
                user_id,
                item_id,
                kind,
                next_state,
                expected_version=state.version,
                review=ReviewLog(
                    user_answer=user_answer,
                    correct_answer=correct_answer,
                    is_correct=is_correct,
                    grade=int(chosen),
                    response_time_ms=response_time_ms or 0,
                    reviewed_at=now,
                ),
            )

        self._invalidate(queue_cache_prefix(user_id), stats_cache_prefix(user_id))
        self._record_stats(user_id, local_date(now, zone), is_correct, response_time_ms or 0)

        logger.info(
            "review_submitted",
            user_id=user_id,
            item_id=item_id,
            item_type=kind.value,
            is_correct=is_correct,
            grade=int(chosen),
            stage=saved.stage.value,
            interval_days=saved.interval_days,
        )
        return SubmissionResult(is_correct=is_correct, grade=chosen, updated_state=saved)

    def _record_stats(self, user_id: str, stat_date: date, is_correct: bool, response_time_ms: int) -> None:
        if self.stats is None:
            return
        try:
            self.stats.record_review(
                user_id, stat_date, is_correct=is_correct, response_time_ms=response_time_ms
            )
        except StatsUpdateError as exc:
            logger.warning(
                "stats_update_failed",
                user_id=user_id,
                stat_date=stat_date.isoformat(),
                error=str(exc),
            )
            return
        # 集計が反映された後の統計を次回読込で取り直させる
        self._invalidate(stats_cache_prefix(user_id))

    # --- lessons ---
    def enroll_items(
        self,
        user_id: str,
        items: Iterable[tuple[int, ItemType | str]],
        timezone: str | None = None,
    ) -> int:
        """Start lessons for ``items``; returns how many new states were created.

        既に持っているアイテムは変更しない（進捗を初期化しない）。
        """

        user_id = _require_user_id(user_id)
        zone = self._resolve_zone(timezone)
        unique: dict[tuple[int, ItemType], None] = {}
        for item_id, item_type in items:
            unique[(_require_item_id(item_id), coerce_item_type(item_type))] = None
        if not unique:
            raise ValidationError("items must not be empty")

        now = self.clock.now()
        created = 0
        for item_id, kind in unique:
            if self.store.create_item_state(user_id, item_id, kind, now):
                created += 1

        if created:
            self._invalidate(queue_cache_prefix(user_id))
            if self.stats is not None:
                try:
                    self.stats.record_new_items(user_id, local_date(now, zone), created)
                except StatsUpdateError as exc:
                    logger.warning("stats_update_failed", user_id=user_id, error=str(exc))
                else:
                    self._invalidate(stats_cache_prefix(user_id))
        logger.info("items_enrolled", user_id=user_id, requested=len(unique), created=created)
        return created

    # --- forecast ---
    def upcoming_forecast(self, user_id: str, hours: int = 24) -> ForecastResult:
        """Count items becoming due in each of the next ``hours`` hours.

        バケット i は (now + i 時間, now + (i+1) 時間] を表す。既に期限到来済みの
        アイテムはキュー側で扱うため含めない。
        """

        user_id = _require_user_id(user_id)
        hours = _require_bounded_int("hours", hours, MAX_FORECAST_HOURS)

        now = self.clock.now()
        end = now + timedelta(hours=hours)
        due_dates = self._read_with_retry(
            "list_upcoming_due_dates",
            lambda: self.store.list_upcoming_due_dates(user_id, now, end),
        )
        counts = [0] * hours
        for due in due_dates:
            offset = int((due - now) / timedelta(hours=1))
            if due - now == timedelta(hours=offset):
                offset -= 1
            counts[max(0, min(hours - 1, offset))] += 1
        buckets = [
            ForecastBucket(hour=i, starts_at=now + timedelta(hours=i), count=count)
            for i, count in enumerate(counts)
        ]
        return ForecastResult(buckets=buckets, total=sum(counts))

    # --- stats ---
    def daily_stats(self, user_id: str, timezone: str | None = None) -> dict[str, Any]:
        user_id = _require_user_id(user_id)
        if self.stats is None:
            raise BackendUnavailableError("stats are not configured")
        stats = self.stats
        today = local_date(self.clock.now(), self._resolve_zone(timezone))
        summary = self.cache.get_or_load(
            stats_cache_key(user_id, today),
            lambda: self._read_with_retry("daily_stats", lambda: stats.summary(user_id, today)),
            self.settings.stats_cache_ttl_seconds,
            timeout=self.settings.store_timeout_ms / 1000.0,
        )
        return dict(summary)

    def stats_range(self, user_id: str, days: int = 30, timezone: str | None = None) -> dict[str, Any]:
        """Daily counters for the last ``days`` local days, today included.

        当日統計と同じ stats:daily:{user}: 配下にキャッシュするため、回答送信で無効化される。
        """

        user_id = _require_user_id(user_id)
        days = _require_bounded_int("days", days, MAX_STATS_RANGE_DAYS)
        if self.stats is None:
            raise BackendUnavailableError("stats are not configured")
        stats = self.stats
        end = local_date(self.clock.now(), self._resolve_zone(timezone))
        start = end - timedelta(days=days - 1)
        result = self.cache.get_or_load(
            stats_range_cache_key(user_id, end, days),
            lambda: self._read_with_retry("stats_range", lambda: stats.history(user_id, start, end)),
            self.settings.stats_cache_ttl_seconds,
            timeout=self.settings.store_timeout_ms / 1000.0,
        )
        return dict(result, days=[dict(day) for day in result["days"]])

    # --- history ---
    def review_history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent submissions, newest first (not cached)."""

        user_id = _require_user_id(user_id)
        limit = _require_bounded_int("limit", limit, MAX_HISTORY_LIMIT)
        return self._read_with_retry(
            "list_review_history", lambda: self.store.list_review_history(user_id, limit)
        )

    def shutdown(self) -> None:
        self.cache.shutdown()


def build_review_service(config: Settings | None = None) -> ReviewService:
    config = config or default_settings
    store = SQLiteItemStore(config.srs_db_path)
    cache = QueueCache(
        default_ttl_seconds=config.queue_cache_ttl_seconds,
        max_workers=config.cache_max_workers,
    )
    return ReviewService(store, cache, stats=StatsUpdater(store), config=config)


@lru_cache(maxsize=1)
def get_review_service() -> ReviewService:
    """Process-wide service used by the HTTP routers (override in tests)."""

    return build_review_service()
