from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from ..clock import SystemClock
from ..errors import BackendUnavailableError, ConcurrencyConflictError, ItemNotFoundError, ValidationError
from ..srs import ItemState, ItemType, Stage, new_item_state
from .common import (
    DAILY_STAT_FIELDS,
    ReviewLog,
    from_db_timestamp,
    normalize_non_negative_int,
    to_db_timestamp,
)


_ITEM_COLUMNS = (
    "user_id, item_id, item_type, stage, ease_factor, interval_days, repetition_count, "
    "next_review_date, updated_at, last_reviewed_at, total_reviews, correct_count, "
    "incorrect_count, version"
)


class SQLiteItemStore:
    """SQLite-backed item store for per-user SRS state, history and daily stats.

    - user_items の更新は version による compare-and-swap（古い読込結果で上書きしない）
    - 状態更新とレビュー履歴の追記は同一トランザクションで行う
    - sqlite3 の例外は BackendUnavailableError に包んで返す
    """

    def __init__(self, db_path: str, clock: SystemClock | None = None) -> None:
        self.db_path = db_path
        self._clock = clock or SystemClock()
        self._ensure_dirs()
        with self._conn() as conn:
            self._init_db(conn)

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise BackendUnavailableError(f"sqlite connect failed: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise BackendUnavailableError(f"sqlite operation failed: {exc}") from exc
        finally:
            conn.close()

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _init_db(conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_items (
                    user_id TEXT NOT NULL,
                    item_id INTEGER NOT NULL,
                    item_type TEXT NOT NULL,
                    stage TEXT NOT NULL DEFAULT 'new',
                    ease_factor INTEGER NOT NULL DEFAULT 2500,
                    interval_days INTEGER NOT NULL DEFAULT 0,
                    repetition_count INTEGER NOT NULL DEFAULT 0,
                    next_review_date TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_reviewed_at TEXT,
                    total_reviews INTEGER NOT NULL DEFAULT 0,
                    correct_count INTEGER NOT NULL DEFAULT 0,
                    incorrect_count INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, item_id, item_type)
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_items_due ON user_items(user_id, next_review_date, item_id);"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    item_id INTEGER NOT NULL,
                    item_type TEXT NOT NULL,
                    user_answer TEXT NOT NULL,
                    correct_answer TEXT NOT NULL,
                    is_correct INTEGER NOT NULL,
                    grade INTEGER NOT NULL,
                    response_time_ms INTEGER NOT NULL,
                    new_stage TEXT NOT NULL,
                    new_interval_days INTEGER NOT NULL,
                    reviewed_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_review_history_user ON review_history(user_id, reviewed_at);"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS daily_stats (
                    user_id TEXT NOT NULL,
                    stat_date TEXT NOT NULL,
                    reviews_completed INTEGER NOT NULL DEFAULT 0,
                    correct_answers INTEGER NOT NULL DEFAULT 0,
                    time_spent_ms INTEGER NOT NULL DEFAULT 0,
                    new_items_learned INTEGER NOT NULL DEFAULT 0,
                    streak_maintained INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, stat_date)
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_streaks (
                    user_id TEXT PRIMARY KEY,
                    current_streak INTEGER NOT NULL DEFAULT 0,
                    longest_streak INTEGER NOT NULL DEFAULT 0,
                    last_active_date TEXT
                );
                """
            )

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> ItemState:
        return ItemState(
            user_id=str(row["user_id"]),
            item_id=int(row["item_id"]),
            item_type=ItemType(row["item_type"]),
            stage=Stage(row["stage"]),
            ease_factor=int(row["ease_factor"]),
            interval_days=int(row["interval_days"]),
            repetition_count=int(row["repetition_count"]),
            next_review_date=from_db_timestamp(row["next_review_date"]),
            updated_at=from_db_timestamp(row["updated_at"]),
            last_reviewed_at=from_db_timestamp(row["last_reviewed_at"]),
            total_reviews=int(row["total_reviews"]),
            correct_count=int(row["correct_count"]),
            incorrect_count=int(row["incorrect_count"]),
            version=int(row["version"]),
        )

    # --- item state ---
    def load_item_state(self, user_id: str, item_id: int, item_type: ItemType) -> ItemState | None:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM user_items WHERE user_id = ? AND item_id = ? AND item_type = ?;",
                (user_id, item_id, ItemType(item_type).value),
            ).fetchone()
        return None if row is None else self._row_to_state(row)

    def create_item_state(self, user_id: str, item_id: int, item_type: ItemType, now: datetime) -> bool:
        """Insert a fresh ``new`` state due at ``now``. Returns False when the user already has the item."""

        state = new_item_state(user_id, item_id, ItemType(item_type), now)
        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    f"""
                    INSERT OR IGNORE INTO user_items ({_ITEM_COLUMNS}, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        state.user_id,
                        state.item_id,
                        state.item_type.value,
                        state.stage.value,
                        state.ease_factor,
                        state.interval_days,
                        state.repetition_count,
                        to_db_timestamp(state.next_review_date),
                        to_db_timestamp(state.updated_at),
                        to_db_timestamp(state.last_reviewed_at) if state.last_reviewed_at else None,
                        state.total_reviews,
                        state.correct_count,
                        state.incorrect_count,
                        state.version,
                        to_db_timestamp(now),
                    ),
                )
                return cur.rowcount > 0

    def save_item_state(
        self,
        user_id: str,
        item_id: int,
        item_type: ItemType,
        new_state: ItemState,
        *,
        expected_version: int,
        review: ReviewLog | None = None,
    ) -> ItemState:
        """Persist ``new_state`` if the stored row still has ``expected_version``.

        BEGIN IMMEDIATE で書き込みロックを取り、version が一致した場合のみ更新する。
        一致しなければ ConcurrencyConflictError（行が無ければ ItemNotFoundError）。
        """

        item_type = ItemType(item_type)
        with self._conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                cur = conn.execute(
                    """
                    UPDATE user_items
                    SET stage = ?, ease_factor = ?, interval_days = ?, repetition_count = ?,
                        next_review_date = ?, updated_at = ?, last_reviewed_at = ?,
                        total_reviews = ?, correct_count = ?, incorrect_count = ?,
                        version = version + 1
                    WHERE user_id = ? AND item_id = ? AND item_type = ? AND version = ?;
                    """,
                    (
                        new_state.stage.value,
                        new_state.ease_factor,
                        new_state.interval_days,
                        new_state.repetition_count,
                        to_db_timestamp(new_state.next_review_date),
                        to_db_timestamp(new_state.updated_at),
                        to_db_timestamp(new_state.last_reviewed_at) if new_state.last_reviewed_at else None,
                        new_state.total_reviews,
                        new_state.correct_count,
                        new_state.incorrect_count,
                        user_id,
                        item_id,
                        item_type.value,
                        expected_version,
                    ),
                )
                if cur.rowcount != 1:
                    row = conn.execute(
                        "SELECT version FROM user_items WHERE user_id = ? AND item_id = ? AND item_type = ?;",
                        (user_id, item_id, item_type.value),
                    ).fetchone()
                    if row is None:
                        raise ItemNotFoundError(user_id, item_id, item_type.value)
                    raise ConcurrencyConflictError(
                        f"version mismatch for {item_type.value}:{item_id} "
                        f"(expected {expected_version}, stored {int(row['version'])})"
                    )
                if review is not None:
                    conn.execute(
                        """
                        INSERT INTO review_history(
                            user_id, item_id, item_type, user_answer, correct_answer, is_correct,
                            grade, response_time_ms, new_stage, new_interval_days, reviewed_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                        """,
                        (
                            user_id,
                            item_id,
                            item_type.value,
                            review.user_answer,
                            review.correct_answer,
                            1 if review.is_correct else 0,
                            int(review.grade),
                            normalize_non_negative_int(review.response_time_ms),
                            new_state.stage.value,
                            new_state.interval_days,
                            to_db_timestamp(review.reviewed_at),
                        ),
                    )
                conn.execute("COMMIT;")
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
        return replace(new_state, version=expected_version + 1)

    def list_due_items(self, user_id: str, limit: int, now: datetime) -> list[ItemState]:
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS} FROM user_items
                WHERE user_id = ? AND next_review_date <= ?
                ORDER BY next_review_date ASC, item_id ASC, item_type ASC
                LIMIT ?;
                """,
                (user_id, to_db_timestamp(now), limit),
            ).fetchall()
        return [self._row_to_state(row) for row in rows]

    def list_upcoming_due_dates(self, user_id: str, start: datetime, end: datetime) -> list[datetime]:
        """Due dates in the half-open window ``(start, end]``, ascending."""

        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT next_review_date FROM user_items
                WHERE user_id = ? AND next_review_date > ? AND next_review_date <= ?
                ORDER BY next_review_date ASC;
                """,
                (user_id, to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        return [from_db_timestamp(row["next_review_date"]) for row in rows]

    def list_review_history(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """直近のレビュー履歴を新しい順に返す。"""

        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT item_id, item_type, user_answer, correct_answer, is_correct, grade,
                       response_time_ms, new_stage, new_interval_days, reviewed_at
                FROM review_history
                WHERE user_id = ?
                ORDER BY reviewed_at DESC, id DESC
                LIMIT ?;
                """,
                (user_id, limit),
            ).fetchall()
        return [
            {
                "item_id": int(row["item_id"]),
                "item_type": str(row["item_type"]),
                "user_answer": str(row["user_answer"]),
                "correct_answer": str(row["correct_answer"]),
                "is_correct": bool(row["is_correct"]),
                "grade": int(row["grade"]),
                "response_time_ms": int(row["response_time_ms"]),
                "new_stage": str(row["new_stage"]),
                "new_interval_days": int(row["new_interval_days"]),
                "reviewed_at": from_db_timestamp(row["reviewed_at"]),
            }
            for row in rows
        ]

    # --- aggregate stats ---
    def increment_daily_stat(self, user_id: str, stat_date: date, field: str, delta: int) -> None:
        if field not in DAILY_STAT_FIELDS:
            raise ValidationError(f"unknown daily stat field: {field}")
        now = to_db_timestamp(self._clock.now())
        with self._conn() as conn:
            with conn:
                conn.execute(
                    f"""
                    INSERT INTO daily_stats (user_id, stat_date, {field}, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, stat_date) DO UPDATE SET
                        {field} = {field} + excluded.{field},
                        updated_at = excluded.updated_at;
                    """,
                    (user_id, stat_date.isoformat(), int(delta), now),
                )

    def mark_streak(self, user_id: str, stat_date: date) -> int:
        """Record activity on ``stat_date`` and return the resulting current streak.

        前回の活動日が前日なら +1、同日なら据え置き、それ以外は 1 から数え直す。
        過去日付の記録（時差で前後した場合）は streak を変えない。
        """

        now = to_db_timestamp(self._clock.now())
        with self._conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                row = conn.execute(
                    "SELECT current_streak, longest_streak, last_active_date FROM user_streaks WHERE user_id = ?;",
                    (user_id,),
                ).fetchone()
                last_active = date.fromisoformat(row["last_active_date"]) if row and row["last_active_date"] else None
                current = int(row["current_streak"]) if row else 0
                longest = int(row["longest_streak"]) if row else 0
                if last_active is None:
                    current = 1
                elif last_active == stat_date - timedelta(days=1):
                    current += 1
                elif last_active < stat_date:
                    current = 1
                longest = max(longest, current)
                latest = stat_date if last_active is None else max(last_active, stat_date)
                conn.execute(
                    """
                    INSERT INTO user_streaks (user_id, current_streak, longest_streak, last_active_date)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        current_streak = excluded.current_streak,
                        longest_streak = excluded.longest_streak,
                        last_active_date = excluded.last_active_date;
                    """,
                    (user_id, current, longest, latest.isoformat()),
                )
                conn.execute(
                    """
                    INSERT INTO daily_stats (user_id, stat_date, streak_maintained, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(user_id, stat_date) DO UPDATE SET
                        streak_maintained = 1,
                        updated_at = excluded.updated_at;
                    """,
                    (user_id, stat_date.isoformat(), now),
                )
                conn.execute("COMMIT;")
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                raise
        return current

    def get_daily_stats(self, user_id: str, stat_date: date) -> dict[str, Any]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT reviews_completed, correct_answers, time_spent_ms, new_items_learned, streak_maintained
                FROM daily_stats WHERE user_id = ? AND stat_date = ?;
                """,
                (user_id, stat_date.isoformat()),
            ).fetchone()
        stats: dict[str, Any] = {field: 0 for field in DAILY_STAT_FIELDS}
        stats["streak_maintained"] = False
        if row is not None:
            for field in DAILY_STAT_FIELDS:
                stats[field] = int(row[field])
            stats["streak_maintained"] = bool(row["streak_maintained"])
        return stats

    def get_daily_stats_range(self, user_id: str, start: date, end: date) -> list[dict[str, Any]]:
        """Stored daily rows with ``start <= stat_date <= end``, oldest first.

        活動の無い日は行が無いため返らない（穴埋めは呼び出し側で行う）。
        """

        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT stat_date, reviews_completed, correct_answers, time_spent_ms,
                       new_items_learned, streak_maintained
                FROM daily_stats
                WHERE user_id = ? AND stat_date >= ? AND stat_date <= ?
                ORDER BY stat_date ASC;
                """,
                (user_id, start.isoformat(), end.isoformat()),
            ).fetchall()
        result: list[dict[str, Any]] = []
        for row in rows:
            stats: dict[str, Any] = {"date": date.fromisoformat(row["stat_date"])}
            for field in DAILY_STAT_FIELDS:
                stats[field] = int(row[field])
            stats["streak_maintained"] = bool(row["streak_maintained"])
            result.append(stats)
        return result

    def get_streak(self, user_id: str) -> dict[str, Any]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT current_streak, longest_streak, last_active_date FROM user_streaks WHERE user_id = ?;",
                (user_id,),
            ).fetchone()
        if row is None:
            return {"current_streak": 0, "longest_streak": 0, "last_active_date": None}
        return {
            "current_streak": int(row["current_streak"]),
            "longest_streak": int(row["longest_streak"]),
            "last_active_date": date.fromisoformat(row["last_active_date"]) if row["last_active_date"] else None,
        }
