"""SM-2 derived scheduling for pinyin review items.

学習アイテムごとの状態 (ItemState) と、採点結果から次回出題日を決める
純粋関数 ``transition`` を提供する。I/O は一切行わない。

- ease は 1000 倍した整数（2500 = 2.5）で保持し、浮動小数の誤差を避ける
- 間隔(日)の丸めは四捨五入（切り捨てによる前倒し出題の偏りを防ぐ）
- Again は常に relearning へ落とし、同一セッション内で再出題する
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum, IntEnum

from .clock import SystemClock, ensure_utc
from .errors import InvalidGradeError, ValidationError


EASE_SCALE = 1000
INITIAL_EASE_FACTOR = 2500
MIN_EASE_FACTOR = 1300
MAX_EASE_FACTOR = 3000

LEARNING_INTERVAL_DAYS = 1
LEARNING_GRADUATION_REPETITIONS = 2
GRADUATING_INTERVAL_DAYS = 3
RELEARNED_INTERVAL_DAYS = 1
MIN_REVIEW_INTERVAL_DAYS = 1
MAX_INTERVAL_DAYS = 365
GRADUATED_REPETITIONS = 8

# 自己評価が無い場合の時間ベース採点（1文字あたりの秒数）
EASY_MAX_SECONDS_PER_CHAR = 5
GOOD_MAX_SECONDS_PER_CHAR = 10


class Grade(IntEnum):
    AGAIN = 0
    HARD = 1
    GOOD = 2
    EASY = 3


class Stage(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"
    GRADUATED = "graduated"


class ItemType(str, Enum):
    RADICAL = "radical"
    CHARACTER = "character"
    VOCABULARY = "vocabulary"


EASE_ADJUSTMENTS: dict[Grade, int] = {
    Grade.AGAIN: -200,
    Grade.HARD: -150,
    Grade.GOOD: 0,
    Grade.EASY: 150,
}

# 百分率。Hard は段階を戻さずに間隔だけ縮める
INTERVAL_MULTIPLIERS: dict[Grade, int] = {
    Grade.HARD: 80,
    Grade.GOOD: 100,
    Grade.EASY: 130,
}
_MULTIPLIER_SCALE = 100


@dataclass(frozen=True)
class ItemState:
    """Scheduling state of one (user, item) pair."""

    user_id: str
    item_id: int
    item_type: ItemType
    next_review_date: datetime
    updated_at: datetime
    stage: Stage = Stage.NEW
    ease_factor: int = INITIAL_EASE_FACTOR
    interval_days: int = 0
    repetition_count: int = 0
    last_reviewed_at: datetime | None = None
    total_reviews: int = 0
    correct_count: int = 0
    incorrect_count: int = 0
    version: int = 0

    @property
    def ease(self) -> float:
        return self.ease_factor / EASE_SCALE

    def is_due(self, now: datetime) -> bool:
        return self.next_review_date <= ensure_utc(now)


def new_item_state(user_id: str, item_id: int, item_type: ItemType, now: datetime) -> ItemState:
    """レッスン開始時の初期状態（stage=new、即時出題）を作る。"""

    now = ensure_utc(now)
    return ItemState(
        user_id=user_id,
        item_id=item_id,
        item_type=item_type,
        next_review_date=now,
        updated_at=now,
    )


def coerce_grade(value: object) -> Grade:
    """Validate a grade value. ``bool`` and non-integers are rejected."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidGradeError(f"grade must be an integer between 0 and 3, got {value!r}")
    try:
        return Grade(value)
    except ValueError as exc:
        raise InvalidGradeError(f"grade must be between 0 and 3, got {value!r}") from exc


def coerce_item_type(value: object) -> ItemType:
    try:
        return ItemType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown item_type: {value!r}") from exc


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounding .5 away from zero for non-negative operands."""

    return (2 * numerator + denominator) // (2 * denominator)


def _clamp_ease(ease_factor: int) -> int:
    return max(MIN_EASE_FACTOR, min(MAX_EASE_FACTOR, ease_factor))


def _graduating_interval(grade: Grade) -> int:
    return max(
        MIN_REVIEW_INTERVAL_DAYS,
        round_half_up(GRADUATING_INTERVAL_DAYS * INTERVAL_MULTIPLIERS[grade], _MULTIPLIER_SCALE),
    )


def _review_interval(previous_days: int, ease_factor: int, grade: Grade) -> int:
    """interval × ease × multiplier を整数演算で求める。

    Good/Easy は最低でも 1 日延ばす。Hard は縮んでもよいが 1 日未満にはしない。
    いずれも MAX_INTERVAL_DAYS で頭打ち。
    """

    previous_days = max(0, previous_days)
    scaled = round_half_up(
        previous_days * ease_factor * INTERVAL_MULTIPLIERS[grade],
        EASE_SCALE * _MULTIPLIER_SCALE,
    )
    if grade is not Grade.HARD:
        scaled = max(scaled, previous_days + 1)
    return min(MAX_INTERVAL_DAYS, max(MIN_REVIEW_INTERVAL_DAYS, scaled))


def _schedule(
    state: ItemState,
    now: datetime,
    *,
    stage: Stage,
    interval_days: int,
    repetition_count: int,
    ease_factor: int,
) -> ItemState:
    return replace(
        state,
        stage=stage,
        ease_factor=_clamp_ease(ease_factor),
        interval_days=interval_days,
        repetition_count=repetition_count,
        next_review_date=now + timedelta(days=interval_days),
        updated_at=now,
    )


def transition(state: ItemState, grade: Grade | int, now: datetime | None = None) -> ItemState:
    """Return the state after one review graded ``grade`` at ``now``.

    採点結果に応じて stage/ease/間隔/連続正解数を更新した新しい ItemState を返す。
    入力の state は変更しない。正しい形の state に対しては例外を投げない
    （不正な grade のみ InvalidGradeError）。
    """

    grade = coerce_grade(grade)
    now = ensure_utc(now) if now is not None else SystemClock().now()

    if grade is Grade.AGAIN:
        return _schedule(
            state,
            now,
            stage=Stage.RELEARNING,
            interval_days=0,
            repetition_count=0,
            ease_factor=state.ease_factor + EASE_ADJUSTMENTS[Grade.AGAIN],
        )

    if state.stage is Stage.NEW:
        return _schedule(
            state,
            now,
            stage=Stage.LEARNING,
            interval_days=LEARNING_INTERVAL_DAYS,
            repetition_count=1,
            ease_factor=state.ease_factor,
        )

    if state.stage is Stage.LEARNING:
        repetitions = state.repetition_count + 1
        if repetitions >= LEARNING_GRADUATION_REPETITIONS:
            return _schedule(
                state,
                now,
                stage=Stage.REVIEW,
                interval_days=_graduating_interval(grade),
                repetition_count=repetitions,
                ease_factor=state.ease_factor,
            )
        return _schedule(
            state,
            now,
            stage=Stage.LEARNING,
            interval_days=LEARNING_INTERVAL_DAYS,
            repetition_count=repetitions,
            ease_factor=state.ease_factor,
        )

    if state.stage is Stage.RELEARNING:
        return _schedule(
            state,
            now,
            stage=Stage.REVIEW,
            interval_days=RELEARNED_INTERVAL_DAYS,
            repetition_count=1,
            ease_factor=state.ease_factor,
        )

    # review / graduated
    repetitions = state.repetition_count + 1
    graduated = state.stage is Stage.GRADUATED or repetitions >= GRADUATED_REPETITIONS
    return _schedule(
        state,
        now,
        stage=Stage.GRADUATED if graduated else Stage.REVIEW,
        interval_days=_review_interval(state.interval_days, state.ease_factor, grade),
        repetition_count=repetitions,
        ease_factor=state.ease_factor + EASE_ADJUSTMENTS[grade],
    )


def derive_grade(response_time_ms: int, correct_answer: str, is_correct: bool) -> Grade:
    """Derive a grade from correctness and answer speed.

    不正解は Again。正解なら期待解答 1 文字あたりの所要時間で
    5 秒未満 → Easy、10 秒以下 → Good、それ以上 → Hard とする。
    """

    if isinstance(response_time_ms, bool) or not isinstance(response_time_ms, int) or response_time_ms < 0:
        raise ValidationError(f"response_time_ms must be a non-negative integer, got {response_time_ms!r}")
    if not is_correct:
        return Grade.AGAIN
    chars = max(1, len("".join(correct_answer.split())))
    if response_time_ms < EASY_MAX_SECONDS_PER_CHAR * 1000 * chars:
        return Grade.EASY
    if response_time_ms <= GOOD_MAX_SECONDS_PER_CHAR * 1000 * chars:
        return Grade.GOOD
    return Grade.HARD
