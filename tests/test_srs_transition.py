"""Scheduling transitions: stage moves, ease bounds and interval growth."""

from datetime import UTC, datetime, timedelta

import pytest

from pinyin_srs.errors import InvalidGradeError, ValidationError
from pinyin_srs.srs import (
    MAX_INTERVAL_DAYS,
    MIN_EASE_FACTOR,
    Grade,
    ItemState,
    ItemType,
    Stage,
    derive_grade,
    new_item_state,
    round_half_up,
    transition,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _state(**overrides) -> ItemState:
    base = dict(
        user_id="u1",
        item_id=42,
        item_type=ItemType.CHARACTER,
        next_review_date=NOW,
        updated_at=NOW - timedelta(days=1),
    )
    base.update(overrides)
    return ItemState(**base)


ALL_STAGES = [
    _state(),
    _state(stage=Stage.LEARNING, interval_days=1, repetition_count=1),
    _state(stage=Stage.REVIEW, interval_days=10, repetition_count=5),
    _state(stage=Stage.RELEARNING, interval_days=0, repetition_count=0, ease_factor=1500),
    _state(stage=Stage.GRADUATED, interval_days=120, repetition_count=9, ease_factor=2900),
]


def test_new_item_good_moves_to_learning():
    result = transition(_state(), Grade.GOOD, NOW)

    assert result.stage is Stage.LEARNING
    assert result.interval_days == 1
    assert result.repetition_count == 1
    assert result.next_review_date == NOW + timedelta(days=1)
    assert result.updated_at == NOW


def test_review_item_again_drops_to_relearning():
    state = _state(stage=Stage.REVIEW, interval_days=10, repetition_count=5, ease_factor=2500)

    result = transition(state, Grade.AGAIN, NOW)

    assert result.stage is Stage.RELEARNING
    assert result.interval_days == 0
    assert result.repetition_count == 0
    assert result.ease == pytest.approx(2.3)
    # 同一セッション内で再出題できるよう即時期限
    assert result.next_review_date == NOW


@pytest.mark.parametrize("state", ALL_STAGES, ids=lambda s: s.stage.value)
def test_again_always_resets_to_relearning(state):
    result = transition(state, Grade.AGAIN, NOW)

    assert result.interval_days == 0
    assert result.stage is Stage.RELEARNING


@pytest.mark.parametrize("grade", list(Grade))
@pytest.mark.parametrize("state", ALL_STAGES, ids=lambda s: s.stage.value)
def test_ease_never_drops_below_floor(state, grade):
    assert transition(state, grade, NOW).ease_factor >= MIN_EASE_FACTOR


def test_repeated_again_stops_at_floor():
    state = _state(stage=Stage.REVIEW, interval_days=30, repetition_count=4)
    for _ in range(20):
        state = transition(state, Grade.AGAIN, NOW)

    assert state.ease_factor == MIN_EASE_FACTOR


@pytest.mark.parametrize("interval", [1, 3, 10, 40, 200])
@pytest.mark.parametrize("ease", [1300, 2500, 3000])
def test_review_intervals_are_monotonic_in_grade(interval, ease):
    state = _state(stage=Stage.REVIEW, interval_days=interval, repetition_count=3, ease_factor=ease)

    easy = transition(state, Grade.EASY, NOW).interval_days
    good = transition(state, Grade.GOOD, NOW).interval_days
    hard = transition(state, Grade.HARD, NOW).interval_days

    assert easy >= good >= hard >= 1


def test_review_good_multiplies_interval_by_ease():
    state = _state(stage=Stage.REVIEW, interval_days=10, repetition_count=3, ease_factor=2500)

    result = transition(state, Grade.GOOD, NOW)

    assert result.interval_days == 25
    assert result.stage is Stage.REVIEW
    assert result.repetition_count == 4
    assert result.ease_factor == 2500


def test_review_hard_and_easy_adjust_ease():
    state = _state(stage=Stage.REVIEW, interval_days=10, repetition_count=3, ease_factor=2500)

    hard = transition(state, Grade.HARD, NOW)
    easy = transition(state, Grade.EASY, NOW)

    assert hard.interval_days == 20
    assert hard.ease_factor == 2350
    assert easy.interval_days == 33  # 10 * 2.5 * 1.3 = 32.5 → 四捨五入
    assert easy.ease_factor == 2650


def test_interval_is_capped():
    state = _state(stage=Stage.GRADUATED, interval_days=300, repetition_count=12, ease_factor=3000)

    assert transition(state, Grade.EASY, NOW).interval_days == MAX_INTERVAL_DAYS


def test_learning_graduates_to_review_on_second_success():
    learning = transition(_state(), Grade.GOOD, NOW)

    graduated = transition(learning, Grade.GOOD, NOW)

    assert graduated.stage is Stage.REVIEW
    assert graduated.interval_days == 3
    assert graduated.repetition_count == 2


def test_relearning_returns_to_review_with_short_interval():
    state = _state(stage=Stage.RELEARNING, interval_days=0, repetition_count=0, ease_factor=2300)

    result = transition(state, Grade.GOOD, NOW)

    assert result.stage is Stage.REVIEW
    assert result.interval_days == 1
    assert result.repetition_count == 1


def test_review_becomes_graduated_after_enough_repetitions():
    state = _state(stage=Stage.REVIEW, interval_days=60, repetition_count=7)

    result = transition(state, Grade.GOOD, NOW)

    assert result.stage is Stage.GRADUATED
    assert transition(result, Grade.HARD, NOW).stage is Stage.GRADUATED


def test_transition_does_not_mutate_input():
    state = _state(stage=Stage.REVIEW, interval_days=10, repetition_count=5)

    transition(state, Grade.EASY, NOW)

    assert state.interval_days == 10
    assert state.stage is Stage.REVIEW


@pytest.mark.parametrize("bad", [-1, 4, 2.0, "2", True, None])
def test_invalid_grade_is_rejected(bad):
    with pytest.raises(InvalidGradeError):
        transition(_state(), bad, NOW)


def test_new_item_state_is_due_immediately():
    state = new_item_state("u1", 7, ItemType.RADICAL, NOW)

    assert state.stage is Stage.NEW
    assert state.is_due(NOW)
    assert state.ease == pytest.approx(2.5)
    assert state.version == 0


def test_round_half_up_rounds_point_five_up():
    assert round_half_up(5, 2) == 3
    assert round_half_up(7, 3) == 2
    assert round_half_up(0, 4) == 0


def test_derive_grade_uses_time_per_character():
    # "nǐ" は 2 文字: 10 秒未満 Easy、20 秒以下 Good
    assert derive_grade(3000, "nǐ", True) is Grade.EASY
    assert derive_grade(10000, "nǐ", True) is Grade.GOOD
    assert derive_grade(20000, "nǐ", True) is Grade.GOOD
    assert derive_grade(20001, "nǐ", True) is Grade.HARD
    # 文字数が多いほど許容時間も延びる（空白は数えない）
    assert derive_grade(12000, "nǐ", True) is Grade.GOOD
    assert derive_grade(12000, "nǐ hǎo", True) is Grade.EASY
    assert derive_grade(1, "nǐ", False) is Grade.AGAIN


def test_derive_grade_rejects_negative_time():
    with pytest.raises(ValidationError):
        derive_grade(-5, "nǐ", True)
