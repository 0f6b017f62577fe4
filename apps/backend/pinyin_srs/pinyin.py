"""Pinyin answer comparison.

入力方式の違い（``ni3`` / ``nǐ`` / ``NI3`` / ``nv3``）を吸収して比較するための
正規化ヘルパー。声調は厳密に区別し、``ni4`` と ``nǐ`` は一致しない。
"""

from __future__ import annotations

import re
import unicodedata


TONE_MARKS: dict[str, str] = {
    "a": "āáǎà",
    "e": "ēéěè",
    "i": "īíǐì",
    "o": "ōóǒò",
    "u": "ūúǔù",
    "ü": "ǖǘǚǜ",
}

_MARKED_TO_BASE: dict[str, str] = {
    mark: base for base, marks in TONE_MARKS.items() for mark in marks
}
_PINYIN_LETTERS = "a-zü" + "".join(_MARKED_TO_BASE)
_NUMBERED_SYLLABLE = re.compile(rf"([{_PINYIN_LETTERS}]+)([1-5])")


def remove_tone_marks(text: str) -> str:
    return "".join(_MARKED_TO_BASE.get(ch, ch) for ch in text)


def tone_of(syllable: str) -> int:
    """Return the tone number (1-4) of a marked syllable, 5 when unmarked."""

    for ch in syllable:
        base = _MARKED_TO_BASE.get(ch)
        if base is not None:
            return TONE_MARKS[base].index(ch) + 1
    return 5


def add_tone_mark(syllable: str, tone: int) -> str:
    """Place the tone mark following the standard pinyin rules.

    1. a / e があればそこに付ける
    2. ou は o に付ける
    3. それ以外は最後の母音に付ける
    声調 5（軽声）は記号を付けずに返す。
    """

    if tone < 1 or tone > 5:
        raise ValueError(f"invalid tone number: {tone}")
    base = syllable.lower().replace("v", "ü")
    if tone == 5:
        return base

    if "a" in base:
        index = base.index("a")
    elif "e" in base:
        index = base.index("e")
    elif "ou" in base:
        index = base.index("o")
    else:
        index = max((i for i, ch in enumerate(base) if ch in "iouü"), default=-1)
    if index < 0:
        return base

    vowel = base[index]
    return base[:index] + TONE_MARKS[vowel][tone - 1] + base[index + 1 :]


def convert_tone_numbers(text: str) -> str:
    """``ni3 hao3`` → ``nǐ hǎo``. 既に声調記号がある音節は付け直す。"""

    return _NUMBERED_SYLLABLE.sub(
        lambda m: add_tone_mark(remove_tone_marks(m.group(1)), int(m.group(2))),
        text,
    )


def normalize_pinyin(text: str) -> str:
    """Canonical form used for comparison: NFC, lower case, tone marks, no whitespace."""

    normalized = unicodedata.normalize("NFC", text or "").lower()
    normalized = normalized.replace("u:", "ü").replace("v", "ü")
    normalized = convert_tone_numbers(normalized)
    return "".join(normalized.split())


def compare_pinyin(user_answer: str, correct_answer: str) -> bool:
    """Return True when both answers spell the same syllables with the same tones."""

    expected = normalize_pinyin(correct_answer)
    if not expected:
        return False
    return normalize_pinyin(user_answer) == expected
