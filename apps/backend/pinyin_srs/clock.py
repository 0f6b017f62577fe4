from __future__ import annotations

from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


class SystemClock:
    """Wall clock returning timezone-aware UTC instants."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """naive な datetime は UTC とみなし、aware なものは UTC に変換する。"""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_timezone(name: str | None, default: str = "UTC") -> tzinfo:
    """IANA タイムゾーン名を解決する。不明な名前は ValidationError。"""

    candidate = (name or "").strip() or default
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown timezone: {candidate}") from exc


def local_date(instant: datetime, zone: tzinfo) -> date:
    """Return the calendar date of ``instant`` as seen in ``zone``.

    日次統計や streak はユーザーの暦日単位で数えるため、UTC の時刻を
    境界でのみローカル日付へ変換する。エンジン内部の日時は常に UTC。
    """

    return ensure_utc(instant).astimezone(zone).date()
