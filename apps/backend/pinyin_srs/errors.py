"""Error taxonomy shared by the scheduling core, the cache and the HTTP layer.

ルーター側は ``retryable`` と型だけを見て HTTP ステータスへ変換するため、
ここで定義する例外は I/O の種類に依存しない。
"""

from __future__ import annotations


class SRSError(Exception):
    """Base class for every error raised by the SRS core."""

    retryable: bool = False


class ValidationError(SRSError):
    """Malformed grade, limit or identifiers. Raised before any I/O."""


class InvalidGradeError(ValidationError):
    """Grade outside Again(0)..Easy(3)."""


class NotFoundError(SRSError):
    """Requested record does not exist. Surfaced, never retried."""


class ItemNotFoundError(NotFoundError):
    """No ItemState for the given (user, item, item_type)."""

    def __init__(self, user_id: str, item_id: int, item_type: str) -> None:
        super().__init__(f"item state not found: user={user_id} item={item_type}:{item_id}")
        self.user_id = user_id
        self.item_id = item_id
        self.item_type = item_type


class ConcurrencyConflictError(SRSError):
    """A write lost its compare-and-swap race; the whole submission may be retried once."""

    retryable = True


class BackendUnavailableError(SRSError):
    """Store or cache infrastructure failure."""

    retryable = True


class CacheLoadTimeoutError(BackendUnavailableError):
    """Synchronous cache load exceeded its timeout. Nothing was cached."""


class StatsUpdateError(SRSError):
    """Aggregate stats update failed. Logged by the pipeline, never propagated."""
