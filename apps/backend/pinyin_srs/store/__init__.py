from .common import DAILY_STAT_FIELDS, ReviewLog, normalize_non_negative_int
from .sqlite_store import SQLiteItemStore

__all__ = [
    "DAILY_STAT_FIELDS",
    "ReviewLog",
    "SQLiteItemStore",
    "normalize_non_negative_int",
]
