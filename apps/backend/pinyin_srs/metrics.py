from __future__ import annotations

import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict


@dataclass
class PathStats:
    latencies_ms: Deque[float]
    errors: int = 0
    timeouts: int = 0
    total: int = 0
    status_codes: Counter = field(default_factory=Counter)


class MetricsRegistry:
    """In-memory per-path request metrics.

    - p95 算出用の直近レイテンシ窓
    - エラー/タイムアウト件数
    - ステータスコード別件数（409/503 の増加で競合やストア障害に気付ける）
    """

    def __init__(self, window_size: int = 200) -> None:
        self._window_size = window_size
        self._lock = threading.Lock()
        self._per_path: Dict[str, PathStats] = defaultdict(
            lambda: PathStats(latencies_ms=deque(maxlen=self._window_size))
        )

    def record(
        self,
        path: str,
        latency_ms: float,
        *,
        status_code: int | None = None,
        is_error: bool = False,
        is_timeout: bool = False,
    ) -> None:
        with self._lock:
            stats = self._per_path[path]
            stats.latencies_ms.append(latency_ms)
            stats.total += 1
            if status_code is not None:
                stats.status_codes[str(status_code)] += 1
            if is_error:
                stats.errors += 1
            if is_timeout:
                stats.timeouts += 1

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            result: Dict[str, Dict[str, object]] = {}
            for path, stats in self._per_path.items():
                p95 = calculate_p95(list(stats.latencies_ms)) if stats.latencies_ms else 0.0
                result[path] = {
                    "p95_ms": round(p95, 2),
                    "count": stats.total,
                    "errors": stats.errors,
                    "timeouts": stats.timeouts,
                    "status_codes": dict(stats.status_codes),
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._per_path.clear()


def calculate_p95(values: list[float]) -> float:
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    k = int(0.95 * (len(sorted_vals) - 1))
    return sorted_vals[k]


registry = MetricsRegistry()
