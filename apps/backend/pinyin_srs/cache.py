"""In-process TTL cache with stale-while-revalidate for review queues.

- TTL の半分を過ぎたエントリは stale とみなし、値は即座に返しつつ裏で再取得する
- 期限切れ (expires_at 経過) のエントリは決して返さず、観測時と定期掃除で破棄する
- 同じキーへの同時ミスは 1 回の loader 呼び出しを共有する
- 同期読込 (miss) と裏の再取得は別の実行系で動かす。再取得が詰まっても
  他キーの miss は待たされない
- invalidate はグローバル世代番号を進め、読込中のキーにだけ無効化時点を記録する。
  無効化より前に始まった読込結果は書き戻さないため、回答送信直後に古いキューが
  復活することはない。記録は読込が全て終わった時点で捨てる
"""

from __future__ import annotations

import functools
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable

from .errors import CacheLoadTimeoutError, ValidationError
from .logging import logger


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stale_at: float
    expires_at: float

    def is_stale(self, now: float) -> bool:
        return now >= self.stale_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class DedicatedThreadExecutor(Executor):
    """Runs every submitted call on its own daemon thread.

    なぜ: 同期読込を共有プールに載せると、詰まった再取得や打ち切られた読込が
    ワーカーを占有し、無関係なキーの miss までタイムアウトする。1 呼び出し 1 スレッド
    なら待ち行列が生じず、タイムアウトした読込はそのスレッドだけを保持する。
    """

    def __init__(self, thread_name_prefix: str = "queue-cache-load") -> None:
        self._thread_name_prefix = thread_name_prefix
        self._counter = 0
        self._lock = threading.Lock()

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

        with self._lock:
            self._counter += 1
            name = f"{self._thread_name_prefix}-{self._counter}"
        threading.Thread(target=_target, name=name, daemon=True).start()
        return future


class QueueCache:
    """Thread-safe key/value cache fronting the due-item reads.

    clock は秒を返す callable（既定は time.monotonic）。テストでは偽の時計を
    注入して実時間を待たずに stale/expire を検証できる。
    executor は裏の再取得専用、load_executor は timeout 付き同期読込専用。
    """

    def __init__(
        self,
        *,
        default_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        executor: Executor | None = None,
        load_executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        self._default_ttl = self._validate_ttl(default_ttl_seconds)
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="queue-cache-refresh"
        )
        self._load_executor = load_executor or DedicatedThreadExecutor()
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._generation = 0
        self._invalidated_at: dict[str, int] = {}
        self._loads: dict[str, int] = {}
        self._in_flight: dict[str, Future] = {}
        self._revalidating: set[str] = set()
        self._next_sweep = clock() + self._default_ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _validate_ttl(ttl_seconds: float) -> float:
        if ttl_seconds is None or ttl_seconds <= 0:
            raise ValidationError(f"ttl_seconds must be positive, got {ttl_seconds!r}")
        return float(ttl_seconds)

    def _resolve_ttl(self, ttl_seconds: float | None) -> float:
        if ttl_seconds is None:
            return self._default_ttl
        return self._validate_ttl(ttl_seconds)

    # --- lock-held helpers ---
    def _live_entry(self, key: str, now: float) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    def _store(self, key: str, value: Any, ttl: float, now: float) -> None:
        self._entries[key] = CacheEntry(value=value, stale_at=now + ttl / 2, expires_at=now + ttl)
        self._maybe_sweep(now)

    def _maybe_sweep(self, now: float) -> None:
        # 二度と読まれないユーザーの期限切れエントリを既定 TTL 毎に 1 回だけ掃除する
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._default_ttl
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

    def _begin_load(self, key: str) -> None:
        self._loads[key] = self._loads.get(key, 0) + 1

    def _end_load(self, key: str) -> None:
        remaining = self._loads.get(key, 0) - 1
        if remaining > 0:
            self._loads[key] = remaining
            return
        self._loads.pop(key, None)
        self._invalidated_at.pop(key, None)

    def _invalidated_since(self, key: str, generation: int) -> bool:
        return self._invalidated_at.get(key, -1) > generation

    def _drop(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        self._in_flight.pop(key, None)
        if key in self._loads:
            self._invalidated_at[key] = self._generation
        return removed

    # --- public API ---
    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return None if entry is None else entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._resolve_ttl(ttl_seconds)
        with self._lock:
            self._store(key, value, ttl, self._clock())

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._generation += 1
            self._drop(key)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``. Returns the number removed."""

        with self._lock:
            self._generation += 1
            now = self._clock()
            removed = 0
            for key in [k for k in self._entries if k.startswith(prefix)]:
                if not self._entries[key].is_expired(now):
                    removed += 1
                self._drop(key)
            for key in [k for k in self._loads if k.startswith(prefix)]:
                self._drop(key)
            self._maybe_sweep(now)
            return removed

    def clear(self) -> None:
        """Drop every entry and discard the results of loads already running."""

        with self._lock:
            self._generation += 1
            for key in list(self._loads):
                self._drop(key)
            self._entries.clear()
            self._in_flight.clear()

    def get_or_load(
        self,
        key: str,
        loader: Callable[[], Any],
        ttl_seconds: float | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Return the cached value, loading it when absent.

        - fresh: そのまま返す
        - stale: そのまま返し、裏で 1 回だけ再取得をスケジュールする
        - absent/expired: 呼び出し元で同期読込し、成功時のみ保存する
        同期読込の失敗・タイムアウトは呼び出し元へ伝播し、何も保存しない。
        """

        ttl = self._resolve_ttl(ttl_seconds)
        start_refresh = False
        leader = False
        with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            generation = self._generation
            if entry is not None:
                if entry.is_stale(now) and key not in self._revalidating:
                    self._revalidating.add(key)
                    self._begin_load(key)
                    start_refresh = True
            else:
                pending = self._in_flight.get(key)
                if pending is None:
                    pending = Future()
                    self._in_flight[key] = pending
                    self._begin_load(key)
                    leader = True

        if entry is not None:
            if start_refresh:
                self._spawn_refresh(key, loader, ttl, generation, timeout)
            return entry.value

        if not leader:
            return self._wait_for(key, pending, timeout)

        try:
            value = self._run_loader(key, loader, timeout)
        except Exception as exc:
            pending.set_exception(exc)
            raise
        else:
            pending.set_result(value)
            with self._lock:
                if not self._invalidated_since(key, generation):
                    self._store(key, value, ttl, self._clock())
            return value
        finally:
            with self._lock:
                if self._in_flight.get(key) is pending:
                    del self._in_flight[key]
                self._end_load(key)

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # --- loading ---
    def _run_loader(self, key: str, loader: Callable[[], Any], timeout: float | None) -> Any:
        if timeout is None:
            return loader()
        future = self._load_executor.submit(loader)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout as exc:
            if future.done():
                raise
            future.cancel()
            logger.warning("queue_cache_load_timeout", key=key, timeout_s=timeout)
            raise CacheLoadTimeoutError(f"cache load timed out after {timeout}s: {key}") from exc

    def _wait_for(self, key: str, pending: Future, timeout: float | None) -> Any:
        try:
            return pending.result(timeout=timeout)
        except FuturesTimeout as exc:
            if pending.done():
                raise
            raise CacheLoadTimeoutError(f"cache load timed out after {timeout}s: {key}") from exc

    def _spawn_refresh(
        self,
        key: str,
        loader: Callable[[], Any],
        ttl: float,
        generation: int,
        timeout: float | None,
    ) -> None:
        started = self._clock()
        try:
            future = self._executor.submit(loader)
        except RuntimeError as exc:
            # executor 停止後（シャットダウン中）は再取得を諦め、stale 値を使い続ける
            with self._lock:
                self._revalidating.discard(key)
                self._end_load(key)
            logger.warning("queue_cache_revalidate_failed", key=key, error_type=type(exc).__name__, error=str(exc))
            return
        future.add_done_callback(
            functools.partial(self._finish_refresh, key, ttl, generation, started, timeout)
        )

    def _finish_refresh(
        self,
        key: str,
        ttl: float,
        generation: int,
        started: float,
        timeout: float | None,
        future: Future,
    ) -> None:
        try:
            try:
                value = future.result()
            except Exception as exc:
                logger.warning(
                    "queue_cache_revalidate_failed",
                    key=key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return
            finished = self._clock()
            if timeout is not None and finished - started > timeout:
                logger.info("queue_cache_revalidate_discarded", key=key, elapsed_s=round(finished - started, 3))
                return
            with self._lock:
                if not self._invalidated_since(key, generation):
                    self._store(key, value, ttl, finished)
        finally:
            with self._lock:
                self._revalidating.discard(key)
                self._end_load(key)
