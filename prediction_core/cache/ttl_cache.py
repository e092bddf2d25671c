from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from prediction_core.config import cache_fetch_timeout_ms, cache_refresh_floor_ms, cache_refresh_retry_ms
from prediction_core.errors import TransientUpstreamError
from prediction_core.resilience.bulkheads import FETCH_POOL


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    written_at: float
    ttl_ms: int

    def age_ms(self, now: float) -> int:
        return max(0, int((float(now) - float(self.written_at)) * 1000.0))

    def is_fresh(self, now: float) -> bool:
        return self.age_ms(now) < int(self.ttl_ms)


@dataclass(frozen=True)
class _Flight:
    future: Future
    generation: int
    token: object


class TTLCache:
    """In-process key/value cache with per-key TTL.

    At most one fetch per key is outstanding at any time; concurrent readers of
    a missing or expired key wait on that fetch's future and share its result.
    Successful fetches schedule a background refresh at ~90% of the TTL. A
    failing fetch leaves the entry untouched and readers get the stale value
    when one exists.

    Every key carries a generation that ``invalidate`` (or a TTL change) bumps.
    A fetch started under an older generation still completes for the callers
    waiting on it, but its result is not stored and it schedules no refresh.
    """

    def __init__(
        self,
        *,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
        refresh_ratio: float = 0.9,
        refresh_floor_ms: int | None = None,
        refresh_retry_ms: int | None = None,
        default_timeout_ms: int | None = None,
        auto_refresh: bool = True,
    ) -> None:
        self._executor = executor or FETCH_POOL
        self._clock = clock
        self._refresh_ratio = float(refresh_ratio)
        self._refresh_floor_ms = int(refresh_floor_ms if refresh_floor_ms is not None else cache_refresh_floor_ms())
        self._refresh_retry_ms = int(refresh_retry_ms if refresh_retry_ms is not None else cache_refresh_retry_ms())
        self._default_timeout_ms = int(default_timeout_ms if default_timeout_ms is not None else cache_fetch_timeout_ms())
        self._auto_refresh = bool(auto_refresh)
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._flights: dict[str, _Flight] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._generations: dict[str, int] = {}
        self._closed = False

    def get(self, key: str, fetcher: Callable[[], T], ttl_ms: int = 60_000, *, timeout_ms: int | None = None) -> T:
        k = str(key)
        ttl = int(ttl_ms)
        wait_ms = self._default_timeout_ms if timeout_ms is None else int(timeout_ms)
        deadline = time.monotonic() + max(0, wait_ms) / 1000.0

        while True:
            with self._lock:
                entry = self._entries.get(k)
                if entry is not None and entry.ttl_ms != ttl:
                    entry = self._change_policy_locked(k, entry, ttl)
                if entry is not None and entry.is_fresh(self._clock()):
                    logger.debug("cache_hit key=%s age_ms=%s", k, entry.age_ms(self._clock()))
                    return entry.data
                gen = self._generations.get(k, 0)
                flight = self._flights.get(k)
                superseded = flight is not None and flight.generation != gen
                if flight is None:
                    logger.info("cache_miss key=%s", k)
                    flight = self._start_flight_locked(k, fetcher, ttl, gen, refresh=False)
                else:
                    logger.debug("cache_join_inflight key=%s superseded=%s", k, superseded)

            if not superseded:
                return self._await_flight(k, flight, entry, deadline)

            done, _ = wait([flight.future], timeout=self._remaining_s(deadline))
            if not done:
                return self._serve_stale(k, entry, TransientUpstreamError(f"cache_fetch_timeout:{k}"))

    def invalidate(self, key: str) -> None:
        k = str(key)
        with self._lock:
            self._entries.pop(k, None)
            self._cancel_timer_locked(k)
            self._generations[k] = self._generations.get(k, 0) + 1
        logger.info("cache_invalidated key=%s", k)

    def clear(self) -> None:
        with self._lock:
            keys = set(self._entries) | set(self._timers) | set(self._flights)
            for k in keys:
                self._cancel_timer_locked(k)
                self._generations[k] = self._generations.get(k, 0) + 1
            self._entries.clear()
        logger.info("cache_cleared keys=%s", len(keys))

    def close(self) -> None:
        self.clear()
        with self._lock:
            self._closed = True

    def stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            now = self._clock()
            out: dict[str, dict[str, Any]] = {}
            for k, e in self._entries.items():
                age = e.age_ms(now)
                out[k] = {"age": age, "ttl": int(e.ttl_ms), "expired": age >= int(e.ttl_ms)}
            return out

    def has_pending_refresh(self, key: str) -> bool:
        with self._lock:
            return str(key) in self._timers

    def _remaining_s(self, deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    def _await_flight(self, key: str, flight: _Flight, stale: CacheEntry[Any] | None, deadline: float) -> Any:
        try:
            return flight.future.result(timeout=self._remaining_s(deadline))
        except FutureTimeoutError:
            return self._serve_stale(key, stale, TransientUpstreamError(f"cache_fetch_timeout:{key}"))
        except Exception as exc:
            return self._serve_stale(key, stale, exc)

    def _serve_stale(self, key: str, captured: CacheEntry[Any] | None, exc: BaseException) -> Any:
        with self._lock:
            entry = self._entries.get(key) or captured
            now = self._clock()
        if entry is None:
            raise exc
        logger.warning("cache_fetch_failed key=%s serving_stale age_ms=%s", key, entry.age_ms(now), exc_info=exc)
        return entry.data

    def _change_policy_locked(self, key: str, entry: CacheEntry[Any], ttl: int) -> CacheEntry[Any]:
        self._cancel_timer_locked(key)
        self._generations[key] = self._generations.get(key, 0) + 1
        updated = CacheEntry(data=entry.data, written_at=entry.written_at, ttl_ms=ttl)
        self._entries[key] = updated
        logger.info("cache_ttl_changed key=%s old_ttl_ms=%s ttl_ms=%s", key, entry.ttl_ms, ttl)
        return updated

    def _start_flight_locked(self, key: str, fetcher: Callable[[], Any], ttl: int, gen: int, *, refresh: bool) -> _Flight:
        token = object()
        fut = self._executor.submit(self._run_fetch, key, fetcher, ttl, gen, token, refresh)
        flight = _Flight(future=fut, generation=gen, token=token)
        self._flights[key] = flight
        return flight

    def _run_fetch(self, key: str, fetcher: Callable[[], Any], ttl: int, gen: int, token: object, refresh: bool) -> Any:
        try:
            data = fetcher()
        except Exception:
            with self._lock:
                self._end_flight_locked(key, token)
                current = self._generations.get(key, 0) == gen and not self._closed
                if refresh and current:
                    self._schedule_refresh_locked(key, fetcher, ttl, gen, delay_ms=self._refresh_retry_ms)
            if refresh:
                logger.warning("cache_auto_refresh_failed key=%s retry_ms=%s", key, self._refresh_retry_ms, exc_info=True)
            raise

        with self._lock:
            self._end_flight_locked(key, token)
            if self._generations.get(key, 0) == gen and not self._closed:
                self._entries[key] = CacheEntry(data=data, written_at=self._clock(), ttl_ms=ttl)
                self._schedule_refresh_locked(key, fetcher, ttl, gen, delay_ms=self._refresh_delay_ms(ttl))
                stored = True
            else:
                stored = False
        if not stored:
            logger.info("cache_result_not_stored key=%s reason=superseded", key)
        return data

    def _end_flight_locked(self, key: str, token: object) -> None:
        f = self._flights.get(key)
        if f is not None and f.token is token:
            del self._flights[key]

    def _refresh_delay_ms(self, ttl: int) -> int:
        return max(int(ttl * self._refresh_ratio), self._refresh_floor_ms)

    def _schedule_refresh_locked(self, key: str, fetcher: Callable[[], Any], ttl: int, gen: int, *, delay_ms: int) -> None:
        if not self._auto_refresh:
            return
        self._cancel_timer_locked(key)
        timer = threading.Timer(max(0, delay_ms) / 1000.0, self._on_refresh_timer, args=(key, fetcher, ttl, gen))
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    def _cancel_timer_locked(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _on_refresh_timer(self, key: str, fetcher: Callable[[], Any], ttl: int, gen: int) -> None:
        with self._lock:
            if self._timers.get(key) is threading.current_thread():
                del self._timers[key]
            if self._closed or self._generations.get(key, 0) != gen:
                return
            if key in self._flights:
                return
            self._start_flight_locked(key, fetcher, ttl, gen, refresh=True)
        logger.info("cache_auto_refresh key=%s", key)
