from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, TypeVar

from prediction_core.errors import TransientUpstreamError


T = TypeVar("T")

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(TransientUpstreamError):
    pass


@dataclass(frozen=True)
class CircuitSnapshot:
    name: str
    state: str
    failures: int
    opened_at: float | None
    half_open_calls: int


class CircuitBreaker:
    def __init__(
        self,
        *,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout_sec: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Callable[[BaseException], bool] | None = None,
    ) -> None:
        self._name = str(name)
        self._failure_threshold = max(1, int(failure_threshold))
        self._recovery_timeout_sec = float(recovery_timeout_sec)
        self._half_open_max_calls = max(1, int(half_open_max_calls))
        self._clock = clock
        self._counts_as_failure = counts_as_failure or (lambda exc: isinstance(exc, TransientUpstreamError))
        self._lock = Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._half_open_calls = 0

    @property
    def name(self) -> str:
        return self._name

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            self._transition_if_needed(self._clock())
            return CircuitSnapshot(
                name=self._name,
                state=self._state,
                failures=int(self._failures),
                opened_at=self._opened_at,
                half_open_calls=int(self._half_open_calls),
            )

    def _transition_if_needed(self, now: float) -> None:
        if self._state == OPEN and self._opened_at is not None:
            if (now - self._opened_at) >= self._recovery_timeout_sec:
                self._state = HALF_OPEN
                self._half_open_calls = 0

    def _allow_call(self, now: float) -> None:
        self._transition_if_needed(now)
        if self._state == OPEN:
            raise CircuitOpenError(f"circuit_open:{self._name}")
        if self._state == HALF_OPEN:
            if self._half_open_calls >= self._half_open_max_calls:
                raise CircuitOpenError(f"circuit_half_open_limit:{self._name}")
            self._half_open_calls += 1

    def _on_success(self) -> None:
        self._state = CLOSED
        self._failures = 0
        self._opened_at = None
        self._half_open_calls = 0

    def _on_failure(self, now: float) -> None:
        self._failures += 1
        if self._state == HALF_OPEN or self._failures >= self._failure_threshold:
            self._state = OPEN
            self._opened_at = float(now)
            self._half_open_calls = 0

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._lock:
            self._allow_call(self._clock())
        try:
            out = fn(*args, **kwargs)
        except Exception as exc:
            with self._lock:
                if self._counts_as_failure(exc):
                    self._on_failure(self._clock())
                elif self._state == HALF_OPEN:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
            raise
        with self._lock:
            self._on_success()
        return out


_REGISTRY_LOCK = Lock()
_REGISTRY: dict[str, CircuitBreaker] = {}


def get_breaker(name: str) -> CircuitBreaker:
    k = str(name or "").strip() or "default"
    with _REGISTRY_LOCK:
        b = _REGISTRY.get(k)
        if b is None:
            b = CircuitBreaker(name=k)
            _REGISTRY[k] = b
        return b


def breaker_snapshots() -> dict[str, CircuitSnapshot]:
    with _REGISTRY_LOCK:
        items = list(_REGISTRY.items())
    return {k: b.snapshot() for k, b in items}
