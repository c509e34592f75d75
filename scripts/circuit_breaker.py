#!/usr/bin/env python3
"""
Circuit breakers for external provider calls made by plugins.

States:
  - **CLOSED**    : calls pass through; consecutive failures are counted
  - **OPEN**      : calls fail fast with ``CircuitBreakerOpen``
  - **HALF_OPEN** : after ``timeout_ms`` a limited number of trial calls
                    decide whether to close again or re-open

Breakers are handed out by a ``CircuitBreakerRegistry`` that the executor
injects into ``DiagnosticContext.breakers``.  Each executor owns its own
registry so concurrent runs in different executors never share state.
Process-isolated plugins work on a copy; the sandbox ships the breakers
they touched back with the terminal message and merges them into the
host registry.  A worker killed for a budget breach reports nothing.

Usage:
    breaker = ctx.breakers.get("registry-api", failure_threshold=3)
    payload = breaker.call(ctx.request, url)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from exceptions import DiagnosticsError

logger = logging.getLogger(__name__)

__all__ = [
    "CLOSED",
    "OPEN",
    "HALF_OPEN",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitBreakerRegistry",
]

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

T = TypeVar("T")


class CircuitBreakerOpen(DiagnosticsError):
    """Raised when a call is rejected by an open (or saturated half-open) breaker"""

    def __init__(self, name: str, state: str, retry_at: Optional[float] = None):
        hint = f"; retry after {retry_at - time.monotonic():.1f}s" if retry_at else ""
        super().__init__(f"Circuit breaker '{name}' is {state}{hint}")
        self.name = name
        self.state = state
        self.retry_at = retry_at


class CircuitBreaker:
    """Thread-safe circuit breaker.

    Args:
        name: Identifier used in logs and errors.
        failure_threshold: Consecutive failures that open the circuit.
        success_threshold: Consecutive half-open successes that close it.
        timeout_ms: Time spent open before trial calls are allowed.
        half_open_max_calls: Concurrent trial calls allowed while half-open.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout_ms: int = 60_000,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        for label, value in (
            ("failure_threshold", failure_threshold),
            ("success_threshold", success_threshold),
            ("timeout_ms", timeout_ms),
            ("half_open_max_calls", half_open_max_calls),
        ):
            if value <= 0:
                raise ValueError(f"{label} must be greater than 0")

        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_ms = timeout_ms
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._totals = {"requests": 0, "failures": 0, "successes": 0, "rejected": 0}

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke *fn* under breaker protection; re-raises its exceptions."""
        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition(CLOSED)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failures,
                "success_count": self._successes,
                "total_requests": self._totals["requests"],
                "total_failures": self._totals["failures"],
                "total_successes": self._totals["successes"],
                "rejected_requests": self._totals["rejected"],
            }

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy of config and state, safe to pickle across processes."""
        with self._lock:
            return {
                "name": self.name,
                "config": {
                    "failure_threshold": self.failure_threshold,
                    "success_threshold": self.success_threshold,
                    "timeout_ms": self.timeout_ms,
                    "half_open_max_calls": self.half_open_max_calls,
                },
                "state": self._state,
                "failures": self._failures,
                "successes": self._successes,
                "opened_at": self._opened_at,
                "totals": dict(self._totals),
            }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        """Adopt the state recorded in *snapshot*.

        ``opened_at`` is a ``time.monotonic`` reading, which is shared by
        every process on the host.
        """
        with self._lock:
            previous = self._state
            self._state = snapshot.get("state", CLOSED)
            self._failures = int(snapshot.get("failures", 0))
            self._successes = int(snapshot.get("successes", 0))
            self._opened_at = snapshot.get("opened_at")
            self._half_open_calls = 0
            self._totals.update(snapshot.get("totals") or {})
            if previous != self._state:
                logger.info(
                    "Circuit breaker %s: %s -> %s (restored)",
                    self.name, previous, self._state,
                )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _before_call(self) -> None:
        with self._lock:
            self._totals["requests"] += 1
            self._maybe_half_open()
            if self._state == OPEN:
                self._totals["rejected"] += 1
                raise CircuitBreakerOpen(self.name, OPEN, self._retry_at())
            if self._state == HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    self._totals["rejected"] += 1
                    raise CircuitBreakerOpen(self.name, HALF_OPEN)
                self._half_open_calls += 1

    def _on_success(self) -> None:
        with self._lock:
            self._totals["successes"] += 1
            if self._state == HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._transition(CLOSED)
            else:
                self._failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._totals["failures"] += 1
            if self._state == HALF_OPEN:
                self._transition(OPEN)
                return
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._transition(OPEN)

    def _maybe_half_open(self) -> None:
        if (
            self._state == OPEN
            and self._opened_at is not None
            and (self._clock() - self._opened_at) * 1000 >= self.timeout_ms
        ):
            self._transition(HALF_OPEN)

    def _retry_at(self) -> Optional[float]:
        if self._opened_at is None:
            return None
        return self._opened_at + self.timeout_ms / 1000.0

    def _transition(self, state: str) -> None:
        if state == self._state:
            return
        logger.info("Circuit breaker %s: %s -> %s", self.name, self._state, state)
        self._state = state
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = self._clock() if state == OPEN else None


class CircuitBreakerRegistry:
    """Creates and hands out one ``CircuitBreaker`` per name."""

    def __init__(self, **defaults: Any) -> None:
        self._defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str, **config: Any) -> CircuitBreaker:
        """Return the breaker for *name*, creating it with *config* first time.

        Later calls ignore *config*; an existing breaker is never rebuilt.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, **{**self._defaults, **config})
                self._breakers[name] = breaker
            return breaker

    def names(self) -> list:
        with self._lock:
            return sorted(self._breakers)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.stats() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def export_state(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def merge_state(self, snapshots: Dict[str, Dict[str, Any]]) -> None:
        """Adopt breaker snapshots reported by a sandbox worker.

        Unknown names are created with the worker's config.  Two workers
        reporting the same breaker from one barrier group: the last merge
        wins.
        """
        for name, snapshot in snapshots.items():
            self.get(name, **snapshot.get("config", {})).restore(snapshot)

    def __getstate__(self) -> Dict[str, Any]:
        # Locks do not pickle; ship snapshots instead.
        return {"_defaults": self._defaults, "_snapshots": self.export_state()}

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__init__(**state.get("_defaults", {}))
        self.merge_state(state.get("_snapshots") or {})
