"""Unit tests for circuit_breaker.py"""

import pickle
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent / "scripts"))

from circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitBreakerRegistry,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _fail():
    raise ConnectionError("upstream down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("registry", failure_threshold=2, success_threshold=2, timeout_ms=1000, clock=clock)


class TestCircuitBreaker:
    def test_passes_results_through(self, breaker):
        assert breaker.call(lambda x: x * 2, 21) == 42
        assert breaker.state == CLOSED

    def test_opens_after_threshold(self, breaker):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(_fail)
        assert breaker.state == OPEN
        with pytest.raises(CircuitBreakerOpen, match="registry"):
            breaker.call(lambda: "never")
        assert breaker.stats()["rejected_requests"] == 1

    def test_success_resets_failure_count(self, breaker):
        with pytest.raises(ConnectionError):
            breaker.call(_fail)
        breaker.call(lambda: None)
        with pytest.raises(ConnectionError):
            breaker.call(_fail)
        assert breaker.state == CLOSED

    def test_half_open_then_closed(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(_fail)
        clock.advance(1.0)
        assert breaker.state == HALF_OPEN

        breaker.call(lambda: None)
        assert breaker.state == HALF_OPEN
        breaker.call(lambda: None)
        assert breaker.state == CLOSED

    def test_half_open_failure_reopens(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(_fail)
        clock.advance(1.5)
        with pytest.raises(ConnectionError):
            breaker.call(_fail)
        assert breaker.state == OPEN

    def test_reset(self, breaker):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(_fail)
        breaker.reset()
        assert breaker.state == CLOSED
        assert breaker.stats()["failure_count"] == 0

    def test_stats_totals(self, breaker):
        breaker.call(lambda: None)
        with pytest.raises(ConnectionError):
            breaker.call(_fail)
        stats = breaker.stats()
        assert stats["total_requests"] == 2
        assert stats["total_successes"] == 1
        assert stats["total_failures"] == 1
        assert stats["failure_count"] == 1

    @pytest.mark.parametrize("option", ["failure_threshold", "success_threshold", "timeout_ms", "half_open_max_calls"])
    def test_rejects_non_positive_config(self, option):
        with pytest.raises(ValueError, match=option):
            CircuitBreaker("x", **{option: 0})


class TestCircuitBreakerRegistry:
    def test_one_breaker_per_name(self):
        registry = CircuitBreakerRegistry(failure_threshold=3)
        first = registry.get("osv")
        assert registry.get("osv", failure_threshold=9) is first
        assert first.failure_threshold == 3
        assert registry.names() == ["osv"]

    def test_reset_all_and_stats(self, clock):
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        with pytest.raises(ConnectionError):
            registry.get("nvd").call(_fail)
        assert registry.stats()["nvd"]["state"] == OPEN
        registry.reset_all()
        assert registry.stats()["nvd"]["state"] == CLOSED

    def test_pickle_keeps_breaker_state(self):
        registry = CircuitBreakerRegistry(failure_threshold=1)
        with pytest.raises(ConnectionError):
            registry.get("osv").call(_fail)
        clone = pickle.loads(pickle.dumps(registry))
        assert clone.names() == ["osv"]
        assert clone.stats()["osv"]["state"] == OPEN
        assert clone.get("nvd").failure_threshold == 1

    def test_merge_creates_unknown_breaker_with_worker_config(self, clock):
        worker = CircuitBreakerRegistry(clock=clock)
        upstream = worker.get("upstream", failure_threshold=2, timeout_ms=500)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                upstream.call(_fail)

        host = CircuitBreakerRegistry(clock=clock)
        host.merge_state(worker.export_state())

        merged = host.get("upstream")
        assert merged.failure_threshold == 2
        assert merged.timeout_ms == 500
        assert merged.state == OPEN
        clock.advance(0.5)
        assert merged.state == HALF_OPEN

    def test_merge_overwrites_existing_state(self, clock):
        host = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        with pytest.raises(ConnectionError):
            host.get("nvd").call(_fail)
        worker = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        worker.get("nvd").call(lambda: None)

        host.merge_state(worker.export_state())

        stats = host.stats()["nvd"]
        assert stats["state"] == CLOSED
        assert stats["total_requests"] == 1
        assert stats["total_successes"] == 1


class TestSnapshot:
    def test_restore_round_trip(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(_fail)
        other = CircuitBreaker("registry", failure_threshold=2, timeout_ms=1000, clock=clock)
        other.restore(breaker.snapshot())

        assert other.stats() == breaker.stats()
        with pytest.raises(CircuitBreakerOpen):
            other.call(lambda: "never")

    def test_snapshot_is_plain_data(self, breaker):
        snap = breaker.snapshot()
        assert snap["config"] == {
            "failure_threshold": 2,
            "success_threshold": 2,
            "timeout_ms": 1000,
            "half_open_max_calls": 1,
        }
        assert snap["state"] == CLOSED
        assert snap["opened_at"] is None
        assert pickle.loads(pickle.dumps(snap)) == snap
