"""Tests for the per-service circuit breaker."""

import pytest

from pet_portraits.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitStatus,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 500.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        config=CircuitBreakerConfig(
            failure_threshold=5, max_consecutive_failures=3, reset_timeout_seconds=30
        ),
        clock=clock,
    )


def fail(breaker: CircuitBreaker, times: int, service: str = "openai") -> None:
    for _ in range(times):
        breaker.record_outcome(service, False)


class TestOpening:
    """Tests for when the circuit opens."""

    def test_closed_by_default(self, breaker: CircuitBreaker) -> None:
        """New circuits allow calls."""
        assert breaker.check("openai") is True
        assert breaker.snapshot("openai").status == CircuitStatus.CLOSED

    def test_opens_after_consecutive_failures(self, breaker: CircuitBreaker) -> None:
        """Three consecutive failures open the circuit."""
        fail(breaker, 2)
        assert breaker.check("openai") is True

        fail(breaker, 1)

        assert breaker.check("openai") is False
        assert breaker.snapshot("openai").status == CircuitStatus.OPEN

    def test_success_resets_consecutive_counter_only(self, breaker: CircuitBreaker) -> None:
        """Success clears consecutive failures but keeps the aggregate count."""
        fail(breaker, 2)
        breaker.record_outcome("openai", True)

        state = breaker.snapshot("openai")
        assert state.consecutive_failures == 0
        assert state.failures == 2
        assert state.status == CircuitStatus.CLOSED

    def test_opens_on_aggregate_threshold(self, breaker: CircuitBreaker) -> None:
        """Five failures in total open the circuit even when interleaved with successes."""
        for _ in range(2):
            fail(breaker, 2)
            breaker.record_outcome("openai", True)
        assert breaker.check("openai") is True

        fail(breaker, 1)

        assert breaker.check("openai") is False

    def test_services_are_isolated(self, breaker: CircuitBreaker) -> None:
        """Failures of one service do not affect another."""
        fail(breaker, 3, service="openai")

        assert breaker.check("openai") is False
        assert breaker.check("replicate") is True


class TestHalfOpen:
    """Tests for recovery through a half-open probe."""

    def test_rejects_until_reset_timeout(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """Open circuit rejects calls until the reset timeout elapses."""
        fail(breaker, 3)
        clock.advance(29)

        assert breaker.check("openai") is False
        assert breaker.retry_after("openai") == 1

    def test_probe_after_reset_timeout(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """After the timeout exactly one probe is let through."""
        fail(breaker, 3)
        clock.advance(30)

        assert breaker.check("openai") is True
        assert breaker.snapshot("openai").status == CircuitStatus.HALF_OPEN
        assert breaker.check("openai") is False

    def test_successful_probe_closes(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """A successful probe closes the circuit."""
        fail(breaker, 3)
        clock.advance(30)
        breaker.check("openai")

        breaker.record_outcome("openai", True)

        assert breaker.snapshot("openai").status == CircuitStatus.CLOSED
        assert breaker.check("openai") is True
        assert breaker.check("openai") is True

    def test_failed_probe_reopens(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """A failed probe reopens the circuit for another timeout."""
        fail(breaker, 3)
        clock.advance(30)
        breaker.check("openai")

        breaker.record_outcome("openai", False)

        assert breaker.snapshot("openai").status == CircuitStatus.OPEN
        assert breaker.check("openai") is False
        assert breaker.retry_after("openai") == 30

    def test_released_probe_can_be_claimed_again(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        """A probe slot given back unused admits the next caller."""
        fail(breaker, 3)
        clock.advance(30)
        breaker.check("openai")

        breaker.release_probe("openai")

        assert breaker.check("openai") is True
        assert breaker.check("openai") is False


class TestRetryAfter:
    """Tests for retry hints."""

    def test_closed_circuit_has_no_retry_after(self, breaker: CircuitBreaker) -> None:
        """Closed circuits need no waiting."""
        assert breaker.retry_after("openai") == 0

    def test_retry_after_counts_down(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        """Retry-after is the remaining part of the reset timeout."""
        fail(breaker, 3)
        clock.advance(10.5)

        assert breaker.retry_after("openai") == 20

    def test_reset_closes_circuit(self, breaker: CircuitBreaker) -> None:
        """Manual reset clears everything."""
        fail(breaker, 3)

        breaker.reset("openai")

        state = breaker.snapshot("openai")
        assert state.status == CircuitStatus.CLOSED
        assert state.failures == 0
        assert breaker.check("openai") is True

    def test_unknown_service_raises(self, breaker: CircuitBreaker) -> None:
        """Unknown services are a programming error."""
        with pytest.raises(ValueError, match="Unknown service"):
            breaker.check("midjourney")
