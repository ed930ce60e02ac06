"""Per-service circuit breaker for external AI providers."""

import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

import structlog

from pet_portraits.core.config import settings
from pet_portraits.services.interfaces import ExternalService

logger = structlog.get_logger()


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds shared by all guarded services."""

    failure_threshold: int = 5
    max_consecutive_failures: int = 3
    reset_timeout_seconds: float = 30.0


@dataclass
class CircuitState:
    """Failure bookkeeping for one service."""

    status: CircuitStatus = CircuitStatus.CLOSED
    failures: int = 0
    consecutive_failures: int = 0
    last_failure: float = 0.0
    probe_in_flight: bool = False


def default_circuit_config() -> CircuitBreakerConfig:
    """Build the breaker thresholds from settings."""
    return CircuitBreakerConfig(
        failure_threshold=settings.circuit_failure_threshold,
        max_consecutive_failures=settings.circuit_max_consecutive_failures,
        reset_timeout_seconds=settings.circuit_reset_timeout_seconds,
    )


class CircuitBreaker:
    """Stop calling a failing service for a cool-down period.

    A closed circuit lets calls through. Once opened, calls are rejected
    until ``reset_timeout_seconds`` have passed since the last failure; the
    next check then moves to half-open and lets exactly one probe through.
    The probe's outcome closes or reopens the circuit. Other callers are
    rejected while the probe is in flight.

    The aggregate failure count is never reset by successes, so once it
    reaches ``failure_threshold`` every later failure reopens the circuit.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        services: Iterable[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or default_circuit_config()
        self._clock = clock
        names = services if services is not None else [s.value for s in ExternalService]
        self._states: dict[str, CircuitState] = {name: CircuitState() for name in names}
        self._lock = threading.Lock()

    def _state(self, service: str) -> CircuitState:
        try:
            return self._states[service]
        except KeyError:
            raise ValueError(f"Unknown service {service!r}") from None

    def check(self, service: str) -> bool:
        """Return True if a call to the service may proceed."""
        with self._lock:
            state = self._state(service)

            if state.status == CircuitStatus.CLOSED:
                return True

            if state.status == CircuitStatus.OPEN:
                if self._clock() - state.last_failure >= self.config.reset_timeout_seconds:
                    state.status = CircuitStatus.HALF_OPEN
                    state.probe_in_flight = True
                    logger.info("circuit_half_open", service=service)
                    return True
                return False

            # Half-open: admit a new probe only once the previous one reported back
            if state.probe_in_flight:
                return False
            state.probe_in_flight = True
            return True

    def record_outcome(self, service: str, success: bool) -> None:
        """Record the result of a call that was let through."""
        with self._lock:
            state = self._state(service)
            state.probe_in_flight = False

            if success:
                state.consecutive_failures = 0
                if state.status == CircuitStatus.HALF_OPEN:
                    state.status = CircuitStatus.CLOSED
                    logger.info("circuit_closed", service=service)
                return

            state.failures += 1
            state.consecutive_failures += 1
            state.last_failure = self._clock()

            should_open = (
                state.status == CircuitStatus.HALF_OPEN
                or state.consecutive_failures >= self.config.max_consecutive_failures
                or state.failures >= self.config.failure_threshold
            )
            if should_open and state.status != CircuitStatus.OPEN:
                logger.warning(
                    "circuit_opened",
                    service=service,
                    failures=state.failures,
                    consecutive_failures=state.consecutive_failures,
                )
            if should_open:
                state.status = CircuitStatus.OPEN

    def release_probe(self, service: str) -> None:
        """Give back a half-open probe slot that was never used for a call."""
        with self._lock:
            self._state(service).probe_in_flight = False

    def retry_after(self, service: str) -> int:
        """Whole seconds until an open circuit allows a probe."""
        with self._lock:
            state = self._state(service)
            if state.status == CircuitStatus.CLOSED:
                return 0
            if state.status == CircuitStatus.HALF_OPEN:
                return math.ceil(self.config.reset_timeout_seconds)
            remaining = state.last_failure + self.config.reset_timeout_seconds - self._clock()
            return max(1, math.ceil(remaining))

    def snapshot(self, service: str) -> CircuitState:
        """Return a copy of the service's current state."""
        with self._lock:
            state = self._state(service)
            return CircuitState(
                status=state.status,
                failures=state.failures,
                consecutive_failures=state.consecutive_failures,
                last_failure=state.last_failure,
                probe_in_flight=state.probe_in_flight,
            )

    def reset(self, service: str) -> None:
        """Close the circuit and clear all counters."""
        with self._lock:
            self._state(service)
            self._states[service] = CircuitState()
