"""Admission checks run before any external provider call is scheduled."""

import math

import structlog

from pet_portraits.services.circuit_breaker import CircuitBreaker
from pet_portraits.services.exceptions import CircuitOpenError, RateLimitedError
from pet_portraits.services.quota import QuotaGuard

logger = structlog.get_logger()


class AdmissionGate:
    """Combine the circuit breaker and quota guard for one call site."""

    def __init__(self, breaker: CircuitBreaker, quota: QuotaGuard) -> None:
        self.breaker = breaker
        self.quota = quota

    def admit(self, service: str) -> None:
        """Raise an AdmissionError unless a call to the service may start now."""
        if not self.breaker.check(service):
            retry_after = self.breaker.retry_after(service)
            logger.warning("admission_circuit_open", service=service, retry_after=retry_after)
            raise CircuitOpenError(
                "Service temporarily unavailable due to multiple failures. Try again later.",
                retry_after=retry_after,
            )

        if not self.quota.admit(service):
            self.breaker.release_probe(service)
            retry_after = math.ceil(self.quota.wait_time(service))
            logger.warning("admission_rate_limited", service=service, retry_after=retry_after)
            raise RateLimitedError(
                "Rate limit exceeded. Please try again later.",
                retry_after=retry_after,
            )

    def abandon(self, service: str) -> None:
        """Undo the breaker side of an admission whose job was never started."""
        self.breaker.release_probe(service)

    def record(self, service: str, success: bool) -> None:
        """Report the outcome of an admitted call."""
        self.breaker.record_outcome(service, success)
