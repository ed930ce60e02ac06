"""Rolling-window quota guard for external AI services."""

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from pet_portraits.core.config import settings
from pet_portraits.services.interfaces import ExternalService

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for one service.

    Services with ``tokens_per_request`` set are metered by an estimated token
    budget of ``max_requests * tokens_per_request`` per window instead of by
    request count.
    """

    max_requests: int
    window_seconds: float
    tokens_per_request: int | None = None

    @property
    def token_metered(self) -> bool:
        return self.tokens_per_request is not None

    @property
    def token_budget(self) -> int:
        return self.max_requests * (self.tokens_per_request or 0)


@dataclass
class RateWindow:
    """Bookkeeping for one service inside the current window."""

    timestamps: deque[float] = field(default_factory=deque)
    tokens_used: int = 0
    tokens_reset_at: float = 0.0


def default_rate_limits() -> dict[str, RateLimitConfig]:
    """Build the per-service limits from settings."""
    return {
        ExternalService.OPENAI.value: RateLimitConfig(
            max_requests=settings.openai_rate_limit_requests,
            window_seconds=settings.openai_rate_limit_window_seconds,
            tokens_per_request=settings.openai_tokens_per_request,
        ),
        ExternalService.REPLICATE.value: RateLimitConfig(
            max_requests=settings.replicate_rate_limit_requests,
            window_seconds=settings.replicate_rate_limit_window_seconds,
        ),
    }


class QuotaGuard:
    """Admit or reject calls per service based on a rolling time window."""

    def __init__(
        self,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits if limits is not None else default_rate_limits()
        self._clock = clock
        self._windows: dict[str, RateWindow] = {name: RateWindow() for name in self.limits}
        self._lock = threading.Lock()

    def _config(self, service: str) -> RateLimitConfig:
        try:
            return self.limits[service]
        except KeyError:
            raise ValueError(f"No rate limit configured for service {service!r}") from None

    def _purge(self, window: RateWindow, config: RateLimitConfig, now: float) -> None:
        while window.timestamps and now - window.timestamps[0] >= config.window_seconds:
            window.timestamps.popleft()

    def admit(self, service: str, tokens: int | None = None) -> bool:
        """Return True and record the call if the service has quota left.

        Args:
            service: Service key, e.g. ``"openai"``
            tokens: Estimated tokens for token-metered services; defaults to
                the configured per-request estimate

        Returns:
            Whether the call was admitted. Rejections leave no trace.
        """
        config = self._config(service)
        with self._lock:
            now = self._clock()
            window = self._windows[service]
            self._purge(window, config, now)

            if config.token_metered:
                if now >= window.tokens_reset_at:
                    window.tokens_used = 0
                    window.tokens_reset_at = now + config.window_seconds
                cost = tokens or config.tokens_per_request or 0
                if window.tokens_used + cost > config.token_budget:
                    logger.warning(
                        "quota_rejected",
                        service=service,
                        tokens_used=window.tokens_used,
                        token_budget=config.token_budget,
                    )
                    return False
                window.tokens_used += cost
            elif len(window.timestamps) >= config.max_requests:
                logger.warning(
                    "quota_rejected",
                    service=service,
                    in_window=len(window.timestamps),
                    max_requests=config.max_requests,
                )
                return False

            window.timestamps.append(now)
            return True

    def wait_time(self, service: str) -> float:
        """Seconds until the oldest in-window request leaves the window."""
        config = self._config(service)
        with self._lock:
            now = self._clock()
            window = self._windows[service]
            self._purge(window, config, now)
            wait = 0.0
            if window.timestamps:
                wait = window.timestamps[0] + config.window_seconds - now
            if config.token_metered and window.tokens_used:
                wait = max(wait, window.tokens_reset_at - now)
            return max(0.0, wait)

    def in_window(self, service: str) -> int:
        """Number of admitted requests currently inside the window."""
        config = self._config(service)
        with self._lock:
            window = self._windows[service]
            self._purge(window, config, self._clock())
            return len(window.timestamps)

    def reset(self, service: str) -> None:
        """Forget all bookkeeping for a service."""
        self._config(service)
        with self._lock:
            self._windows[service] = RateWindow()
