"""Circuit breaker guarding calls to the companion upstream service."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

import structlog

from deckterm.core.exceptions import UpstreamUnavailableError

logger = structlog.get_logger()

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures.

    Once ``reset_timeout`` has passed since the last failure the breaker
    moves to half-open on its own and lets exactly one trial call through. The
    trial's outcome closes the breaker again or re-opens it.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "upstream",
    ):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self.failures = 0
        self.last_failure_at: float | None = None
        self.is_open = False
        self._half_open = False
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        if self.is_open and self.last_failure_at is not None:
            if self._clock() - self.last_failure_at > self.reset_timeout:
                self.is_open = False
                self._half_open = True
                logger.info("circuit_half_open", breaker=self.name)
        if self.is_open:
            return BreakerState.OPEN
        if self._half_open:
            return BreakerState.HALF_OPEN
        return BreakerState.CLOSED

    def retry_after(self) -> float:
        if self.last_failure_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.last_failure_at))

    def before_call(self) -> None:
        """Admit a call or raise UpstreamUnavailableError without touching the network."""
        state = self.state
        if state == BreakerState.OPEN:
            raise UpstreamUnavailableError(retry_after=self.retry_after())
        if state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise UpstreamUnavailableError(
                    "Upstream service is being retried; try again shortly.",
                    retry_after=1.0,
                )
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self.is_open or self._half_open or self.failures:
            logger.info("circuit_closed", breaker=self.name, previous_failures=self.failures)
        self.failures = 0
        self.is_open = False
        self._half_open = False
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_at = self._clock()
        was_trial = self._half_open
        self._trial_in_flight = False
        if was_trial or self.failures >= self.threshold:
            if not self.is_open:
                logger.warning("circuit_opened", breaker=self.name, failures=self.failures)
            self.is_open = True
            self._half_open = False

    def release_trial(self) -> None:
        """Give up a half-open trial slot without an outcome (e.g. cancellation)."""
        self._trial_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        self.before_call()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            self.release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
