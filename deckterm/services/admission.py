import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from deckterm.services.registry import SessionRegistry

logger = structlog.get_logger()

RATE_LIMITED = "rate_limited"
OWNER_SESSION_LIMIT = "owner_session_limit"
GLOBAL_SESSION_LIMIT = "global_session_limit"


class SlidingWindowRateLimiter:
    """Counts events inside a trailing time window."""

    def __init__(self, window: float, max_events: int, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.max_events = max_events
        self._clock = clock
        self._timestamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window:
            self._timestamps.popleft()

    def allows(self) -> bool:
        self._prune(self._clock())
        return len(self._timestamps) < self.max_events

    def record(self) -> None:
        self._timestamps.append(self._clock())

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: str | None = None
    message: str | None = None


class AdmissionController:
    def __init__(
        self,
        registry: SessionRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        max_sessions: int,
        max_sessions_per_owner: int,
    ):
        self._registry = registry
        self._rate_limiter = rate_limiter
        self.max_sessions = max_sessions
        self.max_sessions_per_owner = max_sessions_per_owner

    def can_create(self, owner_id: str) -> AdmissionDecision:
        """Check the rate limit, then the owner cap, then the global cap.

        An admitted request is recorded against the rate limit right away,
        before the caller starts the (slow) spawn.
        """
        if not self._rate_limiter.allows():
            decision = AdmissionDecision(False, RATE_LIMITED, "Rate limit exceeded. Try again later.")
        elif self._registry.count_by_owner(owner_id) >= self.max_sessions_per_owner:
            decision = AdmissionDecision(
                False,
                OWNER_SESSION_LIMIT,
                f"Maximum terminals per user ({self.max_sessions_per_owner}) reached.",
            )
        elif self._registry.count() >= self.max_sessions:
            decision = AdmissionDecision(
                False,
                GLOBAL_SESSION_LIMIT,
                f"Maximum terminals ({self.max_sessions}) reached.",
            )
        else:
            self._rate_limiter.record()
            return AdmissionDecision(True)

        logger.warning("terminal_admission_rejected", owner_id=owner_id, reason=decision.reason)
        return decision
