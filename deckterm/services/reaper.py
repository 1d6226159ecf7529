"""Background idle reaper: closes terminals that stopped receiving input."""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from deckterm.services.registry import SessionRegistry, SessionState

logger = structlog.get_logger()


class IdleReaper:
    """Periodically closes sessions whose last input is older than ``idle_timeout``."""

    def __init__(
        self,
        registry: SessionRegistry,
        close_idle: Callable[[str], Awaitable[None]],
        idle_timeout: float,
        interval: float,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._close_idle = close_idle
        self.idle_timeout = idle_timeout
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def enabled(self) -> bool:
        return self.idle_timeout > 0 and self.interval > 0

    async def start(self) -> None:
        """Start the background sweep task."""
        if not self.enabled:
            logger.info("idle_reaper_disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("idle_reaper_started", idle_timeout=self.idle_timeout, interval=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("idle_reaper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("idle_reaper_error")

    async def sweep(self) -> list[str]:
        """Close every idle session. One failure never stops the others."""
        if self.idle_timeout <= 0:
            return []
        now = self._clock()
        reaped = []
        for session in self._registry.all():
            if session.state != SessionState.ACTIVE:
                continue
            idle_for = now - session.last_activity_at
            if idle_for <= self.idle_timeout:
                continue
            try:
                await self._close_idle(session.id)
                reaped.append(session.id)
                logger.info("idle_reaped", session_id=session.id, owner_id=session.owner_id, idle_seconds=round(idle_for))
            except Exception:
                logger.exception("idle_reap_failed", session_id=session.id)
        return reaped
