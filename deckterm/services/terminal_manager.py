"""Terminal session manager: wires admission, registry, transport and reaping.

Every terminal transition (process exit, idle timeout, explicit close) goes
through ``terminate``: notify subscribers, close their channels, release the
PTY and multiplexer handles, drop the registry entry.
"""

import asyncio
import os
import shlex
import time
from collections.abc import Callable

import structlog

from deckterm.config import Settings
from deckterm.core.exceptions import ForbiddenError, QuotaExceededError
from deckterm.schemas.stream import ClosedNotice, ExitNotice, IdleTimeoutNotice
from deckterm.services.admission import AdmissionController, SlidingWindowRateLimiter
from deckterm.services.multiplexer import TransportMultiplexer
from deckterm.services.persistence import PersistenceBackend, TmuxBackend, parse_session_name
from deckterm.services.pty_process import spawn_pty
from deckterm.services.reaper import IdleReaper
from deckterm.services.registry import (
    TERMINAL_STATES,
    Session,
    SessionRegistry,
    SessionState,
    Spawner,
)

logger = structlog.get_logger()

SHUTDOWN_CLOSE_CODE = 1001


def resolve_cwd(cwd: str | None) -> str:
    """Use ``cwd`` when it is an existing directory, else the home directory."""
    home = os.environ.get("HOME") or "/"
    if cwd:
        expanded = os.path.expanduser(cwd)
        if os.path.isdir(expanded):
            return expanded
    return home if os.path.isdir(home) else "/"


class TerminalManager:
    def __init__(
        self,
        *,
        registry: SessionRegistry,
        max_sessions: int = 10,
        max_sessions_per_owner: int = 10,
        rate_limit_window: float = 60.0,
        rate_limit_max: int = 20,
        idle_timeout: float = 1800.0,
        idle_sweep_interval: float = 60.0,
        default_cols: int = 120,
        default_rows: int = 30,
        persist_by_default: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.multiplexer = TransportMultiplexer(registry)
        self.admission = AdmissionController(
            registry,
            SlidingWindowRateLimiter(rate_limit_window, rate_limit_max),
            max_sessions=max_sessions,
            max_sessions_per_owner=max_sessions_per_owner,
        )
        self.reaper = IdleReaper(
            registry,
            self.close_idle,
            idle_timeout=idle_timeout,
            interval=idle_sweep_interval,
            clock=clock,
        )
        self.default_cols = default_cols
        self.default_rows = default_rows
        self.persist_by_default = persist_by_default and registry.backend is not None
        self._stopping = False
        self._pending: set[asyncio.Task] = set()

        registry.bind(on_output=self.multiplexer.broadcast_output, on_exit=self._handle_exit)

    @classmethod
    def from_settings(cls, settings: Settings, spawner: Spawner = spawn_pty) -> "TerminalManager":
        backend: PersistenceBackend | None = None
        if settings.deckterm_persistence:
            if TmuxBackend.available(settings.deckterm_tmux_binary):
                backend = TmuxBackend(
                    prefix=settings.deckterm_tmux_prefix,
                    binary=settings.deckterm_tmux_binary,
                    command_timeout=settings.deckterm_tmux_command_timeout,
                )
            else:
                logger.warning("persistence_unavailable", binary=settings.deckterm_tmux_binary)

        registry = SessionRegistry(
            shell=[*shlex.split(settings.deckterm_shell), "-il"],
            backend=backend,
            spawner=spawner,
        )
        return cls(
            registry=registry,
            max_sessions=settings.deckterm_max_terminals,
            max_sessions_per_owner=settings.deckterm_max_terminals_per_owner,
            rate_limit_window=settings.deckterm_rate_limit_window,
            rate_limit_max=settings.deckterm_rate_limit_max,
            idle_timeout=settings.deckterm_idle_timeout,
            idle_sweep_interval=settings.deckterm_idle_sweep_interval,
            default_cols=settings.deckterm_default_cols,
            default_rows=settings.deckterm_default_rows,
            persist_by_default=settings.deckterm_persistence,
        )

    # ── Startup / shutdown ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Rebuild state from persisted sessions, then start the idle reaper."""
        self._stopping = False
        await self.recover()
        await self.reaper.start()

    async def stop(self) -> None:
        """Close every channel and release every handle.

        Persistent sessions are only detached so the next start can recover them.
        """
        self._stopping = True
        await self.reaper.stop()
        for session in self.registry.all():
            await self.multiplexer.close_all(session.id, code=SHUTDOWN_CLOSE_CODE, reason="Server shutting down")
            await self.registry.remove(session.id, kill_persistent=False)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("terminal_manager_stopped")

    async def recover(self) -> int:
        """Register every multiplexer session that survived a previous run.

        Enumeration and per-session attach errors are logged and skipped.
        """
        backend = self.registry.backend
        if backend is None:
            return 0

        try:
            persisted = await backend.list_existing()
        except Exception:
            logger.exception("recovery_enumeration_failed")
            return 0

        recovered = 0
        for entry in persisted:
            parsed = parse_session_name(backend.prefix, entry.name)
            if parsed is None:
                logger.warning("recovery_skipped", name=entry.name, reason="unrecognised_name")
                continue
            owner_id, session_id = parsed

            existing = self.registry.find(session_id)
            if existing is not None:
                if existing.owner_id != owner_id:
                    logger.warning(
                        "recovery_owner_mismatch",
                        name=entry.name,
                        session_id=session_id,
                        registered_owner=existing.owner_id,
                    )
                    try:
                        await backend.kill(entry.name)
                    except Exception:
                        logger.exception("recovery_cleanup_failed", name=entry.name)
                continue

            try:
                await self.registry.adopt(entry, owner_id=owner_id, session_id=session_id)
            except Exception:
                logger.exception("recovery_attach_failed", name=entry.name)
                continue
            recovered += 1
            logger.info("terminal_recovered", session_id=session_id, owner_id=owner_id, cwd=entry.cwd)

        logger.info("recovery_complete", found=len(persisted), recovered=recovered)
        return recovered

    # ── Operations ───────────────────────────────────────────────────────────

    async def create_terminal(
        self,
        owner_id: str,
        owner_email: str,
        cwd: str | None = None,
        cols: int | None = None,
        rows: int | None = None,
    ) -> Session:
        decision = self.admission.can_create(owner_id)
        if not decision.allowed:
            raise QuotaExceededError(decision.reason, decision.message)

        session = await self.registry.create(
            owner_id,
            owner_email,
            resolve_cwd(cwd),
            cols or self.default_cols,
            rows or self.default_rows,
            use_persistence=self.persist_by_default,
        )
        logger.info(
            "terminal_created",
            session_id=session.id,
            owner_id=owner_id,
            cwd=session.cwd,
            persistent=session.is_persistent,
            pid=getattr(session.process, "pid", None),
        )
        return session

    def owned_session(self, session_id: str, owner_id: str) -> Session:
        session = self.registry.get(session_id)
        if session.owner_id != owner_id:
            raise ForbiddenError()
        return session

    def list_terminals(self, owner_id: str) -> list[Session]:
        return self.registry.list_by_owner(owner_id)

    async def resize_terminal(self, session_id: str, owner_id: str, cols: int, rows: int) -> Session:
        self.owned_session(session_id, owner_id)
        return await self.registry.resize(session_id, cols, rows)

    async def close_terminal(self, session_id: str, owner_id: str) -> None:
        self.owned_session(session_id, owner_id)
        await self.terminate(session_id, SessionState.EXPLICIT_CLOSED)

    async def close_idle(self, session_id: str) -> None:
        await self.terminate(session_id, SessionState.IDLE_CLOSED)

    async def terminate(
        self,
        session_id: str,
        state: SessionState,
        code: int | None = None,
        kill_persistent: bool = True,
    ) -> bool:
        """Move a session into a terminal state and tear it down.

        Returns False if the session was already gone or finishing.
        """
        session = self.registry.find(session_id)
        if session is None or session.state in TERMINAL_STATES:
            return False
        session.state = state

        if state == SessionState.EXITED:
            notice = ExitNotice(code=code)
        elif state == SessionState.IDLE_CLOSED:
            notice = IdleTimeoutNotice()
        else:
            notice = ClosedNotice()

        await self.multiplexer.close_all(session_id, notice)
        await self.registry.remove(session_id, kill_persistent=kill_persistent)
        logger.info("terminal_closed", session_id=session_id, owner_id=session.owner_id, state=state.value, code=code)
        return True

    def _handle_exit(self, session_id: str, code: int | None, sig: int | None) -> None:
        if self._stopping:
            return
        if code is None and sig is not None:
            code = 128 + sig
        logger.info("terminal_exited", session_id=session_id, code=code, signal=sig)
        task = asyncio.get_running_loop().create_task(self._settle_exit(session_id, code))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _settle_exit(self, session_id: str, code: int | None) -> None:
        """Finish a session whose process exited.

        For a persistent session the process is only the tmux client, which
        also exits when it is detached. If the tmux session is still there the
        client is re-attached, or the session is left for the next recovery.
        """
        session = self.registry.find(session_id)
        if session is None or not session.is_persistent or session.state != SessionState.ACTIVE:
            await self.terminate(session_id, SessionState.EXITED, code)
            return

        if await self.registry.persistent_alive(session_id):
            if await self.registry.reattach(session_id):
                logger.info("terminal_reattached", session_id=session_id, name=session.persistent_name)
                return
            logger.warning("terminal_left_for_recovery", session_id=session_id, name=session.persistent_name)
        # Either still alive and kept for recovery, or already gone
        await self.terminate(session_id, SessionState.EXITED, code, kill_persistent=False)
