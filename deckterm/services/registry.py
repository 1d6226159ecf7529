"""Session registry: the single owner of terminal session state.

Holds every Session record plus the set of live subscriber channels per
session. Mutations that await (spawn, recovery attach, release) run under a
per-session asyncio.Lock so a startup recovery and a concurrent create or
delete of the same id cannot interleave.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from enum import Enum

import structlog

from deckterm.core.exceptions import NotFoundError, SpawnFailure
from deckterm.services.persistence import (
    PersistedSession,
    PersistenceBackend,
    PersistenceError,
    session_name,
)
from deckterm.services.pty_process import ExitCallback, OutputCallback, PTYProcess, spawn_pty

logger = structlog.get_logger()

MAX_DIMENSION = 65535  # TIOCSWINSZ stores unsigned shorts
REATTACH_MIN_INTERVAL = 1.0  # seconds; a client that keeps dropping faster is given up on

Spawner = Callable[..., Awaitable[PTYProcess]]


class SessionState(str, Enum):
    CREATING = "creating"
    ACTIVE = "active"
    EXITED = "exited"
    IDLE_CLOSED = "idle_closed"
    EXPLICIT_CLOSED = "explicit_closed"


TERMINAL_STATES = frozenset({SessionState.EXITED, SessionState.IDLE_CLOSED, SessionState.EXPLICIT_CLOSED})


def clamp_dimension(value: int) -> int:
    return max(1, min(int(value), MAX_DIMENSION))


@dataclass
class Session:
    id: str
    owner_id: str
    owner_email: str
    cwd: str
    cols: int
    rows: int
    created_at: float
    last_activity_at: float
    persistent_name: str | None = None
    process: PTYProcess | None = None
    state: SessionState = SessionState.CREATING
    released: bool = field(default=False, repr=False)

    @property
    def is_persistent(self) -> bool:
        return self.persistent_name is not None

    def summary(self) -> dict:
        return {"id": self.id, "cwd": self.cwd, "created_at": int(self.created_at * 1000)}


class SessionRegistry:
    def __init__(
        self,
        *,
        shell: list[str],
        backend: PersistenceBackend | None = None,
        spawner: Spawner = spawn_pty,
        clock: Callable[[], float] = time.time,
    ):
        self._shell = shell
        self._backend = backend
        self._spawner = spawner
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._subscribers: dict[str, set[Hashable]] = {}
        self._channel_session: dict[Hashable, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_reattach: dict[str, float] = {}
        self._output_handler: Callable[[str, bytes], None] = lambda session_id, data: None
        self._exit_handler: Callable[[str, int | None, int | None], None] = lambda session_id, code, sig: None

    @property
    def backend(self) -> PersistenceBackend | None:
        return self._backend

    def bind(
        self,
        on_output: Callable[[str, bytes], None],
        on_exit: Callable[[str, int | None, int | None], None],
    ) -> None:
        """Route PTY output and exit events for every session to the given handlers."""
        self._output_handler = on_output
        self._exit_handler = on_exit

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ── Lookup ───────────────────────────────────────────────────────────────

    def find(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Terminal not found: {session_id}")
        return session

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def list_by_owner(self, owner_id: str) -> list[Session]:
        sessions = [
            s for s in self._sessions.values()
            if s.owner_id == owner_id and s.state == SessionState.ACTIVE
        ]
        return sorted(sessions, key=lambda s: s.created_at)

    def count(self) -> int:
        """Live sessions, including ones still spawning."""
        return sum(1 for s in self._sessions.values() if s.state not in TERMINAL_STATES)

    def count_by_owner(self, owner_id: str) -> int:
        return sum(
            1 for s in self._sessions.values()
            if s.owner_id == owner_id and s.state not in TERMINAL_STATES
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def _callbacks(self, session_id: str) -> tuple[OutputCallback, ExitCallback]:
        def on_output(data: bytes) -> None:
            self._output_handler(session_id, data)

        def on_exit(code: int | None, sig: int | None) -> None:
            self._exit_handler(session_id, code, sig)

        return on_output, on_exit

    def _shell_env(self, cols: int, rows: int) -> dict[str, str]:
        return {
            "TERM": "xterm-256color",
            "COLORTERM": "truecolor",
            "COLUMNS": str(cols),
            "LINES": str(rows),
        }

    async def create(
        self,
        owner_id: str,
        owner_email: str,
        cwd: str,
        cols: int,
        rows: int,
        use_persistence: bool = False,
    ) -> Session:
        """Spawn a shell and register it. Raises SpawnFailure on any start error.

        The record is inserted in CREATING state before the spawn awaits, so
        in-flight creations count against admission caps.
        """
        if use_persistence and self._backend is None:
            raise SpawnFailure("Persistent terminals are not enabled on this server.")

        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            owner_email=owner_email,
            cwd=cwd,
            cols=clamp_dimension(cols),
            rows=clamp_dimension(rows),
            created_at=now,
            last_activity_at=now,
        )
        self._sessions[session.id] = session
        self._subscribers[session.id] = set()

        try:
            async with self.lock_for(session.id):
                if use_persistence:
                    session.process = await self._start_persistent(session)
                else:
                    session.process = await self._start_plain(session)
        except SpawnFailure:
            self._forget(session.id)
            raise
        except PersistenceError as exc:
            self._forget(session.id)
            raise SpawnFailure(f"Failed to start persistent terminal: {exc}") from exc
        except Exception as exc:
            self._forget(session.id)
            logger.exception("terminal_spawn_error", session_id=session.id)
            raise SpawnFailure(f"Failed to start terminal: {exc}") from exc

        if session.state == SessionState.CREATING:
            session.state = SessionState.ACTIVE
        return session

    async def _start_plain(self, session: Session) -> PTYProcess:
        on_output, on_exit = self._callbacks(session.id)
        return await self._spawner(
            self._shell,
            cwd=session.cwd,
            cols=session.cols,
            rows=session.rows,
            env=self._shell_env(session.cols, session.rows),
            on_output=on_output,
            on_exit=on_exit,
            label=session.id,
        )

    async def _start_persistent(self, session: Session) -> PTYProcess:
        assert self._backend is not None
        name = session_name(self._backend.prefix, session.owner_id, session.id)
        await self._backend.create_detached(name, self._shell, session.cwd, session.cols, session.rows)
        session.persistent_name = name
        on_output, on_exit = self._callbacks(session.id)
        try:
            return await self._backend.attach(name, session.cols, session.rows, on_output, on_exit)
        except Exception:
            await self._kill_persistent(name)
            raise

    async def adopt(self, persisted: PersistedSession, owner_id: str, session_id: str) -> Session:
        """Attach to a session that outlived a previous manager process and register it."""
        if self._backend is None:
            raise SpawnFailure("No persistence backend configured.")

        async with self.lock_for(session_id):
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing

            now = self._clock()
            session = Session(
                id=session_id,
                owner_id=owner_id,
                # Only the owner id survives in the session name
                owner_email="recovered",
                cwd=persisted.cwd,
                cols=clamp_dimension(persisted.cols),
                rows=clamp_dimension(persisted.rows),
                created_at=now,
                last_activity_at=now,
                persistent_name=persisted.name,
            )
            on_output, on_exit = self._callbacks(session_id)
            try:
                session.process = await self._backend.attach(
                    persisted.name, session.cols, session.rows, on_output, on_exit
                )
            except PersistenceError as exc:
                self._locks.pop(session_id, None)
                raise SpawnFailure(f"Failed to attach {persisted.name}: {exc}") from exc
            except Exception:
                self._locks.pop(session_id, None)
                raise

            session.state = SessionState.ACTIVE
            self._sessions[session_id] = session
            self._subscribers[session_id] = set()
            return session

    async def persistent_alive(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not session.persistent_name or self._backend is None:
            return False
        return await self._backend.has_session(session.persistent_name)

    async def reattach(self, session_id: str) -> bool:
        """Attach a fresh client to a persistent session whose previous client went away.

        Returns False when the session is no longer registered and active, when
        it was re-attached less than REATTACH_MIN_INTERVAL ago, or when the
        attach fails.
        """
        if self._backend is None or session_id not in self._sessions:
            return False

        async with self.lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None or session.state != SessionState.ACTIVE or not session.persistent_name:
                return False
            now = self._clock()
            last = self._last_reattach.get(session_id)
            if last is not None and now - last < REATTACH_MIN_INTERVAL:
                logger.warning("persistent_reattach_throttled", session_id=session_id)
                return False
            self._last_reattach[session_id] = now

            if session.process is not None:
                try:
                    await session.process.close()
                except Exception:
                    logger.exception("terminal_release_failed", session_id=session_id)

            on_output, on_exit = self._callbacks(session_id)
            try:
                session.process = await self._backend.attach(
                    session.persistent_name, session.cols, session.rows, on_output, on_exit
                )
            except PersistenceError as exc:
                logger.warning("persistent_reattach_failed", session_id=session_id, error=str(exc))
                return False
        return True

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_reattach.pop(session_id, None)
        for channel in self._subscribers.pop(session_id, set()):
            self._channel_session.pop(channel, None)
        self._locks.pop(session_id, None)

    async def remove(self, session_id: str, *, kill_persistent: bool = True) -> Session | None:
        """Drop a session and release its handles exactly once.

        With ``kill_persistent=False`` a persistent session is only detached,
        leaving the multiplexer session alive for the next recovery.
        """
        async with self.lock_for(session_id):
            session = self._sessions.pop(session_id, None)
            for channel in self._subscribers.pop(session_id, set()):
                self._channel_session.pop(channel, None)
            if session is None:
                return None
            await self._release(session, kill_persistent)
        self._locks.pop(session_id, None)
        self._last_reattach.pop(session_id, None)
        return session

    async def _release(self, session: Session, kill_persistent: bool) -> None:
        if session.released:
            return
        session.released = True

        if session.process is not None:
            try:
                await session.process.close()
            except Exception:
                logger.exception("terminal_release_failed", session_id=session.id)

        if session.persistent_name and kill_persistent:
            await self._kill_persistent(session.persistent_name)

    async def _kill_persistent(self, name: str) -> None:
        if self._backend is None:
            return
        try:
            await self._backend.kill(name)
        except PersistenceError as exc:
            logger.warning("persistent_kill_failed", name=name, error=str(exc))

    # ── Mutation ─────────────────────────────────────────────────────────────

    def touch(self, session_id: str) -> Session:
        """Record inbound activity. last_activity_at never moves backwards."""
        session = self.get(session_id)
        session.last_activity_at = max(session.last_activity_at, self._clock())
        return session

    async def resize(self, session_id: str, cols: int, rows: int) -> Session:
        session = self.get(session_id)
        session.cols = clamp_dimension(cols)
        session.rows = clamp_dimension(rows)
        session.last_activity_at = max(session.last_activity_at, self._clock())

        if session.process is not None and not session.process.resize(session.cols, session.rows):
            logger.debug("terminal_resize_ignored", session_id=session_id)
        if session.persistent_name and self._backend is not None:
            try:
                await self._backend.resize_pane(session.persistent_name, session.cols, session.rows)
            except PersistenceError as exc:
                logger.warning("persistent_resize_failed", session_id=session_id, error=str(exc))
        return session

    # ── Subscribers ──────────────────────────────────────────────────────────

    def subscribers(self, session_id: str) -> list[Hashable]:
        return list(self._subscribers.get(session_id, ()))

    def add_subscriber(self, session_id: str, channel: Hashable) -> None:
        """Attach a channel, moving it off any session it was attached to before."""
        session = self.get(session_id)
        if session.state != SessionState.ACTIVE:
            raise NotFoundError(f"Terminal is not active: {session_id}")

        previous = self._channel_session.get(channel)
        if previous is not None and previous != session_id:
            self._subscribers.get(previous, set()).discard(channel)
        self._subscribers[session_id].add(channel)
        self._channel_session[channel] = session_id

    def discard_subscriber(self, session_id: str, channel: Hashable) -> bool:
        members = self._subscribers.get(session_id)
        if not members or channel not in members:
            return False
        members.discard(channel)
        if self._channel_session.get(channel) == session_id:
            del self._channel_session[channel]
        return True

    def take_subscribers(self, session_id: str) -> list[Hashable]:
        """Detach and return every channel of a session."""
        members = self._subscribers.get(session_id)
        if not members:
            return []
        taken = list(members)
        members.clear()
        for channel in taken:
            self._channel_session.pop(channel, None)
        return taken
