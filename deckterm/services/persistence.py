"""Durable sessions backed by a detachable terminal multiplexer (tmux).

A persistent terminal is a detached tmux session named
``{prefix}_{encoded_owner}_{session_id}``. The manager attaches a tmux client
inside a PTY to stream it; killing the manager only kills that client, so
the shell survives restarts and is re-attached by recovery at startup.
"""

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

from deckterm.services.pty_process import ExitCallback, OutputCallback, PTYProcess, spawn_pty

logger = structlog.get_logger()

_LIST_FORMAT = "#{session_name}\t#{pane_current_path}\t#{window_width}\t#{window_height}"

_NAME_SAFE = frozenset(b"abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")
_HEX_DIGITS = frozenset("0123456789abcdef")


class PersistenceError(Exception):
    """A multiplexer command failed or timed out."""


@dataclass(frozen=True)
class PersistedSession:
    name: str
    cwd: str
    cols: int
    rows: int


def encode_owner(owner_id: str) -> str:
    """Encode an owner id for use inside a tmux session name.

    ASCII letters and digits pass through; every other UTF-8 byte becomes
    ``-xx``. The result never contains ``_``, ``.`` or ``:`` and decodes back
    to exactly one owner id.
    """
    return "".join(
        chr(b) if b in _NAME_SAFE else f"-{b:02x}"
        for b in owner_id.encode("utf-8")
    )


def decode_owner(encoded: str) -> str | None:
    """Invert ``encode_owner``. Returns None for anything it could not have produced."""
    out = bytearray()
    i = 0
    while i < len(encoded):
        ch = encoded[i]
        if ch == "-":
            pair = encoded[i + 1:i + 3]
            if len(pair) != 2 or not set(pair) <= _HEX_DIGITS:
                return None
            byte = int(pair, 16)
            if byte in _NAME_SAFE:
                return None
            out.append(byte)
            i += 3
        elif ord(ch) < 128 and ord(ch) in _NAME_SAFE:
            out.append(ord(ch))
            i += 1
        else:
            return None
    try:
        return out.decode("utf-8") or None
    except UnicodeDecodeError:
        return None


def session_name(prefix: str, owner_id: str, session_id: str) -> str:
    return f"{prefix}_{encode_owner(owner_id)}_{session_id}"


def parse_session_name(prefix: str, name: str) -> tuple[str, str] | None:
    """Split a session name into ``(owner_id, session_id)``.

    Neither the encoded owner nor the session id contains an underscore, so a
    valid name has exactly two after the prefix.
    """
    head = f"{prefix}_"
    if not name.startswith(head):
        return None
    encoded, sep, session_id = name[len(head):].partition("_")
    if not sep or not encoded or not session_id or "_" in session_id:
        return None
    owner_id = decode_owner(encoded)
    if owner_id is None:
        return None
    return owner_id, session_id


class PersistenceBackend(ABC):
    """Capability interface for keeping shells alive outside the manager process."""

    prefix: str

    @abstractmethod
    async def create_detached(self, name: str, shell: list[str], cwd: str, cols: int, rows: int) -> None:
        """Start a detached session running ``shell``."""
        ...

    @abstractmethod
    async def attach(
        self,
        name: str,
        cols: int,
        rows: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> PTYProcess:
        """Attach a client to ``name`` inside a fresh PTY and return it."""
        ...

    @abstractmethod
    async def resize_pane(self, name: str, cols: int, rows: int) -> None:
        ...

    @abstractmethod
    async def kill(self, name: str) -> None:
        ...

    @abstractmethod
    async def has_session(self, name: str) -> bool:
        """Whether the multiplexer still holds a session called ``name``."""
        ...

    @abstractmethod
    async def list_existing(self) -> list[PersistedSession]:
        """Enumerate live sessions whose name carries this backend's prefix."""
        ...


class TmuxBackend(PersistenceBackend):
    def __init__(self, prefix: str = "deckterm", binary: str = "tmux", command_timeout: float = 5.0):
        self.prefix = prefix
        self._binary = binary
        self._timeout = command_timeout

    @staticmethod
    def available(binary: str = "tmux") -> bool:
        return shutil.which(binary) is not None

    def _env(self) -> dict[str, str]:
        env = {**os.environ, "TERM": "xterm-256color"}
        # A server started from inside another tmux would nest into it
        env.pop("TMUX", None)
        return env

    async def _run(self, *args: str) -> str:
        """Run one tmux command, killing it if it outlives the timeout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as exc:
            raise PersistenceError(f"Cannot run {self._binary}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise PersistenceError(f"{self._binary} {args[0]} timed out after {self._timeout}s")

        if proc.returncode != 0:
            raise PersistenceError(stderr.decode("utf-8", errors="replace").strip() or f"{args[0]} failed")
        return stdout.decode("utf-8", errors="replace")

    async def create_detached(self, name: str, shell: list[str], cwd: str, cols: int, rows: int) -> None:
        await self._run(
            "new-session", "-d",
            "-s", name,
            "-x", str(cols),
            "-y", str(rows),
            "-c", cwd,
            *shell,
        )
        logger.info("tmux_session_created", name=name, cwd=cwd)

    async def attach(
        self,
        name: str,
        cols: int,
        rows: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> PTYProcess:
        env = self._env()
        return await spawn_pty(
            [self._binary, "attach-session", "-t", f"={name}"],
            cwd="/",
            cols=cols,
            rows=rows,
            env=env,
            inherit_env=False,
            on_output=on_output,
            on_exit=on_exit,
            label=name,
        )

    async def resize_pane(self, name: str, cols: int, rows: int) -> None:
        await self._run("resize-window", "-t", f"={name}", "-x", str(cols), "-y", str(rows))

    async def kill(self, name: str) -> None:
        await self._run("kill-session", "-t", f"={name}")
        logger.info("tmux_session_killed", name=name)

    async def has_session(self, name: str) -> bool:
        try:
            await self._run("has-session", "-t", f"={name}")
        except PersistenceError:
            return False
        return True

    async def list_existing(self) -> list[PersistedSession]:
        try:
            output = await self._run("list-sessions", "-F", _LIST_FORMAT)
        except PersistenceError as exc:
            # No server simply means no sessions
            if "no server running" in str(exc) or "error connecting" in str(exc):
                return []
            raise

        sessions = []
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) != 4 or not parts[0].startswith(f"{self.prefix}_"):
                continue
            name, cwd, width, height = parts
            try:
                cols, rows = max(1, int(width)), max(1, int(height))
            except ValueError:
                cols, rows = 120, 30
            sessions.append(PersistedSession(name=name, cwd=cwd or "/", cols=cols, rows=rows))
        return sessions
