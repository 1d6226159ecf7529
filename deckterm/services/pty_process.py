"""PTY process adapter: one pseudo-terminal plus its child process."""

import asyncio
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Callable

import structlog

from deckterm.core.exceptions import SpawnFailure

logger = structlog.get_logger()

OutputCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None, int | None], None]

READ_CHUNK = 65536
# Input the child has not consumed yet; beyond this, writes are refused
MAX_PENDING_INPUT = 1024 * 1024
CLOSE_GRACE_SECONDS = 0.5


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is already the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """A running child attached to the slave side of a PTY.

    Output is read from the master fd by an event-loop reader, so chunks reach
    ``on_output`` in the order the child produced them. ``on_exit`` fires
    exactly once with ``(exit_code, signal)``; one of the two is ``None``.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        label: str = "",
    ):
        self._proc = proc
        self._master_fd: int | None = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._label = label
        self._closed = False
        self._reading = False
        self._exit_fired = False
        self._loop = asyncio.get_running_loop()
        self._exit_task: asyncio.Task | None = None
        self._pending = bytearray()
        self._writing = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def _start(self) -> None:
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True
        self._exit_task = asyncio.create_task(self._watch_exit())

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False
        self._stop_writing()

    def _stop_writing(self) -> None:
        if self._writing and self._master_fd is not None:
            self._loop.remove_writer(self._master_fd)
        self._writing = False
        self._pending.clear()

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO: the slave side closed because the child exited
            data = b""
        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _emit(self, data: bytes) -> None:
        try:
            self._on_output(data)
        except Exception:
            logger.exception("pty_output_callback_failed", label=self._label)

    def _drain(self) -> None:
        """Deliver whatever the child wrote before it exited."""
        if self._master_fd is None:
            return
        while True:
            try:
                data = os.read(self._master_fd, READ_CHUNK)
            except OSError:
                return
            if not data:
                return
            self._emit(data)

    async def _watch_exit(self) -> None:
        returncode = await self._proc.wait()
        if not self._closed:
            self._drain()
        self._closed = True
        self._release_fd()

        if returncode is not None and returncode < 0:
            code, sig = None, -returncode
        else:
            code, sig = returncode, None
        logger.debug("pty_exited", label=self._label, pid=self.pid, code=code, signal=sig)

        if not self._exit_fired:
            self._exit_fired = True
            try:
                self._on_exit(code, sig)
            except Exception:
                logger.exception("pty_exit_callback_failed", label=self._label)

    def _release_fd(self) -> None:
        self._stop_reading()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None

    def write(self, data: bytes) -> bool:
        """Queue input for the child.

        Whatever the kernel does not take right away is buffered and flushed
        as the child reads. Returns False if the handle is closed or the
        buffer would exceed MAX_PENDING_INPUT.
        """
        if self._closed or self._master_fd is None:
            return False
        if self._pending:
            if len(self._pending) + len(data) > MAX_PENDING_INPUT:
                logger.warning("pty_input_overflow", label=self._label, pending=len(self._pending), size=len(data))
                return False
            self._pending.extend(data)
            return True

        try:
            written = self._write_some(data)
        except OSError as exc:
            logger.debug("pty_write_failed", label=self._label, error=str(exc))
            return False
        rest = data[written:]
        if not rest:
            return True
        if len(rest) > MAX_PENDING_INPUT:
            logger.warning("pty_input_overflow", label=self._label, pending=0, size=len(rest))
            return False
        self._pending.extend(rest)
        self._loop.add_writer(self._master_fd, self._on_writable)
        self._writing = True
        return True

    def _write_some(self, data) -> int:
        """Write as much of ``data`` as the kernel accepts without blocking."""
        total = 0
        with memoryview(data) as view:
            while total < len(view):
                try:
                    total += os.write(self._master_fd, view[total:])
                except BlockingIOError:
                    break
        return total

    def _on_writable(self) -> None:
        if self._master_fd is None:
            return
        try:
            written = self._write_some(self._pending)
        except OSError as exc:
            logger.debug("pty_write_failed", label=self._label, error=str(exc))
            self._stop_writing()
            return
        del self._pending[:written]
        if not self._pending:
            self._stop_writing()

    def resize(self, cols: int, rows: int) -> bool:
        """Set the window size and deliver SIGWINCH to the child."""
        if self._closed or self._master_fd is None:
            return False
        try:
            _set_winsize(self._master_fd, cols, rows)
            if self._proc.returncode is None:
                self._proc.send_signal(signal.SIGWINCH)
            return True
        except (OSError, ProcessLookupError) as exc:
            logger.debug("pty_resize_failed", label=self._label, error=str(exc))
            return False

    async def close(self) -> None:
        """Hang up the child, kill it if it lingers, and release the fd."""
        if self._closed:
            if self._exit_task is not None:
                await asyncio.shield(self._exit_task)
            return
        self._closed = True
        self._stop_reading()

        if self._proc.returncode is None:
            try:
                os.killpg(self._proc.pid, signal.SIGHUP)
            except (ProcessLookupError, PermissionError):
                pass
            try:
                await asyncio.wait_for(asyncio.shield(self._proc.wait()), CLOSE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                try:
                    os.killpg(self._proc.pid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    pass

        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)
        self._release_fd()


async def spawn_pty(
    cmd: list[str],
    *,
    cwd: str,
    cols: int,
    rows: int,
    env: dict[str, str] | None = None,
    inherit_env: bool = True,
    on_output: OutputCallback,
    on_exit: ExitCallback,
    label: str = "",
) -> PTYProcess:
    """Open a PTY pair and start ``cmd`` with the slave as its controlling terminal.

    Raises SpawnFailure if the PTY cannot be allocated or the command cannot
    be started.
    """
    try:
        master_fd, slave_fd = pty.openpty()
    except OSError as exc:
        raise SpawnFailure(f"Could not allocate a PTY: {exc}") from exc

    try:
        _set_winsize(master_fd, cols, rows)
        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env={**os.environ, **(env or {})} if inherit_env else dict(env or {}),
            start_new_session=True,
            preexec_fn=_make_controlling_tty,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        os.close(master_fd)
        raise SpawnFailure(f"Failed to start {cmd[0]}: {exc}", details={"cmd": cmd[0]}) from exc
    finally:
        os.close(slave_fd)

    process = PTYProcess(proc, master_fd, on_output, on_exit, label=label)
    process._start()
    logger.info("pty_spawned", label=label, pid=proc.pid, cmd=cmd[0], cols=cols, rows=rows)
    return process
