"""Reconnecting client for /ws/terminals/{id}.

Keeps one terminal stream alive across network drops: exponential backoff
between attempts, an application-level ping/pong heartbeat to spot dead
connections, and a hard stop once the server reports the terminal is gone.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog
import websockets
import websockets.exceptions

from deckterm.config import Settings, settings as default_settings

logger = structlog.get_logger()

# Server notices after which the terminal no longer exists
SESSION_END_FRAMES = frozenset({"exit", "idle_timeout", "closed"})

# Close codes / handshake statuses that no retry can fix
PERMANENT_CLOSE_CODES = frozenset({4001, 4003, 4004})
PERMANENT_HANDSHAKE_STATUSES = frozenset({401, 403, 404})

PING_FRAME = json.dumps({"type": "ping"})
PONG_FRAME = json.dumps({"type": "pong"})

StatusCallback = Callable[["ConnectionState", dict], None]
Connector = Callable[[str, dict[str, str]], Awaitable]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    ERROR = "error"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class HeartbeatTimeout(Exception):
    """No pong arrived within the heartbeat timeout."""


class _PermanentFailure(Exception):
    pass


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before reconnect attempt ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""
    return min(base * (2 ** attempt), cap)


async def _default_connector(url: str, headers: dict[str, str]):
    # Heartbeat is done at the application level
    return await websockets.connect(url, additional_headers=headers, ping_interval=None)


def _parse_control(raw: str) -> dict | None:
    if not raw.startswith("{"):
        return None
    try:
        frame = json.loads(raw)
    except ValueError:
        return None
    if isinstance(frame, dict) and isinstance(frame.get("type"), str):
        return frame
    return None


class ReconnectingTerminalClient:
    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        on_output: Callable[[str], None] | None = None,
        on_status: StatusCallback | None = None,
        heartbeat_interval: float = 25.0,
        heartbeat_timeout: float = 5.0,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_retries: int = 10,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.headers = dict(headers or {})
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self._on_output = on_output or (lambda text: None)
        self._on_status = on_status or (lambda state, info: None)
        self._connector = connector or _default_connector
        self._sleep = sleep

        self.state = ConnectionState.CLOSED
        self.attempt = 0
        self.end_frame: dict | None = None
        self._ws = None
        self._closing = False
        self._close_requested = asyncio.Event()
        self._pong = asyncio.Event()

    @classmethod
    def from_settings(
        cls, url: str, settings: Settings = default_settings, **kwargs
    ) -> "ReconnectingTerminalClient":
        """Build a client with heartbeat and backoff tunables taken from settings."""
        options = {
            "heartbeat_interval": settings.deckterm_heartbeat_interval,
            "heartbeat_timeout": settings.deckterm_heartbeat_timeout,
            "base_delay": settings.deckterm_reconnect_base_delay,
            "max_delay": settings.deckterm_reconnect_max_delay,
            "max_retries": settings.deckterm_reconnect_max_retries,
        }
        options.update(kwargs)
        return cls(url, **options)

    def _set_state(self, state: ConnectionState, **info) -> None:
        self.state = state
        logger.debug("terminal_client_state", url=self.url, state=state.value, **info)
        try:
            self._on_status(state, info)
        except Exception:
            logger.exception("terminal_client_status_callback_failed")

    # ── Public API ───────────────────────────────────────────────────────────

    async def run(self) -> ConnectionState:
        """Connect and keep reconnecting until closed, ended or out of retries.

        Returns the final state: CLOSED or FAILED. Calling ``run`` again after
        FAILED starts over with a fresh retry budget.
        """
        self._closing = False
        self._close_requested.clear()
        self.attempt = 0
        self.end_frame = None

        while True:
            self._set_state(ConnectionState.CONNECTING, attempt=self.attempt)
            ended = False
            try:
                ended = await self._connect_once()
            except _PermanentFailure as exc:
                self._set_state(ConnectionState.FAILED, reason=str(exc))
                return self.state
            except (
                OSError,
                asyncio.TimeoutError,
                HeartbeatTimeout,
                websockets.exceptions.WebSocketException,
            ) as exc:
                if self._closing:
                    break
                self._set_state(ConnectionState.ERROR, error=str(exc) or type(exc).__name__)
            else:
                if not ended and not self._closing:
                    self._set_state(ConnectionState.CLOSED)

            if self._closing or ended:
                break

            if self.attempt >= self.max_retries:
                self._set_state(ConnectionState.FAILED, reason="max_retries", max_retries=self.max_retries)
                return self.state

            delay = backoff_delay(self.attempt, self.base_delay, self.max_delay)
            self.attempt += 1
            self._set_state(
                ConnectionState.RECONNECTING,
                attempt=self.attempt,
                max_retries=self.max_retries,
                delay=delay,
            )
            await self._wait_before_retry(delay)
            if self._closing:
                break

        self._set_state(ConnectionState.CLOSED, **({"frame": self.end_frame} if self.end_frame else {}))
        return self.state

    async def send_input(self, data: str) -> bool:
        return await self._send(json.dumps({"type": "input", "data": data}))

    async def send_resize(self, cols: int, rows: int) -> bool:
        return await self._send(json.dumps({"type": "resize", "cols": cols, "rows": rows}))

    async def close(self) -> None:
        """Close locally. A locally closed client never reconnects."""
        self._closing = True
        self._close_requested.set()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("terminal_client_close_failed", url=self.url)

    # ── Internals ────────────────────────────────────────────────────────────

    async def _send(self, frame: str) -> bool:
        ws = self._ws
        if ws is None or self.state != ConnectionState.CONNECTED:
            return False
        try:
            await ws.send(frame)
            return True
        except websockets.exceptions.ConnectionClosed:
            return False

    async def _wait_before_retry(self, delay: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(delay))
        closer = asyncio.ensure_future(self._close_requested.wait())
        try:
            await asyncio.wait({sleeper, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            closer.cancel()

    async def _connect_once(self) -> bool:
        """One connection lifetime. Returns True when the server ended the session."""
        try:
            ws = await self._connector(self.url, self.headers)
        except websockets.exceptions.InvalidStatus as exc:
            status = exc.response.status_code
            if status in PERMANENT_HANDSHAKE_STATUSES:
                raise _PermanentFailure(f"handshake rejected with HTTP {status}") from exc
            raise

        self._ws = ws
        self.attempt = 0
        self._pong.clear()
        self._set_state(ConnectionState.CONNECTED)
        if self._closing:
            await ws.close()
            return False

        receiver = asyncio.ensure_future(self._receive_loop(ws))
        tasks = {receiver}
        if self.heartbeat_interval > 0:
            tasks.add(asyncio.ensure_future(self._heartbeat(ws)))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._ws = None
            try:
                await ws.close()
            except Exception:
                logger.debug("terminal_client_close_failed", url=self.url)

        task = receiver if receiver in done else done.pop()
        if task.cancelled():
            return False
        exc = task.exception()
        if isinstance(exc, websockets.exceptions.ConnectionClosed):
            code = exc.rcvd.code if exc.rcvd is not None else None
            if code in PERMANENT_CLOSE_CODES and not self._closing:
                raise _PermanentFailure(f"closed by server with code {code}") from exc
            if isinstance(exc, websockets.exceptions.ConnectionClosedOK):
                return False
        if exc is not None:
            raise exc
        return bool(task.result()) if task is receiver else False

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._pong.clear()
            await ws.send(PING_FRAME)
            try:
                await asyncio.wait_for(self._pong.wait(), self.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning("terminal_client_heartbeat_timeout", url=self.url, timeout=self.heartbeat_timeout)
                raise HeartbeatTimeout(f"no pong within {self.heartbeat_timeout}s") from None

    async def _receive_loop(self, ws) -> bool:
        while True:
            raw = await ws.recv()
            if isinstance(raw, bytes):
                self._on_output(raw.decode("utf-8", errors="replace"))
                continue

            frame = _parse_control(raw)
            kind = frame.get("type") if frame else None
            if kind == "ping":
                await ws.send(PONG_FRAME)
            elif kind == "pong":
                self._pong.set()
            elif kind in SESSION_END_FRAMES:
                self.end_frame = frame
                logger.info("terminal_client_session_ended", url=self.url, frame=kind)
                return True
            elif kind == "error":
                logger.warning("terminal_client_server_error", url=self.url, code=frame.get("code"))
            else:
                self._on_output(raw)
