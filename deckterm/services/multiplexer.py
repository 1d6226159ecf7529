"""Transport multiplexer: fans PTY output out to every attached channel.

Each attached channel gets its own outbound queue drained by a dedicated
task, so a slow or dead peer never blocks the PTY reader or the other
subscribers, and each channel sees output in the order the PTY produced it.
"""

import asyncio
import codecs
from typing import Protocol

import structlog
from pydantic import BaseModel

from deckterm.core.exceptions import ForbiddenError, NotFoundError, TransportClosed
from deckterm.schemas.stream import (
    ClientMessage,
    IgnoredMessage,
    InputMessage,
    PingMessage,
    PongFrame,
    RawInput,
    ResizeMessage,
    decode_client_message,
)
from deckterm.services.registry import Session, SessionRegistry, SessionState

logger = structlog.get_logger()

OUTBOX_MAXSIZE = 4096
CLOSE_FLUSH_TIMEOUT = 1.0

_CLOSE = object()


class Channel(Protocol):
    """A duplex connection to one browser tab (Starlette's WebSocket fits)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class _Outbox:
    def __init__(self, channel: Channel, session_id: str):
        self.channel = channel
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=OUTBOX_MAXSIZE)
        self.close_code = 1000
        self.close_reason: str | None = None
        self.task = asyncio.create_task(self._pump())

    def offer(self, frame) -> bool:
        try:
            self.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            return False

    def request_close(self, code: int, reason: str | None) -> None:
        self.close_code = code
        self.close_reason = reason
        if not self.offer(_CLOSE):
            self.task.cancel()
            asyncio.create_task(_close_quietly(self.channel, code, reason))

    async def _send(self, frame: str) -> None:
        try:
            await self.channel.send_text(frame)
        except Exception as exc:
            raise TransportClosed(str(exc)) from exc

    async def _pump(self) -> None:
        try:
            while True:
                frame = await self.queue.get()
                if frame is _CLOSE:
                    break
                await self._send(frame)
        except TransportClosed as exc:
            logger.debug("channel_send_failed", session_id=self.session_id, error=str(exc))
            return
        try:
            await self.channel.close(code=self.close_code, reason=self.close_reason)
        except Exception:
            pass


class TransportMultiplexer:
    def __init__(self, registry: SessionRegistry):
        self._registry = registry
        self._outboxes: dict[Channel, _Outbox] = {}
        self._decoders: dict[str, codecs.IncrementalDecoder] = {}

    def attach(self, session_id: str, channel: Channel, owner_id: str) -> Session:
        """Subscribe ``channel`` to a session's output.

        Raises NotFoundError for unknown or finished sessions and
        ForbiddenError when ``owner_id`` does not own the session.
        """
        session = self._registry.get(session_id)
        if session.owner_id != owner_id:
            raise ForbiddenError()
        if session.state != SessionState.ACTIVE:
            raise NotFoundError(f"Terminal is not active: {session_id}")

        previous = self._outboxes.pop(channel, None)
        if previous is not None:
            previous.task.cancel()

        self._registry.add_subscriber(session_id, channel)
        self._outboxes[channel] = _Outbox(channel, session_id)
        logger.debug("channel_attached", session_id=session_id, subscribers=len(self._registry.subscribers(session_id)))
        return session

    def detach(self, session_id: str, channel: Channel) -> None:
        """Remove a channel immediately; anything still queued for it is dropped."""
        self._registry.discard_subscriber(session_id, channel)
        outbox = self._outboxes.pop(channel, None)
        if outbox is not None and outbox.session_id == session_id:
            outbox.task.cancel()
        elif outbox is not None:
            self._outboxes[channel] = outbox
        if not self._registry.subscribers(session_id):
            self._decoders.pop(session_id, None)
        logger.debug("channel_detached", session_id=session_id)

    def _offer(self, channel: Channel, frame: str) -> None:
        outbox = self._outboxes.get(channel)
        if outbox is None:
            return
        if not outbox.offer(frame):
            # Peer stopped reading; cut it loose so its client reconnects
            logger.warning("channel_overflow", session_id=outbox.session_id)
            self._registry.discard_subscriber(outbox.session_id, channel)
            self._outboxes.pop(channel, None)
            outbox.task.cancel()
            asyncio.create_task(_close_quietly(channel, 1013, "Output backlog exceeded"))

    def broadcast_output(self, session_id: str, data: bytes) -> None:
        """Queue PTY output for every current subscriber. Never blocks."""
        channels = self._registry.subscribers(session_id)
        if not channels:
            # Nobody is listening, or the session is already being torn down
            return
        decoder = self._decoders.get(session_id)
        if decoder is None:
            decoder = self._decoders[session_id] = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = decoder.decode(data)
        if not text:
            return
        for channel in channels:
            self._offer(channel, text)

    def broadcast_control(self, session_id: str, frame: BaseModel) -> None:
        payload = frame.model_dump_json()
        for channel in self._registry.subscribers(session_id):
            self._offer(channel, payload)

    def send_control(self, channel: Channel, frame: BaseModel) -> None:
        self._offer(channel, frame.model_dump_json())

    async def close_all(
        self,
        session_id: str,
        notice: BaseModel | None = None,
        code: int = 1000,
        reason: str | None = None,
    ) -> None:
        """Send a final notice to every subscriber, then close them all."""
        channels = self._registry.take_subscribers(session_id)
        self._decoders.pop(session_id, None)
        payload = notice.model_dump_json() if notice is not None else None

        tasks = []
        for channel in channels:
            outbox = self._outboxes.pop(channel, None)
            if outbox is None:
                continue
            if payload is not None:
                outbox.offer(payload)
            outbox.request_close(code, reason)
            tasks.append(outbox.task)

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=CLOSE_FLUSH_TIMEOUT)
            for task in pending:
                task.cancel()

    def route_input(self, session_id: str, data: bytes) -> bool:
        """Write input to the session's PTY and record the activity."""
        session = self._registry.touch(session_id)
        if session.process is None:
            return False
        return session.process.write(data)

    async def handle_message(self, session_id: str, channel: Channel, raw: str | bytes) -> ClientMessage:
        """Decode one inbound frame and act on it."""
        message = decode_client_message(raw)

        if isinstance(message, InputMessage):
            self.route_input(session_id, message.data.encode("utf-8"))
        elif isinstance(message, RawInput):
            self.route_input(session_id, message.data)
        elif isinstance(message, ResizeMessage):
            if message.cols is not None and message.rows is not None:
                await self._registry.resize(session_id, message.cols, message.rows)
        elif isinstance(message, PingMessage):
            self.send_control(channel, PongFrame())
        elif isinstance(message, IgnoredMessage):
            logger.debug("stream_message_ignored", session_id=session_id, message_type=message.original_type)
        return message


async def _close_quietly(channel: Channel, code: int, reason: str) -> None:
    try:
        await channel.close(code=code, reason=reason)
    except Exception:
        pass
