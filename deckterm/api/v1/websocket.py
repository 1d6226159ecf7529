import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from deckterm.core.exceptions import DecktermError, NotFoundError
from deckterm.core.middleware import app_settings, resolve_identity
from deckterm.schemas.stream import ErrorFrame
from deckterm.services.registry import SessionState
from deckterm.services.terminal_manager import TerminalManager

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws/terminals/{terminal_id}")
async def terminal_stream(websocket: WebSocket, terminal_id: str):
    """Duplex stream for one terminal. Any number of tabs may attach at once."""
    identity = resolve_identity(websocket.headers, app_settings(websocket.app))
    if identity is None:
        await websocket.close(code=4001, reason="Missing authenticated identity")
        return

    manager: TerminalManager = websocket.app.state.terminal_manager
    session = manager.registry.find(terminal_id)
    if session is None or session.state != SessionState.ACTIVE:
        await websocket.close(code=4004, reason=f"Terminal not found: {terminal_id}")
        return
    if session.owner_id != identity.owner_id:
        await websocket.close(code=4003, reason="Terminal belongs to another owner")
        return

    await websocket.accept()

    try:
        manager.multiplexer.attach(terminal_id, websocket, identity.owner_id)
    except DecktermError as exc:
        # Session ended between the check above and the accept
        await websocket.send_text(ErrorFrame(code=exc.code, message=exc.message).model_dump_json())
        await websocket.close(code=4004 if isinstance(exc, NotFoundError) else 4003)
        return

    logger.info("terminal_stream_opened", session_id=terminal_id, owner_id=identity.owner_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if not raw:
                continue
            await manager.multiplexer.handle_message(terminal_id, websocket, raw)
    except WebSocketDisconnect:
        pass
    except NotFoundError:
        # Terminal was closed while a frame was in flight
        pass
    except RuntimeError as exc:
        # Starlette raises this when receiving on a socket the server already closed
        logger.debug("terminal_stream_receive_after_close", session_id=terminal_id, error=str(exc))
    finally:
        manager.multiplexer.detach(terminal_id, websocket)
        logger.info("terminal_stream_closed", session_id=terminal_id, owner_id=identity.owner_id)
