from fastapi import APIRouter, Body, Depends

from deckterm.core.middleware import Identity
from deckterm.dependencies import get_identity, get_terminal_manager
from deckterm.schemas.terminals import (
    CreateTerminalRequest,
    OkResponse,
    ResizeRequest,
    ResizeResponse,
    TerminalResponse,
    TerminalSummary,
)
from deckterm.services.terminal_manager import TerminalManager

router = APIRouter()


@router.post("/api/terminals")
async def create_terminal(
    body: CreateTerminalRequest | None = Body(default=None),
    identity: Identity = Depends(get_identity),
    manager: TerminalManager = Depends(get_terminal_manager),
) -> TerminalResponse:
    """Spawn a new shell for the caller."""
    body = body or CreateTerminalRequest()
    session = await manager.create_terminal(
        identity.owner_id,
        identity.owner_email,
        cwd=body.cwd,
        cols=body.cols,
        rows=body.rows,
    )
    return TerminalResponse(id=session.id, cols=session.cols, rows=session.rows, cwd=session.cwd)


@router.get("/api/terminals")
async def list_terminals(
    identity: Identity = Depends(get_identity),
    manager: TerminalManager = Depends(get_terminal_manager),
) -> list[TerminalSummary]:
    """List the caller's live terminals, oldest first."""
    return [TerminalSummary(**s.summary()) for s in manager.list_terminals(identity.owner_id)]


@router.delete("/api/terminals/{terminal_id}")
async def close_terminal(
    terminal_id: str,
    identity: Identity = Depends(get_identity),
    manager: TerminalManager = Depends(get_terminal_manager),
) -> OkResponse:
    await manager.close_terminal(terminal_id, identity.owner_id)
    return OkResponse()


@router.post("/api/terminals/{terminal_id}/resize")
async def resize_terminal(
    terminal_id: str,
    body: ResizeRequest,
    identity: Identity = Depends(get_identity),
    manager: TerminalManager = Depends(get_terminal_manager),
) -> ResizeResponse:
    session = await manager.resize_terminal(terminal_id, identity.owner_id, body.cols, body.rows)
    return ResizeResponse(cols=session.cols, rows=session.rows)
