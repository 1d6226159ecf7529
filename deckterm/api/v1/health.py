import time

from fastapi import APIRouter, Depends, Request

from deckterm.dependencies import get_terminal_manager
from deckterm.schemas.terminals import HealthResponse
from deckterm.services.terminal_manager import TerminalManager

router = APIRouter()


@router.get("/api/health")
async def health_check(
    request: Request,
    manager: TerminalManager = Depends(get_terminal_manager),
) -> HealthResponse:
    """Liveness plus terminal counts. No identity required."""
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return HealthResponse(
        status="ok",
        terminals=manager.registry.count(),
        max_terminals=manager.admission.max_sessions,
        uptime=round(time.monotonic() - started_at, 1),
    )
