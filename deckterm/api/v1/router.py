from fastapi import APIRouter

from deckterm.api.v1.health import router as health_router
from deckterm.api.v1.terminals import router as terminals_router
from deckterm.api.v1.upstream import router as upstream_router
from deckterm.api.v1.websocket import router as websocket_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(terminals_router, tags=["Terminals"])
v1_router.include_router(websocket_router, tags=["WebSocket"])
v1_router.include_router(upstream_router, tags=["Upstream"])
