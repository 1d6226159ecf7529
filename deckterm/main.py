import time
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deckterm.api.v1.router import v1_router
from deckterm.config import settings
from deckterm.core.exceptions import DecktermError, deckterm_error_handler
from deckterm.core.middleware import IdentityMiddleware, RequestLoggingMiddleware
from deckterm.services.circuit_breaker import CircuitBreaker
from deckterm.services.terminal_manager import TerminalManager
from deckterm.services.upstream import UpstreamClient

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.deckterm_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    app.state.started_at = time.monotonic()

    # Persisted sessions are registered before the first request is served
    manager = TerminalManager.from_settings(settings)
    await manager.start()
    app.state.terminal_manager = manager

    upstream = None
    if settings.deckterm_upstream_url:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.deckterm_http_connect_timeout,
                read=settings.deckterm_http_read_timeout,
                write=5.0,
                pool=5.0,
            )
        )
        upstream = UpstreamClient(
            base_url=settings.deckterm_upstream_url,
            http_client=http_client,
            breaker=CircuitBreaker(
                threshold=settings.deckterm_upstream_failure_threshold,
                reset_timeout=settings.deckterm_upstream_reset_timeout,
            ),
        )
    app.state.upstream_client = upstream

    logger.info(
        "deckterm_starting",
        host=settings.deckterm_host,
        port=settings.deckterm_port,
        persistence=manager.registry.backend is not None,
        recovered=manager.registry.count(),
        upstream_url=settings.deckterm_upstream_url,
    )
    yield

    await manager.stop()
    if upstream is not None:
        await upstream.close()
    logger.info("deckterm_stopping")


app = FastAPI(
    title="deckterm",
    description="Browser-attached, PTY-backed terminal sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# Exception handler
app.add_exception_handler(DecktermError, deckterm_error_handler)

# Identity resolution reads settings from here for HTTP and WebSocket alike
app.state.settings = settings

# Middleware (Starlette: last-added = outermost. Execution order top to bottom.)
# 1. RequestLogging (outermost): logs all requests including identity rejections
# 2. CORS: handles preflight before the identity check
# 3. Identity: trusted proxy headers (innermost)
app.add_middleware(IdentityMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.deckterm_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "deckterm", "version": "0.1.0"}
