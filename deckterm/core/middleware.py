import time
from dataclasses import dataclass

import structlog
from fastapi import Request, Response
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from deckterm.config import Settings, settings as default_settings
from deckterm.core.exceptions import AuthenticationError

logger = structlog.get_logger()

# Paths that skip the identity check
PUBLIC_PATHS = {"/", "/api/health", "/docs", "/openapi.json", "/redoc"}


@dataclass(frozen=True)
class Identity:
    owner_id: str
    owner_email: str


def app_settings(app) -> Settings:
    """Settings the app was started with; HTTP and WebSocket routes both read these."""
    return getattr(app.state, "settings", None) or default_settings


def resolve_identity(headers: Headers, settings: Settings = default_settings) -> Identity | None:
    """Read the identity the fronting proxy put in the request headers.

    The user header value is the owner id verbatim. Falls back to the
    configured local identity when auth is not required. Returns None when
    auth is required and no user header is present.
    """
    user = headers.get(settings.deckterm_auth_user_header, "").strip()
    email = headers.get(settings.deckterm_auth_email_header, "").strip()

    if user:
        return Identity(owner_id=user, owner_email=email or user)

    if settings.deckterm_auth_required:
        return None
    return Identity(
        owner_id=settings.deckterm_local_owner_id,
        owner_email=email or settings.deckterm_local_owner_email,
    )


class IdentityMiddleware(BaseHTTPMiddleware):
    """Attaches the caller's identity to ``request.state`` on every request
    except public paths. WebSocket handshakes resolve identity in the route.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in PUBLIC_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        identity = resolve_identity(request.headers, app_settings(request.app))
        if identity is None:
            error = AuthenticationError()
            return JSONResponse(status_code=error.status, content=error.to_dict())

        request.state.identity = identity
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request as structured JSON."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - start) * 1000, 1)

        identity = getattr(request.state, "identity", None)

        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=latency_ms,
            owner_id=identity.owner_id if identity else None,
        )
        return response
