from fastapi import Request

from deckterm.core.exceptions import AuthenticationError, DecktermError
from deckterm.core.middleware import Identity
from deckterm.services.terminal_manager import TerminalManager
from deckterm.services.upstream import UpstreamClient


def get_terminal_manager(request: Request) -> TerminalManager:
    """Return the terminal manager stored on app state during lifespan."""
    return request.app.state.terminal_manager


def get_identity(request: Request) -> Identity:
    """Return the identity IdentityMiddleware attached to the request."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationError()
    return identity


def get_upstream_client(request: Request) -> UpstreamClient:
    client = getattr(request.app.state, "upstream_client", None)
    if client is None:
        raise DecktermError(
            code="upstream_not_configured",
            message="No upstream service is configured.",
            status=404,
        )
    return client
