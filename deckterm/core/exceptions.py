from fastapi import Request
from fastapi.responses import JSONResponse


class DecktermError(Exception):
    """Base exception for deckterm API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class AuthenticationError(DecktermError):
    def __init__(self, message: str = "Missing authenticated identity.", details: dict | None = None):
        super().__init__(code="authentication_required", message=message, status=401, details=details)


class ForbiddenError(DecktermError):
    def __init__(self, message: str = "Terminal belongs to another owner.", details: dict | None = None):
        super().__init__(code="forbidden", message=message, status=403, details=details)


class NotFoundError(DecktermError):
    def __init__(self, message: str = "Terminal not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class QuotaExceededError(DecktermError):
    """Creation rejected by the admission controller.

    ``details["limit"]`` names the limit that was hit so callers can tell
    throttling (``rate_limited``) apart from capacity exhaustion.
    """

    def __init__(self, limit: str, message: str, details: dict | None = None):
        super().__init__(
            code="quota_exceeded",
            message=message,
            status=429,
            details={"limit": limit, **(details or {})},
        )

    @property
    def limit(self) -> str:
        return self.details["limit"]


class SpawnFailure(DecktermError):
    def __init__(self, message: str = "Failed to start terminal process.", details: dict | None = None):
        super().__init__(code="spawn_failed", message=message, status=500, details=details)


class UpstreamUnavailableError(DecktermError):
    def __init__(
        self,
        message: str = "Upstream service is temporarily unavailable.",
        retry_after: float | None = None,
        details: dict | None = None,
    ):
        merged = dict(details or {})
        if retry_after is not None:
            merged["retry_after"] = round(max(retry_after, 0.0), 3)
        super().__init__(code="upstream_unavailable", message=message, status=503, details=merged)

    @property
    def retry_after(self) -> float | None:
        return self.details.get("retry_after")


class TransportClosed(Exception):
    """A send on a subscriber channel failed. Never fatal to the session."""


async def deckterm_error_handler(request: Request, exc: DecktermError) -> JSONResponse:
    """Global exception handler for DecktermError and subclasses."""
    headers = None
    if isinstance(exc, UpstreamUnavailableError) and exc.retry_after is not None:
        headers = {"Retry-After": str(max(1, int(round(exc.retry_after))))}
    return JSONResponse(status_code=exc.status, content=exc.to_dict(), headers=headers)
