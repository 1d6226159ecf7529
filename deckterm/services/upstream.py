import asyncio

import httpx
import structlog

from deckterm.core.exceptions import UpstreamUnavailableError
from deckterm.services.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()

# Hop-by-hop headers are meaningful for a single connection only
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


def filter_headers(headers) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


class UpstreamClient:
    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker or CircuitBreaker()
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=60.0, write=5.0, pool=5.0)
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params=None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Forward one request upstream.

        Connection errors, timeouts and 5xx responses count as breaker
        failures. While the breaker is open this raises immediately.
        """
        self.breaker.before_call()
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self._client.request(method, url, params=params, content=content, headers=headers)
        except asyncio.CancelledError:
            self.breaker.release_trial()
            raise
        except httpx.TimeoutException:
            self.breaker.record_failure()
            raise UpstreamUnavailableError("Upstream request timed out.", retry_after=self._retry_hint())
        except httpx.TransportError as exc:
            self.breaker.record_failure()
            raise UpstreamUnavailableError(
                f"Cannot connect to upstream at {self.base_url}: {exc}",
                retry_after=self._retry_hint(),
            )

        if response.status_code >= 500:
            self.breaker.record_failure()
            logger.warning("upstream_error_response", path=path, status=response.status_code)
        else:
            self.breaker.record_success()
        return response

    def _retry_hint(self) -> float | None:
        return self.breaker.retry_after() if self.breaker.is_open else None

    async def close(self) -> None:
        await self._client.aclose()
