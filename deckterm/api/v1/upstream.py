from fastapi import APIRouter, Depends, Request, Response

from deckterm.dependencies import get_upstream_client
from deckterm.services.upstream import UpstreamClient, filter_headers

router = APIRouter()

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

# httpx has already decoded the body
_DECODED_HEADERS = {"content-encoding"}


@router.api_route("/api/upstream/{path:path}", methods=_METHODS)
async def proxy_upstream(
    path: str,
    request: Request,
    client: UpstreamClient = Depends(get_upstream_client),
) -> Response:
    """Forward a request to the companion service.

    Fails fast with 503 while the circuit breaker is open.
    """
    upstream_response = await client.request(
        request.method,
        path,
        params=list(request.query_params.multi_items()),
        content=await request.body(),
        headers=filter_headers(request.headers),
    )
    return Response(
        content=upstream_response.content,
        status_code=upstream_response.status_code,
        headers={
            k: v for k, v in filter_headers(upstream_response.headers).items()
            if k.lower() not in _DECODED_HEADERS
        },
    )
