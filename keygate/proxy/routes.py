"""
Proxy Routes - Upstream Request Forwarding
==========================================

This module implements the catch-all proxy endpoint that forwards authorized
requests to the fixed upstream server and streams the answer back.

Forwarding Model:
-----------------
1. require_api_key validates the Bearer key before anything else happens
2. Method, raw path, query string and headers are copied verbatim
   (Authorization included, no hop-by-hop stripping, no X-Forwarded-*)
3. The request body is streamed upstream chunk by chunk as it arrives
4. Upstream status, raw header list and body are streamed back as they arrive
5. An upstream failure before the response starts becomes 500 "Proxy Error";
   a failure mid-stream aborts the connection to the caller

Endpoints:
----------
- /{path:path}: every path, every method (standard or not)
"""

import logging
from typing import AsyncIterator, List, Tuple

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, StreamingResponse
from fastapi.routing import APIRoute
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.routing import Match
from starlette.types import Receive, Scope, Send

from ..auth.keys import require_api_key
from ..config import Settings

logger = logging.getLogger(__name__)

# Methods the route declares; AnyMethodRoute also dispatches every other method
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

PROXY_ERROR_DETAIL = "Proxy Error"


class UpstreamStreamError(Exception):
    """The upstream connection failed after the response to the caller started"""
    pass


class AnyMethodRoute(APIRoute):
    """
    APIRoute that dispatches every HTTP method, declared or not.

    A plain APIRoute answers undeclared methods (PROPFIND, PURGE, ...) with
    405 before its dependencies run, which would skip the key check and never
    forward the request.
    """

    def matches(self, scope: Scope):
        match, child_scope = super().matches(scope)
        if match == Match.PARTIAL:
            match = Match.FULL
        return match, child_scope

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


# Create router
proxy_router = APIRouter(route_class=AnyMethodRoute)


# ============================================================================
# Dependencies
# ============================================================================

def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Dependency to get the upstream HTTP client from app state.

    Returns:
        httpx.AsyncClient opened by the application lifespan

    Raises:
        HTTPException: If the lifespan has not opened the client
    """
    client = getattr(request.app.state, "upstream_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not initialized",
        )

    return client


# ============================================================================
# Request Building
# ============================================================================

def build_upstream_url(settings: Settings, request: Request) -> str:
    """
    Build the upstream URL from the raw, still percent-encoded request target.

    Args:
        settings: Application settings holding the upstream host and port
        request: Inbound request

    Returns:
        Absolute upstream URL including the original query string
    """
    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    # some servers leave the query attached to raw_path
    raw_path = raw_path.partition(b"?")[0]
    target = raw_path.decode("latin-1")

    query_string = request.scope.get("query_string", b"")
    if query_string:
        target = f"{target}?{query_string.decode('latin-1')}"

    return settings.target_base_url + target


def has_request_body(request: Request) -> bool:
    """A request carries a body only when it announces one via framing headers."""
    return "content-length" in request.headers or "transfer-encoding" in request.headers


def build_response_headers(upstream_response: httpx.Response) -> List[Tuple[bytes, bytes]]:
    """
    Copy the upstream header list as raw ASGI pairs.

    Repeated headers such as Set-Cookie are kept as separate entries.
    """
    return [(name.lower(), value) for name, value in upstream_response.headers.raw]


# ============================================================================
# Body Relay
# ============================================================================

async def relay_upstream_body(
    upstream_response: httpx.Response,
    method: str,
    path: str,
) -> AsyncIterator[bytes]:
    """
    Yield the upstream body as it arrives, without decoding it.

    A transport failure here happens after the status line went out to the
    caller, so it is logged once and re-raised as UpstreamStreamError for the
    server to drop the connection.
    """
    try:
        async for chunk in upstream_response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.error(
            f"Upstream stream failed mid-response for {method} {path}: {e!r}",
            extra={"method": method, "path": path},
        )
        raise UpstreamStreamError(f"{method} {path}: {e!r}") from e
    finally:
        await upstream_response.aclose()


# ============================================================================
# Proxy Endpoint
# ============================================================================

@proxy_router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_request(
    request: Request,
    api_key: str = Depends(require_api_key),
    upstream_client: httpx.AsyncClient = Depends(get_upstream_client),
):
    """
    Forward an authorized request to the upstream server.

    Flow:
    1. Validate Bearer key (done by dependency)
    2. Build the outbound request with the same method, target and headers
    3. Stream the inbound body upstream
    4. Stream upstream status, headers and body back to the caller

    Returns:
        StreamingResponse relaying the upstream response, or a plain-text
        500 "Proxy Error" if the upstream could not be reached
    """
    settings: Settings = request.app.state.settings
    method = request.method
    path = request.url.path

    logger.debug(
        f"Forwarding {method} {path} to {settings.target_base_url}",
        extra={"method": method, "path": path},
    )

    try:
        # httpx.Request rather than client.build_request: the client's default
        # headers (User-Agent, Accept, ...) must not be merged in.
        upstream_request = httpx.Request(
            method,
            build_upstream_url(settings, request),
            headers=request.headers.raw,
            content=request.stream() if has_request_body(request) else None,
            extensions={"timeout": upstream_client.timeout.as_dict()},
        )
        upstream_response = await upstream_client.send(upstream_request, stream=True)

    except httpx.HTTPError as e:
        logger.error(
            f"Proxy request error for {method} {path}: {e!r}",
            extra={"method": method, "path": path, "target": settings.target_base_url},
        )
        return PlainTextResponse(PROXY_ERROR_DETAIL, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    except ClientDisconnect:
        logger.warning(
            f"Client disconnected while sending {method} {path}",
            extra={"method": method, "path": path},
        )
        return PlainTextResponse(PROXY_ERROR_DETAIL, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    except Exception as e:
        logger.error(
            f"Unexpected error forwarding {method} {path}: {e}",
            exc_info=True,
            extra={"method": method, "path": path},
        )
        return PlainTextResponse(PROXY_ERROR_DETAIL, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    logger.info(
        f"{method} {path} -> {upstream_response.status_code}",
        extra={"method": method, "path": path, "status_code": upstream_response.status_code},
    )

    response = StreamingResponse(
        relay_upstream_body(upstream_response, method, path),
        status_code=upstream_response.status_code or status.HTTP_200_OK,
        background=BackgroundTask(upstream_response.aclose),
    )
    response.raw_headers = build_response_headers(upstream_response)
    return response
