"""
FastAPI Proxy Application Factory
=================================

This is the main entry point for the keygate proxy that sits between API
clients and a single upstream HTTP server.

Architecture:
    Clients → keygate (Bearer key check) → Upstream (TARGET_HOST:TARGET_PORT)

Routes:
    - /{path:path} : every path and method, forwarded after the key check

Environment Variables:
    - API_KEY or API_KEYS: accepted key, or comma-separated accepted keys (required)
    - TARGET_HOST: upstream host (default: localhost)
    - TARGET_PORT: upstream port (default: 11434)
    - HOST / PORT: listening interface and port (default: 0.0.0.0 / 8080)
    - UPSTREAM_CONNECT_TIMEOUT / UPSTREAM_READ_TIMEOUT / UPSTREAM_WRITE_TIMEOUT
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    keygate
    python -m keygate
    uvicorn keygate.main:create_app --factory --host 0.0.0.0 --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import ConfigurationError, Settings, get_settings
from .proxy import proxy_router
from .proxy.routes import UpstreamStreamError

logger = logging.getLogger("keygate.main")


def is_relay_failure(exc: BaseException) -> bool:
    """
    True for mid-stream upstream failures, which the forwarder has already
    logged. Task groups may wrap them in an exception group.
    """
    if isinstance(exc, UpstreamStreamError):
        return True
    nested = getattr(exc, "exceptions", None)
    return bool(nested) and all(is_relay_failure(inner) for inner in nested)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Setup logging
        - Open the upstream HTTP client

    Shutdown tasks:
        - Close the upstream HTTP client and its connections
    """
    settings: Settings = app.state.settings

    setup_logging(settings.LOG_LEVEL)

    app.state.upstream_client = httpx.AsyncClient(
        timeout=settings.upstream_timeout,
        transport=app.state.upstream_transport,
        follow_redirects=False,
        trust_env=False,
    )

    logger.info(
        f"Proxy server running on port {settings.PORT}, "
        f"forwarding to {settings.TARGET_HOST}:{settings.TARGET_PORT}",
        extra={
            "auth_mode": settings.auth_mode,
            "accepted_keys": len(settings.accepted_keys),
        },
    )

    yield

    logger.info("Shutting down proxy server")
    await app.state.upstream_client.aclose()
    app.state.upstream_client = None


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Validated settings; read from the environment when omitted
        transport: Optional httpx transport for the upstream client

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If settings are omitted and the environment is invalid
    """
    if settings is None:
        settings = get_settings()

    # docs routes would shadow proxied paths
    app = FastAPI(
        title="keygate",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.upstream_transport = transport
    app.state.upstream_client = None

    app.include_router(proxy_router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        """Render HTTP errors (401 rejections included) as plain text."""
        return PlainTextResponse(
            str(exc.detail),
            status_code=exc.status_code,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        if is_relay_failure(exc):
            # response already started, nothing more can be sent
            return PlainTextResponse("Proxy Error", status_code=500)

        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    return app


def main() -> None:
    """
    Console entry point.

    Exits with status 1 before binding the listening socket when the
    configuration is invalid (for instance no API key is set).
    """
    try:
        settings = get_settings()
    except ConfigurationError as e:
        setup_logging()
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
