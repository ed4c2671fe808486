"""Vertex Proxy FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app(): testable application factory
  - lifespan: @asynccontextmanager startup/shutdown sequence
  - /health router: delegated to vertex_proxy/health.py
  - /v1/models router: delegated to vertex_proxy/catalog.py
  - / route: service discovery root (inline)
  - app = create_app(): module-level instance for uvicorn

Startup sequence:
  1. load_config()                 → app.state.config
  2. configure_logging()           → level/format from the loaded config
  3. build_proxy_target()          → immutable upstream base URL
                                     (SystemExit without project/location)
  4. TokenCache(provider)          → app.state.token_cache
  5. create_http_client()          → app.state.http_client
  6. RequestRewriter / ResponseInspector → app.state.rewriter / .inspector
  7. app.state.ready = True

Shutdown (reverse):
  app.state.ready = False → cancel in-flight token fetch → close shared HTTP client
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter

from vertex_proxy.auth.credentials import CredentialProvider, GoogleCredentialProvider
from vertex_proxy.auth.token_cache import TokenCache
from vertex_proxy.catalog import router as catalog_router
from vertex_proxy.config import Config, build_proxy_target, load_config
from vertex_proxy.health import STARTING_DETAIL
from vertex_proxy.health import router as health_router
from vertex_proxy.proxy.engine import create_http_client
from vertex_proxy.proxy.engine import router as engine_router
from vertex_proxy.proxy.inspector import ResponseInspector
from vertex_proxy.proxy.rewriter import RequestRewriter
from vertex_proxy.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Environment-only settings until the lifespan has read the config file.
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "info"),
    json_output=os.getenv("LOG_FORMAT", "text").lower() == "json",
)
logger = get_logger(__name__)


root_router = APIRouter(tags=["root"])


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True.

    The proxy and model-listing routes consume this dependency; /health
    handles the 503 case itself.
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail=STARTING_DETAIL)


def create_credential_provider() -> CredentialProvider:
    """Credential source used by the token cache (tests substitute a fake)."""
    return GoogleCredentialProvider()


# ─── Root Endpoint ────────────────────────────────────────────────────────────


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint: service identity / discovery."""
    return {
        "service": "Vertex Proxy",
        "description": "OpenAI-compatible proxy for Vertex AI",
        "health": "/health",
        "models": "/v1/models",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown sequence.

    load_config() and build_proxy_target() raise SystemExit on invalid
    configuration, so the process exits non-zero before ready=True is set.
    """
    logger.info("Vertex Proxy starting up...")

    config: Config = load_config()
    app.state.config = config
    configure_logging(
        log_level=config.logging.level,
        json_output=config.logging.format == "json",
    )

    target = build_proxy_target(config)

    token_cache = TokenCache(create_credential_provider())
    app.state.token_cache = token_cache

    http_client: httpx.AsyncClient = create_http_client(
        timeout=config.upstream.timeout,
        connect_timeout=config.upstream.connect_timeout,
    )
    app.state.http_client = http_client
    logger.info(
        "HTTP proxy client created",
        timeout_s=config.upstream.timeout,
        connect_timeout_s=config.upstream.connect_timeout,
    )

    app.state.rewriter = RequestRewriter(target, token_cache)
    app.state.inspector = ResponseInspector()

    app.state.ready = True
    logger.info(
        "Vertex Proxy ready",
        target=target.url,
        project=config.vertex.project,
        location=config.vertex.location,
        models=config.models.available,
    )

    yield

    logger.info("Vertex Proxy shutting down...")
    app.state.ready = False
    await token_cache.aclose()

    try:
        await http_client.aclose()
        logger.info("HTTP proxy client closed")
    except Exception as exc:
        logger.warning("HTTP proxy client close error (non-fatal)", error=str(exc))

    logger.info("Vertex Proxy shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the Vertex Proxy FastAPI application.

    Call this function directly in tests to get an isolated app instance.
    The module-level `app` is created at import time for uvicorn:
        uvicorn vertex_proxy.main:app --host 0.0.0.0 --port 8080
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Vertex Proxy",
        description="OpenAI-compatible reverse proxy for Vertex AI with cached Google credentials",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health answers 503 on anything arriving before startup completes.
    application.state.ready = False

    application.include_router(root_router)
    application.include_router(health_router)
    # Must precede the catch-all so GET /v1/models is answered locally.
    application.include_router(catalog_router, dependencies=[Depends(require_ready)])
    application.include_router(engine_router, dependencies=[Depends(require_ready)])

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
