"""Async reverse proxy handler for Vertex Proxy.

Forwards every ``/v1/*`` request (except the locally served ``/v1/models``)
to the Vertex AI OpenAI-compatible endpoint:

  inbound request
    → ForwardedRequest.from_request()   (headers filtered, body not yet read)
    → RequestRewriter.rewrite()         (URL, Host, body framing, bearer token)
    → shared httpx.AsyncClient.send()   (stream=True)
    → ResponseInspector.inspect()       (error bodies logged, bytes preserved)
    → client

Failure mode separation:
  - httpx.TransportError (connect refused, DNS, timeout, protocol error) and
    httpx.InvalidURL → HTTP 502 text/plain "Proxy error ...".
  - Request deadline already passed before forwarding → HTTP 502.
  - Upstream HTTP 4xx/5xx → relayed as-is (NOT converted to 502).
  - Token fetch failure → request forwarded without Authorization.
"""

from __future__ import annotations

import uuid
from typing import Optional

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse

from vertex_proxy.config import Config
from vertex_proxy.constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_UPSTREAM_TIMEOUT,
    POOL_KEEPALIVE_EXPIRY,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
)
from vertex_proxy.proxy.inspector import ResponseInspector
from vertex_proxy.proxy.rewriter import ForwardedRequest, RequestRewriter
from vertex_proxy.utils.logger import clear_request_id, get_logger, set_request_id

logger = get_logger(__name__)

router = APIRouter(tags=["proxy"])

PROXY_ERROR_STATUS: int = 502

PROXIED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(
    timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient with connection pooling configured.

    Created once at lifespan startup and stored in app.state.http_client.
    It is NEVER instantiated per-request. ``transport`` replaces the network
    transport (tests pass an httpx.MockTransport).
    """
    client = httpx.AsyncClient(
        transport=transport,
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout, connect=connect_timeout),
        follow_redirects=False,  # pass 3xx through to the client
    )
    # Relay the client's Accept-Encoding verbatim instead of httpx's default.
    del client.headers["accept-encoding"]
    return client


def build_proxy_error_response(error: str) -> PlainTextResponse:
    """502 returned when the request could not be forwarded at all."""
    return PlainTextResponse(
        f"Proxy error connecting to upstream service: {error}",
        status_code=PROXY_ERROR_STATUS,
    )


# ─── Proxy handler ────────────────────────────────────────────────────────────


@router.api_route("/v1/{path:path}", methods=PROXIED_METHODS)
async def proxy_handler(request: Request, path: str) -> Response:
    """Forward one ``/v1/*`` request upstream and relay the answer."""
    request_id = uuid.uuid4().hex
    set_request_id(request_id)
    try:
        return await _forward(request)
    finally:
        clear_request_id()


async def _forward(request: Request) -> Response:
    config: Config = request.app.state.config
    http_client: httpx.AsyncClient = request.app.state.http_client
    rewriter: RequestRewriter = request.app.state.rewriter
    inspector: ResponseInspector = request.app.state.inspector

    logger.debug(
        "Processing request",
        method=request.method,
        path=request.url.path,
        remote_addr=request.client.host if request.client else None,
    )

    forwarded = ForwardedRequest.from_request(request, timeout=config.upstream.timeout)
    await rewriter.rewrite(forwarded)

    remaining: Optional[float] = forwarded.remaining()
    if remaining is not None and remaining <= 0:
        logger.error(
            "proxy_error",
            method=forwarded.method,
            target_url=str(forwarded.url),
            error="deadline exceeded before forwarding",
        )
        return build_proxy_error_response("deadline exceeded before forwarding")

    try:
        upstream_request = http_client.build_request(
            method=forwarded.method,
            url=forwarded.url,
            headers=forwarded.headers,
            content=forwarded.body,
            timeout=_request_timeout(http_client, remaining),
        )
        upstream_response = await http_client.send(upstream_request, stream=True)
    except (httpx.TransportError, httpx.InvalidURL) as exc:
        error = str(exc) or type(exc).__name__
        logger.error(
            "proxy_error",
            method=forwarded.method,
            target_url=str(forwarded.url),
            error_type=type(exc).__name__,
            error=error,
        )
        return build_proxy_error_response(error)

    logger.info(
        "request_proxied",
        method=forwarded.method,
        path=forwarded.original_path,
        upstream_path=forwarded.url.path,
        status_code=upstream_response.status_code,
        authorized=forwarded.authorized,
    )

    relay = await inspector.inspect(upstream_response)
    return relay.to_response()


def _request_timeout(
    http_client: httpx.AsyncClient, remaining: Optional[float]
) -> httpx.Timeout:
    """Client timeouts, each capped by what is left of the request budget."""
    base = http_client.timeout
    if remaining is None:
        return base

    def cap(value: Optional[float]) -> float:
        return remaining if value is None else min(value, remaining)

    return httpx.Timeout(
        connect=cap(base.connect),
        read=cap(base.read),
        write=cap(base.write),
        pool=cap(base.pool),
    )
