"""Maps an inbound OpenAI-style request onto the Vertex AI resource.

ForwardedRequest is the per-request, mutable description of what will be
sent upstream. RequestRewriter.rewrite() edits it in place:

  - scheme/host/port from the ProxyTarget; Host header set to the target
  - path: ``/v1/<rest>`` becomes ``<target.path>/<rest>``; any other path is
    appended whole (logged as a warning, not rejected)
  - body: /v1/chat/completions is buffered and re-exposed as bytes with a
    matching Content-Length; other paths stream through
  - Authorization: Bearer token from the TokenCache, or no header at all
    when the token cannot be obtained (upstream then answers 401/403)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Union

import httpx
from starlette.requests import ClientDisconnect, Request

from vertex_proxy.auth.credentials import CredentialError
from vertex_proxy.auth.token_cache import TokenCache
from vertex_proxy.constants import CHAT_COMPLETIONS_PATH, ROUTE_PREFIX
from vertex_proxy.proxy.headers import build_upstream_headers
from vertex_proxy.proxy.target import ProxyTarget
from vertex_proxy.utils.logger import get_logger

logger = get_logger(__name__)

Body = Union[bytes, AsyncIterator[bytes], None]


@dataclass
class ForwardedRequest:
    """In-flight representation of one client request on its way upstream.

    ``body`` is ``bytes`` once buffered, an async byte iterator while it is
    still the client's stream, or ``None`` for requests without a body.
    ``deadline`` is an absolute ``loop.time()`` value, or None for no bound.
    """

    method: str
    url: httpx.URL
    headers: httpx.Headers
    original_path: str
    body: Body = None
    deadline: Optional[float] = None
    authorized: bool = field(default=False, init=False)

    @classmethod
    def from_request(
        cls,
        request: Request,
        timeout: Optional[float] = None,
    ) -> "ForwardedRequest":
        """Capture a Starlette request without reading its body."""
        headers = build_upstream_headers(request.headers.items())
        body: Body = None
        if _has_body(request):
            body = request.stream()
            content_length = request.headers.get("content-length")
            if content_length is not None:
                # Keep the declared length so the streamed body is not re-chunked.
                headers["Content-Length"] = content_length

        deadline = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().time() + timeout

        return cls(
            method=request.method,
            url=httpx.URL(str(request.url)),
            headers=headers,
            original_path=request.url.path,
            body=body,
            deadline=deadline,
        )

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (negative once passed)."""
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()


def _has_body(request: Request) -> bool:
    headers = request.headers
    if "transfer-encoding" in headers:
        return True
    content_length = headers.get("content-length")
    return content_length is not None and content_length != "0"


def map_path(target_path: str, original_path: str) -> str:
    """Compute the upstream path for an inbound path.

    ``/v1/models`` with target path ``/v1/projects/p/.../openapi`` becomes
    ``/v1/projects/p/.../openapi/models``.
    """
    if original_path.startswith(ROUTE_PREFIX + "/"):
        return target_path + original_path[len(ROUTE_PREFIX):]
    # Outside the routing prefix: concatenate anyway rather than reject.
    logger.warning("Path does not start with routing prefix", path=original_path, prefix=ROUTE_PREFIX + "/")
    return target_path + original_path


async def read_body(stream: AsyncIterator[bytes]) -> tuple[bytes, Optional[BaseException]]:
    """Drain ``stream`` into memory.

    Returns the bytes read and the error that interrupted the read, if any.
    On error the bytes captured before the failure are still returned.
    """
    chunks: list[bytes] = []
    try:
        async for chunk in stream:
            chunks.append(chunk)
    except (ClientDisconnect, OSError, httpx.StreamError) as exc:
        return b"".join(chunks), exc
    return b"".join(chunks), None


class RequestRewriter:
    """Rewrites ForwardedRequests onto a fixed ProxyTarget."""

    def __init__(self, target: ProxyTarget, token_cache: TokenCache) -> None:
        self.target = target
        self.token_cache = token_cache

    async def rewrite(self, forwarded: ForwardedRequest) -> None:
        """Apply the forwarding decision to ``forwarded`` in place."""
        original_path = forwarded.original_path
        logger.debug(
            "Processing request",
            method=forwarded.method,
            path=original_path,
        )

        if original_path == CHAT_COMPLETIONS_PATH:
            await self._buffer_body(forwarded)

        new_path = map_path(self.target.path, original_path)
        forwarded.url = forwarded.url.copy_with(
            scheme=self.target.scheme,
            host=self.target.host,
            port=self.target.port,
            path=new_path,
        )
        forwarded.headers["Host"] = self.target.netloc
        logger.debug(
            "path_rewritten",
            original_path=original_path,
            new_target_path=new_path,
            url=str(forwarded.url),
        )

        await self._authorize(forwarded)

    async def _buffer_body(self, forwarded: ForwardedRequest) -> None:
        body = forwarded.body
        if body is None or isinstance(body, bytes):
            return

        data, error = await read_body(body)
        if error is not None:
            logger.error(
                "Error reading request body",
                path=forwarded.original_path,
                bytes_read=len(data),
                error=str(error) or type(error).__name__,
            )
        else:
            logger.debug(
                "Passing original request body",
                path=forwarded.original_path,
                content_length=len(data),
            )
        forwarded.body = data
        forwarded.headers["Content-Length"] = str(len(data))

    async def _authorize(self, forwarded: ForwardedRequest) -> None:
        try:
            token = await self.token_cache.get_token(timeout=forwarded.remaining())
        except CredentialError as exc:
            # Forward without credentials; upstream's auth error reaches the client.
            logger.error(
                "Error getting token for request",
                path=forwarded.original_path,
                error=str(exc),
            )
            return
        forwarded.headers["Authorization"] = f"Bearer {token}"
        forwarded.authorized = True
        logger.debug("token_attached", path=forwarded.url.path)
