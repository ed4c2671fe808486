"""Upstream response inspection for diagnostics.

The inspector runs between receiving the upstream response and relaying it
to the client. It never changes status or headers, and the bytes the client
receives are exactly the bytes upstream sent:

  - status < 400: the body is not touched; the raw upstream stream is relayed
    (no decompression, so Content-Encoding stays truthful).
  - status >= 400: the raw body is drained into memory for logging and the
    buffered copy is relayed. A gzip body is decompressed only for the log.
"""

from __future__ import annotations

import gzip
import zlib
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from vertex_proxy.constants import ERROR_STATUS_THRESHOLD
from vertex_proxy.proxy.headers import build_client_response_headers
from vertex_proxy.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RelayResponse:
    """What goes back to the client for one upstream response.

    ``body`` holds the raw bytes when the inspector had to read them;
    otherwise it is None and the upstream raw stream is relayed as-is.
    ``diagnostic`` is the text logged for error bodies (decompressed when
    possible).
    """

    upstream: httpx.Response
    body: Optional[bytes] = None
    diagnostic: Optional[str] = None
    read_error: Optional[str] = None

    @property
    def status_code(self) -> int:
        return self.upstream.status_code

    async def iter_body(self) -> AsyncIterator[bytes]:
        """Yield the body bytes exactly as upstream sent them."""
        if self.body is not None:
            yield self.body
            return
        async for chunk in self.upstream.aiter_raw():
            yield chunk

    def to_response(self) -> Response:
        """Build the Starlette response relayed to the client."""
        if self.body is not None:
            response: Response = Response(
                content=self.body,
                status_code=self.status_code,
                background=BackgroundTask(self.upstream.aclose),
            )
            partial = self.read_error is not None
            if not partial:
                # Upstream's Content-Length is relayed as declared, even when
                # the body is empty (HEAD). Only a cut-short read keeps the
                # length Starlette computed from the buffered bytes.
                response.raw_headers = []
            headers = build_client_response_headers(
                self.upstream.headers, drop_content_length=partial
            )
        else:
            response = StreamingResponse(
                self.iter_body(),
                status_code=self.status_code,
                background=BackgroundTask(self.upstream.aclose),
            )
            headers = build_client_response_headers(self.upstream.headers)

        for name, value in headers:
            response.headers.append(name, value)
        return response


def describe_error_body(raw: bytes, content_encoding: Optional[str]) -> str:
    """Text to log for an error body, gunzipped when declared gzip.

    Falls back to the raw bytes (decoded leniently) when decompression fails.
    """
    if content_encoding and content_encoding.strip().lower() == "gzip":
        try:
            return gzip.decompress(raw).decode("utf-8", errors="replace")
        except (OSError, EOFError, zlib.error) as exc:
            logger.error(
                "Error decompressing gzip error response body",
                error=str(exc),
                detail="Logging raw body.",
            )
    return raw.decode("utf-8", errors="replace")


class ResponseInspector:
    """Reads error responses for diagnostics without changing what the client gets."""

    def __init__(self, error_threshold: int = ERROR_STATUS_THRESHOLD) -> None:
        self.error_threshold = error_threshold

    async def inspect(self, response: httpx.Response) -> RelayResponse:
        logger.debug(
            "Received response from upstream",
            method=response.request.method,
            host=response.request.url.host,
            path=response.request.url.path,
            status=response.status_code,
        )
        if response.headers:
            logger.debug(
                "Upstream response headers",
                headers=dict(response.headers.multi_items()),
            )

        if response.status_code < self.error_threshold:
            return RelayResponse(upstream=response)

        chunks: list[bytes] = []
        read_error: Optional[str] = None
        try:
            async for chunk in response.aiter_raw():
                chunks.append(chunk)
        except httpx.HTTPError as exc:
            read_error = str(exc) or type(exc).__name__
            logger.error(
                "Error reading error response body from upstream",
                error=read_error,
                bytes_read=sum(len(c) for c in chunks),
            )
        finally:
            await response.aclose()
        raw = b"".join(chunks)

        diagnostic = describe_error_body(raw, response.headers.get("content-encoding"))
        logger.debug(
            "upstream_error_body",
            status=response.status_code,
            content_encoding=response.headers.get("content-encoding"),
            body=diagnostic,
        )
        return RelayResponse(
            upstream=response,
            body=raw,
            diagnostic=diagnostic,
            read_error=read_error,
        )
