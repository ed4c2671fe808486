"""HTTP header rules for the Vertex proxy.

  - build_upstream_headers(): strips hop-by-hop headers and the client's own
    Authorization header; everything else is forwarded unchanged. The rewriter
    sets Host, Content-Length and Authorization afterwards.

  - build_client_response_headers(): strips hop-by-hop headers from the
    upstream response; everything else (content-type, content-encoding,
    rate-limit headers) is relayed unchanged.

RFC 7230 §6.1: hop-by-hop headers MUST NOT be forwarded by intermediaries.
"""

from __future__ import annotations

from typing import Iterable

import httpx

HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Recomputed for the upstream request: host comes from the target, the
# length from whatever body the rewriter settles on.
_REQUEST_ONLY_STRIP: frozenset[str] = frozenset({"host", "content-length"})

# The client's key is meaningless upstream; the proxy supplies its own token.
_CLIENT_AUTH_HEADER: str = "authorization"


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
) -> httpx.Headers:
    """Build the headers to send upstream from the inbound request headers.

    Args:
        request_headers: Iterable of (name, value) tuples, typically
                         ``request.headers.items()``.

    Returns:
        A case-insensitive ``httpx.Headers`` the rewriter can amend in place.
    """
    forwarded: list[tuple[str, str]] = []
    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in HOP_BY_HOP_HEADERS or lower_name in _REQUEST_ONLY_STRIP:
            continue
        if lower_name == _CLIENT_AUTH_HEADER:
            continue
        forwarded.append((name, value))
    return httpx.Headers(forwarded)


def build_client_response_headers(
    upstream_headers: httpx.Headers,
    drop_content_length: bool = False,
) -> list[tuple[str, str]]:
    """Build the response headers relayed to the client.

    Repeated headers (e.g. several ``set-cookie``) are preserved, which is
    why a list of pairs is returned rather than a dict.

    Args:
        upstream_headers: ``httpx.Response.headers`` from upstream.
        drop_content_length: Set when the relayed body may differ in length
                             from what upstream declared (partial read), so
                             the server recomputes it.
    """
    headers: list[tuple[str, str]] = []
    for name, value in upstream_headers.multi_items():
        lower_name = name.lower()
        if lower_name in HOP_BY_HOP_HEADERS:
            continue
        if drop_content_length and lower_name == "content-length":
            continue
        headers.append((name, value))
    return headers
