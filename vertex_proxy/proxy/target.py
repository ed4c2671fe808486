"""Upstream resource root the proxy forwards to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx


@dataclass(frozen=True)
class ProxyTarget:
    """Immutable base URL of the upstream resource.

    Built once at startup (see ``build_proxy_target`` in config.py) and
    shared read-only by every request.
    """

    scheme: str
    host: str
    port: Optional[int]
    path: str

    @classmethod
    def from_url(cls, url: str) -> "ProxyTarget":
        """Parse a base URL such as
        ``https://us-central1-aiplatform.googleapis.com/v1/projects/p/locations/l/endpoints/openapi``.

        Raises:
            ValueError: If the URL is not absolute http(s).
        """
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise ValueError(str(exc)) from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError("upstream URL must be an absolute http(s) URL")
        return cls(
            scheme=parsed.scheme,
            host=parsed.host,
            port=parsed.port,
            path=parsed.path.rstrip("/"),
        )

    @property
    def netloc(self) -> str:
        """Host header value for upstream requests."""
        if self.port is None:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.netloc}{self.path}"
