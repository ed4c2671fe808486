"""Programmatic uvicorn entry point for Vertex Proxy.

Reads host and port from the loaded config (0.0.0.0:8080 by default, or the
HOST / PORT environment variables) and starts uvicorn.

Usage:
    python -m vertex_proxy.run
    vertex-proxy                 # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from vertex_proxy.config import load_config

# Keep-alive for idle client connections, in seconds.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5

# Matches the upstream connection pool (POOL_MAX_CONNECTIONS).
UVICORN_LIMIT_CONCURRENCY: int = 100


def main() -> None:
    """Start the Vertex Proxy server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "vertex_proxy.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    main()
