"""Root test configuration for Vertex Proxy.

Every test starts from a clean configuration environment: the variables the
proxy reads are removed and the default config search paths are emptied, so
a developer's real ~/.vertex-proxy/config.yaml or exported VERTEXAI_* values
never leak into the suite.
"""

from collections.abc import Iterator
from pathlib import Path

import pytest

from vertex_proxy.utils.logger import configure_logging

_CONFIG_ENV_VARS = (
    "VERTEXAI_PROJECT",
    "VERTEXAI_LOCATION",
    "VERTEXAI_API_HOST_FORMAT",
    "VERTEXAI_AVAILABLE_MODELS",
    "VERTEX_PROXY_CONFIG",
    "HOST",
    "PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def isolate_config_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Iterator[None]:
    """Clear config env vars and point the file search away from the developer's home."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("vertex_proxy.config.DEFAULT_CONFIG_PATHS", [])
    yield
    # Re-bind structlog to the current stdout: a test that configured logging
    # under capsys leaves it pointing at a stream that is closed afterwards.
    configure_logging()
