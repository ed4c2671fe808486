"""Config loading for Vertex Proxy.

Reads `.vertex-proxy/config.yaml` (or `~/.vertex-proxy/config.yaml`), then
applies environment variable overrides. The environment alone is enough to
run the proxy; the YAML file is optional.

Config search order:
  1. `config_path` argument (if provided, for testing or explicit override)
  2. VERTEX_PROXY_CONFIG environment variable (if set)
  3. `.vertex-proxy/config.yaml` (working directory)
  4. `~/.vertex-proxy/config.yaml` (home directory)

Environment variable overrides (always win over the file):
  VERTEXAI_PROJECT          → vertex.project
  VERTEXAI_LOCATION         → vertex.location
  VERTEXAI_API_HOST_FORMAT  → vertex.api_host_format
  VERTEXAI_AVAILABLE_MODELS → models.available (comma separated)
  HOST / PORT               → proxy.host / proxy.port
  LOG_LEVEL / LOG_FORMAT    → logging.level / logging.format

The proxy cannot operate without a project and a location, so
validate_required() raises SystemExit(1) when either is missing.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional

import yaml

from vertex_proxy.constants import (
    DEFAULT_API_HOST_FORMAT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_MODEL_IDS,
    DEFAULT_UPSTREAM_TIMEOUT,
    VERTEX_OPENAPI_PATH_FORMAT,
)
from vertex_proxy.proxy.target import ProxyTarget
from vertex_proxy.utils.logger import LOG_FORMATS, LOG_LEVELS, get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (VERTEX_PROXY_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".vertex-proxy/config.yaml",
    os.path.expanduser("~/.vertex-proxy/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class VertexConfig:
    """Vertex AI resource the proxy forwards to.

    api_host_format: host template; ``{location}`` (or the legacy ``%s``)
                     is replaced by the location.
    """

    project: Optional[str] = None
    location: Optional[str] = None
    api_host_format: str = DEFAULT_API_HOST_FORMAT


@dataclass
class UpstreamConfig:
    """Upstream HTTP behaviour.

    base_url: explicit upstream base URL; when set it replaces the URL
              derived from the Vertex project/location (local testing).
    timeout:  per-request budget in seconds (token fetch + forwarding).
    """

    base_url: Optional[str] = None
    timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT


@dataclass
class ProxyConfig:
    """Proxy binding configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "text"  # "text" | "json"


@dataclass
class ModelsConfig:
    """Model ids served by GET /v1/models."""

    available: list[str] = field(default_factory=lambda: list(DEFAULT_MODEL_IDS))


@dataclass
class Config:
    """Root configuration object.

    All fields have defaults except the Vertex project and location, which
    are checked by validate_required() before the proxy starts serving.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    vertex: VertexConfig = field(default_factory=VertexConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    path: Optional[str] = None  # Path to the loaded config file, if any

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.
        """
        vertex_raw = raw.get("vertex") or {}
        vertex = VertexConfig(
            project=vertex_raw.get("project"),
            location=vertex_raw.get("location"),
            api_host_format=vertex_raw.get("api_host_format", DEFAULT_API_HOST_FORMAT),
        )

        upstream_raw = raw.get("upstream") or {}
        upstream = UpstreamConfig(
            base_url=upstream_raw.get("base_url"),
            timeout=float(upstream_raw.get("timeout", DEFAULT_UPSTREAM_TIMEOUT)),
            connect_timeout=float(
                upstream_raw.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
            ),
        )

        proxy_raw = raw.get("proxy") or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", "0.0.0.0"),
            port=proxy_raw.get("port", 8080),
        )

        logging_raw = raw.get("logging") or {}
        logging_config = LoggingConfig(
            level=str(logging_raw.get("level", "info")),
            format=str(logging_raw.get("format", "text")),
        )

        models_raw = raw.get("models") or {}
        models = ModelsConfig(
            available=list(models_raw.get("available", DEFAULT_MODEL_IDS)),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            vertex=vertex,
            upstream=upstream,
            proxy=proxy,
            logging=logging_config,
            models=models,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load Vertex Proxy configuration.

    If no file is found at any search path, defaults are used (not an error).
    If a file is found but invalid, writes the error to stderr and raises
    SystemExit(1). Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, unreadable file, non-mapping YAML,
                       missing or unsupported ``version``, or invalid ``PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("VERTEX_PROXY_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.debug("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        _normalize_logging(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "Vertex Proxy refuses to start with an invalid config."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)
    _normalize_logging(config)

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        project=config.vertex.project,
        location=config.vertex.location,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If PORT is set but not a valid integer.
    """
    env = os.environ

    if env.get("VERTEXAI_PROJECT"):
        config.vertex.project = env["VERTEXAI_PROJECT"]
    if env.get("VERTEXAI_LOCATION"):
        config.vertex.location = env["VERTEXAI_LOCATION"]
    if env.get("VERTEXAI_API_HOST_FORMAT"):
        config.vertex.api_host_format = env["VERTEXAI_API_HOST_FORMAT"]
    if env.get("HOST"):
        config.proxy.host = env["HOST"]
    if env.get("LOG_LEVEL"):
        config.logging.level = env["LOG_LEVEL"]
    if env.get("LOG_FORMAT"):
        config.logging.format = env["LOG_FORMAT"]

    env_port = env.get("PORT")
    if env_port:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            _fail(
                "CONFIG ERROR: PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    models_raw = env.get("VERTEXAI_AVAILABLE_MODELS")
    if models_raw:
        model_ids = parse_model_ids(models_raw)
        if model_ids:
            config.models.available = model_ids
            logger.info("Using models from VERTEXAI_AVAILABLE_MODELS", models=model_ids)
        else:
            logger.warning(
                "VERTEXAI_AVAILABLE_MODELS set but empty",
                env_var_value=models_raw,
                using_default_models=config.models.available,
            )


def _normalize_logging(config: Config) -> None:
    """Fall back to info/text for unknown logging settings, with a warning."""
    level = config.logging.level.lower()
    if level not in LOG_LEVELS:
        logger.warning(
            "Invalid LOG_LEVEL, defaulting to 'info'",
            value=config.logging.level,
            valid=sorted(LOG_LEVELS),
        )
        level = "info"
    config.logging.level = level

    log_format = config.logging.format.lower()
    if log_format not in LOG_FORMATS:
        logger.warning(
            "Invalid LOG_FORMAT, defaulting to 'text'",
            value=config.logging.format,
            valid=sorted(LOG_FORMATS),
        )
        log_format = "text"
    config.logging.format = log_format


def parse_model_ids(raw: str) -> list[str]:
    """Split a comma separated model list, dropping blank entries."""
    return [model_id.strip() for model_id in raw.split(",") if model_id.strip()]


def validate_required(config: Config) -> None:
    """Refuse to start without the Vertex project and location.

    Raises:
        SystemExit(1): If either value is missing.
    """
    if not config.vertex.project or not config.vertex.location:
        _fail(
            "CONFIG ERROR: VERTEXAI_LOCATION and VERTEXAI_PROJECT must be set "
            "(environment or vertex.location / vertex.project in the config file)."
        )


def format_api_host(api_host_format: str, location: str) -> str:
    """Render the regional API host. Accepts ``{location}`` or ``%s`` templates."""
    if "%s" in api_host_format:
        return api_host_format % location
    return api_host_format.format(location=location)


def build_proxy_target(config: Config) -> ProxyTarget:
    """Construct the immutable upstream target from configuration.

    Raises:
        SystemExit(1): If the resulting URL cannot be parsed.
    """
    if config.upstream.base_url:
        base_url = config.upstream.base_url
    else:
        validate_required(config)
        project = config.vertex.project or ""
        location = config.vertex.location or ""
        host = format_api_host(config.vertex.api_host_format, location)
        base_url = "https://" + host + VERTEX_OPENAPI_PATH_FORMAT.format(
            project=project, location=location
        )

    try:
        return ProxyTarget.from_url(base_url)
    except ValueError as exc:
        _fail(f"CONFIG ERROR: Invalid upstream URL '{base_url}': {exc}")
