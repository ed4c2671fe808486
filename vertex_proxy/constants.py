"""Shared constants for Vertex Proxy.

Routing prefixes, credential scopes and client pool sizing used across
modules are defined here. No magic numbers in other modules; import from here.
"""

from datetime import timedelta

# ─── Routing ──────────────────────────────────────────────────────────────────

# Inbound paths are expected under this prefix. The rewriter strips it before
# appending the remainder to the Vertex endpoint path.
ROUTE_PREFIX: str = "/v1"

# The one path whose body is read fully and replaced before forwarding.
CHAT_COMPLETIONS_PATH: str = "/v1/chat/completions"

# ─── Vertex AI upstream ───────────────────────────────────────────────────────

# Host template for the regional Vertex AI API.
DEFAULT_API_HOST_FORMAT: str = "{location}-aiplatform.googleapis.com"

# Path of the OpenAI-compatible endpoint under the API host.
VERTEX_OPENAPI_PATH_FORMAT: str = (
    "/v1/projects/{project}/locations/{location}/endpoints/openapi"
)

# ─── Credentials ──────────────────────────────────────────────────────────────

CLOUD_PLATFORM_SCOPE: str = "https://www.googleapis.com/auth/cloud-platform"

# A cached token is only reused while it stays valid for at least this long,
# so a token never expires in the middle of a long upstream call.
TOKEN_EXPIRY_MARGIN: timedelta = timedelta(minutes=1)

# ─── Upstream HTTP client ─────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds

# Total per-request budget. Chat completions can run for minutes.
DEFAULT_UPSTREAM_TIMEOUT: float = 300.0  # seconds
DEFAULT_CONNECT_TIMEOUT: float = 10.0  # seconds

# Response statuses at or above this value get their bodies inspected.
ERROR_STATUS_THRESHOLD: int = 400

# ─── Model listing ────────────────────────────────────────────────────────────

DEFAULT_MODEL_IDS: tuple[str, ...] = (
    "google/gemini-2.5-pro-preview-03-25",
    "google/gemini-2.5-flash-preview-04-17",
)

MODEL_OWNER: str = "google"
