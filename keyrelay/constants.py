"""Shared constants for keyrelay.

Header names, path prefixes and numeric caps used across modules are defined
here. Other modules import from this file instead of repeating literals.
"""

# ─── Upstream ────────────────────────────────────────────────────────────────

# Base URL of the upstream API. The trailing version segment is stripped by the
# translator, so "/v1" here and "/v1/" in a client path are never doubled.
DEFAULT_UPSTREAM_BASE_URL: str = "https://generativelanguage.googleapis.com/v1"

# API-version path prefixes recognised at the start of a client path (after the
# leading slashes are removed). Longest first so "v1beta/" is never read as "v1".
RECOGNIZED_VERSION_PREFIXES: tuple[str, ...] = ("v1beta/", "v1/")

# Total deadline for one upstream round trip (seconds). Expiry is reported as
# UpstreamUnreachable.
DEFAULT_UPSTREAM_TIMEOUT_S: float = 120.0

# Connection pool for the shared outbound client.
POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 20
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds

# Query parameter that carries the credential on both sides of the proxy.
KEY_QUERY_PARAM: str = "key"

# ─── Client credential headers (checked in this order) ───────────────────────

VENDOR_KEY_HEADER: str = "x-por-api-key"
GENERIC_KEY_HEADER: str = "x-api-key"
AUTHORIZATION_HEADER: str = "authorization"
GOOGLE_KEY_HEADER: str = "x-goog-api-key"

BEARER_PREFIX: str = "bearer "

# ─── Content types ───────────────────────────────────────────────────────────

DEFAULT_CONTENT_TYPE: str = "application/json"
EVENT_STREAM_CONTENT_TYPE: str = "text/event-stream"

# ─── Diagnostics ─────────────────────────────────────────────────────────────

# Response header carrying the per-request id back to the client.
REQUEST_ID_HEADER: str = "X-KeyRelay-Request-ID"

# Upper bound on the upstream error body excerpt written to the log.
ERROR_EXCERPT_BYTES: int = 512

# Characters of a secret that may appear in a log record.
SECRET_LOG_PREFIX_CHARS: int = 4

# ─── CORS ────────────────────────────────────────────────────────────────────

CORS_ALLOW_METHODS: str = "GET, POST, PUT, DELETE, OPTIONS"
CORS_ALLOW_HEADERS: str = (
    "Content-Type, Authorization, x-api-key, x-goog-api-key, x-por-api-key, "
    "Origin, Accept"
)
CORS_MAX_AGE_S: int = 86_400
