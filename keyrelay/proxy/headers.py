"""HTTP header processing for the keyrelay proxy.

Implements every header rule on both legs of the relay:

  - build_upstream_headers(): drops hop-by-hop headers and every header that can
    carry the client's proxy secret, then guarantees a Content-Type.

  - build_client_response_headers(): buffered relay. Forwards upstream response
    headers minus hop-by-hop ones and Content-Encoding.

  - build_stream_response_headers(): streamed relay. Forwards only Content-Type,
    Cache-Control and Date, then pins the event-stream Content-Type,
    ``Cache-Control: no-cache`` and ``Connection: keep-alive``.

  - cors_origin() / preflight_headers(): the CORS contract.

Header constants defined here are imported by the translator and engine so there
is a single source of truth.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

import httpx

from keyrelay.constants import (
    AUTHORIZATION_HEADER,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_MAX_AGE_S,
    DEFAULT_CONTENT_TYPE,
    EVENT_STREAM_CONTENT_TYPE,
    GENERIC_KEY_HEADER,
    GOOGLE_KEY_HEADER,
    VENDOR_KEY_HEADER,
)

# ─── Constants ────────────────────────────────────────────────────────────────

# Hop-by-hop headers MUST be stripped before forwarding (RFC 7230 §6.1).
# httpx sets content-length from content=; host is derived from the upstream URL.
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
        "host",
        "content-length",
    }
)

# Every header ClientAuthenticator reads. None of them reach the upstream.
CREDENTIAL_HEADERS: frozenset[str] = frozenset(
    {
        AUTHORIZATION_HEADER,
        GENERIC_KEY_HEADER,
        GOOGLE_KEY_HEADER,
        VENDOR_KEY_HEADER,
    }
)

# The shared client pins Accept-Encoding: identity; httpx decodes whatever
# encoding comes back, so Content-Encoding never describes the relayed bytes.
ENCODING_HEADERS: frozenset[str] = frozenset({"accept-encoding", "content-encoding"})

EXCLUDED_UPSTREAM_HEADERS: frozenset[str] = (
    HOP_BY_HOP_HEADERS | CREDENTIAL_HEADERS | ENCODING_HEADERS
)

EXCLUDED_CLIENT_HEADERS: frozenset[str] = HOP_BY_HOP_HEADERS | ENCODING_HEADERS

# Upstream headers relayed on the streamed path (everything else is dropped).
STREAM_FORWARDED_HEADERS: tuple[str, ...] = (
    "content-type",
    "cache-control",
    "date",
)

# ─── Upstream-bound ───────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
) -> httpx.Headers:
    """Build the header set to send to the upstream API.

    Rules applied (in order):
      1. Strip hop-by-hop headers: host, connection, content-length,
         transfer-encoding, upgrade, keep-alive, te, trailers, proxy-*.
      2. Strip credential headers: authorization, x-api-key, x-goog-api-key,
         x-por-api-key. The client's ``key`` query parameter is replaced by
         the translator, not here. Accept-Encoding is dropped as well; the
         shared client always asks for identity.
      3. Forward all remaining headers unchanged, repeated headers included.
      4. Guarantee ``Content-Type``: the inbound value if present, else JSON.

    Args:
        request_headers: (name, value) pairs from the inbound request, e.g.
                         ``request.headers.items()``.

    Returns:
        Case-insensitive multi-valued :class:`httpx.Headers`.
    """
    forwarded: list[tuple[str, str]] = []
    content_type: Optional[str] = None

    for name, value in request_headers:
        lower_name = name.lower()
        if lower_name in EXCLUDED_UPSTREAM_HEADERS:
            continue
        if lower_name == "content-type":
            # Keep the first value only; the guarantee below re-adds it.
            if content_type is None:
                content_type = value
            continue
        forwarded.append((name, value))

    forwarded.append(("Content-Type", content_type or DEFAULT_CONTENT_TYPE))
    return httpx.Headers(forwarded)


# ─── Client-bound ─────────────────────────────────────────────────────────────


def _leaks(value: str, redact: Iterable[str]) -> bool:
    return any(secret and secret in value for secret in redact)


def build_client_response_headers(
    upstream_headers: httpx.Headers,
    redact: Iterable[str] = (),
) -> list[tuple[str, str]]:
    """Headers for a buffered relay.

    Hop-by-hop headers and Content-Encoding are dropped (Starlette computes
    Content-Length from the decoded body). Any header whose value contains one of ``redact`` (the selected
    upstream key) is dropped as well.

    Returns:
        (name, value) pairs in upstream order; repeated headers such as
        ``set-cookie`` are preserved.
    """
    redact = tuple(redact)
    headers: list[tuple[str, str]] = []
    for name, value in upstream_headers.multi_items():
        if name.lower() in EXCLUDED_CLIENT_HEADERS:
            continue
        if _leaks(value, redact):
            continue
        headers.append((name, value))
    return headers


def build_stream_response_headers(
    upstream_headers: httpx.Headers,
    redact: Iterable[str] = (),
) -> dict[str, str]:
    """Headers for a streamed relay.

    Only :data:`STREAM_FORWARDED_HEADERS` are copied. Content-Type is forced to
    an event-stream value (upstream's own value is kept when it already is one,
    so a charset parameter survives). Cache-Control and Connection are pinned.
    """
    redact = tuple(redact)
    headers: dict[str, str] = {}
    for name in STREAM_FORWARDED_HEADERS:
        value = upstream_headers.get(name)
        if value is not None and not _leaks(value, redact):
            headers[name] = value

    upstream_type = headers.get("content-type", "")
    if EVENT_STREAM_CONTENT_TYPE not in upstream_type.lower():
        headers["content-type"] = EVENT_STREAM_CONTENT_TYPE
    headers["cache-control"] = "no-cache"
    headers["connection"] = "keep-alive"
    return headers


# ─── CORS ─────────────────────────────────────────────────────────────────────


def cors_origin(request_headers: Mapping[str, str]) -> str:
    """The ``Access-Control-Allow-Origin`` value: the inbound Origin, or ``*``."""
    return request_headers.get("origin") or "*"


def preflight_headers(origin: str) -> dict[str, str]:
    """Fixed header set for a 204 preflight answer."""
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Max-Age": str(CORS_MAX_AGE_S),
    }
