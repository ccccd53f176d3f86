"""Inbound → upstream request translation.

Turns a client request into the request sent to the upstream API:

  path    leading "/" removed, then one recognised API-version prefix
          ("v1/" or "v1beta/") removed, then appended to the upstream base URL
          (whose own trailing version segment is removed so it is never doubled)
  query   the client's parameters with every ``key`` removed and a single
          ``key=<selected upstream credential>`` added
  headers see :func:`keyrelay.proxy.headers.build_upstream_headers`

The stripped version prefix is not reinserted: the upstream base URL is assumed
to carry the right version already, or the route is version-agnostic.

``normalize_path`` and ``classify_streaming`` (in the invoker) are pure so their
contracts can be tested without HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import httpx

from keyrelay.constants import KEY_QUERY_PARAM, RECOGNIZED_VERSION_PREFIXES
from keyrelay.proxy.headers import build_upstream_headers
from keyrelay.utils.logger import get_logger, mask_secret

logger = get_logger(__name__)


# ─── Pure helpers ─────────────────────────────────────────────────────────────


def normalize_path(
    path: str,
    prefixes: Sequence[str] = RECOGNIZED_VERSION_PREFIXES,
) -> str:
    """Strip leading slashes and at most one recognised version prefix.

    Example::

        normalize_path("//v1beta/models/gemini-pro:generateContent")
        # "models/gemini-pro:generateContent"
        normalize_path("/models")   # "models"
        normalize_path("/v1")       # "v1"  (no trailing slash, not a prefix)
    """
    segment = path.lstrip("/")
    for prefix in prefixes:
        if segment.startswith(prefix):
            return segment[len(prefix):]
    return segment


def strip_version_suffix(
    base_url: str,
    prefixes: Sequence[str] = RECOGNIZED_VERSION_PREFIXES,
) -> str:
    """Remove trailing slashes and one trailing API-version segment from a base URL.

    Example::

        strip_version_suffix("https://generativelanguage.googleapis.com/v1")
        # "https://generativelanguage.googleapis.com"
    """
    base = base_url.rstrip("/")
    for prefix in prefixes:
        suffix = "/" + prefix.rstrip("/")
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def build_upstream_query(
    query_items: Iterable[tuple[str, str]],
    upstream_key: str,
) -> list[tuple[str, str]]:
    """Client query with every ``key`` dropped and the upstream key appended once."""
    params = [(name, value) for name, value in query_items if name != KEY_QUERY_PARAM]
    params.append((KEY_QUERY_PARAM, upstream_key))
    return params


def stream_requested(query_items: Iterable[tuple[str, str]]) -> bool:
    """True when the client asked for server-sent events (``alt=sse``)."""
    return any(
        name == "alt" and value.lower() == "sse" for name, value in query_items
    )


# ─── Outbound request ─────────────────────────────────────────────────────────


@dataclass(frozen=True, repr=False)
class OutboundRequest:
    """Everything the invoker needs for one upstream call.

    ``params`` holds the upstream key; ``__repr__`` masks it so the object can be
    logged or shown in a test failure without leaking the credential.
    """

    method: str
    url: str
    params: list[tuple[str, str]]
    headers: httpx.Headers
    body: Optional[bytes]
    stream_requested: bool
    key_hint: str

    def __repr__(self) -> str:
        return (
            f"OutboundRequest(method={self.method!r}, url={self.url!r}, "
            f"params=<{len(self.params)} items>, key={self.key_hint!r}, "
            f"stream_requested={self.stream_requested})"
        )


class RequestTranslator:
    """Builds :class:`OutboundRequest` objects against one upstream base URL.

    Args:
        base_url: Upstream root, optionally ending in a version segment.
        prefixes: Version prefixes recognised on client paths.
    """

    def __init__(
        self,
        base_url: str,
        prefixes: Sequence[str] = RECOGNIZED_VERSION_PREFIXES,
    ) -> None:
        self._prefixes = tuple(prefixes)
        self.base_url = strip_version_suffix(base_url, self._prefixes)

    def build_url(self, path: str) -> str:
        segment = normalize_path(path, self._prefixes)
        if segment != path.lstrip("/"):
            logger.debug(
                "path_version_prefix_stripped",
                original_path=path,
                upstream_path=segment,
            )
        return f"{self.base_url}/{segment}"

    def translate(
        self,
        *,
        method: str,
        path: str,
        query_items: Sequence[tuple[str, str]],
        headers: Iterable[tuple[str, str]],
        body: Optional[bytes],
        upstream_key: str,
    ) -> OutboundRequest:
        """Translate one inbound request.

        Args:
            method:       Copied verbatim.
            path:         Inbound path, leading slash included.
            query_items:  Inbound query as (name, value) pairs, repeats allowed.
            headers:      Inbound headers as (name, value) pairs.
            body:         Inbound body bytes; empty bodies are sent as no body.
            upstream_key: Credential chosen by :meth:`KeyPool.select`.
        """
        return OutboundRequest(
            method=method,
            url=self.build_url(path),
            params=build_upstream_query(query_items, upstream_key),
            headers=build_upstream_headers(headers),
            body=body or None,
            stream_requested=stream_requested(query_items),
            key_hint=mask_secret(upstream_key),
        )
