"""Upstream invocation and response classification.

Sends the translated request with the shared ``httpx.AsyncClient`` and decides,
once, whether the response is relayed streamed or buffered:

  streamed  Content-Type contains ``text/event-stream``, or Transfer-Encoding is
            chunked, or the client asked for SSE (``alt=sse``). The body becomes
            a lazy, single-pass async iterator over the upstream bytes; it is
            never buffered and never read twice.

  buffered  Everything else. The body is read in full with ``aread``, exactly
            once, before anything is sent to the client. For error statuses
            (>= 400) a bounded excerpt of those same bytes is logged; the body
            itself is relayed unchanged with the original status.

httpx decodes any Content-Encoding on both paths, so the relay drops that
header (see :mod:`keyrelay.proxy.headers`). Nothing here retries: connectivity
failures become :class:`UpstreamUnreachable`, and a 429 is logged and relayed
like any other status.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx

from keyrelay.constants import (
    ERROR_EXCERPT_BYTES,
    EVENT_STREAM_CONTENT_TYPE,
    POOL_KEEPALIVE_EXPIRY,
    POOL_MAX_CONNECTIONS,
    POOL_MAX_KEEPALIVE,
)
from keyrelay.errors import BodyReadFailure, ConfigInvalid, UpstreamUnreachable
from keyrelay.proxy.translator import OutboundRequest
from keyrelay.utils.logger import get_logger

logger = get_logger(__name__)


# ─── httpx.AsyncClient factory ────────────────────────────────────────────────


def create_http_client(timeout_s: float) -> httpx.AsyncClient:
    """Create the shared httpx.AsyncClient with connection pooling configured.

    Created once at lifespan startup and stored in ``app.state.http_client``;
    never instantiated per request.

    ``timeout_s`` is the deadline for one upstream call; expiry surfaces as
    :class:`UpstreamUnreachable`. The inbound Accept-Encoding is never
    forwarded, so ``Accept-Encoding: identity`` always applies and the upstream
    has no reason to compress.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout_s),
        headers={"Accept-Encoding": "identity"},
        follow_redirects=False,  # 3xx are relayed to the caller, not resolved
    )


# ─── Classification ───────────────────────────────────────────────────────────


def classify_streaming(headers: httpx.Headers, stream_requested: bool = False) -> bool:
    """Return True when a response must take the streamed relay path."""
    if stream_requested:
        return True
    content_type = headers.get("content-type", "").lower()
    if EVENT_STREAM_CONTENT_TYPE in content_type:
        return True
    transfer_encoding = headers.get("transfer-encoding", "").lower()
    return "chunked" in transfer_encoding


def error_excerpt(body: bytes, limit: int = ERROR_EXCERPT_BYTES) -> str:
    """Bounded, printable prefix of an upstream body for diagnostics."""
    text = body[:limit].decode("utf-8", errors="replace")
    if len(body) > limit:
        text += "…"
    return text


# ─── Response ─────────────────────────────────────────────────────────────────


@dataclass
class UpstreamResponse:
    """Upstream answer, classified exactly once.

    Exactly one of ``body`` (buffered) and ``stream`` (streamed) is set.
    """

    status_code: int
    headers: httpx.Headers
    streamed: bool
    body: Optional[bytes] = None
    stream: Optional[AsyncIterator[bytes]] = None
    _response: Optional[httpx.Response] = field(default=None, repr=False)

    async def aclose(self) -> None:
        """Release the upstream connection if the stream was never consumed."""
        if self._response is not None and not self._response.is_closed:
            await self._response.aclose()


# ─── Invoker ──────────────────────────────────────────────────────────────────


class UpstreamInvoker:
    """Issues outbound calls through a shared client.

    Args:
        client:        Shared ``httpx.AsyncClient`` (see :func:`create_http_client`).
        excerpt_bytes: Cap on the error-body excerpt written to the log.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        excerpt_bytes: int = ERROR_EXCERPT_BYTES,
    ) -> None:
        self._client = client
        self._excerpt_bytes = excerpt_bytes

    async def invoke(self, outbound: OutboundRequest) -> UpstreamResponse:
        """Send ``outbound`` and classify the response.

        Raises:
            UpstreamUnreachable: DNS failure, refused connection, timeout, or an
                                 invalid HTTP exchange.
            ConfigInvalid:       The upstream base URL cannot be used by httpx.
            BodyReadFailure:     A buffered upstream body failed mid-read (500).
        """
        logger.info(
            "upstream_request",
            method=outbound.method,
            url=outbound.url,
            key=outbound.key_hint,
        )
        started = time.perf_counter()

        try:
            request = self._client.build_request(
                method=outbound.method,
                url=outbound.url,
                params=outbound.params,
                headers=outbound.headers,
                content=outbound.body,
            )
            response = await self._client.send(request, stream=True)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            logger.error("invalid_upstream_url", url=outbound.url, error=str(exc))
            raise ConfigInvalid(
                message="Upstream base URL is invalid",
                details={"field": "upstream.base_url"},
            ) from exc
        except httpx.TransportError as exc:
            # ConnectError, TimeoutException, RemoteProtocolError, NetworkError...
            logger.warning(
                "upstream_unreachable",
                url=outbound.url,
                error_type=type(exc).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            raise UpstreamUnreachable(details={"reason": type(exc).__name__}) from exc

        streamed = classify_streaming(response.headers, outbound.stream_requested)
        logger.info(
            "upstream_response",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
            streamed=streamed,
        )

        if response.status_code == 429:
            # No corrective action: the next request draws a key at random again.
            logger.warning("upstream_rate_limited", key=outbound.key_hint)

        if streamed:
            return UpstreamResponse(
                status_code=response.status_code,
                headers=response.headers,
                streamed=True,
                stream=self._relay(response),
                _response=response,
            )

        body = await self._read_once(response)
        if response.status_code >= 400:
            logger.warning(
                "upstream_error_response",
                status_code=response.status_code,
                body_bytes=len(body),
                excerpt=error_excerpt(body, self._excerpt_bytes),
            )
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            streamed=False,
            body=body,
        )

    async def _read_once(self, response: httpx.Response) -> bytes:
        """Consume the body in full. The only read of a buffered response.

        ``aread`` also copes with a response whose content the transport has
        already loaded.
        """
        try:
            return await response.aread()
        except httpx.TimeoutException as exc:
            raise UpstreamUnreachable(details={"reason": type(exc).__name__}) from exc
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.error("upstream_body_read_failed", error_type=type(exc).__name__)
            raise BodyReadFailure(
                direction="outbound",
                details={"reason": type(exc).__name__},
            ) from exc
        finally:
            await response.aclose()

    async def _relay(self, response: httpx.Response) -> AsyncIterator[bytes]:
        """Forward-only pass over the upstream body, chunk by chunk."""
        relayed = 0
        try:
            async for chunk in response.aiter_bytes():
                relayed += len(chunk)
                yield chunk
        except asyncio.CancelledError:
            logger.info("stream_relay_aborted", reason="client_disconnected", bytes=relayed)
            raise
        except (httpx.HTTPError, httpx.StreamError) as exc:
            # Status and headers are already on the wire; an abrupt end is the
            # only signal left for the client.
            logger.error(
                "stream_relay_aborted",
                reason=type(exc).__name__,
                bytes=relayed,
            )
            raise
        else:
            logger.info("stream_relay_complete", bytes=relayed)
        finally:
            await response.aclose()
