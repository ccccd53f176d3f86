"""Async HTTP proxy handler for keyrelay.

Every inbound request, whatever its method or path, lands on one catch-all
route and is walked through the same stages. The first failure ends the
request:

  1. Preflight      OPTIONS → 204 with fixed CORS headers; upstream never called
  2. Config valid   proxy secret or key list missing → 500 config_invalid
  3. Authenticated  MissingSecret / InvalidSecret → 401
  4. Key selected   EmptyPool → 500
  5. Translated     path / query / headers rewritten for the upstream
  6. Invoked        UpstreamUnreachable → 502; bad upstream URL → 500
  7. Relayed        upstream status, headers and body back to the client,
                    streamed or buffered as the invoker decided

Failure responses use the JSON error shape from
:mod:`keyrelay.models.responses`. Every response (success or failure) carries
``Access-Control-Allow-Origin`` and ``X-KeyRelay-Request-ID``.

Upstream HTTP 4xx/5xx are NOT failures of the proxy: they are relayed as-is.

Key design properties:
  - Shared httpx.AsyncClient, never instantiated per request
  - No state mutated across requests; the collaborators are immutable
  - The pending upstream call is cancelled as soon as the client disconnects
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from starlette.requests import ClientDisconnect
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from keyrelay.auth.authenticator import ClientAuthenticator
from keyrelay.config import Config
from keyrelay.constants import REQUEST_ID_HEADER
from keyrelay.errors import (
    AuthError,
    BodyReadFailure,
    ClientDisconnected,
    ConfigInvalid,
    NotReady,
    ProxyError,
)
from keyrelay.keys.pool import KeyPool
from keyrelay.models.responses import build_error_response, build_preflight_response
from keyrelay.proxy.headers import (
    build_client_response_headers,
    build_stream_response_headers,
    cors_origin,
)
from keyrelay.proxy.invoker import UpstreamInvoker, UpstreamResponse
from keyrelay.proxy.translator import OutboundRequest, RequestTranslator
from keyrelay.utils.ids import generate_request_id
from keyrelay.utils.logger import get_logger, set_request_id

logger = get_logger(__name__)

# ─── Router ───────────────────────────────────────────────────────────────────

router = APIRouter(tags=["proxy"])


# ─── Disconnect handling ──────────────────────────────────────────────────────


async def _wait_for_disconnect(request: Any) -> None:
    """Return once the ASGI server reports that the client has gone away.

    Only called after the request body has been read in full, so the only
    message left on the receive channel is ``http.disconnect``.
    """
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def invoke_until_disconnect(
    request: Any,
    invoker: UpstreamInvoker,
    outbound: OutboundRequest,
) -> UpstreamResponse:
    """Run the upstream call, cancelling it if the client disconnects first.

    Raises:
        ClientDisconnected: The inbound connection closed before the upstream
                            answered. The upstream call has been cancelled and
                            any response it produced in the meantime closed.
        ProxyError:         Propagated from :meth:`UpstreamInvoker.invoke`.
    """
    call = asyncio.ensure_future(invoker.invoke(outbound))
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait(
            {call, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        call.cancel()
        watcher.cancel()
        raise

    if call in done:
        watcher.cancel()
        return call.result()

    if not watcher.cancelled() and watcher.exception() is not None:
        logger.warning("disconnect_watch_failed", error=str(watcher.exception()))

    call.cancel()
    try:
        orphan = await call
    except (asyncio.CancelledError, ProxyError):
        pass
    else:
        await orphan.aclose()
    raise ClientDisconnected()


# ─── Relay helpers ────────────────────────────────────────────────────────────


def inbound_path(request: Request) -> str:
    """The request path as the client sent it, percent-escapes intact.

    ``request.url.path`` is decoded, so an escaped ``%3F`` or ``%2F`` would
    change the meaning of the upstream URL.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return quote(request.url.path, safe="/:@!$&'()*+,;=-._~")


class UpstreamStreamingResponse(StreamingResponse):
    """StreamingResponse that closes the upstream response once it has been sent,
    whether or not the body iterator was ever started.
    """

    def __init__(self, upstream: UpstreamResponse, headers: dict[str, str]) -> None:
        super().__init__(
            content=upstream.stream,
            status_code=upstream.status_code,
            headers=headers,
        )
        self.upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()


# ─── Handler ──────────────────────────────────────────────────────────────────


class ProxyHandler:
    """Per-request orchestration of the forwarding pipeline.

    All collaborators are immutable after construction, so a single instance
    (stored at ``app.state.proxy_handler``) serves every concurrent request.
    """

    def __init__(
        self,
        config: Config,
        key_pool: KeyPool,
        authenticator: ClientAuthenticator,
        translator: RequestTranslator,
        invoker: UpstreamInvoker,
    ) -> None:
        self._config = config
        self._key_pool = key_pool
        self._authenticator = authenticator
        self._translator = translator
        self._invoker = invoker

    async def handle(self, request: Request) -> Response:
        request_id = generate_request_id()
        set_request_id(request_id)
        origin = cors_origin(request.headers)

        logger.info(
            "request_received",
            method=request.method,
            path=inbound_path(request),
            query_params=sorted(set(request.query_params.keys())),
        )

        # ── 1. CORS preflight ────────────────────────────────────────────────
        if request.method == "OPTIONS":
            logger.info("cors_preflight", origin=origin)
            return build_preflight_response(origin, request_id)

        try:
            # ── 2. Configuration ─────────────────────────────────────────────
            missing = self._config.missing_fields()
            if missing:
                raise ConfigInvalid(missing=missing)

            # ── 3. Client authentication ─────────────────────────────────────
            self._authenticator.authenticate(request)

            # ── 4. Upstream key ──────────────────────────────────────────────
            upstream_key = self._key_pool.select()

            # ── 5. Translation ───────────────────────────────────────────────
            body = await self._read_body(request)
            outbound = self._translator.translate(
                method=request.method,
                path=inbound_path(request),
                query_items=request.query_params.multi_items(),
                headers=request.headers.items(),
                body=body,
                upstream_key=upstream_key,
            )

            # ── 6. Upstream call ─────────────────────────────────────────────
            upstream = await invoke_until_disconnect(request, self._invoker, outbound)

        except ProxyError as exc:
            self._log_failure(exc)
            return build_error_response(exc, request_id, origin)

        # ── 7. Relay ─────────────────────────────────────────────────────────
        return self._relay(upstream, origin, request_id, redact=(upstream_key,))

    async def _read_body(self, request: Request) -> bytes:
        try:
            return await request.body()
        except ClientDisconnect as exc:
            raise BodyReadFailure(
                direction="inbound",
                message="Client disconnected while sending the request body",
            ) from exc

    def _relay(
        self,
        upstream: UpstreamResponse,
        origin: str,
        request_id: str,
        redact: tuple[str, ...],
    ) -> Response:
        if upstream.streamed:
            response: Response = UpstreamStreamingResponse(
                upstream, build_stream_response_headers(upstream.headers, redact)
            )
        else:
            response = Response(
                content=upstream.body,
                status_code=upstream.status_code,
            )
            for name, value in build_client_response_headers(upstream.headers, redact):
                response.headers.append(name, value)

        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _log_failure(self, exc: ProxyError) -> None:
        if isinstance(exc, ClientDisconnected):
            logger.info("client_disconnected")
        elif isinstance(exc, ConfigInvalid):
            logger.error("config_invalid", missing_fields=exc.missing, error=exc.message)
        elif isinstance(exc, AuthError):
            # Already logged with its source by the authenticator.
            pass
        else:
            logger.warning(
                "request_failed",
                error=exc.code,
                status_code=exc.status_code,
                details=exc.details,
            )


# ─── Route ────────────────────────────────────────────────────────────────────


class ProxyEndpoint:
    """ASGI endpoint for the catch-all route.

    Registered as a plain ASGI app rather than an ``api_route`` so that the
    route matches every HTTP method, including ones FastAPI has no name for.
    Requests that arrive before startup has finished get 503 ``not_ready``.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive, send)
        state = request.app.state
        if not getattr(state, "ready", False):
            request_id = generate_request_id()
            set_request_id(request_id)
            logger.warning("request_before_ready", method=request.method)
            response = build_error_response(
                NotReady(), request_id, cors_origin(request.headers)
            )
        else:
            handler: ProxyHandler = state.proxy_handler
            response = await handler.handle(request)
        await response(scope, receive, send)


router.add_route("/{path:path}", ProxyEndpoint(), include_in_schema=False)
