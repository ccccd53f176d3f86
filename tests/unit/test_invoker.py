"""Unit tests for keyrelay.proxy.invoker.

Test strategy:
  - httpx.MockTransport stands in for the upstream (no real network I/O)
  - a counting AsyncByteStream proves the buffered body is read exactly once
  - an async-generator body gated on an asyncio.Event proves the streamed path
    returns before any body bytes exist
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import httpx
import pytest

from keyrelay.errors import BodyReadFailure, ConfigInvalid, UpstreamUnreachable
from keyrelay.proxy.invoker import (
    UpstreamInvoker,
    classify_streaming,
    create_http_client,
    error_excerpt,
)
from keyrelay.proxy.translator import RequestTranslator

KEY = "AIzaSyUpstreamKey0001"


def _outbound(path: str = "/v1/models", query: list[tuple[str, str]] | None = None):
    return RequestTranslator("https://upstream.example/v1").translate(
        method="POST",
        path=path,
        query_items=query or [],
        headers=[("Content-Type", "application/json")],
        body=b'{"q":1}',
        upstream_key=KEY,
    )


class _CountingStream(httpx.AsyncByteStream):
    """Body that records how many times it is iterated."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = chunks
        self.iterations = 0
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.iterations += 1
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class _FailingStream(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        raise httpx.ReadError("connection reset")


# ─── Classification ───────────────────────────────────────────────────────────


class TestClassifyStreaming:
    def test_event_stream_content_type(self) -> None:
        headers = httpx.Headers({"content-type": "text/event-stream; charset=utf-8"})
        assert classify_streaming(headers) is True

    def test_chunked_transfer_encoding(self) -> None:
        headers = httpx.Headers(
            {"content-type": "application/json", "transfer-encoding": "chunked"}
        )
        assert classify_streaming(headers) is True

    def test_alt_sse_request(self) -> None:
        headers = httpx.Headers({"content-type": "application/json"})
        assert classify_streaming(headers, stream_requested=True) is True

    def test_plain_json_is_buffered(self) -> None:
        headers = httpx.Headers(
            {"content-type": "application/json", "content-length": "10"}
        )
        assert classify_streaming(headers) is False

    def test_no_headers_is_buffered(self) -> None:
        assert classify_streaming(httpx.Headers()) is False


class TestErrorExcerpt:
    def test_short_body_unchanged(self) -> None:
        assert error_excerpt(b'{"error":"quota"}') == '{"error":"quota"}'

    def test_long_body_truncated(self) -> None:
        text = error_excerpt(b"x" * 2000, limit=16)
        assert text == "x" * 16 + "…"

    def test_invalid_utf8_replaced(self) -> None:
        assert error_excerpt(b"\xff\xfeok") == "\ufffd\ufffdok"


# ─── create_http_client ───────────────────────────────────────────────────────


class TestCreateHttpClient:
    @pytest.mark.asyncio
    async def test_client_configuration(self) -> None:
        client = create_http_client(12.5)
        try:
            assert isinstance(client, httpx.AsyncClient)
            assert client.follow_redirects is False
            assert client.timeout.read == 12.5
            assert client.headers["accept-encoding"] == "identity"
        finally:
            await client.aclose()


# ─── Invocation ───────────────────────────────────────────────────────────────


class TestInvokeBuffered:
    @pytest.mark.asyncio
    async def test_request_reaches_upstream_translated(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b'{"ok":true}')

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(_outbound())

        assert result.status_code == 200
        assert result.streamed is False
        assert result.body == b'{"ok":true}'
        assert len(seen) == 1
        assert seen[0].url.path == "/models"
        assert seen[0].url.params["key"] == KEY
        assert seen[0].content == b'{"q":1}'

    @pytest.mark.asyncio
    async def test_error_body_read_exactly_once(self) -> None:
        stream = _CountingStream([b'{"error":', b'"quota exceeded"}'])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                headers={"content-type": "application/json", "retry-after": "7"},
                stream=stream,
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(_outbound())

        assert result.status_code == 429
        assert result.body == b'{"error":"quota exceeded"}'
        assert result.headers["retry-after"] == "7"
        assert stream.iterations == 1
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_upstream_500_relayed_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, content=b"upstream broke")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(_outbound())

        assert result.status_code == 500
        assert result.body == b"upstream broke"

    @pytest.mark.asyncio
    async def test_body_read_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_FailingStream())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(BodyReadFailure) as exc_info:
                await UpstreamInvoker(client).invoke(_outbound())

        assert exc_info.value.status_code == 500
        assert exc_info.value.details["direction"] == "outbound"

    @pytest.mark.asyncio
    async def test_preloaded_rate_limit_body_relayed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429,
                headers={"content-type": "application/json"},
                content=b'{"error":"quota"}',
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(_outbound())

        assert result.status_code == 429
        assert result.body == b'{"error":"quota"}'

    @pytest.mark.asyncio
    async def test_stream_error_is_body_read_failure(self) -> None:
        class _ClosedStream(httpx.AsyncByteStream):
            async def __aiter__(self) -> AsyncIterator[bytes]:
                raise httpx.StreamClosed()
                yield b""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_ClosedStream())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(BodyReadFailure) as exc_info:
                await UpstreamInvoker(client).invoke(_outbound())

        assert exc_info.value.details["reason"] == "StreamClosed"


class TestInvokeStreamed:
    @pytest.mark.asyncio
    async def test_returns_before_body_is_available(self) -> None:
        release = asyncio.Event()

        async def body() -> AsyncIterator[bytes]:
            yield b"data: one\n\n"
            await release.wait()
            yield b"data: two\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=body(),
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await asyncio.wait_for(
                UpstreamInvoker(client).invoke(_outbound()), timeout=2
            )
            assert result.streamed is True
            assert result.body is None

            chunks = []
            async for chunk in result.stream:
                chunks.append(chunk)
                release.set()

        assert b"".join(chunks) == b"data: one\n\ndata: two\n\n"

    @pytest.mark.asyncio
    async def test_alt_sse_forces_streaming(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"content-type": "application/json"},
                content=b'{"chunk":1}',
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(
                _outbound(query=[("alt", "sse")])
            )
            assert result.streamed is True
            body = b"".join([chunk async for chunk in result.stream])

        assert body == b'{"chunk":1}'

    @pytest.mark.asyncio
    async def test_aclose_releases_unconsumed_stream(self) -> None:
        stream = _CountingStream([b"data: x\n\n"])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=stream
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await UpstreamInvoker(client).invoke(_outbound())
            await result.aclose()

        assert stream.iterations == 0
        assert stream.closed is True


class TestInvokeFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectError("connection refused"),
            httpx.ConnectTimeout("timed out"),
            httpx.ReadTimeout("timed out"),
            httpx.RemoteProtocolError("bad status line"),
        ],
    )
    async def test_transport_errors_are_unreachable(self, error: Exception) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise error

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(UpstreamUnreachable) as exc_info:
                await UpstreamInvoker(client).invoke(_outbound())

        assert exc_info.value.status_code == 502
        assert exc_info.value.details["reason"] == type(error).__name__

    @pytest.mark.asyncio
    async def test_unsupported_protocol_is_config_invalid(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.UnsupportedProtocol("unsupported protocol 'ftp://'")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ConfigInvalid) as exc_info:
                await UpstreamInvoker(client).invoke(_outbound())

        assert exc_info.value.status_code == 500
        assert exc_info.value.details["field"] == "upstream.base_url"

    @pytest.mark.asyncio
    async def test_unparseable_base_url_is_config_invalid(self) -> None:
        outbound = RequestTranslator("http://upstream.example:notaport").translate(
            method="GET",
            path="/models",
            query_items=[],
            headers=[],
            body=None,
            upstream_key=KEY,
        )
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        ) as client:
            with pytest.raises(ConfigInvalid):
                await UpstreamInvoker(client).invoke(outbound)
