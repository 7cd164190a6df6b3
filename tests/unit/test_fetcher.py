"""Unit tests for the range fetcher and HTTP transport."""

from __future__ import annotations

import gzip
import io

import pytest

from chunkdl.fetcher import RangeFetcher
from chunkdl.models import NetworkConfig
from chunkdl.transport import HttpTransport
from chunkdl.utils.exceptions import (
    ContentLengthError,
    IncompleteTransferError,
    TransferCancelledError,
    TransientTransferError,
)
from chunkdl.utils.tasks import CancelToken

pytestmark = [pytest.mark.unit, pytest.mark.network]


class TestRangeFetcher:
    """Test RangeFetcher against an in-process server."""

    @pytest.mark.asyncio
    async def test_partial_content(self, range_server, payload):
        """Test a 206 response is written as-is."""
        async with range_server(payload) as server, HttpTransport() as transport:
            sink = io.BytesIO()
            written = await RangeFetcher(transport).fetch(server.url, 1000, 1999, sink)

        assert written == 1000
        assert sink.getvalue() == payload[1000:2000]
        assert server.ranges == ["bytes=1000-1999"]

    @pytest.mark.asyncio
    async def test_full_body_skips_prefix(self, range_server, payload):
        """Test a 200 response discards the bytes before the range."""
        async with range_server(payload, honor_range=False) as server, HttpTransport() as transport:
            sink = io.BytesIO()
            fetcher = RangeFetcher(transport, read_size=300)
            written = await fetcher.fetch(server.url, 1000, 1999, sink)

        assert written == 1000
        assert sink.getvalue() == payload[1000:2000]

    @pytest.mark.asyncio
    async def test_progress_callback(self, range_server, payload):
        async with range_server(payload) as server, HttpTransport() as transport:
            counts: list[int] = []
            await RangeFetcher(transport, read_size=256).fetch(
                server.url, 0, 999, io.BytesIO(), on_progress=counts.append
            )
        assert sum(counts) == 1000

    @pytest.mark.asyncio
    async def test_unexpected_status_is_transient(self, range_server, payload):
        async with range_server(payload, failures=1, fail_status=503) as server, HttpTransport() as transport:
            with pytest.raises(TransientTransferError) as exc_info:
                await RangeFetcher(transport).fetch(server.url, 0, 999, io.BytesIO())
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_short_body_is_incomplete(self, range_server, payload):
        async with range_server(payload, short_body_starts={0}) as server, HttpTransport() as transport:
            sink = io.BytesIO()
            with pytest.raises(IncompleteTransferError) as exc_info:
                await RangeFetcher(transport).fetch(server.url, 0, 999, sink)

        assert exc_info.value.expected == 1000
        assert exc_info.value.received == 500
        # Bytes received before the body ended stay in the sink for resume.
        assert sink.getvalue() == payload[:500]

    @pytest.mark.asyncio
    async def test_connection_refused_is_transient(self, unused_tcp_port):
        async with HttpTransport() as transport:
            with pytest.raises(TransientTransferError):
                await RangeFetcher(transport).fetch(
                    f"http://127.0.0.1:{unused_tcp_port}/x", 0, 9, io.BytesIO()
                )

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_request(self, range_server, payload):
        token = CancelToken()
        token.cancel("stop")
        async with range_server(payload) as server, HttpTransport() as transport:
            with pytest.raises(TransferCancelledError):
                await RangeFetcher(transport).fetch(
                    server.url, 0, 999, io.BytesIO(), token=token
                )
        assert server.ranges == []

    @pytest.mark.asyncio
    async def test_content_coded_body_is_not_decoded(self, range_server, payload):
        """Test ranges of a gzip-coded resource arrive as the raw wire bytes."""
        served = gzip.compress(payload, mtime=0)
        middle = len(served) // 2
        async with range_server(served, content_encoding="gzip") as server, HttpTransport() as transport:
            sink = io.BytesIO()
            fetcher = RangeFetcher(transport)
            await fetcher.fetch(server.url, 0, middle - 1, sink)
            await fetcher.fetch(server.url, middle, len(served) - 1, sink)

        assert sink.getvalue() == served
        assert server.accept_encodings == ["identity", "identity"]


class TestHttpTransport:
    """Test HttpTransport."""

    @pytest.mark.asyncio
    async def test_content_length(self, range_server, payload):
        async with range_server(payload) as server, HttpTransport() as transport:
            assert await transport.content_length(server.url) == 2500
        assert server.head_requests == 1

    @pytest.mark.asyncio
    async def test_missing_content_length(self, range_server, payload):
        async with range_server(payload, head_length=False) as server, HttpTransport() as transport:
            with pytest.raises(ContentLengthError):
                await transport.content_length(server.url)

    @pytest.mark.asyncio
    async def test_not_found(self, range_server, payload):
        async with range_server(payload) as server, HttpTransport() as transport:
            with pytest.raises(ContentLengthError) as exc_info:
                await transport.content_length(server.url + "-missing")
        assert exc_info.value.details["status"] == 404

    def test_requires_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            HttpTransport().get("http://example.com/")

    def test_http_proxy_is_passed_per_request(self):
        transport = HttpTransport(NetworkConfig(proxy_url="http://127.0.0.1:3128"))
        assert not transport.is_socks
        assert transport.proxy == "http://127.0.0.1:3128"

    def test_socks_proxy_uses_connector(self):
        transport = HttpTransport(NetworkConfig(proxy_url="socks5h://127.0.0.1:9050"))
        assert transport.is_socks
        assert transport.proxy is None

    def test_unsupported_proxy_scheme(self):
        with pytest.raises(ValueError, match="unsupported proxy scheme"):
            NetworkConfig(proxy_url="ftp://127.0.0.1:21")

    def test_timeouts_from_config(self):
        transport = HttpTransport(NetworkConfig(connect_timeout=5, read_timeout=7))
        assert transport.timeout.connect == 5
        assert transport.timeout.sock_read == 7
        assert transport.timeout.total is None
