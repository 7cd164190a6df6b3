"""Pytest configuration and shared fixtures for chunkdl tests."""

from __future__ import annotations

import asyncio
import logging
import re

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import chunkdl.config.config as config_module
from chunkdl.config.config import ENV_MAPPINGS


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async"),
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests"),
        ("cli", "marks tests as CLI tests"),
        ("core", "marks tests as core functionality tests"),
        ("state", "marks tests as state persistence tests"),
        ("merge", "marks tests as reassembly tests"),
        ("hooks", "marks tests as post-part hook tests"),
        ("config", "marks tests as configuration tests"),
        ("network", "marks tests as HTTP transport tests"),
        ("slow", "marks tests as slow"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep tests away from user config files and CHUNKDL_* variables."""
    for env_name in ENV_MAPPINGS:
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "_config_manager", None)
    yield
    config_module._config_manager = None  # noqa: SLF001


@pytest.fixture
def payload() -> bytes:
    """2500 bytes of non-repeating content."""
    return bytes((i * 7 + i // 251) % 256 for i in range(2500))


_RANGE_RE = re.compile(r"bytes=(\d+)-(\d+)")


class RangeServer:
    """In-process HTTP server serving one resource with Range support.

    Behaviour knobs:
        honor_range: Answer ranged GETs with 206; otherwise always 200 + full body
        head_length: Send Content-Length on HEAD
        failures: Number of initial GETs answered with ``fail_status``
        fail_starts: Range start offsets that always get ``fail_status``
        short_body_starts: Range start offsets answered with a truncated body
        stall: Stream the first block then hang until the server closes
        content_encoding: Label every response with this Content-Encoding;
            the payload is served verbatim, as already-encoded bytes
    """

    def __init__(
        self,
        payload: bytes,
        path: str = "/files/data.bin",
        *,
        honor_range: bool = True,
        head_length: bool = True,
        failures: int = 0,
        fail_status: int = 503,
        fail_starts: set[int] | None = None,
        short_body_starts: set[int] | None = None,
        stall: bool = False,
        content_encoding: str | None = None,
    ):
        self.payload = payload
        self.path = path
        self.honor_range = honor_range
        self.head_length = head_length
        self.failures = failures
        self.fail_status = fail_status
        self.fail_starts = fail_starts or set()
        self.short_body_starts = set(short_body_starts or ())
        self.stall = stall
        self.content_encoding = content_encoding
        self.accept_encodings: list[str | None] = []
        self.ranges: list[str | None] = []
        self.head_requests = 0
        self._release = asyncio.Event()
        self._server: TestServer | None = None

    @property
    def url(self) -> str:
        assert self._server is not None
        return str(self._server.make_url(self.path))

    async def __aenter__(self) -> RangeServer:
        app = web.Application()
        app.router.add_route("HEAD", self.path, self._head)
        app.router.add_get(self.path, self._get, allow_head=False)
        self._server = TestServer(app)
        await self._server.start_server()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._release.set()
        if self._server is not None:
            await self._server.close()

    async def _head(self, request: web.Request) -> web.StreamResponse:
        self.head_requests += 1
        self.accept_encodings.append(request.headers.get("Accept-Encoding"))
        response = web.StreamResponse(status=200, headers=self._encoding_headers())
        if self.head_length:
            response.content_length = len(self.payload)
        await response.prepare(request)
        return response

    async def _get(self, request: web.Request) -> web.StreamResponse:
        header = request.headers.get("Range")
        self.ranges.append(header)
        self.accept_encodings.append(request.headers.get("Accept-Encoding"))
        match = _RANGE_RE.fullmatch(header or "")
        start, end = (int(match.group(1)), int(match.group(2))) if match else (0, len(self.payload) - 1)

        if self.failures > 0:
            self.failures -= 1
            return web.Response(status=self.fail_status)
        if start in self.fail_starts:
            return web.Response(status=self.fail_status)

        if not self.honor_range:
            return web.Response(status=200, body=self.payload, headers=self._encoding_headers())

        body = self.payload[start : end + 1]
        if start in self.short_body_starts:
            self.short_body_starts.discard(start)
            body = body[: len(body) // 2]

        if self.stall:
            response = web.StreamResponse(status=206, headers=self._encoding_headers())
            response.content_length = len(body)
            await response.prepare(request)
            await response.write(body[:10])
            await self._release.wait()
            return response

        return web.Response(
            status=206,
            body=body,
            headers={
                "Content-Range": f"bytes {start}-{end}/{len(self.payload)}",
                **self._encoding_headers(),
            },
        )

    def _encoding_headers(self) -> dict[str, str]:
        if self.content_encoding is None:
            return {}
        return {"Content-Encoding": self.content_encoding}


@pytest.fixture
def range_server():
    """Factory for :class:`RangeServer`; use as ``async with range_server(data)``."""
    return RangeServer
