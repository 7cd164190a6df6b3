"""HTTP transport built on aiohttp.

Owns the client session and exposes the two requests the downloader needs:
a HEAD probe for the resource size and a streamed GET with extra headers.
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
from aiohttp_socks import ProxyConnector as SocksProxyConnector

from chunkdl.models import NetworkConfig
from chunkdl.utils.exceptions import ContentLengthError
from chunkdl.utils.logging_config import get_logger


class HttpTransport:
    """aiohttp session wrapper configured from :class:`NetworkConfig`."""

    def __init__(self, config: NetworkConfig | None = None):
        """Initialize HTTP transport."""
        self.config = config or NetworkConfig()
        self.session: aiohttp.ClientSession | None = None
        self.timeout = aiohttp.ClientTimeout(
            total=None,
            connect=self.config.connect_timeout,
            sock_read=self.config.read_timeout,
        )
        self.logger = get_logger(__name__)

    @property
    def is_socks(self) -> bool:
        return bool(self.config.proxy_url) and self.config.proxy_url.startswith("socks")

    @property
    def proxy(self) -> str | None:
        """Proxy passed per request; SOCKS proxies live in the connector instead."""
        if self.is_socks:
            return None
        return self.config.proxy_url

    def _create_connector(self) -> aiohttp.BaseConnector | None:
        if not self.is_socks:
            return None
        url = self.config.proxy_url
        # socks5h: resolve host names on the proxy side
        rdns = url.startswith("socks5h://")
        if rdns:
            url = "socks5://" + url[len("socks5h://") :]
        return SocksProxyConnector.from_url(url, rdns=rdns)

    async def start(self) -> None:
        """Open the client session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=self._create_connector(),
                timeout=self.timeout,
                # Range offsets and Content-Length refer to the bytes on the wire.
                headers={
                    "User-Agent": self.config.user_agent,
                    "Accept-Encoding": "identity",
                },
                auto_decompress=False,
            )
            if self.config.proxy_url:
                self.logger.info("Using proxy %s", self.config.proxy_url)

    async def stop(self) -> None:
        """Close the client session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> HttpTransport:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _require_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            msg = "transport is not started"
            raise RuntimeError(msg)
        return self.session

    def get(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """Start a GET request; use the result as an async context manager."""
        return self._require_session().get(url, headers=headers, proxy=self.proxy)

    async def content_length(self, url: str) -> int:
        """Determine the resource size with a HEAD request.

        Raises:
            ContentLengthError: On network failure, a non-200 status or a
                missing or non-positive Content-Length

        """
        session = self._require_session()
        try:
            async with session.head(
                url, allow_redirects=True, proxy=self.proxy
            ) as response:
                if response.status != 200:
                    msg = f"HEAD {url} returned status {response.status}"
                    raise ContentLengthError(msg, {"status": response.status})
                length = response.content_length
        except aiohttp.ClientError as e:
            msg = f"HEAD {url} failed: {e}"
            raise ContentLengthError(msg) from e
        except asyncio.TimeoutError as e:
            msg = f"HEAD {url} timed out"
            raise ContentLengthError(msg) from e

        if not length or length <= 0:
            msg = f"could not determine content length of {url}"
            raise ContentLengthError(msg)
        self.logger.debug("HEAD %s: content length %d", url, length)
        return length
