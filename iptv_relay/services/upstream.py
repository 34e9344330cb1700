"""
Outbound HTTP towards the content provider.

Every request carries an explicit timeout. Media streams are opened
lazily and must be closed by the caller through ``UpstreamStream.aclose``.
"""
import logging
from typing import Any, AsyncIterator, Iterable, Optional
from urllib.parse import urlparse

import httpx

from iptv_relay.config import Settings
from iptv_relay.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class UpstreamPolicy:
    """Decides which decoded URLs the relay may contact."""

    def __init__(self, allowed_hosts: Iterable[str] = (), strict: bool = True):
        self.allowed_hosts = {h.lower() for h in allowed_hosts if h}
        self.strict = strict

    @classmethod
    def from_settings(cls, settings: Settings) -> "UpstreamPolicy":
        policy = cls(settings.allowed_upstream_hosts, settings.strict_upstream_allowlist)
        if not policy.strict:
            logger.warning("Upstream allow-list disabled: any http(s) host will be relayed")
        elif not policy.allowed_hosts:
            logger.warning("Upstream allow-list is empty: every stream request will be refused")
        return policy

    def is_allowed(self, url: str) -> bool:
        try:
            parsed = urlparse((url or "").strip())
            host = (parsed.hostname or "").lower()
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https") or not host:
            return False
        if not self.strict:
            return True
        return host in self.allowed_hosts


class UpstreamStream:
    """An open upstream response being piped to a client."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self.response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_raw(self) -> AsyncIterator[bytes]:
        """Body exactly as sent upstream, content encoding untouched."""
        async for chunk in self.response.aiter_raw(chunk_size=CHUNK_SIZE):
            yield chunk

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self.response.aclose()
        finally:
            await self._client.aclose()


class UpstreamClient:
    """Factory for short-lived httpx clients with the relay's defaults."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.connect_timeout = settings.connect_timeout_seconds
        self.api_timeout = settings.api_timeout_seconds
        self.manifest_timeout = settings.manifest_timeout_seconds
        self.user_agent = settings.upstream_user_agent
        self._transport = transport

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        )

    async def get(
        self,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Buffered GET; returns the response whatever its status."""
        seconds = timeout or self.api_timeout
        async with self._client(httpx.Timeout(seconds, connect=self.connect_timeout)) as client:
            return await client.get(url, params=params, headers=headers)

    async def get_json(self, url: str, params: Optional[dict] = None) -> Optional[Any]:
        """JSON GET for provider APIs. Non-2xx or non-JSON answers yield None."""
        response = await self.get(url, params=params, timeout=self.api_timeout)
        if not response.is_success:
            logger.warning(f"Provider API answered {response.status_code}")
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Provider API returned a non-JSON body")
            return None

    async def fetch_manifest(self, url: str) -> httpx.Response:
        """Fetch a playlist as text. Raises ``UpstreamUnavailable`` on any failure."""
        try:
            response = await self.get(
                url,
                headers={"Accept": "application/vnd.apple.mpegurl, application/x-mpegURL, text/plain, */*"},
                timeout=self.manifest_timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Manifest fetch failed: {type(e).__name__}")
            raise UpstreamUnavailable("Stream error")
        if not response.is_success:
            logger.warning(f"Manifest fetch answered {response.status_code}")
            raise UpstreamUnavailable()
        return response

    async def open_stream(self, url: str, range_header: Optional[str] = None) -> UpstreamStream:
        """Open a byte stream. Read timeout applies between chunks only."""
        headers = {"Accept": "*/*"}
        if range_header:
            headers["Range"] = range_header
        client = self._client(httpx.Timeout(self.manifest_timeout, connect=self.connect_timeout))
        try:
            request = client.build_request("GET", url, headers=headers)
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"Stream open failed: {type(e).__name__}")
            raise UpstreamUnavailable("Stream error")

        if not response.is_success:
            logger.warning(f"Stream open answered {response.status_code}")
            await response.aclose()
            await client.aclose()
            raise UpstreamUnavailable()
        return UpstreamStream(client, response)
