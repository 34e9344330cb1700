"""
Catalogue cache.

Holds the upstream channel list as immutable generations. A generation is
built from the Xtream API or an M3U playlist, kept for a fixed TTL and then
replaced wholesale. Upstream URLs never leave this module unmasked.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from iptv_relay.config import Settings
from iptv_relay.errors import CatalogueUnavailable, ConfigurationError, UpstreamUnavailable
from iptv_relay.models.channel import CatalogueEntry, ChannelDescriptor, ChannelPage, GroupCount
from iptv_relay.services.m3u_parser import M3UParser
from iptv_relay.services.playlist_rewriter import PlaylistRewriter
from iptv_relay.services.upstream import UpstreamClient
from iptv_relay.services.xtream import XtreamClient

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 1000
MAX_PAGE_LIMIT = 5000


class CatalogueGeneration:
    """One fully built catalogue snapshot."""

    __slots__ = ("entries", "raw_playlist", "built_at")

    def __init__(self, entries: list[CatalogueEntry], raw_playlist: Optional[str], built_at: float):
        self.entries = tuple(entries)
        self.raw_playlist = raw_playlist
        self.built_at = built_at


class CatalogueCache:
    """TTL cache of catalogue entries with single-flight refresh."""

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamClient,
        rewriter: PlaylistRewriter,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.upstream = upstream
        self.rewriter = rewriter
        self.ttl = settings.catalogue_ttl_seconds
        self.parser = M3UParser()
        self.xtream = XtreamClient(settings, upstream) if settings.xtream_enabled else None
        self._clock = clock
        self._generation: Optional[CatalogueGeneration] = None
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def source(self) -> str:
        if self.xtream is not None:
            return "xtream"
        if self.settings.playlist_file:
            return "file"
        if self.settings.playlist_url:
            return "url"
        return "none"

    def _is_fresh(self, generation: Optional[CatalogueGeneration]) -> bool:
        return generation is not None and self._clock() - generation.built_at < self.ttl

    async def _fetch_playlist_text(self) -> str:
        if self.settings.playlist_file:
            path = Path(self.settings.playlist_file).expanduser().resolve()
            return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="ignore")
        response = await self.upstream.get(self.settings.playlist_url, timeout=self.upstream.manifest_timeout)
        if not response.is_success:
            raise CatalogueUnavailable()
        return response.text

    async def _build(self) -> CatalogueGeneration:
        if self.xtream is not None:
            entries = await self.xtream.fetch_entries()
            return CatalogueGeneration(entries, None, self._clock())

        if self.source == "none":
            raise ConfigurationError(
                "Configure IPTV_XTREAM_* or IPTV_PLAYLIST_FILE / IPTV_PLAYLIST_URL"
            )
        content = await self._fetch_playlist_text()
        return CatalogueGeneration(self.parser.parse(content), content, self._clock())

    async def get_generation(self) -> CatalogueGeneration:
        """Current generation, refreshing it when missing or expired."""
        generation = self._generation
        if self._is_fresh(generation):
            return generation

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            generation = self._generation
            if self._is_fresh(generation):
                return generation
            try:
                generation = await self._build()
            except (OSError, ValueError, httpx.HTTPError, ConfigurationError, UpstreamUnavailable) as e:
                logger.error(f"Catalogue refresh from {self.source} failed: {e}")
                raise CatalogueUnavailable()
            self._generation = generation
            self.refresh_count += 1
            logger.info(f"Catalogue refreshed from {self.source}: {len(generation.entries)} entries")
            return generation

    def invalidate(self):
        self._generation = None

    def describe(self, entry: CatalogueEntry, caller_token: str = "") -> ChannelDescriptor:
        return ChannelDescriptor(
            id=entry.id,
            type=entry.type,
            name=entry.name,
            tvg_id=entry.tvg_id,
            logo_url=entry.logo_url,
            group_title=entry.group_title,
            format=entry.format,
            masked_stream_url=self.rewriter.build_proxied_url(entry.upstream_url, caller_token),
        )

    async def channels_page(
        self,
        caller_token: str = "",
        offset: int = 0,
        limit: Optional[int] = None,
        q: Optional[str] = None,
        group: Optional[str] = None,
    ) -> ChannelPage:
        """Filtered, paginated and masked channel list."""
        offset = max(offset or 0, 0)
        limit = min(max(limit or DEFAULT_PAGE_LIMIT, 1), MAX_PAGE_LIMIT)
        needle = (q or "").strip().lower()
        group = (group or "").strip()

        generation = await self.get_generation()
        filtered = [
            e for e in generation.entries
            if (not group or e.group_title == group)
            and (not needle or needle in e.name.lower() or needle in e.group_title.lower())
        ]
        page = [self.describe(e, caller_token) for e in filtered[offset:offset + limit]]
        return ChannelPage(total=len(filtered), offset=offset, limit=limit, channels=page)

    async def groups(self) -> list[GroupCount]:
        generation = await self.get_generation()
        counts: dict[str, int] = {}
        for entry in generation.entries:
            title = entry.group_title or "General"
            counts[title] = counts.get(title, 0) + 1
        return [GroupCount(title=t, count=c) for t, c in sorted(counts.items(), key=lambda kv: kv[0].lower())]

    async def masked_playlist(self, caller_token: str = "") -> str:
        """Full playlist with every stream URL masked for ``caller_token``."""
        generation = await self.get_generation()

        def mask(url: str) -> str:
            return self.rewriter.build_proxied_url(url, caller_token)

        if generation.raw_playlist is not None:
            return self.parser.mask(generation.raw_playlist, mask)

        lines = ["#EXTM3U"]
        for entry in generation.entries:
            lines.append(
                f'#EXTINF:-1 tvg-id="{entry.tvg_id}" tvg-logo="{entry.logo_url}" '
                f'group-title="{entry.group_title}",{entry.name}'
            )
            lines.append(mask(entry.upstream_url))
        return "\n".join(lines)
