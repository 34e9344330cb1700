"""
Xtream Codes API adapter (player_api.php).
Turns live and VOD listings into catalogue entries.
"""
import asyncio
import logging
import re
from typing import Any, Optional

from iptv_relay.config import Settings
from iptv_relay.errors import UpstreamUnavailable
from iptv_relay.models.channel import CatalogueEntry
from iptv_relay.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)


def array_from_payload(data: Any, candidate_keys: tuple[str, ...] = ()) -> list:
    """Xtream panels answer either a bare list or a dict wrapping one."""
    if not data:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in candidate_keys:
            if isinstance(data.get(key), list):
                return data[key]
        return [v for v in data.values() if isinstance(v, dict)]
    return []


def _first(item: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return default


async def gather_or_cancel(*aws):
    """Like asyncio.gather, but a failure cancels and awaits the other jobs."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class XtreamClient:
    """Client for an Xtream Codes panel."""

    def __init__(self, settings: Settings, upstream: UpstreamClient):
        self.base_url = (settings.xtream_base_url or "").rstrip("/")
        self.username = settings.xtream_username or ""
        self.password = settings.xtream_password or ""
        self.live_format = "ts" if settings.xtream_live_format.lower() == "ts" else "m3u8"
        self.include_vod = settings.xtream_include_vod
        self.upstream = upstream

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/player_api.php"

    def build_live_url(self, stream_id: Any) -> str:
        return f"{self.base_url}/live/{self.username}/{self.password}/{stream_id}.{self.live_format}"

    def build_vod_url(self, stream_id: Any, container_ext: Optional[str] = "mp4") -> str:
        ext = re.sub(r"[^a-z0-9]", "", str(container_ext or "mp4").lower()) or "mp4"
        return f"{self.base_url}/movie/{self.username}/{self.password}/{stream_id}.{ext}"

    async def fetch(self, action: Optional[str] = None, required: bool = False) -> Any:
        """
        Call the panel API. A failed answer is None, or raises
        ``UpstreamUnavailable`` when ``required``.
        """
        params = {"username": self.username, "password": self.password}
        if action:
            params["action"] = action
        data = await self.upstream.get_json(self.api_url, params=params)
        if data is None and required:
            raise UpstreamUnavailable(f"Xtream {action or 'account'} request failed")
        return data

    async def _categories(self, action: str, keys: tuple[str, ...]) -> dict[str, str]:
        categories = {}
        for item in array_from_payload(await self.fetch(action), keys):
            if not isinstance(item, dict):
                continue
            cat_id = str(_first(item, "category_id", "id", default="")).strip()
            name = str(_first(item, "category_name", "name", default="")).strip()
            if cat_id and name:
                categories[cat_id] = name
        return categories

    async def live_categories(self) -> dict[str, str]:
        return await self._categories("get_live_categories", ("categories", "live_categories"))

    async def vod_categories(self) -> dict[str, str]:
        return await self._categories("get_vod_categories", ("categories", "vod_categories"))

    async def live_streams(self, required: bool = True) -> list:
        return array_from_payload(await self.fetch("get_live_streams", required), ("live_streams", "streams"))

    async def vod_streams(self, required: bool = True) -> list:
        return array_from_payload(
            await self.fetch("get_vod_streams", required), ("vod_streams", "movie_streams", "streams")
        )

    def _live_entry(self, item: dict, categories: dict[str, str]) -> CatalogueEntry:
        stream_id = _first(item, "num_id", "stream_id", "id", default=0)
        category_id = str(_first(item, "category_id", "cid", default="")).strip()
        return CatalogueEntry(
            id=f"live-{stream_id}",
            type="live",
            name=str(item.get("name") or "Channel"),
            tvg_id=str(_first(item, "epg_channel_id", default=stream_id)),
            logo_url=str(_first(item, "stream_icon", "logo", default="")),
            group_title=str(categories.get(category_id) or item.get("category_name") or "Live"),
            format="ts" if self.live_format == "ts" else "hls",
            upstream_url=self.build_live_url(stream_id),
        )

    def _vod_entry(self, item: dict, categories: dict[str, str]) -> CatalogueEntry:
        stream_id = _first(item, "stream_id", "num_id", "id", default=0)
        category_id = str(_first(item, "category_id", "cid", default="")).strip()
        category = str(categories.get(category_id) or item.get("category_name") or "Films")
        return CatalogueEntry(
            id=f"movie-{stream_id}",
            type="movie",
            name=str(item.get("name") or "Film"),
            tvg_id=f"movie-{stream_id}",
            logo_url=str(_first(item, "stream_icon", "cover", "logo", default="")),
            group_title=f"Films / {category}",
            format="direct",
            upstream_url=self.build_vod_url(stream_id, item.get("container_extension")),
        )

    async def fetch_entries(self) -> list[CatalogueEntry]:
        """Fetch live (and optionally VOD) listings concurrently."""
        jobs = [self.live_streams(), self.live_categories()]
        if self.include_vod:
            jobs += [self.vod_streams(), self.vod_categories()]
        results = await gather_or_cancel(*jobs)

        live_streams, live_cats = results[0], results[1]
        vod_streams, vod_cats = (results[2], results[3]) if self.include_vod else ([], {})

        entries = [self._live_entry(s, live_cats) for s in live_streams if isinstance(s, dict)]
        entries += [self._vod_entry(s, vod_cats) for s in vod_streams if isinstance(s, dict)]
        logger.info(f"Fetched {len(entries)} Xtream entries ({len(live_streams)} live, {len(vod_streams)} VOD)")
        return entries

    async def debug_summary(self) -> dict:
        """Account, server and listing counts. Credentials are not echoed."""
        account, live_streams, live_cats, vod_streams, vod_cats = await gather_or_cancel(
            self.fetch(),
            self.live_streams(required=False),
            self.live_categories(),
            self.vod_streams(required=False) if self.include_vod else asyncio.sleep(0, result=[]),
            self.vod_categories() if self.include_vod else asyncio.sleep(0, result={}),
        )
        account = account if isinstance(account, dict) else {}
        user_info = account.get("user_info") or {}
        server_info = account.get("server_info") or {}

        return {
            "configured": True,
            "include_vod": self.include_vod,
            "live": {"streams": len(live_streams), "categories": len(live_cats)},
            "vod": {"streams": len(vod_streams), "categories": len(vod_cats)},
            "account": {
                "auth": user_info.get("auth"),
                "status": user_info.get("status"),
                "max_connections": user_info.get("max_connections"),
                "active_cons": user_info.get("active_cons"),
                "exp_date": user_info.get("exp_date"),
            },
            "server": {
                "server_protocol": server_info.get("server_protocol"),
                "timezone": server_info.get("timezone"),
            },
        }
