"""
M3U Parser Service.
Parses upstream M3U playlists into catalogue entries and masks them.
"""
import re
from pathlib import Path
from typing import Callable
import logging

from iptv_relay.models.channel import CatalogueEntry

logger = logging.getLogger(__name__)

# key="value" pairs on an EXTINF line
ATTRIBUTE_PATTERN = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')

DIRECT_VIDEO_PATTERN = re.compile(r"\.(mp4|mkv|avi|mov|webm|m4v)(\?|$)", re.IGNORECASE)
TS_PATTERN = re.compile(r"\.ts(\?|$)", re.IGNORECASE)


def is_manifest_url(url: str) -> bool:
    lowered = (url or "").lower()
    return ".m3u8" in lowered or lowered.endswith(".m3u")


def is_ts_url(url: str) -> bool:
    return bool(TS_PATTERN.search(url or ""))


def is_direct_video_url(url: str) -> bool:
    return bool(DIRECT_VIDEO_PATTERN.search(url or ""))


def stream_format(url: str) -> str:
    if is_manifest_url(url):
        return "hls"
    if is_ts_url(url):
        return "ts"
    return "direct"


def _is_http_url(line: str) -> bool:
    return line.startswith("http://") or line.startswith("https://")


class M3UParser:
    """Parse M3U playlist text."""

    def parse_extinf(self, line: str) -> dict:
        """Attributes and display name of an ``#EXTINF`` line."""
        attributes = {k.lower(): v for k, v in ATTRIBUTE_PATTERN.findall(line)}

        # Display name follows the first comma outside quoted attributes
        _, comma, name = ATTRIBUTE_PATTERN.sub("", line).partition(",")
        name = name.strip() if comma else ""

        return {
            "name": name or "Channel",
            "tvg_id": attributes.get("tvg-id", ""),
            "logo_url": attributes.get("tvg-logo", ""),
            "group_title": attributes.get("group-title", "") or "General",
        }

    def parse(self, content: str) -> list[CatalogueEntry]:
        """
        Parse playlist text into catalogue entries.

        Each ``#EXTINF`` is paired with the next http(s) line; other
        directives in between (``#EXTVLCOPT``, ``#EXTGRP``) are skipped.
        Entry ids are the running index, stable for a given playlist.
        """
        entries = []
        current_info = None

        for raw_line in (content or "").splitlines():
            line = raw_line.strip()

            if line.startswith("#EXTINF"):
                current_info = self.parse_extinf(line)

            elif line and not line.startswith("#") and current_info:
                if _is_http_url(line):
                    entries.append(CatalogueEntry(
                        id=str(len(entries)),
                        type=self._entry_type(line),
                        format=stream_format(line),
                        upstream_url=line,
                        **current_info,
                    ))
                current_info = None

        logger.info(f"Parsed {len(entries)} entries from M3U playlist")
        return entries

    def parse_file(self, filepath: str | Path) -> list[CatalogueEntry]:
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"M3U file not found: {filepath}")
        return self.parse(filepath.read_text(encoding="utf-8", errors="ignore"))

    def mask(self, content: str, mask_url: Callable[[str], str]) -> str:
        """
        Replace each stream URL line with ``mask_url(url)``.
        Directives are kept verbatim; non-http references are dropped.
        """
        masked_lines = []

        for line in (content or "").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                masked_lines.append(line)
            elif _is_http_url(stripped):
                masked_lines.append(mask_url(stripped))

        return "\n".join(masked_lines)

    def _entry_type(self, url: str) -> str:
        if "/movie/" in url.lower() or is_direct_video_url(url):
            return "movie"
        return "live"
