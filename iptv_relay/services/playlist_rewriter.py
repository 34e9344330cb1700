"""
HLS/M3U manifest rewriting.
Every child reference is turned into a masked link back to the relay.
"""
import logging
import re
from typing import Optional
from urllib.parse import urlencode, urljoin, urlparse

from iptv_relay.services.token_cipher import TokenCipher

logger = logging.getLogger(__name__)

URI_ATTRIBUTE_PATTERN = re.compile(r'\bURI="([^"]+)"')


def resolve_reference(reference: str, base_url: str) -> Optional[str]:
    """Absolute http(s) URL for ``reference``, or None if it cannot be resolved."""
    try:
        absolute = urljoin(base_url, reference.strip())
        parsed = urlparse(absolute)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


class PlaylistRewriter:
    """Rewrite manifests so players only ever talk to the relay."""

    def __init__(self, cipher: TokenCipher, proxy_url: str):
        self.cipher = cipher
        self.proxy_url = proxy_url.rstrip("/")

    def build_proxied_url(self, upstream_url: str, caller_token: str = "", session_hint: str = "") -> str:
        params = {}
        if caller_token:
            params["token"] = caller_token
        if session_hint:
            params["sid"] = session_hint
        query = urlencode(params)
        masked = f"{self.proxy_url}/stream/{self.cipher.encode(upstream_url)}"
        return f"{masked}?{query}" if query else masked

    def _rewrite_uri_attributes(self, line: str, base_url: str, caller_token: str, session_hint: str) -> str:
        """Rewrite URI="..." attributes (keys, init maps, i-frame playlists)."""
        resolved = []
        for match in URI_ATTRIBUTE_PATTERN.finditer(line):
            absolute = resolve_reference(match.group(1), base_url)
            if absolute is None:
                return line
            resolved.append(absolute)
        if not resolved:
            return line

        replacements = iter(resolved)
        return URI_ATTRIBUTE_PATTERN.sub(
            lambda _: f'URI="{self.build_proxied_url(next(replacements), caller_token, session_hint)}"',
            line,
        )

    def rewrite(self, manifest_text: str, base_url: str, caller_token: str = "", session_hint: str = "") -> str:
        lines = (manifest_text or "").splitlines()
        rewritten_lines = []

        for line in lines:
            stripped = line.strip()
            if not stripped:
                rewritten_lines.append(line)
                continue

            if stripped.startswith("#"):
                if "URI=" in stripped:
                    line = self._rewrite_uri_attributes(line, base_url, caller_token, session_hint)
                rewritten_lines.append(line)
                continue

            # Segment or variant playlist
            absolute = resolve_reference(stripped, base_url)
            if absolute is None:
                logger.debug("Leaving unresolvable manifest line untouched")
                rewritten_lines.append(line)
                continue
            rewritten_lines.append(self.build_proxied_url(absolute, caller_token, session_hint))

        return "\n".join(rewritten_lines)
