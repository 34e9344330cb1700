"""
Development diagnostics for the upstream provider.
Both endpoints answer 404 unless enabled in settings.
"""
import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from iptv_relay.auth import Principal, client_ip, require_principal
from iptv_relay.components import RelayComponents, get_components
from iptv_relay.errors import UpstreamRefused
from iptv_relay.services.playlist_rewriter import resolve_reference

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/debug", tags=["debug"])


@router.get("/hls-check")
async def hls_check(
    request: Request,
    url: str = Query("", description="Upstream playlist URL"),
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    Check that a provider playlist and its first segment are reachable.
    """
    if not relay.settings.debug_hls_check:
        raise HTTPException(status_code=404, detail="Not found")

    url = url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="Missing url")
    if not relay.policy.is_allowed(url):
        relay.guard.register_failed_attempt(client_ip(request))
        raise UpstreamRefused()

    try:
        playlist = await relay.upstream.get(url, timeout=relay.upstream.api_timeout)
        if not playlist.is_success:
            return {"ok": False, "playlist_status": playlist.status_code}

        first_uri = next(
            (l.strip() for l in playlist.text.splitlines() if l.strip() and not l.strip().startswith("#")),
            None,
        )
        first_url = resolve_reference(first_uri, str(playlist.url)) if first_uri else None
        if not first_url:
            return {"ok": False, "playlist_status": playlist.status_code, "error": "No segment URI found"}

        segment = await relay.upstream.get(
            first_url, headers={"Range": "bytes=0-65535"}, timeout=relay.upstream.api_timeout
        )
    except httpx.HTTPError as e:
        return {"ok": False, "error": type(e).__name__}

    return {
        "ok": segment.is_success,
        "playlist_status": playlist.status_code,
        "first_segment_status": segment.status_code,
    }


@router.get("/xtream-summary")
async def xtream_summary(
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    Live/VOD counts and account limits reported by the Xtream panel.
    """
    if not relay.settings.debug_xtream_check:
        raise HTTPException(status_code=404, detail="Not found")

    xtream = relay.catalogue.xtream
    if xtream is None:
        return {"configured": False, "include_vod": relay.settings.xtream_include_vod}

    try:
        return await xtream.debug_summary()
    except httpx.HTTPError as e:
        logger.error(f"Xtream summary failed: {type(e).__name__}")
        raise HTTPException(status_code=500, detail="Xtream check failed")
