"""
Catalogue endpoints: masked playlist, channel list and groups.
None of them consume a playback slot.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from iptv_relay.auth import Principal, require_principal
from iptv_relay.components import RelayComponents, get_components
from iptv_relay.models.channel import ChannelPage, GroupList

router = APIRouter(tags=["channels"])


@router.get("/playlist.m3u")
async def get_playlist(
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    Full playlist with every stream URL masked.
    The caller's bearer is embedded so plain players can authenticate.
    """
    masked = await relay.catalogue.masked_playlist(principal.token)
    return Response(
        content=masked,
        media_type="application/x-mpegURL",
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.get("/api/channels", response_model=ChannelPage)
async def list_channels(
    offset: int = Query(0, description="Index of the first channel"),
    limit: Optional[int] = Query(None, description="Page size (default 1000, max 5000)"),
    q: Optional[str] = Query(None, description="Search in channel and group names"),
    group: Optional[str] = Query(None, description="Exact group title"),
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    List channels with filtering and pagination.

    - **q**: case-insensitive substring of the name or group
    - **group**: exact group title from /api/channels/groups
    """
    return await relay.catalogue.channels_page(
        principal.token, offset=offset, limit=limit, q=q, group=group
    )


@router.get("/api/channels/groups", response_model=GroupList)
async def list_groups(
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    List channel groups with counts.
    """
    return GroupList(groups=await relay.catalogue.groups())
