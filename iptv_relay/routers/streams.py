"""
Secure streaming endpoint.
All streams are proxied to hide original URLs.
"""
from fastapi import APIRouter, Depends, Request

from iptv_relay.auth import Principal, client_ip, require_principal
from iptv_relay.components import RelayComponents, get_components

router = APIRouter(tags=["streams"])


@router.get("/stream/{token}")
async def get_stream(
    token: str,
    request: Request,
    principal: Principal = Depends(require_principal),
    relay: RelayComponents = Depends(get_components),
):
    """
    Relay a masked stream.

    Manifests come back rewritten so segments, keys and variants also go
    through the relay; anything else is piped byte for byte.
    """
    return await relay.relay.relay(
        token,
        user_id=principal.user_id,
        caller_token=principal.token,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        session_hint=request.query_params.get("sid", "").strip(),
        range_header=request.headers.get("range"),
    )
