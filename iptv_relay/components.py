"""
Process-wide relay components.

Built once per application by ``build_components`` and stored on
``app.state.relay``. Nothing here is a module-level singleton, so tests can
build isolated instances with their own clock and upstream transport.
"""
import time
from typing import Callable, Optional

import httpx
from fastapi import Request

from iptv_relay.auth import BearerAuthenticator
from iptv_relay.config import Settings
from iptv_relay.services.catalogue import CatalogueCache
from iptv_relay.services.ip_guard import IpReputationGuard
from iptv_relay.services.playlist_rewriter import PlaylistRewriter
from iptv_relay.services.relay import StreamRelayService
from iptv_relay.services.stream_sessions import SessionStore
from iptv_relay.services.token_cipher import TokenCipher
from iptv_relay.services.upstream import UpstreamClient, UpstreamPolicy


class RelayComponents:
    """Everything a request handler needs, wired together."""

    def __init__(
        self,
        settings: Settings,
        cipher: TokenCipher,
        guard: IpReputationGuard,
        sessions: SessionStore,
        upstream: UpstreamClient,
        policy: UpstreamPolicy,
        rewriter: PlaylistRewriter,
        catalogue: CatalogueCache,
        relay: StreamRelayService,
        authenticator: BearerAuthenticator,
    ):
        self.settings = settings
        self.cipher = cipher
        self.guard = guard
        self.sessions = sessions
        self.upstream = upstream
        self.policy = policy
        self.rewriter = rewriter
        self.catalogue = catalogue
        self.relay = relay
        self.authenticator = authenticator


def build_components(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
    cipher: Optional[TokenCipher] = None,
) -> RelayComponents:
    cipher = cipher or TokenCipher.from_settings(settings)
    guard = IpReputationGuard.from_settings(settings, clock=clock)
    sessions = SessionStore.from_settings(settings, clock=clock)
    upstream = UpstreamClient(settings, transport=transport)
    policy = UpstreamPolicy.from_settings(settings)
    rewriter = PlaylistRewriter(cipher, settings.proxy_url)
    catalogue = CatalogueCache(settings, upstream, rewriter, clock=clock)
    relay = StreamRelayService(cipher, policy, sessions, guard, upstream, rewriter)
    authenticator = BearerAuthenticator(settings.jwt_secret, settings.jwt_algorithms, guard)
    return RelayComponents(
        settings=settings,
        cipher=cipher,
        guard=guard,
        sessions=sessions,
        upstream=upstream,
        policy=policy,
        rewriter=rewriter,
        catalogue=catalogue,
        relay=relay,
        authenticator=authenticator,
    )


def get_components(request: Request) -> RelayComponents:
    """FastAPI dependency returning the application's components."""
    return request.app.state.relay
