"""
Secure stream relay service.
Decrypts stream tokens, admits playback sessions and proxies upstream
content so the real origin is never exposed.
"""
import logging
import time
from typing import Callable, Optional

import anyio
import httpx
from fastapi.responses import Response, StreamingResponse

from iptv_relay.errors import AdmissionDenied, InvalidToken, UpstreamRefused, UpstreamUnavailable
from iptv_relay.models.session import AdmissionResult
from iptv_relay.services.ip_guard import IpReputationGuard
from iptv_relay.services.m3u_parser import is_direct_video_url, is_manifest_url, is_ts_url
from iptv_relay.services.playlist_rewriter import PlaylistRewriter
from iptv_relay.services.stream_sessions import SessionStore
from iptv_relay.services.token_cipher import TokenCipher
from iptv_relay.services.upstream import UpstreamClient, UpstreamPolicy, UpstreamStream

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
FORWARDED_HEADERS = ("content-type", "accept-ranges", "content-range", "content-length", "content-encoding")


def needs_admission(url: str) -> bool:
    return is_manifest_url(url) or is_ts_url(url) or is_direct_video_url(url)


class AdmissionTicket:
    """
    Handle on an admitted session for the lifetime of one request.

    ``release()`` is idempotent, so every path that ends a relay may call it.
    """

    def __init__(
        self,
        store: SessionStore,
        user_id: str,
        result: AdmissionResult,
        release_on_close: bool,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.user_id = user_id
        self.sid = result.sid
        self.created = result.created
        self.release_on_close = release_on_close
        self._clock = clock
        self._released = False
        self._last_touch = clock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self):
        if self._released:
            return
        self._released = True
        self.store.release(self.user_id, self.sid)

    def release_after_failure(self):
        """Give the slot back when this request created it or owns the connection."""
        if self.created or self.release_on_close:
            self.release()

    def keepalive(self):
        """Touch the session while bytes flow, at most every third of the TTL."""
        now = self._clock()
        if not self._released and now - self._last_touch >= self.store.idle_ttl / 3:
            self._last_touch = now
            self.store.touch(self.user_id, self.sid)


class RelayStreamingResponse(StreamingResponse):
    """Pipes an upstream stream and tears it down however the relay ends."""

    def __init__(self, stream: UpstreamStream, ticket: Optional[AdmissionTicket], **kwargs):
        self.stream = stream
        self.ticket = ticket
        super().__init__(self._pipe(), **kwargs)

    async def _pipe(self):
        try:
            async for chunk in self.stream.iter_raw():
                if self.ticket is not None:
                    self.ticket.keepalive()
                yield chunk
        except httpx.HTTPError as e:
            # Headers are already sent; the client sees a truncated body
            logger.warning(f"Upstream stream broke mid-relay: {type(e).__name__}")

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self.ticket is not None and self.ticket.release_on_close:
                self.ticket.release()
            with anyio.CancelScope(shield=True):
                await self.stream.aclose()


class StreamRelayService:
    """Relay one ``/stream/{token}`` request."""

    def __init__(
        self,
        cipher: TokenCipher,
        policy: UpstreamPolicy,
        sessions: SessionStore,
        guard: IpReputationGuard,
        upstream: UpstreamClient,
        rewriter: PlaylistRewriter,
    ):
        self.cipher = cipher
        self.policy = policy
        self.sessions = sessions
        self.guard = guard
        self.upstream = upstream
        self.rewriter = rewriter

    def resolve_target(self, token: str, client_ip: Optional[str]) -> str:
        """Decrypt and vet the upstream URL; failures count against the IP."""
        try:
            url = self.cipher.decode(token)
        except InvalidToken:
            self.guard.register_failed_attempt(client_ip)
            raise

        if not self.policy.is_allowed(url):
            self.guard.register_failed_attempt(client_ip)
            logger.warning(f"Refused upstream target for client {client_ip}")
            raise UpstreamRefused()
        return url

    def admit(self, user_id: str, url: str, fingerprint: str, session_hint: str) -> Optional[AdmissionTicket]:
        if not needs_admission(url):
            return None

        result = self.sessions.try_acquire(user_id, url, fingerprint, session_hint)
        if not result.allowed:
            if result.reason == "global_limit":
                message = f"Too many streams on this relay ({result.active_global}/{result.max_global})."
            else:
                message = f"Too many simultaneous playbacks ({result.active}/{result.max})."
            raise AdmissionDenied(result.reason, f"{message} Close a player and try again.")

        return AdmissionTicket(self.sessions, user_id, result, release_on_close=is_ts_url(url))

    async def relay(
        self,
        token: str,
        user_id: str,
        caller_token: str,
        client_ip: Optional[str] = None,
        user_agent: str = "",
        session_hint: str = "",
        range_header: Optional[str] = None,
    ) -> Response:
        url = self.resolve_target(token, client_ip)
        ticket = self.admit(user_id, url, f"{client_ip or ''}|{user_agent or ''}", session_hint)
        sid = ticket.sid if ticket is not None else ""

        if is_manifest_url(url):
            try:
                response = await self.upstream.fetch_manifest(url)
            except UpstreamUnavailable:
                if ticket is not None:
                    ticket.release_after_failure()
                raise

            # Resolve relative references against the post-redirect location
            rewritten = self.rewriter.rewrite(response.text, str(response.url), caller_token, sid)
            return Response(
                content=rewritten,
                media_type=MANIFEST_MEDIA_TYPE,
                headers={"Cache-Control": "no-cache"},
            )

        try:
            stream = await self.upstream.open_stream(url, range_header)
        except UpstreamUnavailable:
            if ticket is not None:
                ticket.release_after_failure()
            raise

        headers = {name: stream.headers[name] for name in FORWARDED_HEADERS if name in stream.headers}
        return RelayStreamingResponse(stream, ticket, status_code=stream.status_code, headers=headers)
