"""
End-to-end tests for the relay HTTP API.
"""
import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import ORIGIN_HOST, make_bearer, make_settings
from iptv_relay.main import create_app
from iptv_relay.services.relay import AdmissionTicket, RelayStreamingResponse
from iptv_relay.services.stream_sessions import SessionStore
from iptv_relay.services.upstream import UpstreamClient

PLAYLIST_URL = f"http://{ORIGIN_HOST}/get.php?type=m3u_plus"
MANIFEST_URL = f"http://{ORIGIN_HOST}/live/u/p/101.m3u8"
OTHER_MANIFEST_URL = f"http://{ORIGIN_HOST}/live/u/p/103.m3u8"
SEGMENT_URL = f"http://{ORIGIN_HOST}/live/u/p/seg1.ts"
TS_PAYLOAD = b"\x47" + b"\x00" * 187


@pytest.fixture
def make_client(upstream, sample_m3u_content, cipher, clock):
    upstream.add(PLAYLIST_URL, content=sample_m3u_content)
    clients = []

    def factory(**overrides):
        app = create_app(make_settings(**overrides), transport=upstream.transport, clock=clock, cipher=cipher)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def relay_path(masked_url):
    """Path and query of a masked link, for use with the test client."""
    parsed = urlparse(masked_url)
    return f"{parsed.path}?{parsed.query}" if parsed.query else parsed.path


def sessions_of(client):
    return client.app.state.relay.sessions


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "iptv-relay", "version": "1.0.0"}

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "no-referrer"


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/api/channels")
        assert response.status_code == 401
        assert response.json() == {"detail": "Token required"}

    def test_invalid_token(self, client):
        response = client.get("/api/channels", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid token"}

    def test_expired_token(self, client):
        expired = make_bearer(expires_in=-60)
        response = client.get("/api/channels", params={"token": expired})
        assert response.status_code == 401
        assert response.json() == {"detail": "Token expired"}

    def test_wrong_secret(self, client):
        forged = make_bearer(secret="not-the-secret")
        assert client.get("/api/channels", params={"token": forged}).status_code == 401

    def test_query_token_accepted(self, client, bearer):
        assert client.get("/api/channels", params={"token": bearer}).status_code == 200


class TestChannels:
    def test_list_channels_masks_urls(self, client, bearer):
        response = client.get("/api/channels?limit=2", headers={"Authorization": f"Bearer {bearer}"})
        assert response.status_code == 200

        data = response.json()
        assert data["total"] == 5
        assert len(data["channels"]) == 2
        first = data["channels"][0]
        assert first["name"] == "News 24"
        assert first["groupTitle"] == "News"
        assert first["tvgId"] == "news.fr"
        for channel in data["channels"]:
            assert ORIGIN_HOST not in channel["maskedStreamUrl"]
            assert channel["maskedStreamUrl"].startswith("http://relay.test/stream/")
        assert ORIGIN_HOST not in response.text

    def test_filters(self, client, bearer):
        data = client.get("/api/channels", params={"token": bearer, "group": "Sports"}).json()
        assert [c["name"] for c in data["channels"]] == ["Sport One", "Sport Two HD"]

    def test_groups(self, client, bearer):
        response = client.get("/api/channels/groups", params={"token": bearer})
        assert response.status_code == 200
        assert response.json()["groups"] == [
            {"title": "General", "count": 1},
            {"title": "Kids", "count": 1},
            {"title": "News", "count": 1},
            {"title": "Sports", "count": 2},
        ]

    def test_playlist(self, client, bearer):
        response = client.get("/playlist.m3u", params={"token": bearer})
        assert response.status_code == 200
        assert response.headers["content-type"].lower().startswith("application/x-mpegurl")
        assert response.headers["cache-control"] == "private, max-age=3600"
        assert ORIGIN_HOST not in response.text
        assert response.text.count(f"?token={bearer}") == 5

    def test_catalogue_listing_consumes_no_slot(self, client, bearer):
        client.get("/api/channels", params={"token": bearer})
        client.get("/playlist.m3u", params={"token": bearer})
        assert sessions_of(client).active_count() == 0

    def test_catalogue_failure(self, client, upstream, bearer):
        upstream.add(PLAYLIST_URL, status_code=500)
        response = client.get("/api/channels", params={"token": bearer})
        assert response.status_code == 500
        assert response.json() == {"detail": "Failed to load channels"}

    def test_xtream_outage_is_a_text_error(self, make_client, bearer):
        client = make_client(
            playlist_url=None,
            xtream_base_url="http://panel.example",
            xtream_username="u",
            xtream_password="p",
        )
        response = client.get("/playlist.m3u", params={"token": bearer})
        assert response.status_code == 500
        assert response.text == "Failed to load channels"


class TestStreamRelay:
    def test_manifest_is_rewritten(self, client, upstream, cipher, bearer):
        upstream.add(MANIFEST_URL, content="#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4,\nseg1.ts\n")
        response = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
        assert response.headers["cache-control"] == "no-cache"
        assert ORIGIN_HOST not in response.text

        segment_link = response.text.split("\n")[3]
        parsed = urlparse(segment_link)
        assert cipher.decode(parsed.path.rsplit("/", 1)[-1]) == SEGMENT_URL
        params = parse_qs(parsed.query)
        assert params["token"] == [bearer]
        assert len(params["sid"][0]) == 32
        assert sessions_of(client).active_count("user-1") == 1

    def test_manifest_follows_redirect(self, client, upstream, cipher, bearer):
        upstream.add(MANIFEST_URL, status_code=302, headers={"Location": f"http://{ORIGIN_HOST}/hls/abc/index.m3u8"})
        upstream.add(f"http://{ORIGIN_HOST}/hls/abc/index.m3u8", content="#EXTM3U\nchunk_1.ts")

        response = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer})
        segment_link = response.text.split("\n")[1]
        token = urlparse(segment_link).path.rsplit("/", 1)[-1]
        assert cipher.decode(token) == f"http://{ORIGIN_HOST}/hls/abc/chunk_1.ts"

    def test_segment_is_piped_and_released(self, client, upstream, cipher, bearer):
        upstream.add(MANIFEST_URL, content="#EXTM3U\n#EXTINF:4,\nseg1.ts")
        upstream.add(SEGMENT_URL, content=TS_PAYLOAD, headers={"Content-Type": "video/mp2t"})

        manifest = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer})
        segment = client.get(relay_path(manifest.text.split("\n")[2]))

        assert segment.status_code == 200
        assert segment.content == TS_PAYLOAD
        assert segment.headers["content-type"] == "video/mp2t"
        assert segment.headers["content-length"] == str(len(TS_PAYLOAD))
        # TS connections give their slot back when the transfer ends
        assert sessions_of(client).active_count("user-1") == 0

    def test_range_is_forwarded(self, client, upstream, cipher, bearer):
        movie_url = f"http://{ORIGIN_HOST}/movie/u/p/900.mp4"
        upstream.add(movie_url, status_code=206, content=b"\x00" * 10, headers={
            "Content-Type": "video/mp4",
            "Content-Range": "bytes 0-9/1000",
            "Accept-Ranges": "bytes",
        })

        response = client.get(
            f"/stream/{cipher.encode(movie_url)}",
            params={"token": bearer},
            headers={"Range": "bytes=0-9"},
        )
        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 0-9/1000"
        assert response.headers["accept-ranges"] == "bytes"
        assert upstream.requests[-1].headers["range"] == "bytes=0-9"

    def test_invalid_stream_token(self, client, bearer):
        response = client.get("/stream/not-a-token", params={"token": bearer})
        assert response.status_code == 400
        assert response.text == "Invalid link"

    def test_host_not_allowed(self, client, upstream, cipher, bearer):
        response = client.get(f"/stream/{cipher.encode('http://evil.example/live.m3u8')}", params={"token": bearer})
        assert response.status_code == 403
        assert response.text == "Upstream refused"
        assert not any(r.url.host == "evil.example" for r in upstream.requests)

    def test_explicit_allowlist(self, make_client, upstream, cipher, bearer):
        client = make_client(upstream_allowlist="cdn.example, other.example")
        cdn_url = "http://cdn.example/live/7.m3u8"
        upstream.add(cdn_url, content="#EXTM3U\nseg.ts")
        response = client.get(f"/stream/{cipher.encode(cdn_url)}", params={"token": bearer})
        assert response.status_code == 200

    def test_user_limit(self, client, upstream, cipher, bearer):
        upstream.add(MANIFEST_URL, content="#EXTM3U\nseg1.ts")
        upstream.add(OTHER_MANIFEST_URL, content="#EXTM3U\nseg1.ts")

        assert client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer}).status_code == 200
        # Re-polling the same manifest reuses the slot
        assert client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer}).status_code == 200

        denied = client.get(f"/stream/{cipher.encode(OTHER_MANIFEST_URL)}", params={"token": bearer})
        assert denied.status_code == 429
        assert denied.text == "Too many simultaneous playbacks (1/1). Close a player and try again."

    def test_global_limit(self, make_client, upstream, cipher):
        client = make_client(max_global_streams=1)
        upstream.add(MANIFEST_URL, content="#EXTM3U\nseg1.ts")

        alice = make_bearer("alice")
        bob = make_bearer("bob")
        assert client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": alice}).status_code == 200

        denied = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bob})
        assert denied.status_code == 429
        assert denied.text.startswith("Too many streams on this relay (1/1).")

    def test_slot_expires_when_idle(self, client, upstream, cipher, clock, bearer):
        upstream.add(MANIFEST_URL, content="#EXTM3U\nseg1.ts")
        upstream.add(OTHER_MANIFEST_URL, content="#EXTM3U\nseg1.ts")

        client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer})
        clock.advance(91)
        assert client.get(f"/stream/{cipher.encode(OTHER_MANIFEST_URL)}", params={"token": bearer}).status_code == 200

    def test_upstream_error_releases_new_slot(self, client, upstream, cipher, bearer):
        upstream.add(MANIFEST_URL, status_code=500, content="provider stack trace at origin.example")
        response = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}", params={"token": bearer})

        assert response.status_code == 502
        assert response.text == "Stream unavailable"
        assert sessions_of(client).active_count("user-1") == 0

    def test_segment_error(self, client, cipher, bearer):
        response = client.get(f"/stream/{cipher.encode(SEGMENT_URL)}", params={"token": bearer})
        assert response.status_code == 502
        assert ORIGIN_HOST not in response.text

    def test_stream_requires_bearer(self, client, cipher):
        response = client.get(f"/stream/{cipher.encode(MANIFEST_URL)}")
        assert response.status_code == 401
        assert response.text == "Token required"


class TestStreamTeardown:
    """A TS relay frees its slot and its upstream connection however it ends."""

    SCOPE = {"type": "http", "method": "GET", "path": "/stream/x", "headers": [], "query_string": b""}

    async def open_relay(self, body, clock):
        async def handler(request):
            return httpx.Response(200, headers={"Content-Type": "video/mp2t"}, content=body())

        settings = make_settings()
        upstream = UpstreamClient(settings, transport=httpx.MockTransport(handler))
        stream = await upstream.open_stream(SEGMENT_URL)

        store = SessionStore(max_per_user=1, idle_ttl=90, clock=clock)
        result = store.try_acquire("user-1", SEGMENT_URL, "10.0.0.1|VLC")
        ticket = AdmissionTicket(store, "user-1", result, release_on_close=True, clock=clock)
        response = RelayStreamingResponse(stream, ticket, status_code=200, headers={"content-type": "video/mp2t"})
        return response, stream, store, ticket

    @pytest.mark.asyncio
    async def test_client_disconnect_mid_stream(self, clock):
        async def endless():
            while True:
                yield TS_PAYLOAD
                await asyncio.sleep(0)

        response, stream, store, ticket = await self.open_relay(endless, clock)
        got_bytes = asyncio.Event()

        async def send(message):
            if message["type"] == "http.response.body" and message.get("body"):
                got_bytes.set()

        async def receive():
            await got_bytes.wait()
            return {"type": "http.disconnect"}

        await asyncio.wait_for(response(self.SCOPE, receive, send), 5)

        assert ticket.released
        assert store.active_count("user-1") == 0
        assert stream.closed

    @pytest.mark.asyncio
    async def test_upstream_breaks_mid_body(self, clock):
        async def broken():
            yield TS_PAYLOAD
            raise httpx.ReadError("connection reset by peer")

        response, stream, store, ticket = await self.open_relay(broken, clock)
        messages = []

        async def send(message):
            messages.append(message)

        async def receive():
            await asyncio.sleep(30)
            return {"type": "http.disconnect"}

        await asyncio.wait_for(response(self.SCOPE, receive, send), 5)

        body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
        assert body == TS_PAYLOAD
        assert messages[-1].get("more_body", False) is False
        assert store.active_count("user-1") == 0
        assert stream.closed

    @pytest.mark.asyncio
    async def test_release_happens_once(self, clock):
        async def short():
            yield TS_PAYLOAD

        response, stream, store, ticket = await self.open_relay(short, clock)
        released = []
        release = store.release

        def counting_release(user_id, sid):
            released.append(sid)
            return release(user_id, sid)

        store.release = counting_release

        async def send(message):
            pass

        async def receive():
            await asyncio.sleep(30)
            return {"type": "http.disconnect"}

        await asyncio.wait_for(response(self.SCOPE, receive, send), 5)
        ticket.release()
        ticket.release_after_failure()

        assert released == [ticket.sid]
        assert stream.closed


class TestIpGuard:
    def test_blocked_after_repeated_failures(self, make_client, bearer):
        client = make_client(security_max_fails=3)
        for _ in range(3):
            assert client.get("/api/channels", params={"token": "garbage"}).status_code == 401

        blocked = client.get("/api/channels", params={"token": bearer})
        assert blocked.status_code == 403
        assert blocked.json() == {"detail": "Access temporarily blocked"}

        # Health checks stay reachable
        assert client.get("/health").status_code == 200

    def test_bad_stream_token_counts_as_failure(self, client, bearer):
        client.get("/stream/deadbeef", params={"token": bearer})
        assert client.app.state.relay.guard.failure_count("testclient") == 1

    def test_blocked_player_gets_text(self, make_client):
        client = make_client(security_max_fails=3)
        for _ in range(3):
            client.get("/stream/deadbeef", params={"token": "garbage"})

        blocked = client.get("/stream/deadbeef", params={"token": make_bearer()})
        assert blocked.status_code == 403
        assert blocked.text == "Access temporarily blocked"

    def test_block_expires(self, make_client, clock, bearer):
        client = make_client(security_max_fails=3, security_block_seconds=60)
        for _ in range(3):
            client.get("/api/channels", params={"token": "garbage"})
        clock.advance(61)
        assert client.get("/api/channels", params={"token": bearer}).status_code == 200


class TestDebugEndpoints:
    def test_disabled_by_default(self, client, bearer):
        assert client.get("/api/debug/hls-check", params={"token": bearer, "url": MANIFEST_URL}).status_code == 404
        assert client.get("/api/debug/xtream-summary", params={"token": bearer}).status_code == 404

    def test_hls_check(self, make_client, upstream, bearer):
        client = make_client(debug_hls_check=True)
        upstream.add(MANIFEST_URL, content="#EXTM3U\n#EXTINF:4,\nseg1.ts")
        upstream.add(SEGMENT_URL, status_code=206, content=TS_PAYLOAD)

        response = client.get("/api/debug/hls-check", params={"token": bearer, "url": MANIFEST_URL})
        assert response.json() == {"ok": True, "playlist_status": 200, "first_segment_status": 206}

    def test_hls_check_refuses_foreign_hosts(self, make_client, bearer):
        client = make_client(debug_hls_check=True)
        response = client.get("/api/debug/hls-check", params={"token": bearer, "url": "http://evil.example/a.m3u8"})
        assert response.status_code == 403

    def test_hls_check_requires_url(self, make_client, bearer):
        client = make_client(debug_hls_check=True)
        assert client.get("/api/debug/hls-check", params={"token": bearer}).status_code == 400

    def test_xtream_summary_without_xtream(self, make_client, bearer):
        client = make_client(debug_xtream_check=True)
        response = client.get("/api/debug/xtream-summary", params={"token": bearer})
        assert response.status_code == 200
        assert response.json()["configured"] is False
