"""
Pytest configuration and fixtures for IPTV relay tests.
"""
import time

import httpx
import jwt
import pytest

from iptv_relay.config import Settings
from iptv_relay.services.token_cipher import TokenCipher

JWT_SECRET = "test-jwt-secret"
ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"
PROXY_URL = "http://relay.test"
ORIGIN_HOST = "origin.example"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_bearer(user_id="user-1", secret=JWT_SECRET, expires_in=3600):
    """Sign a JWT the way the account backend does."""
    claims = {"userId": user_id, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def make_settings(**overrides) -> Settings:
    values = {
        "encryption_key": ENCRYPTION_KEY,
        "jwt_secret": JWT_SECRET,
        "proxy_url": PROXY_URL,
        "playlist_url": f"http://{ORIGIN_HOST}/get.php?type=m3u_plus",
        "rate_limit_per_minute": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="session")
def cipher():
    """Derive the test key once per session."""
    return TokenCipher.from_secret(ENCRYPTION_KEY)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def bearer():
    return make_bearer()


@pytest.fixture
def sample_m3u_content():
    """Sample upstream playlist with five entries."""
    return f"""#EXTM3U
#EXTINF:-1 tvg-id="news.fr" tvg-logo="http://logos.example/news.png" group-title="News",News 24
http://{ORIGIN_HOST}/live/u/p/101.m3u8
#EXTINF:-1 tvg-id="sport.fr" tvg-logo="" group-title="Sports",Sport One
#EXTVLCOPT:http-user-agent=VLC
http://{ORIGIN_HOST}/live/u/p/102.ts
#EXTINF:-1 tvg-id="sport2.fr" group-title="Sports",Sport Two HD
http://{ORIGIN_HOST}/live/u/p/103.m3u8
#EXTINF:-1 tvg-id="" group-title="Kids",Cartoons
http://{ORIGIN_HOST}/live/u/p/104.m3u8
#EXTINF:-1,Some Movie (2020)
http://{ORIGIN_HOST}/movie/u/p/900.mp4
"""


@pytest.fixture
def sample_m3u_file(sample_m3u_content, tmp_path):
    """Create a temporary M3U file for testing."""
    m3u_file = tmp_path / "provider.m3u"
    m3u_file.write_text(sample_m3u_content)
    return m3u_file


class UpstreamStub:
    """Routes upstream requests to canned responses and records them."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, url: str, status_code=200, content=b"", headers=None):
        if isinstance(content, str):
            content = content.encode()
        self.routes[url] = (status_code, content, headers or {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = str(request.url)
        if request.url.path.endswith("player_api.php"):
            # Xtream API calls are keyed by action, credentials aside
            key = f"{key.split('?')[0]}#{request.url.params.get('action', '')}"
        if key not in self.routes:
            return httpx.Response(404, content=b"not found upstream")
        status_code, content, headers = self.routes[key]
        headers = {"Content-Length": str(len(content)), **headers}
        return httpx.Response(status_code, stream=httpx.ByteStream(content), headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream():
    return UpstreamStub()
