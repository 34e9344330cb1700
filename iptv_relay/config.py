"""
Configuration management for the IPTV relay.
Uses pydantic-settings for environment variable loading.
"""
from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _host_of(url: Optional[str]) -> str:
    if not url:
        return ""
    try:
        return (urlparse(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    app_name: str = "IPTV Relay"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"  # development | production

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # Externally visible origin of this proxy, used in masked links
    proxy_url: str = "http://localhost:8000"

    # CORS Configuration
    cors_origins: list[str] = ["*"]

    # Rate Limiting (0 = disabled)
    rate_limit_per_minute: int = 120

    # Token cipher. Without a key an ephemeral one is generated (development only)
    encryption_key: Optional[str] = None
    encryption_salt: str = "salt"

    # Bearer verification (JWT shared with the account backend)
    jwt_secret: Optional[str] = None
    jwt_algorithms: list[str] = ["HS256"]

    # Upstream source: Xtream API takes precedence over a static playlist
    xtream_base_url: Optional[str] = None
    xtream_username: Optional[str] = None
    xtream_password: Optional[str] = None
    xtream_live_format: str = "m3u8"  # m3u8 | ts
    xtream_include_vod: bool = True
    playlist_file: Optional[str] = None
    playlist_url: Optional[str] = None

    # Cache Configuration
    catalogue_ttl_seconds: int = 6 * 3600

    # Stream admission
    max_streams_per_user: int = 1
    max_global_streams: int = 0  # 0 = unbounded
    stream_session_ttl_seconds: int = 90
    stream_session_cleanup_seconds: int = 15

    # IP reputation guard
    security_fail_window_seconds: int = 300
    security_max_fails: int = 12
    security_block_seconds: int = 900
    security_cleanup_seconds: int = 60

    # Upstream host allow-list (comma-separated hostnames)
    upstream_allowlist: str = ""
    strict_upstream_allowlist: bool = True

    # Upstream timeouts
    connect_timeout_seconds: float = 15.0
    api_timeout_seconds: float = 15.0
    manifest_timeout_seconds: float = 30.0
    upstream_user_agent: str = "VLC/3.0.0"

    # Development-only diagnostics
    debug_hls_check: bool = False
    debug_xtream_check: bool = False

    # Pydantic V2 configuration
    model_config = SettingsConfigDict(env_prefix="IPTV_", env_file=".env", extra="ignore")

    @field_validator("max_streams_per_user")
    @classmethod
    def _at_least_one_stream(cls, v: int) -> int:
        return max(1, v)

    @field_validator("stream_session_ttl_seconds")
    @classmethod
    def _min_session_ttl(cls, v: int) -> int:
        return max(15, v)

    @field_validator("stream_session_cleanup_seconds")
    @classmethod
    def _min_session_cleanup(cls, v: int) -> int:
        return max(5, v)

    @field_validator("security_fail_window_seconds", "security_block_seconds")
    @classmethod
    def _min_guard_window(cls, v: int) -> int:
        return max(30, v)

    @field_validator("security_max_fails")
    @classmethod
    def _min_fails(cls, v: int) -> int:
        return max(3, v)

    @field_validator("security_cleanup_seconds")
    @classmethod
    def _min_guard_cleanup(cls, v: int) -> int:
        return max(15, v)

    @field_validator("proxy_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def xtream_enabled(self) -> bool:
        return bool(self.xtream_base_url and self.xtream_username and self.xtream_password)

    @property
    def allowed_upstream_hosts(self) -> set[str]:
        """Configured hosts plus the hosts of the configured upstream sources."""
        configured = {h.strip().lower() for h in self.upstream_allowlist.split(",") if h.strip()}
        derived = {_host_of(self.xtream_base_url), _host_of(self.playlist_url)}
        return configured | {h for h in derived if h}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
