"""
IPTV Relay - FastAPI application

Hides an upstream IPTV provider behind an authenticated proxy: masked
playlists, rewritten manifests and admission-controlled stream relaying.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from iptv_relay.auth import client_ip
from iptv_relay.components import build_components
from iptv_relay.config import Settings, get_settings
from iptv_relay.errors import IpBlocked, RelayError
from iptv_relay.routers import channels, debug, streams
from iptv_relay.services.token_cipher import TokenCipher

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-site",
}

# Paths whose errors are read by media players rather than the web UI
TEXT_ERROR_PREFIXES = ("/stream/", "/playlist.m3u")


def error_response(request: Request, status_code: int, detail: str):
    """Plain text for player-facing paths, JSON everywhere else."""
    if request.url.path.startswith(TEXT_ERROR_PREFIXES):
        return PlainTextResponse(detail, status_code=status_code)
    return JSONResponse(status_code=status_code, content={"detail": detail})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    relay = app.state.relay
    logger.info(f"Starting IPTV relay (catalogue source: {relay.catalogue.source})...")

    sweepers = [
        asyncio.create_task(relay.sessions.run_sweeper()),
        asyncio.create_task(relay.guard.run_sweeper()),
    ]

    yield

    logger.info("Shutting down IPTV relay...")
    for task in sweepers:
        task.cancel()
    await asyncio.gather(*sweepers, return_exceptions=True)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
    cipher: Optional[TokenCipher] = None,
) -> FastAPI:
    """
    Build the relay application.

    ``transport`` replaces the network for upstream calls and ``clock``
    drives session and IP-guard expiry; both exist for tests.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Authenticated IPTV stream relay",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.relay = build_components(settings, transport=transport, clock=clock, cipher=cipher)

    # Rate limiter
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_per_minute}/minute"],
        enabled=settings.rate_limit_per_minute > 0,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def ip_guard_middleware(request: Request, call_next):
        """Reject blocked IPs and stamp security headers."""
        if request.url.path != "/health" and app.state.relay.guard.is_blocked(client_ip(request)):
            response = error_response(request, IpBlocked.status_code, IpBlocked.detail)
        else:
            response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    # Include routers
    app.include_router(channels.router)
    app.include_router(streams.router)
    app.include_router(debug.router)

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {"status": "ok", "service": "iptv-relay", "version": settings.app_version}

    # Error handlers
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return error_response(request, exc.status_code, exc.detail)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "iptv_relay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
