"""
Bearer verification for relay endpoints.

JWTs are issued by the account backend and share its secret; the relay only
verifies them. The token is accepted from ``Authorization: Bearer`` or the
``?token=`` query parameter so media players can carry it in plain URLs.
"""
import logging
from typing import Optional

import jwt
from fastapi import Request
from pydantic import BaseModel

from iptv_relay.errors import Unauthenticated

logger = logging.getLogger(__name__)


class Principal(BaseModel):
    """Authenticated caller: user id plus the raw bearer to re-embed in links."""
    user_id: str
    token: str


def extract_bearer(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header[:7].lower() == "bearer " and header[7:].strip():
        return header[7:].strip()
    return request.query_params.get("token") or None


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class BearerAuthenticator:
    """Verifies bearer JWTs and reports outcomes to the IP guard."""

    def __init__(self, secret: Optional[str], algorithms: list[str], guard):
        if not secret:
            logger.warning("IPTV_JWT_SECRET not set: every authenticated request will be rejected")
        self.secret = secret
        self.algorithms = algorithms
        self.guard = guard

    def verify(self, token: str) -> str:
        """Return the ``userId`` claim, or raise ``Unauthenticated``."""
        if not self.secret:
            raise Unauthenticated()
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except jwt.InvalidTokenError:
            raise Unauthenticated()

        user_id = claims.get("userId", claims.get("sub"))
        if user_id in (None, ""):
            raise Unauthenticated()
        return str(user_id)

    def authenticate(self, request: Request) -> Principal:
        ip = client_ip(request)
        token = extract_bearer(request)
        if not token:
            self.guard.register_failed_attempt(ip)
            raise Unauthenticated("Token required")
        try:
            user_id = self.verify(token)
        except Unauthenticated:
            self.guard.register_failed_attempt(ip)
            raise
        self.guard.register_successful_auth(ip)
        return Principal(user_id=user_id, token=token)


async def require_principal(request: Request) -> Principal:
    """FastAPI dependency for endpoints that need a bearer."""
    return request.app.state.relay.authenticator.authenticate(request)
