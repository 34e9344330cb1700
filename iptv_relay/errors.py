"""
Error taxonomy for the relay.

Every failure that reaches the HTTP boundary is one of these kinds. The
``detail`` string is what the client sees, so it never carries upstream
URLs, upstream bodies or stack traces.
"""
from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when the relay cannot run with the given settings."""


class RelayError(Exception):
    """Base class for errors mapped to an HTTP response."""

    status_code: int = 500
    detail: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class InvalidToken(RelayError):
    """Stream token is malformed or cannot be decrypted."""
    status_code = 400
    detail = "Invalid link"


class Unauthenticated(RelayError):
    status_code = 401
    detail = "Invalid token"


class UpstreamRefused(RelayError):
    """Decoded target is not on the upstream allow-list."""
    status_code = 403
    detail = "Upstream refused"


class IpBlocked(RelayError):
    status_code = 403
    detail = "Access temporarily blocked"


class AdmissionDenied(RelayError):
    """Session cap reached; ``reason`` is ``user_limit`` or ``global_limit``."""
    status_code = 429

    def __init__(self, reason: str, detail: str):
        self.reason = reason
        super().__init__(detail)


class UpstreamUnavailable(RelayError):
    status_code = 502
    detail = "Stream unavailable"


class CatalogueUnavailable(RelayError):
    status_code = 500
    detail = "Failed to load channels"
