"""
Stream admission data models.
"""
from typing import Optional

from pydantic import BaseModel


class StreamSession(BaseModel):
    """One admitted playback slot."""
    sid: str
    user_id: str
    stream_key: str
    fingerprint: str = ""
    last_seen_at: float


class AdmissionResult(BaseModel):
    """Outcome of an admission attempt plus counters for diagnostics."""
    allowed: bool
    sid: str = ""
    created: bool = False
    reason: Optional[str] = None  # user_limit | global_limit
    active: int = 0
    max: int = 0
    active_global: int = 0
    max_global: int = 0
