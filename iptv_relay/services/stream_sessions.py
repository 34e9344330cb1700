"""
Stream session admission controller.

Tracks live playback slots per user and across the relay. A player that
keeps polling the same manifest or segments from the same client is
recognized by ``(stream_key, fingerprint)`` or by its ``sid`` hint and does
not consume another slot.
"""
import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, Optional

from iptv_relay.config import Settings
from iptv_relay.models.session import AdmissionResult, StreamSession

logger = logging.getLogger(__name__)


class SessionStore:
    """In-memory table of admitted stream sessions, empty at startup."""

    def __init__(
        self,
        max_per_user: int = 1,
        max_global: int = 0,
        idle_ttl: float = 90,
        cleanup_interval: float = 15,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_user = max(1, max_per_user)
        self.max_global = max_global if max_global > 0 else 0
        self.idle_ttl = idle_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        # user_id -> {sid -> session}
        self._sessions: dict[str, dict[str, StreamSession]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic):
        return cls(
            max_per_user=settings.max_streams_per_user,
            max_global=settings.max_global_streams,
            idle_ttl=settings.stream_session_ttl_seconds,
            cleanup_interval=settings.stream_session_cleanup_seconds,
            clock=clock,
        )

    @property
    def global_limit_enabled(self) -> bool:
        return self.max_global > 0

    def _is_expired(self, session: StreamSession, now: float) -> bool:
        return now - session.last_seen_at > self.idle_ttl

    def _expire(self, now: float) -> int:
        removed = 0
        for user_id in list(self._sessions):
            user_map = self._sessions[user_id]
            for sid in [s for s, sess in user_map.items() if self._is_expired(sess, now)]:
                del user_map[sid]
                removed += 1
            if not user_map:
                del self._sessions[user_id]
        return removed

    def _count_global(self) -> int:
        return sum(len(m) for m in self._sessions.values())

    def _result(self, user_map: dict, allowed: bool, sid: str = "", created: bool = False,
                reason: Optional[str] = None) -> AdmissionResult:
        return AdmissionResult(
            allowed=allowed,
            sid=sid,
            created=created,
            reason=reason,
            active=len(user_map),
            max=self.max_per_user,
            active_global=self._count_global(),
            max_global=self.max_global,
        )

    def try_acquire(
        self,
        user_id: str,
        stream_key: str,
        fingerprint: str = "",
        session_hint: str = "",
    ) -> AdmissionResult:
        """Admit a playback attempt, reusing an existing slot when possible."""
        user_id = str(user_id)
        hint = (session_hint or "").strip()

        with self._lock:
            now = self._clock()
            self._expire(now)
            user_map = self._sessions.get(user_id, {})

            existing = user_map.get(hint) if hint else None
            if existing is not None:
                # Same player switching stream keeps its slot
                existing.stream_key = stream_key
                existing.fingerprint = fingerprint
                existing.last_seen_at = now
                return self._result(user_map, True, existing.sid)

            for session in user_map.values():
                if session.stream_key == stream_key and session.fingerprint == fingerprint:
                    session.last_seen_at = now
                    return self._result(user_map, True, session.sid)

            if self.global_limit_enabled and self._count_global() >= self.max_global:
                logger.info(f"Admission denied for user {user_id}: global_limit")
                return self._result(user_map, False, reason="global_limit")

            if len(user_map) >= self.max_per_user:
                logger.info(f"Admission denied for user {user_id}: user_limit")
                return self._result(user_map, False, reason="user_limit")

            sid = uuid.uuid4().hex
            user_map[sid] = StreamSession(
                sid=sid,
                user_id=user_id,
                stream_key=stream_key,
                fingerprint=fingerprint,
                last_seen_at=now,
            )
            self._sessions[user_id] = user_map
            return self._result(user_map, True, sid, created=True)

    def touch(self, user_id: str, sid: str) -> bool:
        with self._lock:
            now = self._clock()
            self._expire(now)
            session = self._sessions.get(str(user_id), {}).get(str(sid or ""))
            if session is None:
                return False
            session.last_seen_at = now
            return True

    def release(self, user_id: str, sid: str) -> bool:
        with self._lock:
            user_map = self._sessions.get(str(user_id))
            if user_map is None:
                return False
            deleted = user_map.pop(str(sid or ""), None) is not None
            if not user_map:
                del self._sessions[str(user_id)]
            return deleted

    def get(self, user_id: str, sid: str) -> Optional[StreamSession]:
        with self._lock:
            session = self._sessions.get(str(user_id), {}).get(str(sid or ""))
            if session is None or self._is_expired(session, self._clock()):
                return None
            return session.model_copy()

    def active_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            self._expire(self._clock())
            if user_id is None:
                return self._count_global()
            return len(self._sessions.get(str(user_id), {}))

    def sweep(self) -> int:
        with self._lock:
            return self._expire(self._clock())

    async def run_sweeper(self):
        """Background loop; cancelled by the application lifespan."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Expired {removed} idle stream sessions")
