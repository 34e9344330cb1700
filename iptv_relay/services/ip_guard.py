"""
Sliding-window IP reputation guard.

Counts authentication failures per client IP and hands out temporary
blocks. Best-effort abuse mitigation layered on top of credential checks.
"""
import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from iptv_relay.config import Settings

logger = logging.getLogger(__name__)


class _IpState:
    __slots__ = ("fails", "blocked_until")

    def __init__(self):
        self.fails: list[float] = []
        self.blocked_until: float = 0.0


class IpReputationGuard:
    """Per-IP failure counter with temporary blocks."""

    def __init__(
        self,
        fail_window: float = 300,
        max_fails: int = 12,
        block_duration: float = 900,
        cleanup_interval: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fail_window = fail_window
        self.max_fails = max_fails
        self.block_duration = block_duration
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._states: dict[str, _IpState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic):
        return cls(
            fail_window=settings.security_fail_window_seconds,
            max_fails=settings.security_max_fails,
            block_duration=settings.security_block_seconds,
            cleanup_interval=settings.security_cleanup_seconds,
            clock=clock,
        )

    @staticmethod
    def _normalize(ip: Optional[str]) -> str:
        return (ip or "").strip() or "unknown"

    def _state(self, ip: Optional[str]) -> _IpState:
        key = self._normalize(ip)
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = _IpState()
        return state

    def _prune(self, state: _IpState, now: float):
        oldest = now - self.fail_window
        state.fails = [ts for ts in state.fails if ts >= oldest]
        if state.blocked_until and state.blocked_until <= now:
            state.blocked_until = 0.0

    def register_failed_attempt(self, ip: Optional[str]):
        with self._lock:
            now = self._clock()
            state = self._state(ip)
            self._prune(state, now)
            state.fails.append(now)
            if len(state.fails) >= self.max_fails:
                state.blocked_until = now + self.block_duration
                state.fails = []
                logger.warning(
                    f"Blocking {self._normalize(ip)} for {self.block_duration:.0f}s "
                    f"after {self.max_fails} failed attempts"
                )

    def register_successful_auth(self, ip: Optional[str]):
        """Forget past failures. An active block stays in place."""
        with self._lock:
            state = self._state(ip)
            self._prune(state, self._clock())
            state.fails = []

    def is_blocked(self, ip: Optional[str]) -> bool:
        with self._lock:
            now = self._clock()
            state = self._states.get(self._normalize(ip))
            if state is None:
                return False
            self._prune(state, now)
            return state.blocked_until > now

    def failure_count(self, ip: Optional[str]) -> int:
        with self._lock:
            state = self._states.get(self._normalize(ip))
            if state is None:
                return 0
            self._prune(state, self._clock())
            return len(state.fails)

    def sweep(self) -> int:
        """Drop records with no recent failures and no active block."""
        with self._lock:
            now = self._clock()
            idle = []
            for ip, state in self._states.items():
                self._prune(state, now)
                if not state.blocked_until and not state.fails:
                    idle.append(ip)
            for ip in idle:
                del self._states[ip]
            return len(idle)

    def __len__(self) -> int:
        return len(self._states)

    async def run_sweeper(self):
        """Background loop; cancelled by the application lifespan."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"IP guard sweep removed {removed} idle records")
