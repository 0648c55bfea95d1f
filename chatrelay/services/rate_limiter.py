"""
Outbound message rate limiter (fixed window, in-memory).

Throttles sends per tenant/session pair to keep messaging sessions under the
provider's ban thresholds. State is process-local; every API process keeps
its own windows.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from chatrelay.config import settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota for one window."""
    max_messages: int = settings.RATE_LIMIT_MAX_MESSAGES
    window_ms: int = settings.RATE_LIMIT_WINDOW_MS


@dataclass
class RateWindow:
    """Counter for one tenant/session key. ``reset_at`` is in clock seconds."""
    key: str
    count: int
    reset_at: float


class RateLimiter:
    """
    Per tenant/session rate limiter.

    Windows live in a dict guarded by a lock so the limiter can be shared by
    request handlers running on the event loop and in the threadpool.

    Callers must call ``is_rate_limited`` before ``increment``: the check is
    what opens (or rolls over) the window that ``increment`` counts against.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = config or RateLimitConfig()
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(tenant_id: str, session_id: str) -> str:
        return f"{tenant_id}:{session_id}"

    def _resolve(self, config: Optional[RateLimitConfig]) -> RateLimitConfig:
        return config or self.default_config

    def is_rate_limited(
        self,
        tenant_id: str,
        session_id: str,
        config: Optional[RateLimitConfig] = None,
    ) -> bool:
        """
        Check whether the pair has used up its quota.

        Opens a fresh window when none exists or the current one expired.
        """
        limit = self._resolve(config)
        key = self._key(tenant_id, session_id)
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateWindow(key=key, count=0, reset_at=now + limit.window_ms / 1000)
                self._windows[key] = window
            return window.count >= limit.max_messages

    def increment(self, tenant_id: str, session_id: str) -> None:
        """Count one sent message. No-op when no window is open."""
        key = self._key(tenant_id, session_id)
        with self._lock:
            window = self._windows.get(key)
            if window is not None:
                window.count += 1

    def try_acquire(
        self,
        tenant_id: str,
        session_id: str,
        config: Optional[RateLimitConfig] = None,
    ) -> bool:
        """
        Check and count one message in a single step.

        Returns False without counting when the quota is used up. Callers
        that await between deciding to send and sending use this instead of
        ``is_rate_limited`` + ``increment``, so concurrent sends cannot all
        pass the check before any of them is counted.
        """
        limit = self._resolve(config)
        key = self._key(tenant_id, session_id)
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateWindow(key=key, count=0, reset_at=now + limit.window_ms / 1000)
                self._windows[key] = window
            if window.count >= limit.max_messages:
                return False
            window.count += 1
            return True

    def release(self, tenant_id: str, session_id: str) -> None:
        """Give back a slot taken by ``try_acquire`` for a message that was never sent."""
        key = self._key(tenant_id, session_id)
        with self._lock:
            window = self._windows.get(key)
            if window is not None and window.count > 0:
                window.count -= 1

    def get_remaining(
        self,
        tenant_id: str,
        session_id: str,
        config: Optional[RateLimitConfig] = None,
    ) -> int:
        """Messages left in the current window (full quota if none is active)."""
        limit = self._resolve(config)
        key = self._key(tenant_id, session_id)
        with self._lock:
            window = self._windows.get(key)
            if window is None or self._clock() >= window.reset_at:
                return limit.max_messages
            return max(0, limit.max_messages - window.count)

    def get_reset_time(self, tenant_id: str, session_id: str) -> int:
        """Milliseconds until the current window resets (0 if none)."""
        key = self._key(tenant_id, session_id)
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return 0
            return max(0, int((window.reset_at - self._clock()) * 1000))

    def get_status(
        self,
        tenant_id: str,
        session_id: str,
        config: Optional[RateLimitConfig] = None,
    ) -> dict:
        """Snapshot used by the rate-limit status endpoint."""
        is_limited = self.is_rate_limited(tenant_id, session_id, config)
        return {
            "remaining": self.get_remaining(tenant_id, session_id, config),
            "reset_in_ms": self.get_reset_time(tenant_id, session_id),
            "is_limited": is_limited,
        }

    def reset(self, tenant_id: str, session_id: str) -> None:
        """Drop the window for one pair."""
        with self._lock:
            self._windows.pop(self._key(tenant_id, session_id), None)

    def clear_all(self) -> None:
        """Drop every window."""
        with self._lock:
            self._windows.clear()

    def cleanup(self) -> int:
        """Remove expired windows. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, w in self._windows.items() if now >= w.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


async def run_periodic_cleanup(
    limiter: RateLimiter,
    interval_seconds: float = settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
) -> None:
    """
    Sweep expired windows forever, independent of request traffic.

    Started as a background task by the API lifespan and cancelled on shutdown.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        removed = limiter.cleanup()
        if removed:
            logger.debug("rate_limit_windows_swept", removed=removed, active=len(limiter))


# Shared instance for the API process
rate_limiter = RateLimiter()
