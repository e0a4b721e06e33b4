# ratelimit.py
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from lab_scheduler.config import (
    SIGNIN_RATE_CLEANUP_SECONDS,
    SIGNIN_RATE_LIMIT,
    SIGNIN_RATE_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


def rate_limit_key(ip: str, identity: str) -> str:
    """Throttle by address and identity together."""
    return f"{ip}:{identity.strip().lower()}"


def client_ip(headers, peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return headers.get("x-real-ip") or peer or "unknown"


class SignInRateLimiter:
    """Fixed-window counter per key. Expired windows are dropped lazily, at
    most once per cleanup interval."""

    def __init__(
        self,
        max_requests: int = SIGNIN_RATE_LIMIT,
        window_seconds: float = SIGNIN_RATE_WINDOW_SECONDS,
        cleanup_interval: float = SIGNIN_RATE_CLEANUP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_cleanup = clock()

    def __len__(self) -> int:
        return len(self._windows)

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup <= self.cleanup_interval:
            return
        for key in [k for k, w in self._windows.items() if now > w.reset_at]:
            del self._windows[key]
        self._last_cleanup = now

    def check(self, key: str) -> Tuple[bool, int]:
        """Count one attempt. Returns (allowed, retry_after_seconds)."""
        now = self.clock()
        self._cleanup(now)

        window = self._windows.get(key)
        if window is None or now > window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return True, 0

        if window.count >= self.max_requests:
            retry_after = math.ceil(window.reset_at - now)
            logger.warning("Sign-in throttled for %s, retry in %ss", key, retry_after)
            return False, retry_after

        window.count += 1
        return True, 0
