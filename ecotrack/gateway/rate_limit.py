"""
Ecotrack - Request Rate Limiting

Fixed-window counters keyed by client IP, applied to the
unauthenticated auth endpoints as a route dependency:

    @router.post("/login", dependencies=[Depends(rate_limit("login"))])

Limits (configurable, see Settings):
- login:          10 requests / 15 minutes
- register:        3 requests / hour
- password_reset:  5 requests / hour

State is process-local; run behind a shared limiter when scaling out.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from fastapi import Request

from ecotrack.auth.clock import Clock, utcnow
from ecotrack.auth.dependencies import get_client_ip
from ecotrack.errors import RateLimitedError


logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    resets_at: datetime


class FixedWindowRateLimiter:
    """Allows ``limit`` hits per key in each ``window``."""

    def __init__(
        self,
        limit: int,
        window: timedelta,
        *,
        message: str = "Too many requests. Please wait before trying again.",
        clock: Clock = utcnow,
    ) -> None:
        self.limit = max(1, int(limit))
        self.window = window
        self.message = message
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}

    def hit(self, key: str) -> None:
        """
        Count one request for ``key``.

        Raises:
            RateLimitedError: Limit reached for the current window
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.resets_at:
                self._windows[key] = _Window(count=1, resets_at=now + self.window)
                return
            if window.count >= self.limit:
                retry_after = int((window.resets_at - now).total_seconds()) or 1
                logger.warning("Rate limit hit for %s (retry in %ds)", key, retry_after)
                raise RateLimitedError(retry_after, self.message)
            window.count += 1

    def cleanup(self) -> int:
        """Drop windows that have already reset."""
        now = self._clock()
        with self._lock:
            stale = [key for key, w in self._windows.items() if now >= w.resets_at]
            for key in stale:
                del self._windows[key]
            return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def rate_limit(name: str) -> Callable[[Request], None]:
    """
    Build a dependency that applies the limiter registered as ``name``
    in ``app.state.rate_limiters``.
    """
    def dependency(request: Request) -> None:
        limiter = request.app.state.rate_limiters.get(name)
        if limiter is not None:
            limiter.hit(f"{name}:{get_client_ip(request)}")

    return dependency
