# sitenotify/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Optional

from fastapi import Request, HTTPException, status

from sitenotify.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window limiter for batch-creation requests.

    Each key (client IP) may submit at most ``max_requests`` batches per
    ``window_seconds``.  State is per process.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        window = self._requests[key]
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Check if request is allowed for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.monotonic()

        with self._lock:
            window = self._prune(key, now)

            if len(window) >= self.max_requests:
                retry_after = int(window[0] + self.window_seconds - now) + 1
                logger.warning(
                    "Batch rate limit exceeded for key=%s", key,
                    extra={"count": len(window), "limit": self.max_requests},
                )
                return False, retry_after

            window.append(now)
            return True, None

    def get_usage(self, key: str) -> dict:
        """Get current usage stats for a key"""
        with self._lock:
            used = len(self._prune(key, time.monotonic())) if key in self._requests else 0
        return {
            "count": used,
            "limit": self.max_requests,
            "window_seconds": self.window_seconds,
            "remaining": max(0, self.max_requests - used),
        }

    def cleanup(self) -> int:
        """
        Drop keys whose window is empty.
        Returns number of keys removed.
        """
        now = time.monotonic()
        with self._lock:
            stale = [key for key in self._requests if not self._prune(key, now)]
            for key in stale:
                del self._requests[key]

        if stale:
            logger.info(f"Rate limiter cleanup: removed {len(stale)} keys")
        return len(stale)


class RateLimitDependency:
    """FastAPI dependency for rate limiting"""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        client_ip = request.client.host if request.client else "unknown"

        allowed, retry_after = self.limiter.is_allowed(client_ip)

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
