# backend/utils/rate_limiter.py
"""
Rate limiting for discovery scans.

A scan fans out to up to 20 hosts and several ports each, so repeated scan
requests are throttled per client and globally.
"""

import logging
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional

from config import settings
from errors import SentinelError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitError(SentinelError):
    """Raised when a scan request exceeds the allowed rate."""

    def __init__(self, message: str, retry_after_seconds: int = 30):
        super().__init__(
            message=message,
            details={"retryAfterSeconds": retry_after_seconds},
            recoverable=True,
            recovery_hint=f"Retry in {retry_after_seconds} seconds",
        )
        self.retry_after_seconds = retry_after_seconds


class ScanRateLimiter:
    """
    Sliding-window limiter keyed by client id.

    Limits:
    - minimum interval between two scans from the same client
    - scans per client per minute
    - scans per minute across all clients
    """

    def __init__(
        self,
        min_interval_seconds: float = 10,
        max_requests_per_minute: int = 5,
        global_max_per_minute: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            min_interval_seconds: Minimum time between requests per client
            max_requests_per_minute: Max requests per client per minute
            global_max_per_minute: Max total requests across all clients per minute
            clock: Monotonic time source in seconds
        """
        self.min_interval = float(min_interval_seconds)
        self.max_requests_per_minute = max_requests_per_minute
        self.global_max_per_minute = global_max_per_minute
        self._clock = clock

        self._clients: Dict[str, Deque[float]] = {}
        self._global: Deque[float] = deque()
        self._lock = Lock()

    @staticmethod
    def _expire(window: Deque[float], now: float) -> None:
        while window and now - window[0] >= WINDOW_SECONDS:
            window.popleft()

    @staticmethod
    def _retry_after(seconds: float) -> int:
        return max(1, int(seconds + 0.999))

    def check_rate_limit(self, client_id: str) -> None:
        """
        Record a request or raise RateLimitError.

        Args:
            client_id: Client identifier (remote address)
        """
        now = self._clock()

        with self._lock:
            self._expire(self._global, now)
            if len(self._global) >= self.global_max_per_minute:
                wait = WINDOW_SECONDS - (now - self._global[0])
                logger.warning(f"Global scan rate limit reached ({len(self._global)}/min)")
                raise RateLimitError(
                    "Discovery service is busy. Please try again later.",
                    retry_after_seconds=self._retry_after(wait),
                )

            window = self._clients.setdefault(client_id, deque())
            self._expire(window, now)

            if window and now - window[-1] < self.min_interval:
                wait = self.min_interval - (now - window[-1])
                logger.info(f"Scan rate limit hit for {client_id}: {wait:.1f}s until next allowed scan")
                raise RateLimitError(
                    f"Discovery rate limited. Please wait {self._retry_after(wait)} seconds.",
                    retry_after_seconds=self._retry_after(wait),
                )

            if len(window) >= self.max_requests_per_minute:
                wait = WINDOW_SECONDS - (now - window[0])
                logger.warning(f"Client {client_id} exceeded {self.max_requests_per_minute} scans/min")
                raise RateLimitError(
                    "Too many discovery requests.",
                    retry_after_seconds=self._retry_after(wait),
                )

            window.append(now)
            self._global.append(now)

            # Drop clients whose windows have fully expired
            for cid in [c for c, w in self._clients.items() if not w]:
                del self._clients[cid]

    def get_status(self, client_id: str) -> Dict:
        now = self._clock()
        with self._lock:
            self._expire(self._global, now)
            window = self._clients.get(client_id, deque())
            self._expire(window, now)
            wait = 0.0
            if window and now - window[-1] < self.min_interval:
                wait = self.min_interval - (now - window[-1])
            return {
                "requestsRemaining": max(0, self.max_requests_per_minute - len(window)),
                "globalRemaining": max(0, self.global_max_per_minute - len(self._global)),
                "resetSeconds": int(wait + 0.999) if wait else 0,
            }


# Global rate limiter instance for discovery scans
_scan_rate_limiter: Optional[ScanRateLimiter] = None


def get_scan_rate_limiter() -> ScanRateLimiter:
    """Get or create the global scan rate limiter."""
    global _scan_rate_limiter
    if _scan_rate_limiter is None:
        _scan_rate_limiter = ScanRateLimiter(
            min_interval_seconds=settings.discovery_min_interval_seconds,
            max_requests_per_minute=settings.discovery_max_requests_per_minute,
            global_max_per_minute=settings.discovery_global_max_per_minute,
        )
    return _scan_rate_limiter
