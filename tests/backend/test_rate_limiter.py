"""
Unit tests for the discovery scan rate limiter
"""

import pytest

from utils.rate_limiter import RateLimitError, ScanRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestScanRateLimiter:
    """Tests for ScanRateLimiter"""

    def test_first_request_allowed(self):
        limiter = ScanRateLimiter(clock=FakeClock())
        limiter.check_rate_limit("10.0.0.5")
        assert limiter.get_status("10.0.0.5")["requestsRemaining"] == 4

    def test_min_interval(self):
        """Back-to-back scans from one client are refused"""
        clock = FakeClock()
        limiter = ScanRateLimiter(min_interval_seconds=10, clock=clock)

        limiter.check_rate_limit("10.0.0.5")
        clock.advance(3)

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_rate_limit("10.0.0.5")

        assert exc_info.value.retry_after_seconds == 7
        clock.advance(7)
        limiter.check_rate_limit("10.0.0.5")

    def test_clients_independent(self):
        limiter = ScanRateLimiter(clock=FakeClock())
        limiter.check_rate_limit("10.0.0.5")
        limiter.check_rate_limit("10.0.0.6")

    def test_per_minute_limit(self):
        clock = FakeClock()
        limiter = ScanRateLimiter(min_interval_seconds=0, max_requests_per_minute=3, clock=clock)

        for _ in range(3):
            limiter.check_rate_limit("10.0.0.5")
            clock.advance(1)

        with pytest.raises(RateLimitError):
            limiter.check_rate_limit("10.0.0.5")

        clock.advance(60)
        limiter.check_rate_limit("10.0.0.5")

    def test_global_limit(self):
        clock = FakeClock()
        limiter = ScanRateLimiter(min_interval_seconds=0, global_max_per_minute=2, clock=clock)

        limiter.check_rate_limit("a")
        limiter.check_rate_limit("b")

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check_rate_limit("c")

        assert "busy" in exc_info.value.message
        assert limiter.get_status("c")["globalRemaining"] == 0

    def test_error_payload(self):
        error = RateLimitError("slow down", retry_after_seconds=12)
        data = error.to_dict()
        assert data["error"] == "RateLimitError"
        assert data["details"]["retryAfterSeconds"] == 12
