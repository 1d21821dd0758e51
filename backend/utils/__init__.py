# backend/utils/__init__.py
"""
Utility modules for the Facility Sentinel backend.
"""

from .rate_limiter import (
    ScanRateLimiter,
    RateLimitError,
    get_scan_rate_limiter,
)

from .environment import (
    get_active_interfaces,
    ensure_network_available,
    get_link_speed_mbps,
    count_active_connections,
)

__all__ = [
    # Rate limiting
    "ScanRateLimiter",
    "RateLimitError",
    "get_scan_rate_limiter",
    # Host introspection
    "get_active_interfaces",
    "ensure_network_available",
    "get_link_speed_mbps",
    "count_active_connections",
]
