# backend/utils/environment.py
"""
Host network introspection.

Answers whether this process can reach a network at all, and exposes the
little the host tells us about link quality.
"""

import logging
import socket
from typing import Dict, List, Optional

import psutil

from errors import EnvironmentUnsupportedError

logger = logging.getLogger(__name__)


def _is_loopback(name: str, addresses) -> bool:
    if name.lower().startswith("lo"):
        return True
    for address in addresses:
        if address.family == socket.AF_INET and address.address.startswith("127."):
            return True
    return False


def get_active_interfaces() -> List[Dict[str, object]]:
    """
    Non-loopback interfaces that are up and carry an IPv4 address.

    Returns:
        [{"name", "address", "speed_mbps"}], speed 0 when unknown
    """
    try:
        addresses = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except (OSError, psutil.Error) as e:
        logger.warning(f"Interface introspection failed: {e}")
        return []

    interfaces = []
    for name, addrs in addresses.items():
        if _is_loopback(name, addrs):
            continue
        stat = stats.get(name)
        if stat is None or not stat.isup:
            continue
        ipv4 = next((a.address for a in addrs if a.family == socket.AF_INET), None)
        if ipv4 is None:
            continue
        interfaces.append({"name": name, "address": ipv4, "speed_mbps": stat.speed or 0})
    return interfaces


def ensure_network_available() -> List[Dict[str, object]]:
    """
    Raise EnvironmentUnsupportedError unless at least one usable interface exists.
    """
    interfaces = get_active_interfaces()
    if not interfaces:
        raise EnvironmentUnsupportedError("No active non-loopback network interface")
    return interfaces


def get_link_speed_mbps() -> Optional[float]:
    """Negotiated speed of the fastest active interface, None when unknown"""
    speeds = [i["speed_mbps"] for i in get_active_interfaces() if i["speed_mbps"]]
    if not speeds:
        return None
    return float(max(speeds))


def count_active_connections() -> int:
    """Established inet connections on this host; 0 if not permitted"""
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, PermissionError) as e:
        logger.debug(f"Connection count unavailable: {e}")
        return 0
    return sum(1 for c in connections if c.status == psutil.CONN_ESTABLISHED)
