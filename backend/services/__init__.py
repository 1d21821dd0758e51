# backend/services/__init__.py
"""
Facility Sentinel Services

Discovery, connectivity, monitoring, inventory and stream hand-off.
"""

from .scan_logger import (
    ScanLogger,
    ScanMetrics,
    ScanStage,
    timed_stage,
    configure_scan_logging,
)
from .prober import Prober
from .discovery import DiscoveryService, build_demo_devices, get_discovery_service
from .connectivity import ConnectivityService
from .network_monitor import (
    MetricsSampler,
    NetworkMonitor,
    compute_health_score,
    evaluate_alerts,
    get_network_monitor,
)
from .device_inventory import DeviceInventoryService, get_inventory_service
from .stream_service import StreamService

__all__ = [
    # Logging
    "ScanLogger",
    "ScanMetrics",
    "ScanStage",
    "timed_stage",
    "configure_scan_logging",
    # Discovery
    "Prober",
    "DiscoveryService",
    "build_demo_devices",
    "get_discovery_service",
    "ConnectivityService",
    # Monitoring
    "MetricsSampler",
    "NetworkMonitor",
    "compute_health_score",
    "evaluate_alerts",
    "get_network_monitor",
    # Inventory / streams
    "DeviceInventoryService",
    "get_inventory_service",
    "StreamService",
]
