# backend/models/monitoring.py
"""
Monitoring Data Models for Facility Sentinel

Metric samples and alerts produced by the network monitor loop.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


class AlertType(str, Enum):
    """Category of a monitor alert"""
    BANDWIDTH = "bandwidth"
    LATENCY = "latency"
    SECURITY = "security"
    DEVICE = "device"
    CONNECTION = "connection"


class AlertSeverity(str, Enum):
    """Alert severity, lowest to highest"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BandwidthSource(str, Enum):
    """Where a bandwidth figure came from"""
    LINK_SPEED = "link_speed"   # Interface negotiated speed
    SYNTHETIC = "synthetic"     # Estimate, no introspection available


@dataclass
class BandwidthReading:
    download: float = 0.0   # Mbps
    upload: float = 0.0     # Mbps
    source: BandwidthSource = BandwidthSource.SYNTHETIC

    @property
    def total(self) -> float:
        return self.download + self.upload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "download": round(self.download, 2),
            "upload": round(self.upload, 2),
            "total": round(self.total, 2),
            "source": self.source.value,
        }


@dataclass
class LatencyReading:
    min: float = 0.0    # ms
    max: float = 0.0
    avg: float = 0.0
    endpoints_measured: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min": round(self.min, 2),
            "max": round(self.max, 2),
            "avg": round(self.avg, 2),
            "endpointsMeasured": self.endpoints_measured,
        }


@dataclass
class MetricsSample:
    """One snapshot of network health"""
    bandwidth: BandwidthReading = field(default_factory=BandwidthReading)
    latency: LatencyReading = field(default_factory=LatencyReading)
    packet_loss: float = 0.0    # percent
    connected_devices: int = 0
    active_connections: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat() + "Z",
            "bandwidth": self.bandwidth.to_dict(),
            "latency": self.latency.to_dict(),
            "packetLoss": round(self.packet_loss, 2),
            "connectedDevices": self.connected_devices,
            "activeConnections": self.active_connections,
        }


@dataclass
class Alert:
    """
    Threshold breach raised by the monitor.

    Created unresolved; only an explicit acknowledgement resolves it.
    """
    type: AlertType
    severity: AlertSeverity
    message: str
    id: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    resolved: bool = False
    device_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            self.id = f"{self.type.value}-{uuid4().hex[:12]}"

    def resolve(self) -> None:
        self.resolved = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
            "resolved": self.resolved,
            "deviceId": self.device_id,
            "details": self.details,
        }
