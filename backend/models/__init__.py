# backend/models/__init__.py
"""
Facility Sentinel Data Models

Dataclass models for discovery and monitoring, plus the SQLAlchemy
device inventory table.
"""

from .discovery import (
    # Enums
    ProtocolKind,
    DeviceStatus,
    ProbeFailureReason,
    StreamTransport,
    SUPPORTED_PROTOCOLS,

    # Known / unknown
    Unknown,
    UNKNOWN,
    known_or_unknown,

    # Discovery models
    AddressRange,
    ProbeAttempt,
    ProbeTarget,
    ProtocolAttemptResult,
    ProbeResult,
    DiscoveredDevice,
    DiscoveryReport,

    # Streams
    Credentials,
    StreamDescriptor,
)
from .monitoring import (
    AlertType,
    AlertSeverity,
    BandwidthSource,
    BandwidthReading,
    LatencyReading,
    MetricsSample,
    Alert,
)

__all__ = [
    # Enums
    "ProtocolKind",
    "DeviceStatus",
    "ProbeFailureReason",
    "StreamTransport",
    "SUPPORTED_PROTOCOLS",

    # Known / unknown
    "Unknown",
    "UNKNOWN",
    "known_or_unknown",

    # Discovery models
    "AddressRange",
    "ProbeAttempt",
    "ProbeTarget",
    "ProtocolAttemptResult",
    "ProbeResult",
    "DiscoveredDevice",
    "DiscoveryReport",

    # Streams
    "Credentials",
    "StreamDescriptor",

    # Monitoring
    "AlertType",
    "AlertSeverity",
    "BandwidthSource",
    "BandwidthReading",
    "LatencyReading",
    "MetricsSample",
    "Alert",
]
