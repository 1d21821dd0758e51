# backend/models/discovery.py
"""
Discovery Data Models for Facility Sentinel

Defines the structures flowing through range expansion, per-target probing,
discovery aggregation and stream resolution.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from errors import InvalidRangeError


# =============================================================================
# ENUMS
# =============================================================================

class ProtocolKind(str, Enum):
    """Protocol a device was classified by"""
    ONVIF = "onvif"
    RTSP = "rtsp"
    HTTP = "http"
    UNKNOWN = "unknown"


class DeviceStatus(str, Enum):
    """Status of a device in a discovery result"""
    DISCOVERED = "discovered"   # Answered a live probe during this scan
    DEMO = "demo"               # Synthetic placeholder, never persisted
    UNREACHABLE = "unreachable"


class ProbeFailureReason(str, Enum):
    """Why a single protocol attempt failed"""
    TIMEOUT = "timeout"
    REFUSED = "refused"
    MALFORMED_RESPONSE = "malformed_response"


class StreamTransport(str, Enum):
    """Transport of a resolved stream"""
    RTSP = "rtsp"
    HLS = "hls"


# Protocol names accepted in discovery requests
SUPPORTED_PROTOCOLS: Tuple[str, ...] = (
    ProtocolKind.ONVIF.value,
    ProtocolKind.RTSP.value,
    ProtocolKind.HTTP.value,
)


# =============================================================================
# KNOWN / UNKNOWN VALUES
# =============================================================================

class Unknown:
    """Marker for a device attribute that could not be determined"""

    _instance: Optional["Unknown"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __str__(self) -> str:
        return "Unknown"

    def __bool__(self) -> bool:
        return False


UNKNOWN = Unknown()

# Either a real string value or UNKNOWN
Attribute = Union[str, Unknown]


def known_or_unknown(value: Optional[str]) -> Attribute:
    """Map an empty or missing value to UNKNOWN."""
    if value is None:
        return UNKNOWN
    value = str(value).strip()
    return value if value else UNKNOWN


def render_attribute(value: Attribute) -> str:
    return str(value)


# =============================================================================
# ADDRESS RANGE
# =============================================================================

_OCTET_RE = re.compile(r"[0-9]{1,3}")


def _parse_quad(text: str, start: str, end: str) -> Tuple[int, int, int, int]:
    parts = text.strip().split(".")
    if len(parts) != 4:
        raise InvalidRangeError(f"Not a dotted-quad address: {text!r}", start=start, end=end)
    octets = []
    for part in parts:
        if not _OCTET_RE.fullmatch(part):
            raise InvalidRangeError(f"Non-numeric octet {part!r} in {text!r}", start=start, end=end)
        value = int(part)
        if value > 255:
            raise InvalidRangeError(f"Octet {value} out of range in {text!r}", start=start, end=end)
        octets.append(value)
    return tuple(octets)  # type: ignore[return-value]


@dataclass(frozen=True)
class AddressRange:
    """
    Start/end pair of IPv4 hosts sharing the first three octets.

    The end may be a full dotted quad or just the last octet
    ("192.168.1.10" .. "30").
    """
    prefix: Tuple[int, int, int]
    first: int
    last: int

    @classmethod
    def from_bounds(cls, start: str, end: str) -> "AddressRange":
        if not start or not end:
            raise InvalidRangeError("Both range start and end are required", start=start, end=end)

        start_octets = _parse_quad(start, start, end)
        end_text = str(end).strip()
        if "." in end_text:
            end_octets = _parse_quad(end_text, start, end)
            if end_octets[:3] != start_octets[:3]:
                raise InvalidRangeError(
                    "Range start and end must share the first three octets",
                    start=start,
                    end=end,
                )
            last = end_octets[3]
        else:
            if not _OCTET_RE.fullmatch(end_text):
                raise InvalidRangeError(f"Non-numeric range end {end_text!r}", start=start, end=end)
            last = int(end_text)
            if last > 255:
                raise InvalidRangeError(f"Range end {last} out of range", start=start, end=end)

        if start_octets[3] > last:
            raise InvalidRangeError("Range start is after range end", start=start, end=end)

        return cls(prefix=start_octets[:3], first=start_octets[3], last=last)

    @classmethod
    def parse(cls, text: str) -> "AddressRange":
        """Parse "a.b.c.d-e" or "a.b.c.d-a.b.c.e"."""
        if not text or "-" not in text:
            raise InvalidRangeError(f"Expected '<start>-<end>', got {text!r}", start=text)
        start, _, end = text.partition("-")
        return cls.from_bounds(start.strip(), end.strip())

    @property
    def start(self) -> str:
        return self._address(self.first)

    @property
    def end(self) -> str:
        return self._address(self.last)

    @property
    def span(self) -> int:
        """Number of addresses requested"""
        return self.last - self.first + 1

    def is_clamped(self, limit: int) -> bool:
        return self.span > limit

    def expand(self, limit: int = 20) -> List[str]:
        """Addresses in the range, at most `limit`, beginning at the start."""
        count = min(self.span, max(limit, 0))
        return [self._address(self.first + i) for i in range(count)]

    def _address(self, last_octet: int) -> str:
        return str(ipaddress.IPv4Address(".".join(str(o) for o in (*self.prefix, last_octet))))

    def __str__(self) -> str:
        return f"{self.start}-{self.last}"


# =============================================================================
# PROBE MODELS
# =============================================================================

@dataclass(frozen=True)
class ProbeAttempt:
    """One (protocol, port) candidate for a target"""
    protocol: ProtocolKind
    port: int


@dataclass(frozen=True)
class ProbeTarget:
    """An address plus its ordered candidate attempts"""
    address: str
    attempts: Tuple[ProbeAttempt, ...]


@dataclass
class ProtocolAttemptResult:
    """Outcome of one (target, protocol, port) trial"""
    address: str
    protocol: ProtocolKind
    port: int
    success: bool
    manufacturer: Attribute = UNKNOWN
    model: Attribute = UNKNOWN
    failure_reason: Optional[ProbeFailureReason] = None
    message: Optional[str] = None

    @classmethod
    def succeeded(
        cls,
        attempt: ProbeAttempt,
        address: str,
        manufacturer: Attribute = UNKNOWN,
        model: Attribute = UNKNOWN,
    ) -> "ProtocolAttemptResult":
        return cls(
            address=address,
            protocol=attempt.protocol,
            port=attempt.port,
            success=True,
            manufacturer=manufacturer,
            model=model,
        )

    @classmethod
    def failed(
        cls,
        attempt: ProbeAttempt,
        address: str,
        reason: ProbeFailureReason,
        message: Optional[str] = None,
    ) -> "ProtocolAttemptResult":
        return cls(
            address=address,
            protocol=attempt.protocol,
            port=attempt.port,
            success=False,
            failure_reason=reason,
            message=message,
        )


@dataclass
class ProbeResult:
    """Result of probing one address: the winning attempt or unreachable"""
    address: str
    winner: Optional[ProtocolAttemptResult] = None
    attempts: List[ProtocolAttemptResult] = field(default_factory=list)

    @property
    def reachable(self) -> bool:
        return self.winner is not None

    @property
    def unreachable(self) -> bool:
        return self.winner is None

    def open_services(self) -> Dict[str, List[int]]:
        """Ports of every successful attempt, grouped by protocol in priority order."""
        services: Dict[str, List[int]] = {}
        for attempt in self.attempts:
            if attempt.success:
                ports = services.setdefault(attempt.protocol.value, [])
                if attempt.port not in ports:
                    ports.append(attempt.port)
        return services


# =============================================================================
# DEVICE / STREAM MODELS
# =============================================================================

@dataclass
class DiscoveredDevice:
    """Device returned by a discovery scan"""
    address: str
    protocol: ProtocolKind
    port: int
    status: DeviceStatus
    manufacturer: Attribute = UNKNOWN
    model: Attribute = UNKNOWN
    mac_address: Attribute = UNKNOWN
    services: Dict[str, List[int]] = field(default_factory=dict)
    discovered_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_synthetic(self) -> bool:
        return self.status == DeviceStatus.DEMO

    @property
    def open_ports(self) -> List[int]:
        """Every port seen open, the classifying port first"""
        ports = [self.port] if self.port else []
        for service_ports in self.services.values():
            ports.extend(p for p in service_ports if p not in ports)
        return ports

    @classmethod
    def from_probe(cls, result: ProbeResult) -> "DiscoveredDevice":
        winner = result.winner
        if winner is None:
            return cls(
                address=result.address,
                protocol=ProtocolKind.UNKNOWN,
                port=0,
                status=DeviceStatus.UNREACHABLE,
            )
        return cls(
            address=result.address,
            protocol=winner.protocol,
            port=winner.port,
            status=DeviceStatus.DISCOVERED,
            manufacturer=winner.manufacturer,
            model=winner.model,
            services=result.open_services(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.address,
            "protocol": self.protocol.value,
            "port": self.port,
            "openPorts": self.open_ports,
            "services": self.services,
            "status": self.status.value,
            "manufacturer": render_attribute(self.manufacturer),
            "model": render_attribute(self.model),
            "macAddress": None if isinstance(self.mac_address, Unknown) else self.mac_address,
            "synthetic": self.is_synthetic,
            "discoveredAt": self.discovered_at.isoformat() + "Z",
        }


@dataclass
class Credentials:
    """Device login"""
    username: str
    password: str = field(repr=False)

    @property
    def complete(self) -> bool:
        return bool(self.username) and bool(self.password)


@dataclass
class StreamDescriptor:
    """Resolved stream endpoint for a device"""
    device_address: str
    transport: StreamTransport
    uri: str
    has_embedded_auth: bool = False
    stream_id: Optional[str] = None
    profile_token: Optional[str] = None
    source_uri: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceAddress": self.device_address,
            "transport": self.transport.value,
            "uri": self.uri,
            "hasEmbeddedAuth": self.has_embedded_auth,
            "streamId": self.stream_id,
            "profileToken": self.profile_token,
        }


@dataclass
class DiscoveryReport:
    """Discovery outcome plus scan bookkeeping"""
    devices: List[DiscoveredDevice]
    scanned_addresses: List[str] = field(default_factory=list)
    clamped: bool = False
    scan_id: str = field(default_factory=lambda: str(uuid4())[:8])
    fallback_reason: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def synthetic(self) -> bool:
        return any(d.is_synthetic for d in self.devices)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "synthetic": self.synthetic,
            "foundDevices": sum(1 for d in self.devices if not d.is_synthetic),
            "scannedAddresses": self.scanned_addresses,
            "clamped": self.clamped,
            "scanId": self.scan_id,
            "fallbackReason": self.fallback_reason,
            "durationMs": round(self.duration_ms, 2),
        }
