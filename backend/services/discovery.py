"""
Range Discovery Service

Expands an address range into bounded concurrent probes and aggregates the
results:
- Range validation (the only error a caller ever sees)
- Clamping to a fixed number of targets from the start of the range
- One prober call per address, all awaited regardless of outcome
- Demo placeholders when nothing answers or the host has no network

Demo devices carry status "demo" and are never written to the inventory.
"""

import asyncio
import ipaddress
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from config import settings
from errors import EnvironmentUnsupportedError, ValidationError
from models.discovery import (
    SUPPORTED_PROTOCOLS,
    AddressRange,
    DeviceStatus,
    DiscoveredDevice,
    DiscoveryReport,
    ProbeResult,
    ProtocolKind,
)
from services.prober import Prober
from services.scan_logger import ScanLogger
from utils.environment import ensure_network_available

logger = logging.getLogger(__name__)

RangeInput = Union[AddressRange, str, Tuple[str, str]]


def build_demo_devices(
    count: int,
    base_address: str = "192.168.1.100",
) -> List[DiscoveredDevice]:
    """
    Synthetic placeholders shown when a scan finds nothing.

    Protocols alternate ONVIF / RTSP starting at the base address.
    """
    base = ipaddress.IPv4Address(base_address)
    now = datetime.utcnow()
    devices = []
    for i in range(max(count, 0)):
        protocol = ProtocolKind.ONVIF if i % 2 == 0 else ProtocolKind.RTSP
        devices.append(DiscoveredDevice(
            address=str(base + i),
            protocol=protocol,
            port=80 if protocol == ProtocolKind.ONVIF else 554,
            status=DeviceStatus.DEMO,
            manufacturer="Demo",
            model=f"Demo Camera {i + 1}",
            discovered_at=now,
        ))
    return devices


def validate_protocols(protocols: Optional[Iterable[str]]) -> Optional[List[str]]:
    """Normalize protocol names, rejecting anything other than onvif/rtsp/http."""
    if protocols is None:
        return None
    normalized = [str(p).strip().lower() for p in protocols]
    unknown = [p for p in normalized if p not in SUPPORTED_PROTOCOLS]
    if unknown:
        raise ValidationError(
            f"Unsupported protocol(s): {', '.join(unknown)}",
            field="protocols",
            value=list(protocols),
            details={"allowed": list(SUPPORTED_PROTOCOLS)},
        )
    if not normalized:
        return None
    return normalized


class DiscoveryService:
    """
    Discovery orchestrator

    Holds no state between scans; the prober and environment check are
    injected so they can be replaced in tests.
    """

    def __init__(
        self,
        prober: Optional[Prober] = None,
        environment_check: Optional[Callable[[], object]] = None,
        max_targets: Optional[int] = None,
        demo_device_count: Optional[int] = None,
        demo_base_address: Optional[str] = None,
    ):
        self.prober = prober or Prober()
        if environment_check is not None:
            self.environment_check = environment_check
        elif settings.discovery_environment_check:
            self.environment_check = ensure_network_available
        else:
            self.environment_check = None
        self.max_targets = max_targets if max_targets is not None else settings.discovery_max_targets
        self.demo_device_count = demo_device_count if demo_device_count is not None \
            else settings.discovery_demo_device_count
        self.demo_base_address = demo_base_address or settings.discovery_demo_base_address

    async def close(self):
        await self.prober.close()

    @staticmethod
    def parse_range(address_range: RangeInput) -> AddressRange:
        if isinstance(address_range, AddressRange):
            return address_range
        if isinstance(address_range, (tuple, list)) and len(address_range) == 2:
            return AddressRange.from_bounds(address_range[0], address_range[1])
        return AddressRange.parse(str(address_range))

    async def _probe_one(
        self,
        address: str,
        protocols: Optional[Sequence[str]],
        timeout: Optional[float],
    ) -> ProbeResult:
        return await self.prober.probe(address, protocols=protocols, timeout=timeout)

    async def discover(
        self,
        address_range: RangeInput,
        protocols: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> List[DiscoveredDevice]:
        """
        Scan a range and return reachable devices in address order.

        Raises:
            InvalidRangeError: Malformed or inverted range (no probes issued)
            ValidationError: Unknown protocol name
        """
        report = await self.discover_with_report(address_range, protocols=protocols, timeout=timeout)
        return report.devices

    async def discover_with_report(
        self,
        address_range: RangeInput,
        protocols: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> DiscoveryReport:
        """
        Scan a range and return devices plus scan bookkeeping.

        Args:
            address_range: AddressRange, "a.b.c.d-e" string, or (start, end)
            protocols: Subset of onvif/rtsp/http (all when None)
            timeout: Per-attempt probe deadline in seconds
        """
        scan_id = uuid4().hex[:8]
        scan_log = ScanLogger(scan_id, str(address_range))

        with scan_log.stage("parse_range"):
            parsed = self.parse_range(address_range)
            wanted = validate_protocols(protocols)

        addresses = parsed.expand(self.max_targets)
        clamped = parsed.is_clamped(self.max_targets)
        scan_log.metrics.address_range = str(parsed)
        scan_log.metrics.targets = len(addresses)
        scan_log.metrics.clamped = clamped
        if clamped:
            scan_log.info(
                f"Range {parsed} spans {parsed.span} addresses; scanning first {len(addresses)}"
            )

        devices: List[DiscoveredDevice] = []
        fallback_reason: Optional[str] = None
        try:
            if self.environment_check is not None:
                # psutil interface introspection blocks
                loop = asyncio.get_event_loop()
                await loop.run_in_executor(None, self.environment_check)

            with scan_log.stage("probe", targets=len(addresses)) as stage:
                outcomes = await asyncio.gather(
                    *(self._probe_one(address, wanted, timeout) for address in addresses),
                    return_exceptions=True,
                )
                stage.metadata["completed"] = len(outcomes)

            with scan_log.stage("aggregate"):
                for address, outcome in zip(addresses, outcomes):
                    if isinstance(outcome, BaseException):
                        scan_log.debug(f"Probe for {address} raised: {outcome!r}")
                        continue
                    if outcome.reachable:
                        devices.append(DiscoveredDevice.from_probe(outcome))

        except EnvironmentUnsupportedError as e:
            fallback_reason = e.message
        except Exception as e:
            scan_log.error(f"Scan aborted: {e}")
            fallback_reason = f"scan error: {e}"
            devices = []

        scan_log.metrics.reachable = len(devices)

        if not devices:
            if fallback_reason is None:
                fallback_reason = "no device answered"
            scan_log.set_fallback(fallback_reason)
            devices = build_demo_devices(self.demo_device_count, self.demo_base_address)

        metrics = scan_log.complete()
        return DiscoveryReport(
            devices=devices,
            scanned_addresses=addresses,
            clamped=clamped,
            scan_id=scan_id,
            fallback_reason=fallback_reason if scan_log.metrics.fallback_triggered else None,
            duration_ms=metrics.total_duration_ms or 0.0,
        )


# Global service instance
_discovery_service: Optional[DiscoveryService] = None


def get_discovery_service() -> DiscoveryService:
    """Get or create the global discovery service instance"""
    global _discovery_service
    if _discovery_service is None:
        _discovery_service = DiscoveryService()
    return _discovery_service
