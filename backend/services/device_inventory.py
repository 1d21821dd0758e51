# backend/services/device_inventory.py
"""
Network device inventory service.

Persists discovered devices per facility. A row is keyed by
(facility_id, ip_address): a rescan overwrites its descriptive fields and
bumps last_seen instead of inserting a duplicate.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from database import get_db_session
from errors import DeviceNotFoundError, ValidationError
from models.discovery import DiscoveredDevice, render_attribute
from models.orm import NetworkDevice

logger = logging.getLogger(__name__)

DEVICE_STATUSES = ("online", "offline", "unknown")


class DeviceInventoryService:
    """Service for managing the network device table."""

    def __init__(self, session_factory: Optional[Callable] = None):
        self.session_factory = session_factory

    def _session(self):
        return get_db_session(self.session_factory)

    def upsert_device(
        self,
        facility_id: str,
        address: str,
        device_type: str = "unknown",
        manufacturer: str = "Unknown",
        model: str = "Unknown",
        mac_address: Optional[str] = None,
        hostname: Optional[str] = None,
        os_type: Optional[str] = None,
        os_version: Optional[str] = None,
        open_ports: Optional[List[int]] = None,
        services: Optional[Dict[str, Any]] = None,
        status: str = "online",
    ) -> NetworkDevice:
        """
        Insert or overwrite a device record.

        Args:
            facility_id: Owning facility
            address: Device IP address
            device_type: onvif, rtsp, http or unknown
            manufacturer: Best-effort vendor name
            model: Best-effort model name
            mac_address: Optional MAC
            hostname: Optional hostname
            os_type: Optional OS family
            os_version: Optional OS version
            open_ports: Ports seen open (stored as-is)
            services: Service map (stored as-is)
            status: online, offline or unknown

        Returns:
            Detached NetworkDevice
        """
        if status not in DEVICE_STATUSES:
            raise ValidationError(f"Invalid device status: {status}", field="status", value=status)

        now = datetime.utcnow()
        fields = {
            "device_type": device_type,
            "manufacturer": manufacturer or "Unknown",
            "model": model or "Unknown",
            "mac_address": mac_address,
            "hostname": hostname,
            "os_type": os_type,
            "os_version": os_version,
            "open_ports": list(open_ports or []),
            "services": dict(services or {}),
            "status": status,
        }

        with self._session() as session:
            device = session.query(NetworkDevice).filter(
                NetworkDevice.facility_id == facility_id,
                NetworkDevice.ip_address == address,
            ).first()

            if device:
                for key, value in fields.items():
                    setattr(device, key, value)
                device.last_seen = now
                logger.info(f"Updated device {address} in facility {facility_id}")
            else:
                device = NetworkDevice(
                    facility_id=facility_id,
                    ip_address=address,
                    first_seen=now,
                    last_seen=now,
                    **fields,
                )
                session.add(device)
                logger.info(f"Added device {address} to facility {facility_id}")

            session.flush()
            session.refresh(device)
            session.expunge(device)
            return device

    def upsert_discovered_device(self, facility_id: str, device: DiscoveredDevice) -> NetworkDevice:
        """Persist a real discovery result. Demo placeholders are refused."""
        if device.is_synthetic:
            raise ValidationError(
                "Demo devices cannot be stored in the inventory",
                field="status",
                value=device.status.value,
                details={"address": device.address},
            )

        return self.upsert_device(
            facility_id=facility_id,
            address=device.address,
            device_type=device.protocol.value,
            manufacturer=render_attribute(device.manufacturer),
            model=render_attribute(device.model),
            mac_address=None if not device.mac_address else str(device.mac_address),
            open_ports=device.open_ports,
            services=device.services or {device.protocol.value: [device.port]},
            status="online",
        )

    def record_discovery(self, facility_id: str, devices: Iterable[DiscoveredDevice]) -> int:
        """
        Store every real device from a scan, skipping demo placeholders.

        Returns:
            Number of devices written
        """
        written = 0
        for device in devices:
            if device.is_synthetic:
                logger.debug(f"Skipping demo device {device.address}")
                continue
            self.upsert_discovered_device(facility_id, device)
            written += 1
        return written

    def get_device(self, facility_id: str, address: str) -> Optional[NetworkDevice]:
        with self._session() as session:
            device = session.query(NetworkDevice).filter(
                NetworkDevice.facility_id == facility_id,
                NetworkDevice.ip_address == address,
            ).first()
            if device:
                session.expunge(device)
            return device

    def list_devices(self, facility_id: str, status: Optional[str] = None) -> List[NetworkDevice]:
        """Devices of a facility in address order."""
        with self._session() as session:
            query = session.query(NetworkDevice).filter(NetworkDevice.facility_id == facility_id)
            if status:
                query = query.filter(NetworkDevice.status == status)

            devices = query.all()
            for device in devices:
                session.expunge(device)

        return sorted(devices, key=lambda d: _address_key(d.ip_address))

    def set_status(self, facility_id: str, address: str, status: str) -> NetworkDevice:
        """
        Update a device's status, bumping last_seen when it is online.

        Raises:
            DeviceNotFoundError: No such device in the facility
        """
        if status not in DEVICE_STATUSES:
            raise ValidationError(f"Invalid device status: {status}", field="status", value=status)

        with self._session() as session:
            device = session.query(NetworkDevice).filter(
                NetworkDevice.facility_id == facility_id,
                NetworkDevice.ip_address == address,
            ).first()
            if not device:
                raise DeviceNotFoundError(facility_id, address)

            device.status = status
            if status == "online":
                device.last_seen = datetime.utcnow()
            session.flush()
            session.refresh(device)
            session.expunge(device)
            logger.info(f"Device {address} in facility {facility_id} is now {status}")
            return device

    def count_devices(self, status: Optional[str] = None, facility_id: Optional[str] = None) -> int:
        with self._session() as session:
            query = session.query(NetworkDevice)
            if status:
                query = query.filter(NetworkDevice.status == status)
            if facility_id:
                query = query.filter(NetworkDevice.facility_id == facility_id)
            return query.count()


def _address_key(address: str):
    try:
        return tuple(int(part) for part in address.split("."))
    except ValueError:
        return (999, address)


# Global service instance
_inventory_service: Optional[DeviceInventoryService] = None


def get_inventory_service() -> DeviceInventoryService:
    """Get or create device inventory service singleton."""
    global _inventory_service
    if _inventory_service is None:
        _inventory_service = DeviceInventoryService()
    return _inventory_service
