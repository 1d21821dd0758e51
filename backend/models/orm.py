# backend/models/orm.py
"""
SQLAlchemy ORM models for persistent storage.
These models are for database persistence, separate from the dataclass models
used by discovery and monitoring.
"""

from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Index,
    UniqueConstraint,
)

from database import Base


class NetworkDevice(Base):
    """
    Network device inventory for a facility.
    One row per (facility, address); rescans overwrite descriptive fields.
    Synthetic demo devices are never stored here.
    """

    __tablename__ = "network_devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    facility_id = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(45), nullable=False)

    # Identification (optional, best effort)
    mac_address = Column(String(17), nullable=True)
    hostname = Column(String(255), nullable=True)
    device_type = Column(String(32), nullable=False, default="unknown")  # 'onvif', 'rtsp', 'http'
    manufacturer = Column(String(128), nullable=False, default="Unknown")
    model = Column(String(128), nullable=False, default="Unknown")
    os_type = Column(String(64), nullable=True)
    os_version = Column(String(64), nullable=True)

    # Opaque blobs from the scanner
    open_ports = Column(JSON, nullable=False, default=list)
    services = Column(JSON, nullable=False, default=dict)

    status = Column(String(16), nullable=False, default="unknown")  # 'online', 'offline', 'unknown'

    # Timestamps
    first_seen = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("facility_id", "ip_address", name="uq_network_devices_facility_ip"),
        Index("idx_network_devices_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<NetworkDevice({self.facility_id} - {self.manufacturer} {self.model} @ {self.ip_address})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "facilityId": self.facility_id,
            "ipAddress": self.ip_address,
            "macAddress": self.mac_address,
            "hostname": self.hostname,
            "deviceType": self.device_type,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "osType": self.os_type,
            "osVersion": self.os_version,
            "openPorts": self.open_ports or [],
            "services": self.services or {},
            "status": self.status,
            "firstSeen": self.first_seen.isoformat() if self.first_seen else None,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
        }
