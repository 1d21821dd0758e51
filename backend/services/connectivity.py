"""
Device Connectivity Tester

Checks a single known device without rescanning its range. Fallback chain:
1. ONVIF GetCapabilities
2. RTSP reachability (TCP connect, then HTTP HEAD)
3. Plain HTTP HEAD ping

The first step that succeeds ends the chain. False only when all three fail.
"""

import logging
from typing import Optional

import httpx

from config import settings
from integrations.http_probe import HTTPProbe
from integrations.onvif_client import ONVIFClient
from integrations.rtsp_client import RTSPClient
from models.discovery import Credentials

logger = logging.getLogger(__name__)


class ConnectivityService:
    """Protocol fallback chain for one device"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        inventory=None,
        onvif_port: int = 80,
        rtsp_port: Optional[int] = None,
        ping_timeout: Optional[float] = None,
    ):
        self.http_probe = HTTPProbe(http_client=http_client)
        self.inventory = inventory
        self.onvif_port = onvif_port
        self.rtsp_port = rtsp_port or settings.discovery_rtsp_port
        self.ping_timeout = ping_timeout if ping_timeout is not None else settings.http_ping_timeout_seconds

    async def close(self):
        await self.http_probe.close()

    async def _check_onvif(self, address: str, credentials: Optional[Credentials]) -> bool:
        client = ONVIFClient(
            address,
            self.onvif_port,
            credentials=credentials,
            http_client=self.http_probe.http_client,
        )
        await client.get_capabilities()
        return True

    async def _check_rtsp(self, address: str, credentials: Optional[Credentials]) -> bool:
        client = RTSPClient(address, self.rtsp_port, credentials=credentials, http_probe=self.http_probe)
        return await client.test_connection()

    async def _check_http(self, address: str) -> bool:
        await self.http_probe.ping(address, timeout=self.ping_timeout)
        return True

    async def test_connection(self, address: str, credentials: Optional[Credentials] = None) -> bool:
        """
        True if any protocol in the chain answers. Never raises.

        Args:
            address: Device IP address
            credentials: Optional login used for ONVIF and RTSP
        """
        steps = (
            ("onvif", lambda: self._check_onvif(address, credentials)),
            ("rtsp", lambda: self._check_rtsp(address, credentials)),
            ("http", lambda: self._check_http(address)),
        )

        for name, step in steps:
            try:
                if await step():
                    logger.info(f"Connectivity test for {address} succeeded via {name}")
                    return True
                logger.debug(f"Connectivity step {name} for {address} returned no answer")
            except Exception as e:
                logger.debug(f"Connectivity step {name} for {address} failed: {e}")

        logger.info(f"Connectivity test for {address} failed on all protocols")
        return False

    async def refresh_device_status(
        self,
        facility_id: str,
        address: str,
        credentials: Optional[Credentials] = None,
    ) -> bool:
        """
        Test a device and write online/offline to the inventory.

        Raises:
            DeviceNotFoundError: Device is not in the facility's inventory
        """
        reachable = await self.test_connection(address, credentials)
        if self.inventory is not None:
            self.inventory.set_status(facility_id, address, "online" if reachable else "offline")
        return reachable
