"""
ONVIF Client for Device Queries and PTZ Control

Speaks SOAP 1.2 directly over httpx so every call can carry its own deadline:
- Envelope construction with a WS-Security UsernameToken (digest mode)
- Capability, media profile and stream URI queries
- Device information lookup (manufacturer / model)
- Continuous pan/tilt/zoom moves
- A lightweight device_service presence check used by the prober

All failures surface as ProtocolTimeoutError, ProtocolConnectionError or
MalformedResponseError. There is no retry logic here.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Tuple
from xml.sax.saxutils import unescape

import httpx
from lxml import etree
from lxml.builder import ElementMaker
from zeep.wsse.username import UsernameToken

from config import settings
from errors import (
    MalformedResponseError,
    ProtocolConnectionError,
    ProtocolTimeoutError,
    ValidationError,
)
from models.discovery import Credentials

logger = logging.getLogger(__name__)

PROTOCOL = "onvif"

# Namespaces
NS_SOAP = "http://www.w3.org/2003/05/soap-envelope"
NS_TDS = "http://www.onvif.org/ver10/device/wsdl"
NS_TRT = "http://www.onvif.org/ver10/media/wsdl"
NS_TPTZ = "http://www.onvif.org/ver20/ptz/wsdl"
NS_TT = "http://www.onvif.org/ver10/schema"

TDS = ElementMaker(namespace=NS_TDS, nsmap={"tds": NS_TDS})
TRT = ElementMaker(namespace=NS_TRT, nsmap={"trt": NS_TRT, "tt": NS_TT})
TPTZ = ElementMaker(namespace=NS_TPTZ, nsmap={"tptz": NS_TPTZ, "tt": NS_TT})
TT = ElementMaker(namespace=NS_TT, nsmap={"tt": NS_TT})

# Service endpoints
DEVICE_SERVICE_PATH = "/onvif/device_service"
MEDIA_SERVICE_PATH = "/onvif/Media"
PTZ_SERVICE_PATH = "/onvif/PTZ"

# direction -> (pan, tilt, zoom); zoom None means no Zoom element
PTZ_VELOCITIES: Dict[str, Tuple[float, float, Optional[float]]] = {
    "up": (0.0, 0.5, None),
    "down": (0.0, -0.5, None),
    "left": (-0.5, 0.0, None),
    "right": (0.5, 0.0, None),
    "stop": (0.0, 0.0, 0.0),
}

# Capability sections reported by GetCapabilities
CAPABILITY_SECTIONS = ("Device", "Media", "PTZ", "Imaging", "Events", "Analytics")

_URI_RE = re.compile(r"<(?:\w+:)?Uri>([^<]*)</(?:\w+:)?Uri>")


class ONVIFClient:
    """
    ONVIF SOAP client bound to one device.

    The httpx client may be shared across many ONVIFClient instances; only a
    lazily created client is closed by close().
    """

    def __init__(
        self,
        host: str,
        port: int = 80,
        credentials: Optional[Credentials] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.credentials = credentials
        self.timeout = timeout if timeout is not None else settings.onvif_timeout_seconds
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._http_client

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    async def close(self):
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # =========================================================================
    # Envelope
    # =========================================================================

    def build_envelope(self, body: etree._Element, authenticate: bool = True) -> bytes:
        """
        Wrap a request element in a SOAP 1.2 envelope.

        When credentials are set (and authenticate is true), the header
        carries a WS-Security UsernameToken with nonce, created timestamp
        and password digest.
        """
        envelope = etree.Element(etree.QName(NS_SOAP, "Envelope"), nsmap={"s": NS_SOAP})
        etree.SubElement(envelope, etree.QName(NS_SOAP, "Header"))
        soap_body = etree.SubElement(envelope, etree.QName(NS_SOAP, "Body"))
        soap_body.append(body)

        if authenticate and self.credentials and self.credentials.username:
            token = UsernameToken(
                self.credentials.username,
                self.credentials.password or "",
                use_digest=True,
            )
            envelope, _ = token.apply(envelope, {})

        return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _post(
        self,
        path: str,
        payload: bytes,
        action: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        deadline = timeout if timeout is not None else self.timeout
        content_type = "application/soap+xml; charset=utf-8"
        if action:
            content_type += f'; action="{action}"'

        try:
            return await asyncio.wait_for(
                self.http_client.post(
                    f"{self.base_url}{path}",
                    content=payload,
                    headers={"Content-Type": content_type},
                    timeout=deadline,
                ),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise ProtocolTimeoutError(PROTOCOL, self.target, deadline)
        except httpx.TransportError as e:
            raise ProtocolConnectionError(PROTOCOL, self.target, reason=str(e) or type(e).__name__)

    async def _call(self, path: str, body: etree._Element, action: str) -> str:
        response = await self._post(path, self.build_envelope(body), action=action)
        if not 200 <= response.status_code < 300:
            raise ProtocolConnectionError(
                PROTOCOL,
                self.target,
                reason=f"HTTP {response.status_code} for {action.rsplit('/', 1)[-1]}",
                status_code=response.status_code,
            )
        return response.text

    def _parse(self, text: str) -> etree._Element:
        try:
            return etree.fromstring(text.encode("utf-8"))
        except (etree.XMLSyntaxError, ValueError):
            raise MalformedResponseError(PROTOCOL, self.target, raw_response=text)

    @staticmethod
    def _find_all(root: etree._Element, local_name: str) -> List[etree._Element]:
        return root.xpath(f"//*[local-name()='{local_name}']")

    @staticmethod
    def _child_text(element: etree._Element, local_name: str) -> Optional[str]:
        for child in element:
            if isinstance(child.tag, str) and etree.QName(child).localname == local_name:
                return (child.text or "").strip() or None
        return None

    # =========================================================================
    # Device service
    # =========================================================================

    async def probe_device_service(self, timeout: Optional[float] = None) -> bool:
        """
        Check whether an ONVIF device service answers on this port.

        Sends an unauthenticated GetSystemDateAndTime. A SOAP/XML reply or a
        400/401 challenge counts as ONVIF; anything else is malformed.
        """
        response = await self._post(
            DEVICE_SERVICE_PATH,
            self.build_envelope(TDS.GetSystemDateAndTime(), authenticate=False),
            action=f"{NS_TDS}/GetSystemDateAndTime",
            timeout=timeout,
        )

        content_type = response.headers.get("content-type", "").lower()
        if response.status_code in (400, 401):
            return True
        if "soap" in content_type or "xml" in content_type:
            return True

        raise MalformedResponseError(PROTOCOL, self.target, raw_response=response.text)

    async def get_capabilities(self) -> Dict[str, Optional[str]]:
        """
        Query advertised services.

        Returns:
            Mapping of service name (device, media, ptz, imaging, events,
            analytics) to its XAddr, or None when not advertised.
        """
        text = await self._call(
            DEVICE_SERVICE_PATH,
            TDS.GetCapabilities(TDS.Category("All")),
            action=f"{NS_TDS}/GetCapabilities",
        )
        root = self._parse(text)

        sections = self._find_all(root, "Capabilities")
        if not sections:
            raise MalformedResponseError(PROTOCOL, self.target, raw_response=text)
        capabilities = sections[0]

        result: Dict[str, Optional[str]] = {name.lower(): None for name in CAPABILITY_SECTIONS}
        for child in capabilities:
            if not isinstance(child.tag, str):
                continue
            name = etree.QName(child).localname
            if name in CAPABILITY_SECTIONS:
                result[name.lower()] = self._child_text(child, "XAddr") or ""

        logger.debug(f"Capabilities for {self.target}: {[k for k, v in result.items() if v is not None]}")
        return result

    async def get_device_information(self) -> Dict[str, Optional[str]]:
        """Manufacturer, model, firmware and serial number"""
        text = await self._call(
            DEVICE_SERVICE_PATH,
            TDS.GetDeviceInformation(),
            action=f"{NS_TDS}/GetDeviceInformation",
        )
        root = self._parse(text)

        responses = self._find_all(root, "GetDeviceInformationResponse")
        if not responses:
            raise MalformedResponseError(PROTOCOL, self.target, raw_response=text)
        info = responses[0]

        return {
            "manufacturer": self._child_text(info, "Manufacturer"),
            "model": self._child_text(info, "Model"),
            "firmware": self._child_text(info, "FirmwareVersion"),
            "serial": self._child_text(info, "SerialNumber"),
            "hardware_id": self._child_text(info, "HardwareId"),
        }

    # =========================================================================
    # Media service
    # =========================================================================

    async def get_profiles(self) -> List[Dict[str, str]]:
        """List media profiles as [{token, name}]"""
        text = await self._call(
            MEDIA_SERVICE_PATH,
            TRT.GetProfiles(),
            action=f"{NS_TRT}/GetProfiles",
        )
        root = self._parse(text)

        profiles = []
        for profile in self._find_all(root, "Profiles"):
            token = profile.get("token")
            if not token:
                continue
            profiles.append({
                "token": token,
                "name": self._child_text(profile, "Name") or token,
            })
        return profiles

    async def get_stream_uri(self, profile_token: str) -> str:
        """
        RTSP URI for a profile.

        The first Uri element in the raw response wins. An empty string means
        the device offered no stream.
        """
        body = TRT.GetStreamUri(
            TRT.StreamSetup(
                TT.Stream("RTP-Unicast"),
                TT.Transport(TT.Protocol("RTSP")),
            ),
            TRT.ProfileToken(profile_token),
        )
        text = await self._call(MEDIA_SERVICE_PATH, body, action=f"{NS_TRT}/GetStreamUri")

        match = _URI_RE.search(text)
        if not match:
            logger.debug(f"No stream URI in GetStreamUri response from {self.target}")
            return ""
        return unescape(match.group(1).strip())

    # =========================================================================
    # PTZ service
    # =========================================================================

    @staticmethod
    def ptz_velocity(direction: str) -> Tuple[float, float, Optional[float]]:
        velocity = PTZ_VELOCITIES.get((direction or "").lower())
        if velocity is None:
            raise ValidationError(
                f"Unknown PTZ direction: {direction}",
                field="direction",
                value=direction,
                details={"allowed": list(PTZ_VELOCITIES)},
            )
        return velocity

    def build_continuous_move(self, profile_token: str, direction: str) -> etree._Element:
        pan, tilt, zoom = self.ptz_velocity(direction)
        velocity = TPTZ.Velocity(TT.PanTilt(x=str(pan), y=str(tilt)))
        if zoom is not None:
            velocity.append(TT.Zoom(x=str(zoom)))
        return TPTZ.ContinuousMove(TPTZ.ProfileToken(profile_token), velocity)

    async def ptz_move(self, profile_token: str, direction: str) -> None:
        """Start a continuous move in a direction, or stop with "stop"."""
        body = self.build_continuous_move(profile_token, direction)
        await self._call(PTZ_SERVICE_PATH, body, action=f"{NS_TPTZ}/ContinuousMove")
        logger.info(f"PTZ {direction} sent to {self.target} (profile {profile_token})")
