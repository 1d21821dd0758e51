"""
Generic HTTP reachability probe.

A HEAD request that gets any HTTP answer, whatever the status code, means a
device is present at the address. It does not confirm what the device is;
identify_brand() makes a best guess from the device's web page.
"""

import asyncio
import logging
import re
import time
from typing import Mapping, Optional, Tuple

import httpx

from errors import ProtocolConnectionError, ProtocolTimeoutError

logger = logging.getLogger(__name__)

PROTOCOL = "http"

# Vendor fingerprints looked for in a device's web page and response headers.
# Checked in order; the first vendor with a matching marker wins.
BRAND_PATTERNS = {
    "Hikvision": ["/ISAPI/", "Hikvision", "DS-", "iVMS", "webComponents"],
    "Dahua": ["/cgi-bin/magicBox.cgi", "Dahua", "DH-", "NetSDK"],
    "Axis": ["/axis-cgi/", "AXIS", "vapix"],
    "Foscam": ["/cgi-bin/CGIProxy.fcgi", "Foscam", "FI8"],
    "Uniview": ["/cgi-bin/main-cgi", "Uniview", "IPC"],
}

MODEL_PATTERNS = {
    "Hikvision": [re.compile(r"DS-[\w-]+", re.IGNORECASE)],
    "Dahua": [re.compile(r"DH-[\w-]+", re.IGNORECASE), re.compile(r"IPC-[\w-]+", re.IGNORECASE)],
    "Axis": [re.compile(r"AXIS\s+[\w-]+", re.IGNORECASE)],
    "Foscam": [re.compile(r"FI\d[\w]*", re.IGNORECASE)],
}

# Only the head of a page is searched
MAX_PAGE_CHARS = 64 * 1024


def extract_model(content: str, brand: str) -> Optional[str]:
    for pattern in MODEL_PATTERNS.get(brand, []):
        match = pattern.search(content)
        if match:
            return match.group(0)
    return None


def match_brand(content: str, headers: Mapping[str, str]) -> Optional[Tuple[str, Optional[str]]]:
    """
    Match page content and headers against BRAND_PATTERNS.

    Returns:
        (brand, model or None), or None when no vendor marker is present
    """
    page = content.lower()
    header_text = " ".join(f"{key}: {value}" for key, value in headers.items()).lower()

    for brand, markers in BRAND_PATTERNS.items():
        for marker in markers:
            needle = marker.lower()
            if needle in page or needle in header_text:
                return brand, extract_model(content, brand)
    return None


class HTTPProbe:
    """HEAD-based presence checks over a (possibly shared) httpx client"""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, default_timeout: float = 1.0):
        self._http_client = http_client
        self._owns_client = http_client is None
        self.default_timeout = default_timeout

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.default_timeout),
                verify=False,  # Devices commonly use self-signed certs
            )
            self._owns_client = True
        return self._http_client

    async def close(self):
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        url: str,
        timeout: Optional[float],
        follow_redirects: bool = False,
    ) -> httpx.Response:
        deadline = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(
                self.http_client.request(method, url, timeout=deadline, follow_redirects=follow_redirects),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise ProtocolTimeoutError(PROTOCOL, url, deadline)
        except httpx.TransportError as e:
            raise ProtocolConnectionError(PROTOCOL, url, reason=str(e) or type(e).__name__)

    async def head(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        """
        HEAD a URL with its own deadline.

        Raises:
            ProtocolTimeoutError: No answer within the deadline
            ProtocolConnectionError: Refused, reset, or unresolvable
        """
        return await self._request("HEAD", url, timeout)

    async def get(self, url: str, timeout: Optional[float] = None) -> httpx.Response:
        """GET a URL, following redirects, under the same deadline rules as head()."""
        return await self._request("GET", url, timeout, follow_redirects=True)

    @staticmethod
    def base_url(address: str, port: int = 80) -> str:
        return f"http://{address}/" if port == 80 else f"http://{address}:{port}/"

    async def ping(self, address: str, port: int = 80, timeout: Optional[float] = None) -> int:
        """
        HEAD http://address:port/ and return the status code.

        Any status counts as present; only transport failures raise.
        """
        url = self.base_url(address, port)
        response = await self.head(url, timeout=timeout)
        logger.debug(f"HTTP ping {url} -> {response.status_code}")
        return response.status_code

    async def is_alive(self, address: str, port: int = 80, timeout: Optional[float] = None) -> bool:
        try:
            await self.ping(address, port=port, timeout=timeout)
            return True
        except (ProtocolTimeoutError, ProtocolConnectionError) as e:
            logger.debug(f"HTTP ping {address}:{port} failed: {e}")
            return False

    async def identify_brand(
        self,
        address: str,
        port: int = 80,
        timeout: Optional[float] = None,
    ) -> Optional[Tuple[str, Optional[str]]]:
        """
        Fetch a device's web page and look for vendor markers.

        Returns:
            (brand, model or None), or None when nothing matched

        Raises:
            ProtocolTimeoutError / ProtocolConnectionError from the GET
        """
        url = self.base_url(address, port)
        response = await self.get(url, timeout=timeout)
        match = match_brand(response.text[:MAX_PAGE_CHARS], response.headers)
        if match:
            logger.debug(f"{url} looks like {match[0]} ({match[1] or 'model unknown'})")
        return match

    async def timed_head(self, url: str, timeout: Optional[float] = None) -> float:
        """Round-trip time of a HEAD request in milliseconds."""
        started = time.perf_counter()
        await self.head(url, timeout=timeout)
        return (time.perf_counter() - started) * 1000.0
