"""
Media Server Client

The media server is an out-of-process RTSP -> HLS transcoder. This client
only hands it a source URI and reads back stream state:
- Start / stop a stream conversion
- Health and status checks
- HLS playlist URL construction

Media server API:
- POST /api/stream/start  {streamId, rtspUrl, quality}
- POST /api/stream/stop   {streamId}
- GET  /api/streams
- GET  /api/status
- GET  /health
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import requests

from config import settings
from errors import MediaServerError

logger = logging.getLogger(__name__)

STREAM_QUALITIES = ("low", "medium", "high")


@dataclass
class StreamHandle:
    """Stream accepted by the media server"""
    stream_id: str
    hls_url: str
    status: str = "starting"
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streamId": self.stream_id,
            "hlsUrl": self.hls_url,
            "status": self.status,
        }


class MediaServerClient:
    """
    Client for the media server REST API

    Blocking requests calls run on a small thread pool and are exposed as
    coroutines.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize media server client

        Args:
            base_url: Media server root, e.g. http://localhost:8000
            timeout: Request timeout in seconds
            session: Optional pre-built session (tests)
        """
        self.base_url = (base_url or settings.media_server_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.media_server_timeout_seconds

        # Session for connection pooling
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

        # Thread pool for blocking HTTP calls
        self.executor = ThreadPoolExecutor(max_workers=4)

        logger.info(f"Initialized media server client for {self.base_url}")

    def _make_request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict] = None
    ) -> Any:
        """
        Make a request to the media server (blocking)

        Returns:
            Response JSON, text, or None for an empty body
        """
        url = f"{self.base_url}{path}"

        try:
            logger.debug(f"Media server {method} {url} payload={payload}")

            response = self.session.request(
                method=method,
                url=url,
                json=payload,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise MediaServerError(f"Media server timed out: {method} {path}")
        except requests.exceptions.ConnectionError:
            raise MediaServerError(f"Cannot connect to media server at {self.base_url}")
        except requests.exceptions.RequestException as e:
            raise MediaServerError(f"Media server request failed: {e}")

        if response.status_code >= 400:
            raise MediaServerError(
                f"Media server error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
                details={"path": path},
            )

        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return response.text
        try:
            return response.json()
        except ValueError:
            raise MediaServerError(f"Media server returned invalid JSON for {path}")

    async def _run(self, method: str, path: str, payload: Optional[Dict] = None) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            self.executor,
            lambda: self._make_request(method, path, payload)
        )

    def get_hls_url(self, stream_id: str) -> str:
        return f"{self.base_url}/hls/{stream_id}/index.m3u8"

    async def start_stream(
        self,
        stream_id: str,
        source_uri: str,
        quality: str = "medium"
    ) -> StreamHandle:
        """
        Ask the media server to start converting a source stream.

        Args:
            stream_id: Caller-chosen stream identifier
            source_uri: rtsp:// URI, credentials embedded if required
            quality: low, medium or high
        """
        if quality not in STREAM_QUALITIES:
            raise MediaServerError(f"Unsupported stream quality: {quality}", details={"quality": quality})

        result = await self._run(
            "POST",
            "/api/stream/start",
            {"streamId": stream_id, "rtspUrl": source_uri, "quality": quality},
        )
        result = result if isinstance(result, dict) else {}

        logger.info(f"Media server started stream {stream_id}")
        return StreamHandle(
            stream_id=stream_id,
            hls_url=result.get("hlsUrl") or self.get_hls_url(stream_id),
            status=result.get("status", "starting"),
            raw=result,
        )

    async def stop_stream(self, stream_id: str) -> Dict[str, Any]:
        result = await self._run("POST", "/api/stream/stop", {"streamId": stream_id})
        logger.info(f"Media server stopped stream {stream_id}")
        return result if isinstance(result, dict) else {"streamId": stream_id, "status": "stopped"}

    async def get_active_streams(self) -> List[Dict[str, Any]]:
        result = await self._run("GET", "/api/streams")
        if isinstance(result, dict):
            return result.get("streams", [])
        return []

    async def health_check(self) -> bool:
        """
        Check media server health

        Returns:
            True if /health answered with a success status, False otherwise
        """
        try:
            await self._run("GET", "/health")
            return True
        except MediaServerError as e:
            logger.warning(f"Media server health check failed: {e.message}")
            return False

    async def get_server_status(self) -> Dict[str, Any]:
        """Server status, or an offline placeholder document when unreachable"""
        try:
            result = await self._run("GET", "/api/status")
        except MediaServerError as e:
            logger.warning(f"Failed to get media server status: {e.message}")
            return self._offline_status("offline")

        if not isinstance(result, dict):
            return self._offline_status("unavailable")
        return result

    def _offline_status(self, status: str) -> Dict[str, Any]:
        port = urlsplit(self.base_url).port
        return {
            "status": status,
            "port": port if port is not None else "unknown",
            "activeStreams": 0,
            "uptime": 0,
            "version": "unknown",
            "message": (
                "Media server is offline. Please check server status."
                if status == "offline"
                else "Media server returned invalid response. Check configuration."
            ),
        }

    def close(self):
        """Close connection and cleanup resources"""
        self.session.close()
        self.executor.shutdown(wait=False)
        logger.info("Media server client closed")
