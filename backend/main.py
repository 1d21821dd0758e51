# backend/main.py

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, field_validator
from typing import Optional, List
import asyncio
import datetime
import logging
import traceback

import httpx

from config import get_settings
from database import init_db
from errors import (
    AlertNotFoundError,
    DeviceNotFoundError,
    InvalidRangeError,
    MediaServerError,
    ProtocolError,
    ProtocolTimeoutError,
    SentinelError,
    ValidationError,
)
from integrations.http_probe import HTTPProbe
from integrations.media_server_client import MediaServerClient
from integrations.onvif_client import ONVIFClient
from models.discovery import Credentials
from services.connectivity import ConnectivityService
from services.device_inventory import get_inventory_service
from services.discovery import DiscoveryService
from services.network_monitor import MetricsSampler, NetworkMonitor
from services.prober import Prober
from services.scan_logger import configure_scan_logging
from services.stream_service import StreamService
from utils.rate_limiter import get_scan_rate_limiter, RateLimitError

# Load settings
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Facility Sentinel Backend",
    version="0.1.0",
    description="Camera and network device discovery, connectivity checks and network monitoring"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_for(exc: SentinelError) -> int:
    if isinstance(exc, (InvalidRangeError, ValidationError)):
        return 400
    if isinstance(exc, (DeviceNotFoundError, AlertNotFoundError)):
        return 404
    if isinstance(exc, ProtocolTimeoutError):
        return 504
    if isinstance(exc, (MediaServerError, ProtocolError)):
        return 502
    return 500


# Global exception handler to ensure errors return proper JSON with CORS headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and return proper JSON response"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug else None
        }
    )


@app.exception_handler(SentinelError)
async def sentinel_exception_handler(request: Request, exc: SentinelError):
    """Map domain errors to HTTP status codes"""
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Rate limit exception handler
@app.exception_handler(RateLimitError)
async def rate_limit_exception_handler(request: Request, exc: RateLimitError):
    """Handle rate limit errors with proper 429 response"""
    client = request.client.host if request.client else "unknown"
    logger.warning(f"Rate limit exceeded for {client}: {exc.message}")
    return JSONResponse(
        status_code=429,
        content=exc.to_dict(),
        headers={
            "Retry-After": str(exc.retry_after_seconds),
        }
    )

# ---- Startup event ----

@app.on_event("startup")
async def startup_event():
    """Application startup: build shared clients and services"""
    logger.info("=" * 60)
    logger.info("Facility Sentinel Backend Starting")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Max scan targets: {settings.discovery_max_targets}")
    logger.info(f"Media server: {settings.media_server_url}")

    configure_scan_logging(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.onvif_timeout_seconds),
        verify=False  # Cameras commonly use self-signed certs
    )
    inventory = get_inventory_service()

    app.state.http_client = http_client
    app.state.inventory = inventory
    app.state.rate_limiter = get_scan_rate_limiter()
    app.state.discovery = DiscoveryService(
        prober=Prober(http_client=http_client, credentials=_credentials(None, None)),
    )
    app.state.connectivity = ConnectivityService(http_client=http_client, inventory=inventory)
    app.state.monitor = NetworkMonitor(
        sampler=MetricsSampler(
            http_probe=HTTPProbe(http_client=http_client),
            device_counter=lambda: inventory.count_devices(status="online"),
        ),
    )
    app.state.streams = StreamService(media_server=MediaServerClient(), http_client=http_client)
    app.state.background_tasks = set()

    if settings.monitor_autostart:
        app.state.monitor.start()

    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown - stop the monitor and close clients"""
    logger.info("Facility Sentinel Backend Shutting Down")

    try:
        await app.state.monitor.close()
    except Exception as e:
        logger.error(f"Error stopping network monitor: {e}")

    for task in list(getattr(app.state, "background_tasks", ())):
        task.cancel()

    try:
        app.state.streams.close()
    except Exception as e:
        logger.error(f"Error closing media server client: {e}")

    await app.state.http_client.aclose()
    logger.info("Shutdown complete")


def _credentials(username: Optional[str], password: Optional[str]) -> Credentials:
    """Request credentials, falling back to the configured defaults"""
    return Credentials(
        username=username or settings.onvif_default_username,
        password=password if password is not None else settings.onvif_default_password,
    )

# ---- Pydantic models ----

class DiscoverRequest(BaseModel):
    ipRangeStart: str
    ipRangeEnd: str
    protocols: Optional[List[str]] = None
    timeoutMs: Optional[int] = None
    facilityId: Optional[str] = None

    @field_validator('timeoutMs')
    @classmethod
    def positive_timeout(cls, v):
        """Reject zero or negative timeouts"""
        if v is not None and v <= 0:
            raise ValueError("timeoutMs must be positive")
        return v


class ConnectionTestRequest(BaseModel):
    address: str
    username: Optional[str] = None
    password: Optional[str] = None
    facilityId: Optional[str] = None


class PTZRequest(BaseModel):
    address: str
    port: int = 80
    username: Optional[str] = None
    password: Optional[str] = None
    profileToken: str
    direction: str


class StreamStartRequest(BaseModel):
    address: str
    protocol: str
    streamId: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    profileToken: Optional[str] = None
    quality: str = "medium"
    manufacturer: Optional[str] = None
    facilityId: Optional[str] = None


# ---- Health check endpoint ----

@app.get("/api/health")
async def health_check():
    """Health check endpoint to verify backend is running"""
    return {
        "status": "ok",
        "version": "0.1.0",
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z"
    }


# ---- Discovery endpoints ----

@app.post("/api/discover")
async def discover_devices(request: Request, body: DiscoverRequest):
    """
    Scan an address range for cameras and network devices.

    At most discovery_max_targets addresses are probed, starting at
    ipRangeStart. When nothing answers, demo placeholders are returned with
    synthetic=true.

    Raises:
        400: Malformed range or unknown protocol
        429: Rate limit exceeded
    """
    client_id = request.client.host if request.client else "unknown"

    # Check rate limit (raises RateLimitError if exceeded)
    rate_limiter = request.app.state.rate_limiter
    rate_limiter.check_rate_limit(client_id)

    timeout = None
    if body.timeoutMs is not None:
        timeout = min(body.timeoutMs, 30000) / 1000.0

    logger.info(
        f"Discovery requested from {client_id}: {body.ipRangeStart} - {body.ipRangeEnd} "
        f"(protocols={body.protocols or 'all'})"
    )

    report = await request.app.state.discovery.discover_with_report(
        (body.ipRangeStart, body.ipRangeEnd),
        protocols=body.protocols,
        timeout=timeout,
    )

    persisted = 0
    if body.facilityId:
        persisted = request.app.state.inventory.record_discovery(body.facilityId, report.devices)

    result = report.to_dict()
    result["persisted"] = persisted
    result["rateLimit"] = rate_limiter.get_status(client_id)
    return result


@app.post("/api/devices/test-connection")
async def test_device_connection(request: Request, body: ConnectionTestRequest):
    """Run the ONVIF -> RTSP -> HTTP fallback chain against one device"""
    connectivity = request.app.state.connectivity
    credentials = _credentials(body.username, body.password)

    if body.facilityId:
        reachable = await connectivity.refresh_device_status(body.facilityId, body.address, credentials)
    else:
        reachable = await connectivity.test_connection(body.address, credentials)

    return {
        "address": body.address,
        "reachable": reachable,
        "testedAt": datetime.datetime.utcnow().isoformat() + "Z",
    }


@app.get("/api/facilities/{facility_id}/devices")
async def list_facility_devices(request: Request, facility_id: str, status: Optional[str] = None):
    """Stored devices for a facility in address order"""
    devices = request.app.state.inventory.list_devices(facility_id, status=status)
    return {
        "facilityId": facility_id,
        "devices": [d.to_dict() for d in devices],
        "count": len(devices),
    }


# ---- PTZ ----

async def _run_ptz(client: ONVIFClient, profile_token: str, direction: str):
    try:
        await client.ptz_move(profile_token, direction)
    except SentinelError as e:
        logger.warning(f"PTZ {direction} on {client.target} failed: {e.message}")


@app.post("/api/ptz", status_code=202)
async def ptz_command(request: Request, body: PTZRequest):
    """
    Fire-and-forget continuous move.

    The direction is validated up front; the device call runs in the
    background with its own timeout.
    """
    ONVIFClient.ptz_velocity(body.direction)

    client = ONVIFClient(
        body.address,
        body.port,
        credentials=_credentials(body.username, body.password),
        http_client=request.app.state.http_client,
    )
    task = asyncio.create_task(_run_ptz(client, body.profileToken, body.direction))
    tasks = request.app.state.background_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    return {"accepted": True, "address": body.address, "direction": body.direction.lower()}


# ---- Streams ----

@app.post("/api/streams/start")
async def start_stream(request: Request, body: StreamStartRequest):
    """Resolve a device's RTSP source and start HLS conversion"""
    credentials = _credentials(body.username, body.password) if body.username or body.password else None

    # The stored manufacturer picks the vendor stream path when none is given
    manufacturer = body.manufacturer
    if manufacturer is None and body.facilityId:
        stored = request.app.state.inventory.get_device(body.facilityId, body.address)
        if stored is not None:
            manufacturer = stored.manufacturer

    descriptor = await request.app.state.streams.start_live_stream(
        body.address,
        body.protocol,
        credentials=credentials,
        port=body.port,
        profile_token=body.profileToken,
        stream_id=body.streamId,
        quality=body.quality,
        manufacturer=manufacturer,
    )

    return descriptor.to_dict()


@app.post("/api/streams/{stream_id}/stop")
async def stop_stream(request: Request, stream_id: str):
    return await request.app.state.streams.stop_live_stream(stream_id)


@app.get("/api/streams/health")
async def media_server_health(request: Request):
    streams = request.app.state.streams
    return {
        "healthy": await streams.media_server_healthy(),
        "server": await streams.media_server.get_server_status(),
    }


# ---- Network monitor ----

@app.post("/api/monitor/start")
async def start_monitor(request: Request):
    started = request.app.state.monitor.start()
    return {"started": started, **request.app.state.monitor.status()}


@app.post("/api/monitor/stop")
async def stop_monitor(request: Request):
    stopped = await request.app.state.monitor.stop()
    return {"stopped": stopped, **request.app.state.monitor.status()}


@app.get("/api/monitor/status")
async def monitor_status(request: Request):
    return request.app.state.monitor.status()


@app.get("/api/monitor/metrics")
async def monitor_metrics(request: Request, count: int = 20):
    samples = request.app.state.monitor.get_metrics(min(max(count, 0), settings.monitor_metrics_history))
    return {"metrics": [s.to_dict() for s in samples], "count": len(samples)}


@app.get("/api/monitor/alerts")
async def monitor_alerts(request: Request, includeResolved: bool = False):
    alerts = request.app.state.monitor.get_alerts(include_resolved=includeResolved)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@app.post("/api/monitor/alerts/{alert_id}/resolve")
async def resolve_monitor_alert(request: Request, alert_id: str):
    return request.app.state.monitor.resolve_alert(alert_id).to_dict()


@app.get("/api/monitor/health-score")
async def monitor_health_score(request: Request):
    return {"healthScore": request.app.state.monitor.health_score()}


@app.get("/api/monitor/export")
async def export_monitor_data(request: Request):
    filename = f"network-metrics-{datetime.datetime.utcnow().strftime('%Y%m%d-%H%M%S')}.json"
    return Response(
        content=request.app.state.monitor.export_metrics(),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.websocket("/api/monitor/stream")
async def monitor_stream(websocket: WebSocket):
    """
    Push monitor output to a browser.

    Message Types (Server -> Browser):
        - metrics: {"type": "metrics", "data": <sample>}
        - alert:   {"type": "alert", "data": <alert>}
    """
    await websocket.accept()
    monitor = websocket.app.state.monitor

    async def on_metrics(sample):
        await websocket.send_json({"type": "metrics", "data": sample.to_dict()})

    async def on_alert(alert):
        await websocket.send_json({"type": "alert", "data": alert.to_dict()})

    subscription_id = monitor.subscribe(on_metrics=on_metrics, on_alert=on_alert)
    logger.info(f"Monitor stream subscriber {subscription_id} connected")

    try:
        while True:
            # Client messages are ignored; receiving detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Monitor stream subscriber {subscription_id} disconnected")
    finally:
        monitor.unsubscribe(subscription_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.app_host, port=settings.app_port, reload=settings.debug)
