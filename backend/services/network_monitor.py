# backend/services/network_monitor.py
"""
Network Monitor Service

Background loop that samples network health on a fixed interval:
- Bandwidth from the host's link speed, or a labelled synthetic estimate
- Latency from concurrent timed HEAD requests to well-known endpoints
- Packet loss as the failed share of a batch of HEAD probes (no ICMP)
- Connected device and established connection counts

Each sample is kept in a bounded history, checked against alert thresholds,
and pushed to subscribers. Alerts stay unresolved until acknowledged.
"""

import asyncio
import inspect
import json
import logging
import random
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from config import settings
from errors import AlertNotFoundError
from integrations.http_probe import HTTPProbe
from models.monitoring import (
    Alert,
    AlertSeverity,
    AlertType,
    BandwidthReading,
    BandwidthSource,
    LatencyReading,
    MetricsSample,
)
from utils.environment import count_active_connections, get_link_speed_mbps

logger = logging.getLogger(__name__)

# Alert thresholds
LATENCY_MEDIUM_MS = 500
LATENCY_HIGH_MS = 1000
PACKET_LOSS_MEDIUM_PCT = 5
PACKET_LOSS_HIGH_PCT = 10
BANDWIDTH_LOW_MBPS = 10

# Upload share assumed when only the link speed is known
UPLINK_ESTIMATE_RATIO = 0.1


# =============================================================================
# THRESHOLD RULES
# =============================================================================

def evaluate_alerts(sample: MetricsSample) -> List[Alert]:
    """Apply threshold rules to a sample. At most one alert per rule."""
    alerts: List[Alert] = []

    avg = sample.latency.avg
    if avg > LATENCY_MEDIUM_MS:
        alerts.append(Alert(
            type=AlertType.LATENCY,
            severity=AlertSeverity.HIGH if avg > LATENCY_HIGH_MS else AlertSeverity.MEDIUM,
            message=f"High network latency detected: {avg:.0f}ms",
            timestamp=sample.timestamp,
            details={"latency": sample.latency.to_dict()},
        ))

    loss = sample.packet_loss
    if loss > PACKET_LOSS_MEDIUM_PCT:
        alerts.append(Alert(
            type=AlertType.CONNECTION,
            severity=AlertSeverity.HIGH if loss > PACKET_LOSS_HIGH_PCT else AlertSeverity.MEDIUM,
            message=f"High packet loss detected: {loss:.1f}%",
            timestamp=sample.timestamp,
            details={"packetLoss": loss},
        ))

    download = sample.bandwidth.download
    if download < BANDWIDTH_LOW_MBPS:
        alerts.append(Alert(
            type=AlertType.BANDWIDTH,
            severity=AlertSeverity.MEDIUM,
            message=f"Low bandwidth detected: {download:.1f} Mbps",
            timestamp=sample.timestamp,
            details={"bandwidth": sample.bandwidth.to_dict()},
        ))

    return alerts


def compute_health_score(sample: Optional[MetricsSample]) -> int:
    """
    0-100 score for a sample; 100 when there is no sample yet.

    Only the worst latency and bandwidth tier is deducted.
    """
    if sample is None:
        return 100

    score = 100.0

    avg = sample.latency.avg
    if avg > 1000:
        score -= 30
    elif avg > 500:
        score -= 20
    elif avg > 100:
        score -= 10

    score -= 2 * sample.packet_loss

    download = sample.bandwidth.download
    if download < 5:
        score -= 30
    elif download < 10:
        score -= 20

    return int(round(max(0.0, min(100.0, score))))


# =============================================================================
# SAMPLER
# =============================================================================

class MetricsSampler:
    """
    Gathers one MetricsSample from what the host exposes.

    psutil introspection and the device count query block, so they run on
    the sampler's thread pool.
    """

    def __init__(
        self,
        http_probe: Optional[HTTPProbe] = None,
        latency_endpoints: Optional[List[str]] = None,
        packet_loss_batch: Optional[int] = None,
        packet_loss_timeout: Optional[float] = None,
        latency_timeout: Optional[float] = None,
        device_counter: Optional[Callable[[], int]] = None,
    ):
        self.http_probe = http_probe or HTTPProbe()
        self.latency_endpoints = latency_endpoints if latency_endpoints is not None else settings.latency_endpoints
        self.packet_loss_batch = packet_loss_batch or settings.monitor_packet_loss_batch
        self.packet_loss_timeout = packet_loss_timeout if packet_loss_timeout is not None \
            else settings.monitor_packet_loss_timeout_seconds
        self.latency_timeout = latency_timeout if latency_timeout is not None \
            else settings.monitor_latency_timeout_seconds
        self.device_counter = device_counter
        self.executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="metrics-sampler")

    async def close(self):
        await self.http_probe.close()
        self.executor.shutdown(wait=False)

    async def _run_blocking(self, func: Callable[[], Any]) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self.executor, func)

    async def measure_bandwidth(self) -> BandwidthReading:
        speed = await self._run_blocking(get_link_speed_mbps)
        if speed:
            return BandwidthReading(
                download=speed,
                upload=speed * UPLINK_ESTIMATE_RATIO,
                source=BandwidthSource.LINK_SPEED,
            )
        return BandwidthReading(
            download=random.uniform(50, 150),
            upload=random.uniform(10, 30),
            source=BandwidthSource.SYNTHETIC,
        )

    async def measure_latency(self) -> LatencyReading:
        """Endpoints that fail are left out of the aggregate."""
        if not self.latency_endpoints:
            return LatencyReading()

        results = await asyncio.gather(
            *(self.http_probe.timed_head(url, timeout=self.latency_timeout) for url in self.latency_endpoints),
            return_exceptions=True,
        )
        timings = [r for r in results if isinstance(r, float)]
        for url, result in zip(self.latency_endpoints, results):
            if isinstance(result, BaseException):
                logger.debug(f"Latency probe to {url} failed: {result}")

        if not timings:
            return LatencyReading()
        return LatencyReading(
            min=min(timings),
            max=max(timings),
            avg=sum(timings) / len(timings),
            endpoints_measured=len(timings),
        )

    async def measure_packet_loss(self) -> float:
        """Percent of a HEAD batch to the first endpoint that failed."""
        if not self.latency_endpoints or self.packet_loss_batch <= 0:
            return 0.0

        target = self.latency_endpoints[0]
        results = await asyncio.gather(
            *(self.http_probe.head(target, timeout=self.packet_loss_timeout) for _ in range(self.packet_loss_batch)),
            return_exceptions=True,
        )
        failed = sum(1 for r in results if isinstance(r, BaseException))
        return failed / self.packet_loss_batch * 100.0

    async def count_connected_devices(self) -> int:
        if self.device_counter is None:
            return 0
        try:
            return int(await self._run_blocking(self.device_counter))
        except Exception as e:
            logger.warning(f"Connected device count unavailable: {e}")
            return 0

    async def count_active_connections(self) -> int:
        return await self._run_blocking(count_active_connections)

    async def sample(self) -> MetricsSample:
        bandwidth, latency, packet_loss, connected_devices, active_connections = await asyncio.gather(
            self.measure_bandwidth(),
            self.measure_latency(),
            self.measure_packet_loss(),
            self.count_connected_devices(),
            self.count_active_connections(),
        )
        return MetricsSample(
            bandwidth=bandwidth,
            latency=latency,
            packet_loss=packet_loss,
            connected_devices=connected_devices,
            active_connections=active_connections,
        )


# =============================================================================
# MONITOR
# =============================================================================

@dataclass
class Subscription:
    on_metrics: Optional[Callable[[MetricsSample], Any]] = None
    on_alert: Optional[Callable[[Alert], Any]] = None


class NetworkMonitor:
    """
    Interval sampling loop with bounded histories.

    start() and stop() are idempotent. After stop() returns no further
    sample is recorded.

    Ticks fire every `interval` seconds measured from start(), not from
    the end of the previous sample.
    """

    def __init__(
        self,
        sampler: Optional[MetricsSampler] = None,
        interval_seconds: Optional[float] = None,
        metrics_history: Optional[int] = None,
        alert_history: Optional[int] = None,
    ):
        self.sampler = sampler or MetricsSampler()
        self.interval = interval_seconds if interval_seconds is not None else settings.monitor_interval_seconds
        self._metrics: Deque[MetricsSample] = deque(maxlen=metrics_history or settings.monitor_metrics_history)
        self._alerts: Deque[Alert] = deque(maxlen=alert_history or settings.monitor_alert_history)
        self._subscribers: Dict[str, Subscription] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """
        Start the sampling loop on the running event loop.

        Returns:
            False if it was already running

        Raises:
            RuntimeError: Called outside a running event loop; the monitor
                stays stopped
        """
        if self._running:
            logger.debug("Network monitor already running")
            return False

        run = self._run()
        try:
            self._task = asyncio.create_task(run, name="network-monitor")
        except RuntimeError:
            run.close()
            raise

        self._running = True
        self._started_at = datetime.utcnow()
        logger.info(f"Network monitor started ({self.interval}s interval)")
        return True

    async def stop(self) -> bool:
        """
        Stop the loop and wait for it to finish.

        Returns:
            False if it was not running
        """
        if not self._running:
            return False

        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Network monitor stopped")
        return True

    async def _run(self):
        # Ticks are anchored to fixed deadlines; sampling time does not
        # stretch the period. An overrun of more than one interval skips
        # the missed slots.
        loop = asyncio.get_event_loop()
        next_tick = loop.time() + self.interval
        while self._running:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            await self._tick()

            next_tick += self.interval
            behind = loop.time() - next_tick
            if behind > self.interval:
                next_tick += (behind // self.interval) * self.interval

    async def _tick(self):
        try:
            sample = await self.sampler.sample()
        except Exception as e:
            logger.error(f"Metrics sampling failed: {e}")
            return

        if not self._running:
            return
        await self._record(sample)

    async def _record(self, sample: MetricsSample) -> List[Alert]:
        self._metrics.append(sample)
        alerts = evaluate_alerts(sample)
        self._alerts.extend(alerts)

        for subscription in list(self._subscribers.values()):
            await self._notify(subscription.on_metrics, sample)
        for alert in alerts:
            logger.warning(f"Network alert [{alert.severity.value}] {alert.message}")
            for subscription in list(self._subscribers.values()):
                await self._notify(subscription.on_alert, alert)
        return alerts

    async def _notify(self, callback: Optional[Callable], payload: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Monitor subscriber failed: {e}")

    async def collect_once(self) -> MetricsSample:
        """Take and record a sample now, outside the interval."""
        sample = await self.sampler.sample()
        await self._record(sample)
        return sample

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(
        self,
        on_metrics: Optional[Callable[[MetricsSample], Any]] = None,
        on_alert: Optional[Callable[[Alert], Any]] = None,
    ) -> str:
        """Register callbacks (sync or async). Returns a subscription id."""
        subscription_id = uuid4().hex[:12]
        self._subscribers[subscription_id] = Subscription(on_metrics=on_metrics, on_alert=on_alert)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscribers.pop(subscription_id, None) is not None

    # =========================================================================
    # Queries
    # =========================================================================

    def get_metrics(self, count: int = 20) -> List[MetricsSample]:
        if count <= 0:
            return []
        return list(self._metrics)[-count:]

    def latest(self) -> Optional[MetricsSample]:
        return self._metrics[-1] if self._metrics else None

    def get_alerts(self, include_resolved: bool = False) -> List[Alert]:
        return [a for a in self._alerts if include_resolved or not a.resolved]

    def resolve_alert(self, alert_id: str) -> Alert:
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.resolve()
                logger.info(f"Alert {alert_id} resolved")
                return alert
        raise AlertNotFoundError(alert_id)

    def health_score(self) -> int:
        return compute_health_score(self.latest())

    def status(self) -> Dict[str, Any]:
        latest = self.latest()
        return {
            "running": self._running,
            "intervalSeconds": self.interval,
            "startedAt": self._started_at.isoformat() + "Z" if self._started_at and self._running else None,
            "samples": len(self._metrics),
            "unresolvedAlerts": len(self.get_alerts()),
            "subscribers": len(self._subscribers),
            "healthScore": compute_health_score(latest),
            "latest": latest.to_dict() if latest else None,
        }

    def export_metrics(self) -> str:
        """JSON document with the full sample and alert histories."""
        return json.dumps({
            "metrics": [m.to_dict() for m in self._metrics],
            "alerts": [a.to_dict() for a in self._alerts],
            "exportTime": datetime.utcnow().isoformat() + "Z",
        }, indent=2)

    async def close(self):
        await self.stop()
        await self.sampler.close()


# Global service instance
_network_monitor: Optional[NetworkMonitor] = None


def get_network_monitor() -> NetworkMonitor:
    """Get or create the global network monitor"""
    global _network_monitor
    if _network_monitor is None:
        _network_monitor = NetworkMonitor()
    return _network_monitor
