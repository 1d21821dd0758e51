"""
Unit tests for the network monitor

Samples come from a scripted sampler so alert rules, history bounds and the
start/stop lifecycle can be checked without touching the network.
"""

import asyncio
import json
import threading

import pytest
from unittest.mock import AsyncMock, patch

from errors import AlertNotFoundError, ProtocolTimeoutError
from models.monitoring import (
    AlertSeverity,
    AlertType,
    BandwidthReading,
    BandwidthSource,
    LatencyReading,
    MetricsSample,
)
from services.network_monitor import (
    MetricsSampler,
    NetworkMonitor,
    compute_health_score,
    evaluate_alerts,
)


def make_sample(latency=50.0, packet_loss=0.0, download=100.0, upload=20.0):
    return MetricsSample(
        bandwidth=BandwidthReading(download=download, upload=upload),
        latency=LatencyReading(min=latency, max=latency, avg=latency, endpoints_measured=1),
        packet_loss=packet_loss,
    )


class ScriptedSampler:
    """Sampler returning a fixed sample and counting calls"""

    def __init__(self, sample=None):
        self.template = sample or make_sample()
        self.calls = 0

    async def sample(self):
        self.calls += 1
        return MetricsSample(
            bandwidth=self.template.bandwidth,
            latency=self.template.latency,
            packet_loss=self.template.packet_loss,
        )

    async def close(self):
        pass


class TestAlertRules:
    """Tests for threshold evaluation"""

    def test_latency_high(self):
        alerts = evaluate_alerts(make_sample(latency=1200))
        latency = [a for a in alerts if a.type == AlertType.LATENCY]
        assert len(latency) == 1
        assert latency[0].severity == AlertSeverity.HIGH

    def test_latency_medium(self):
        alerts = evaluate_alerts(make_sample(latency=600))
        assert [a.severity for a in alerts if a.type == AlertType.LATENCY] == [AlertSeverity.MEDIUM]

    def test_latency_normal(self):
        assert not [a for a in evaluate_alerts(make_sample(latency=100)) if a.type == AlertType.LATENCY]

    def test_packet_loss(self):
        medium = evaluate_alerts(make_sample(packet_loss=6))
        high = evaluate_alerts(make_sample(packet_loss=11))
        assert [a.severity for a in medium if a.type == AlertType.CONNECTION] == [AlertSeverity.MEDIUM]
        assert [a.severity for a in high if a.type == AlertType.CONNECTION] == [AlertSeverity.HIGH]

    def test_low_bandwidth(self):
        alerts = evaluate_alerts(make_sample(download=8))
        assert [(a.type, a.severity) for a in alerts] == [(AlertType.BANDWIDTH, AlertSeverity.MEDIUM)]

    def test_healthy_sample_raises_nothing(self):
        assert evaluate_alerts(make_sample()) == []

    def test_alerts_start_unresolved(self):
        alert = evaluate_alerts(make_sample(latency=2000))[0]
        assert alert.resolved is False
        assert alert.id.startswith("latency-")


class TestHealthScore:
    """Tests for compute_health_score"""

    def test_combined_deductions(self):
        """1100ms latency, 12% loss and 4 Mbps download score 16"""
        assert compute_health_score(make_sample(latency=1100, packet_loss=12, download=4)) == 16

    def test_floor_at_zero(self):
        assert compute_health_score(make_sample(latency=1500, packet_loss=40, download=1)) == 0

    def test_perfect(self):
        assert compute_health_score(make_sample()) == 100

    def test_no_sample(self):
        assert compute_health_score(None) == 100

    def test_tiers(self):
        assert compute_health_score(make_sample(latency=150)) == 90
        assert compute_health_score(make_sample(latency=700)) == 80
        assert compute_health_score(make_sample(download=7)) == 80


class TestHistory:
    """Tests for bounded histories"""

    @pytest.mark.asyncio
    async def test_metrics_ring_capped(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler(), metrics_history=100, alert_history=50)
        for _ in range(120):
            await monitor.collect_once()

        assert len(monitor.get_metrics(count=500)) == 100
        assert len(monitor.get_metrics()) == 20

    @pytest.mark.asyncio
    async def test_alert_ring_evicts_oldest(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler(make_sample(latency=2000)), alert_history=50)

        first = await monitor.collect_once()
        first_alerts = monitor.get_alerts()
        for _ in range(59):
            await monitor.collect_once()

        alerts = monitor.get_alerts()
        assert len(alerts) == 50
        assert first_alerts[0].id not in {a.id for a in alerts}
        assert first is not None


class TestAlertResolution:
    """Tests for acknowledging alerts"""

    @pytest.mark.asyncio
    async def test_resolve(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler(make_sample(download=2)))
        await monitor.collect_once()
        alert = monitor.get_alerts()[0]

        resolved = monitor.resolve_alert(alert.id)

        assert resolved.resolved
        assert monitor.get_alerts() == []
        assert len(monitor.get_alerts(include_resolved=True)) == 1

    def test_resolve_unknown(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler())
        with pytest.raises(AlertNotFoundError):
            monitor.resolve_alert("latency-missing")


class TestSubscribers:
    """Tests for metric and alert push"""

    @pytest.mark.asyncio
    async def test_sync_and_async_callbacks(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler(make_sample(latency=800)))
        metrics_seen = []
        alerts_seen = []

        async def on_alert(alert):
            alerts_seen.append(alert)

        monitor.subscribe(on_metrics=metrics_seen.append, on_alert=on_alert)
        await monitor.collect_once()

        assert len(metrics_seen) == 1
        assert [a.type for a in alerts_seen] == [AlertType.LATENCY]

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self):
        """One subscriber raising does not block the others"""
        monitor = NetworkMonitor(sampler=ScriptedSampler())
        seen = []

        def broken(sample):
            raise RuntimeError("listener gone")

        monitor.subscribe(on_metrics=broken)
        monitor.subscribe(on_metrics=seen.append)
        await monitor.collect_once()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler())
        seen = []
        subscription_id = monitor.subscribe(on_metrics=seen.append)

        assert monitor.unsubscribe(subscription_id) is True
        assert monitor.unsubscribe(subscription_id) is False
        await monitor.collect_once()
        assert seen == []


class TestLifecycle:
    """Tests for start/stop"""

    @pytest.mark.asyncio
    async def test_double_start_single_loop(self):
        """A second start() does not create a second sampling loop"""
        sampler = ScriptedSampler()
        monitor = NetworkMonitor(sampler=sampler, interval_seconds=0.05)

        assert monitor.start() is True
        task = monitor._task
        assert monitor.start() is False
        assert monitor._task is task

        loops = [t for t in asyncio.all_tasks() if t.get_name() == "network-monitor"]
        assert len(loops) == 1

        await asyncio.sleep(0.27)
        await monitor.stop()

        # 5 ticks at most for one loop; two loops would double that
        assert 1 <= sampler.calls <= 6

    @pytest.mark.asyncio
    async def test_fixed_cadence_despite_slow_samples(self):
        """Sampling time does not stretch the interval"""
        sampler = ScriptedSampler()
        original = sampler.sample

        async def slow_sample():
            await asyncio.sleep(0.08)
            return await original()

        sampler.sample = slow_sample
        monitor = NetworkMonitor(sampler=sampler, interval_seconds=0.1)

        monitor.start()
        await asyncio.sleep(0.65)
        await monitor.stop()

        # Fixed deadlines finish about 5 samples; sleep-then-sample finishes 3
        assert len(monitor.get_metrics(count=100)) >= 4

    def test_start_without_event_loop_stays_stopped(self):
        """A failed start leaves the monitor startable"""
        monitor = NetworkMonitor(sampler=ScriptedSampler(), interval_seconds=60)

        with pytest.raises(RuntimeError):
            monitor.start()

        assert monitor.is_running is False
        assert monitor._task is None

        async def start_and_stop():
            started = monitor.start()
            stopped = await monitor.stop()
            return started, stopped

        assert asyncio.run(start_and_stop()) == (True, True)

    @pytest.mark.asyncio
    async def test_no_sample_after_stop(self):

        sampler = ScriptedSampler()
        monitor = NetworkMonitor(sampler=sampler, interval_seconds=0.02)

        monitor.start()
        await asyncio.sleep(0.07)
        assert await monitor.stop() is True
        recorded = len(monitor.get_metrics(count=100))

        await asyncio.sleep(0.08)
        assert len(monitor.get_metrics(count=100)) == recorded
        assert monitor._task is None
        assert await monitor.stop() is False

    @pytest.mark.asyncio
    async def test_sampling_error_keeps_loop_alive(self):
        sampler = ScriptedSampler()
        sampler.sample = AsyncMock(side_effect=[RuntimeError("sensor down"), make_sample(), make_sample()])
        monitor = NetworkMonitor(sampler=sampler, interval_seconds=0.01)

        monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert len(monitor.get_metrics()) >= 1

    @pytest.mark.asyncio
    async def test_status_and_export(self):
        monitor = NetworkMonitor(sampler=ScriptedSampler(make_sample(latency=600)))
        await monitor.collect_once()

        status = monitor.status()
        assert status["running"] is False
        assert status["samples"] == 1
        assert status["unresolvedAlerts"] == 1
        assert status["healthScore"] == 80

        exported = json.loads(monitor.export_metrics())
        assert len(exported["metrics"]) == 1
        assert exported["alerts"][0]["type"] == "latency"
        assert "exportTime" in exported


class TestMetricsSampler:
    """Tests for the sampler measurements"""

    @pytest.mark.asyncio
    async def test_latency_ignores_failed_endpoints(self):
        http_probe = AsyncMock()
        http_probe.timed_head = AsyncMock(side_effect=[
            40.0,
            ProtocolTimeoutError("http", "https://b.example", 5.0),
            60.0,
        ])
        sampler = MetricsSampler(http_probe=http_probe, latency_endpoints=["a", "b", "c"])

        latency = await sampler.measure_latency()

        assert latency.min == 40.0
        assert latency.max == 60.0
        assert latency.avg == 50.0
        assert latency.endpoints_measured == 2

    @pytest.mark.asyncio
    async def test_packet_loss_percentage(self):
        http_probe = AsyncMock()
        failure = ProtocolTimeoutError("http", "https://a.example", 2.0)
        http_probe.head = AsyncMock(side_effect=[None, failure, None, failure])
        sampler = MetricsSampler(http_probe=http_probe, latency_endpoints=["a"], packet_loss_batch=4)

        assert await sampler.measure_packet_loss() == 50.0

    @pytest.mark.asyncio
    async def test_bandwidth_from_link_speed(self):
        sampler = MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[])
        with patch("services.network_monitor.get_link_speed_mbps", return_value=1000.0):
            reading = await sampler.measure_bandwidth()

        assert reading.source == BandwidthSource.LINK_SPEED
        assert reading.download == 1000.0
        assert reading.total == reading.download + reading.upload

    @pytest.mark.asyncio
    async def test_bandwidth_synthetic_fallback(self):
        sampler = MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[])
        with patch("services.network_monitor.get_link_speed_mbps", return_value=None):
            reading = await sampler.measure_bandwidth()

        assert reading.source == BandwidthSource.SYNTHETIC
        assert 50 <= reading.download <= 150

    @pytest.mark.asyncio
    async def test_device_counter_failure_is_zero(self):
        def broken():
            raise RuntimeError("db offline")

        sampler = MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[], device_counter=broken)
        assert await sampler.count_connected_devices() == 0

    @pytest.mark.asyncio
    async def test_blocking_calls_leave_the_event_loop(self):
        """psutil and the device count query run on worker threads"""
        loop_thread = threading.get_ident()
        threads = []

        def counter():
            threads.append(threading.get_ident())
            return 3

        def connections():
            threads.append(threading.get_ident())
            return 7

        sampler = MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[], device_counter=counter)
        with patch("services.network_monitor.count_active_connections", side_effect=connections), \
             patch("services.network_monitor.get_link_speed_mbps", return_value=100.0):
            sample = await sampler.sample()
        await sampler.close()

        assert sample.connected_devices == 3
        assert sample.active_connections == 7
        assert len(threads) == 2
        assert loop_thread not in threads

    def test_latency_timeout_from_settings(self):
        with patch("services.network_monitor.settings.monitor_latency_timeout_seconds", 1.5):
            sampler = MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[])
        assert sampler.latency_timeout == 1.5
        assert MetricsSampler(http_probe=AsyncMock(), latency_endpoints=[], latency_timeout=0.5).latency_timeout == 0.5

