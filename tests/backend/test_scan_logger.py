"""
Unit tests for discovery scan logging
"""

import logging

import pytest

from services.scan_logger import ScanLogger, configure_scan_logging, timed_stage


class TestScanLogger:
    """Tests for ScanLogger stages and metrics"""

    def test_stages_recorded(self):
        scan_log = ScanLogger("abc123", "192.168.1.1-20")

        with scan_log.stage("parse_range"):
            pass
        with pytest.raises(ValueError):
            with scan_log.stage("probe", targets=20):
                raise ValueError("bad")

        stages = scan_log.metrics.stages
        assert [s.name for s in stages] == ["parse_range", "probe"]
        assert stages[0].success is True
        assert stages[1].success is False
        assert stages[1].error == "bad"
        assert stages[1].metadata == {"targets": 20}

    def test_fallback_and_summary(self):
        scan_log = ScanLogger("abc123", "192.168.1.1-20")
        scan_log.metrics.targets = 20
        scan_log.set_fallback("no device answered")

        metrics = scan_log.complete()

        assert metrics.total_duration_ms is not None
        assert metrics.to_dict()["fallbackTriggered"] is True
        assert "Demo fallback: no device answered" in metrics.summary()

    def test_messages_carry_scan_id(self, caplog):
        logger = logging.getLogger("sentinel.discovery")
        logger.propagate = True
        caplog.set_level(logging.INFO, logger="sentinel.discovery")

        ScanLogger("feed42").info("hello")

        assert "[scan feed42] hello" in caplog.text

    def test_configure_is_idempotent(self):
        configure_scan_logging()
        configure_scan_logging()
        logger = logging.getLogger("sentinel.discovery")
        marked = [h for h in logger.handlers if getattr(h, "_sentinel_scan", False)]
        assert len(marked) == 1
        logger.propagate = True


class TestTimedStage:
    """Tests for the timing decorator"""

    @pytest.mark.asyncio
    async def test_result_and_errors_pass_through(self):
        @timed_stage("work")
        async def work(value):
            if value < 0:
                raise ValueError("negative")
            return value * 2

        assert await work(4) == 8
        with pytest.raises(ValueError):
            await work(-1)
