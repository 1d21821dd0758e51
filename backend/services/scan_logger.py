# backend/services/scan_logger.py
"""
Discovery scan logging and metrics.

Every line logged through a ScanLogger carries the scan id, and each scan
phase (range parsing, probing, aggregation) is timed.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Generator, List, Optional

logger = logging.getLogger("sentinel.discovery")


@dataclass
class ScanStage:
    """Timing for one phase of a scan"""
    name: str
    started: float = field(default_factory=time.perf_counter)
    duration_ms: Optional[float] = None
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def finish(self, success: bool = True, error: Optional[str] = None) -> None:
        self.duration_ms = (time.perf_counter() - self.started) * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.name,
            "durationMs": round(self.duration_ms, 2) if self.duration_ms is not None else None,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class ScanMetrics:
    """Counters for a whole scan"""
    scan_id: str
    address_range: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    total_duration_ms: Optional[float] = None
    targets: int = 0
    reachable: int = 0
    clamped: bool = False
    fallback_triggered: bool = False
    fallback_reason: Optional[str] = None
    stages: List[ScanStage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanId": self.scan_id,
            "range": self.address_range,
            "startedAt": self.started_at.isoformat() + "Z",
            "totalDurationMs": self.total_duration_ms,
            "targets": self.targets,
            "reachable": self.reachable,
            "clamped": self.clamped,
            "fallbackTriggered": self.fallback_triggered,
            "fallbackReason": self.fallback_reason,
            "stages": [s.to_dict() for s in self.stages],
        }

    def summary(self) -> str:
        lines = [
            f"Scan {self.scan_id} over {self.address_range}",
            f"  Targets: {self.targets}{' (clamped)' if self.clamped else ''}",
            f"  Reachable: {self.reachable}",
        ]
        if self.fallback_triggered:
            lines.append(f"  Demo fallback: {self.fallback_reason or 'triggered'}")
        for stage in self.stages:
            status = "OK" if stage.success else "FAILED"
            duration = f"{stage.duration_ms:.1f}ms" if stage.duration_ms is not None else "..."
            lines.append(f"    - {stage.name}: {status} ({duration})")
        return "\n".join(lines)


class ScanLogger:
    """Structured logger bound to one discovery scan"""

    def __init__(self, scan_id: str, address_range: str = "?"):
        self.scan_id = scan_id
        self.metrics = ScanMetrics(scan_id=scan_id, address_range=address_range)
        self._started = time.perf_counter()

    def _log(self, level: int, message: str) -> None:
        logger.log(level, f"[scan {self.scan_id}] {message}", extra={"scan_id": self.scan_id})

    def info(self, message: str) -> None:
        self._log(logging.INFO, message)

    def warning(self, message: str) -> None:
        self._log(logging.WARNING, message)

    def error(self, message: str) -> None:
        self._log(logging.ERROR, message)

    def debug(self, message: str) -> None:
        self._log(logging.DEBUG, message)

    @contextmanager
    def stage(self, name: str, **metadata: Any) -> Generator[ScanStage, None, None]:
        """
        Time a scan phase.

        Usage:
            with scan_log.stage("probe", targets=12) as stage:
                ...
                stage.metadata["reachable"] = 3
        """
        current = ScanStage(name=name, metadata=metadata)
        self.debug(f"Stage '{name}' started")
        try:
            yield current
            current.finish(success=True)
            self.debug(f"Stage '{name}' completed in {current.duration_ms:.1f}ms")
        except Exception as e:
            current.finish(success=False, error=str(e))
            self.warning(f"Stage '{name}' failed: {e}")
            raise
        finally:
            self.metrics.stages.append(current)

    def set_fallback(self, reason: str) -> None:
        self.metrics.fallback_triggered = True
        self.metrics.fallback_reason = reason
        self.warning(f"Demo fallback triggered: {reason}")

    def complete(self) -> ScanMetrics:
        self.metrics.total_duration_ms = (time.perf_counter() - self._started) * 1000
        self.info(
            f"Scan finished: {self.metrics.reachable}/{self.metrics.targets} reachable "
            f"in {self.metrics.total_duration_ms:.1f}ms"
        )
        self.debug(self.metrics.summary())
        return self.metrics


def timed_stage(stage_name: str):
    """
    Decorator for timing async functions.

    Usage:
        @timed_stage("probe")
        async def probe(self, ...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                logger.debug(f"'{stage_name}' completed in {(time.perf_counter() - start) * 1000:.1f}ms")
                return result
            except Exception as e:
                logger.debug(f"'{stage_name}' failed after {(time.perf_counter() - start) * 1000:.1f}ms: {e}")
                raise
        return wrapper
    return decorator


def configure_scan_logging(
    level: int = logging.INFO,
    format_string: Optional[str] = None,
) -> None:
    """
    Attach a stream handler to the discovery logger.

    Args:
        level: Logging level
        format_string: Optional custom format string
    """
    if format_string is None:
        format_string = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    scan_logger = logging.getLogger("sentinel.discovery")
    if any(getattr(h, "_sentinel_scan", False) for h in scan_logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))
    handler._sentinel_scan = True  # type: ignore[attr-defined]

    scan_logger.setLevel(level)
    scan_logger.addHandler(handler)
    scan_logger.propagate = False
