"""Capture statistics per device and per batch.

Tracks, for each device identity:
- Capture success/failure counts and rates
- Elapsed time distribution (min, max, avg, p95) over a rolling window
- Failure counts by error kind

And, across batches:
- Synchronisation variance history (spread of successful timestamps)

Thread-safe: parallel capture workers record concurrently.

Example:
    stats = DeviceStats()
    stats.record_capture("SN1", elapsed_ms=212.0, success=True)
    stats.record_capture("SN2", elapsed_ms=0.0, success=False,
                         error_kind="timeout")
    stats.record_batch(sync_variance_ms=35.0, succeeded=3, failed=1)

    summary = stats.get_summary("SN1")
    print(f"{summary.success_rate:.0%} p95={summary.p95_elapsed_ms:.1f}ms")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import numpy as np

# =============================================================================
# Constants
# =============================================================================

#: Capture records retained per device for duration statistics.
DEFAULT_STATS_WINDOW_SIZE: int = 1000

#: Batch records retained for sync-variance statistics.
DEFAULT_BATCH_WINDOW_SIZE: int = 200


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _percentile(values: list[float], p: float) -> float:
    """Linear-interpolated percentile, 0.0 for no data.

    Raises:
        ValueError: If ``p`` is outside [0, 100].
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")
    if not values:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), p))


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class StatsSummary:
    """Summary statistics for one device.

    Attributes:
        identity: Device identity.
        total_captures: Capture attempts.
        successful_captures: Successful attempts.
        failed_captures: Failed attempts.
        success_rate: 0.0 to 1.0.
        min_elapsed_ms: Fastest successful capture in the window.
        max_elapsed_ms: Slowest successful capture in the window.
        avg_elapsed_ms: Mean successful capture time in the window.
        p95_elapsed_ms: 95th percentile successful capture time.
        error_counts: Failures by error kind.
        last_capture_time: UTC time of the latest attempt.
        uptime_seconds: Seconds since creation or reset.
    """

    identity: str
    total_captures: int = 0
    successful_captures: int = 0
    failed_captures: int = 0
    success_rate: float = 0.0
    min_elapsed_ms: float = 0.0
    max_elapsed_ms: float = 0.0
    avg_elapsed_ms: float = 0.0
    p95_elapsed_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_capture_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "identity": self.identity,
            "total_captures": self.total_captures,
            "successful_captures": self.successful_captures,
            "failed_captures": self.failed_captures,
            "success_rate": self.success_rate,
            "min_elapsed_ms": self.min_elapsed_ms,
            "max_elapsed_ms": self.max_elapsed_ms,
            "avg_elapsed_ms": self.avg_elapsed_ms,
            "p95_elapsed_ms": self.p95_elapsed_ms,
            "error_counts": self.error_counts.copy(),
            "last_capture_time": (
                self.last_capture_time.isoformat() if self.last_capture_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass
class BatchSummary:
    """Summary across capture batches.

    Attributes:
        total_batches: Batches recorded.
        fully_successful_batches: Batches where every device succeeded.
        avg_sync_variance_ms: Mean variance over batches with 2+ successes.
        max_sync_variance_ms: Largest variance seen in the window.
        p95_sync_variance_ms: 95th percentile variance.
    """

    total_batches: int = 0
    fully_successful_batches: int = 0
    avg_sync_variance_ms: float = 0.0
    max_sync_variance_ms: float = 0.0
    p95_sync_variance_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "total_batches": self.total_batches,
            "fully_successful_batches": self.fully_successful_batches,
            "avg_sync_variance_ms": self.avg_sync_variance_ms,
            "max_sync_variance_ms": self.max_sync_variance_ms,
            "p95_sync_variance_ms": self.p95_sync_variance_ms,
        }


@dataclass
class CaptureRecord:
    """Single capture attempt."""

    timestamp: float  # monotonic
    elapsed_ms: float
    success: bool
    error_kind: str | None = None


# =============================================================================
# Collectors
# =============================================================================


class DeviceStatsCollector:
    """Rolling statistics for one device.

    Keeps cumulative counters for rates and a bounded window of records
    for duration percentiles.
    """

    def __init__(
        self,
        identity: str,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
    ) -> None:
        self.identity = identity
        self._records: deque[CaptureRecord] = deque(maxlen=window_size)
        self._error_counts: dict[str, int] = {}
        self._total = 0
        self._successful = 0
        self._start_time = time.monotonic()
        self._last_capture_time: datetime | None = None
        self._lock = threading.Lock()

    def record(
        self,
        elapsed_ms: float,
        success: bool,
        error_kind: str | None = None,
    ) -> None:
        """Record one capture attempt.

        Args:
            elapsed_ms: Time from dispatch to reply (or failure).
            success: Whether the device confirmed the capture.
            error_kind: Failure category such as ``"timeout"`` or
                ``"disconnected"``. Ignored for successes.
        """
        record = CaptureRecord(
            timestamp=time.monotonic(),
            elapsed_ms=elapsed_ms,
            success=success,
            error_kind=error_kind,
        )
        with self._lock:
            self._records.append(record)
            self._total += 1
            if success:
                self._successful += 1
            elif error_kind:
                self._error_counts[error_kind] = self._error_counts.get(error_kind, 0) + 1
            self._last_capture_time = _utc_now()

    def get_summary(self) -> StatsSummary:
        """Compute a summary snapshot.

        Data is copied under the lock and the percentile work happens
        outside it.
        """
        with self._lock:
            total = self._total
            successful = self._successful
            error_counts = self._error_counts.copy()
            last = self._last_capture_time
            start = self._start_time
            durations = [r.elapsed_ms for r in self._records if r.success]

        if durations:
            min_d, max_d = min(durations), max(durations)
            avg_d = sum(durations) / len(durations)
            p95_d = _percentile(durations, 95)
        else:
            min_d = max_d = avg_d = p95_d = 0.0

        return StatsSummary(
            identity=self.identity,
            total_captures=total,
            successful_captures=successful,
            failed_captures=total - successful,
            success_rate=successful / total if total else 0.0,
            min_elapsed_ms=min_d,
            max_elapsed_ms=max_d,
            avg_elapsed_ms=avg_d,
            p95_elapsed_ms=p95_d,
            error_counts=error_counts,
            last_capture_time=last,
            uptime_seconds=time.monotonic() - start,
        )

    def reset(self) -> None:
        """Clear records and counters; restart the uptime clock."""
        with self._lock:
            self._records.clear()
            self._error_counts.clear()
            self._total = 0
            self._successful = 0
            self._start_time = time.monotonic()
            self._last_capture_time = None


class DeviceStats:
    """Thread-safe statistics for every device plus batch history.

    Collectors are created lazily the first time an identity records.

    Usage:
        stats = DeviceStats()
        coordinator = CaptureCoordinator(stats=stats)
        ...
        print(stats.to_dict())
    """

    def __init__(
        self,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
        batch_window_size: int = DEFAULT_BATCH_WINDOW_SIZE,
    ) -> None:
        self._window_size = window_size
        self._collectors: dict[str, DeviceStatsCollector] = {}
        self._variances: deque[float] = deque(maxlen=batch_window_size)
        self._total_batches = 0
        self._full_batches = 0
        self._lock = threading.Lock()

    def _get_collector(self, identity: str) -> DeviceStatsCollector:
        with self._lock:
            collector = self._collectors.get(identity)
            if collector is None:
                collector = DeviceStatsCollector(identity, self._window_size)
                self._collectors[identity] = collector
            return collector

    def record_capture(
        self,
        identity: str,
        elapsed_ms: float,
        success: bool,
        error_kind: str | None = None,
    ) -> None:
        """Record one capture attempt for ``identity``."""
        self._get_collector(identity).record(elapsed_ms, success, error_kind)

    def record_batch(self, sync_variance_ms: float, succeeded: int, failed: int) -> None:
        """Record the outcome of one multi-device capture.

        Variance is only kept when at least two devices succeeded, since
        it is defined as zero otherwise and would skew the average.
        """
        with self._lock:
            self._total_batches += 1
            if failed == 0 and succeeded > 0:
                self._full_batches += 1
            if succeeded >= 2:
                self._variances.append(sync_variance_ms)

    def get_summary(self, identity: str) -> StatsSummary:
        """Summary for one identity (zeros if never seen)."""
        return self._get_collector(identity).get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        """Summaries for every identity that has recorded."""
        with self._lock:
            collectors = list(self._collectors.items())
        return {identity: c.get_summary() for identity, c in collectors}

    def get_batch_summary(self) -> BatchSummary:
        """Summary of synchronisation variance across batches."""
        with self._lock:
            variances = list(self._variances)
            total = self._total_batches
            full = self._full_batches
        if not variances:
            return BatchSummary(total_batches=total, fully_successful_batches=full)
        return BatchSummary(
            total_batches=total,
            fully_successful_batches=full,
            avg_sync_variance_ms=sum(variances) / len(variances),
            max_sync_variance_ms=max(variances),
            p95_sync_variance_ms=_percentile(variances, 95),
        )

    def reset(self, identity: str | None = None) -> None:
        """Reset one device, or everything including batch history."""
        with self._lock:
            if identity is not None:
                collector = self._collectors.get(identity)
                if collector is not None:
                    collector.reset()
                return
            for collector in self._collectors.values():
                collector.reset()
            self._variances.clear()
            self._total_batches = 0
            self._full_batches = 0

    def to_dict(self) -> dict[str, Any]:
        """Export everything as a JSON-serialisable dictionary.

        Returns:
            ``{"devices": {identity: {...}}, "batches": {...},
            "timestamp": iso8601}``
        """
        return {
            "devices": {
                identity: summary.to_dict()
                for identity, summary in self.get_all_summaries().items()
            },
            "batches": self.get_batch_summary().to_dict(),
            "timestamp": _utc_now().isoformat(),
        }
