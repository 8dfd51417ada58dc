"""Dispatch statistics collection and reporting.

Provides metrics for commands routed through the device manager:
- Success/failure/unknown-device counts per endpoint address
- Timing statistics (min, max, avg, p95) of forwarded calls
- Failure counts per operation name
- Rolling windows for recent performance

Thread-safe for concurrent dispatch from several callers.

Example:
    stats = DispatchStats()

    stats.record_dispatch("urn:uuid:cam-1", "reboot_device", 35.0, "ok")
    stats.record_dispatch("urn:uuid:cam-1", "refresh_profiles", 0.0, "failed")

    summary = stats.get_summary("urn:uuid:cam-1")
    print(f"Success rate: {summary.success_rate:.1%}")

    data = stats.to_dict()
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# =============================================================================
# Constants
# =============================================================================

#: Default number of dispatch records retained per endpoint.
DEFAULT_STATS_WINDOW_SIZE: int = 1000

#: Status strings understood by the collectors. They mirror
#: ``DispatchStatus`` values from the manager module.
STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_UNKNOWN_DEVICE = "unknown_device"


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class DispatchSummary:
    """Summary statistics for one endpoint address.

    Attributes:
        address: Endpoint address the commands targeted
        total_dispatches: Every dispatch attempt, unknown-device included
        successful: Device reported success
        failed: Device reported failure
        unknown_device: Address was not in the registry at dispatch time
        success_rate: successful / total_dispatches (0.0 to 1.0)
        min_duration_ms: Fastest forwarded call
        max_duration_ms: Slowest forwarded call
        avg_duration_ms: Mean forwarded call duration
        p95_duration_ms: 95th percentile duration
        failures_by_operation: Failure count keyed by operation name
        last_dispatch_time: Time of the last dispatch
        uptime_seconds: Time since the collector was created or reset
    """

    address: str
    total_dispatches: int = 0
    successful: int = 0
    failed: int = 0
    unknown_device: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    failures_by_operation: dict[str, int] = field(default_factory=dict)
    last_dispatch_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert the summary to a JSON-serializable dictionary.

        Returns:
            Dict with every field; ``last_dispatch_time`` as ISO string or
            None.
        """
        return {
            "address": self.address,
            "total_dispatches": self.total_dispatches,
            "successful": self.successful,
            "failed": self.failed,
            "unknown_device": self.unknown_device,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "failures_by_operation": self.failures_by_operation.copy(),
            "last_dispatch_time": (
                self.last_dispatch_time.isoformat()
                if self.last_dispatch_time
                else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass
class DispatchRecord:
    """Single dispatch record for statistics."""

    timestamp: float  # monotonic time
    operation: str
    duration_ms: float
    status: str


class EndpointStatsCollector:
    """Statistics collector for a single endpoint address.

    Maintains a rolling window of recent dispatches and computes summary
    statistics on demand.
    """

    def __init__(
        self,
        address: str,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
    ) -> None:
        """Initialize a collector for one endpoint.

        Cumulative counters track totals for the whole lifetime; the
        bounded deque keeps detailed records for duration percentiles.

        Args:
            address: Endpoint address this collector describes.
            window_size: Maximum dispatch records kept for timing stats.
        """
        self.address = address
        self._records: deque[DispatchRecord] = deque(maxlen=window_size)
        self._failures_by_operation: dict[str, int] = {}
        self._counts = {STATUS_OK: 0, STATUS_FAILED: 0, STATUS_UNKNOWN_DEVICE: 0}
        self._start_time = time.monotonic()
        self._last_dispatch_time: datetime | None = None
        self._lock = threading.Lock()

    def record(self, operation: str, duration_ms: float, status: str) -> None:
        """Record one dispatch outcome.

        Args:
            operation: Operation name (e.g. 'reboot_device').
            duration_ms: Time spent in the device call. 0 for
                unknown-device dispatches, which never reach a device.
            status: One of 'ok', 'failed', 'unknown_device'.

        Raises:
            ValueError: If status is not a known status string.
        """
        if status not in self._counts:
            raise ValueError(f"Unknown dispatch status: {status!r}")

        record = DispatchRecord(
            timestamp=time.monotonic(),
            operation=operation,
            duration_ms=duration_ms,
            status=status,
        )

        with self._lock:
            self._records.append(record)
            self._counts[status] += 1
            if status == STATUS_FAILED:
                self._failures_by_operation[operation] = (
                    self._failures_by_operation.get(operation, 0) + 1
                )
            self._last_dispatch_time = _utc_now()

    def get_summary(self) -> DispatchSummary:
        """Compute the current summary.

        Durations are taken from forwarded calls only (ok and failed);
        unknown-device dispatches never reach a device and are excluded.
        """
        # Copy under lock, compute outside it
        with self._lock:
            counts = self._counts.copy()
            failures = self._failures_by_operation.copy()
            last_time = self._last_dispatch_time
            start_time = self._start_time
            durations = [
                r.duration_ms
                for r in self._records
                if r.status != STATUS_UNKNOWN_DEVICE
            ]

        total = sum(counts.values())

        if durations:
            min_dur = min(durations)
            max_dur = max(durations)
            avg_dur = sum(durations) / len(durations)
            p95_dur = _percentile(sorted(durations), 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return DispatchSummary(
            address=self.address,
            total_dispatches=total,
            successful=counts[STATUS_OK],
            failed=counts[STATUS_FAILED],
            unknown_device=counts[STATUS_UNKNOWN_DEVICE],
            success_rate=counts[STATUS_OK] / total if total > 0 else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            failures_by_operation=failures,
            last_dispatch_time=last_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Reset all statistics to the initial state."""
        with self._lock:
            self._records.clear()
            self._failures_by_operation.clear()
            for status in self._counts:
                self._counts[status] = 0
            self._start_time = time.monotonic()
            self._last_dispatch_time = None


class DispatchStats:
    """Statistics manager for all endpoints.

    Thread-safe container of per-endpoint collectors, created lazily on
    first record. Inject into DeviceManager to have every dispatch counted.

    Usage:
        stats = DispatchStats()
        manager = DeviceManager(discovery, driver, stats=stats)
        ...
        stats.get_summary("urn:uuid:cam-1")
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Initialize the manager.

        Args:
            window_size: Record window passed to each collector.
        """
        self._window_size = window_size
        self._collectors: dict[str, EndpointStatsCollector] = {}
        self._lock = threading.Lock()

    def _get_collector(self, address: str) -> EndpointStatsCollector:
        """Get or create the collector for an address."""
        with self._lock:
            if address not in self._collectors:
                self._collectors[address] = EndpointStatsCollector(
                    address, self._window_size
                )
            return self._collectors[address]

    def record_dispatch(
        self,
        address: str,
        operation: str,
        duration_ms: float,
        status: str,
    ) -> None:
        """Record a dispatch attempt.

        Args:
            address: Target endpoint address.
            operation: Operation name.
            duration_ms: Duration of the forwarded call.
            status: 'ok', 'failed' or 'unknown_device'.

        Example:
            >>> stats = DispatchStats()
            >>> stats.record_dispatch("urn:uuid:1", "reboot_device", 20.0, "ok")
        """
        self._get_collector(address).record(operation, duration_ms, status)

    def get_summary(self, address: str) -> DispatchSummary:
        """Get the summary for one address (zero values if never seen)."""
        return self._get_collector(address).get_summary()

    def get_all_summaries(self) -> dict[str, DispatchSummary]:
        """Get summaries for every address that has been recorded."""
        with self._lock:
            collectors = list(self._collectors.items())
        return {address: collector.get_summary() for address, collector in collectors}

    def reset(self, address: str | None = None) -> None:
        """Reset statistics for one address, or for all when None.

        Resetting an address that was never recorded is a no-op.
        """
        with self._lock:
            if address is not None:
                if address in self._collectors:
                    self._collectors[address].reset()
            else:
                for collector in self._collectors.values():
                    collector.reset()

    def to_dict(self) -> dict[str, Any]:
        """Export all statistics in a JSON-serializable form.

        Returns:
            {"endpoints": {address: summary_dict, ...}, "timestamp": iso}
        """
        summaries = self.get_all_summaries()
        return {
            "endpoints": {
                address: summary.to_dict() for address, summary in summaries.items()
            },
            "timestamp": _utc_now().isoformat(),
        }


def _percentile(sorted_data: list[float], p: float) -> float:
    """Calculate a percentile from pre-sorted data with linear interpolation.

    Args:
        sorted_data: Values sorted ascending. Empty list returns 0.0.
        p: Percentile in [0, 100].

    Returns:
        The interpolated percentile value.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50)
        3.0
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    floor_idx = int(k)
    ceil_idx = min(floor_idx + 1, len(sorted_data) - 1)

    if floor_idx == ceil_idx:
        return sorted_data[floor_idx]

    fraction = k - floor_idx
    return sorted_data[floor_idx] * (1 - fraction) + sorted_data[ceil_idx] * fraction
