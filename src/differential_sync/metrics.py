"""
OpenTelemetry metrics for sync runs.

Metrics Exposed:
    - sync.records.processed (Counter): Records committed to the destination
    - sync.records.failed (Counter): Records recorded as failed
    - sync.batches.committed (Counter): Batch transactions committed
    - sync.batch.duration (Histogram): Wall time per batch in milliseconds
    - sync.constraint.retries (Counter): Batch splits after constraint violations
    - sync.entity.duration (Histogram): Wall time per entity in seconds
    - sync.throughput (Gauge): Current records per second of the run

All metrics carry the 'run_id' attribute; per-entity metrics also carry
'entity_type'.

Example:
    >>> metrics = SyncMetrics("run-123")
    >>> with metrics.time_batch("doctors") as timer:
    ...     outcome = await apply_batch()
    ...     timer.committed = outcome.committed
    >>> metrics.record_failed("doctors", 1, error_type="CONSTRAINT_VIOLATION")
"""

from __future__ import annotations

import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Meter, MeterProvider, Observation

METER_NAME = "differential_sync"
METER_VERSION = "1.0.0"

# Module-level meter instance
_meter: Meter | None = None


def _get_meter() -> Meter:
    """Get or create the meter of the global meter provider."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version=METER_VERSION)
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


@dataclass(frozen=True)
class SyncMetricSnapshot:
    """
    Snapshot of the values recorded for a run.

    Attributes:
        records_processed: Records committed, by entity type
        records_failed: Records failed, by entity type
        batches_committed: Batch transactions committed
        constraint_retries: Batch splits after constraint violations
        throughput: Last reported records per second
        batch_durations_ms: Every recorded batch duration
    """

    records_processed: dict[str, int] = field(default_factory=dict)
    records_failed: dict[str, int] = field(default_factory=dict)
    batches_committed: int = 0
    constraint_retries: int = 0
    throughput: float = 0.0
    batch_durations_ms: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "records_processed": dict(self.records_processed),
            "records_failed": dict(self.records_failed),
            "batches_committed": self.batches_committed,
            "constraint_retries": self.constraint_retries,
            "throughput": self.throughput,
            "batch_durations_ms": list(self.batch_durations_ms),
        }


@dataclass
class SyncMetrics:
    """
    Container for the metric instruments of one run.

    Attributes:
        run_id: Run identifier for metric labels
        enable_metrics: Whether metrics are exported (default True)
        meter_provider: Provider to take the meter from
            (default: the global provider)
    """

    run_id: str
    enable_metrics: bool = True
    meter_provider: MeterProvider | None = None

    _meter: Meter | None = field(default=None, init=False, repr=False)
    _processed_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _batches_counter: Any = field(default=None, init=False, repr=False)
    _batch_duration_histogram: Any = field(default=None, init=False, repr=False)
    _constraint_retries_counter: Any = field(default=None, init=False, repr=False)
    _entity_duration_histogram: Any = field(default=None, init=False, repr=False)
    _throughput_value: float = field(default=0.0, init=False, repr=False)

    # Internal counters for snapshot
    _processed: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _failed: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _batches: int = field(default=0, init=False, repr=False)
    _constraint_retries: int = field(default=0, init=False, repr=False)
    _batch_durations: list[float] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if not self.enable_metrics:
            self._meter = metrics.NoOpMeter(METER_NAME)
        elif self.meter_provider is not None:
            self._meter = self.meter_provider.get_meter(METER_NAME, version=METER_VERSION)
        else:
            self._meter = _get_meter()
        self._setup_metrics(self._meter)

    def _setup_metrics(self, meter: Meter) -> None:
        self._processed_counter = meter.create_counter(
            name="sync.records.processed",
            unit="records",
            description="Records committed to the destination",
        )
        self._failed_counter = meter.create_counter(
            name="sync.records.failed",
            unit="records",
            description="Records recorded as failed",
        )
        self._batches_counter = meter.create_counter(
            name="sync.batches.committed",
            unit="batches",
            description="Batch transactions committed",
        )
        self._batch_duration_histogram = meter.create_histogram(
            name="sync.batch.duration",
            unit="ms",
            description="Wall time per batch in milliseconds",
        )
        self._constraint_retries_counter = meter.create_counter(
            name="sync.constraint.retries",
            unit="splits",
            description="Batch splits after constraint violations",
        )
        self._entity_duration_histogram = meter.create_histogram(
            name="sync.entity.duration",
            unit="s",
            description="Wall time per entity in seconds",
        )
        meter.create_observable_gauge(
            name="sync.throughput",
            callbacks=[self._observe_throughput],
            unit="records/s",
            description="Current records per second of the run",
        )

    def _base_attributes(self, entity_type: str | None = None) -> dict[str, str]:
        attrs = {"run_id": self.run_id}
        if entity_type is not None:
            attrs["entity_type"] = entity_type
        return attrs

    def _observe_throughput(self, options: CallbackOptions) -> Iterable[Observation]:
        """Callback for the observable throughput gauge."""
        yield Observation(value=self._throughput_value, attributes=self._base_attributes())

    def record_processed(self, entity_type: str, count: int) -> None:
        """Record records committed for an entity."""
        if count <= 0:
            return
        self._processed_counter.add(count, self._base_attributes(entity_type))
        self._processed[entity_type] = self._processed.get(entity_type, 0) + count

    def record_failed(self, entity_type: str, count: int, error_type: str | None = None) -> None:
        """
        Record failed records for an entity.

        Args:
            entity_type: Entity type
            count: Number of failed records
            error_type: Error code of the failures
        """
        if count <= 0:
            return
        attrs = self._base_attributes(entity_type)
        if error_type:
            attrs["error_type"] = error_type
        self._failed_counter.add(count, attrs)
        self._failed[entity_type] = self._failed.get(entity_type, 0) + count

    def record_batch(self, entity_type: str, duration_ms: float, *, status: str = "success") -> None:
        """Record one committed batch and its duration."""
        attrs = {**self._base_attributes(entity_type), "status": status}
        self._batches_counter.add(1, attrs)
        self._batch_duration_histogram.record(duration_ms, attrs)
        self._batches += 1
        self._batch_durations.append(duration_ms)

    def record_constraint_retry(self, entity_type: str) -> None:
        """Record a batch split after a constraint violation."""
        self._constraint_retries_counter.add(1, self._base_attributes(entity_type))
        self._constraint_retries += 1

    def record_entity_duration(self, entity_type: str, duration_seconds: float, state: str) -> None:
        """Record the wall time of an entity segment."""
        attrs = {**self._base_attributes(entity_type), "state": state}
        self._entity_duration_histogram.record(duration_seconds, attrs)

    def record_throughput(self, records_per_second: float) -> None:
        """Update the value reported by the throughput gauge."""
        self._throughput_value = max(0.0, records_per_second)

    @contextmanager
    def time_batch(self, entity_type: str) -> Generator[_BatchTimer, None, None]:
        """
        Context manager timing one batch.

        The batch is recorded on exit with the status set on the timer.

        Example:
            >>> with metrics.time_batch("doctors") as timer:
            ...     outcome = await apply_batch()
            ...     timer.status = outcome.status
        """
        timer = _BatchTimer()
        try:
            yield timer
        finally:
            self.record_batch(entity_type, timer.duration_ms, status=timer.status)

    def get_snapshot(self) -> SyncMetricSnapshot:
        """Get a snapshot of the values recorded so far."""
        return SyncMetricSnapshot(
            records_processed=dict(self._processed),
            records_failed=dict(self._failed),
            batches_committed=self._batches,
            constraint_retries=self._constraint_retries,
            throughput=self._throughput_value,
            batch_durations_ms=list(self._batch_durations),
        )

    @property
    def metrics_enabled(self) -> bool:
        """Whether metrics are exported."""
        return self.enable_metrics


class _BatchTimer:
    """Timer used by SyncMetrics.time_batch."""

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self.status = "success"

    @property
    def duration_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000


__all__ = ["SyncMetrics", "SyncMetricSnapshot", "reset_meter"]
