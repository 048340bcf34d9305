"""
ProgressTracker - run progress, throughput, ETA and alerts.

The tracker keeps in-memory progress per run, fed by the executor at batch
commit boundaries, and publishes immutable ProgressSnapshot models to
subscribers.

Features:
    - Percent complete, overall and moving-window throughput, ETA
    - Per-entity progress
    - Alerts (low throughput, stalled progress, error rate, ETA deviation)
      deduplicated per type
    - Bounded subscriber queues (oldest update dropped when full), async
      streams ending at a terminal status, and callback listeners
    - Updates throttled to update_interval_seconds; status changes always
      publish
    - OpenTelemetry metrics per run through SyncMetrics

Delivery is best effort: a dropped or throttled update is superseded by the
next one, and a terminal status is always published.

Usage:
    >>> tracker = ProgressTracker(ProgressConfig(update_interval_seconds=0.5))
    >>> async for snapshot in tracker.stream(run_id):
    ...     print(f"{snapshot.percent_complete:.1f}% ({snapshot.throughput:.0f} rec/s)")
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from opentelemetry.metrics import MeterProvider
from pydantic import BaseModel, ConfigDict, Field

from differential_sync.config import ProgressConfig
from differential_sync.metrics import SyncMetrics
from differential_sync.models import EntityState, ExecutorState
from differential_sync.observability import ATTR_RUN_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)


class AlertType(Enum):
    """Kinds of progress alerts."""

    LOW_THROUGHPUT = "low_throughput"
    STALLED_PROGRESS = "stalled_progress"
    ERROR_RATE = "error_rate"
    ETA_DEVIATION = "eta_deviation"


class AlertSeverity(Enum):
    """Severity of a progress alert."""

    WARNING = "warning"
    CRITICAL = "critical"


class ProgressAlert(BaseModel):
    """
    An alert raised for a run.

    Attributes:
        alert_id: Unique alert identifier
        run_id: Run the alert belongs to
        alert_type: Kind of alert
        severity: Alert severity
        message: Human-readable description
        value: Observed value that triggered the alert
        threshold: Configured threshold
        raised_at: When the alert was raised
        resolved: Whether the alert was resolved
        resolved_at: When it was resolved
    """

    model_config = ConfigDict(frozen=True)

    alert_id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str
    alert_type: AlertType
    severity: AlertSeverity = AlertSeverity.WARNING
    message: str
    value: float
    threshold: float
    raised_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resolved: bool = False
    resolved_at: datetime | None = None


class EntityProgress(BaseModel):
    """Progress of one entity within a run."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    state: EntityState = EntityState.PENDING
    records_total: int = Field(default=0, ge=0)
    records_processed: int = Field(default=0, ge=0)
    records_failed: int = Field(default=0, ge=0)
    percent_complete: float = Field(default=0.0, ge=0.0, le=100.0)


class ProgressSnapshot(BaseModel):
    """
    Point-in-time progress of a run, as published to subscribers.

    Attributes:
        run_id: Run identifier
        status: Run status
        records_total: Records across all entities
        records_processed: Records committed
        records_failed: Records recorded as failed
        percent_complete: Completion percentage (0-100)
        throughput: Records per second since the run started
        window_throughput: Records per second over the recent batch window
        eta_seconds: Estimated seconds remaining (None when unknown)
        elapsed_seconds: Seconds since the run started tracking
        entities: Per-entity progress
        alerts: Unresolved alerts
        timestamp: When the snapshot was taken
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    status: ExecutorState
    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    percent_complete: float = 0.0
    throughput: float = 0.0
    window_throughput: float = 0.0
    eta_seconds: float | None = None
    elapsed_seconds: float = 0.0
    entities: dict[str, EntityProgress] = Field(default_factory=dict)
    alerts: tuple[ProgressAlert, ...] = ()
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


@dataclass
class _EntityCounters:
    state: EntityState = EntityState.PENDING
    total: int = 0
    processed: int = 0
    failed: int = 0


@dataclass
class _RunProgress:
    run_id: str
    status: ExecutorState
    started_at: float
    window: deque[tuple[int, float]]
    metrics: SyncMetrics
    entities: dict[str, _EntityCounters] = field(default_factory=dict)
    estimated_duration_seconds: float | None = None
    batches: int = 0
    last_progress_at: float = 0.0
    last_published_at: float | None = None
    finished_at: float | None = None
    alerts: list[ProgressAlert] = field(default_factory=list)
    last_alerted: dict[AlertType, float] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return sum(e.processed for e in self.entities.values())

    @property
    def failed(self) -> int:
        return sum(e.failed for e in self.entities.values())

    @property
    def total(self) -> int:
        return sum(e.total for e in self.entities.values())


def _percent(done: int, total: int, *, finished: bool = False) -> float:
    if total <= 0:
        return 100.0 if finished else 0.0
    return round(min(100.0, done / total * 100), 2)


SnapshotListener = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """
    In-memory progress tracking and publication for sync runs.

    This class is designed for asyncio and is not thread-safe.

    Args:
        config: Progress configuration
        alert_callback: Called with every newly raised alert
        meter_provider: Meter provider for per-run SyncMetrics
            (default: the global provider)
        enable_metrics: Whether SyncMetrics export metrics
        clock: Monotonic clock in seconds (injectable for tests)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        config: ProgressConfig | None = None,
        *,
        alert_callback: Callable[[ProgressAlert], None] | None = None,
        meter_provider: MeterProvider | None = None,
        enable_metrics: bool = True,
        clock: Callable[[], float] = time.monotonic,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._config = config or ProgressConfig()
        self._alert_callback = alert_callback
        self._meter_provider = meter_provider
        self._enable_metrics = enable_metrics
        self._clock = clock
        self._runs: dict[str, _RunProgress] = {}
        self._subscribers: dict[str, list[asyncio.Queue[ProgressSnapshot]]] = {}
        self._listeners: dict[str, list[SnapshotListener]] = {}

    @property
    def config(self) -> ProgressConfig:
        """Progress configuration."""
        return self._config

    @property
    def tracked_runs(self) -> list[str]:
        """Run ids currently tracked."""
        return list(self._runs)

    def subscriber_count(self, run_id: str) -> int:
        """Number of queues subscribed to a run."""
        return len(self._subscribers.get(run_id, []))

    # -------------------------------------------------------------------------
    # Feeding
    # -------------------------------------------------------------------------

    def start_run(
        self,
        run_id: str,
        totals: Mapping[str, int],
        *,
        processed: Mapping[str, int] | None = None,
        failed: Mapping[str, int] | None = None,
        estimated_duration_seconds: float | None = None,
    ) -> ProgressSnapshot:
        """
        Start (or restart, on resume) tracking a run.

        Args:
            run_id: Run identifier
            totals: Records per entity type
            processed: Records already committed per entity (resume)
            failed: Records already failed per entity (resume)
            estimated_duration_seconds: Estimate used for ETA deviation alerts

        Returns:
            The initial snapshot, which is always published
        """
        now = self._clock()
        previous = self._runs.get(run_id)
        run = _RunProgress(
            run_id=run_id,
            status=ExecutorState.RUNNING,
            started_at=now,
            window=deque(maxlen=self._config.performance_window_size),
            metrics=(
                previous.metrics
                if previous is not None
                else SyncMetrics(
                    run_id,
                    enable_metrics=self._enable_metrics,
                    meter_provider=self._meter_provider,
                )
            ),
            estimated_duration_seconds=estimated_duration_seconds,
            last_progress_at=now,
        )
        for entity_type, total in totals.items():
            run.entities[entity_type] = _EntityCounters(
                total=total,
                processed=(processed or {}).get(entity_type, 0),
                failed=(failed or {}).get(entity_type, 0),
            )
        self._runs[run_id] = run
        logger.debug("Tracking progress of run %s (%d entities)", run_id, len(run.entities))
        return self._publish(run, force=True)

    def record_batch(
        self,
        run_id: str,
        entity_type: str,
        *,
        committed: int,
        failed: int = 0,
        duration_ms: float = 0.0,
    ) -> ProgressSnapshot | None:
        """
        Record a committed batch.

        Args:
            run_id: Run identifier
            entity_type: Entity the batch belongs to
            committed: Records committed by the batch
            failed: Records recorded as failed by the batch
            duration_ms: Wall time of the batch

        Returns:
            The published snapshot, or None when throttled or the run is unknown
        """
        run = self._runs.get(run_id)
        if run is None:
            return None
        counters = run.entities.setdefault(entity_type, _EntityCounters())
        counters.processed += committed
        counters.failed += failed
        run.batches += 1
        run.window.append((committed + failed, duration_ms))
        if committed or failed:
            run.last_progress_at = self._clock()

        run.metrics.record_processed(entity_type, committed)
        run.metrics.record_failed(entity_type, failed)
        run.metrics.record_batch(
            entity_type,
            duration_ms,
            status="success" if failed == 0 else ("partial_success" if committed else "failed"),
        )
        run.metrics.record_throughput(self._throughput(run))

        raised = self._evaluate_alerts(run)
        return self._publish(run, force=bool(raised))

    def record_constraint_retry(self, run_id: str, entity_type: str) -> None:
        """Record a batch split after a constraint violation."""
        run = self._runs.get(run_id)
        if run is not None:
            run.metrics.record_constraint_retry(entity_type)

    def set_entity_state(self, run_id: str, entity_type: str, state: EntityState) -> None:
        """Record an entity moving between sets. Always publishes."""
        run = self._runs.get(run_id)
        if run is None:
            return
        counters = run.entities.setdefault(entity_type, _EntityCounters())
        if counters.state == state:
            return
        counters.state = state
        self._publish(run, force=True)

    def set_status(self, run_id: str, status: ExecutorState) -> ProgressSnapshot | None:
        """
        Record a run status change. Always publishes.

        A terminal status ends every stream of the run.
        """
        run = self._runs.get(run_id)
        if run is None:
            return None
        if run.status == status and run.last_published_at is not None:
            return None
        run.status = status
        if status.is_terminal or status == ExecutorState.PAUSED:
            run.finished_at = self._clock()
        else:
            run.finished_at = None
        with self._tracer.span(
            "differential_sync.progress.set_status",
            {ATTR_RUN_ID: run_id},
        ):
            return self._publish(run, force=True)

    def metrics_for(self, run_id: str) -> SyncMetrics | None:
        """SyncMetrics of a tracked run."""
        run = self._runs.get(run_id)
        return run.metrics if run else None

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _throughput(self, run: _RunProgress) -> float:
        end = run.finished_at if run.finished_at is not None else self._clock()
        elapsed = end - run.started_at
        if elapsed <= 0:
            return 0.0
        return round(run.processed / elapsed, 2)

    def _window_throughput(self, run: _RunProgress) -> float:
        records = sum(count for count, _ in run.window)
        duration_ms = sum(ms for _, ms in run.window)
        if duration_ms <= 0:
            return 0.0
        return round(records / duration_ms * 1000, 2)

    def _eta(self, run: _RunProgress) -> float | None:
        remaining = max(0, run.total - run.processed - run.failed)
        if remaining == 0:
            return 0.0
        rate = self._window_throughput(run) or self._throughput(run)
        if rate <= 0:
            return None
        return round(remaining / rate, 2)

    def _snapshot(self, run: _RunProgress) -> ProgressSnapshot:
        end = run.finished_at if run.finished_at is not None else self._clock()
        finished = run.status.is_terminal
        return ProgressSnapshot(
            run_id=run.run_id,
            status=run.status,
            records_total=run.total,
            records_processed=run.processed,
            records_failed=run.failed,
            percent_complete=_percent(run.processed + run.failed, run.total, finished=finished),
            throughput=self._throughput(run),
            window_throughput=self._window_throughput(run),
            eta_seconds=None if finished else self._eta(run),
            elapsed_seconds=round(max(0.0, end - run.started_at), 3),
            entities={
                name: EntityProgress(
                    entity_type=name,
                    state=c.state,
                    records_total=c.total,
                    records_processed=c.processed,
                    records_failed=c.failed,
                    percent_complete=_percent(
                        c.processed + c.failed,
                        c.total,
                        finished=c.state in (EntityState.COMPLETED, EntityState.FAILED),
                    ),
                )
                for name, c in run.entities.items()
            },
            alerts=tuple(a for a in run.alerts if not a.resolved),
        )

    def get_snapshot(self, run_id: str) -> ProgressSnapshot | None:
        """Current progress of a run, or None if it is not tracked."""
        run = self._runs.get(run_id)
        return self._snapshot(run) if run else None

    def get_alerts(self, run_id: str, *, include_resolved: bool = False) -> list[ProgressAlert]:
        """Alerts of a run, oldest first."""
        run = self._runs.get(run_id)
        if run is None:
            return []
        return [a for a in run.alerts if include_resolved or not a.resolved]

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def _raise_alert(
        self,
        run: _RunProgress,
        alert_type: AlertType,
        message: str,
        *,
        value: float,
        threshold: float,
        severity: AlertSeverity = AlertSeverity.WARNING,
    ) -> ProgressAlert | None:
        now = self._clock()
        last = run.last_alerted.get(alert_type)
        active = any(a.alert_type == alert_type and not a.resolved for a in run.alerts)
        if active and last is not None and now - last < self._config.alert_dedupe_seconds:
            return None

        alert = ProgressAlert(
            run_id=run.run_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            value=value,
            threshold=threshold,
        )
        run.alerts.append(alert)
        run.last_alerted[alert_type] = now
        logger.warning("Run %s alert %s: %s", run.run_id, alert_type.value, message)
        if self._alert_callback is not None:
            self._alert_callback(alert)
        return alert

    def _evaluate_alerts(self, run: _RunProgress) -> list[ProgressAlert]:
        cfg = self._config
        raised: list[ProgressAlert | None] = []

        window_rate = self._window_throughput(run)
        if run.batches >= cfg.performance_window_size and window_rate < cfg.low_throughput_warning:
            raised.append(
                self._raise_alert(
                    run,
                    AlertType.LOW_THROUGHPUT,
                    f"Throughput {window_rate} rec/s below {cfg.low_throughput_warning} rec/s",
                    value=window_rate,
                    threshold=cfg.low_throughput_warning,
                )
            )

        attempted = run.processed + run.failed
        if attempted > 0:
            rate = run.failed / attempted
            if rate > cfg.error_rate_warning:
                raised.append(
                    self._raise_alert(
                        run,
                        AlertType.ERROR_RATE,
                        f"Error rate {rate:.1%} above {cfg.error_rate_warning:.1%}",
                        value=round(rate, 4),
                        threshold=cfg.error_rate_warning,
                        severity=(
                            AlertSeverity.CRITICAL
                            if rate > 2 * cfg.error_rate_warning
                            else AlertSeverity.WARNING
                        ),
                    )
                )

        eta = self._eta(run)
        if run.estimated_duration_seconds and eta is not None:
            projected = (self._clock() - run.started_at) + eta
            limit = run.estimated_duration_seconds * cfg.eta_deviation_factor
            if projected > limit:
                raised.append(
                    self._raise_alert(
                        run,
                        AlertType.ETA_DEVIATION,
                        f"Projected duration {projected:.0f}s exceeds estimate "
                        f"{run.estimated_duration_seconds:.0f}s by more than "
                        f"{cfg.eta_deviation_factor}x",
                        value=round(projected, 2),
                        threshold=round(limit, 2),
                    )
                )

        return [a for a in raised if a is not None]

    def check_alerts(self, run_id: str | None = None) -> list[ProgressAlert]:
        """
        Check running runs for stalled progress.

        Args:
            run_id: Check one run (default: every tracked run)

        Returns:
            Alerts newly raised by this check
        """
        runs = [self._runs[run_id]] if run_id in self._runs else []
        if run_id is None:
            runs = list(self._runs.values())
        raised: list[ProgressAlert] = []
        now = self._clock()
        for run in runs:
            if run.status != ExecutorState.RUNNING:
                continue
            idle = now - run.last_progress_at
            if idle < self._config.stalled_progress_seconds:
                continue
            alert = self._raise_alert(
                run,
                AlertType.STALLED_PROGRESS,
                f"No progress for {idle:.0f}s",
                value=round(idle, 2),
                threshold=self._config.stalled_progress_seconds,
                severity=AlertSeverity.CRITICAL,
            )
            if alert is not None:
                raised.append(alert)
                self._publish(run, force=True)
        return raised

    def resolve_alert(self, run_id: str, alert_id: str) -> bool:
        """
        Mark an alert resolved.

        Returns:
            False if the run or alert is unknown or already resolved
        """
        run = self._runs.get(run_id)
        if run is None:
            return False
        for index, alert in enumerate(run.alerts):
            if alert.alert_id == alert_id and not alert.resolved:
                run.alerts[index] = alert.model_copy(
                    update={"resolved": True, "resolved_at": datetime.now(UTC)}
                )
                return True
        return False

    # -------------------------------------------------------------------------
    # Publication
    # -------------------------------------------------------------------------

    def _publish(self, run: _RunProgress, *, force: bool) -> ProgressSnapshot | None:
        now = self._clock()
        if (
            not force
            and run.last_published_at is not None
            and now - run.last_published_at < self._config.update_interval_seconds
        ):
            return None
        run.last_published_at = now
        snapshot = self._snapshot(run)

        for queue in self._subscribers.get(run.run_id, []):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

        for listener in list(self._listeners.get(run.run_id, [])):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed for run %s", run.run_id)
        return snapshot

    def subscribe(self, run_id: str) -> asyncio.Queue[ProgressSnapshot]:
        """
        Subscribe to the snapshots of a run.

        The queue is bounded by queue_size; when full, the oldest snapshot
        is dropped to make room.
        """
        queue: asyncio.Queue[ProgressSnapshot] = asyncio.Queue(maxsize=self._config.queue_size)
        self._subscribers.setdefault(run_id, []).append(queue)
        logger.debug(
            "Registered subscriber for run %s (total: %d)",
            run_id,
            len(self._subscribers[run_id]),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[ProgressSnapshot]) -> None:
        """Remove a subscriber queue."""
        queues = self._subscribers.get(run_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(run_id, None)

    async def stream(self, run_id: str) -> AsyncIterator[ProgressSnapshot]:
        """
        Stream the snapshots of a run.

        Yields the current snapshot first (when the run is tracked), then
        every published snapshot. Completes after a terminal status.

        Example:
            >>> async for snapshot in tracker.stream(run_id):
            ...     render(snapshot)
        """
        queue = self.subscribe(run_id)
        try:
            current = self.get_snapshot(run_id)
            if current is not None:
                yield current
                if current.status.is_terminal:
                    return
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.status.is_terminal:
                    logger.debug("Run %s reached %s, ending stream", run_id, snapshot.status.value)
                    return
        finally:
            self.unsubscribe(run_id, queue)

    def add_listener(self, run_id: str, callback: SnapshotListener) -> Callable[[], None]:
        """
        Call a function with every published snapshot of a run.

        Returns:
            Callable removing the listener
        """
        self._listeners.setdefault(run_id, []).append(callback)

        def remove() -> None:
            listeners = self._listeners.get(run_id, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._listeners.pop(run_id, None)

        return remove

    def cleanup(self, retention_seconds: float | None = None) -> int:
        """
        Drop finished runs older than the retention period.

        Runs that are still RUNNING or QUEUED are never dropped.

        Returns:
            Number of runs dropped
        """
        retention = (
            self._config.retention_seconds if retention_seconds is None else retention_seconds
        )
        now = self._clock()
        expired = [
            run_id
            for run_id, run in self._runs.items()
            if run.status.is_terminal
            and run.finished_at is not None
            and now - run.finished_at >= retention
        ]
        for run_id in expired:
            del self._runs[run_id]
            self._subscribers.pop(run_id, None)
            self._listeners.pop(run_id, None)
        if expired:
            logger.info("Dropped progress of %d finished runs", len(expired))
        return len(expired)


__all__ = [
    "ProgressTracker",
    "ProgressSnapshot",
    "ProgressAlert",
    "EntityProgress",
    "AlertType",
    "AlertSeverity",
    "SnapshotListener",
]
