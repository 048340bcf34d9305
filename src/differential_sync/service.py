"""
SyncService - caller-facing facade over the differential sync engine.

Wires the components together and runs executions in the background so that
thin adapters (a CLI, an HTTP handler) only deal with run ids:

    analyze_baseline -> detect -> build_tasks -> submit_run -> get_status / stream -> wait

Runs may be addressed by run id or by the id of any of their checkpoints.

Example:
    >>> service = SyncService(source, destination, registry)
    >>> results, errors = await service.detect(since=last_sync)
    >>> run_id = await service.submit_run(service.build_tasks(results))
    >>> async for snapshot in service.stream(run_id):
    ...     print(f"{snapshot.percent_complete:.1f}%")
    >>> result = await service.wait(run_id)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from opentelemetry.metrics import MeterProvider

from differential_sync.baseline import BaselineAnalyzer, BaselineReport
from differential_sync.checkpoint import CheckpointManager
from differential_sync.config import (
    DetectionOptions,
    ExecutionConfig,
    ProgressConfig,
    ResolutionOptions,
)
from differential_sync.detector import DifferentialDetector
from differential_sync.exceptions import RunNotFoundError, RunStateError, SyncError
from differential_sync.executor import MigrationExecutor
from differential_sync.models import (
    DetectionResult,
    ExecutionResult,
    ExecutorState,
    MigrationStatus,
    MigrationTask,
    TaskPriority,
)
from differential_sync.observability import ATTR_RUN_ID, Tracer, create_tracer
from differential_sync.progress import ProgressAlert, ProgressSnapshot, ProgressTracker
from differential_sync.repositories import MappingStore, ManualReviewQueue, RunRepository
from differential_sync.resolver import ConflictResolver
from differential_sync.schema import SchemaProvider
from differential_sync.stores import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunStatus:
    """
    Status of a run as seen by callers.

    Attributes:
        migration: Entity sets and derived status from the run record
        progress: Latest progress snapshot (None if the run is not tracked
            in this process)
        alerts: Unresolved progress alerts
        executing: Whether the run executes in this process right now
    """

    migration: MigrationStatus
    progress: ProgressSnapshot | None = None
    alerts: tuple[ProgressAlert, ...] = ()
    executing: bool = False

    @property
    def run_id(self) -> str:
        return self.migration.run_id

    @property
    def status(self) -> ExecutorState:
        return self.migration.status

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            **self.migration.to_dict(),
            "progress": self.progress.model_dump(mode="json") if self.progress else None,
            "alerts": [a.model_dump(mode="json") for a in self.alerts],
            "executing": self.executing,
        }


class SyncService:
    """
    Facade running detection and background executions.

    Args:
        source: Legacy store
        destination: Destination store (also holds the control tables)
        schema: Entity descriptors and transformers
        detection_options: Default detection options
        execution_config: Executor configuration
        resolution_options: Resolver options
        progress_config: Progress tracker configuration
        manual_queue: Queue for records resolved with the MANUAL strategy
        meter_provider: Meter provider for run metrics (default: global)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        source: RecordStore,
        destination: RecordStore,
        schema: SchemaProvider,
        *,
        detection_options: DetectionOptions | None = None,
        execution_config: ExecutionConfig | None = None,
        resolution_options: ResolutionOptions | None = None,
        progress_config: ProgressConfig | None = None,
        manual_queue: ManualReviewQueue | None = None,
        meter_provider: MeterProvider | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._schema = schema
        self._mappings = MappingStore(destination, tracer=self._tracer)
        self._detector = DifferentialDetector(
            source, self._mappings, schema, options=detection_options, tracer=self._tracer
        )
        self._resolver = ConflictResolver(
            source,
            destination,
            schema,
            mappings=self._mappings,
            options=resolution_options,
            manual_queue=manual_queue,
            tracer=self._tracer,
        )
        self._checkpoints = CheckpointManager(destination, tracer=self._tracer)
        self._runs = RunRepository(destination, tracer=self._tracer)
        self._progress = ProgressTracker(
            progress_config, meter_provider=meter_provider, tracer=self._tracer
        )
        self._executor = MigrationExecutor(
            destination,
            self._resolver,
            config=execution_config,
            checkpoints=self._checkpoints,
            runs=self._runs,
            progress=self._progress,
            tracer=self._tracer,
        )
        self._baseline = BaselineAnalyzer(
            source,
            destination,
            schema,
            mappings=self._mappings,
            checkpoints=self._checkpoints,
            runs=self._runs,
            tracer=self._tracer,
        )
        self._tasks: dict[str, asyncio.Task[ExecutionResult]] = {}

    @property
    def detector(self) -> DifferentialDetector:
        return self._detector

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def executor(self) -> MigrationExecutor:
        return self._executor

    @property
    def checkpoints(self) -> CheckpointManager:
        return self._checkpoints

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    @property
    def mappings(self) -> MappingStore:
        return self._mappings

    @property
    def baseline(self) -> BaselineAnalyzer:
        return self._baseline

    @property
    def active_runs(self) -> list[str]:
        """Runs with an unfinished background execution."""
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    async def detect(
        self,
        entity_types: Iterable[str] | None = None,
        since: datetime | Mapping[str, datetime | None] | None = None,
        **kwargs: Any,
    ) -> tuple[dict[str, DetectionResult], dict[str, SyncError]]:
        """
        Detect changes for several entity types.

        Args:
            entity_types: Entity types to analyze (default: all registered)
            since: One baseline for all types, or one per type
            **kwargs: Options forwarded to DifferentialDetector.detect_changes

        Returns:
            Tuple of (results by entity type, errors by entity type)
        """
        return await self._detector.detect_all(entity_types, since, **kwargs)

    def build_tasks(
        self,
        results: Mapping[str, DetectionResult] | Iterable[DetectionResult],
        *,
        priorities: Mapping[str, TaskPriority] | None = None,
        include_empty: bool = False,
    ) -> list[MigrationTask]:
        """
        Build one task per detection result.

        Dependencies come from the registered entity descriptors.

        Args:
            results: Detection results, as returned by detect() or a list
            priorities: Explicit priority per entity type
            include_empty: Keep entity types without changes
        """
        values = results.values() if isinstance(results, Mapping) else results
        priorities = priorities or {}
        tasks = []
        for result in values:
            if not result.has_changes and not include_empty:
                continue
            tasks.append(
                MigrationTask.from_detection(
                    result,
                    self._schema.get_descriptor(result.entity_type),
                    priority=priorities.get(result.entity_type),
                )
            )
        return tasks

    async def analyze_baseline(
        self,
        entity_types: Iterable[str] | None = None,
        *,
        validate_mappings: bool = True,
    ) -> BaselineReport:
        """
        Compare source and destination counts and find each type's next baseline.

        Args:
            entity_types: Entity types to analyze (default: all registered)
            validate_mappings: Check each mapping against the destination rows

        Returns:
            BaselineReport; its next_baselines() can be passed to detect()
        """
        return await self._baseline.generate_report(
            entity_types, validate_mappings=validate_mappings
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def submit_run(self, tasks: Sequence[MigrationTask], run_id: str | None = None) -> str:
        """
        Persist a run and start executing it in the background.

        Raises:
            DependencyCycleError: If the task dependencies contain a cycle
            RunStateError: If the run id is already taken
        """
        with self._tracer.span("differential_sync.service.submit_run", {}) as span:
            run = await self._executor.create_run(tasks, run_id or str(uuid4()))
            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RUN_ID, run.run_id)
            self._start(run.run_id, self._executor.execute_run(run.run_id), "sync_run")
            return run.run_id

    async def resume(self, key: str, *, force: bool = False) -> str:
        """
        Resume a run in the background.

        Args:
            key: Run id or checkpoint id
            force: Required to resume a cancelled run

        Returns:
            The run id

        Raises:
            RunNotFoundError: If no run matches the key
            RunStateError: If the run cannot be resumed
        """
        run_id = await self._resolve_run_id(key)
        if run_id in self.active_runs:
            raise RunStateError(f"Run {run_id} is already executing", run_id=run_id)
        await self._executor.check_resumable(run_id, force=force)
        self._start(run_id, self._executor.resume(run_id, force=force), "sync_resume")
        return run_id

    async def pause(self, key: str) -> str:
        """Request a pause of the run matching a run or checkpoint id."""
        run_id = await self._resolve_run_id(key)
        await self._executor.pause(run_id)
        return run_id

    async def cancel(self, key: str) -> str:
        """Request cancellation of the run matching a run or checkpoint id."""
        run_id = await self._resolve_run_id(key)
        await self._executor.cancel(run_id)
        return run_id

    async def get_status(self, key: str) -> RunStatus:
        """
        Status of the run matching a run or checkpoint id.

        Raises:
            RunNotFoundError: If no run matches the key
        """
        run_id = await self._resolve_run_id(key)
        migration = await self._executor.get_status(run_id)
        return RunStatus(
            migration=migration,
            progress=self._progress.get_snapshot(run_id),
            alerts=tuple(self._progress.get_alerts(run_id)),
            executing=run_id in self.active_runs,
        )

    async def list_runs(self, *, status: ExecutorState | None = None, limit: int = 100) -> list[MigrationStatus]:
        """List persisted runs, newest first."""
        runs = await self._runs.list_runs(status=status.value if status else None, limit=limit)
        return [run.to_status() for run in runs]

    async def wait(self, run_id: str, timeout: float | None = None) -> ExecutionResult:
        """
        Wait for the background execution of a run.

        The service forgets the execution once its outcome has been
        delivered; the run itself stays queryable through get_status().

        Raises:
            RunStateError: If the run has no execution started by this service
            TimeoutError: If the timeout expires first
        """
        task = self._tasks.get(run_id)
        if task is None:
            raise RunStateError(f"Run {run_id} is not executing in this service", run_id=run_id)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        finally:
            if task.done() and self._tasks.get(run_id) is task:
                del self._tasks[run_id]

    def cleanup(self) -> list[str]:
        """
        Forget finished executions nobody waited for.

        Returns:
            Run ids that were dropped
        """
        finished = [run_id for run_id, task in self._tasks.items() if task.done()]
        for run_id in finished:
            del self._tasks[run_id]
        if finished:
            logger.debug("Dropped %d finished run tasks", len(finished))
        return finished

    def subscribe(self, run_id: str) -> asyncio.Queue[ProgressSnapshot]:
        """Subscribe to the progress snapshots of a run."""
        return self._progress.subscribe(run_id)

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[ProgressSnapshot]) -> None:
        """Remove a progress subscription."""
        self._progress.unsubscribe(run_id, queue)

    def stream(self, run_id: str) -> AsyncIterator[ProgressSnapshot]:
        """Stream the progress snapshots of a run until it ends."""
        return self._progress.stream(run_id)

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """
        Pause every active run and wait for the executions to stop.

        Runs still executing after the timeout are cancelled; their leases
        expire and they can be resumed from the last checkpoint.
        """
        active = self.active_runs
        if not active:
            return
        logger.info("Shutting down: pausing %d active runs", len(active))
        for run_id in active:
            try:
                await self._executor.pause(run_id)
            except SyncError as e:
                logger.warning("Could not pause run %s: %s", run_id, e)

        tasks = [self._tasks[run_id] for run_id in active]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning("Run task %s did not stop in time; cancelling", task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Shutdown complete: %d stopped, %d cancelled", len(done), len(pending))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _start(self, run_id: str, coro: Any, prefix: str) -> None:
        task = asyncio.create_task(coro, name=f"{prefix}_{run_id}")
        task.add_done_callback(self._on_task_done)
        self._tasks[run_id] = task

    def _on_task_done(self, task: asyncio.Task[ExecutionResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background run task %s failed: %s", task.get_name(), exc, exc_info=exc)
            return
        result = task.result()
        logger.info("Run %s ended as %s", result.run_id, result.status.value)

    async def _resolve_run_id(self, key: str) -> str:
        if await self._runs.get(key) is not None:
            return key
        checkpoint = await self._checkpoints.get(key)
        if checkpoint is not None:
            return checkpoint.run_id
        raise RunNotFoundError(key)


__all__ = ["SyncService", "RunStatus"]
