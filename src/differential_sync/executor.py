"""
MigrationExecutor - dependency-ordered, checkpointed batch execution.

A run is a set of MigrationTasks, one per entity type. The executor:

    1. Partitions the tasks into dependency waves (Kahn's algorithm).
       A cycle raises DependencyCycleError before anything is written.
    2. Runs the waves strictly in sequence. Within a wave entities run
       concurrently, bounded by parallel_entity_limit. An entity whose
       dependency failed is moved to the failed set without running.
    3. Processes each entity's records in ascending key order, one
       destination transaction per batch (ConflictResolver.resolve_batch).
    4. Writes the entity checkpoint every checkpoint_interval committed
       batches and at every stop.

Failure handling:
    - ConstraintError and other non-transient StoreErrors: the batch is split
      in half and each half retried after a backoff, down to single records,
      which are recorded as failed.
    - StoreConnectionError: the same batch is retried through
      ErrorHandler.execute_with_retry; when exhausted the entity fails.
    - Per-record errors are collected by the resolver; an entity with any
      failed record ends in the failed set and blocks its dependents.
    - CheckpointError is fatal to the run.

Pause, cancel and timeout are cooperative and only take effect between
batches. Requests are honoured from this process (pause(), cancel()) and
from the persisted run record, so another process can request them.

Example:
    >>> executor = MigrationExecutor(destination, resolver, config=ExecutionConfig(batch_size=500))
    >>> result = await executor.execute(tasks)
    >>> if result.status != ExecutorState.COMPLETED:
    ...     result = await executor.resume(result.run_id)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from differential_sync.checkpoint import CheckpointManager
from differential_sync.config import ExecutionConfig
from differential_sync.exceptions import (
    CheckpointError,
    DependencyCycleError,
    ErrorHandler,
    RunStateError,
    StoreError,
    SyncError,
    classify_exception,
)
from differential_sync.models import (
    BatchOutcome,
    ChangeType,
    Checkpoint,
    CheckpointStatus,
    EntityOutcome,
    EntityState,
    ExecutionResult,
    ExecutorState,
    MigrationStatus,
    MigrationTask,
    RecordFailure,
    RecoveryInfo,
    RunRecord,
    ValidationReport,
)
from differential_sync.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_RECORDS_FAILED,
    ATTR_RECORDS_PROCESSED,
    ATTR_RUN_ID,
    ATTR_RUN_STATUS,
    ATTR_WAVE_INDEX,
    ATTR_WAVE_SIZE,
    Tracer,
    create_tracer,
)
from differential_sync.progress import ProgressTracker
from differential_sync.repositories.run import RunRepository
from differential_sync.resolver import ConflictResolver
from differential_sync.stores import RecordStore
from differential_sync.types import RecordKey

logger = logging.getLogger(__name__)

# Stop reasons recorded on entity outcomes
STOP_PAUSED = "paused"
STOP_CANCELLED = "cancelled"
STOP_TIMEOUT = "timeout"
STOP_LEASE_LOST = "lease_lost"
STOP_BLOCKED = "blocked"
STOP_ERROR = "error"

# Stops after which the entity returns to the pending set
_RESUMABLE_STOPS = (STOP_PAUSED, STOP_TIMEOUT, STOP_LEASE_LOST)

_ACTION_TO_STOP = {"pause": STOP_PAUSED, "cancel": STOP_CANCELLED}

# Failure rate above which recovery recommends reviewing the data first
HIGH_FAILURE_RATE = 0.10


def build_waves(tasks: Sequence[MigrationTask]) -> list[list[MigrationTask]]:
    """
    Partition tasks into dependency waves.

    Every task lands in a wave strictly after all of its dependencies.
    Dependencies on entity types without a task are ignored. Within a wave
    tasks are ordered by priority, then entity type.

    Args:
        tasks: Tasks to order, at most one per entity type

    Returns:
        List of waves, each a list of tasks

    Raises:
        DependencyCycleError: If the dependencies contain a cycle
        ValueError: If an entity type has more than one task
    """
    by_type: dict[str, MigrationTask] = {}
    for task in tasks:
        if task.entity_type in by_type:
            raise ValueError(f"Duplicate task for entity type {task.entity_type!r}")
        by_type[task.entity_type] = task

    remaining = {
        name: {d for d in task.dependencies if d in by_type and d != name}
        for name, task in by_type.items()
    }
    waves: list[list[MigrationTask]] = []
    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            raise DependencyCycleError(sorted(remaining))
        wave = sorted(
            (by_type[name] for name in ready),
            key=lambda t: (t.priority.rank, t.entity_type),
        )
        waves.append(wave)
        for name in ready:
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return waves


def _chunks(keys: Sequence[RecordKey], size: int) -> Iterable[list[RecordKey]]:
    for start in range(0, len(keys), size):
        yield list(keys[start : start + size])


class _RunControl:
    """In-process control state of an executing run."""

    def __init__(self, timeout_seconds: float | None) -> None:
        self.stop_reason: str | None = None
        self.deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def request(self, reason: str) -> None:
        # cancel overrides an earlier pause
        if self.stop_reason is None or reason == STOP_CANCELLED:
            self.stop_reason = reason


@dataclass
class _EntityRun:
    """Working state of one entity segment."""

    task: MigrationTask
    checkpoint: Checkpoint
    last_key: RecordKey | None
    batch_number: int
    batches: list[BatchOutcome]
    failures: list[RecordFailure]
    processed_keys: list[RecordKey]


class MigrationExecutor:
    """
    Executes runs of MigrationTasks against the destination store.

    Args:
        destination: Store holding destination tables and control tables
        resolver: Resolver applying batches
        config: Execution configuration
        checkpoints: Checkpoint manager (defaults to one over destination)
        runs: Run repository (defaults to one over destination)
        progress: Progress tracker fed at batch boundaries
        error_handler: Handler retrying transient batch failures
        owner_id: Lease owner name of this executor (default: random)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        destination: RecordStore,
        resolver: ConflictResolver,
        *,
        config: ExecutionConfig | None = None,
        checkpoints: CheckpointManager | None = None,
        runs: RunRepository | None = None,
        progress: ProgressTracker | None = None,
        error_handler: ErrorHandler | None = None,
        owner_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._destination = destination
        self._resolver = resolver
        self._config = config or ExecutionConfig()
        self._checkpoints = checkpoints or CheckpointManager(destination, tracer=self._tracer)
        self._runs = runs or RunRepository(destination, tracer=self._tracer)
        self._progress = progress or ProgressTracker(tracer=self._tracer)
        self._error_handler = error_handler or ErrorHandler()
        self._owner_id = owner_id or f"executor-{uuid4()}"
        self._active: dict[str, _RunControl] = {}

    @property
    def config(self) -> ExecutionConfig:
        """Execution configuration."""
        return self._config

    @property
    def owner_id(self) -> str:
        """Lease owner name of this executor."""
        return self._owner_id

    @property
    def progress(self) -> ProgressTracker:
        """Progress tracker fed by this executor."""
        return self._progress

    @property
    def checkpoints(self) -> CheckpointManager:
        """Checkpoint manager used by this executor."""
        return self._checkpoints

    @property
    def runs(self) -> RunRepository:
        """Run repository used by this executor."""
        return self._runs

    @property
    def active_runs(self) -> list[str]:
        """Runs currently executing in this process."""
        return list(self._active)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def create_run(self, tasks: Sequence[MigrationTask], run_id: str | None = None) -> RunRecord:
        """
        Validate the task graph and persist a queued run.

        Raises:
            DependencyCycleError: If the dependencies contain a cycle
            RunStateError: If the run id is already taken
        """
        build_waves(tasks)
        run = RunRecord.from_tasks(run_id or str(uuid4()), tasks)
        await self._runs.create(run)
        logger.info("Created run %s with %d tasks", run.run_id, len(run.tasks))
        return run

    async def execute(
        self,
        tasks: Sequence[MigrationTask],
        *,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """
        Execute a new run.

        Args:
            tasks: One task per entity type
            run_id: Run identifier (default: a new UUID)

        Returns:
            ExecutionResult of the run segment

        Raises:
            DependencyCycleError: If the dependencies contain a cycle
            RunStateError: If the run id is already taken
        """
        run = await self.create_run(tasks, run_id)
        return await self._execute_run(run)

    async def execute_run(self, run_id: str) -> ExecutionResult:
        """
        Execute a run created with create_run.

        Raises:
            RunNotFoundError: If the run does not exist
            RunStateError: If the run has already started
        """
        run = await self._runs.require(run_id)
        if run.status != ExecutorState.QUEUED:
            raise RunStateError(
                f"Run {run_id} is {run.status.value}; use resume()",
                run_id=run_id,
            )
        return await self._execute_run(run)

    async def check_resumable(self, run_id: str, *, force: bool = False) -> RunRecord:
        """
        Load a run and verify that it may be resumed.

        Raises:
            RunNotFoundError: If the run does not exist
            RunStateError: If the run is completed, cancelled without force,
                or already executing in this process
        """
        run = await self._runs.require(run_id)
        if run_id in self._active:
            raise RunStateError(f"Run {run_id} is already executing", run_id=run_id)
        if run.status == ExecutorState.COMPLETED:
            raise RunStateError(f"Run {run_id} is already completed", run_id=run_id)
        if run.cancelled and not force:
            raise RunStateError(
                f"Run {run_id} was cancelled; resume with force=True",
                run_id=run_id,
                suggested_action="Call resume(run_id, force=True)",
            )
        return run

    async def resume(self, run_id: str, *, force: bool = False) -> ExecutionResult:
        """
        Resume a paused or failed run from its checkpoints.

        Completed entities are skipped; every other entity continues strictly
        after its checkpoint's last processed key.

        Args:
            run_id: Run to resume
            force: Required to resume a cancelled run

        Raises:
            RunNotFoundError: If the run does not exist
            RunStateError: If the run is completed, cancelled without force,
                or leased by another executor
        """
        run = await self.check_resumable(run_id, force=force)

        for entity in run.entities.values():
            if entity.state == EntityState.COMPLETED:
                continue
            entity.state = EntityState.PENDING
            entity.error = None
            # counts restart at the checkpoint; later batches are replayed
            checkpoint = (
                await self._checkpoints.get(entity.checkpoint_id) if entity.checkpoint_id else None
            )
            if checkpoint is not None and checkpoint.last_processed_key is not None:
                coerce = self._resolver.schema.get_descriptor(entity.entity_type).coerce_key
                last_key = coerce(checkpoint.last_processed_key)
                entity.records_processed = checkpoint.records_processed
                entity.records_failed = checkpoint.records_failed
                entity.failures = [f for f in entity.failures if coerce(f.record_id) <= last_key]
            else:
                entity.records_processed = 0
                entity.records_failed = 0
                entity.failures = []
        run.cancelled = False
        run.paused = False
        run.completed_at = None
        logger.info("Resuming run %s (force=%s)", run_id, force)
        return await self._execute_run(run, resuming=True)

    async def pause(self, run_id: str) -> None:
        """
        Request a pause. The in-flight batch of each entity finishes first.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        control = self._active.get(run_id)
        if control is not None:
            control.request(STOP_PAUSED)
            await self._runs.request_action(run_id, "pause")
            return

        run = await self._runs.require(run_id)
        if run.status.is_terminal:
            raise RunStateError(f"Run {run_id} is {run.status.value}", run_id=run_id)
        if run.lease_active():
            await self._runs.request_action(run_id, "pause")
            return
        run.paused = True
        await self._runs.save(run, max_failures=self._config.max_recorded_failures)
        logger.info("Paused idle run %s", run_id)

    async def cancel(self, run_id: str) -> None:
        """
        Request cancellation. Checkpoints are written non-resumable and
        unfinished entities move to the failed set.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        control = self._active.get(run_id)
        if control is not None:
            control.request(STOP_CANCELLED)
            await self._runs.request_action(run_id, "cancel")
            return

        run = await self._runs.require(run_id)
        if run.status == ExecutorState.COMPLETED:
            raise RunStateError(f"Run {run_id} is already completed", run_id=run_id)
        if run.lease_active():
            await self._runs.request_action(run_id, "cancel")
            return
        await self._apply_cancel(run)
        await self._runs.save(run, max_failures=self._config.max_recorded_failures)
        logger.info("Cancelled idle run %s", run_id)

    async def get_status(self, run_id: str) -> MigrationStatus:
        """
        Current entity sets and derived status of a run.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = await self._runs.require(run_id)
        return run.to_status()

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    async def _execute_run(self, run: RunRecord, *, resuming: bool = False) -> ExecutionResult:
        run_id = run.run_id
        waves = build_waves(run.tasks)

        if not await self._runs.acquire_lease(run_id, self._owner_id, self._config.lease_ttl_seconds):
            raise RunStateError(
                f"Run {run_id} is leased by another executor",
                run_id=run_id,
                suggested_action="Wait for the other executor or for its lease to expire",
            )

        control = _RunControl(self._config.timeout_seconds)
        self._active[run_id] = control
        started_at = datetime.now(UTC)
        outcomes: dict[str, EntityOutcome] = {}
        errors: list[dict[str, Any]] = []

        with self._tracer.span(
            "differential_sync.executor.execute",
            {ATTR_RUN_ID: run_id},
        ) as span:
            try:
                run.started_at = run.started_at or started_at
                run.requested_action = None
                run.lease_owner = self._owner_id
                run.lease_expires_at = datetime.now(UTC) + timedelta(seconds=self._config.lease_ttl_seconds)
                await self._runs.save(run, max_failures=self._config.max_recorded_failures)
                self._progress.start_run(
                    run_id,
                    {e.entity_type: e.records_total for e in run.entities.values()},
                    processed={e.entity_type: e.records_processed for e in run.entities.values()},
                    failed={e.entity_type: e.records_failed for e in run.entities.values()},
                    estimated_duration_seconds=(
                        sum(t.estimated_duration_ms for t in run.tasks) / 1000 or None
                    ),
                )
                logger.info(
                    "%s run %s: %d entities in %d waves",
                    "Resuming" if resuming else "Starting",
                    run_id,
                    len(run.entities),
                    len(waves),
                )

                for index, wave in enumerate(waves):
                    if control.stop_reason is not None:
                        break
                    await self._run_wave(run, index, wave, control, outcomes, errors)

                if control.stop_reason == STOP_CANCELLED:
                    await self._apply_cancel(run, outcomes)
                elif control.stop_reason in _RESUMABLE_STOPS:
                    run.paused = bool(run.entities_in(EntityState.PENDING))
            except CheckpointError as e:
                logger.error("Run %s stopped: checkpoint could not be persisted: %s", run_id, e)
                errors.append({"entity_type": e.entity_type, **e.to_dict()})
                # progress after the last durable checkpoint is replayed on resume
                for entity in run.entities.values():
                    if entity.state == EntityState.RUNNING:
                        entity.state = EntityState.PENDING
                run.paused = bool(run.entities_in(EntityState.PENDING))
            finally:
                self._active.pop(run_id, None)
                status = run.status
                if control.stop_reason == STOP_LEASE_LOST:
                    # another executor owns the run record now
                    logger.warning("Run %s: lease lost, leaving the run record to its owner", run_id)
                else:
                    run.requested_action = None
                    run.lease_owner = None
                    run.lease_expires_at = None
                    if status.is_terminal:
                        run.completed_at = datetime.now(UTC)
                    await self._runs.save(run, max_failures=self._config.max_recorded_failures)
                    await self._runs.release_lease(run_id, self._owner_id)
                self._progress.set_status(run_id, status)

            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RUN_STATUS, status.value)
                span.set_attribute(ATTR_RECORDS_PROCESSED, run.records_processed)
                span.set_attribute(ATTR_RECORDS_FAILED, run.records_failed)

            for entity in run.entities.values():
                outcomes.setdefault(
                    entity.entity_type,
                    EntityOutcome(
                        entity_type=entity.entity_type,
                        state=entity.state,
                        records_processed=entity.records_processed,
                        records_failed=entity.records_failed,
                        checkpoint_id=entity.checkpoint_id,
                        error=entity.error,
                    ),
                )

            recovery = None if status == ExecutorState.COMPLETED else await self._recovery(run, waves)
            result = ExecutionResult(
                run_id=run_id,
                status=status,
                entity_outcomes=outcomes,
                checkpoints=tuple(
                    e.checkpoint_id for e in run.entities.values() if e.checkpoint_id
                ),
                started_at=started_at,
                completed_at=datetime.now(UTC),
                errors=tuple(errors),
                recovery=recovery,
            )
            logger.info(
                "Run %s finished segment as %s: %d processed, %d failed in %.1fs",
                run_id,
                status.value,
                result.records_processed,
                result.records_failed,
                result.duration.total_seconds(),
            )
            return result

    async def _run_wave(
        self,
        run: RunRecord,
        index: int,
        wave: list[MigrationTask],
        control: _RunControl,
        outcomes: dict[str, EntityOutcome],
        errors: list[dict[str, Any]],
    ) -> None:
        runnable: list[MigrationTask] = []
        for task in wave:
            entity = run.entities[task.entity_type]
            if entity.state != EntityState.PENDING:
                continue
            failed_deps = [
                d
                for d in task.dependencies
                if d in run.entities and run.entities[d].state != EntityState.COMPLETED
            ]
            if failed_deps:
                entity.state = EntityState.FAILED
                entity.error = f"Blocked by failed dependencies: {', '.join(sorted(failed_deps))}"
                logger.warning("Entity %s blocked: %s", task.entity_type, entity.error)
                await self._runs.save_entity(
                    run, task.entity_type, max_failures=self._config.max_recorded_failures
                )
                self._progress.set_entity_state(run.run_id, task.entity_type, EntityState.FAILED)
                outcomes[task.entity_type] = EntityOutcome(
                    entity_type=task.entity_type,
                    state=EntityState.FAILED,
                    records_processed=entity.records_processed,
                    records_failed=entity.records_failed,
                    stopped_reason=STOP_BLOCKED,
                    error=entity.error,
                )
                continue
            runnable.append(task)

        if not runnable:
            return

        with self._tracer.span(
            "differential_sync.executor.wave",
            {ATTR_RUN_ID: run.run_id, ATTR_WAVE_INDEX: index, ATTR_WAVE_SIZE: len(runnable)},
        ):
            semaphore = asyncio.Semaphore(self._config.parallel_entity_limit)

            async def bounded(task: MigrationTask) -> EntityOutcome:
                async with semaphore:
                    return await self._run_entity(run, task, control, errors)

            results = await asyncio.gather(
                *(bounded(task) for task in runnable),
                return_exceptions=True,
            )

        fatal: CheckpointError | None = None
        for task, result in zip(runnable, results, strict=True):
            if isinstance(result, CheckpointError):
                fatal = fatal or result
            elif isinstance(result, Exception):
                outcomes[task.entity_type] = await self._fail_entity(
                    run, task.entity_type, result, errors
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes[task.entity_type] = result
        if fatal is not None:
            raise fatal

    async def _fail_entity(
        self,
        run: RunRecord,
        entity_type: str,
        error: Exception,
        errors: list[dict[str, Any]],
    ) -> EntityOutcome:
        """Move an entity that raised unexpectedly to the failed set."""
        entity = run.entities[entity_type]
        logger.error(
            "Entity %s of run %s failed unexpectedly",
            entity_type,
            run.run_id,
            exc_info=error,
        )
        entity.state = EntityState.FAILED
        entity.error = f"{type(error).__name__}: {error}"
        classification = classify_exception(error)
        errors.append(
            {
                "message": entity.error,
                "run_id": run.run_id,
                "entity_type": entity_type,
                "record_id": None,
                "error_code": classification.error_code,
                "classification": classification.to_dict(),
            }
        )
        await self._runs.save_entity(run, entity_type, max_failures=self._config.max_recorded_failures)
        self._progress.set_entity_state(run.run_id, entity_type, EntityState.FAILED)
        return EntityOutcome(
            entity_type=entity_type,
            state=EntityState.FAILED,
            records_processed=entity.records_processed,
            records_failed=entity.records_failed,
            checkpoint_id=entity.checkpoint_id,
            stopped_reason=STOP_ERROR,
            error=entity.error,
        )

    async def _run_entity(
        self,
        run: RunRecord,
        task: MigrationTask,
        control: _RunControl,
        errors: list[dict[str, Any]],
    ) -> EntityOutcome:
        entity_type = task.entity_type
        entity = run.entities[entity_type]
        descriptor = self._resolver.schema.get_descriptor(entity_type)
        started = time.perf_counter()

        with self._tracer.span(
            "differential_sync.executor.entity",
            {ATTR_RUN_ID: run.run_id, ATTR_ENTITY_TYPE: entity_type},
        ):
            entity.state = EntityState.RUNNING
            entity.started = True
            entity.error = None
            await self._runs.save_entity(
                run, entity_type, max_failures=self._config.max_recorded_failures
            )
            self._progress.set_entity_state(run.run_id, entity_type, EntityState.RUNNING)

            checkpoint = await self._start_checkpoint(run.run_id, task)
            entity.checkpoint_id = checkpoint.id

            keys = sorted({descriptor.coerce_key(k) for k in task.record_ids})
            if checkpoint.last_processed_key is not None:
                after = descriptor.coerce_key(checkpoint.last_processed_key)
                keys = [k for k in keys if k > after]
            change_types = {
                descriptor.coerce_key(k): ChangeType(v)
                for k, v in (task.metadata.get("change_types") or {}).items()
            }

            state = _EntityRun(
                task=task,
                checkpoint=checkpoint,
                last_key=checkpoint.last_processed_key,
                batch_number=checkpoint.batch_number,
                batches=[],
                failures=[],
                processed_keys=[],
            )
            stop_reason: str | None = None
            since_checkpoint = 0

            try:
                for batch in _chunks(keys, self._config.batch_size):
                    stop_reason = await self._check_stop(run.run_id, control)
                    if stop_reason is not None:
                        break

                    state.batch_number += 1
                    outcome, failures = await self._process_batch(
                        run.run_id, entity_type, batch, state.batch_number, change_types
                    )
                    failed_keys = {f.record_id for f in failures}
                    state.batches.append(outcome)
                    state.failures.extend(failures)
                    state.processed_keys.extend(k for k in batch if k not in failed_keys)
                    state.last_key = batch[-1]

                    entity.records_processed += outcome.committed
                    entity.records_failed += outcome.failed
                    room = self._config.max_recorded_failures - len(entity.failures)
                    if room > 0:
                        entity.failures.extend(failures[:room])

                    self._progress.record_batch(
                        run.run_id,
                        entity_type,
                        committed=outcome.committed,
                        failed=outcome.failed,
                        duration_ms=outcome.duration_ms,
                    )

                    since_checkpoint += 1
                    if since_checkpoint >= self._config.checkpoint_interval:
                        state.checkpoint = await self._checkpoints.update(
                            state.checkpoint.id,
                            last_processed_key=state.last_key,
                            records_processed=entity.records_processed,
                            records_failed=entity.records_failed,
                            batch_number=state.batch_number,
                        )
                        await self._runs.save_entity(
                            run, entity_type, max_failures=self._config.max_recorded_failures
                        )
                        since_checkpoint = 0
            except CheckpointError as e:
                entity.state = EntityState.FAILED
                entity.error = e.message
                await self._runs.save_entity(
                    run, entity_type, max_failures=self._config.max_recorded_failures
                )
                raise
            except SyncError as e:
                stop_reason = STOP_ERROR
                entity.error = e.message
                errors.append({"entity_type": entity_type, **e.to_dict()})
                logger.error(
                    "Entity %s of run %s failed after %d batches: %s",
                    entity_type,
                    run.run_id,
                    len(state.batches),
                    e.message,
                )

            validation = await self._finish_entity(run, entity_type, state, stop_reason)
            self._progress.set_entity_state(run.run_id, entity_type, entity.state)
            metrics = self._progress.metrics_for(run.run_id)
            if metrics is not None:
                metrics.record_entity_duration(
                    entity_type, time.perf_counter() - started, entity.state.value
                )

            return EntityOutcome(
                entity_type=entity_type,
                state=entity.state,
                records_processed=entity.records_processed,
                records_failed=entity.records_failed,
                batches=tuple(state.batches),
                failures=tuple(state.failures),
                checkpoint_id=state.checkpoint.id,
                last_processed_key=state.last_key,
                stopped_reason=stop_reason,
                error=entity.error,
                validation=validation,
            )

    async def _start_checkpoint(self, run_id: str, task: MigrationTask) -> Checkpoint:
        checkpoint = await self._checkpoints.create(run_id, task.entity_type, task.record_count)
        if checkpoint.status == CheckpointStatus.RUNNING and checkpoint.resumable:
            return checkpoint
        if checkpoint.status.is_terminal:
            raise CheckpointError(
                "Checkpoint of an unfinished entity is already completed",
                checkpoint_id=checkpoint.id,
                run_id=run_id,
                entity_type=task.entity_type,
            )
        return await self._checkpoints.update(
            checkpoint.id,
            status=CheckpointStatus.RUNNING,
            resumable=True,
            records_total=task.record_count,
        )

    async def _finish_entity(
        self,
        run: RunRecord,
        entity_type: str,
        state: _EntityRun,
        stop_reason: str | None,
    ) -> ValidationReport | None:
        entity = run.entities[entity_type]
        progress = {
            "last_processed_key": state.last_key,
            "records_processed": entity.records_processed,
            "records_failed": entity.records_failed,
            "batch_number": state.batch_number,
        }
        validation = None

        if stop_reason in _RESUMABLE_STOPS:
            entity.state = EntityState.PENDING
            state.checkpoint = await self._checkpoints.update(
                state.checkpoint.id, status=CheckpointStatus.PAUSED, **progress
            )
            logger.info(
                "Entity %s of run %s stopped (%s) after key %r",
                entity_type,
                run.run_id,
                stop_reason,
                state.last_key,
            )
        elif stop_reason == STOP_CANCELLED:
            entity.state = EntityState.FAILED
            entity.error = "cancelled"
            state.checkpoint = await self._checkpoints.update(
                state.checkpoint.id, status=CheckpointStatus.FAILED, resumable=False, **progress
            )
        elif stop_reason == STOP_ERROR or state.failures:
            entity.state = EntityState.FAILED
            if entity.error is None:
                entity.error = f"{len(state.failures)} records failed"
            state.checkpoint = await self._checkpoints.update(
                state.checkpoint.id, status=CheckpointStatus.FAILED, **progress
            )
        else:
            state.checkpoint = await self._checkpoints.update(state.checkpoint.id, **progress)
            state.checkpoint = await self._checkpoints.complete(state.checkpoint.id)
            entity.state = EntityState.COMPLETED
            if self._config.enable_validation and state.processed_keys:
                validation = await self._validate_sample(entity_type, state.processed_keys)

        await self._runs.save_entity(run, entity_type, max_failures=self._config.max_recorded_failures)
        return validation

    async def _validate_sample(
        self, entity_type: str, processed_keys: Sequence[RecordKey]
    ) -> ValidationReport:
        size = min(self._config.validation_sample_size, len(processed_keys))
        sample = random.sample(list(processed_keys), size)  # nosec B311 - sampling, not security
        report = await self._resolver.verify(entity_type, sample)
        if report.is_valid:
            logger.info("Validated %d %s records", report.sampled, entity_type)
        else:
            logger.warning(
                "Validation of %s found %d mismatched records: %r",
                entity_type,
                len(report.mismatched),
                list(report.mismatched)[:10],
            )
        return report

    async def _check_stop(self, run_id: str, control: _RunControl) -> str | None:
        """Honour pause, cancel, timeout and lease loss between batches."""
        if control.stop_reason is None:
            action = await self._runs.get_requested_action(run_id)
            if action in _ACTION_TO_STOP:
                control.request(_ACTION_TO_STOP[action])
        if control.stop_reason is None and control.deadline is not None:
            if time.monotonic() >= control.deadline:
                logger.warning("Run %s reached its timeout", run_id)
                control.request(STOP_TIMEOUT)
        if control.stop_reason is None:
            renewed = await self._runs.renew_lease(
                run_id, self._owner_id, self._config.lease_ttl_seconds
            )
            if not renewed:
                logger.error("Run %s lease lost; stopping", run_id)
                control.request(STOP_LEASE_LOST)
        return control.stop_reason

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def _process_batch(
        self,
        run_id: str,
        entity_type: str,
        keys: list[RecordKey],
        batch_number: int,
        change_types: dict[RecordKey, ChangeType],
    ) -> tuple[BatchOutcome, list[RecordFailure]]:
        """
        Apply one batch, splitting it when the destination rejects it.

        Raises:
            SyncError: If a transient failure outlasts the retries or the
                resolver fails outside the store
        """
        retry_config = self._config.retry_config()
        started = time.perf_counter()
        committed = 0
        transactions = 0
        splits = 0
        failures: list[RecordFailure] = []
        # (sub-batch, split depth), processed in ascending key order
        pending: list[tuple[list[RecordKey], int]] = [(keys, 0)]

        with self._tracer.span(
            "differential_sync.executor.batch",
            {
                ATTR_RUN_ID: run_id,
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_BATCH_NUMBER: batch_number,
                ATTR_BATCH_SIZE: len(keys),
            },
        ):
            while pending:
                sub, depth = pending.pop(0)
                declared = {k: change_types[k] for k in sub if k in change_types}

                async def apply(
                    sub: list[RecordKey] = sub, declared: dict[RecordKey, ChangeType] = declared
                ) -> Any:
                    return await self._resolver.resolve_batch(
                        entity_type, sub, change_types=declared, run_id=run_id
                    )

                try:
                    resolution = await self._error_handler.execute_with_retry(
                        apply,
                        f"resolve_batch[{entity_type}]",
                        run_id=run_id,
                        retry_config=retry_config,
                    )
                except StoreError as e:
                    # exhausted transient errors fail the entity, the rest are isolated
                    if e.retryable:
                        raise
                    if len(sub) == 1:
                        logger.warning(
                            "Record %s %r rejected by the destination: %s",
                            entity_type,
                            sub[0],
                            e.message,
                        )
                        failures.append(
                            RecordFailure(
                                record_id=sub[0],
                                error_type=e.error_code,
                                message=e.message,
                                retryable=False,
                            )
                        )
                        continue
                    splits += 1
                    self._progress.record_constraint_retry(run_id, entity_type)
                    delay_ms = retry_config.get_delay_ms(depth)
                    logger.info(
                        "%s in %s batch %d (%d records); splitting, retry in %.0fms",
                        e.error_code,
                        entity_type,
                        batch_number,
                        len(sub),
                        delay_ms,
                    )
                    await asyncio.sleep(delay_ms / 1000)
                    middle = len(sub) // 2
                    pending[:0] = [(sub[:middle], depth + 1), (sub[middle:], depth + 1)]
                    continue

                transactions += 1
                committed += resolution.processed
                failures.extend(resolution.failures)

        outcome = BatchOutcome(
            batch_number=batch_number,
            record_count=len(keys),
            committed=committed,
            failed=len(failures),
            transactions=transactions,
            splits=splits,
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )
        logger.debug(
            "Run %s %s batch %d: %s (%d committed, %d failed, %d splits)",
            run_id,
            entity_type,
            batch_number,
            outcome.status,
            outcome.committed,
            outcome.failed,
            outcome.splits,
        )
        return outcome, failures

    # -------------------------------------------------------------------------
    # Cancel and recovery
    # -------------------------------------------------------------------------

    async def _apply_cancel(
        self,
        run: RunRecord,
        outcomes: dict[str, EntityOutcome] | None = None,
    ) -> None:
        run.cancelled = True
        run.paused = False
        for entity in run.entities.values():
            if entity.state not in (EntityState.PENDING, EntityState.RUNNING):
                continue
            entity.state = EntityState.FAILED
            entity.error = "cancelled"
            if entity.checkpoint_id is not None:
                checkpoint = await self._checkpoints.get(entity.checkpoint_id)
                if checkpoint is not None and checkpoint.resumable and not checkpoint.status.is_terminal:
                    status = (
                        CheckpointStatus.FAILED
                        if checkpoint.status.can_transition_to(CheckpointStatus.FAILED)
                        else checkpoint.status
                    )
                    await self._checkpoints.update(checkpoint.id, status=status, resumable=False)
            if outcomes is not None and entity.entity_type not in outcomes:
                outcomes[entity.entity_type] = EntityOutcome(
                    entity_type=entity.entity_type,
                    state=EntityState.FAILED,
                    records_processed=entity.records_processed,
                    records_failed=entity.records_failed,
                    checkpoint_id=entity.checkpoint_id,
                    stopped_reason=STOP_CANCELLED,
                    error="cancelled",
                )
            self._progress.set_entity_state(run.run_id, entity.entity_type, EntityState.FAILED)
        logger.info("Run %s cancelled", run.run_id)

    async def _recovery(self, run: RunRecord, waves: list[list[MigrationTask]]) -> RecoveryInfo:
        active = await self._checkpoints.get_recovery_info(run.run_id)
        order = [task.entity_type for wave in waves for task in wave]
        incomplete = [
            name for name in order if run.entities[name].state != EntityState.COMPLETED
        ]
        first = next((active[name] for name in incomplete if name in active), None)
        failed = run.entities_in(EntityState.FAILED)
        recoverable = not run.cancelled and run.status.is_resumable

        actions: list[str] = []
        if failed:
            actions.append(f"Failed entities: {', '.join(failed)}")
        if run.cancelled:
            actions.append(f"Run {run.run_id} was cancelled; resume with force=True to continue")
        elif recoverable and first is not None:
            actions.append(
                f"Resume run {run.run_id} from checkpoint {first.id} "
                f"({first.entity_type} after key {first.last_processed_key!r})"
            )
        elif recoverable:
            actions.append(f"Resume run {run.run_id}")
        if run.records_failed:
            actions.append(
                f"Re-run detection for the {run.records_failed} failed records after fixing them"
            )
        if run.records_processed and run.records_failed / run.records_processed > HIGH_FAILURE_RATE:
            actions.append(
                f"High failure rate ({run.records_failed / run.records_processed:.0%}): "
                "review source data and transformers before resuming"
            )

        return RecoveryInfo(
            is_recoverable=recoverable,
            checkpoint_id=first.id if first else None,
            entity_type=first.entity_type if first else None,
            resume_from_key=first.last_processed_key if first else None,
            checkpoints={name: active[name].id for name in incomplete if name in active},
            recommended_actions=tuple(actions),
        )


__all__ = [
    "MigrationExecutor",
    "build_waves",
    "STOP_PAUSED",
    "STOP_CANCELLED",
    "STOP_TIMEOUT",
    "STOP_LEASE_LOST",
    "STOP_BLOCKED",
    "STOP_ERROR",
]
