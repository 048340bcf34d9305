"""
Data models for the differential sync engine.

This module contains the value types that flow between components:
- Change detection: ChangeType, ChangeRecord, DetectionResult
- Planning: TaskPriority, MigrationTask
- Progress persistence: CheckpointStatus, Checkpoint
- Identity: ValidationStatus, MigrationMapping, MappingStats
- Run state: EntityState, ExecutorState, RunEntity, RunRecord, MigrationStatus
- Results: RecordFailure, BatchOutcome, EntityOutcome, RecoveryInfo, ExecutionResult

Run status is never stored as the source of truth. It is derived from the
entity sets with derive_status(), so it cannot disagree with them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from differential_sync.types import RecordKey

if TYPE_CHECKING:
    from differential_sync.schema import EntityDescriptor


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Change detection
# =============================================================================


class ChangeType(Enum):
    """
    Kind of divergence between a source record and the destination.

    Values:
        NEW: Source record has no mapping (never migrated)
        MODIFIED: Mapping exists but the source content hash changed
        DELETED: Mapping exists but the record left the active source set
    """

    NEW = "new"
    """Source record has no mapping."""

    MODIFIED = "modified"
    """Mapping exists but the stored checksum differs from the source hash."""

    DELETED = "deleted"
    """Mapped record no longer appears in the active source query."""


# Confidence reported for each classification. Reporting metadata only.
CONFIDENCE_NEW = 0.95
CONFIDENCE_MODIFIED_HASHED = 0.98
CONFIDENCE_MODIFIED_TIMESTAMP = 0.85
CONFIDENCE_DELETED = 0.90


@dataclass(frozen=True)
class ChangeRecord:
    """
    One detected unit of divergence.

    Attributes:
        record_id: Legacy key of the source record
        change_type: Classification of the change
        source_timestamp: Source-side modification timestamp (None if unknown)
        content_hash: Hash of the record's canonical fields (None for deletions)
        previous_content_hash: Checksum stored on the mapping, if any
        confidence: Classification confidence, for reporting only
    """

    record_id: RecordKey
    change_type: ChangeType
    source_timestamp: datetime | None = None
    content_hash: str | None = None
    previous_content_hash: str | None = None
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "record_id": self.record_id,
            "change_type": self.change_type.value,
            "source_timestamp": _iso(self.source_timestamp),
            "content_hash": self.content_hash,
            "previous_content_hash": self.previous_content_hash,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class DetectionSummary:
    """Counts of detected changes by type."""

    new: int = 0
    modified: int = 0
    deleted: int = 0
    total_records: int = 0

    @property
    def total_changes(self) -> int:
        """Sum of new, modified and deleted changes."""
        return self.new + self.modified + self.deleted

    @property
    def change_percentage(self) -> float:
        """Changes as a percentage of the records analyzed."""
        if self.total_records == 0:
            return 0.0
        return round(self.total_changes / self.total_records * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "new": self.new,
            "modified": self.modified,
            "deleted": self.deleted,
            "total_changes": self.total_changes,
            "change_percentage": self.change_percentage,
        }


@dataclass(frozen=True)
class DetectionPerformance:
    """Timing and query statistics of one detection run."""

    analysis_duration_ms: float = 0.0
    records_per_second: float = 0.0
    queries_executed: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "analysis_duration_ms": self.analysis_duration_ms,
            "records_per_second": self.records_per_second,
            "queries_executed": self.queries_executed,
        }


@dataclass(frozen=True)
class DetectionResult:
    """
    Atomic result of detecting changes for one entity type.

    A DetectionResult is either complete or not produced at all.

    Attributes:
        entity_type: Entity type analyzed
        analysis_id: Unique identifier of this analysis
        baseline_timestamp: Exclusive lower bound used (None = full scan)
        analysis_timestamp: When the analysis ran
        detection_method: 'timestamp_with_hash' or 'timestamp_only'
        total_records_analyzed: Source records inspected
        changes_detected: Changes in ascending record key order
        summary: Counts by change type
        performance: Timing statistics
        high_watermark: Greatest source timestamp seen, a candidate next baseline
        recommendations: Operator hints derived from the result
    """

    entity_type: str
    analysis_id: str
    baseline_timestamp: datetime | None
    analysis_timestamp: datetime
    detection_method: str
    total_records_analyzed: int
    changes_detected: tuple[ChangeRecord, ...]
    summary: DetectionSummary
    performance: DetectionPerformance = field(default_factory=DetectionPerformance)
    high_watermark: datetime | None = None
    recommendations: tuple[str, ...] = ()

    @property
    def record_ids(self) -> list[RecordKey]:
        """Record keys of every change, in detection order."""
        return [change.record_id for change in self.changes_detected]

    @property
    def has_changes(self) -> bool:
        """Whether any change was detected."""
        return bool(self.changes_detected)

    def changes_of(self, change_type: ChangeType) -> list[ChangeRecord]:
        """Return the changes of one type."""
        return [c for c in self.changes_detected if c.change_type is change_type]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "analysis_id": self.analysis_id,
            "baseline_timestamp": _iso(self.baseline_timestamp),
            "analysis_timestamp": self.analysis_timestamp.isoformat(),
            "detection_method": self.detection_method,
            "total_records_analyzed": self.total_records_analyzed,
            "changes_detected": [c.to_dict() for c in self.changes_detected],
            "summary": self.summary.to_dict(),
            "performance": self.performance.to_dict(),
            "high_watermark": _iso(self.high_watermark),
            "recommendations": list(self.recommendations),
        }


# =============================================================================
# Planning
# =============================================================================


class TaskPriority(Enum):
    """Scheduling hint carried by a MigrationTask. Waves still bind order."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower runs first within a wave."""
        return {TaskPriority.HIGH: 0, TaskPriority.MEDIUM: 1, TaskPriority.LOW: 2}[self]


# Used for estimated_duration_ms when no better estimate is available
DEFAULT_MS_PER_RECORD = 5.0


@dataclass(frozen=True)
class MigrationTask:
    """
    Unit of work for one entity type, consumed once by the executor.

    Attributes:
        entity_type: Entity type to migrate
        record_ids: Legacy keys to process
        priority: Scheduling hint within a wave
        dependencies: Entity types that must finish first
        estimated_duration_ms: Rough duration estimate, used for ETA alerts
        metadata: Free-form metadata (e.g. the originating analysis id)
    """

    entity_type: str
    record_ids: tuple[RecordKey, ...]
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: tuple[str, ...] = ()
    estimated_duration_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def record_count(self) -> int:
        """Number of records in the task."""
        return len(self.record_ids)

    @classmethod
    def from_detection(
        cls,
        result: DetectionResult,
        descriptor: EntityDescriptor | None = None,
        *,
        dependencies: Iterable[str] | None = None,
        priority: TaskPriority | None = None,
        ms_per_record: float = DEFAULT_MS_PER_RECORD,
    ) -> MigrationTask:
        """
        Build a task from a detection result.

        Priority defaults to HIGH above 10000 changes, MEDIUM above 1000
        and LOW otherwise.

        Args:
            result: Detection result for one entity type
            descriptor: Entity descriptor supplying the dependencies
            dependencies: Explicit dependencies, overriding the descriptor's
            priority: Explicit priority
            ms_per_record: Per-record estimate for estimated_duration_ms

        Returns:
            New MigrationTask
        """
        if dependencies is None:
            dependencies = descriptor.dependencies if descriptor is not None else ()
        count = len(result.changes_detected)
        if priority is None:
            if count > 10_000:
                priority = TaskPriority.HIGH
            elif count > 1_000:
                priority = TaskPriority.MEDIUM
            else:
                priority = TaskPriority.LOW
        return cls(
            entity_type=result.entity_type,
            record_ids=tuple(result.record_ids),
            priority=priority,
            dependencies=tuple(dependencies),
            estimated_duration_ms=count * ms_per_record,
            metadata={
                "analysis_id": result.analysis_id,
                "detected_at": result.analysis_timestamp.isoformat(),
                "change_types": {
                    str(c.record_id): c.change_type.value for c in result.changes_detected
                },
            },
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "record_ids": list(self.record_ids),
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "estimated_duration_ms": self.estimated_duration_ms,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationTask:
        """Create from dictionary."""
        return cls(
            entity_type=data["entity_type"],
            record_ids=tuple(data.get("record_ids", ())),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            dependencies=tuple(data.get("dependencies", ())),
            estimated_duration_ms=float(data.get("estimated_duration_ms", 0.0)),
            metadata=dict(data.get("metadata") or {}),
        )


# =============================================================================
# Checkpoints
# =============================================================================


class CheckpointStatus(Enum):
    """
    Lifecycle of a checkpoint.

    PENDING -> RUNNING -> {PAUSED, COMPLETED, FAILED}; PAUSED -> RUNNING on
    resume and FAILED -> RUNNING when a failed entity is retried.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed checkpoints never change again."""
        return self == CheckpointStatus.COMPLETED

    def can_transition_to(self, target: CheckpointStatus) -> bool:
        """
        Check if a transition to the target status is valid.

        Staying in the same status is always valid.
        """
        if target == self:
            return True
        valid_transitions = {
            CheckpointStatus.PENDING: {
                CheckpointStatus.RUNNING,
                CheckpointStatus.PAUSED,
                CheckpointStatus.FAILED,
                CheckpointStatus.COMPLETED,
            },
            CheckpointStatus.RUNNING: {
                CheckpointStatus.PAUSED,
                CheckpointStatus.COMPLETED,
                CheckpointStatus.FAILED,
            },
            CheckpointStatus.PAUSED: {
                CheckpointStatus.RUNNING,
                CheckpointStatus.FAILED,
            },
            CheckpointStatus.FAILED: {CheckpointStatus.RUNNING},
            CheckpointStatus.COMPLETED: set(),
        }
        return target in valid_transitions[self]


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable, resumable progress marker for one entity within one run.

    Invariants:
        - records_processed never decreases across updates.
        - last_processed_key is the last key of a fully committed batch.

    Attributes:
        id: Checkpoint identifier
        run_id: Run the checkpoint belongs to
        entity_type: Entity type it tracks
        status: Lifecycle status
        last_processed_key: Last key of the last committed batch
        records_processed: Records committed so far
        records_failed: Records recorded as failed so far
        records_total: Records in the entity's task
        batch_number: Number of batches committed
        resumable: Whether a resume may continue from this checkpoint
        created_at: Creation time
        updated_at: Last update time
    """

    id: str
    run_id: str
    entity_type: str
    status: CheckpointStatus = CheckpointStatus.PENDING
    last_processed_key: RecordKey | None = None
    records_processed: int = 0
    records_failed: int = 0
    records_total: int = 0
    batch_number: int = 0
    resumable: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def records_remaining(self) -> int:
        """Records not yet committed or failed."""
        return max(0, self.records_total - self.records_processed - self.records_failed)

    @property
    def progress_percent(self) -> float:
        """Completion percentage (0-100)."""
        if self.records_total == 0:
            return 100.0 if self.status == CheckpointStatus.COMPLETED else 0.0
        done = self.records_processed + self.records_failed
        return min(100.0, done / self.records_total * 100)

    @property
    def is_active(self) -> bool:
        """Whether the checkpoint can be resumed from."""
        return self.resumable and not self.status.is_terminal

    def same_state(self, other: Checkpoint) -> bool:
        """Whether two checkpoints carry identical progress state."""
        return (
            self.status == other.status
            and self.last_processed_key == other.last_processed_key
            and self.records_processed == other.records_processed
            and self.records_failed == other.records_failed
            and self.records_total == other.records_total
            and self.batch_number == other.batch_number
            and self.resumable == other.resumable
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "status": self.status.value,
            "last_processed_key": self.last_processed_key,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "records_total": self.records_total,
            "batch_number": self.batch_number,
            "resumable": self.resumable,
            "progress_percent": self.progress_percent,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Identity mapping
# =============================================================================


class ValidationStatus(Enum):
    """Validation state of a mapping row."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(frozen=True)
class MigrationMapping:
    """
    Durable legacy-id to new-id correspondence.

    Invariants:
        - (entity_type, legacy_id) is unique.
        - new_id never changes once assigned.

    Attributes:
        entity_type: Entity type of the record
        legacy_id: Source key, stored as text
        new_id: Destination key assigned on first migration
        checksum: Content hash of the source record last written
        validation_status: Result of the last validation
        created_at: When the mapping was created
        updated_at: When the checksum or status last changed
    """

    entity_type: str
    legacy_id: str
    new_id: str
    checksum: str | None = None
    validation_status: ValidationStatus = ValidationStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_current(self, content_hash: str | None) -> bool:
        """Whether the mapping already reflects a source record with this hash."""
        return (
            content_hash is not None
            and self.checksum == content_hash
            and self.validation_status == ValidationStatus.VALID
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "legacy_id": self.legacy_id,
            "new_id": self.new_id,
            "checksum": self.checksum,
            "validation_status": self.validation_status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class MappingStats:
    """Aggregate statistics over the mapping table."""

    total: int = 0
    by_entity_type: dict[str, int] = field(default_factory=dict)
    by_validation_status: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "total": self.total,
            "by_entity_type": dict(self.by_entity_type),
            "by_validation_status": dict(self.by_validation_status),
        }


@dataclass(frozen=True)
class MappingValidationReport:
    """Result of checking mappings against destination rows."""

    entity_type: str
    checked: int = 0
    valid: int = 0
    invalid: int = 0
    invalid_legacy_ids: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        """True when no mapping points to a missing destination row."""
        return self.invalid == 0


# =============================================================================
# Run state
# =============================================================================


class EntityState(Enum):
    """
    Set an entity belongs to within a run. Exactly one at a time.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutorState(Enum):
    """
    Derived state of a run.

    QUEUED -> RUNNING -> {PAUSED, COMPLETED, PARTIAL, FAILED};
    PAUSED -> RUNNING on resume.
    """

    QUEUED = "queued"
    """No entity has started yet."""

    RUNNING = "running"
    """At least one entity is running, or more waves remain."""

    PAUSED = "paused"
    """Stopped between batches; resumable."""

    COMPLETED = "completed"
    """Every entity completed."""

    PARTIAL = "partial"
    """Some entities failed, none are left pending or running."""

    FAILED = "failed"
    """Every entity failed and nothing was committed."""

    @property
    def is_terminal(self) -> bool:
        """COMPLETED, PARTIAL and FAILED end a run."""
        return self in (ExecutorState.COMPLETED, ExecutorState.PARTIAL, ExecutorState.FAILED)

    @property
    def is_resumable(self) -> bool:
        """PAUSED, PARTIAL and FAILED runs may be resumed."""
        return self in (ExecutorState.PAUSED, ExecutorState.PARTIAL, ExecutorState.FAILED)


def derive_status(
    states: Iterable[EntityState],
    *,
    paused: bool = False,
    started: bool = False,
    records_committed: int = 0,
) -> ExecutorState:
    """
    Derive the run status from the entity sets.

    Args:
        states: State of every entity in the run
        paused: Whether the run is paused
        started: Whether any entity has started
        records_committed: Records committed across the run

    Returns:
        The derived ExecutorState
    """
    state_list = list(states)
    if EntityState.RUNNING in state_list:
        return ExecutorState.RUNNING
    if EntityState.PENDING in state_list:
        if paused:
            return ExecutorState.PAUSED
        if not started:
            return ExecutorState.QUEUED
        return ExecutorState.RUNNING
    if EntityState.FAILED in state_list:
        if EntityState.COMPLETED in state_list or records_committed > 0:
            return ExecutorState.PARTIAL
        return ExecutorState.FAILED
    return ExecutorState.COMPLETED


@dataclass(frozen=True)
class RecordFailure:
    """
    A per-record failure accumulated into the run result.

    Attributes:
        record_id: Legacy key of the failed record
        error_type: Error code (e.g. CONSTRAINT_VIOLATION)
        message: Human-readable message
        retryable: Whether re-running may succeed without changes
    """

    record_id: RecordKey
    error_type: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "record_id": self.record_id,
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RecordFailure:
        """Create from dictionary."""
        return cls(
            record_id=data["record_id"],
            error_type=data["error_type"],
            message=data["message"],
            retryable=bool(data.get("retryable", False)),
        )


@dataclass
class RunEntity:
    """
    Mutable per-entity state of a run, persisted with the run record.

    Attributes:
        entity_type: Entity type
        state: Set the entity currently belongs to
        records_total: Records in the entity's task
        records_processed: Records committed
        records_failed: Records recorded as failed
        error: Entity-level error message, if it failed
        failures: Bounded list of per-record failures
        checkpoint_id: Checkpoint tracking the entity
        started: Whether the entity has ever started
    """

    entity_type: str
    state: EntityState = EntityState.PENDING
    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    error: str | None = None
    failures: list[RecordFailure] = field(default_factory=list)
    checkpoint_id: str | None = None
    started: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "state": self.state.value,
            "records_total": self.records_total,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "error": self.error,
            "failures": [f.to_dict() for f in self.failures],
            "checkpoint_id": self.checkpoint_id,
            "started": self.started,
        }


@dataclass
class RunRecord:
    """
    Persisted session record of a run.

    Replaces any in-process registry of active runs: the lease fields record
    which executor owns the run and until when.

    Attributes:
        run_id: Run identifier
        tasks: Tasks submitted with the run
        entities: Per-entity state keyed by entity type
        paused: Whether the run is paused
        cancelled: Whether the run was cancelled (non-resumable unless forced)
        requested_action: Pending 'pause' or 'cancel' request, honoured between batches
        lease_owner: Executor instance currently owning the run
        lease_expires_at: When the lease lapses if not renewed
        created_at: Creation time
        updated_at: Last update time
        started_at: First execution time
        completed_at: When the run reached a terminal status
    """

    run_id: str
    tasks: list[MigrationTask] = field(default_factory=list)
    entities: dict[str, RunEntity] = field(default_factory=dict)
    paused: bool = False
    cancelled: bool = False
    requested_action: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_tasks(cls, run_id: str, tasks: Iterable[MigrationTask]) -> RunRecord:
        """Create a queued run with every entity pending."""
        task_list = list(tasks)
        return cls(
            run_id=run_id,
            tasks=task_list,
            entities={
                t.entity_type: RunEntity(entity_type=t.entity_type, records_total=t.record_count)
                for t in task_list
            },
        )

    def entities_in(self, state: EntityState) -> list[str]:
        """Entity types currently in the given set."""
        return sorted(e.entity_type for e in self.entities.values() if e.state == state)

    @property
    def records_processed(self) -> int:
        """Records committed across all entities."""
        return sum(e.records_processed for e in self.entities.values())

    @property
    def records_failed(self) -> int:
        """Records recorded as failed across all entities."""
        return sum(e.records_failed for e in self.entities.values())

    @property
    def records_total(self) -> int:
        """Records across all tasks."""
        return sum(e.records_total for e in self.entities.values())

    @property
    def status(self) -> ExecutorState:
        """Run status derived from the entity sets."""
        return derive_status(
            (e.state for e in self.entities.values()),
            paused=self.paused,
            started=any(e.started for e in self.entities.values()),
            records_committed=self.records_processed,
        )

    def lease_active(self, now: datetime | None = None) -> bool:
        """Whether a non-expired lease is held."""
        if self.lease_owner is None or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or datetime.now(UTC))

    def to_status(self) -> MigrationStatus:
        """Build the read view of the entity sets."""
        return MigrationStatus(
            run_id=self.run_id,
            status=self.status,
            pending=tuple(self.entities_in(EntityState.PENDING)),
            running=tuple(self.entities_in(EntityState.RUNNING)),
            completed=tuple(self.entities_in(EntityState.COMPLETED)),
            failed=tuple(self.entities_in(EntityState.FAILED)),
            records_total=self.records_total,
            records_processed=self.records_processed,
            records_failed=self.records_failed,
            cancelled=self.cancelled,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class MigrationStatus:
    """
    Read view of a run: the four entity sets and the derived status.

    Attributes:
        run_id: Run identifier
        status: Derived run status
        pending: Entities not started or paused
        running: Entities currently executing
        completed: Entities finished without failures
        failed: Entities that failed, were blocked, or were cancelled
        records_total: Records across all tasks
        records_processed: Records committed
        records_failed: Records recorded as failed
        cancelled: Whether the run was cancelled
        updated_at: Last update of the run record
    """

    run_id: str
    status: ExecutorState
    pending: tuple[str, ...] = ()
    running: tuple[str, ...] = ()
    completed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    cancelled: bool = False
    updated_at: datetime | None = None

    @property
    def progress_percent(self) -> float:
        """Completion percentage (0-100)."""
        if self.records_total == 0:
            return 100.0 if self.status.is_terminal else 0.0
        return min(100.0, (self.records_processed + self.records_failed) / self.records_total * 100)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "pending": list(self.pending),
            "running": list(self.running),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "records_total": self.records_total,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "progress_percent": self.progress_percent,
            "cancelled": self.cancelled,
            "updated_at": _iso(self.updated_at),
        }


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class BatchOutcome:
    """
    Outcome of one batch (including any reduced-size retries).

    Attributes:
        batch_number: One-based batch number within the entity
        record_count: Records offered in the batch
        committed: Records committed
        failed: Records recorded as failed
        transactions: Destination transactions committed for the batch
        splits: Times the batch was split after a constraint violation
        duration_ms: Wall time spent on the batch
    """

    batch_number: int
    record_count: int
    committed: int
    failed: int
    transactions: int = 1
    splits: int = 0
    duration_ms: float = 0.0

    @property
    def status(self) -> str:
        """'success', 'partial_success' or 'failed'."""
        if self.failed == 0:
            return "success"
        return "partial_success" if self.committed > 0 else "failed"


@dataclass(frozen=True)
class ValidationReport:
    """Result of the post-entity validation sample."""

    sampled: int = 0
    passed: int = 0
    mismatched: tuple[RecordKey, ...] = ()

    @property
    def is_valid(self) -> bool:
        """True when every sampled record matched."""
        return not self.mismatched


@dataclass(frozen=True)
class EntityOutcome:
    """
    Outcome of one entity within a run segment.

    Attributes:
        entity_type: Entity type
        state: Entity set after the segment
        records_processed: Records committed (cumulative across resumes)
        records_failed: Records failed (cumulative across resumes)
        batches: Batches processed in this segment
        failures: Per-record failures from this segment
        checkpoint_id: Checkpoint tracking the entity
        last_processed_key: Last committed key
        stopped_reason: Why processing stopped early, if it did
            ('paused', 'cancelled', 'timeout', 'blocked', 'error')
        error: Entity-level error message
        validation: Post-entity validation report, if enabled
    """

    entity_type: str
    state: EntityState
    records_processed: int = 0
    records_failed: int = 0
    batches: tuple[BatchOutcome, ...] = ()
    failures: tuple[RecordFailure, ...] = ()
    checkpoint_id: str | None = None
    last_processed_key: RecordKey | None = None
    stopped_reason: str | None = None
    error: str | None = None
    validation: ValidationReport | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "state": self.state.value,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "batches": len(self.batches),
            "failures": [f.to_dict() for f in self.failures],
            "checkpoint_id": self.checkpoint_id,
            "last_processed_key": self.last_processed_key,
            "stopped_reason": self.stopped_reason,
            "error": self.error,
        }


@dataclass(frozen=True)
class RecoveryInfo:
    """
    Recovery block attached to every non-COMPLETED result.

    Attributes:
        is_recoverable: Whether resume() can continue the run
        checkpoint_id: A resumable checkpoint (first incomplete entity)
        entity_type: Entity the checkpoint belongs to
        resume_from_key: Key the resume continues after
        checkpoints: Resumable checkpoint id per incomplete entity
        recommended_actions: Operator guidance
    """

    is_recoverable: bool
    checkpoint_id: str | None = None
    entity_type: str | None = None
    resume_from_key: RecordKey | None = None
    checkpoints: dict[str, str] = field(default_factory=dict)
    recommended_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "is_recoverable": self.is_recoverable,
            "checkpoint_id": self.checkpoint_id,
            "entity_type": self.entity_type,
            "resume_from_key": self.resume_from_key,
            "checkpoints": dict(self.checkpoints),
            "recommended_actions": list(self.recommended_actions),
        }


@dataclass(frozen=True)
class ExecutionResult:
    """
    Result of executing (or resuming) a run.

    Attributes:
        run_id: Run identifier
        status: Derived run status
        entity_outcomes: Outcome per entity type
        checkpoints: Checkpoint ids written during the segment
        started_at: Segment start
        completed_at: Segment end
        errors: Error summary entries
        recovery: Recovery block (None only when COMPLETED)
    """

    run_id: str
    status: ExecutorState
    entity_outcomes: dict[str, EntityOutcome]
    checkpoints: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    errors: tuple[dict[str, Any], ...] = ()
    recovery: RecoveryInfo | None = None

    @property
    def records_processed(self) -> int:
        """Records committed across all entities."""
        return sum(o.records_processed for o in self.entity_outcomes.values())

    @property
    def records_failed(self) -> int:
        """Records failed across all entities."""
        return sum(o.records_failed for o in self.entity_outcomes.values())

    @property
    def entities_completed(self) -> list[str]:
        """Entity types that completed."""
        return sorted(
            e for e, o in self.entity_outcomes.items() if o.state == EntityState.COMPLETED
        )

    @property
    def entities_failed(self) -> list[str]:
        """Entity types that failed, were blocked or were cancelled."""
        return sorted(e for e, o in self.entity_outcomes.items() if o.state == EntityState.FAILED)

    @property
    def duration(self) -> timedelta:
        """Wall time of the segment."""
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "entity_outcomes": {k: v.to_dict() for k, v in self.entity_outcomes.items()},
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "entities_completed": self.entities_completed,
            "entities_failed": self.entities_failed,
            "checkpoints": list(self.checkpoints),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration.total_seconds(),
            "errors": list(self.errors),
            "recovery": self.recovery.to_dict() if self.recovery else None,
        }


__all__ = [
    # Detection
    "ChangeType",
    "ChangeRecord",
    "DetectionSummary",
    "DetectionPerformance",
    "DetectionResult",
    "CONFIDENCE_NEW",
    "CONFIDENCE_MODIFIED_HASHED",
    "CONFIDENCE_MODIFIED_TIMESTAMP",
    "CONFIDENCE_DELETED",
    # Planning
    "TaskPriority",
    "MigrationTask",
    # Checkpoints
    "CheckpointStatus",
    "Checkpoint",
    # Mapping
    "ValidationStatus",
    "MigrationMapping",
    "MappingStats",
    "MappingValidationReport",
    # Run state
    "EntityState",
    "ExecutorState",
    "derive_status",
    "RecordFailure",
    "RunEntity",
    "RunRecord",
    "MigrationStatus",
    # Results
    "BatchOutcome",
    "ValidationReport",
    "EntityOutcome",
    "RecoveryInfo",
    "ExecutionResult",
]
