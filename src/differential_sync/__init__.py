"""
differential_sync - Incremental, resumable migration of relational data.

This library provides:
- Change detection against a baseline timestamp with content hashing
- Legacy id -> new id mappings stored beside the migrated rows
- Dependency-ordered, checkpointed batch execution with pause/resume/cancel
- Source-wins conflict resolution with target-wins and manual review hooks
- Progress tracking with alerts and OpenTelemetry metrics
- Baseline analysis of source/destination gaps and the next detection baseline
- SQLAlchemy (PostgreSQL, SQLite) and in-memory record stores
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("differential-sync")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from differential_sync.baseline import (
    BaselineAnalyzer,
    BaselineReport,
    BaselineStatus,
    EntityBaseline,
)
from differential_sync.checkpoint import CheckpointManager, CheckpointStatistics
from differential_sync.config import (
    DetectionOptions,
    ExecutionConfig,
    ProgressConfig,
    ResolutionOptions,
    ResolutionStrategy,
)
from differential_sync.detector import DifferentialDetector
from differential_sync.exceptions import (
    CheckpointError,
    ConflictResolutionError,
    ConstraintError,
    DependencyCycleError,
    DetectionError,
    ErrorHandler,
    RecordValidationError,
    RetryConfig,
    RunNotFoundError,
    RunStateError,
    SchemaError,
    StoreConnectionError,
    StoreError,
    SyncError,
)
from differential_sync.executor import MigrationExecutor, build_waves
from differential_sync.metrics import SyncMetrics
from differential_sync.models import (
    ChangeRecord,
    ChangeType,
    Checkpoint,
    CheckpointStatus,
    DetectionResult,
    EntityOutcome,
    EntityState,
    ExecutionResult,
    ExecutorState,
    MigrationMapping,
    MigrationStatus,
    MigrationTask,
    RecordFailure,
    RecoveryInfo,
    TaskPriority,
    ValidationStatus,
    derive_status,
)
from differential_sync.progress import (
    AlertSeverity,
    AlertType,
    ProgressAlert,
    ProgressSnapshot,
    ProgressTracker,
)
from differential_sync.repositories import (
    ManualReviewItem,
    ManualReviewQueue,
    MappingStore,
    RunRepository,
    StoreManualReviewQueue,
    create_control_tables,
)
from differential_sync.resolver import BatchResolution, ConflictResolver, ResolutionSummary
from differential_sync.schema import (
    EntityDescriptor,
    EntityTransformer,
    FieldMapTransformer,
    SchemaProvider,
    SchemaRegistry,
    TransformContext,
)
from differential_sync.service import RunStatus, SyncService
from differential_sync.stores import (
    InMemoryRecordStore,
    RecordStore,
    SQLAlchemyRecordStore,
    StoreSession,
)
from differential_sync.types import RecordKey, Row

__all__ = [
    # Version
    "__version__",
    # Types
    "RecordKey",
    "Row",
    # Models
    "ChangeType",
    "ChangeRecord",
    "DetectionResult",
    "TaskPriority",
    "MigrationTask",
    "CheckpointStatus",
    "Checkpoint",
    "ValidationStatus",
    "MigrationMapping",
    "EntityState",
    "ExecutorState",
    "derive_status",
    "MigrationStatus",
    "RecordFailure",
    "EntityOutcome",
    "RecoveryInfo",
    "ExecutionResult",
    # Configuration
    "DetectionOptions",
    "ExecutionConfig",
    "ResolutionOptions",
    "ResolutionStrategy",
    "ProgressConfig",
    # Schema
    "EntityDescriptor",
    "EntityTransformer",
    "FieldMapTransformer",
    "SchemaProvider",
    "SchemaRegistry",
    "TransformContext",
    # Stores
    "RecordStore",
    "StoreSession",
    "InMemoryRecordStore",
    "SQLAlchemyRecordStore",
    # Repositories
    "MappingStore",
    "RunRepository",
    "ManualReviewItem",
    "ManualReviewQueue",
    "StoreManualReviewQueue",
    "create_control_tables",
    # Components
    "DifferentialDetector",
    "CheckpointManager",
    "CheckpointStatistics",
    "ConflictResolver",
    "BatchResolution",
    "ResolutionSummary",
    "MigrationExecutor",
    "build_waves",
    "ProgressTracker",
    "ProgressSnapshot",
    "ProgressAlert",
    "AlertType",
    "AlertSeverity",
    "SyncMetrics",
    "BaselineAnalyzer",
    "BaselineReport",
    "BaselineStatus",
    "EntityBaseline",
    "SyncService",
    "RunStatus",
    # Exceptions
    "SyncError",
    "StoreError",
    "StoreConnectionError",
    "ConstraintError",
    "RecordValidationError",
    "CheckpointError",
    "ConflictResolutionError",
    "DetectionError",
    "DependencyCycleError",
    "SchemaError",
    "RunNotFoundError",
    "RunStateError",
    "RetryConfig",
    "ErrorHandler",
]
