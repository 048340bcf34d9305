"""
Standard span and metric attributes for differential sync.

Attribute constants used across components for consistent span naming and
metric labels. Database attributes follow OpenTelemetry semantic
conventions.

Example:
    >>> from differential_sync.observability.attributes import ATTR_ENTITY_TYPE, ATTR_RUN_ID
    >>>
    >>> with tracer.span(
    ...     "differential_sync.executor.run_entity",
    ...     {ATTR_RUN_ID: run_id, ATTR_ENTITY_TYPE: "patients"},
    ... ):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "differential_sync.run.id"
"""Identifier of the sync run (string)."""

ATTR_RUN_STATUS = "differential_sync.run.status"
"""Derived status of the run (e.g., 'running', 'partial')."""

ATTR_WAVE_INDEX = "differential_sync.wave.index"
"""Zero-based index of the dependency wave being executed (integer)."""

ATTR_WAVE_SIZE = "differential_sync.wave.size"
"""Number of entity types in a dependency wave (integer)."""

# =============================================================================
# Entity and Record Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "differential_sync.entity.type"
"""Entity type key (e.g., 'doctors', 'patients')."""

ATTR_RECORD_COUNT = "differential_sync.record.count"
"""Number of records in an operation (integer)."""

ATTR_RECORDS_PROCESSED = "differential_sync.records.processed"
"""Records committed so far (integer)."""

ATTR_RECORDS_FAILED = "differential_sync.records.failed"
"""Records recorded as failed (integer)."""

ATTR_BATCH_NUMBER = "differential_sync.batch.number"
"""One-based batch number within an entity (integer)."""

ATTR_BATCH_SIZE = "differential_sync.batch.size"
"""Number of records in a batch (integer)."""

ATTR_CHANGE_COUNT = "differential_sync.change.count"
"""Number of detected changes (integer)."""

ATTR_STRATEGY = "differential_sync.resolution.strategy"
"""Conflict resolution policy (e.g., 'source_wins')."""

ATTR_CHECKPOINT_ID = "differential_sync.checkpoint.id"
"""Identifier of a checkpoint (string)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name for failed operations."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation type (e.g., 'SELECT', 'UPSERT')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table the operation targets."""

__all__ = [
    "ATTR_RUN_ID",
    "ATTR_RUN_STATUS",
    "ATTR_WAVE_INDEX",
    "ATTR_WAVE_SIZE",
    "ATTR_ENTITY_TYPE",
    "ATTR_RECORD_COUNT",
    "ATTR_RECORDS_PROCESSED",
    "ATTR_RECORDS_FAILED",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_CHANGE_COUNT",
    "ATTR_STRATEGY",
    "ATTR_CHECKPOINT_ID",
    "ATTR_ERROR_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_TABLE",
]
