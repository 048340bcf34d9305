"""
Repositories for the control tables of the differential sync engine.

Every repository works against a RecordStore and accepts an optional
StoreSession where its writes must join a caller's transaction.

Repositories:
    MappingStore: legacy id -> new id mappings
    CheckpointRepository: run/entity checkpoints
    RunRepository: persisted run records and leases
    SnapshotRepository: pre-resolution copies of destination rows
    StoreManualReviewQueue: records awaiting manual resolution
"""

from differential_sync.repositories.checkpoint import CheckpointRepository
from differential_sync.repositories.manual_review import (
    ManualReviewItem,
    ManualReviewQueue,
    StoreManualReviewQueue,
)
from differential_sync.repositories.mapping import LOOKUP_CHUNK_SIZE, MappingStore
from differential_sync.repositories.run import REQUESTED_ACTIONS, RunRepository
from differential_sync.repositories.snapshot import SnapshotRepository
from differential_sync.repositories.tables import (
    CHECKPOINTS_TABLE,
    CONTROL_UNIQUE_CONSTRAINTS,
    MANUAL_REVIEWS_TABLE,
    MAPPINGS_TABLE,
    RUN_ENTITIES_TABLE,
    RUNS_TABLE,
    SNAPSHOTS_TABLE,
    control_table_ddl,
    create_control_tables,
)

__all__ = [
    # Mapping
    "MappingStore",
    "LOOKUP_CHUNK_SIZE",
    # Checkpoint
    "CheckpointRepository",
    # Run
    "RunRepository",
    "REQUESTED_ACTIONS",
    # Snapshot
    "SnapshotRepository",
    # Manual review
    "ManualReviewItem",
    "ManualReviewQueue",
    "StoreManualReviewQueue",
    # Tables
    "MAPPINGS_TABLE",
    "CHECKPOINTS_TABLE",
    "RUNS_TABLE",
    "RUN_ENTITIES_TABLE",
    "SNAPSHOTS_TABLE",
    "MANUAL_REVIEWS_TABLE",
    "CONTROL_UNIQUE_CONSTRAINTS",
    "control_table_ddl",
    "create_control_tables",
]
