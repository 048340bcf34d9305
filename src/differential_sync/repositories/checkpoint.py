"""
CheckpointRepository - Data access for run/entity checkpoints.

Stores one row per (run_id, entity_type) in the `sync_checkpoints` table.
The repository only persists and queries rows; lifecycle rules (monotonic
progress, status transitions, retention) live in CheckpointManager.

last_processed_key is stored JSON-encoded so integer and text keys survive
the round trip with their type.

Usage:
    >>> repo = CheckpointRepository(destination)
    >>> await repo.save(checkpoint)
    >>> latest = await repo.get_for_run_entity(run_id, "doctors")
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from differential_sync.models import Checkpoint, CheckpointStatus
from differential_sync.observability import (
    ATTR_CHECKPOINT_ID,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.tables import CHECKPOINT_KEY, CHECKPOINTS_TABLE
from differential_sync.serialization import json_dumps, json_loads, parse_datetime
from differential_sync.stores import (
    Condition,
    RecordStore,
    StoreSession,
    eq,
    in_,
    lt,
    use_session,
)
from differential_sync.types import Row

logger = logging.getLogger(__name__)


def _to_row(checkpoint: Checkpoint) -> Row:
    return {
        "id": checkpoint.id,
        "run_id": checkpoint.run_id,
        "entity_type": checkpoint.entity_type,
        "status": checkpoint.status.value,
        "last_processed_key": (
            json_dumps(checkpoint.last_processed_key)
            if checkpoint.last_processed_key is not None
            else None
        ),
        "records_processed": checkpoint.records_processed,
        "records_failed": checkpoint.records_failed,
        "records_total": checkpoint.records_total,
        "batch_number": checkpoint.batch_number,
        "resumable": checkpoint.resumable,
        "created_at": checkpoint.created_at,
        "updated_at": checkpoint.updated_at,
    }


def _from_row(row: Row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        run_id=row["run_id"],
        entity_type=row["entity_type"],
        status=CheckpointStatus(row["status"]),
        last_processed_key=json_loads(row.get("last_processed_key")),
        records_processed=int(row.get("records_processed") or 0),
        records_failed=int(row.get("records_failed") or 0),
        records_total=int(row.get("records_total") or 0),
        batch_number=int(row.get("batch_number") or 0),
        resumable=bool(row.get("resumable")),
        created_at=parse_datetime(row.get("created_at")) or datetime.now(UTC),
        updated_at=parse_datetime(row.get("updated_at")) or datetime.now(UTC),
    )


class CheckpointRepository:
    """
    Checkpoint persistence over a RecordStore.

    Args:
        store: Destination store holding the sync_checkpoints table
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: RecordStore,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store

    @property
    def store(self) -> RecordStore:
        """Store holding the checkpoint table."""
        return self._store

    async def get(
        self,
        checkpoint_id: str,
        *,
        session: StoreSession | None = None,
    ) -> Checkpoint | None:
        """Get a checkpoint by id."""
        with self._tracer.span(
            "differential_sync.checkpoint_repo.get",
            {ATTR_CHECKPOINT_ID: checkpoint_id, ATTR_DB_SYSTEM: self._store.dialect},
        ):
            async with use_session(self._store, session, transactional=False) as s:
                rows = await s.select(CHECKPOINTS_TABLE, where=[eq("id", checkpoint_id)], limit=1)
            return _from_row(rows[0]) if rows else None

    async def get_for_run_entity(
        self,
        run_id: str,
        entity_type: str,
        *,
        session: StoreSession | None = None,
    ) -> Checkpoint | None:
        """Get the checkpoint of one run/entity pair."""
        with self._tracer.span(
            "differential_sync.checkpoint_repo.get_for_run_entity",
            {
                ATTR_RUN_ID: run_id,
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_DB_SYSTEM: self._store.dialect,
            },
        ):
            async with use_session(self._store, session, transactional=False) as s:
                rows = await s.select(
                    CHECKPOINTS_TABLE,
                    where=[eq("run_id", run_id), eq("entity_type", entity_type)],
                    limit=1,
                )
            return _from_row(rows[0]) if rows else None

    async def save(
        self,
        checkpoint: Checkpoint,
        *,
        session: StoreSession | None = None,
    ) -> None:
        """
        Insert or overwrite the checkpoint of its run/entity pair.

        The id and created_at of an existing row are kept.
        """
        with self._tracer.span(
            "differential_sync.checkpoint_repo.save",
            {
                ATTR_CHECKPOINT_ID: checkpoint.id,
                ATTR_ENTITY_TYPE: checkpoint.entity_type,
                ATTR_DB_SYSTEM: self._store.dialect,
            },
        ):
            row = _to_row(checkpoint)
            async with use_session(self._store, session) as s:
                await s.upsert(
                    CHECKPOINTS_TABLE,
                    row,
                    key_columns=CHECKPOINT_KEY,
                    update_columns=[
                        c for c in row if c not in (*CHECKPOINT_KEY, "id", "created_at")
                    ],
                )

    async def list_checkpoints(
        self,
        *,
        run_id: str | None = None,
        entity_type: str | None = None,
        resumable: bool | None = None,
        statuses: Sequence[CheckpointStatus] | None = None,
        limit: int | None = None,
    ) -> list[Checkpoint]:
        """
        List checkpoints, newest first.

        Args:
            run_id: Restrict to a run
            entity_type: Restrict to an entity type
            resumable: Restrict to resumable (True) or non-resumable (False)
            statuses: Restrict to these statuses
            limit: Maximum number of results
        """
        where: list[Condition] = []
        if run_id is not None:
            where.append(eq("run_id", run_id))
        if entity_type is not None:
            where.append(eq("entity_type", entity_type))
        if resumable is not None:
            where.append(eq("resumable", resumable))
        if statuses is not None:
            where.append(in_("status", [status.value for status in statuses]))
        async with self._store.connect() as s:
            rows = await s.select(
                CHECKPOINTS_TABLE,
                where=where,
                order_by=("updated_at", "id"),
                descending=True,
                limit=limit,
            )
        return [_from_row(row) for row in rows]

    async def delete(self, checkpoint_ids: Sequence[str]) -> int:
        """Delete checkpoints by id, returning the number removed."""
        if not checkpoint_ids:
            return 0
        async with self._store.transaction() as s:
            return await s.delete(CHECKPOINTS_TABLE, where=[in_("id", list(checkpoint_ids))])

    async def delete_older_than(self, cutoff: datetime, *, resumable: bool = False) -> int:
        """Delete checkpoints last updated before the cutoff."""
        async with self._store.transaction() as s:
            return await s.delete(
                CHECKPOINTS_TABLE,
                where=[lt("updated_at", cutoff), eq("resumable", resumable)],
            )


__all__ = ["CheckpointRepository"]
