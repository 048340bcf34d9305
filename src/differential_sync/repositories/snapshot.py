"""
SnapshotRepository - pre-resolution copies of destination rows.

Before a batch overwrites or deletes destination rows, the resolver can
copy them into `sync_snapshots`. Snapshots support manual rollback and
audit; restoring them is an operator task.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from differential_sync.observability import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.tables import SNAPSHOTS_TABLE
from differential_sync.serialization import json_loads, parse_datetime
from differential_sync.stores import RecordStore, eq, lt
from differential_sync.types import RecordKey, Row

logger = logging.getLogger(__name__)


class SnapshotRepository:
    """
    Snapshot persistence over a RecordStore.

    Args:
        store: Destination store holding the sync_snapshots table
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

    async def save_rows(
        self,
        entity_type: str,
        rows: Sequence[tuple[RecordKey, str, Row]],
        *,
        run_id: str | None = None,
    ) -> int:
        """
        Store copies of destination rows in one transaction.

        Args:
            entity_type: Entity type of the rows
            rows: (legacy_id, new_id, destination row) tuples
            run_id: Run the snapshot belongs to

        Returns:
            Number of rows stored
        """
        if not rows:
            return 0
        with self._tracer.span(
            "differential_sync.snapshot_repo.save_rows",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_RECORD_COUNT: len(rows),
                ATTR_DB_SYSTEM: self._store.dialect,
            },
        ):
            now = datetime.now(UTC)
            async with self._store.transaction() as s:
                for legacy_id, new_id, row in rows:
                    await s.insert(
                        SNAPSHOTS_TABLE,
                        {
                            "id": str(uuid4()),
                            "run_id": run_id,
                            "entity_type": entity_type,
                            "legacy_id": str(legacy_id),
                            "new_id": new_id,
                            "row_data": dict(row),
                            "created_at": now,
                        },
                    )
            logger.debug("Stored %d %s snapshots", len(rows), entity_type)
            return len(rows)

    async def list_for_record(self, entity_type: str, legacy_id: RecordKey) -> list[dict[str, Any]]:
        """Snapshots of one record, newest first."""
        async with self._store.connect() as s:
            rows = await s.select(
                SNAPSHOTS_TABLE,
                where=[eq("entity_type", entity_type), eq("legacy_id", str(legacy_id))],
                order_by="created_at",
                descending=True,
            )
        return [
            {
                **row,
                "row_data": json_loads(row["row_data"]),
                "created_at": parse_datetime(row["created_at"]),
            }
            for row in rows
        ]

    async def count(self, entity_type: str | None = None) -> int:
        """Count snapshots, optionally for one entity type."""
        where = [eq("entity_type", entity_type)] if entity_type else []
        async with self._store.connect() as s:
            return await s.count(SNAPSHOTS_TABLE, where=where)

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete snapshots created before the cutoff."""
        async with self._store.transaction() as s:
            return await s.delete(SNAPSHOTS_TABLE, where=[lt("created_at", cutoff)])


__all__ = ["SnapshotRepository"]
