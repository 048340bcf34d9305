"""
RunRepository - Data access for persisted run records and leases.

A run record holds the submitted tasks, the per-entity state and the
pause/cancel flags of a run. It replaces any in-process registry of active
runs: an executor owns a run only while it holds the run's lease, and a
pause or cancel request written by another process is picked up between
batches.

Database Tables:
    Uses `sync_runs` and `sync_run_entities` (see repositories.tables).

Usage:
    >>> runs = RunRepository(destination)
    >>> await runs.create(RunRecord.from_tasks(run_id, tasks))
    >>> if await runs.acquire_lease(run_id, owner="worker-1", ttl_seconds=300):
    ...     ...
    >>> await runs.request_action(run_id, "pause")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from differential_sync.exceptions import ConstraintError, RunNotFoundError, RunStateError
from differential_sync.models import (
    EntityState,
    MigrationTask,
    RecordFailure,
    RunEntity,
    RunRecord,
)
from differential_sync.observability import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.tables import (
    RUN_ENTITIES_TABLE,
    RUN_ENTITY_KEY,
    RUN_KEY,
    RUNS_TABLE,
)
from differential_sync.serialization import json_loads, parse_datetime
from differential_sync.stores import (
    Condition,
    RecordStore,
    StoreSession,
    eq,
    is_null,
    use_session,
)
from differential_sync.types import Row

logger = logging.getLogger(__name__)

REQUESTED_ACTIONS = ("pause", "cancel")


def _run_row(run: RunRecord) -> Row:
    return {
        "run_id": run.run_id,
        "status": run.status.value,
        "tasks": [task.to_dict() for task in run.tasks],
        "paused": run.paused,
        "cancelled": run.cancelled,
        "requested_action": run.requested_action,
        "lease_owner": run.lease_owner,
        "lease_expires_at": run.lease_expires_at,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
    }


def _entity_row(run_id: str, entity: RunEntity, max_failures: int | None) -> Row:
    failures = entity.failures if max_failures is None else entity.failures[:max_failures]
    return {
        "run_id": run_id,
        "entity_type": entity.entity_type,
        "state": entity.state.value,
        "records_total": entity.records_total,
        "records_processed": entity.records_processed,
        "records_failed": entity.records_failed,
        "error": entity.error,
        "failures": [f.to_dict() for f in failures],
        "checkpoint_id": entity.checkpoint_id,
        "started": entity.started,
        "updated_at": datetime.now(UTC),
    }


def _entity_from_row(row: Row) -> RunEntity:
    failures = json_loads(row.get("failures")) or []
    return RunEntity(
        entity_type=row["entity_type"],
        state=EntityState(row["state"]),
        records_total=int(row.get("records_total") or 0),
        records_processed=int(row.get("records_processed") or 0),
        records_failed=int(row.get("records_failed") or 0),
        error=row.get("error"),
        failures=[RecordFailure.from_dict(f) for f in failures],
        checkpoint_id=row.get("checkpoint_id"),
        started=bool(row.get("started")),
    )


def _run_from_row(row: Row, entities: Iterable[RunEntity]) -> RunRecord:
    tasks = json_loads(row.get("tasks")) or []
    return RunRecord(
        run_id=row["run_id"],
        tasks=[MigrationTask.from_dict(t) for t in tasks],
        entities={e.entity_type: e for e in entities},
        paused=bool(row.get("paused")),
        cancelled=bool(row.get("cancelled")),
        requested_action=row.get("requested_action"),
        lease_owner=row.get("lease_owner"),
        lease_expires_at=parse_datetime(row.get("lease_expires_at")),
        created_at=parse_datetime(row.get("created_at")) or datetime.now(UTC),
        updated_at=parse_datetime(row.get("updated_at")) or datetime.now(UTC),
        started_at=parse_datetime(row.get("started_at")),
        completed_at=parse_datetime(row.get("completed_at")),
    )


class RunRepository:
    """
    Run record persistence over a RecordStore.

    Args:
        store: Destination store holding the run tables
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

    async def create(self, run: RunRecord) -> None:
        """
        Persist a new run record with its entity rows.

        Raises:
            RunStateError: If a run with the same id already exists
        """
        with self._tracer.span(
            "differential_sync.run_repo.create",
            {ATTR_RUN_ID: run.run_id, ATTR_DB_SYSTEM: self._store.dialect},
        ):
            try:
                async with self._store.transaction() as s:
                    await s.insert(RUNS_TABLE, _run_row(run))
                    for entity in run.entities.values():
                        await s.insert(RUN_ENTITIES_TABLE, _entity_row(run.run_id, entity, None))
            except ConstraintError as e:
                raise RunStateError(f"Run already exists: {run.run_id}", run_id=run.run_id) from e
            logger.info("Created run %s with %d entities", run.run_id, len(run.entities))

    async def get(
        self,
        run_id: str,
        *,
        session: StoreSession | None = None,
    ) -> RunRecord | None:
        """Load a run record with its entities."""
        with self._tracer.span(
            "differential_sync.run_repo.get",
            {ATTR_RUN_ID: run_id, ATTR_DB_SYSTEM: self._store.dialect},
        ):
            async with use_session(self._store, session, transactional=False) as s:
                rows = await s.select(RUNS_TABLE, where=[eq("run_id", run_id)], limit=1)
                if not rows:
                    return None
                entity_rows = await s.select(
                    RUN_ENTITIES_TABLE,
                    where=[eq("run_id", run_id)],
                    order_by="entity_type",
                )
            return _run_from_row(rows[0], (_entity_from_row(r) for r in entity_rows))

    async def require(self, run_id: str) -> RunRecord:
        """
        Load a run record that must exist.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = await self.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def save(self, run: RunRecord, *, max_failures: int | None = None) -> None:
        """Overwrite a run record and all of its entity rows."""
        run.updated_at = datetime.now(UTC)
        with self._tracer.span(
            "differential_sync.run_repo.save",
            {ATTR_RUN_ID: run.run_id, ATTR_DB_SYSTEM: self._store.dialect},
        ):
            row = _run_row(run)
            async with self._store.transaction() as s:
                await s.upsert(
                    RUNS_TABLE,
                    row,
                    key_columns=RUN_KEY,
                    update_columns=[c for c in row if c not in (*RUN_KEY, "created_at")],
                )
                for entity in run.entities.values():
                    await s.upsert(
                        RUN_ENTITIES_TABLE,
                        _entity_row(run.run_id, entity, max_failures),
                        key_columns=RUN_ENTITY_KEY,
                    )

    async def save_entity(
        self,
        run: RunRecord,
        entity_type: str,
        *,
        max_failures: int | None = None,
    ) -> None:
        """
        Persist one entity row and refresh the run's derived status copy.

        Args:
            run: Run record holding the entity
            entity_type: Entity to persist
            max_failures: Cap on the failures stored with the entity
        """
        run.updated_at = datetime.now(UTC)
        with self._tracer.span(
            "differential_sync.run_repo.save_entity",
            {
                ATTR_RUN_ID: run.run_id,
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_DB_SYSTEM: self._store.dialect,
            },
        ):
            async with self._store.transaction() as s:
                await s.upsert(
                    RUN_ENTITIES_TABLE,
                    _entity_row(run.run_id, run.entities[entity_type], max_failures),
                    key_columns=RUN_ENTITY_KEY,
                )
                await s.update(
                    RUNS_TABLE,
                    {"status": run.status.value, "updated_at": run.updated_at},
                    where=[eq("run_id", run.run_id)],
                )

    async def update_fields(self, run_id: str, **values: Any) -> None:
        """
        Update columns of the run row.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        values["updated_at"] = datetime.now(UTC)
        async with self._store.transaction() as s:
            updated = await s.update(RUNS_TABLE, values, where=[eq("run_id", run_id)])
        if updated == 0:
            raise RunNotFoundError(run_id)

    async def request_action(self, run_id: str, action: str | None) -> None:
        """
        Record a pause or cancel request for whoever executes the run.

        Args:
            run_id: Run identifier
            action: 'pause', 'cancel', or None to clear the request

        Raises:
            ValueError: If the action is not recognized
            RunNotFoundError: If the run does not exist
        """
        if action is not None and action not in REQUESTED_ACTIONS:
            raise ValueError(f"action must be one of {REQUESTED_ACTIONS}, got {action!r}")
        await self.update_fields(run_id, requested_action=action)
        logger.info("Run %s requested action: %s", run_id, action)

    async def get_requested_action(self, run_id: str) -> str | None:
        """Return the pending pause/cancel request of a run, if any."""
        async with self._store.connect() as s:
            rows = await s.select(
                RUNS_TABLE,
                where=[eq("run_id", run_id)],
                columns=("requested_action",),
                limit=1,
            )
        return rows[0]["requested_action"] if rows else None

    async def acquire_lease(self, run_id: str, owner: str, ttl_seconds: float) -> bool:
        """
        Take ownership of a run.

        Succeeds when the run is unleased, already leased by the same owner,
        or its lease has expired. The write is a compare-and-set on the
        observed lease holder, so two executors cannot both win.

        Returns:
            True if the lease was acquired

        Raises:
            RunNotFoundError: If the run does not exist
        """
        with self._tracer.span(
            "differential_sync.run_repo.acquire_lease",
            {ATTR_RUN_ID: run_id, ATTR_DB_SYSTEM: self._store.dialect},
        ):
            now = datetime.now(UTC)
            async with self._store.transaction() as s:
                rows = await s.select(
                    RUNS_TABLE,
                    where=[eq("run_id", run_id)],
                    columns=("lease_owner", "lease_expires_at"),
                    limit=1,
                )
                if not rows:
                    raise RunNotFoundError(run_id)
                holder = rows[0]["lease_owner"]
                expires = parse_datetime(rows[0]["lease_expires_at"])
                if holder not in (None, owner) and expires is not None and expires > now:
                    logger.info("Run %s lease held by %s until %s", run_id, holder, expires)
                    return False

                guard: list[Condition] = [eq("run_id", run_id)]
                guard.append(is_null("lease_owner") if holder is None else eq("lease_owner", holder))
                updated = await s.update(
                    RUNS_TABLE,
                    {
                        "lease_owner": owner,
                        "lease_expires_at": now + timedelta(seconds=ttl_seconds),
                        "updated_at": now,
                    },
                    where=guard,
                )
            return updated == 1

    async def renew_lease(self, run_id: str, owner: str, ttl_seconds: float) -> bool:
        """
        Extend a lease held by owner.

        Returns:
            False if owner no longer holds the lease
        """
        now = datetime.now(UTC)
        async with self._store.transaction() as s:
            updated = await s.update(
                RUNS_TABLE,
                {"lease_expires_at": now + timedelta(seconds=ttl_seconds)},
                where=[eq("run_id", run_id), eq("lease_owner", owner)],
            )
        return updated == 1

    async def release_lease(self, run_id: str, owner: str) -> None:
        """Release a lease held by owner. A lease held by someone else is left alone."""
        async with self._store.transaction() as s:
            await s.update(
                RUNS_TABLE,
                {"lease_owner": None, "lease_expires_at": None},
                where=[eq("run_id", run_id), eq("lease_owner", owner)],
            )

    async def list_runs(self, *, status: str | None = None, limit: int = 100) -> list[RunRecord]:
        """
        List runs, newest first.

        Args:
            status: Restrict to runs whose persisted status copy matches
            limit: Maximum number of results
        """
        where = [eq("status", status)] if status else []
        async with self._store.connect() as s:
            rows = await s.select(
                RUNS_TABLE,
                where=where,
                order_by="created_at",
                descending=True,
                limit=limit,
            )
            runs = []
            for row in rows:
                entity_rows = await s.select(
                    RUN_ENTITIES_TABLE,
                    where=[eq("run_id", row["run_id"])],
                    order_by="entity_type",
                )
                runs.append(_run_from_row(row, (_entity_from_row(r) for r in entity_rows)))
        return runs

    async def delete(self, run_id: str) -> bool:
        """Delete a run record and its entity rows."""
        async with self._store.transaction() as s:
            await s.delete(RUN_ENTITIES_TABLE, where=[eq("run_id", run_id)])
            removed = await s.delete(RUNS_TABLE, where=[eq("run_id", run_id)])
        return removed > 0


__all__ = ["RunRepository", "REQUESTED_ACTIONS"]
