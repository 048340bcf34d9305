"""
CheckpointManager - durable, monotonic progress markers.

One checkpoint exists per (run, entity). It always describes a fully
committed batch boundary: the executor only writes it after the batch
transaction has committed, and the manager refuses any update that would
move records_processed backwards.

Responsibilities:
    - Idempotent creation per run/entity
    - Validated updates (monotonic progress, legal status transitions)
    - Lookup by id, by run/entity, and latest resumable per entity
    - Recovery information for a run
    - Retention of non-resumable checkpoints

Example:
    >>> manager = CheckpointManager(destination)
    >>> cp = await manager.create(run_id, "doctors", records_total=5000)
    >>> cp = await manager.update(
    ...     cp.id,
    ...     status=CheckpointStatus.RUNNING,
    ...     last_processed_key=1000,
    ...     records_processed=1000,
    ...     batch_number=1,
    ... )
    >>> await manager.complete(cp.id)
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from differential_sync.exceptions import CheckpointError, StoreError
from differential_sync.models import Checkpoint, CheckpointStatus
from differential_sync.observability import (
    ATTR_CHECKPOINT_ID,
    ATTR_ENTITY_TYPE,
    ATTR_RECORDS_PROCESSED,
    ATTR_RUN_ID,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.checkpoint import CheckpointRepository
from differential_sync.stores import RecordStore
from differential_sync.types import RecordKey

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class CheckpointStatistics:
    """Checkpoint counts by status."""

    total: int = 0
    resumable: int = 0
    by_status: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"total": self.total, "resumable": self.resumable, "by_status": dict(self.by_status)}


class CheckpointManager:
    """
    Checkpoint lifecycle management.

    Store failures are surfaced as CheckpointError so that callers can tell
    "progress could not be persisted" apart from data errors.

    Args:
        store: Destination store holding the sync_checkpoints table
        repository: Custom repository (defaults to one over store)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        repository: CheckpointRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._repo = repository or CheckpointRepository(store, tracer=self._tracer)

    async def create(
        self,
        run_id: str,
        entity_type: str,
        records_total: int = 0,
    ) -> Checkpoint:
        """
        Create the checkpoint of a run/entity pair.

        Idempotent: when the pair already has a checkpoint it is returned
        unchanged.

        Raises:
            CheckpointError: If the checkpoint cannot be persisted
        """
        with self._tracer.span(
            "differential_sync.checkpoint.create",
            {ATTR_RUN_ID: run_id, ATTR_ENTITY_TYPE: entity_type},
        ):
            try:
                existing = await self._repo.get_for_run_entity(run_id, entity_type)
                if existing is not None:
                    return existing
                await self._repo.save(
                    Checkpoint(
                        id=str(uuid4()),
                        run_id=run_id,
                        entity_type=entity_type,
                        records_total=records_total,
                    )
                )
                persisted = await self._repo.get_for_run_entity(run_id, entity_type)
            except StoreError as e:
                raise CheckpointError(
                    f"Failed to create checkpoint: {e.message}",
                    run_id=run_id,
                    entity_type=entity_type,
                ) from e

            if persisted is None:
                raise CheckpointError(
                    "Checkpoint not readable after create",
                    run_id=run_id,
                    entity_type=entity_type,
                )
            logger.debug("Created checkpoint %s for %s/%s", persisted.id, run_id, entity_type)
            return persisted

    async def update(
        self,
        checkpoint_id: str,
        *,
        status: CheckpointStatus | None = None,
        last_processed_key: RecordKey | None = _UNSET,
        records_processed: int | None = None,
        records_failed: int | None = None,
        records_total: int | None = None,
        batch_number: int | None = None,
        resumable: bool | None = None,
    ) -> Checkpoint:
        """
        Update a checkpoint.

        Writing a state identical to the stored one is a no-op.

        Returns:
            The checkpoint as persisted after the update

        Raises:
            CheckpointError: If the checkpoint does not exist, the update would
                decrease records_processed, the status transition is invalid,
                or the write fails
        """
        with self._tracer.span(
            "differential_sync.checkpoint.update",
            {ATTR_CHECKPOINT_ID: checkpoint_id},
        ) as span:
            try:
                async with self._store.transaction() as session:
                    current = await self._repo.get(checkpoint_id, session=session)
                    if current is None:
                        raise CheckpointError(
                            f"Checkpoint not found: {checkpoint_id}",
                            checkpoint_id=checkpoint_id,
                        )

                    changes: dict[str, Any] = {}
                    if status is not None:
                        changes["status"] = status
                    if last_processed_key is not _UNSET:
                        changes["last_processed_key"] = last_processed_key
                    if records_processed is not None:
                        changes["records_processed"] = records_processed
                    if records_failed is not None:
                        changes["records_failed"] = records_failed
                    if records_total is not None:
                        changes["records_total"] = records_total
                    if batch_number is not None:
                        changes["batch_number"] = batch_number
                    if resumable is not None:
                        changes["resumable"] = resumable

                    updated = dataclasses.replace(current, **changes)
                    if updated.same_state(current):
                        return current

                    self._validate(current, updated)
                    updated = dataclasses.replace(updated, updated_at=datetime.now(UTC))
                    await self._repo.save(updated, session=session)
            except StoreError as e:
                raise CheckpointError(
                    f"Failed to update checkpoint: {e.message}",
                    checkpoint_id=checkpoint_id,
                ) from e

            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RECORDS_PROCESSED, updated.records_processed)
            return updated

    def _validate(self, current: Checkpoint, updated: Checkpoint) -> None:
        if updated.records_processed < current.records_processed:
            raise CheckpointError(
                f"records_processed cannot decrease "
                f"({current.records_processed} -> {updated.records_processed})",
                checkpoint_id=current.id,
                run_id=current.run_id,
                entity_type=current.entity_type,
            )
        if not current.status.can_transition_to(updated.status):
            raise CheckpointError(
                f"Invalid checkpoint transition {current.status.value} -> {updated.status.value}",
                checkpoint_id=current.id,
                run_id=current.run_id,
                entity_type=current.entity_type,
            )
        if current.status.is_terminal:
            raise CheckpointError(
                "Completed checkpoints cannot change",
                checkpoint_id=current.id,
                run_id=current.run_id,
                entity_type=current.entity_type,
            )

    async def complete(self, checkpoint_id: str) -> Checkpoint:
        """Mark a checkpoint COMPLETED and non-resumable (kept for audit)."""
        return await self.update(
            checkpoint_id,
            status=CheckpointStatus.COMPLETED,
            resumable=False,
        )

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        """Get a checkpoint by id."""
        return await self._repo.get(checkpoint_id)

    async def get_latest(self, run_id: str, entity_type: str) -> Checkpoint | None:
        """Get the checkpoint of a run/entity pair."""
        return await self._repo.get_for_run_entity(run_id, entity_type)

    async def get_latest_for_entity(self, entity_type: str) -> Checkpoint | None:
        """Most recently updated resumable checkpoint of an entity across runs."""
        candidates = await self._repo.list_checkpoints(entity_type=entity_type, resumable=True)
        for checkpoint in candidates:
            if checkpoint.is_active:
                return checkpoint
        return None

    async def get_last_completed(self, entity_type: str) -> Checkpoint | None:
        """Most recently completed checkpoint of an entity across runs."""
        completed = await self._repo.list_checkpoints(
            entity_type=entity_type, statuses=[CheckpointStatus.COMPLETED], limit=1
        )
        return completed[0] if completed else None

    async def list_checkpoints(
        self,
        run_id: str | None = None,
        entity_type: str | None = None,
    ) -> list[Checkpoint]:
        """List checkpoints, newest first."""
        return await self._repo.list_checkpoints(run_id=run_id, entity_type=entity_type)

    async def get_recovery_info(self, run_id: str) -> dict[str, Checkpoint]:
        """
        Resumable checkpoints of a run.

        Returns:
            Active checkpoints keyed by entity type
        """
        checkpoints = await self._repo.list_checkpoints(run_id=run_id)
        return {c.entity_type: c for c in checkpoints if c.is_active}

    async def cleanup(self, older_than: timedelta | datetime) -> int:
        """
        Delete non-resumable checkpoints older than a cutoff.

        Resumable checkpoints are never removed.

        Args:
            older_than: Age (timedelta) or absolute cutoff (datetime)

        Returns:
            Number of checkpoints deleted
        """
        cutoff = datetime.now(UTC) - older_than if isinstance(older_than, timedelta) else older_than
        removed = await self._repo.delete_older_than(cutoff, resumable=False)
        if removed:
            logger.info("Removed %d checkpoints older than %s", removed, cutoff.isoformat())
        return removed

    async def enforce_limit(self, entity_type: str, keep: int) -> int:
        """
        Keep only the newest non-resumable checkpoints of an entity.

        Returns:
            Number of checkpoints deleted
        """
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")
        finished = await self._repo.list_checkpoints(entity_type=entity_type, resumable=False)
        excess = [c.id for c in finished[keep:]]
        return await self._repo.delete(excess)

    async def get_statistics(self) -> CheckpointStatistics:
        """Checkpoint counts by status."""
        checkpoints = await self._repo.list_checkpoints()
        by_status = {s.value: 0 for s in CheckpointStatus}
        for checkpoint in checkpoints:
            by_status[checkpoint.status.value] += 1
        return CheckpointStatistics(
            total=len(checkpoints),
            resumable=sum(1 for c in checkpoints if c.is_active),
            by_status=by_status,
        )


__all__ = ["CheckpointManager", "CheckpointStatistics"]
