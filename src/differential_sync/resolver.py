"""
ConflictResolver - applies source state to the destination.

A batch is resolved inside one destination transaction. Each record is
classified against the current source and mapping state:

    source row, no mapping     -> insert destination row, create mapping
    source row, mapping        -> update destination row, refresh checksum
                                  (skipped when the checksum is current)
    no source row, mapping     -> delete destination row, purge mapping
    no source row, no mapping  -> skipped when declared DELETED (already
                                  applied), ConflictResolutionError otherwise

Per-record failures (transformer errors, missing parent mappings,
unsupported differentials) are collected and never write anything for the
record. Store failures (constraint violations, lost connections) propagate
and roll the whole batch back; the executor decides how to retry.

Conflict policies apply to records that already exist at the destination:
SOURCE_WINS overwrites, TARGET_WINS skips and MANUAL defers to a review
queue. New records are always inserted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from differential_sync.config import ResolutionOptions, ResolutionStrategy
from differential_sync.exceptions import (
    ConflictResolutionError,
    RecordValidationError,
    RetryConfig,
    StoreError,
    SyncError,
)
from differential_sync.models import (
    ChangeType,
    DetectionResult,
    MigrationMapping,
    RecordFailure,
    ValidationReport,
)
from differential_sync.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPE,
    ATTR_RECORDS_FAILED,
    ATTR_RECORDS_PROCESSED,
    ATTR_STRATEGY,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.manual_review import (
    ManualReviewItem,
    ManualReviewQueue,
    StoreManualReviewQueue,
)
from differential_sync.repositories.mapping import LOOKUP_CHUNK_SIZE, MappingStore
from differential_sync.repositories.snapshot import SnapshotRepository
from differential_sync.schema import EntityDescriptor, SchemaProvider, TransformContext
from differential_sync.stores import RecordStore, StoreSession, eq, in_
from differential_sync.types import RecordKey, Row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResolution:
    """
    Outcome of resolving one batch.

    Attributes:
        entity_type: Entity type of the batch
        inserted: Destination rows created
        updated: Destination rows overwritten from the source
        deleted: Destination rows removed
        skipped: Records left untouched (checksum current or target wins)
        deferred: Records queued for manual review
        failures: Per-record failures; nothing was written for these
        last_key: Greatest key of the batch
        snapshots: Destination rows copied before resolution
        dry_run: Whether the counts are a classification only
    """

    entity_type: str
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    deferred: int = 0
    failures: tuple[RecordFailure, ...] = ()
    last_key: RecordKey | None = None
    snapshots: int = 0
    dry_run: bool = False

    @property
    def applied(self) -> int:
        """Records whose destination state changed."""
        return self.inserted + self.updated + self.deleted

    @property
    def processed(self) -> int:
        """Records handled without failure."""
        return self.applied + self.skipped + self.deferred

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "failures": [f.to_dict() for f in self.failures],
            "last_key": self.last_key,
            "snapshots": self.snapshots,
            "dry_run": self.dry_run,
        }


@dataclass(frozen=True)
class ResolutionSummary:
    """
    Outcome of resolving a whole DetectionResult.

    Attributes:
        entity_type: Entity type resolved
        total: Changes offered
        resolved: Changes applied (inserted, updated or deleted)
        failed: Changes that failed, per record or with their chunk
        skipped: Changes left untouched
        deferred: Changes queued for manual review
        backup_created: Whether any snapshot was stored
        resolution_time_ms: Wall time
        strategy: Policy applied
        errors: Error entries (record failures and failed chunks)
        dry_run: Whether nothing was written
        validation: Post-resolution check, when requested
    """

    entity_type: str
    total: int
    resolved: int
    failed: int
    skipped: int
    deferred: int
    backup_created: bool
    resolution_time_ms: float
    strategy: ResolutionStrategy
    errors: tuple[dict[str, Any], ...] = ()
    dry_run: bool = False
    validation: ValidationReport | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "total": self.total,
            "resolved": self.resolved,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "backup_created": self.backup_created,
            "resolution_time_ms": self.resolution_time_ms,
            "strategy": self.strategy.value,
            "errors": list(self.errors),
            "dry_run": self.dry_run,
            "validation": (
                {
                    "sampled": self.validation.sampled,
                    "passed": self.validation.passed,
                    "mismatched": list(self.validation.mismatched),
                }
                if self.validation
                else None
            ),
        }


@dataclass
class _Tally:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    deferred: int = 0
    failures: list[RecordFailure] = field(default_factory=list)


def _failure(key: RecordKey, error: SyncError) -> RecordFailure:
    return RecordFailure(
        record_id=key,
        error_type=error.error_code,
        message=error.message,
        retryable=error.retryable,
    )


class ConflictResolver:
    """
    Resolves divergent records between source and destination.

    Args:
        source: Legacy store holding the source tables
        destination: Store holding destination tables and the control tables
        schema: Provider of entity descriptors and transformers
        mappings: Mapping store (defaults to one over destination)
        options: Default resolution options
        manual_queue: Queue for the MANUAL policy
            (defaults to the sync_manual_reviews table)
        snapshots: Snapshot repository used when create_backup is set
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        source: RecordStore,
        destination: RecordStore,
        schema: SchemaProvider,
        *,
        mappings: MappingStore | None = None,
        options: ResolutionOptions | None = None,
        manual_queue: ManualReviewQueue | None = None,
        snapshots: SnapshotRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._schema = schema
        self._mappings = mappings or MappingStore(destination, tracer=self._tracer)
        self._options = options or ResolutionOptions()
        self._manual_queue = manual_queue or StoreManualReviewQueue(destination)
        self._snapshots = snapshots or SnapshotRepository(destination, tracer=self._tracer)

    @property
    def schema(self) -> SchemaProvider:
        """Provider of entity descriptors and transformers."""
        return self._schema

    @property
    def mappings(self) -> MappingStore:
        """Mapping store used for identity resolution."""
        return self._mappings

    @property
    def options(self) -> ResolutionOptions:
        """Default resolution options."""
        return self._options

    async def _load_source(
        self,
        descriptor: EntityDescriptor,
        keys: Sequence[RecordKey],
    ) -> dict[RecordKey, Row]:
        found: dict[RecordKey, Row] = {}
        async with self._source.connect() as session:
            for start in range(0, len(keys), LOOKUP_CHUNK_SIZE):
                chunk = list(keys[start : start + LOOKUP_CHUNK_SIZE])
                rows = await session.select(
                    descriptor.source_table,
                    where=[*descriptor.active_conditions, in_(descriptor.source_key, chunk)],
                )
                for row in rows:
                    found[descriptor.coerce_key(row[descriptor.source_key])] = row
        return found

    async def resolve_batch(
        self,
        entity_type: str,
        record_ids: Iterable[RecordKey],
        *,
        change_types: Mapping[RecordKey, ChangeType] | None = None,
        strategy: ResolutionStrategy | None = None,
        dry_run: bool | None = None,
        create_backup: bool | None = None,
        run_id: str | None = None,
    ) -> BatchResolution:
        """
        Resolve one batch of records in one destination transaction.

        Args:
            entity_type: Entity type of the records
            record_ids: Legacy keys to resolve
            change_types: Declared change per key; a MODIFIED or DELETED
                declaration for an unmapped record is a per-record failure
            strategy: Policy override for this batch
            dry_run: Classify without writing
            create_backup: Snapshot affected destination rows first
            run_id: Run the batch belongs to (recorded on snapshots)

        Returns:
            BatchResolution with counts and per-record failures

        Raises:
            ConstraintError: A destination constraint rejected the batch;
                nothing was committed
            StoreConnectionError: The destination became unavailable;
                nothing was committed
            SchemaError: If the entity type is unknown
        """
        descriptor = self._schema.get_descriptor(entity_type)
        strategy = strategy or self._options.strategy
        dry_run = self._options.dry_run if dry_run is None else dry_run
        create_backup = self._options.create_backup if create_backup is None else create_backup
        keys = sorted({descriptor.coerce_key(v) for v in record_ids})
        declared = dict(change_types or {})

        with self._tracer.span(
            "differential_sync.resolver.resolve_batch",
            {
                ATTR_ENTITY_TYPE: entity_type,
                ATTR_BATCH_SIZE: len(keys),
                ATTR_STRATEGY: strategy.value,
            },
        ) as span:
            if not keys:
                return BatchResolution(entity_type=entity_type, dry_run=dry_run)

            source_rows = await self._load_source(descriptor, keys)

            if dry_run:
                tally = await self._classify_only(descriptor, keys, source_rows, declared, strategy)
                snapshots = 0
            else:
                snapshots = 0
                if create_backup and strategy is ResolutionStrategy.SOURCE_WINS:
                    snapshots = await self._snapshot(descriptor, keys, source_rows, run_id)
                tally = _Tally()
                async with self._destination.transaction() as session:
                    for key in keys:
                        try:
                            await self._resolve_record(
                                descriptor,
                                key,
                                source_rows.get(key),
                                declared.get(key),
                                strategy,
                                session,
                                tally,
                            )
                        except (RecordValidationError, ConflictResolutionError) as e:
                            logger.warning(
                                "Record %s %r not applied: %s", entity_type, key, e.message
                            )
                            tally.failures.append(_failure(key, e))

            result = BatchResolution(
                entity_type=entity_type,
                inserted=tally.inserted,
                updated=tally.updated,
                deleted=tally.deleted,
                skipped=tally.skipped,
                deferred=tally.deferred,
                failures=tuple(tally.failures),
                last_key=keys[-1],
                snapshots=snapshots,
                dry_run=dry_run,
            )
            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RECORDS_PROCESSED, result.processed)
                span.set_attribute(ATTR_RECORDS_FAILED, len(result.failures))
            logger.debug(
                "Resolved %s batch: %d inserted, %d updated, %d deleted, %d skipped, "
                "%d deferred, %d failed",
                entity_type,
                result.inserted,
                result.updated,
                result.deleted,
                result.skipped,
                result.deferred,
                len(result.failures),
            )
            return result

    def _check_declared(
        self,
        descriptor: EntityDescriptor,
        key: RecordKey,
        row: Row | None,
        mapping: MigrationMapping | None,
        declared: ChangeType | None,
    ) -> bool:
        """
        Reject records whose declared change contradicts the current state.

        Returns:
            True when the record is a replayed deletion that is already applied
        """
        if mapping is not None:
            return False
        if row is None and declared is ChangeType.DELETED:
            return True
        if row is None:
            raise ConflictResolutionError(
                "Record is neither in the source nor mapped",
                entity_type=descriptor.entity_type,
                record_id=key,
            )
        if declared in (ChangeType.MODIFIED, ChangeType.DELETED):
            raise ConflictResolutionError(
                f"Record declared {declared.value} has no mapping",
                entity_type=descriptor.entity_type,
                record_id=key,
                suggested_action="Re-run detection for this entity type",
            )
        return False

    async def _resolve_record(
        self,
        descriptor: EntityDescriptor,
        key: RecordKey,
        row: Row | None,
        declared: ChangeType | None,
        strategy: ResolutionStrategy,
        session: StoreSession,
        tally: _Tally,
    ) -> None:
        entity_type = descriptor.entity_type
        mapping = await self._mappings.lookup(entity_type, key, session=session)
        if self._check_declared(descriptor, key, row, mapping, declared):
            tally.skipped += 1
            return
        digest = descriptor.content_hash(row) if row is not None else None

        if mapping is not None:
            if row is not None and mapping.is_current(digest):
                tally.skipped += 1
                return
            if strategy is ResolutionStrategy.TARGET_WINS:
                tally.skipped += 1
                return
            if strategy is ResolutionStrategy.MANUAL:
                await self._manual_queue.enqueue(
                    ManualReviewItem(
                        entity_type=entity_type,
                        legacy_id=str(key),
                        change_type=ChangeType.MODIFIED if row is not None else ChangeType.DELETED,
                        new_id=mapping.new_id,
                        content_hash=digest,
                        source_row=dict(row) if row is not None else None,
                    ),
                    session=session,
                )
                tally.deferred += 1
                return

        if row is None and mapping is not None:
            await session.delete(
                descriptor.destination_table,
                where=[eq(descriptor.destination_key, mapping.new_id)],
            )
            await self._mappings.delete(entity_type, key, session=session)
            tally.deleted += 1
            return

        new_id = mapping.new_id if mapping is not None else str(uuid4())
        context = TransformContext(
            entity_type, key, new_id, mappings=self._mappings, session=session
        )
        transformer = self._schema.get_transformer(entity_type)
        try:
            transformed = await transformer.transform(dict(row), context)
        except SyncError:
            raise
        except Exception as e:
            # mapping code bugs stay with the record
            raise RecordValidationError(
                f"Transformer raised {type(e).__name__}: {e}",
                entity_type=entity_type,
                record_id=key,
            ) from e
        persisted, _ = await self._mappings.upsert(
            entity_type,
            key,
            digest,
            new_id=None if mapping is not None else new_id,
            session=session,
        )
        destination_row = self._destination_row(descriptor, transformed, persisted.new_id, key, digest)
        update_columns = [
            c
            for c in destination_row
            if c != descriptor.destination_key and c not in descriptor.preserved_fields
        ]
        await session.upsert(
            descriptor.destination_table,
            destination_row,
            key_columns=(descriptor.destination_key,),
            update_columns=update_columns,
        )
        if mapping is None:
            tally.inserted += 1
        else:
            tally.updated += 1

    def _destination_row(
        self,
        descriptor: EntityDescriptor,
        transformed: Row,
        new_id: str,
        key: RecordKey,
        digest: str | None,
    ) -> Row:
        row = dict(transformed)
        row[descriptor.destination_key] = new_id
        if descriptor.legacy_id_field:
            row[descriptor.legacy_id_field] = str(key)
        if descriptor.hash_field:
            row[descriptor.hash_field] = digest
        return row

    async def _classify_only(
        self,
        descriptor: EntityDescriptor,
        keys: Sequence[RecordKey],
        source_rows: Mapping[RecordKey, Row],
        declared: Mapping[RecordKey, ChangeType],
        strategy: ResolutionStrategy,
    ) -> _Tally:
        tally = _Tally()
        mapped = await self._mappings.bulk_lookup(descriptor.entity_type, keys)
        for key in keys:
            row = source_rows.get(key)
            mapping = mapped.get(str(key))
            try:
                applied = self._check_declared(descriptor, key, row, mapping, declared.get(key))
            except ConflictResolutionError as e:
                tally.failures.append(_failure(key, e))
                continue
            if applied:
                tally.skipped += 1
            elif mapping is None:
                tally.inserted += 1
            elif row is not None and mapping.is_current(descriptor.content_hash(row)):
                tally.skipped += 1
            elif strategy is ResolutionStrategy.TARGET_WINS:
                tally.skipped += 1
            elif strategy is ResolutionStrategy.MANUAL:
                tally.deferred += 1
            elif row is None:
                tally.deleted += 1
            else:
                tally.updated += 1
        return tally

    async def _snapshot(
        self,
        descriptor: EntityDescriptor,
        keys: Sequence[RecordKey],
        source_rows: Mapping[RecordKey, Row],
        run_id: str | None,
    ) -> int:
        try:
            mapped = await self._mappings.bulk_lookup(descriptor.entity_type, keys)
            # new_id -> legacy key of every mapped row the batch would change
            affected: dict[str, RecordKey] = {}
            for mapping in mapped.values():
                key = descriptor.coerce_key(mapping.legacy_id)
                row = source_rows.get(key)
                if row is not None and mapping.is_current(descriptor.content_hash(row)):
                    continue
                affected[mapping.new_id] = key
            if not affected:
                return 0

            async with self._destination.connect() as session:
                rows = await session.select(
                    descriptor.destination_table,
                    where=[in_(descriptor.destination_key, list(affected))],
                )
            copies = []
            for row in rows:
                new_id = str(row[descriptor.destination_key])
                copies.append((affected[new_id], new_id, row))
            return await self._snapshots.save_rows(descriptor.entity_type, copies, run_id=run_id)
        except SyncError as e:
            logger.warning(
                "Snapshot of %s rows failed, resolving without backup: %s",
                descriptor.entity_type,
                e.message,
            )
            return 0

    async def resolve(
        self,
        detection_result: DetectionResult,
        options: ResolutionOptions | None = None,
    ) -> ResolutionSummary:
        """
        Apply a whole DetectionResult in chunks of options.batch_size.

        A chunk rejected by the store is retried with exponential backoff up
        to options.max_retries times, then every change in it is counted as
        failed and the next chunk is attempted.

        Args:
            detection_result: Changes to apply
            options: Resolution options (defaults to the resolver's)

        Returns:
            ResolutionSummary
        """
        opts = options or self._options
        entity_type = detection_result.entity_type
        changes = list(detection_result.changes_detected)
        retry = RetryConfig(max_attempts=opts.max_retries + 1, base_delay_ms=100.0, max_delay_ms=5000.0)

        with self._tracer.span(
            "differential_sync.resolver.resolve",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_STRATEGY: opts.strategy.value},
        ):
            started = time.perf_counter()
            resolved = failed = skipped = deferred = 0
            backup_created = False
            errors: list[dict[str, Any]] = []
            done: list[RecordKey] = []

            for start in range(0, len(changes), opts.batch_size):
                chunk = changes[start : start + opts.batch_size]
                declared = {c.record_id: c.change_type for c in chunk}
                for attempt in range(retry.max_attempts):
                    try:
                        batch = await self.resolve_batch(
                            entity_type,
                            list(declared),
                            change_types=declared,
                            strategy=opts.strategy,
                            dry_run=opts.dry_run,
                            create_backup=opts.create_backup,
                        )
                    except StoreError as e:
                        if attempt + 1 < retry.max_attempts:
                            delay_ms = retry.get_delay_ms(attempt)
                            logger.warning(
                                "Chunk of %d %s changes failed (attempt %d/%d), retrying in %.0fms: %s",
                                len(chunk),
                                entity_type,
                                attempt + 1,
                                retry.max_attempts,
                                delay_ms,
                                e.message,
                            )
                            await asyncio.sleep(delay_ms / 1000)
                            continue
                        logger.error(
                            "Chunk of %d %s changes failed after %d attempts: %s",
                            len(chunk),
                            entity_type,
                            retry.max_attempts,
                            e.message,
                        )
                        failed += len(chunk)
                        errors.append(
                            {
                                "record_ids": list(declared),
                                "error_type": e.error_code,
                                "message": e.message,
                            }
                        )
                        break

                    resolved += batch.applied
                    skipped += batch.skipped
                    deferred += batch.deferred
                    failed += len(batch.failures)
                    backup_created = backup_created or batch.snapshots > 0
                    errors.extend(f.to_dict() for f in batch.failures)
                    failed_keys = {f.record_id for f in batch.failures}
                    done.extend(k for k in declared if k not in failed_keys)
                    break

            validation = None
            if opts.validate_after_resolution and not opts.dry_run and done:
                validation = await self.verify(entity_type, done)

            summary = ResolutionSummary(
                entity_type=entity_type,
                total=len(changes),
                resolved=resolved,
                failed=failed,
                skipped=skipped,
                deferred=deferred,
                backup_created=backup_created,
                resolution_time_ms=round((time.perf_counter() - started) * 1000, 3),
                strategy=opts.strategy,
                errors=tuple(errors),
                dry_run=opts.dry_run,
                validation=validation,
            )
            logger.info(
                "Resolved %d of %d %s changes (%d failed, %d skipped, %d deferred)",
                summary.resolved,
                summary.total,
                entity_type,
                summary.failed,
                summary.skipped,
                summary.deferred,
            )
            return summary

    async def verify(self, entity_type: str, record_ids: Iterable[RecordKey]) -> ValidationReport:
        """
        Check that records converged to their source state.

        A record present in the active source passes when it has a mapping
        whose checksum equals the current source hash and a destination row
        keyed by the mapped new id. A record absent from the source passes
        when it has no mapping.

        Returns:
            ValidationReport listing mismatched keys
        """
        descriptor = self._schema.get_descriptor(entity_type)
        keys = sorted({descriptor.coerce_key(v) for v in record_ids})
        if not keys:
            return ValidationReport()

        source_rows = await self._load_source(descriptor, keys)
        mapped = await self._mappings.bulk_lookup(entity_type, keys)
        new_ids = [m.new_id for m in mapped.values()]
        present: set[str] = set()
        async with self._destination.connect() as session:
            for start in range(0, len(new_ids), LOOKUP_CHUNK_SIZE):
                rows = await session.select(
                    descriptor.destination_table,
                    where=[in_(descriptor.destination_key, new_ids[start : start + LOOKUP_CHUNK_SIZE])],
                    columns=(descriptor.destination_key,),
                )
                present.update(str(row[descriptor.destination_key]) for row in rows)

        mismatched: list[RecordKey] = []
        for key in keys:
            row = source_rows.get(key)
            mapping = mapped.get(str(key))
            if row is None:
                ok = mapping is None
            else:
                ok = (
                    mapping is not None
                    and mapping.checksum == descriptor.content_hash(row)
                    and mapping.new_id in present
                )
            if not ok:
                mismatched.append(key)

        if mismatched:
            logger.warning(
                "%d of %d %s records do not match their source state",
                len(mismatched),
                len(keys),
                entity_type,
            )
        return ValidationReport(
            sampled=len(keys),
            passed=len(keys) - len(mismatched),
            mismatched=tuple(mismatched),
        )

    async def get_resolution_statistics(self, entity_type: str | None = None) -> dict[str, Any]:
        """
        Mapping counts and validation status breakdown.

        Args:
            entity_type: Restrict to one entity type

        Returns:
            Dictionary with mapping statistics and pending manual reviews
        """
        stats = await self._mappings.get_stats(entity_type)
        pending = await self._manual_queue.list_pending(entity_type)
        return {
            **stats.to_dict(),
            "pending_manual_reviews": len(pending),
        }


__all__ = ["ConflictResolver", "BatchResolution", "ResolutionSummary"]
