"""
MappingStore - durable legacy-id to new-id correspondence.

The mapping table is the only identity authority of the engine. It is
partitioned by (entity_type, legacy_id), and new_id is assigned exactly once:
later upserts refresh the checksum and validation status but never the new
id.

Responsibilities:
    - Look up and bulk look up mappings
    - Create or refresh mappings inside the caller's batch transaction
    - Purge mappings of deleted records
    - Report statistics and validate mappings against destination rows

Database Table:
    Uses the `sync_mappings` table (see repositories.tables).

Usage:
    >>> mappings = MappingStore(destination)
    >>> async with destination.transaction() as session:
    ...     mapping, created = await mappings.upsert(
    ...         "doctors", 42, checksum, session=session
    ...     )
    >>> await mappings.resolve_id("doctors", 42)
    'c0a8...'
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from differential_sync.exceptions import ConflictResolutionError
from differential_sync.models import (
    MappingStats,
    MappingValidationReport,
    MigrationMapping,
    ValidationStatus,
)
from differential_sync.observability import (
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.tables import MAPPING_KEY, MAPPINGS_TABLE
from differential_sync.serialization import parse_datetime
from differential_sync.stores import (
    RecordStore,
    StoreSession,
    eq,
    gt,
    in_,
    use_session,
)
from differential_sync.types import RecordKey, Row

logger = logging.getLogger(__name__)

# Upper bound on IN-list size per query
LOOKUP_CHUNK_SIZE = 500


def _legacy(value: RecordKey) -> str:
    return str(value)


def _from_row(row: Row) -> MigrationMapping:
    return MigrationMapping(
        entity_type=row["entity_type"],
        legacy_id=row["legacy_id"],
        new_id=row["new_id"],
        checksum=row.get("checksum"),
        validation_status=ValidationStatus(row.get("validation_status") or "pending"),
        created_at=parse_datetime(row.get("created_at")) or datetime.now(UTC),
        updated_at=parse_datetime(row.get("updated_at")) or datetime.now(UTC),
    )


def _chunks(values: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class MappingStore:
    """
    Mapping repository over a RecordStore.

    Every method accepts an optional session. Pass the batch session to
    make mapping writes part of the batch transaction; without one the
    store opens its own unit of work.

    Args:
        store: Destination store holding the sync_mappings table
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
        """Store holding the mapping table."""
        return self._store

    def _attrs(self, entity_type: str | None, **extra: Any) -> dict[str, Any]:
        attrs: dict[str, Any] = {ATTR_DB_SYSTEM: self._store.dialect}
        if entity_type is not None:
            attrs[ATTR_ENTITY_TYPE] = entity_type
        attrs.update(extra)
        return attrs

    async def lookup(
        self,
        entity_type: str,
        legacy_id: RecordKey,
        *,
        session: StoreSession | None = None,
    ) -> MigrationMapping | None:
        """
        Get the mapping of one record.

        Returns:
            MigrationMapping or None if the record has never been migrated
        """
        with self._tracer.span(
            "differential_sync.mapping.lookup",
            self._attrs(entity_type),
        ):
            async with use_session(self._store, session, transactional=False) as s:
                rows = await s.select(
                    MAPPINGS_TABLE,
                    where=[eq("entity_type", entity_type), eq("legacy_id", _legacy(legacy_id))],
                    limit=1,
                )
            return _from_row(rows[0]) if rows else None

    async def bulk_lookup(
        self,
        entity_type: str,
        legacy_ids: Iterable[RecordKey],
        *,
        session: StoreSession | None = None,
    ) -> dict[str, MigrationMapping]:
        """
        Get the mappings of many records.

        Args:
            entity_type: Entity type
            legacy_ids: Legacy keys to look up

        Returns:
            Mappings keyed by legacy id text; unmapped ids are absent
        """
        keys = sorted({_legacy(v) for v in legacy_ids})
        with self._tracer.span(
            "differential_sync.mapping.bulk_lookup",
            self._attrs(entity_type, **{ATTR_RECORD_COUNT: len(keys)}),
        ):
            found: dict[str, MigrationMapping] = {}
            if not keys:
                return found
            async with use_session(self._store, session, transactional=False) as s:
                for chunk in _chunks(keys, LOOKUP_CHUNK_SIZE):
                    rows = await s.select(
                        MAPPINGS_TABLE,
                        where=[eq("entity_type", entity_type), in_("legacy_id", chunk)],
                    )
                    for row in rows:
                        mapping = _from_row(row)
                        found[mapping.legacy_id] = mapping
            return found

    async def resolve_id(
        self,
        entity_type: str,
        legacy_id: RecordKey,
        *,
        session: StoreSession | None = None,
    ) -> str | None:
        """Return the new id of a record, or None if it is not mapped."""
        mapping = await self.lookup(entity_type, legacy_id, session=session)
        return mapping.new_id if mapping else None

    async def upsert(
        self,
        entity_type: str,
        legacy_id: RecordKey,
        checksum: str | None,
        *,
        validation_status: ValidationStatus = ValidationStatus.VALID,
        new_id: str | None = None,
        session: StoreSession | None = None,
    ) -> tuple[MigrationMapping, bool]:
        """
        Create a mapping or refresh an existing one.

        An existing mapping keeps its new_id; only checksum, validation
        status and updated_at change. The persisted row is read back, so a
        concurrent writer that won the insert race determines the new_id.

        Args:
            entity_type: Entity type
            legacy_id: Legacy key
            checksum: Source content hash just written to the destination
            validation_status: Status to record
            new_id: New id to assign when the mapping is created
                (a fresh UUID when None)
            session: Session of the enclosing transaction

        Returns:
            Tuple of (persisted mapping, whether it was created)

        Raises:
            ConflictResolutionError: If new_id is given and differs from the
                id already assigned
        """
        key = _legacy(legacy_id)
        with self._tracer.span(
            "differential_sync.mapping.upsert",
            self._attrs(entity_type),
        ):
            async with use_session(self._store, session) as s:
                existing = await self.lookup(entity_type, key, session=s)
                if existing is not None and new_id is not None and existing.new_id != new_id:
                    raise ConflictResolutionError(
                        f"Mapping already assigns new id {existing.new_id}, refusing {new_id}",
                        entity_type=entity_type,
                        record_id=key,
                    )
                now = datetime.now(UTC)
                await s.upsert(
                    MAPPINGS_TABLE,
                    {
                        "entity_type": entity_type,
                        "legacy_id": key,
                        "new_id": existing.new_id if existing else (new_id or str(uuid4())),
                        "checksum": checksum,
                        "validation_status": validation_status.value,
                        "created_at": existing.created_at if existing else now,
                        "updated_at": now,
                    },
                    key_columns=MAPPING_KEY,
                    update_columns=("checksum", "validation_status", "updated_at"),
                )
                persisted = await self.lookup(entity_type, key, session=s)

            if persisted is None:
                raise ConflictResolutionError(
                    "Mapping not readable after upsert",
                    entity_type=entity_type,
                    record_id=key,
                )
            return persisted, existing is None

    async def delete(
        self,
        entity_type: str,
        legacy_id: RecordKey,
        *,
        session: StoreSession | None = None,
    ) -> bool:
        """
        Purge the mapping of a deleted record.

        Returns:
            True if a mapping was removed
        """
        with self._tracer.span(
            "differential_sync.mapping.delete",
            self._attrs(entity_type),
        ):
            async with use_session(self._store, session) as s:
                removed = await s.delete(
                    MAPPINGS_TABLE,
                    where=[eq("entity_type", entity_type), eq("legacy_id", _legacy(legacy_id))],
                )
            return removed > 0

    async def mark_validation(
        self,
        entity_type: str,
        legacy_ids: Iterable[RecordKey],
        status: ValidationStatus,
        *,
        session: StoreSession | None = None,
    ) -> int:
        """
        Set the validation status of mappings.

        Returns:
            Number of mappings updated
        """
        keys = sorted({_legacy(v) for v in legacy_ids})
        if not keys:
            return 0
        updated = 0
        async with use_session(self._store, session) as s:
            for chunk in _chunks(keys, LOOKUP_CHUNK_SIZE):
                updated += await s.update(
                    MAPPINGS_TABLE,
                    {"validation_status": status.value, "updated_at": datetime.now(UTC)},
                    where=[eq("entity_type", entity_type), in_("legacy_id", chunk)],
                )
        return updated

    async def iter_mappings(
        self,
        entity_type: str,
        *,
        page_size: int = 1000,
    ) -> AsyncIterator[MigrationMapping]:
        """
        Iterate over every mapping of an entity type.

        Keyset paginated on legacy_id text, one connection per page.

        Yields:
            MigrationMapping instances in legacy_id text order
        """
        after: str | None = None
        while True:
            where = [eq("entity_type", entity_type)]
            if after is not None:
                where.append(gt("legacy_id", after))
            async with self._store.connect() as s:
                rows = await s.select(
                    MAPPINGS_TABLE,
                    where=where,
                    order_by="legacy_id",
                    limit=page_size,
                )
            for row in rows:
                yield _from_row(row)
            if len(rows) < page_size:
                return
            after = rows[-1]["legacy_id"]

    async def list_mappings(
        self,
        entity_type: str,
        *,
        limit: int = 100,
        after: str | None = None,
    ) -> list[MigrationMapping]:
        """
        List one page of mappings ordered by legacy_id text.

        Args:
            entity_type: Entity type
            limit: Page size
            after: legacy_id of the last row of the previous page
        """
        where = [eq("entity_type", entity_type)]
        if after is not None:
            where.append(gt("legacy_id", after))
        async with self._store.connect() as s:
            rows = await s.select(MAPPINGS_TABLE, where=where, order_by="legacy_id", limit=limit)
        return [_from_row(row) for row in rows]

    async def count(self, entity_type: str | None = None) -> int:
        """Count mappings, optionally for one entity type."""
        where = [eq("entity_type", entity_type)] if entity_type else []
        async with self._store.connect() as s:
            return await s.count(MAPPINGS_TABLE, where=where)

    async def get_stats(self, entity_type: str | None = None) -> MappingStats:
        """
        Aggregate mapping counts by entity type and validation status.

        Args:
            entity_type: Restrict to one entity type
        """
        with self._tracer.span(
            "differential_sync.mapping.get_stats",
            self._attrs(entity_type),
        ):
            where = [eq("entity_type", entity_type)] if entity_type else []
            async with self._store.connect() as s:
                rows = await s.select(
                    MAPPINGS_TABLE,
                    where=where,
                    columns=("entity_type", "validation_status"),
                )
            by_entity: dict[str, int] = {}
            by_status: dict[str, int] = {v.value: 0 for v in ValidationStatus}
            for row in rows:
                by_entity[row["entity_type"]] = by_entity.get(row["entity_type"], 0) + 1
                status = row.get("validation_status") or ValidationStatus.PENDING.value
                by_status[status] = by_status.get(status, 0) + 1
            return MappingStats(
                total=len(rows),
                by_entity_type=by_entity,
                by_validation_status=by_status,
            )

    async def validate_mappings(
        self,
        entity_type: str,
        destination_table: str,
        destination_key: str,
        *,
        mark_invalid: bool = True,
    ) -> MappingValidationReport:
        """
        Check that every mapping points to an existing destination row.

        Args:
            entity_type: Entity type to validate
            destination_table: Table holding the entity's destination rows
            destination_key: Key column receiving new_id
            mark_invalid: Set validation_status INVALID on broken mappings

        Returns:
            MappingValidationReport
        """
        with self._tracer.span(
            "differential_sync.mapping.validate",
            self._attrs(entity_type),
        ):
            checked = 0
            invalid: list[str] = []
            page: list[MigrationMapping] = []

            async def check(batch: list[MigrationMapping]) -> None:
                async with self._store.connect() as s:
                    rows = await s.select(
                        destination_table,
                        where=[in_(destination_key, [m.new_id for m in batch])],
                        columns=(destination_key,),
                    )
                present = {str(row[destination_key]) for row in rows}
                invalid.extend(m.legacy_id for m in batch if m.new_id not in present)

            async for mapping in self.iter_mappings(entity_type, page_size=LOOKUP_CHUNK_SIZE):
                checked += 1
                page.append(mapping)
                if len(page) >= LOOKUP_CHUNK_SIZE:
                    await check(page)
                    page = []
            if page:
                await check(page)

            if invalid and mark_invalid:
                await self.mark_validation(entity_type, invalid, ValidationStatus.INVALID)
            if invalid:
                logger.warning(
                    "%d of %d %s mappings point to missing destination rows",
                    len(invalid),
                    checked,
                    entity_type,
                )
            return MappingValidationReport(
                entity_type=entity_type,
                checked=checked,
                valid=checked - len(invalid),
                invalid=len(invalid),
                invalid_legacy_ids=tuple(invalid),
            )

    async def export_mappings(self, entity_type: str) -> list[dict[str, Any]]:
        """Export every mapping of an entity type as dictionaries."""
        return [m.to_dict() async for m in self.iter_mappings(entity_type)]


__all__ = ["MappingStore", "LOOKUP_CHUNK_SIZE"]
