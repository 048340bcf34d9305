"""
DifferentialDetector - change detection against a baseline.

Detection pages through the source rows of one entity type in ascending
key order, hashes each row's canonical field set and classifies it against
the mapping table:

    no mapping                      -> NEW
    mapping, checksum != hash       -> MODIFIED
    mapping, checksum == hash       -> unchanged (not reported)
    mapped, not in active source    -> DELETED (only with include_deletes)

Rows whose timestamp is after the baseline are candidates; rows with a NULL
timestamp are always candidates and are compared by hash. Only source-side
timestamps are consulted.

A DetectionResult is produced atomically: any store failure aborts the
entity's detection with DetectionError and nothing partial is returned.

Example:
    >>> detector = DifferentialDetector(source, mappings, registry)
    >>> result = await detector.detect_changes("doctors", baseline, include_deletes=True)
    >>> result.summary.new, result.summary.modified, result.summary.deleted
    (3, 1, 0)
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from differential_sync.config import DetectionOptions
from differential_sync.exceptions import DetectionError, SchemaError, SyncError
from differential_sync.models import (
    CONFIDENCE_DELETED,
    CONFIDENCE_MODIFIED_HASHED,
    CONFIDENCE_MODIFIED_TIMESTAMP,
    CONFIDENCE_NEW,
    ChangeRecord,
    ChangeType,
    DetectionPerformance,
    DetectionResult,
    DetectionSummary,
    MigrationMapping,
)
from differential_sync.observability import (
    ATTR_CHANGE_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.mapping import LOOKUP_CHUNK_SIZE, MappingStore
from differential_sync.schema import EntityDescriptor, SchemaProvider
from differential_sync.serialization import parse_datetime
from differential_sync.stores import Condition, RecordStore, gt, in_, is_null, le
from differential_sync.types import RecordKey, Row

logger = logging.getLogger(__name__)

# Recommendation thresholds
HIGH_CHANGE_PERCENTAGE = 25.0
MANY_NEW_RECORDS = 1000
SLOW_ANALYSIS_MS = 60_000.0
LARGE_VOLUME_RECORDS = 50_000


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Unparseable source timestamp %r treated as unknown", value)
        return None


class _Scan:
    """Mutable accumulator of one detection run."""

    def __init__(self) -> None:
        self.changes: dict[RecordKey, ChangeRecord] = {}
        self.analyzed = 0
        self.queries = 0
        self.watermark: datetime | None = None

    def observe(self, ts: datetime | None) -> None:
        if ts is not None and (self.watermark is None or ts > self.watermark):
            self.watermark = ts


class DifferentialDetector:
    """
    Detects new, modified and deleted records of an entity type.

    Args:
        source: Legacy store holding the source tables
        mappings: Mapping store of the destination
        schema: Provider of entity descriptors
        options: Default detection options
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        source: RecordStore,
        mappings: MappingStore,
        schema: SchemaProvider,
        *,
        options: DetectionOptions | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._mappings = mappings
        self._schema = schema
        self._options = options or DetectionOptions()

    def _merge_options(self, overrides: Mapping[str, Any]) -> DetectionOptions:
        return dataclasses.replace(
            self._options, **{k: v for k, v in overrides.items() if v is not None}
        )

    async def detect_changes(
        self,
        entity_type: str,
        since_timestamp: datetime | None = None,
        *,
        include_deletes: bool | None = None,
        batch_size: int | None = None,
        enable_content_hashing: bool | None = None,
        until_timestamp: datetime | None = None,
        max_records_to_analyze: int | None = None,
    ) -> DetectionResult:
        """
        Detect the changes of one entity type since a baseline.

        Args:
            entity_type: Entity type to analyze
            since_timestamp: Exclusive lower bound on the source timestamp
                (None = every row is a candidate)
            include_deletes: Report mapped records missing from the active source
            batch_size: Rows per keyset page
            enable_content_hashing: Compare content hashes with mapping checksums
            until_timestamp: Inclusive upper bound on the source timestamp
            max_records_to_analyze: Fail instead of analyzing more rows

        Returns:
            Complete DetectionResult with changes in ascending key order

        Raises:
            SchemaError: If the entity type is unknown
            DetectionError: If the source or mapping store fails, or the
                analysis exceeds max_records_to_analyze
        """
        descriptor = self._schema.get_descriptor(entity_type)
        options = self._merge_options(
            {
                "include_deletes": include_deletes,
                "batch_size": batch_size,
                "enable_content_hashing": enable_content_hashing,
                "until_timestamp": until_timestamp,
                "max_records_to_analyze": max_records_to_analyze,
            }
        )

        with self._tracer.span(
            "differential_sync.detector.detect_changes",
            {ATTR_ENTITY_TYPE: entity_type},
        ) as span:
            analysis_timestamp = datetime.now(UTC)
            started = time.perf_counter()
            scan = _Scan()
            try:
                for where in self._candidate_filters(descriptor, since_timestamp, options):
                    await self._scan(descriptor, where, options, scan)
                if options.include_deletes:
                    await self._scan_deletes(descriptor, scan)
            except (DetectionError, SchemaError):
                raise
            except SyncError as e:
                logger.error("Detection failed for %s: %s", entity_type, e.message)
                raise DetectionError(
                    f"Detection failed for {entity_type}: {e.message}",
                    entity_type=entity_type,
                ) from e

            result = self._build_result(
                descriptor,
                scan,
                options,
                baseline=since_timestamp,
                analysis_timestamp=analysis_timestamp,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RECORD_COUNT, result.total_records_analyzed)
                span.set_attribute(ATTR_CHANGE_COUNT, result.summary.total_changes)

            logger.info(
                "Detected %d changes for %s (%d new, %d modified, %d deleted) in %d records",
                result.summary.total_changes,
                entity_type,
                result.summary.new,
                result.summary.modified,
                result.summary.deleted,
                result.total_records_analyzed,
            )
            return result

    def _candidate_filters(
        self,
        descriptor: EntityDescriptor,
        since: datetime | None,
        options: DetectionOptions,
    ) -> list[list[Condition]]:
        active = list(descriptor.active_conditions)
        ts_field = descriptor.timestamp_field
        if ts_field is None or (since is None and options.until_timestamp is None):
            return [active]
        bounded = list(active)
        if since is not None:
            bounded.append(gt(ts_field, since))
        if options.until_timestamp is not None:
            bounded.append(le(ts_field, options.until_timestamp))
        return [bounded, [*active, is_null(ts_field)]]

    async def _scan(
        self,
        descriptor: EntityDescriptor,
        where: Sequence[Condition],
        options: DetectionOptions,
        scan: _Scan,
    ) -> None:
        last_key: RecordKey | None = None
        while True:
            page_where = list(where)
            if last_key is not None:
                page_where.append(gt(descriptor.source_key, last_key))
            async with self._source.connect() as session:
                rows = await session.select(
                    descriptor.source_table,
                    where=page_where,
                    order_by=descriptor.source_key,
                    limit=options.batch_size,
                )
            scan.queries += 1
            if not rows:
                return

            scan.analyzed += len(rows)
            if (
                options.max_records_to_analyze is not None
                and scan.analyzed > options.max_records_to_analyze
            ):
                raise DetectionError(
                    f"More than {options.max_records_to_analyze} records to analyze "
                    f"for {descriptor.entity_type}; narrow the baseline or raise the limit",
                    entity_type=descriptor.entity_type,
                )

            keys = [descriptor.coerce_key(row[descriptor.source_key]) for row in rows]
            mapped = await self._mappings.bulk_lookup(descriptor.entity_type, keys)
            scan.queries += 1
            for key, row in zip(keys, rows, strict=True):
                change = self._classify(descriptor, key, row, mapped.get(str(key)), options, scan)
                if change is not None:
                    scan.changes[key] = change

            if len(rows) < options.batch_size:
                return
            last_key = rows[-1][descriptor.source_key]

    def _classify(
        self,
        descriptor: EntityDescriptor,
        key: RecordKey,
        row: Row,
        mapping: MigrationMapping | None,
        options: DetectionOptions,
        scan: _Scan,
    ) -> ChangeRecord | None:
        ts = _timestamp(row.get(descriptor.timestamp_field)) if descriptor.timestamp_field else None
        scan.observe(ts)
        digest = descriptor.content_hash(row)

        if mapping is None:
            return ChangeRecord(
                record_id=key,
                change_type=ChangeType.NEW,
                source_timestamp=ts,
                content_hash=digest,
                confidence=CONFIDENCE_NEW,
            )

        if options.enable_content_hashing or ts is None:
            if mapping.checksum == digest:
                return None
            confidence = CONFIDENCE_MODIFIED_HASHED
        else:
            confidence = CONFIDENCE_MODIFIED_TIMESTAMP

        return ChangeRecord(
            record_id=key,
            change_type=ChangeType.MODIFIED,
            source_timestamp=ts,
            content_hash=digest,
            previous_content_hash=mapping.checksum,
            confidence=confidence,
        )

    async def _scan_deletes(self, descriptor: EntityDescriptor, scan: _Scan) -> None:
        page: list[MigrationMapping] = []
        async for mapping in self._mappings.iter_mappings(
            descriptor.entity_type, page_size=LOOKUP_CHUNK_SIZE
        ):
            page.append(mapping)
            if len(page) >= LOOKUP_CHUNK_SIZE:
                await self._check_deleted(descriptor, page, scan)
                page = []
        if page:
            await self._check_deleted(descriptor, page, scan)

    async def _check_deleted(
        self,
        descriptor: EntityDescriptor,
        mappings: Sequence[MigrationMapping],
        scan: _Scan,
    ) -> None:
        keys = {descriptor.coerce_key(m.legacy_id): m for m in mappings}
        async with self._source.connect() as session:
            rows = await session.select(
                descriptor.source_table,
                where=[*descriptor.active_conditions, in_(descriptor.source_key, list(keys))],
                columns=(descriptor.source_key,),
            )
        scan.queries += 1
        present = {descriptor.coerce_key(row[descriptor.source_key]) for row in rows}
        for key, mapping in keys.items():
            if key in present or key in scan.changes:
                continue
            scan.changes[key] = ChangeRecord(
                record_id=key,
                change_type=ChangeType.DELETED,
                previous_content_hash=mapping.checksum,
                confidence=CONFIDENCE_DELETED,
            )

    def _build_result(
        self,
        descriptor: EntityDescriptor,
        scan: _Scan,
        options: DetectionOptions,
        *,
        baseline: datetime | None,
        analysis_timestamp: datetime,
        duration_ms: float,
    ) -> DetectionResult:
        changes = tuple(scan.changes[key] for key in sorted(scan.changes))
        summary = DetectionSummary(
            new=sum(1 for c in changes if c.change_type is ChangeType.NEW),
            modified=sum(1 for c in changes if c.change_type is ChangeType.MODIFIED),
            deleted=sum(1 for c in changes if c.change_type is ChangeType.DELETED),
            total_records=scan.analyzed,
        )
        performance = DetectionPerformance(
            analysis_duration_ms=round(duration_ms, 3),
            records_per_second=round(scan.analyzed / (duration_ms / 1000), 2) if duration_ms else 0.0,
            queries_executed=scan.queries,
        )
        return DetectionResult(
            entity_type=descriptor.entity_type,
            analysis_id=str(uuid4()),
            baseline_timestamp=baseline,
            analysis_timestamp=analysis_timestamp,
            detection_method=options.detection_method,
            total_records_analyzed=scan.analyzed,
            changes_detected=changes,
            summary=summary,
            performance=performance,
            high_watermark=scan.watermark,
            recommendations=tuple(
                self._recommendations(descriptor, summary, performance, options)
            ),
        )

    def _recommendations(
        self,
        descriptor: EntityDescriptor,
        summary: DetectionSummary,
        performance: DetectionPerformance,
        options: DetectionOptions,
    ) -> list[str]:
        hints: list[str] = []
        if summary.change_percentage > HIGH_CHANGE_PERCENTAGE:
            hints.append(
                f"High change rate ({summary.change_percentage}%): "
                "consider a full migration instead of a differential sync"
            )
        if summary.new > MANY_NEW_RECORDS:
            hints.append("Large number of new records: consider increasing the batch size")
        if summary.modified > 2 * summary.new and summary.modified > 0:
            hints.append(
                "Modified records far outnumber new records: review source update triggers"
            )
        if performance.analysis_duration_ms > SLOW_ANALYSIS_MS:
            column = descriptor.timestamp_field or descriptor.source_key
            hints.append(f"Slow analysis: add an index on {descriptor.source_table}.{column}")
        if summary.total_records > LARGE_VOLUME_RECORDS:
            hints.append("Large record volume: process in parallel or during off-peak hours")
        if not options.enable_content_hashing:
            hints.append("Content hashing is disabled: enable it to avoid false positives")
        return hints

    async def batch_detect_changes(
        self,
        entity_type: str,
        record_ids: Iterable[RecordKey],
    ) -> DetectionResult:
        """
        Classify a specific set of records, ignoring timestamps.

        Ids absent from the active source set are reported as DELETED when
        mapped and ignored otherwise.

        Raises:
            SchemaError: If the entity type is unknown
            DetectionError: If a store fails
        """
        descriptor = self._schema.get_descriptor(entity_type)
        options = dataclasses.replace(self._options, enable_content_hashing=True)
        requested = sorted({descriptor.coerce_key(v) for v in record_ids})

        with self._tracer.span(
            "differential_sync.detector.batch_detect_changes",
            {ATTR_ENTITY_TYPE: entity_type, ATTR_RECORD_COUNT: len(requested)},
        ):
            analysis_timestamp = datetime.now(UTC)
            started = time.perf_counter()
            scan = _Scan()
            try:
                for start in range(0, len(requested), LOOKUP_CHUNK_SIZE):
                    chunk = requested[start : start + LOOKUP_CHUNK_SIZE]
                    async with self._source.connect() as session:
                        rows = await session.select(
                            descriptor.source_table,
                            where=[*descriptor.active_conditions, in_(descriptor.source_key, chunk)],
                            order_by=descriptor.source_key,
                        )
                    mapped = await self._mappings.bulk_lookup(entity_type, chunk)
                    scan.queries += 2
                    scan.analyzed += len(rows)

                    seen: set[RecordKey] = set()
                    for row in rows:
                        key = descriptor.coerce_key(row[descriptor.source_key])
                        seen.add(key)
                        change = self._classify(
                            descriptor, key, row, mapped.get(str(key)), options, scan
                        )
                        if change is not None:
                            scan.changes[key] = change
                    for key in chunk:
                        mapping = mapped.get(str(key))
                        if key in seen or mapping is None:
                            continue
                        scan.changes[key] = ChangeRecord(
                            record_id=key,
                            change_type=ChangeType.DELETED,
                            previous_content_hash=mapping.checksum,
                            confidence=CONFIDENCE_DELETED,
                        )
            except SyncError as e:
                raise DetectionError(
                    f"Batch detection failed for {entity_type}: {e.message}",
                    entity_type=entity_type,
                ) from e

            return self._build_result(
                descriptor,
                scan,
                options,
                baseline=None,
                analysis_timestamp=analysis_timestamp,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

    async def detect_all(
        self,
        entity_types: Iterable[str] | None = None,
        since: datetime | Mapping[str, datetime | None] | None = None,
        **kwargs: Any,
    ) -> tuple[dict[str, DetectionResult], dict[str, SyncError]]:
        """
        Detect changes for several entity types, isolating failures.

        Args:
            entity_types: Entity types to analyze (default: every registered type)
            since: One baseline for all types, or a baseline per type
            **kwargs: Options forwarded to detect_changes

        Returns:
            Tuple of (results by entity type, errors by entity type)
        """
        types = list(entity_types) if entity_types is not None else self._schema.entity_types()
        results: dict[str, DetectionResult] = {}
        errors: dict[str, SyncError] = {}
        for entity_type in types:
            baseline = since.get(entity_type) if isinstance(since, Mapping) else since
            try:
                results[entity_type] = await self.detect_changes(entity_type, baseline, **kwargs)
            except (DetectionError, SchemaError) as e:
                logger.warning("Skipping %s: %s", entity_type, e)
                errors[entity_type] = e
        return results, errors


__all__ = ["DifferentialDetector"]
