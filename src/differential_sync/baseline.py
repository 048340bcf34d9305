"""
BaselineAnalyzer - how far the destination trails the source.

For each entity type the analyzer counts the active source rows, the
destination rows and the mappings, checks that every mapping still points
to a destination row, and looks up the last completed sync in the
checkpoint table. The report rolls these up into an overall status:

    average gap > 15% or > 5 broken mappings for a type -> CRITICAL_ISSUES
    any type not analyzable                              -> CRITICAL_ISSUES
    gaps with average gap > 5%, or any broken mapping    -> GAPS_DETECTED
    otherwise                                            -> HEALTHY

The detection time recorded in the task of the last completed sync is the
baseline the next detection can start from; runs built without a detection
fall back to the creation time of their checkpoint.

Example:
    >>> analyzer = BaselineAnalyzer(source, destination, registry)
    >>> report = await analyzer.generate_report()
    >>> report.status, report.next_baselines()["doctors"]
    (<BaselineStatus.HEALTHY: 'healthy'>, datetime.datetime(2024, 6, 1, ...))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from differential_sync.checkpoint import CheckpointManager
from differential_sync.exceptions import SyncError
from differential_sync.models import Checkpoint, MappingValidationReport
from differential_sync.observability import (
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from differential_sync.repositories.mapping import MappingStore
from differential_sync.repositories.run import RunRepository
from differential_sync.schema import SchemaProvider
from differential_sync.serialization import parse_datetime
from differential_sync.stores import RecordStore

logger = logging.getLogger(__name__)

# Status thresholds
SIGNIFICANT_GAP_PERCENT = 5.0
CRITICAL_GAP_PERCENT = 15.0
CRITICAL_INVALID_MAPPINGS = 5

# Recommendation thresholds
RESYNC_GAP_PERCENT = 10.0
LARGE_GAP_RECORDS = 100_000


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class BaselineStatus(Enum):
    """Overall health of the destination relative to the source."""

    HEALTHY = "healthy"
    GAPS_DETECTED = "gaps_detected"
    CRITICAL_ISSUES = "critical_issues"


@dataclass(frozen=True)
class EntityBaseline:
    """
    Counts and sync history of one entity type.

    Attributes:
        entity_type: Entity type analyzed
        source_count: Active source rows
        destination_count: Rows in the destination table
        mapped_count: Mappings recorded for the entity type
        mapping_validation: Result of checking mappings against destination
            rows (None when validation was skipped)
        last_sync_at: When the last completed sync of the entity finished
        next_baseline: Baseline for the next detection of the entity
        last_run_id: Run of the last completed sync
        analyzed_at: When the counts were taken
    """

    entity_type: str
    source_count: int
    destination_count: int
    mapped_count: int
    mapping_validation: MappingValidationReport | None = None
    last_sync_at: datetime | None = None
    next_baseline: datetime | None = None
    last_run_id: str | None = None
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def record_gap(self) -> int:
        """Source rows not matched by a destination row (negative if the destination has more)."""
        return self.source_count - self.destination_count

    @property
    def gap_percentage(self) -> float:
        if self.source_count == 0:
            return 0.0
        return round(self.record_gap / self.source_count * 100, 2)

    @property
    def has_data(self) -> bool:
        return self.source_count > 0

    @property
    def invalid_mappings(self) -> int:
        """Mappings pointing to a missing destination row."""
        return self.mapping_validation.invalid if self.mapping_validation else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "source_count": self.source_count,
            "destination_count": self.destination_count,
            "mapped_count": self.mapped_count,
            "record_gap": self.record_gap,
            "gap_percentage": self.gap_percentage,
            "has_data": self.has_data,
            "invalid_mappings": self.invalid_mappings,
            "invalid_legacy_ids": (
                list(self.mapping_validation.invalid_legacy_ids) if self.mapping_validation else []
            ),
            "last_sync_at": _iso(self.last_sync_at),
            "next_baseline": _iso(self.next_baseline),
            "last_run_id": self.last_run_id,
            "analyzed_at": _iso(self.analyzed_at),
        }


@dataclass(frozen=True)
class BaselineReport:
    """
    Baseline analysis across entity types.

    Attributes:
        analysis_id: Identifier of this analysis
        entities: Per-entity results, in analysis order
        errors: Error message by entity type that could not be analyzed
        status: Overall status
        recommendations: Human-readable follow-ups
        duration_ms: Wall time of the analysis
        generated_at: When the report was produced
    """

    analysis_id: str
    entities: tuple[EntityBaseline, ...]
    errors: dict[str, str]
    status: BaselineStatus
    recommendations: tuple[str, ...]
    duration_ms: float = 0.0
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_source_records(self) -> int:
        return sum(e.source_count for e in self.entities)

    @property
    def total_destination_records(self) -> int:
        return sum(e.destination_count for e in self.entities)

    @property
    def overall_gap(self) -> int:
        return self.total_source_records - self.total_destination_records

    @property
    def average_gap_percentage(self) -> float:
        if not self.entities:
            return 0.0
        return round(sum(e.gap_percentage for e in self.entities) / len(self.entities), 2)

    @property
    def entities_with_gaps(self) -> int:
        return sum(1 for e in self.entities if e.record_gap > 0)

    def get(self, entity_type: str) -> EntityBaseline | None:
        """Result of one entity type, if it was analyzed."""
        for entity in self.entities:
            if entity.entity_type == entity_type:
                return entity
        return None

    def next_baselines(self) -> dict[str, datetime | None]:
        """
        Detection baseline per entity type.

        Suitable as the ``since`` argument of SyncService.detect(); types
        never synced map to None (full comparison).
        """
        return {e.entity_type: e.next_baseline for e in self.entities}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "analysis_id": self.analysis_id,
            "status": self.status.value,
            "total_entities": len(self.entities) + len(self.errors),
            "entities_analyzed": len(self.entities),
            "entities": [e.to_dict() for e in self.entities],
            "errors": dict(self.errors),
            "recommendations": list(self.recommendations),
            "summary": {
                "total_source_records": self.total_source_records,
                "total_destination_records": self.total_destination_records,
                "overall_gap": self.overall_gap,
                "average_gap_percentage": self.average_gap_percentage,
                "entities_with_gaps": self.entities_with_gaps,
            },
            "duration_ms": self.duration_ms,
            "generated_at": _iso(self.generated_at),
        }


def assess(
    entities: Iterable[EntityBaseline], errors: dict[str, str]
) -> tuple[BaselineStatus, tuple[str, ...]]:
    """Overall status and recommendations for a set of entity results."""
    results = list(entities)
    average_gap = sum(e.gap_percentage for e in results) / len(results) if results else 0.0
    with_gaps = [e for e in results if e.record_gap > 0]
    broken = [e for e in results if e.invalid_mappings > 0]
    overall_gap = sum(e.record_gap for e in results)

    if (
        errors
        or average_gap > CRITICAL_GAP_PERCENT
        or any(e.invalid_mappings > CRITICAL_INVALID_MAPPINGS for e in results)
    ):
        status = BaselineStatus.CRITICAL_ISSUES
    elif (with_gaps and average_gap > SIGNIFICANT_GAP_PERCENT) or broken:
        status = BaselineStatus.GAPS_DETECTED
    else:
        status = BaselineStatus.HEALTHY

    recommendations = []
    if errors:
        recommendations.append(f"Analysis failed for: {', '.join(sorted(errors))}")
    if with_gaps:
        recommendations.append(
            f"{len(with_gaps)} entities have record gaps - investigate missing data"
        )
    if broken:
        recommendations.append(
            f"{len(broken)} entities have mappings to missing destination rows"
            " - revalidate mappings"
        )
    if average_gap > RESYNC_GAP_PERCENT:
        recommendations.append("High average gap percentage - consider full re-sync")
    if overall_gap > LARGE_GAP_RECORDS:
        recommendations.append("Large overall gap detected - verify migration completeness")
    if not recommendations:
        recommendations.append("All entities appear healthy - ready for differential sync")
    return status, tuple(recommendations)


class BaselineAnalyzer:
    """
    Compares source and destination per entity type.

    Args:
        source: Legacy store holding the source tables
        destination: Store holding the destination tables and control tables
        schema: Provider of entity descriptors
        mappings: Mapping store (defaults to one over destination)
        checkpoints: Checkpoint manager (defaults to one over destination)
        runs: Run repository (defaults to one over destination)
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
        checkpoints: CheckpointManager | None = None,
        runs: RunRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._destination = destination
        self._schema = schema
        self._mappings = mappings or MappingStore(destination, tracer=self._tracer)
        self._checkpoints = checkpoints or CheckpointManager(destination, tracer=self._tracer)
        self._runs = runs or RunRepository(destination, tracer=self._tracer)

    async def analyze_entity(
        self, entity_type: str, *, validate_mappings: bool = True
    ) -> EntityBaseline:
        """
        Analyze one entity type.

        Args:
            entity_type: Entity type to analyze
            validate_mappings: Check each mapping against the destination rows

        Raises:
            SchemaError: If the entity type is unknown
            StoreError: If a count or lookup fails
        """
        descriptor = self._schema.get_descriptor(entity_type)
        with self._tracer.span(
            "differential_sync.baseline.analyze_entity",
            {ATTR_ENTITY_TYPE: entity_type},
        ) as span:
            async with self._source.connect() as session:
                source_count = await session.count(
                    descriptor.source_table, where=list(descriptor.active_conditions)
                )
            async with self._destination.connect() as session:
                destination_count = await session.count(descriptor.destination_table)
            mapped_count = await self._mappings.count(entity_type)

            validation = None
            if validate_mappings:
                validation = await self._mappings.validate_mappings(
                    entity_type,
                    descriptor.destination_table,
                    descriptor.destination_key,
                    mark_invalid=False,
                )

            last = await self._checkpoints.get_last_completed(entity_type)
            result = EntityBaseline(
                entity_type=entity_type,
                source_count=source_count,
                destination_count=destination_count,
                mapped_count=mapped_count,
                mapping_validation=validation,
                last_sync_at=last.updated_at if last else None,
                next_baseline=await self._next_baseline(last) if last else None,
                last_run_id=last.run_id if last else None,
            )

            if span is not None and self._enable_tracing:
                span.set_attribute(ATTR_RECORD_COUNT, source_count)

            logger.debug(
                "Baseline for %s: %d source, %d destination, gap %.2f%%",
                entity_type,
                source_count,
                destination_count,
                result.gap_percentage,
            )
            return result

    async def _next_baseline(self, checkpoint: Checkpoint) -> datetime:
        run = await self._runs.get(checkpoint.run_id)
        tasks = run.tasks if run is not None else []
        for task in tasks:
            if task.entity_type == checkpoint.entity_type:
                detected_at = parse_datetime(task.metadata.get("detected_at"))
                return detected_at or checkpoint.created_at
        return checkpoint.created_at

    async def generate_report(
        self,
        entity_types: Iterable[str] | None = None,
        *,
        validate_mappings: bool = True,
    ) -> BaselineReport:
        """
        Analyze several entity types, isolating failures.

        Args:
            entity_types: Entity types to analyze (default: every registered type)
            validate_mappings: Check each mapping against the destination rows

        Returns:
            BaselineReport; entity types that failed appear in its errors
        """
        types = list(entity_types) if entity_types is not None else self._schema.entity_types()
        started = time.perf_counter()
        with self._tracer.span("differential_sync.baseline.generate_report"):
            entities: list[EntityBaseline] = []
            errors: dict[str, str] = {}
            for entity_type in types:
                try:
                    entities.append(
                        await self.analyze_entity(entity_type, validate_mappings=validate_mappings)
                    )
                except SyncError as e:
                    logger.warning("Baseline analysis failed for %s: %s", entity_type, e)
                    errors[entity_type] = e.message

            status, recommendations = assess(entities, errors)
            report = BaselineReport(
                analysis_id=str(uuid4()),
                entities=tuple(entities),
                errors=errors,
                status=status,
                recommendations=recommendations,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            logger.info(
                "Baseline analysis of %d entity types: %s (%d with gaps, average gap %.2f%%)",
                len(types),
                status.value,
                report.entities_with_gaps,
                report.average_gap_percentage,
            )
            return report


__all__ = [
    "BaselineAnalyzer",
    "BaselineReport",
    "BaselineStatus",
    "EntityBaseline",
    "assess",
]
