"""
Unit tests for BaselineAnalyzer.

Tests cover:
- Source, destination and mapping counts with gap percentages
- Mappings pointing to missing destination rows
- Last completed sync and the next detection baseline
- Per-type failure isolation in the report
- Status and recommendation thresholds
"""

from dataclasses import replace

import pytest
from conftest import DOCTORS, build_registry, doctor_row

from differential_sync.baseline import (
    BaselineAnalyzer,
    BaselineReport,
    BaselineStatus,
    EntityBaseline,
    assess,
)
from differential_sync.checkpoint import CheckpointManager
from differential_sync.config import ExecutionConfig
from differential_sync.exceptions import SchemaError
from differential_sync.executor import MigrationExecutor
from differential_sync.models import (
    ExecutorState,
    MappingValidationReport,
    MigrationTask,
    ValidationStatus,
)
from differential_sync.observability import MockTracer
from differential_sync.repositories import MappingStore
from differential_sync.resolver import ConflictResolver
from differential_sync.schema import SchemaRegistry
from differential_sync.stores import InMemoryRecordStore, eq

HEALTHY = "All entities appear healthy - ready for differential sync"


@pytest.fixture
def analyzer(
    source: InMemoryRecordStore,
    destination: InMemoryRecordStore,
    registry: SchemaRegistry,
) -> BaselineAnalyzer:
    return BaselineAnalyzer(source, destination, registry, enable_tracing=False)


class TestAnalyzeEntity:
    """Tests for per-entity analysis."""

    @pytest.mark.asyncio
    async def test_counts_and_gap(
        self,
        analyzer: BaselineAnalyzer,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """Gap and percentage compare source rows with destination rows."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 11)])
        destination.seed("doctors", [{"id": f"n-{k}"} for k in range(1, 9)])

        baseline = await analyzer.analyze_entity("doctors")

        assert baseline.source_count == 10
        assert baseline.destination_count == 8
        assert baseline.record_gap == 2
        assert baseline.gap_percentage == 20.0
        assert baseline.has_data
        assert baseline.mapped_count == 0
        assert baseline.last_sync_at is None
        assert baseline.next_baseline is None

    @pytest.mark.asyncio
    async def test_empty_source(self, analyzer: BaselineAnalyzer) -> None:
        """No source rows means no data and a zero gap percentage."""
        baseline = await analyzer.analyze_entity("doctors")

        assert not baseline.has_data
        assert baseline.gap_percentage == 0.0

    @pytest.mark.asyncio
    async def test_only_active_source_rows_counted(
        self, source: InMemoryRecordStore, destination: InMemoryRecordStore
    ) -> None:
        """Rows outside the active conditions are not expected in the destination."""
        registry = build_registry(replace(DOCTORS, active_conditions=(eq("status", "active"),)))
        source.seed(
            "legacy_doctors",
            [doctor_row(1, status="active"), doctor_row(2, status="retired")],
        )
        analyzer = BaselineAnalyzer(source, destination, registry, enable_tracing=False)

        baseline = await analyzer.analyze_entity("doctors")

        assert baseline.source_count == 1

    @pytest.mark.asyncio
    async def test_mappings_to_missing_rows(
        self,
        analyzer: BaselineAnalyzer,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Mappings are checked without being marked invalid."""
        source.seed("legacy_doctors", [doctor_row(1), doctor_row(2)])
        destination.seed("doctors", [{"id": "n-1"}, {"id": "stray"}])
        await mappings.upsert("doctors", 1, "h1", new_id="n-1")
        await mappings.upsert("doctors", 2, "h2", new_id="n-2")

        baseline = await analyzer.analyze_entity("doctors")

        assert baseline.record_gap == 0
        assert baseline.mapped_count == 2
        assert baseline.invalid_mappings == 1
        assert baseline.to_dict()["invalid_legacy_ids"] == ["2"]
        assert (await mappings.lookup("doctors", 2)).validation_status == ValidationStatus.VALID

    @pytest.mark.asyncio
    async def test_validation_can_be_skipped(self, analyzer: BaselineAnalyzer) -> None:
        """Without validation no mapping report is attached."""
        baseline = await analyzer.analyze_entity("doctors", validate_mappings=False)

        assert baseline.mapping_validation is None
        assert baseline.invalid_mappings == 0

    @pytest.mark.asyncio
    async def test_last_completed_sync(
        self,
        analyzer: BaselineAnalyzer,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        registry: SchemaRegistry,
    ) -> None:
        """Runs built without a detection fall back to the checkpoint creation time."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 4)])
        resolver = ConflictResolver(source, destination, registry, enable_tracing=False)
        executor = MigrationExecutor(
            destination,
            resolver,
            config=ExecutionConfig(retry_base_delay_ms=0.0, retry_max_delay_ms=0.0),
            enable_tracing=False,
        )
        result = await executor.execute(
            [MigrationTask(entity_type="doctors", record_ids=(1, 2, 3))], run_id="run-1"
        )
        assert result.status == ExecutorState.COMPLETED
        checkpoint_id = result.entity_outcomes["doctors"].checkpoint_id
        assert checkpoint_id is not None
        checkpoint = await CheckpointManager(destination, enable_tracing=False).get(checkpoint_id)
        assert checkpoint is not None

        baseline = await analyzer.analyze_entity("doctors")

        assert baseline.last_run_id == "run-1"
        assert baseline.last_sync_at == checkpoint.updated_at
        assert baseline.next_baseline == checkpoint.created_at
        assert baseline.record_gap == 0
        assert baseline.mapped_count == 3

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, analyzer: BaselineAnalyzer) -> None:
        """Unknown types raise SchemaError."""
        with pytest.raises(SchemaError):
            await analyzer.analyze_entity("clinics")

    @pytest.mark.asyncio
    async def test_span_recorded(
        self,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        registry: SchemaRegistry,
        tracer: MockTracer,
    ) -> None:
        """Each entity analysis opens a span carrying the entity type."""
        analyzer = BaselineAnalyzer(source, destination, registry, tracer=tracer)

        await analyzer.generate_report(["doctors"])

        assert "differential_sync.baseline.generate_report" in tracer.span_names
        assert "differential_sync.baseline.analyze_entity" in tracer.span_names


class TestGenerateReport:
    """Tests for the multi-entity report."""

    @pytest.mark.asyncio
    async def test_unknown_types_isolated(
        self, analyzer: BaselineAnalyzer, source: InMemoryRecordStore
    ) -> None:
        """A failing type is reported without hiding the others."""
        source.seed("legacy_doctors", [doctor_row(1)])

        report = await analyzer.generate_report(["doctors", "clinics"])

        assert [e.entity_type for e in report.entities] == ["doctors"]
        assert set(report.errors) == {"clinics"}
        assert report.status == BaselineStatus.CRITICAL_ISSUES
        assert report.recommendations[0] == "Analysis failed for: clinics"
        payload = report.to_dict()
        assert payload["total_entities"] == 2
        assert payload["entities_analyzed"] == 1
        assert payload["status"] == "critical_issues"

    @pytest.mark.asyncio
    async def test_defaults_to_registered_types(self, analyzer: BaselineAnalyzer) -> None:
        """Every registered type is analyzed when none are named."""
        report = await analyzer.generate_report()

        assert [e.entity_type for e in report.entities] == ["doctors", "appointments"]
        assert report.status == BaselineStatus.HEALTHY
        assert report.recommendations == (HEALTHY,)
        assert report.next_baselines() == {"doctors": None, "appointments": None}

    @pytest.mark.asyncio
    async def test_summary(
        self,
        analyzer: BaselineAnalyzer,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """Totals sum the entities and the average gap is per entity."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 11)])
        destination.seed("doctors", [{"id": f"n-{k}"} for k in range(1, 10)])

        report = await analyzer.generate_report(["doctors", "appointments"])

        assert report.total_source_records == 10
        assert report.total_destination_records == 9
        assert report.overall_gap == 1
        assert report.average_gap_percentage == 5.0
        assert report.entities_with_gaps == 1
        assert report.get("doctors") is not None
        assert report.get("clinics") is None


def _entity(source: int, destination: int, invalid: int = 0) -> EntityBaseline:
    validation = MappingValidationReport("doctors", checked=invalid, invalid=invalid)
    return EntityBaseline("doctors", source, destination, destination, validation)


class TestAssess:
    """Tests for the status and recommendation thresholds."""

    def test_no_gaps_is_healthy(self) -> None:
        """Matching counts are healthy."""
        status, recommendations = assess([_entity(100, 100)], {})

        assert status == BaselineStatus.HEALTHY
        assert recommendations == (HEALTHY,)

    def test_small_gap_stays_healthy(self) -> None:
        """A gap under the significance threshold is reported but healthy."""
        status, recommendations = assess([_entity(100, 97)], {})

        assert status == BaselineStatus.HEALTHY
        assert recommendations == ("1 entities have record gaps - investigate missing data",)

    def test_significant_gap(self) -> None:
        """A 10% average gap is a detected gap."""
        status, recommendations = assess([_entity(100, 90)], {})

        assert status == BaselineStatus.GAPS_DETECTED
        assert "High average gap percentage - consider full re-sync" not in recommendations

    def test_large_gap_is_critical(self) -> None:
        """Above 15% the status is critical and a re-sync is suggested."""
        status, recommendations = assess([_entity(100, 80)], {})

        assert status == BaselineStatus.CRITICAL_ISSUES
        assert "High average gap percentage - consider full re-sync" in recommendations

    def test_broken_mappings(self) -> None:
        """Any broken mapping is a gap; more than five is critical."""
        few, recommendations = assess([_entity(10, 10, invalid=1)], {})
        many, _ = assess([_entity(10, 10, invalid=6)], {})

        assert few == BaselineStatus.GAPS_DETECTED
        assert many == BaselineStatus.CRITICAL_ISSUES
        assert recommendations == (
            "1 entities have mappings to missing destination rows - revalidate mappings",
        )

    def test_large_overall_gap(self) -> None:
        """A six-figure record gap asks for a completeness check."""
        _, recommendations = assess([_entity(1_000_000, 850_000)], {})

        assert "Large overall gap detected - verify migration completeness" in recommendations

    def test_destination_ahead_is_not_a_gap(self) -> None:
        """Extra destination rows give a negative gap, not a gap."""
        entity = _entity(10, 12)
        status, _ = assess([entity], {})

        assert entity.record_gap == -2
        assert status == BaselineStatus.HEALTHY
        report = BaselineReport("a-1", (entity,), {}, status, ())
        assert report.entities_with_gaps == 0
