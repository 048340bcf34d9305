"""
Unit tests for ConflictResolver.

Tests cover:
- Insert, update, skip and delete classification per record
- Conflict policies (SOURCE_WINS, TARGET_WINS, MANUAL)
- Dry runs and pre-write snapshots
- Per-record failures versus batch-wide store failures
- Whole-result resolution, replayed results and convergence checks
"""

from dataclasses import replace

import pytest
from conftest import DOCTORS, RaisingTransformer, appointment_row, doctor_row, synced_state

from differential_sync.config import ResolutionOptions, ResolutionStrategy
from differential_sync.detector import DifferentialDetector
from differential_sync.exceptions import ConstraintError
from differential_sync.models import ChangeType
from differential_sync.observability import ATTR_RECORDS_FAILED, ATTR_RECORDS_PROCESSED, MockTracer
from differential_sync.repositories import (
    MappingStore,
    SnapshotRepository,
    StoreManualReviewQueue,
)
from differential_sync.resolver import ConflictResolver
from differential_sync.schema import SchemaRegistry
from differential_sync.stores import InMemoryRecordStore


@pytest.fixture
def resolver(
    source: InMemoryRecordStore,
    destination: InMemoryRecordStore,
    registry: SchemaRegistry,
    mappings: MappingStore,
) -> ConflictResolver:
    return ConflictResolver(source, destination, registry, mappings=mappings, enable_tracing=False)


async def _migrate(resolver: ConflictResolver, source: InMemoryRecordStore, *rows: dict) -> None:
    source.seed("legacy_doctors", list(rows), replace=True)
    await resolver.resolve_batch("doctors", [row["id"] for row in rows])


class TestResolveBatch:
    """Tests for resolve_batch with the default SOURCE_WINS policy."""

    @pytest.mark.asyncio
    async def test_insert_creates_row_and_mapping(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """A new record gets a destination row keyed by its new id."""
        row = doctor_row(1)
        source.seed("legacy_doctors", [row])

        result = await resolver.resolve_batch("doctors", [1])

        assert result.inserted == 1
        assert result.failures == ()
        assert result.last_key == 1
        mapping = await mappings.lookup("doctors", 1)
        assert mapping is not None
        assert mapping.checksum == DOCTORS.content_hash(row)
        [stored] = destination.rows("doctors")
        assert stored["id"] == mapping.new_id
        assert stored["legacy_id"] == "1"
        assert stored["source_hash"] == mapping.checksum
        assert stored["name"] == "Doctor 1"

    @pytest.mark.asyncio
    async def test_update_keeps_new_id(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Changed source rows overwrite the mapped destination row."""
        await _migrate(resolver, source, doctor_row(1))
        before = await mappings.lookup("doctors", 1)
        source.seed("legacy_doctors", [doctor_row(1, name="Renamed")], replace=True)

        result = await resolver.resolve_batch("doctors", [1])

        assert result.updated == 1
        after = await mappings.lookup("doctors", 1)
        assert after is not None and before is not None
        assert after.new_id == before.new_id
        assert after.checksum != before.checksum
        [stored] = destination.rows("doctors")
        assert stored["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_current_checksum_is_skipped(
        self, resolver: ConflictResolver, source: InMemoryRecordStore
    ) -> None:
        """Re-resolving an unchanged record writes nothing."""
        await _migrate(resolver, source, doctor_row(1))

        result = await resolver.resolve_batch("doctors", [1])

        assert result.skipped == 1
        assert result.applied == 0
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_delete_purges_row_and_mapping(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """A mapped record gone from the source is removed."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2))
        source.seed("legacy_doctors", [doctor_row(2)], replace=True)

        result = await resolver.resolve_batch("doctors", [1])

        assert result.deleted == 1
        assert await mappings.lookup("doctors", 1) is None
        assert [r["legacy_id"] for r in destination.rows("doctors")] == ["2"]

    @pytest.mark.asyncio
    async def test_unknown_record_fails_alone(
        self, resolver: ConflictResolver, source: InMemoryRecordStore
    ) -> None:
        """A key neither in the source nor mapped is a per-record failure."""
        source.seed("legacy_doctors", [doctor_row(1)])

        result = await resolver.resolve_batch("doctors", [1, 99])

        assert result.inserted == 1
        [failure] = result.failures
        assert failure.record_id == 99
        assert failure.error_type == "CONFLICT_RESOLUTION"

    @pytest.mark.asyncio
    async def test_declared_modified_without_mapping(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """A stale MODIFIED declaration is not silently turned into an insert."""
        source.seed("legacy_doctors", [doctor_row(1)])

        result = await resolver.resolve_batch(
            "doctors", [1], change_types={1: ChangeType.MODIFIED}
        )

        assert result.inserted == 0
        assert [f.record_id for f in result.failures] == [1]
        assert destination.rows("doctors") == []

    @pytest.mark.asyncio
    async def test_missing_parent_mapping(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Children resolve only once their parent is mapped."""
        source.seed("legacy_appointments", [appointment_row(1, doctor_ref=5)])

        orphan = await resolver.resolve_batch("appointments", [1])

        assert [f.error_type for f in orphan.failures] == ["RECORD_VALIDATION"]
        assert await mappings.lookup("appointments", 1) is None

        await _migrate(resolver, source, doctor_row(5))
        adopted = await resolver.resolve_batch("appointments", [1])

        assert adopted.inserted == 1
        [appointment] = destination.rows("appointments")
        assert appointment["doctor_id"] == await mappings.resolve_id("doctors", 5)
        assert "doctor_ref" not in appointment

    @pytest.mark.asyncio
    async def test_constraint_violation_rolls_back_batch(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """A store failure aborts the whole batch, mappings included."""
        source.seed(
            "legacy_doctors",
            [doctor_row(1, email="same@example.com"), doctor_row(2, email="same@example.com")],
        )

        with pytest.raises(ConstraintError):
            await resolver.resolve_batch("doctors", [1, 2])

        assert destination.rows("doctors") == []
        assert await mappings.count("doctors") == 0

    @pytest.mark.asyncio
    async def test_preserved_fields_survive_update(
        self,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Destination-only columns are not overwritten."""
        descriptor = replace(DOCTORS, preserved_fields=("notes",))
        resolver = ConflictResolver(
            source,
            destination,
            SchemaRegistry([descriptor]),
            mappings=mappings,
            enable_tracing=False,
        )
        await _migrate(resolver, source, doctor_row(1, notes="from source"))
        mapping = await mappings.lookup("doctors", 1)
        assert mapping is not None
        async with destination.transaction() as session:
            await session.upsert(
                "doctors",
                {**destination.rows("doctors")[0], "notes": "edited downstream"},
                key_columns=("id",),
            )
        source.seed("legacy_doctors", [doctor_row(1, notes="changed upstream")], replace=True)

        await resolver.resolve_batch("doctors", [1])

        [stored] = destination.rows("doctors")
        assert stored["notes"] == "edited downstream"

    @pytest.mark.asyncio
    async def test_transformer_error_fails_record_only(
        self,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """An arbitrary exception from mapping code is a per-record failure."""
        registry = SchemaRegistry()
        registry.register(DOCTORS, RaisingTransformer({2}))
        resolver = ConflictResolver(source, destination, registry, mappings=mappings, enable_tracing=False)
        source.seed("legacy_doctors", [doctor_row(k) for k in (1, 2, 3)])

        result = await resolver.resolve_batch("doctors", [1, 2, 3])

        assert result.inserted == 2
        [failure] = result.failures
        assert failure.record_id == 2
        assert failure.error_type == "RECORD_VALIDATION"
        assert "ValueError" in failure.message
        assert not failure.retryable
        assert await mappings.lookup("doctors", 2) is None
        assert sorted(r["legacy_id"] for r in destination.rows("doctors")) == ["1", "3"]

    @pytest.mark.asyncio
    async def test_replayed_delete_is_skipped(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """A deletion offered again after it was applied converges as skipped."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2))
        source.seed("legacy_doctors", [doctor_row(2)], replace=True)
        declared = {1: ChangeType.DELETED}

        first = await resolver.resolve_batch("doctors", [1], change_types=declared)
        second = await resolver.resolve_batch("doctors", [1], change_types=declared)
        dry = await resolver.resolve_batch("doctors", [1], change_types=declared, dry_run=True)

        assert first.deleted == 1
        assert second.skipped == 1
        assert second.failures == ()
        assert dry.skipped == 1
        assert dry.failures == ()
        assert [r["legacy_id"] for r in destination.rows("doctors")] == ["2"]

    @pytest.mark.asyncio
    async def test_missing_record_declared_new_still_fails(
        self, resolver: ConflictResolver
    ) -> None:
        """Only a declared deletion of an absent record counts as applied."""
        result = await resolver.resolve_batch(
            "doctors", [7, 8], change_types={7: ChangeType.NEW, 8: ChangeType.MODIFIED}
        )

        assert [f.record_id for f in result.failures] == [7, 8]
        assert result.skipped == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, resolver: ConflictResolver) -> None:
        """Nothing to resolve is not an error."""
        result = await resolver.resolve_batch("doctors", [])

        assert result.processed == 0
        assert result.last_key is None

    @pytest.mark.asyncio
    async def test_span_recorded(
        self,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        registry: SchemaRegistry,
    ) -> None:
        """Batches are traced."""
        tracer = MockTracer()
        resolver = ConflictResolver(source, destination, registry, tracer=tracer)
        source.seed("legacy_doctors", [doctor_row(1)])

        await resolver.resolve_batch("doctors", [1])

        span = tracer.find("differential_sync.resolver.resolve_batch")
        assert span.attributes[ATTR_RECORDS_PROCESSED] == 1
        assert span.attributes[ATTR_RECORDS_FAILED] == 0


class TestPolicies:
    """Tests for TARGET_WINS, MANUAL, dry runs and backups."""

    @pytest.mark.asyncio
    async def test_target_wins_leaves_destination(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """Existing rows are kept, new rows still inserted."""
        await _migrate(resolver, source, doctor_row(1))
        source.seed("legacy_doctors", [doctor_row(1, name="Renamed"), doctor_row(2)], replace=True)

        result = await resolver.resolve_batch(
            "doctors", [1, 2], strategy=ResolutionStrategy.TARGET_WINS
        )

        assert result.skipped == 1
        assert result.inserted == 1
        names = sorted(r["name"] for r in destination.rows("doctors"))
        assert names == ["Doctor 1", "Doctor 2"]

    @pytest.mark.asyncio
    async def test_manual_defers_to_queue(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """Divergent mapped records are queued instead of written."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2))
        source.seed("legacy_doctors", [doctor_row(1, name="Renamed")], replace=True)

        result = await resolver.resolve_batch(
            "doctors", [1, 2], strategy=ResolutionStrategy.MANUAL
        )

        assert result.deferred == 2
        pending = await StoreManualReviewQueue(destination).list_pending("doctors")
        assert {(p.legacy_id, p.change_type) for p in pending} == {
            ("1", ChangeType.MODIFIED),
            ("2", ChangeType.DELETED),
        }
        assert len(destination.rows("doctors")) == 2
        stats = await resolver.get_resolution_statistics("doctors")
        assert stats["pending_manual_reviews"] == 2

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """A dry run only classifies."""
        await _migrate(resolver, source, doctor_row(1))
        source.seed("legacy_doctors", [doctor_row(1, name="Renamed"), doctor_row(2)], replace=True)
        commits = destination.commits

        result = await resolver.resolve_batch("doctors", [1, 2, 3], dry_run=True)

        assert result.dry_run
        assert (result.inserted, result.updated, len(result.failures)) == (1, 1, 1)
        assert destination.commits == commits
        assert [r["name"] for r in destination.rows("doctors")] == ["Doctor 1"]

    @pytest.mark.asyncio
    async def test_backup_snapshots_changed_rows(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
    ) -> None:
        """Only rows about to change are copied."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2))
        source.seed("legacy_doctors", [doctor_row(1, name="Renamed"), doctor_row(2)], replace=True)

        result = await resolver.resolve_batch(
            "doctors", [1, 2], create_backup=True, run_id="run-1"
        )

        assert result.snapshots == 1
        snapshots = SnapshotRepository(destination, enable_tracing=False)
        [copy] = await snapshots.list_for_record("doctors", 1)
        assert copy["row_data"]["name"] == "Doctor 1"
        assert copy["run_id"] == "run-1"


class TestResolve:
    """Tests for resolving a whole DetectionResult."""

    @pytest.mark.asyncio
    async def test_resolve_detection_result(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        mappings: MappingStore,
        registry: SchemaRegistry,
    ) -> None:
        """Detected changes are applied in chunks and verified."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 6)])
        detector = DifferentialDetector(source, mappings, registry, enable_tracing=False)
        detection = await detector.detect_changes("doctors")

        summary = await resolver.resolve(
            detection, ResolutionOptions(batch_size=2, validate_after_resolution=True)
        )

        assert summary.total == 5
        assert summary.resolved == 5
        assert summary.failed == 0
        assert summary.validation is not None
        assert summary.validation.is_valid
        assert summary.validation.sampled == 5
        assert summary.to_dict()["strategy"] == "source_wins"

        again = await detector.detect_changes("doctors")
        assert not again.has_changes

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_others(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        mappings: MappingStore,
        registry: SchemaRegistry,
    ) -> None:
        """A chunk rejected by the store is counted failed; later chunks run."""
        source.seed(
            "legacy_doctors",
            [
                doctor_row(1, email="same@example.com"),
                doctor_row(2, email="same@example.com"),
                doctor_row(3),
            ],
        )
        detector = DifferentialDetector(source, mappings, registry, enable_tracing=False)
        detection = await detector.detect_changes("doctors")

        summary = await resolver.resolve(detection, ResolutionOptions(batch_size=2, max_retries=0))

        assert summary.failed == 2
        assert summary.resolved == 1
        assert summary.errors[0]["error_type"] == "CONSTRAINT_VIOLATION"
        assert summary.errors[0]["record_ids"] == [1, 2]
        assert await mappings.resolve_id("doctors", 3) is not None


    @pytest.mark.asyncio
    async def test_applying_detection_twice_converges(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
        registry: SchemaRegistry,
    ) -> None:
        """A replayed result leaves the destination as the first pass did."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2), doctor_row(3))
        source.seed(
            "legacy_doctors",
            [doctor_row(1), doctor_row(2, name="Renamed"), doctor_row(4)],
            replace=True,
        )
        detector = DifferentialDetector(source, mappings, registry, enable_tracing=False)
        detection = await detector.detect_changes("doctors", include_deletes=True)
        assert {c.record_id: c.change_type for c in detection.changes_detected} == {
            2: ChangeType.MODIFIED,
            3: ChangeType.DELETED,
            4: ChangeType.NEW,
        }

        first = await resolver.resolve(detection)
        state = await synced_state(destination, mappings)
        second = await resolver.resolve(detection)

        assert first.resolved == 3
        assert second.failed == 0
        assert second.resolved == 0
        assert second.skipped == 3
        assert await synced_state(destination, mappings) == state


class TestVerify:
    """Tests for convergence checks."""

    @pytest.mark.asyncio
    async def test_verify_flags_divergence(
        self,
        resolver: ConflictResolver,
        source: InMemoryRecordStore,
    ) -> None:
        """Stale checksums and leftover mappings are mismatches."""
        await _migrate(resolver, source, doctor_row(1), doctor_row(2), doctor_row(3))
        source.seed("legacy_doctors", [doctor_row(1), doctor_row(2, name="Renamed")], replace=True)

        report = await resolver.verify("doctors", [1, 2, 3, 4])

        assert report.sampled == 4
        assert report.mismatched == (2, 3)
        assert report.passed == 2
