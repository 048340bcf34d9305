"""
Unit tests for MigrationExecutor failure isolation and replay.

Tests cover:
- Mapping code errors staying with their record
- Unexpected entity errors sparing sibling entities and the run record
- Non-constraint store rejections isolated by batch splitting
- Resume after an unexpected stop counting each record once
- Replayed tasks and paused-then-resumed runs converging to the same state
"""

from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

import pytest
from conftest import DOCTORS, RaisingTransformer, doctor_row, make_destination, synced_state

from differential_sync.config import ExecutionConfig
from differential_sync.detector import DifferentialDetector
from differential_sync.exceptions import StoreConnectionError, StoreError
from differential_sync.executor import STOP_ERROR, MigrationExecutor
from differential_sync.models import EntityState, ExecutorState, MigrationTask
from differential_sync.repositories import MappingStore
from differential_sync.resolver import BatchResolution, ConflictResolver
from differential_sync.schema import SchemaRegistry
from differential_sync.stores import InMemoryRecordStore
from differential_sync.types import RecordKey

FIFTY = MigrationTask(entity_type="doctors", record_ids=tuple(range(1, 51)))

NURSES = replace(
    DOCTORS,
    entity_type="nurses",
    source_table="legacy_nurses",
    destination_table="nurses",
    hash_field=None,
)


class GatedResolver(ConflictResolver):
    """Resolver awaiting a hook before every batch attempt, sub-batches included."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0
        self.before_batch: Callable[[str, list[RecordKey]], Awaitable[None]] | None = None

    async def resolve_batch(
        self, entity_type: str, record_ids: list[RecordKey], **kwargs: Any
    ) -> BatchResolution:
        self.calls += 1
        if self.before_batch is not None:
            await self.before_batch(entity_type, list(record_ids))
        return await super().resolve_batch(entity_type, record_ids, **kwargs)


def _config(**overrides: Any) -> ExecutionConfig:
    settings: dict[str, Any] = {
        "batch_size": 10,
        "retry_base_delay_ms": 0.0,
        "retry_max_delay_ms": 0.0,
    }
    settings.update(overrides)
    return ExecutionConfig(**settings)


def _stack(
    source: InMemoryRecordStore,
    registry: SchemaRegistry,
    destination: InMemoryRecordStore | None = None,
    **config: Any,
) -> tuple[InMemoryRecordStore, MappingStore, GatedResolver, MigrationExecutor]:
    destination = destination or make_destination()
    mappings = MappingStore(destination, enable_tracing=False)
    resolver = GatedResolver(source, destination, registry, mappings=mappings, enable_tracing=False)
    executor = MigrationExecutor(destination, resolver, config=_config(**config), enable_tracing=False)
    return destination, mappings, resolver, executor


class TestUnexpectedErrors:
    """Tests for errors raised outside the sync exception hierarchy."""

    @pytest.mark.asyncio
    async def test_transformer_error_fails_one_record(
        self, source: InMemoryRecordStore, destination: InMemoryRecordStore
    ) -> None:
        """A ValueError from mapping code fails record 30 and nothing else."""
        registry = SchemaRegistry()
        registry.register(DOCTORS, RaisingTransformer({30}))
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 51)])
        _, mappings, _, executor = _stack(source, registry, destination)

        result = await executor.execute([FIFTY], run_id="run-tx")

        outcome = result.entity_outcomes["doctors"]
        assert result.status == ExecutorState.PARTIAL
        assert outcome.records_processed == 49
        assert outcome.records_failed == 1
        [failure] = outcome.failures
        assert failure.record_id == 30
        assert failure.error_type == "RECORD_VALIDATION"
        assert await mappings.count("doctors") == 49
        assert (await executor.get_status("run-tx")).status == ExecutorState.PARTIAL
        assert executor.active_runs == []

    @pytest.mark.asyncio
    async def test_entity_error_spares_siblings(self, source: InMemoryRecordStore) -> None:
        """A bug outside the store fails its entity; the wave and the run go on."""
        registry = SchemaRegistry([DOCTORS, NURSES])
        source.seed("legacy_doctors", [doctor_row(k) for k in (1, 2, 3)])
        source.seed("legacy_nurses", [doctor_row(k) for k in (1, 2, 3)])
        _, mappings, resolver, executor = _stack(source, registry)

        async def broken_nurses(entity_type: str, keys: list[RecordKey]) -> None:
            if entity_type == "nurses":
                raise RuntimeError("nurse mapping not configured")

        resolver.before_batch = broken_nurses
        tasks = [
            MigrationTask(entity_type="doctors", record_ids=(1, 2, 3)),
            MigrationTask(entity_type="nurses", record_ids=(1, 2, 3)),
        ]

        result = await executor.execute(tasks, run_id="run-bug")

        doctors = result.entity_outcomes["doctors"]
        nurses = result.entity_outcomes["nurses"]
        assert result.status == ExecutorState.PARTIAL
        assert doctors.state == EntityState.COMPLETED
        assert doctors.records_processed == 3
        assert nurses.state == EntityState.FAILED
        assert nurses.stopped_reason == STOP_ERROR
        assert "RuntimeError" in (nurses.error or "")
        assert [e["error_code"] for e in result.errors] == ["UNKNOWN_ERROR"]
        status = await executor.get_status("run-bug")
        assert status.status == ExecutorState.PARTIAL
        assert status.failed == ("nurses",)

        resolver.before_batch = None
        resumed = await executor.resume("run-bug")

        assert resumed.status == ExecutorState.COMPLETED
        assert resumed.entity_outcomes["nurses"].records_processed == 3
        assert await mappings.count("nurses") == 3


class TestStoreRejections:
    """Tests for store errors other than constraint violations."""

    @pytest.mark.asyncio
    async def test_rejected_record_isolated_by_splitting(
        self, source: InMemoryRecordStore, registry: SchemaRegistry
    ) -> None:
        """A non-transient StoreError is narrowed down to the record causing it."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 51)])
        _, mappings, resolver, executor = _stack(source, registry)

        async def value_too_long(entity_type: str, keys: list[RecordKey]) -> None:
            if 30 in keys:
                raise StoreError("value too long for type character varying(64)")

        resolver.before_batch = value_too_long

        result = await executor.execute([FIFTY])

        outcome = result.entity_outcomes["doctors"]
        assert result.status == ExecutorState.PARTIAL
        assert outcome.records_processed == 49
        assert outcome.records_failed == 1
        [failure] = outcome.failures
        assert failure.record_id == 30
        assert failure.error_type == "STORE_ERROR"
        assert outcome.batches[2].splits > 0
        assert await mappings.count("doctors") == 49

    @pytest.mark.asyncio
    async def test_exhausted_connection_errors_fail_entity(
        self, source: InMemoryRecordStore, registry: SchemaRegistry
    ) -> None:
        """Transient errors are retried as a whole batch, never split."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 51)])
        _, mappings, resolver, executor = _stack(source, registry, max_retry_attempts=1)

        async def connection_drops(entity_type: str, keys: list[RecordKey]) -> None:
            if 30 in keys:
                raise StoreConnectionError("Connection lost: server closed the connection")

        resolver.before_batch = connection_drops

        result = await executor.execute([FIFTY])

        outcome = result.entity_outcomes["doctors"]
        assert outcome.state == EntityState.FAILED
        assert outcome.stopped_reason == STOP_ERROR
        assert outcome.records_processed == 20
        assert outcome.failures == ()
        assert all(batch.splits == 0 for batch in outcome.batches)
        assert await mappings.count("doctors") == 20


class TestReplay:
    """Tests for resumed and replayed work."""

    @pytest.mark.asyncio
    async def test_resume_after_unexpected_stop_counts_each_record_once(
        self, source: InMemoryRecordStore, registry: SchemaRegistry
    ) -> None:
        """Batches committed after the last checkpoint are replayed, not double counted."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 51)])
        _, mappings, resolver, executor = _stack(source, registry, checkpoint_interval=2)

        async def crash_on_fourth_batch(entity_type: str, keys: list[RecordKey]) -> None:
            if 35 in keys:
                raise RuntimeError("worker crashed")

        resolver.before_batch = crash_on_fourth_batch

        failed = await executor.execute([FIFTY], run_id="run-crash")

        outcome = failed.entity_outcomes["doctors"]
        assert outcome.state == EntityState.FAILED
        assert outcome.records_processed == 30
        checkpoint = await executor.checkpoints.get(outcome.checkpoint_id or "")
        assert checkpoint is not None
        assert checkpoint.last_processed_key == 20
        assert checkpoint.records_processed == 20

        resolver.before_batch = None
        resumed = await executor.resume("run-crash")

        outcome = resumed.entity_outcomes["doctors"]
        assert resumed.status == ExecutorState.COMPLETED
        assert outcome.records_processed == 50
        assert outcome.records_failed == 0
        assert (await executor.get_status("run-crash")).records_processed == 50
        assert await mappings.count("doctors") == 50

    @pytest.mark.asyncio
    async def test_replayed_task_converges(
        self, source: InMemoryRecordStore, registry: SchemaRegistry
    ) -> None:
        """Executing the same detected changes twice completes both times."""
        source.seed("legacy_doctors", [doctor_row(k) for k in (1, 2, 3)])
        destination, mappings, resolver, executor = _stack(source, registry)
        await resolver.resolve_batch("doctors", [1, 2, 3])
        source.seed(
            "legacy_doctors",
            [doctor_row(1), doctor_row(2, name="Renamed"), doctor_row(4)],
            replace=True,
        )
        detector = DifferentialDetector(source, mappings, registry, enable_tracing=False)
        detection = await detector.detect_changes("doctors", include_deletes=True)
        task = MigrationTask.from_detection(detection, DOCTORS)

        first = await executor.execute([task], run_id="run-first")
        state = await synced_state(destination, mappings)
        second = await executor.execute([task], run_id="run-replay")

        assert first.status == ExecutorState.COMPLETED
        assert second.status == ExecutorState.COMPLETED
        assert second.records_failed == 0
        assert second.records_processed == 3
        assert await synced_state(destination, mappings) == state

    @pytest.mark.asyncio
    async def test_paused_run_matches_uninterrupted_run(
        self, source: InMemoryRecordStore, registry: SchemaRegistry
    ) -> None:
        """Pausing and resuming ends in the same rows and mappings as one pass."""
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 21)])
        straight = _stack(source, registry, batch_size=5, checkpoint_interval=2)
        interrupted = _stack(source, registry, batch_size=5, checkpoint_interval=2)
        for _, _, resolver, _ in (straight, interrupted):
            await resolver.resolve_batch("doctors", list(range(1, 21)))
        # 4, 8, ... renamed, 10 deleted, 21-30 new
        changed = [
            doctor_row(k, name=f"Renamed {k}") if k % 4 == 0 else doctor_row(k)
            for k in range(1, 31)
            if k != 10
        ]
        source.seed("legacy_doctors", changed, replace=True)
        task = MigrationTask(entity_type="doctors", record_ids=tuple(range(1, 31)))

        destination_a, mappings_a, _, executor_a = straight
        baseline = await executor_a.execute([task], run_id="run-straight")

        destination_b, mappings_b, resolver_b, executor_b = interrupted
        resolver_b.calls = 0

        async def pause_at_third_batch(entity_type: str, keys: list[RecordKey]) -> None:
            if resolver_b.calls == 3:
                await executor_b.pause("run-paused")

        resolver_b.before_batch = pause_at_third_batch
        paused = await executor_b.execute([task], run_id="run-paused")
        resolver_b.before_batch = None
        resumed = await executor_b.resume("run-paused")

        assert baseline.status == ExecutorState.COMPLETED
        assert paused.status == ExecutorState.PAUSED
        assert resumed.status == ExecutorState.COMPLETED
        assert (
            resumed.entity_outcomes["doctors"].records_processed
            == baseline.entity_outcomes["doctors"].records_processed
            == 30
        )
        assert await mappings_a.lookup("doctors", 10) is None
        assert await synced_state(destination_b, mappings_b) == await synced_state(
            destination_a, mappings_a
        )
