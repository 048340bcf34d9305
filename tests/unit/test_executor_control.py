"""
Unit tests for cooperative run control in MigrationExecutor.

Tests cover:
- Pause between batches and resume from the checkpoint
- Cancel, and resuming a cancelled run with force
- Timeouts
- Pause/cancel requested through the persisted run record
- Leases held or taken over by another executor
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from conftest import DOCTORS, doctor_row

from differential_sync.config import ExecutionConfig
from differential_sync.exceptions import RunStateError
from differential_sync.executor import (
    STOP_CANCELLED,
    STOP_LEASE_LOST,
    STOP_PAUSED,
    STOP_TIMEOUT,
    MigrationExecutor,
)
from differential_sync.models import (
    CheckpointStatus,
    EntityState,
    ExecutorState,
    MigrationTask,
)
from differential_sync.repositories import MappingStore
from differential_sync.resolver import BatchResolution, ConflictResolver
from differential_sync.schema import SchemaRegistry, TransformContext
from differential_sync.stores import InMemoryRecordStore
from differential_sync.types import RecordKey, Row

RUN_ID = "run-ctl"
TASK = MigrationTask(entity_type="doctors", record_ids=tuple(range(1, 11)))


class HookedResolver(ConflictResolver):
    """Resolver calling a hook after every committed batch."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0
        self.after_batch: Callable[[int], Awaitable[None]] | None = None

    async def resolve_batch(
        self, entity_type: str, record_ids: list[RecordKey], **kwargs: Any
    ) -> BatchResolution:
        result = await super().resolve_batch(entity_type, record_ids, **kwargs)
        self.calls += 1
        if self.after_batch is not None:
            await self.after_batch(self.calls)
        return result


class SlowTransformer:
    """Identity transformer taking 0.6s per record."""

    async def transform(self, row: Row, context: TransformContext) -> Row:
        await asyncio.sleep(0.6)
        return dict(row)


@pytest.fixture
def resolver(
    source: InMemoryRecordStore,
    destination: InMemoryRecordStore,
    registry: SchemaRegistry,
    mappings: MappingStore,
) -> HookedResolver:
    source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 11)])
    return HookedResolver(source, destination, registry, mappings=mappings, enable_tracing=False)


def _executor(
    destination: InMemoryRecordStore, resolver: ConflictResolver, **config: Any
) -> MigrationExecutor:
    return MigrationExecutor(
        destination,
        resolver,
        config=ExecutionConfig(batch_size=2, checkpoint_interval=1, **config),
        enable_tracing=False,
    )


class TestPauseResume:
    """Tests for pausing and resuming."""

    @pytest.mark.asyncio
    async def test_pause_then_resume_processes_each_record_once(
        self,
        resolver: HookedResolver,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Two of five batches before the pause, three after the resume."""
        executor = _executor(destination, resolver)

        async def pause_after_second(calls: int) -> None:
            if calls == 2:
                await executor.pause(RUN_ID)

        resolver.after_batch = pause_after_second

        paused = await executor.execute([TASK], run_id=RUN_ID)

        outcome = paused.entity_outcomes["doctors"]
        assert paused.status == ExecutorState.PAUSED
        assert outcome.stopped_reason == STOP_PAUSED
        assert outcome.records_processed == 4
        assert outcome.last_processed_key == 4
        assert paused.recovery is not None
        assert paused.recovery.is_recoverable
        assert paused.recovery.resume_from_key == 4
        checkpoint = await executor.checkpoints.get(outcome.checkpoint_id or "")
        assert checkpoint is not None
        assert checkpoint.status == CheckpointStatus.PAUSED
        assert (await executor.get_status(RUN_ID)).pending == ("doctors",)

        resolver.after_batch = None
        resumed = await executor.resume(RUN_ID)

        outcome = resumed.entity_outcomes["doctors"]
        assert resumed.status == ExecutorState.COMPLETED
        assert len(outcome.batches) == 3
        assert outcome.records_processed == 10
        assert resolver.calls == 5
        assert await mappings.count("doctors") == 10
        assert len(destination.rows("doctors")) == 10
        assert outcome.checkpoint_id == checkpoint.id

    @pytest.mark.asyncio
    async def test_pause_requested_through_run_record(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """A pause stored by another process is honoured between batches."""
        executor = _executor(destination, resolver)

        async def request_pause(calls: int) -> None:
            if calls == 1:
                await executor.runs.request_action(RUN_ID, "pause")

        resolver.after_batch = request_pause

        result = await executor.execute([TASK], run_id=RUN_ID)

        assert result.status == ExecutorState.PAUSED
        assert result.records_processed == 2
        stored = await executor.runs.require(RUN_ID)
        assert stored.requested_action is None
        assert stored.lease_owner is None

    @pytest.mark.asyncio
    async def test_pause_idle_run(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """An idle queued run is paused directly."""
        executor = _executor(destination, resolver)
        await executor.create_run([TASK], run_id=RUN_ID)

        await executor.pause(RUN_ID)

        assert (await executor.get_status(RUN_ID)).status == ExecutorState.PAUSED


class TestCancel:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_then_force_resume(
        self,
        resolver: HookedResolver,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """Cancelled runs need force to continue and never redo committed work."""
        executor = _executor(destination, resolver)

        async def cancel_after_first(calls: int) -> None:
            if calls == 1:
                await executor.cancel(RUN_ID)

        resolver.after_batch = cancel_after_first

        cancelled = await executor.execute([TASK], run_id=RUN_ID)

        outcome = cancelled.entity_outcomes["doctors"]
        assert outcome.stopped_reason == STOP_CANCELLED
        assert outcome.state == EntityState.FAILED
        assert cancelled.status == ExecutorState.PARTIAL
        assert cancelled.recovery is not None
        assert not cancelled.recovery.is_recoverable
        checkpoint = await executor.checkpoints.get(outcome.checkpoint_id or "")
        assert checkpoint is not None
        assert not checkpoint.resumable
        assert (await executor.get_status(RUN_ID)).cancelled

        with pytest.raises(RunStateError, match="force"):
            await executor.resume(RUN_ID)

        resolver.after_batch = None
        resumed = await executor.resume(RUN_ID, force=True)

        assert resumed.status == ExecutorState.COMPLETED
        assert resumed.entity_outcomes["doctors"].records_processed == 10
        assert resolver.calls == 5
        assert await mappings.count("doctors") == 10

    @pytest.mark.asyncio
    async def test_cancel_idle_run(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """An idle run is cancelled immediately."""
        executor = _executor(destination, resolver)
        await executor.create_run([TASK], run_id=RUN_ID)

        await executor.cancel(RUN_ID)

        status = await executor.get_status(RUN_ID)
        assert status.cancelled
        assert status.failed == ("doctors",)
        assert status.status == ExecutorState.FAILED


class TestTimeout:
    """Tests for the run segment timeout."""

    @pytest.mark.asyncio
    async def test_timeout_pauses_between_batches(
        self,
        source: InMemoryRecordStore,
        destination: InMemoryRecordStore,
        mappings: MappingStore,
    ) -> None:
        """In-flight batches finish, then the run pauses resumably."""
        registry = SchemaRegistry()
        registry.register(DOCTORS, SlowTransformer())
        source.seed("legacy_doctors", [doctor_row(k) for k in range(1, 6)])
        resolver = ConflictResolver(
            source, destination, registry, mappings=mappings, enable_tracing=False
        )
        task = MigrationTask(entity_type="doctors", record_ids=(1, 2, 3, 4, 5))
        executor = MigrationExecutor(
            destination,
            resolver,
            config=ExecutionConfig(batch_size=1, timeout_seconds=1),
            enable_tracing=False,
        )

        result = await executor.execute([task], run_id=RUN_ID)

        outcome = result.entity_outcomes["doctors"]
        assert result.status == ExecutorState.PAUSED
        assert outcome.stopped_reason == STOP_TIMEOUT
        assert 1 <= outcome.records_processed < 5
        assert await mappings.count("doctors") == outcome.records_processed

        registry.register(DOCTORS, replace=True)
        finisher = MigrationExecutor(destination, resolver, enable_tracing=False)
        resumed = await finisher.resume(RUN_ID)

        assert resumed.status == ExecutorState.COMPLETED
        assert await mappings.count("doctors") == 5


class TestLeases:
    """Tests for run leases."""

    @pytest.mark.asyncio
    async def test_run_leased_elsewhere(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """A run held by another executor is refused."""
        executor = _executor(destination, resolver)
        await executor.create_run([TASK], run_id=RUN_ID)
        await executor.runs.acquire_lease(RUN_ID, "other-executor", 60)

        with pytest.raises(RunStateError, match="leased by another executor"):
            await executor.execute_run(RUN_ID)

        assert resolver.calls == 0

    @pytest.mark.asyncio
    async def test_pause_request_for_leased_run_is_persisted(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """Another process's executor stores the request instead of acting."""
        executor = _executor(destination, resolver)
        await executor.create_run([TASK], run_id=RUN_ID)
        await executor.runs.acquire_lease(RUN_ID, "other-executor", 60)

        await executor.pause(RUN_ID)

        assert await executor.runs.get_requested_action(RUN_ID) == "pause"
        assert not (await executor.runs.require(RUN_ID)).paused

    @pytest.mark.asyncio
    async def test_lease_lost_stops_without_touching_run_record(
        self, resolver: HookedResolver, destination: InMemoryRecordStore
    ) -> None:
        """When another executor takes over, this one stops and leaves the run to it."""
        executor = _executor(destination, resolver)

        async def steal_lease(calls: int) -> None:
            if calls == 1:
                await executor.runs.update_fields(
                    RUN_ID,
                    lease_owner="intruder",
                    lease_expires_at=datetime.now(UTC) + timedelta(hours=1),
                )

        resolver.after_batch = steal_lease

        result = await executor.execute([TASK], run_id=RUN_ID)

        assert result.entity_outcomes["doctors"].stopped_reason == STOP_LEASE_LOST
        assert result.records_processed == 2
        stored = await executor.runs.require(RUN_ID)
        assert stored.lease_owner == "intruder"
