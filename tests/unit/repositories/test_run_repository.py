"""
Unit tests for RunRepository.

Tests cover:
- Creating, loading and saving run records
- Per-entity saves
- Leases (acquire, renew, release, expiry)
- Persisted pause/cancel requests
"""

from datetime import UTC, datetime, timedelta

import pytest

from differential_sync.exceptions import RunNotFoundError, RunStateError
from differential_sync.models import (
    EntityState,
    ExecutorState,
    MigrationTask,
    RecordFailure,
    RunRecord,
)
from differential_sync.repositories import RunRepository
from differential_sync.stores import SQLAlchemyRecordStore


def _run(run_id: str = "run-1") -> RunRecord:
    return RunRecord.from_tasks(
        run_id,
        [
            MigrationTask(entity_type="doctors", record_ids=(1, 2, 3)),
            MigrationTask(entity_type="appointments", record_ids=(1,), dependencies=("doctors",)),
        ],
    )


class TestRunRecords:
    """Tests for run record persistence."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, runs: RunRepository) -> None:
        """A created run loads back with tasks and entities."""
        await runs.create(_run())

        loaded = await runs.get("run-1")

        assert loaded is not None
        assert loaded.status == ExecutorState.QUEUED
        assert [t.entity_type for t in loaded.tasks] == ["doctors", "appointments"]
        assert loaded.tasks[1].dependencies == ("doctors",)
        assert set(loaded.entities) == {"doctors", "appointments"}
        assert loaded.records_total == 4

    @pytest.mark.asyncio
    async def test_duplicate_create(self, runs: RunRepository) -> None:
        """Run ids are unique."""
        await runs.create(_run())
        with pytest.raises(RunStateError, match="already exists"):
            await runs.create(_run())

    @pytest.mark.asyncio
    async def test_require_missing(self, runs: RunRepository) -> None:
        """require raises for unknown runs."""
        assert await runs.get("nope") is None
        with pytest.raises(RunNotFoundError):
            await runs.require("nope")

    @pytest.mark.asyncio
    async def test_save_entity_caps_failures(self, runs: RunRepository) -> None:
        """Recorded failures are bounded."""
        run = _run()
        await runs.create(run)
        entity = run.entities["doctors"]
        entity.state = EntityState.FAILED
        entity.started = True
        entity.records_failed = 3
        entity.failures = [
            RecordFailure(record_id=i, error_type="CONSTRAINT_VIOLATION", message="dup")
            for i in (1, 2, 3)
        ]

        await runs.save_entity(run, "doctors", max_failures=2)

        loaded = await runs.require("run-1")
        assert loaded.entities["doctors"].state == EntityState.FAILED
        assert loaded.entities["doctors"].records_failed == 3
        assert [f.record_id for f in loaded.entities["doctors"].failures] == [1, 2]

    @pytest.mark.asyncio
    async def test_save_overwrites_flags(self, runs: RunRepository) -> None:
        """save persists the run flags."""
        run = _run()
        await runs.create(run)
        run.paused = True
        run.entities["doctors"].state = EntityState.COMPLETED
        run.entities["doctors"].started = True

        await runs.save(run)

        loaded = await runs.require("run-1")
        assert loaded.paused
        assert loaded.status == ExecutorState.PAUSED

    @pytest.mark.asyncio
    async def test_list_and_delete(self, runs: RunRepository) -> None:
        """Runs are listed by status and can be deleted."""
        await runs.create(_run("run-1"))
        await runs.create(_run("run-2"))

        assert len(await runs.list_runs()) == 2
        assert len(await runs.list_runs(status="queued", limit=1)) == 1
        assert await runs.list_runs(status="completed") == []
        assert await runs.delete("run-1")
        assert await runs.get("run-1") is None


class TestLeases:
    """Tests for run leases."""

    @pytest.mark.asyncio
    async def test_acquire_exclusive(self, runs: RunRepository) -> None:
        """Only one owner holds a live lease."""
        await runs.create(_run())

        assert await runs.acquire_lease("run-1", "worker-a", 60)
        assert await runs.acquire_lease("run-1", "worker-a", 60)
        assert not await runs.acquire_lease("run-1", "worker-b", 60)

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, runs: RunRepository) -> None:
        """An expired lease is up for grabs."""
        await runs.create(_run())
        await runs.acquire_lease("run-1", "worker-a", 60)
        await runs.update_fields(
            "run-1", lease_expires_at=datetime.now(UTC) - timedelta(seconds=1)
        )

        assert await runs.acquire_lease("run-1", "worker-b", 60)
        assert not await runs.renew_lease("run-1", "worker-a", 60)
        assert await runs.renew_lease("run-1", "worker-b", 60)

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, runs: RunRepository) -> None:
        """Releasing someone else's lease does nothing."""
        await runs.create(_run())
        await runs.acquire_lease("run-1", "worker-a", 60)

        await runs.release_lease("run-1", "worker-b")
        assert (await runs.require("run-1")).lease_owner == "worker-a"

        await runs.release_lease("run-1", "worker-a")
        loaded = await runs.require("run-1")
        assert loaded.lease_owner is None
        assert not loaded.lease_active()

    @pytest.mark.asyncio
    async def test_acquire_unknown_run(self, runs: RunRepository) -> None:
        """Leasing a missing run raises."""
        with pytest.raises(RunNotFoundError):
            await runs.acquire_lease("nope", "worker-a", 60)


class TestRequestedActions:
    """Tests for persisted pause/cancel requests."""

    @pytest.mark.asyncio
    async def test_request_and_clear(self, runs: RunRepository) -> None:
        """Requests are stored until cleared."""
        await runs.create(_run())
        assert await runs.get_requested_action("run-1") is None

        await runs.request_action("run-1", "pause")
        assert await runs.get_requested_action("run-1") == "pause"

        await runs.request_action("run-1", None)
        assert await runs.get_requested_action("run-1") is None

    @pytest.mark.asyncio
    async def test_invalid_action(self, runs: RunRepository) -> None:
        """Only pause and cancel are accepted."""
        await runs.create(_run())
        with pytest.raises(ValueError, match="action"):
            await runs.request_action("run-1", "restart")

    @pytest.mark.asyncio
    async def test_request_on_missing_run(self, runs: RunRepository) -> None:
        """Requests need an existing run."""
        with pytest.raises(RunNotFoundError):
            await runs.request_action("nope", "cancel")


@pytest.mark.sqlite
class TestRunRepositorySQLite:
    """RunRepository against the SQLite control tables."""

    @pytest.mark.asyncio
    async def test_round_trip_and_lease(self, sqlite_store: SQLAlchemyRecordStore) -> None:
        """JSON tasks, booleans and lease timestamps survive SQLite."""
        runs = RunRepository(sqlite_store, enable_tracing=False)
        await runs.create(_run())

        assert await runs.acquire_lease("run-1", "worker-a", 60)
        assert not await runs.acquire_lease("run-1", "worker-b", 60)
        await runs.request_action("run-1", "cancel")

        loaded = await runs.require("run-1")
        assert loaded.tasks[0].record_ids == (1, 2, 3)
        assert loaded.lease_active()
        assert loaded.requested_action == "cancel"
        assert not loaded.paused
