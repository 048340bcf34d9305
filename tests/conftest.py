"""
Shared pytest fixtures for the differential_sync tests.

This module provides:
- Entity descriptors and a schema registry (doctors, appointments)
- In-memory source and destination stores with the control constraints
- Source row factories and seeding helpers
- Component fixtures (mapping store, checkpoint manager, run repository)
- SQLite fixtures (aiosqlite engine with the control tables)
- OpenTelemetry metrics fixtures (metric_reader, meter_provider)
- A raising transformer and a destination state snapshot helper
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from differential_sync.checkpoint import CheckpointManager
from differential_sync.observability import MockTracer
from differential_sync.repositories import (
    CONTROL_UNIQUE_CONSTRAINTS,
    MappingStore,
    RunRepository,
    create_control_tables,
)
from differential_sync.schema import (
    EntityDescriptor,
    FieldMapTransformer,
    SchemaRegistry,
    TransformContext,
)
from differential_sync.stores import InMemoryRecordStore, SQLAlchemyRecordStore
from differential_sync.types import Row

# ============================================================================
# Entity definitions
# ============================================================================

BASELINE = datetime(2024, 1, 1, tzinfo=UTC)

DOCTORS = EntityDescriptor(
    entity_type="doctors",
    source_table="legacy_doctors",
    destination_table="doctors",
    hash_field="source_hash",
)

APPOINTMENTS = EntityDescriptor(
    entity_type="appointments",
    source_table="legacy_appointments",
    destination_table="appointments",
    dependencies=("doctors",),
)


def at(days: float) -> datetime:
    """Timestamp `days` after the baseline (negative for before)."""
    return BASELINE + timedelta(days=days)


def doctor_row(key: int, *, updated: datetime | None = None, **overrides: Any) -> Row:
    """Build a legacy doctor row."""
    row: Row = {
        "id": key,
        "name": f"Doctor {key}",
        "email": f"doctor{key}@example.com",
        "updated_at": updated if updated is not None else at(1),
    }
    row.update(overrides)
    return row


def appointment_row(key: int, doctor_ref: int, *, updated: datetime | None = None) -> Row:
    """Build a legacy appointment row referencing a doctor."""
    return {
        "id": key,
        "doctor_ref": doctor_ref,
        "slot": f"2024-02-{key % 28 + 1:02d}T09:00",
        "updated_at": updated if updated is not None else at(1),
    }


def build_registry(*descriptors: EntityDescriptor) -> SchemaRegistry:
    """Registry with the test entity types and their transformers."""
    registry = SchemaRegistry()
    for descriptor in descriptors or (DOCTORS, APPOINTMENTS):
        if descriptor.entity_type == "appointments":
            registry.register(
                descriptor,
                FieldMapTransformer(
                    references={"doctor_id": ("doctor_ref", "doctors")},
                    exclude=("doctor_ref",),
                ),
            )
        else:
            registry.register(descriptor)
    return registry


def make_destination() -> InMemoryRecordStore:
    """Destination store enforcing the control constraints and doctor emails."""
    constraints: dict[str, Iterable[tuple[str, ...]]] = dict(CONTROL_UNIQUE_CONSTRAINTS)
    constraints["doctors"] = [("id",), ("email",)]
    constraints["appointments"] = [("id",)]
    return InMemoryRecordStore(constraints, name="destination")


# ============================================================================
# Store fixtures
# ============================================================================


@pytest.fixture
def source() -> InMemoryRecordStore:
    """Empty in-memory legacy store."""
    return InMemoryRecordStore(name="source")


@pytest.fixture
def destination() -> InMemoryRecordStore:
    """In-memory destination store with control constraints."""
    return make_destination()


@pytest.fixture
def registry() -> SchemaRegistry:
    """Schema registry with doctors and appointments."""
    return build_registry()


@pytest.fixture
def tracer() -> MockTracer:
    """Tracer recording span names and attributes."""
    return MockTracer()


# ============================================================================
# Component fixtures
# ============================================================================


@pytest.fixture
def mappings(destination: InMemoryRecordStore) -> MappingStore:
    """Mapping store on the destination."""
    return MappingStore(destination, enable_tracing=False)


@pytest.fixture
def checkpoints(destination: InMemoryRecordStore) -> CheckpointManager:
    """Checkpoint manager on the destination."""
    return CheckpointManager(destination, enable_tracing=False)


@pytest.fixture
def runs(destination: InMemoryRecordStore) -> RunRepository:
    """Run repository on the destination."""
    return RunRepository(destination, enable_tracing=False)


# ============================================================================
# SQLite fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed aiosqlite engine with the control tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'destination.db'}")
    await create_control_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sqlite_store(sqlite_engine: AsyncEngine) -> SQLAlchemyRecordStore:
    """SQLAlchemy record store over the aiosqlite engine."""
    return SQLAlchemyRecordStore(sqlite_engine)


# ============================================================================
# OpenTelemetry metrics fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """In-memory reader collecting exported metrics."""
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    """SDK meter provider wired to the in-memory reader."""
    return MeterProvider(metric_readers=[metric_reader])


def metric_points(reader: InMemoryMetricReader, name: str) -> list[Any]:
    """Collect the data points of one metric."""
    data = reader.get_metrics_data()
    points: list[Any] = []
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    points.extend(metric.data.data_points)
    return points


# ============================================================================
# Transformer and state helpers
# ============================================================================


class RaisingTransformer:
    """Identity transformer raising for chosen legacy ids, as buggy mapping code does."""

    def __init__(self, bad_ids: Iterable[Any], error: type[Exception] = ValueError) -> None:
        self.bad_ids = set(bad_ids)
        self.error = error

    async def transform(self, row: Row, context: TransformContext) -> Row:
        if context.legacy_id in self.bad_ids:
            raise self.error(f"bad legacy value {context.legacy_id}")
        return dict(row)


async def synced_state(
    destination: InMemoryRecordStore,
    mappings: MappingStore,
    entity_type: str = "doctors",
) -> tuple[list[Row], list[tuple[str, str | None]]]:
    """
    Destination rows and mappings of an entity type without generated ids.

    Two syncs of the same source assign different new ids, so rows are keyed
    by legacy_id and mappings reduced to (legacy_id, checksum).
    """
    mapped = await mappings.list_mappings(entity_type, limit=10_000)
    rows = destination.rows(entity_type)
    assert sorted(str(row["id"]) for row in rows) == sorted(m.new_id for m in mapped)
    stripped = sorted(
        ({k: v for k, v in row.items() if k != "id"} for row in rows),
        key=lambda row: str(row["legacy_id"]),
    )
    return stripped, [(m.legacy_id, m.checksum) for m in mapped]
