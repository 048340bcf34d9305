"""
Tests for SQLAlchemyRecordStore against SQLite (aiosqlite).

Tests cover:
- Parameterized selects with predicates, ordering and limits
- INSERT ... ON CONFLICT upserts
- IntegrityError translation to ConstraintError with rollback
- Control table creation
"""

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from differential_sync.exceptions import ConstraintError
from differential_sync.repositories import MAPPINGS_TABLE, control_table_ddl, create_control_tables
from differential_sync.stores import SQLAlchemyRecordStore, eq, gt, in_, is_null

pytestmark = [pytest.mark.sqlite]


@pytest_asyncio.fixture
async def doctors_store(sqlite_engine: AsyncEngine) -> SQLAlchemyRecordStore:
    """Store with a doctors table carrying a unique email column."""
    async with sqlite_engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TABLE doctors ("
                "id INTEGER PRIMARY KEY, email TEXT UNIQUE, name TEXT, rank INTEGER)"
            )
        )
    store = SQLAlchemyRecordStore(sqlite_engine)
    async with store.transaction() as session:
        for key in (1, 2, 3):
            await session.insert(
                "doctors",
                {
                    "id": key,
                    "email": f"d{key}@example.com",
                    "name": f"Doctor {key}",
                    "rank": None if key == 3 else key,
                },
            )
    return store


class TestSQLAlchemySelect:
    """Tests for selects on SQLite."""

    @pytest.mark.asyncio
    async def test_dialect(self, sqlite_store: SQLAlchemyRecordStore) -> None:
        """The dialect comes from the engine."""
        assert sqlite_store.dialect == "sqlite"

    @pytest.mark.asyncio
    async def test_predicates_order_and_limit(self, doctors_store: SQLAlchemyRecordStore) -> None:
        """Conditions compile to parameterized SQL."""
        async with doctors_store.connect() as session:
            rows = await session.select(
                "doctors", where=[gt("id", 1)], order_by="id", descending=True, limit=1
            )
            nulls = await session.count("doctors", where=[is_null("rank")])
            picked = await session.select(
                "doctors", where=[in_("id", [1, 3])], order_by="id", columns=("id",)
            )
            none = await session.select("doctors", where=[in_("id", [])])
        assert [r["id"] for r in rows] == [3]
        assert nulls == 1
        assert picked == [{"id": 1}, {"id": 3}]
        assert none == []


class TestSQLAlchemyWrites:
    """Tests for writes on SQLite."""

    @pytest.mark.asyncio
    async def test_upsert_on_conflict(self, doctors_store: SQLAlchemyRecordStore) -> None:
        """Existing rows are updated, only in update_columns."""
        async with doctors_store.transaction() as session:
            await session.upsert(
                "doctors",
                {"id": 1, "email": "d1@example.com", "name": "Renamed", "rank": 7},
                key_columns=("id",),
                update_columns=("name",),
            )
            await session.upsert(
                "doctors",
                {"id": 4, "email": "d4@example.com", "name": "New", "rank": 4},
                key_columns=("id",),
            )
        async with doctors_store.connect() as session:
            first = await session.select("doctors", where=[eq("id", 1)])
            total = await session.count("doctors")
        assert first[0]["name"] == "Renamed"
        assert first[0]["rank"] == 1
        assert total == 4

    @pytest.mark.asyncio
    async def test_integrity_error_rolls_back(self, doctors_store: SQLAlchemyRecordStore) -> None:
        """A unique violation aborts the whole transaction."""
        with pytest.raises(ConstraintError) as exc_info:
            async with doctors_store.transaction() as session:
                await session.insert("doctors", {"id": 10, "email": "d10@example.com"})
                await session.insert("doctors", {"id": 11, "email": "d1@example.com"})
        assert exc_info.value.table == "doctors"
        async with doctors_store.connect() as session:
            assert await session.count("doctors", where=[gt("id", 3)]) == 0

    @pytest.mark.asyncio
    async def test_update_and_delete_rowcount(self, doctors_store: SQLAlchemyRecordStore) -> None:
        """Affected row counts are returned."""
        async with doctors_store.transaction() as session:
            updated = await session.update("doctors", {"rank": 0}, where=[gt("id", 1)])
            deleted = await session.delete("doctors", where=[eq("rank", 0)])
        assert updated == 2
        assert deleted == 2

    @pytest.mark.asyncio
    async def test_json_values_serialized(self, sqlite_store: SQLAlchemyRecordStore) -> None:
        """Dict values are written as JSON text."""
        async with sqlite_store.transaction() as session:
            await session.insert(
                "sync_snapshots",
                {
                    "id": "s-1",
                    "run_id": None,
                    "entity_type": "doctors",
                    "legacy_id": "1",
                    "new_id": "n-1",
                    "row_data": {"name": "Ada"},
                    "created_at": "2024-01-01T00:00:00+00:00",
                },
            )
        async with sqlite_store.connect() as session:
            rows = await session.select("sync_snapshots")
        assert rows[0]["row_data"] == '{"name": "Ada"}'


class TestControlTables:
    """Tests for the control table DDL."""

    def test_ddl_per_dialect(self) -> None:
        """Timestamp and JSON types follow the dialect."""
        postgres = "\n".join(control_table_ddl("postgresql"))
        sqlite = "\n".join(control_table_ddl("sqlite"))
        assert "JSONB" in postgres
        assert "TIMESTAMP WITH TIME ZONE" in postgres
        assert "JSONB" not in sqlite
        assert MAPPINGS_TABLE in sqlite

    @pytest.mark.asyncio
    async def test_tables_created(self, sqlite_engine: AsyncEngine) -> None:
        """create_control_tables is idempotent and leaves empty tables."""
        await create_control_tables(sqlite_engine)
        async with SQLAlchemyRecordStore(sqlite_engine).connect() as session:
            assert await session.count(MAPPINGS_TABLE) == 0
