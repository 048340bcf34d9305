"""
In-memory record store.

A dictionary-backed implementation of the RecordStore protocol for tests,
dry runs and small jobs. Transactions are serialized with an asyncio.Lock
and work on a staged copy of the tables, so a transaction that raises
leaves the committed state untouched, exactly like a database rollback.
Declared unique constraints are enforced on every write.

Example:
    >>> store = InMemoryRecordStore(unique_constraints={"doctors_v2": [("email",)]})
    >>> store.seed("doctors", [{"id": 1, "email": "a@example.com"}])
    >>> async with store.transaction() as session:
    ...     await session.upsert("doctors_v2", {"id": "x", "email": "a@example.com"}, key_columns=("id",))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any

from differential_sync.exceptions import ConstraintError
from differential_sync.stores.interface import Condition
from differential_sync.types import Row

logger = logging.getLogger(__name__)

Tables = dict[str, list[Row]]


def _sort_key(columns: Sequence[str]) -> Any:
    # NULLs sort last, matching PostgreSQL's default ascending order
    def key(row: Row) -> tuple[Any, ...]:
        return tuple((row.get(c) is None, row.get(c)) for c in columns)

    return key


class InMemorySession:
    """
    Session over the tables of an InMemoryRecordStore.

    In transactional mode the session works on a staged copy that the store
    commits when the transaction exits cleanly. In direct mode reads see the
    committed tables and every write takes the store lock.
    """

    def __init__(self, store: InMemoryRecordStore, staged: Tables | None = None) -> None:
        self._store = store
        self._staged = staged
        self._direct = staged is None

    @property
    def _tables(self) -> Tables:
        if self._staged is None:
            return self._store._tables
        return self._staged

    def _table(self, table: str) -> list[Row]:
        return self._tables.setdefault(table, [])

    def _matching(self, table: str, where: Sequence[Condition]) -> list[Row]:
        return [row for row in self._table(table) if all(c.matches(row) for c in where)]

    async def select(
        self,
        table: str,
        *,
        where: Sequence[Condition] = (),
        order_by: str | Sequence[str] | None = None,
        descending: bool = False,
        limit: int | None = None,
        columns: Sequence[str] | None = None,
    ) -> list[Row]:
        rows = self._matching(table, where)
        if order_by is not None:
            order_columns = [order_by] if isinstance(order_by, str) else list(order_by)
            rows = sorted(rows, key=_sort_key(order_columns), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns is not None:
            return [{c: row.get(c) for c in columns} for row in rows]
        return [dict(row) for row in rows]

    async def count(self, table: str, *, where: Sequence[Condition] = ()) -> int:
        return len(self._matching(table, where))

    async def insert(self, table: str, row: Row) -> None:
        async with self._write_guard():
            candidate = dict(row)
            self._check_unique(table, candidate, exclude=None)
            self._table(table).append(candidate)

    async def upsert(
        self,
        table: str,
        row: Row,
        *,
        key_columns: Sequence[str],
        update_columns: Sequence[str] | None = None,
    ) -> None:
        async with self._write_guard():
            rows = self._table(table)
            existing = next(
                (r for r in rows if all(r.get(k) == row.get(k) for k in key_columns)),
                None,
            )
            if existing is None:
                candidate = dict(row)
                self._check_unique(table, candidate, exclude=None)
                rows.append(candidate)
                return

            if update_columns is None:
                update_columns = [c for c in row if c not in key_columns]
            if not update_columns:
                return
            candidate = dict(existing)
            candidate.update({c: row.get(c) for c in update_columns})
            self._check_unique(table, candidate, exclude=existing)
            existing.update(candidate)

    async def update(self, table: str, values: Row, *, where: Sequence[Condition]) -> int:
        async with self._write_guard():
            targets = self._matching(table, where)
            for target in targets:
                candidate = {**target, **values}
                self._check_unique(table, candidate, exclude=target)
                target.update(values)
            return len(targets)

    async def delete(self, table: str, *, where: Sequence[Condition]) -> int:
        async with self._write_guard():
            rows = self._table(table)
            keep = [row for row in rows if not all(c.matches(row) for c in where)]
            removed = len(rows) - len(keep)
            rows[:] = keep
            return removed

    @asynccontextmanager
    async def _write_guard(self) -> AsyncIterator[None]:
        if self._direct:
            async with self._store._lock:
                yield
        else:
            yield

    def _check_unique(self, table: str, candidate: Row, *, exclude: Row | None) -> None:
        for columns in self._store.unique_constraints.get(table, ()):
            values = tuple(candidate.get(c) for c in columns)
            if any(v is None for v in values):
                continue
            for other in self._table(table):
                if other is exclude:
                    continue
                if tuple(other.get(c) for c in columns) == values:
                    raise ConstraintError(
                        f"Duplicate value {values!r} for unique constraint "
                        f"{table}({', '.join(columns)})",
                        table=table,
                        constraint=",".join(columns),
                    )


class InMemoryRecordStore:
    """
    Dictionary-backed RecordStore.

    Args:
        unique_constraints: Per-table unique column sets enforced on writes
        name: Label used in logs and traces

    Attributes:
        commits: Number of committed transactions (useful in tests)
        rollbacks: Number of rolled back transactions
    """

    def __init__(
        self,
        unique_constraints: Mapping[str, Iterable[Sequence[str]]] | None = None,
        *,
        name: str = "memory",
    ) -> None:
        self.name = name
        self.unique_constraints: dict[str, list[tuple[str, ...]]] = {
            table: [tuple(cols) for cols in constraints]
            for table, constraints in (unique_constraints or {}).items()
        }
        self._tables: Tables = {}
        self._lock = asyncio.Lock()
        self.commits = 0
        self.rollbacks = 0

    @property
    def dialect(self) -> str:
        """Always 'memory'."""
        return "memory"

    def add_unique_constraint(self, table: str, columns: Sequence[str]) -> None:
        """Declare a unique column set on a table."""
        self.unique_constraints.setdefault(table, []).append(tuple(columns))

    def seed(self, table: str, rows: Iterable[Row], *, replace: bool = False) -> None:
        """
        Load rows into a table without constraint checks (test setup).

        Args:
            table: Table name
            rows: Rows to append
            replace: Drop the table's existing rows first
        """
        if replace:
            self._tables.pop(table, None)
        self._tables.setdefault(table, []).extend(dict(row) for row in rows)

    def rows(self, table: str) -> list[Row]:
        """Return a copy of the committed rows of a table."""
        return [dict(row) for row in self._tables.get(table, [])]

    def clear(self) -> None:
        """Remove all tables."""
        self._tables.clear()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemorySession]:
        async with self._lock:
            staged: Tables = {name: [dict(r) for r in rows] for name, rows in self._tables.items()}
            try:
                yield InMemorySession(self, staged)
            except BaseException:
                self.rollbacks += 1
                logger.debug("Rolled back in-memory transaction on %s", self.name)
                raise
            self._tables = staged
            self.commits += 1

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[InMemorySession]:
        yield InMemorySession(self)


__all__ = ["InMemoryRecordStore", "InMemorySession"]
