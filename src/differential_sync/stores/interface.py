"""
Record store abstraction.

The engine reaches the source and destination databases only through the
generic capabilities defined here: a predicate SELECT with ordering and a
limit, multi-statement transactions, and upsert by unique key. Nothing in
the core depends on a particular SQL dialect.

Example:
    >>> async with store.transaction() as session:
    ...     rows = await session.select(
    ...         "doctors",
    ...         where=[gt("id", 100)],
    ...         order_by="id",
    ...         limit=500,
    ...     )
    ...     await session.upsert("doctors_v2", row, key_columns=("id",))
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from differential_sync.types import Row


class Operator(Enum):
    """Comparison operators supported in store predicates."""

    EQ = "="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    IN = "in"
    IS_NULL = "is null"
    NOT_NULL = "is not null"

    @property
    def takes_value(self) -> bool:
        """Whether the operator compares against a value."""
        return self not in (Operator.IS_NULL, Operator.NOT_NULL)


@dataclass(frozen=True)
class Condition:
    """
    A single column predicate. Conditions in a sequence are AND-combined.

    Attributes:
        column: Column name
        operator: Comparison operator
        value: Comparison value (a collection for IN, unused for null checks)
    """

    column: str
    operator: Operator
    value: Any = None

    def matches(self, row: Row) -> bool:
        """
        Evaluate the condition against an in-memory row.

        SQL semantics apply: comparisons against NULL are false.
        """
        actual = row.get(self.column)
        if self.operator is Operator.IS_NULL:
            return actual is None
        if self.operator is Operator.NOT_NULL:
            return actual is not None
        if actual is None:
            return False
        if self.operator is Operator.IN:
            return actual in self.value
        if self.value is None:
            return False
        if self.operator is Operator.EQ:
            return bool(actual == self.value)
        if self.operator is Operator.NE:
            return bool(actual != self.value)
        if self.operator is Operator.GT:
            return bool(actual > self.value)
        if self.operator is Operator.GE:
            return bool(actual >= self.value)
        if self.operator is Operator.LT:
            return bool(actual < self.value)
        return bool(actual <= self.value)


def eq(column: str, value: Any) -> Condition:
    """column = value"""
    return Condition(column, Operator.EQ, value)


def ne(column: str, value: Any) -> Condition:
    """column != value"""
    return Condition(column, Operator.NE, value)


def gt(column: str, value: Any) -> Condition:
    """column > value"""
    return Condition(column, Operator.GT, value)


def ge(column: str, value: Any) -> Condition:
    """column >= value"""
    return Condition(column, Operator.GE, value)


def lt(column: str, value: Any) -> Condition:
    """column < value"""
    return Condition(column, Operator.LT, value)


def le(column: str, value: Any) -> Condition:
    """column <= value"""
    return Condition(column, Operator.LE, value)


def in_(column: str, values: Iterable[Any]) -> Condition:
    """column IN (values)"""
    return Condition(column, Operator.IN, tuple(values))


def is_null(column: str) -> Condition:
    """column IS NULL"""
    return Condition(column, Operator.IS_NULL)


def not_null(column: str) -> Condition:
    """column IS NOT NULL"""
    return Condition(column, Operator.NOT_NULL)


@runtime_checkable
class StoreSession(Protocol):
    """
    Operations available inside a store connection or transaction.

    A session obtained from RecordStore.transaction() commits when the
    context exits normally and rolls back when it exits with an exception.
    """

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
        """
        Select rows matching all conditions.

        Args:
            table: Table name
            where: AND-combined predicates
            order_by: Column (or columns) to order by
            descending: Order descending instead of ascending
            limit: Maximum number of rows to return
            columns: Columns to return (all columns when None)

        Returns:
            Matching rows as dictionaries
        """
        ...

    async def count(self, table: str, *, where: Sequence[Condition] = ()) -> int:
        """Count rows matching all conditions."""
        ...

    async def insert(self, table: str, row: Row) -> None:
        """
        Insert one row.

        Raises:
            ConstraintError: If the row violates a unique constraint
        """
        ...

    async def upsert(
        self,
        table: str,
        row: Row,
        *,
        key_columns: Sequence[str],
        update_columns: Sequence[str] | None = None,
    ) -> None:
        """
        Insert a row, or update it when a row with the same key exists.

        Args:
            table: Table name
            row: Full row to insert
            key_columns: Columns of the unique key the conflict is detected on
            update_columns: Columns overwritten on conflict. Defaults to every
                non-key column of the row; an empty sequence leaves an
                existing row untouched.

        Raises:
            ConstraintError: If the write violates another unique constraint
        """
        ...

    async def update(
        self,
        table: str,
        values: Row,
        *,
        where: Sequence[Condition],
    ) -> int:
        """Update matching rows, returning the number of rows changed."""
        ...

    async def delete(self, table: str, *, where: Sequence[Condition]) -> int:
        """Delete matching rows, returning the number of rows removed."""
        ...


@runtime_checkable
class RecordStore(Protocol):
    """
    A source or destination database.

    Implementations:
    - SQLAlchemyRecordStore: PostgreSQL (asyncpg) or SQLite (aiosqlite)
    - InMemoryRecordStore: Dictionary-backed store for tests and dry runs
    """

    @property
    def dialect(self) -> str:
        """Database system name (e.g., 'postgresql', 'sqlite', 'memory')."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[StoreSession]:
        """Open a multi-statement transaction."""
        ...

    def connect(self) -> AbstractAsyncContextManager[StoreSession]:
        """Open a non-transactional session for reads and single writes."""
        ...


__all__ = [
    "Condition",
    "Operator",
    "RecordStore",
    "StoreSession",
    "eq",
    "ge",
    "gt",
    "in_",
    "is_null",
    "le",
    "lt",
    "ne",
    "not_null",
]
