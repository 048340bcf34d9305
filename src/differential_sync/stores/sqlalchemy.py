"""
SQLAlchemy-backed record store.

Implements the RecordStore protocol on top of SQLAlchemy's asyncio engine
with textual, parameterized SQL. It runs unchanged on PostgreSQL (asyncpg)
and SQLite (aiosqlite): upserts use INSERT ... ON CONFLICT, which both
dialects support.

Driver errors are translated into the library's exception taxonomy:
- IntegrityError -> ConstraintError (the transaction is rolled back)
- invalidated connections, InterfaceError, OSError -> StoreConnectionError
- any other DBAPIError -> StoreError

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/legacy")
    >>> store = SQLAlchemyRecordStore(engine)
    >>> async with store.connect() as session:
    ...     rows = await session.select("doctors", where=[gt("id", 0)], order_by="id", limit=10)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from differential_sync.exceptions import ConstraintError, StoreConnectionError, StoreError
from differential_sync.serialization import json_dumps
from differential_sync.stores.interface import Condition, Operator
from differential_sync.types import Row

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors(table: str | None = None) -> Iterator[None]:
    """Translate SQLAlchemy and socket errors into store exceptions."""
    try:
        yield
    except IntegrityError as e:
        raise ConstraintError(str(e.orig), table=table) from e
    except DBAPIError as e:
        if e.connection_invalidated or isinstance(e, InterfaceError):
            raise StoreConnectionError(f"Connection lost: {e.orig}") from e
        raise StoreError(f"Database error on {table or 'transaction'}: {e.orig}") from e
    except OSError as e:
        raise StoreConnectionError(f"Cannot reach database: {e}") from e


class SQLAlchemySession:
    """
    StoreSession over an AsyncConnection.

    Args:
        conn: Connection the statements run on
        dialect: Dialect name, used for value adaptation
    """

    def __init__(self, conn: AsyncConnection, dialect: str) -> None:
        self._conn = conn
        self._dialect = dialect
        self._preparer = conn.dialect.identifier_preparer

    def _q(self, name: str) -> str:
        return str(self._preparer.quote(name))

    def _adapt(self, value: Any) -> Any:
        if isinstance(value, dict | list):
            return json_dumps(value)
        if self._dialect == "sqlite" and isinstance(value, datetime | date):
            return value.isoformat()
        return value

    def _where(self, where: Sequence[Condition], params: dict[str, Any]) -> str:
        if not where:
            return ""
        clauses = []
        for condition in where:
            column = self._q(condition.column)
            if not condition.operator.takes_value:
                clauses.append(f"{column} {condition.operator.value.upper()}")
                continue
            if condition.operator is Operator.IN:
                values = list(condition.value)
                if not values:
                    clauses.append("1 = 0")
                    continue
                names = []
                for value in values:
                    name = f"w{len(params)}"
                    params[name] = self._adapt(value)
                    names.append(f":{name}")
                clauses.append(f"{column} IN ({', '.join(names)})")
                continue
            name = f"w{len(params)}"
            params[name] = self._adapt(condition.value)
            clauses.append(f"{column} {condition.operator.value} :{name}")
        return " WHERE " + " AND ".join(clauses)

    async def _execute(self, sql: str, params: dict[str, Any], table: str) -> Any:
        with translate_errors(table):
            return await self._conn.execute(text(sql), params)

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
        params: dict[str, Any] = {}
        column_sql = ", ".join(self._q(c) for c in columns) if columns else "*"
        sql = f"SELECT {column_sql} FROM {self._q(table)}{self._where(where, params)}"  # nosec B608
        if order_by is not None:
            order_columns = [order_by] if isinstance(order_by, str) else list(order_by)
            direction = "DESC" if descending else "ASC"
            sql += " ORDER BY " + ", ".join(f"{self._q(c)} {direction}" for c in order_columns)
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit
        result = await self._execute(sql, params, table)
        return [dict(row) for row in result.mappings().all()]

    async def count(self, table: str, *, where: Sequence[Condition] = ()) -> int:
        params: dict[str, Any] = {}
        sql = f"SELECT COUNT(*) FROM {self._q(table)}{self._where(where, params)}"  # nosec B608
        result = await self._execute(sql, params, table)
        return int(result.scalar_one())

    def _values(self, row: Row) -> tuple[list[str], dict[str, Any]]:
        names = list(row)
        params = {f"v{i}": self._adapt(row[name]) for i, name in enumerate(names)}
        return names, params

    async def insert(self, table: str, row: Row) -> None:
        names, params = self._values(row)
        sql = (
            f"INSERT INTO {self._q(table)} ({', '.join(self._q(n) for n in names)}) "  # nosec B608
            f"VALUES ({', '.join(f':v{i}' for i in range(len(names)))})"
        )
        await self._execute(sql, params, table)

    async def upsert(
        self,
        table: str,
        row: Row,
        *,
        key_columns: Sequence[str],
        update_columns: Sequence[str] | None = None,
    ) -> None:
        names, params = self._values(row)
        if update_columns is None:
            update_columns = [n for n in names if n not in key_columns]
        conflict = ", ".join(self._q(k) for k in key_columns)
        if update_columns:
            assignments = ", ".join(f"{self._q(c)} = excluded.{self._q(c)}" for c in update_columns)
            action = f"DO UPDATE SET {assignments}"
        else:
            action = "DO NOTHING"
        sql = (
            f"INSERT INTO {self._q(table)} ({', '.join(self._q(n) for n in names)}) "  # nosec B608
            f"VALUES ({', '.join(f':v{i}' for i in range(len(names)))}) "
            f"ON CONFLICT ({conflict}) {action}"
        )
        await self._execute(sql, params, table)

    async def update(self, table: str, values: Row, *, where: Sequence[Condition]) -> int:
        params: dict[str, Any] = {}
        assignments = []
        for i, (name, value) in enumerate(values.items()):
            params[f"s{i}"] = self._adapt(value)
            assignments.append(f"{self._q(name)} = :s{i}")
        sql = f"UPDATE {self._q(table)} SET {', '.join(assignments)}{self._where(where, params)}"  # nosec B608
        result = await self._execute(sql, params, table)
        return int(result.rowcount or 0)

    async def delete(self, table: str, *, where: Sequence[Condition]) -> int:
        params: dict[str, Any] = {}
        sql = f"DELETE FROM {self._q(table)}{self._where(where, params)}"  # nosec B608
        result = await self._execute(sql, params, table)
        return int(result.rowcount or 0)


class SQLAlchemyRecordStore:
    """
    RecordStore backed by a SQLAlchemy AsyncEngine or AsyncConnection.

    When an AsyncEngine is given, every transaction() checks out its own
    connection. When an AsyncConnection is given, it is used directly and the
    caller is responsible for transaction management.

    Args:
        bind: Database engine or connection
    """

    def __init__(self, bind: AsyncEngine | AsyncConnection) -> None:
        self._bind = bind

    @property
    def dialect(self) -> str:
        """Dialect name of the bound engine (e.g. 'postgresql', 'sqlite')."""
        return str(self._bind.dialect.name)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLAlchemySession]:
        with translate_errors():
            if isinstance(self._bind, AsyncEngine):
                async with self._bind.begin() as conn:
                    yield SQLAlchemySession(conn, self.dialect)
            else:
                yield SQLAlchemySession(self._bind, self.dialect)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[SQLAlchemySession]:
        with translate_errors():
            if isinstance(self._bind, AsyncEngine):
                async with self._bind.connect() as conn:
                    yield SQLAlchemySession(conn, self.dialect)
                    if conn.in_transaction():
                        await conn.commit()
            else:
                yield SQLAlchemySession(self._bind, self.dialect)


__all__ = ["SQLAlchemyRecordStore", "SQLAlchemySession", "translate_errors"]
