"""
Record store implementations.

The source and destination databases, and the control tables, are reached
through the RecordStore protocol.

Implementations:
- SQLAlchemyRecordStore: PostgreSQL via asyncpg or SQLite via aiosqlite
- InMemoryRecordStore: Dictionary-backed store for tests and dry runs
"""

from differential_sync.stores._session import use_session
from differential_sync.stores.in_memory import InMemoryRecordStore, InMemorySession
from differential_sync.stores.interface import (
    Condition,
    Operator,
    RecordStore,
    StoreSession,
    eq,
    ge,
    gt,
    in_,
    is_null,
    le,
    lt,
    ne,
    not_null,
)
from differential_sync.stores.sqlalchemy import (
    SQLAlchemyRecordStore,
    SQLAlchemySession,
    translate_errors,
)

__all__ = [
    # Protocols
    "RecordStore",
    "StoreSession",
    # Predicates
    "Condition",
    "Operator",
    "eq",
    "ne",
    "gt",
    "ge",
    "lt",
    "le",
    "in_",
    "is_null",
    "not_null",
    # Implementations
    "InMemoryRecordStore",
    "InMemorySession",
    "SQLAlchemyRecordStore",
    "SQLAlchemySession",
    "translate_errors",
    # Helpers
    "use_session",
]
