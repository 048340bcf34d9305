"""
Session handling helper for store operations.

Repositories accept an optional StoreSession so that callers can enlist
their writes in an outer transaction (a batch writes its data rows and
mapping rows atomically). When no session is passed the repository opens
its own.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from differential_sync.stores.interface import RecordStore, StoreSession


@asynccontextmanager
async def use_session(
    store: RecordStore,
    session: StoreSession | None = None,
    transactional: bool = True,
) -> AsyncIterator[StoreSession]:
    """
    Context manager yielding a session for store operations.

    Args:
        store: Store to open a session on when none is given
        session: Existing session to join
        transactional: If True, open a transaction; otherwise a plain
            connection. Only applies when no session is given.

    Yields:
        StoreSession ready for select()/upsert() calls

    Example:
        >>> async with use_session(self._store, session) as s:
        ...     await s.upsert(MAPPINGS_TABLE, row, key_columns=KEY)

    Note:
        When an existing session is passed, the caller owns its transaction;
        nothing is committed or rolled back here.
    """
    if session is not None:
        yield session
    elif transactional:
        async with store.transaction() as new_session:
            yield new_session
    else:
        async with store.connect() as new_session:
            yield new_session
