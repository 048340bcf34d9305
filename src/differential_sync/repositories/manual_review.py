"""
Manual review queue for conflicts resolved with the MANUAL strategy.

Records queued here are never applied automatically; an operator inspects
the stored source row and applies or discards it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from differential_sync.models import ChangeType
from differential_sync.repositories.tables import MANUAL_REVIEWS_TABLE
from differential_sync.serialization import json_loads, parse_datetime
from differential_sync.stores import RecordStore, StoreSession, eq, use_session
from differential_sync.types import Row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManualReviewItem:
    """
    One record awaiting manual resolution.

    Attributes:
        entity_type: Entity type of the record
        legacy_id: Source key of the record
        change_type: Change that would have been applied
        new_id: Destination key, if the record is already mapped
        content_hash: Source content hash at enqueue time
        source_row: Source row at enqueue time (None for deletions)
        id: Queue entry identifier
        status: 'pending' or 'resolved'
        created_at: When the record was queued
    """

    entity_type: str
    legacy_id: str
    change_type: ChangeType
    new_id: str | None = None
    content_hash: str | None = None
    source_row: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: str = "pending"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class ManualReviewQueue(Protocol):
    """Destination for records that need a human decision."""

    async def enqueue(self, item: ManualReviewItem, *, session: StoreSession | None = None) -> None:
        """Queue a record for review."""
        ...

    async def list_pending(self, entity_type: str | None = None) -> list[ManualReviewItem]:
        """Items still awaiting review, oldest first."""
        ...

    async def mark_resolved(self, item_id: str) -> bool:
        """Mark an item as handled. Returns False if it does not exist."""
        ...


def _from_row(row: Row) -> ManualReviewItem:
    return ManualReviewItem(
        id=row["id"],
        entity_type=row["entity_type"],
        legacy_id=row["legacy_id"],
        new_id=row.get("new_id"),
        change_type=ChangeType(row["change_type"]),
        content_hash=row.get("content_hash"),
        source_row=json_loads(row.get("source_row")),
        status=row.get("status") or "pending",
        created_at=parse_datetime(row.get("created_at")) or datetime.now(UTC),
    )


class StoreManualReviewQueue:
    """
    ManualReviewQueue persisted in the `sync_manual_reviews` table.

    Enqueueing joins the caller's batch transaction when a session is given,
    so a queued item and the rest of the batch commit together.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def enqueue(self, item: ManualReviewItem, *, session: StoreSession | None = None) -> None:
        async with use_session(self._store, session) as s:
            await s.insert(
                MANUAL_REVIEWS_TABLE,
                {
                    "id": item.id,
                    "entity_type": item.entity_type,
                    "legacy_id": item.legacy_id,
                    "new_id": item.new_id,
                    "change_type": item.change_type.value,
                    "content_hash": item.content_hash,
                    "source_row": item.source_row,
                    "status": item.status,
                    "created_at": item.created_at,
                },
            )
        logger.info(
            "Queued %s %s (%s) for manual review",
            item.entity_type,
            item.legacy_id,
            item.change_type.value,
        )

    async def list_pending(self, entity_type: str | None = None) -> list[ManualReviewItem]:
        where = [eq("status", "pending")]
        if entity_type is not None:
            where.append(eq("entity_type", entity_type))
        async with self._store.connect() as s:
            rows = await s.select(MANUAL_REVIEWS_TABLE, where=where, order_by="created_at")
        return [_from_row(row) for row in rows]

    async def mark_resolved(self, item_id: str) -> bool:
        async with self._store.transaction() as s:
            updated = await s.update(
                MANUAL_REVIEWS_TABLE,
                {"status": "resolved"},
                where=[eq("id", item_id)],
            )
        return updated > 0


__all__ = ["ManualReviewItem", "ManualReviewQueue", "StoreManualReviewQueue"]
