"""
Control tables of the differential sync engine.

All control tables live in the destination store, next to the migrated
data, so that a data row and its mapping row are written in one
transaction.

Tables:
    sync_mappings        legacy id -> new id per entity type
    sync_checkpoints     one resumable progress marker per run/entity
    sync_runs            persisted run record and lease
    sync_run_entities    per-entity state of a run
    sync_snapshots       pre-resolution copies of destination rows
    sync_manual_reviews  records queued for manual conflict resolution

Example:
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/dest")
    >>> await create_control_tables(engine)
"""

from __future__ import annotations

import logging
from typing import Literal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

MAPPINGS_TABLE = "sync_mappings"
CHECKPOINTS_TABLE = "sync_checkpoints"
RUNS_TABLE = "sync_runs"
RUN_ENTITIES_TABLE = "sync_run_entities"
SNAPSHOTS_TABLE = "sync_snapshots"
MANUAL_REVIEWS_TABLE = "sync_manual_reviews"

MAPPING_KEY = ("entity_type", "legacy_id")
CHECKPOINT_KEY = ("run_id", "entity_type")
RUN_KEY = ("run_id",)
RUN_ENTITY_KEY = ("run_id", "entity_type")

# Unique column sets declared on an InMemoryRecordStore used as destination
CONTROL_UNIQUE_CONSTRAINTS: dict[str, list[tuple[str, ...]]] = {
    MAPPINGS_TABLE: [MAPPING_KEY, ("entity_type", "new_id")],
    CHECKPOINTS_TABLE: [("id",), CHECKPOINT_KEY],
    RUNS_TABLE: [RUN_KEY],
    RUN_ENTITIES_TABLE: [RUN_ENTITY_KEY],
    SNAPSHOTS_TABLE: [("id",)],
    MANUAL_REVIEWS_TABLE: [("id",)],
}

_TYPES = {
    "postgresql": {
        "timestamp": "TIMESTAMP WITH TIME ZONE",
        "bool": "BOOLEAN",
        "json": "JSONB",
        "false": "FALSE",
        "true": "TRUE",
    },
    "sqlite": {
        "timestamp": "TEXT",
        "bool": "INTEGER",
        "json": "TEXT",
        "false": "0",
        "true": "1",
    },
}


def control_table_ddl(dialect: Literal["postgresql", "sqlite"] = "postgresql") -> list[str]:
    """
    Generate CREATE TABLE and CREATE INDEX statements for the control tables.

    Args:
        dialect: Database dialect ('postgresql' or 'sqlite')

    Returns:
        DDL statements in creation order
    """
    t = _TYPES[dialect]
    return [
        f"""CREATE TABLE IF NOT EXISTS {MAPPINGS_TABLE} (
    entity_type VARCHAR(255) NOT NULL,
    legacy_id VARCHAR(255) NOT NULL,
    new_id VARCHAR(255) NOT NULL,
    checksum VARCHAR(64),
    validation_status VARCHAR(16) NOT NULL DEFAULT 'pending',
    created_at {t["timestamp"]} NOT NULL,
    updated_at {t["timestamp"]} NOT NULL,
    PRIMARY KEY (entity_type, legacy_id),
    UNIQUE (entity_type, new_id)
);""",
        f"""CREATE TABLE IF NOT EXISTS {CHECKPOINTS_TABLE} (
    id VARCHAR(64) PRIMARY KEY,
    run_id VARCHAR(64) NOT NULL,
    entity_type VARCHAR(255) NOT NULL,
    status VARCHAR(16) NOT NULL,
    last_processed_key TEXT,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_failed INTEGER NOT NULL DEFAULT 0,
    records_total INTEGER NOT NULL DEFAULT 0,
    batch_number INTEGER NOT NULL DEFAULT 0,
    resumable {t["bool"]} NOT NULL DEFAULT {t["true"]},
    created_at {t["timestamp"]} NOT NULL,
    updated_at {t["timestamp"]} NOT NULL,
    UNIQUE (run_id, entity_type)
);""",
        f"CREATE INDEX IF NOT EXISTS idx_{CHECKPOINTS_TABLE}_entity "
        f"ON {CHECKPOINTS_TABLE}(entity_type, updated_at);",
        f"""CREATE TABLE IF NOT EXISTS {RUNS_TABLE} (
    run_id VARCHAR(64) PRIMARY KEY,
    status VARCHAR(16) NOT NULL,
    tasks {t["json"]} NOT NULL,
    paused {t["bool"]} NOT NULL DEFAULT {t["false"]},
    cancelled {t["bool"]} NOT NULL DEFAULT {t["false"]},
    requested_action VARCHAR(16),
    lease_owner VARCHAR(255),
    lease_expires_at {t["timestamp"]},
    created_at {t["timestamp"]} NOT NULL,
    updated_at {t["timestamp"]} NOT NULL,
    started_at {t["timestamp"]},
    completed_at {t["timestamp"]}
);""",
        f"""CREATE TABLE IF NOT EXISTS {RUN_ENTITIES_TABLE} (
    run_id VARCHAR(64) NOT NULL,
    entity_type VARCHAR(255) NOT NULL,
    state VARCHAR(16) NOT NULL,
    records_total INTEGER NOT NULL DEFAULT 0,
    records_processed INTEGER NOT NULL DEFAULT 0,
    records_failed INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    failures {t["json"]},
    checkpoint_id VARCHAR(64),
    started {t["bool"]} NOT NULL DEFAULT {t["false"]},
    updated_at {t["timestamp"]} NOT NULL,
    PRIMARY KEY (run_id, entity_type)
);""",
        f"""CREATE TABLE IF NOT EXISTS {SNAPSHOTS_TABLE} (
    id VARCHAR(64) PRIMARY KEY,
    run_id VARCHAR(64),
    entity_type VARCHAR(255) NOT NULL,
    legacy_id VARCHAR(255) NOT NULL,
    new_id VARCHAR(255) NOT NULL,
    row_data {t["json"]} NOT NULL,
    created_at {t["timestamp"]} NOT NULL
);""",
        f"CREATE INDEX IF NOT EXISTS idx_{SNAPSHOTS_TABLE}_record "
        f"ON {SNAPSHOTS_TABLE}(entity_type, legacy_id);",
        f"""CREATE TABLE IF NOT EXISTS {MANUAL_REVIEWS_TABLE} (
    id VARCHAR(64) PRIMARY KEY,
    entity_type VARCHAR(255) NOT NULL,
    legacy_id VARCHAR(255) NOT NULL,
    new_id VARCHAR(255),
    change_type VARCHAR(16) NOT NULL,
    content_hash VARCHAR(64),
    source_row {t["json"]},
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    created_at {t["timestamp"]} NOT NULL
);""",
    ]


async def create_control_tables(bind: AsyncEngine | AsyncConnection) -> None:
    """
    Create the control tables if they do not exist.

    Args:
        bind: Engine or connection of the destination database
    """
    dialect = bind.dialect.name
    if dialect not in _TYPES:
        raise ValueError(f"Unsupported dialect for control tables: {dialect}")
    statements = control_table_ddl(dialect)  # type: ignore[arg-type]
    if isinstance(bind, AsyncEngine):
        async with bind.begin() as conn:
            for statement in statements:
                await conn.execute(text(statement))
    else:
        for statement in statements:
            await bind.execute(text(statement))
    logger.info("Created %d control table statements on %s", len(statements), dialect)


__all__ = [
    "MAPPINGS_TABLE",
    "CHECKPOINTS_TABLE",
    "RUNS_TABLE",
    "RUN_ENTITIES_TABLE",
    "SNAPSHOTS_TABLE",
    "MANUAL_REVIEWS_TABLE",
    "MAPPING_KEY",
    "CHECKPOINT_KEY",
    "RUN_KEY",
    "RUN_ENTITY_KEY",
    "CONTROL_UNIQUE_CONSTRAINTS",
    "control_table_ddl",
    "create_control_tables",
]
