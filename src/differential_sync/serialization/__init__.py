"""
Serialization utilities for differential sync.

JSON helpers used for the control tables and the canonical content hash
used by change detection.

Example:
    >>> from differential_sync.serialization import content_hash, json_dumps
    >>> content_hash({"name": "Ada", "updated_at": "2024-01-01"})
"""

from differential_sync.serialization.hashing import (
    DEFAULT_VOLATILE_FIELDS,
    HASH_ALGORITHM,
    canonical_fields,
    content_hash,
)
from differential_sync.serialization.json import (
    SyncJSONEncoder,
    canonical_json,
    json_dumps,
    json_loads,
    parse_datetime,
)

__all__ = [
    "DEFAULT_VOLATILE_FIELDS",
    "HASH_ALGORITHM",
    "SyncJSONEncoder",
    "canonical_fields",
    "canonical_json",
    "content_hash",
    "json_dumps",
    "json_loads",
    "parse_datetime",
]
