"""
JSON serialization utilities for differential sync types.

This module provides JSON serialization for the values that appear in
source and destination rows but are not natively JSON-serializable, such
as UUIDs, datetimes, dates, decimals and raw bytes.

Example:
    >>> from differential_sync.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> data = {"id": uuid4()}
    >>> json_str = json_dumps(data)
    >>> parsed = json_loads(json_str)
"""

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class SyncJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles the scalar types found in relational rows.

    - UUID objects: string representation
    - datetime and date objects: ISO 8601 string
    - Decimal objects: string representation (no float rounding)
    - bytes: hexadecimal string
    - Enum members: their value

    Example:
        >>> import json
        >>> from datetime import datetime, UTC
        >>> json.dumps({"at": datetime.now(UTC)}, cls=SyncJSONEncoder)
    """

    def default(self, obj: Any) -> Any:
        """
        Convert non-serializable objects to JSON-serializable formats.

        Raises:
            TypeError: If object type is not supported
        """
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, bytes | bytearray | memoryview):
            return bytes(obj).hex()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to JSON string with UUID, datetime and Decimal support.

    Args:
        obj: Object to serialize

    Returns:
        JSON string representation
    """
    return json.dumps(obj, cls=SyncJSONEncoder)


def json_loads(s: str | bytes | None) -> Any:
    """
    Deserialize JSON string to Python object.

    UUID and datetime strings are NOT converted back to their original types.
    Values that are already decoded (drivers such as asyncpg return JSONB
    columns as Python objects) are returned unchanged, and None stays None.

    Args:
        s: JSON string to deserialize

    Returns:
        Python object representation
    """
    if s is None or not isinstance(s, str | bytes):
        return s
    return json.loads(s)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """
    Parse a timestamp read back from a store.

    SQLite returns timestamps as ISO 8601 text; PostgreSQL returns datetime
    objects. Naive values are taken to be UTC.

    Args:
        value: ISO string, datetime or None

    Returns:
        Timezone-aware datetime, or None
    """
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def canonical_json(obj: Any) -> str:
    """
    Serialize object to a canonical JSON string.

    Keys are sorted and separators carry no whitespace, so two mappings with
    the same content always produce the same string regardless of key order.

    Args:
        obj: Object to serialize

    Returns:
        Canonical JSON string
    """
    return json.dumps(obj, cls=SyncJSONEncoder, sort_keys=True, separators=(",", ":"))


__all__ = [
    "SyncJSONEncoder",
    "json_dumps",
    "json_loads",
    "canonical_json",
    "parse_datetime",
]
