"""
Content hashing for change detection.

A record's content hash is the sha256 digest of its canonical JSON form,
restricted to the entity's canonical field set. Volatile audit columns
(primary key and timestamps) are excluded so that touching a row without
changing its content does not register as a modification.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from typing import Any

from differential_sync.serialization.json import canonical_json

HASH_ALGORITHM = "sha256"

DEFAULT_VOLATILE_FIELDS: frozenset[str] = frozenset({"id", "created_at", "updated_at", "deleted_at"})
"""Columns excluded from content hashing unless an explicit field set is given."""


def canonical_fields(
    row: Mapping[str, Any],
    *,
    fields: Iterable[str] | None = None,
    exclude: Iterable[str] = DEFAULT_VOLATILE_FIELDS,
) -> dict[str, Any]:
    """
    Select the canonical field set of a row.

    Args:
        row: Source row
        fields: Explicit fields to include. Missing fields hash as null.
        exclude: Fields to drop when no explicit field set is given

    Returns:
        Dictionary of the fields that participate in the hash
    """
    if fields is not None:
        return {name: row.get(name) for name in fields}
    excluded = frozenset(exclude)
    return {name: value for name, value in row.items() if name not in excluded}


def content_hash(
    row: Mapping[str, Any],
    *,
    fields: Iterable[str] | None = None,
    exclude: Iterable[str] = DEFAULT_VOLATILE_FIELDS,
) -> str:
    """
    Compute the content hash of a row.

    Example:
        >>> a = content_hash({"id": 1, "name": "Ada", "updated_at": None})
        >>> b = content_hash({"name": "Ada", "id": 2})
        >>> a == b
        True

    Returns:
        Hex-encoded sha256 digest
    """
    payload = canonical_json(canonical_fields(row, fields=fields, exclude=exclude))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = [
    "DEFAULT_VOLATILE_FIELDS",
    "HASH_ALGORITHM",
    "canonical_fields",
    "content_hash",
]
