"""Common type definitions for the differential_sync library."""

from typing import Any

# A row as read from or written to a store, addressed by column name
Row = dict[str, Any]

# Legacy primary key of a source record
RecordKey = int | str

# Entity type key registered with the schema provider (e.g. "doctors")
EntityType = str

# Identifier of a sync run / session
RunId = str
