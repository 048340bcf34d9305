"""
Unit tests for content hashing and JSON serialization helpers.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from differential_sync.serialization import (
    canonical_json,
    content_hash,
    json_dumps,
    json_loads,
    parse_datetime,
)
from differential_sync.serialization.hashing import canonical_fields


class TestContentHash:
    """Tests for content_hash."""

    def test_key_order_does_not_matter(self) -> None:
        """Canonical JSON sorts keys."""
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_volatile_fields_excluded_by_default(self) -> None:
        """Ids and audit timestamps do not affect the hash."""
        base = {"name": "Ada"}
        touched = {"id": 9, "name": "Ada", "created_at": "x", "updated_at": "y", "deleted_at": None}
        assert content_hash(base) == content_hash(touched)

    def test_explicit_fields_hash_missing_as_null(self) -> None:
        """A missing field in an explicit set hashes like None."""
        assert content_hash({}, fields=["name"]) == content_hash({"name": None}, fields=["name"])

    def test_value_change_changes_hash(self) -> None:
        """Any canonical value change is detected."""
        assert content_hash({"amount": Decimal("1.10")}) != content_hash({"amount": Decimal("1.1")})

    def test_hash_is_sha256_hex(self) -> None:
        """Digest is 64 hex characters."""
        digest = content_hash({"name": "Ada"})
        assert len(digest) == 64
        int(digest, 16)

    def test_canonical_fields_custom_exclude(self) -> None:
        """A custom exclusion set replaces the default."""
        assert canonical_fields({"id": 1, "name": "Ada"}, exclude=["name"]) == {"id": 1}


class TestJsonHelpers:
    """Tests for the JSON helpers."""

    def test_dumps_special_types(self) -> None:
        """UUIDs, datetimes, decimals and bytes are encoded."""
        encoded = json_loads(
            json_dumps(
                {
                    "id": UUID("12345678-1234-5678-1234-567812345678"),
                    "at": datetime(2024, 1, 1, tzinfo=UTC),
                    "amount": Decimal("9.99"),
                    "blob": b"\x01\x02",
                }
            )
        )
        assert encoded == {
            "id": "12345678-1234-5678-1234-567812345678",
            "at": "2024-01-01T00:00:00+00:00",
            "amount": "9.99",
            "blob": "0102",
        }

    def test_loads_passes_decoded_values_through(self) -> None:
        """Driver-decoded JSON and None are returned unchanged."""
        assert json_loads(None) is None
        assert json_loads({"a": 1}) == {"a": 1}

    def test_canonical_json_is_compact(self) -> None:
        """No whitespace, sorted keys."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_parse_datetime(self) -> None:
        """ISO text and naive values become aware UTC datetimes."""
        assert parse_datetime(None) is None
        assert parse_datetime("2024-01-01T00:00:00") == datetime(2024, 1, 1, tzinfo=UTC)
        aware = datetime(2024, 1, 1, tzinfo=UTC)
        assert parse_datetime(aware) is aware
