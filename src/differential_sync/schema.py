"""
Entity descriptors, transformers and the schema provider.

Source and destination rows are plain dictionaries. Everything the engine
needs to know about an entity type (tables, key columns, timestamp column,
hash field set, dependencies) is resolved once into an EntityDescriptor at
registration, and the core algorithms only branch on descriptor fields.

Business field mapping lives behind the EntityTransformer protocol.

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(
    ...     EntityDescriptor(
    ...         entity_type="doctors",
    ...         source_table="legacy_doctors",
    ...         destination_table="doctors",
    ...     ),
    ...     FieldMapTransformer(renames={"full_name": "name"}),
    ... )
    >>> registry.get_descriptor("doctors").timestamp_field
    'updated_at'
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from differential_sync.exceptions import RecordValidationError, SchemaError
from differential_sync.serialization import DEFAULT_VOLATILE_FIELDS, content_hash
from differential_sync.stores.interface import Condition
from differential_sync.types import RecordKey, Row

if TYPE_CHECKING:
    from differential_sync.repositories.mapping import MappingStore
    from differential_sync.stores.interface import StoreSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Static description of one entity type.

    Attributes:
        entity_type: Entity type name (e.g. "doctors")
        source_table: Legacy table holding the source rows
        destination_table: Table the transformed rows are written to
        source_key: Primary key column of the source table
        destination_key: Key column of the destination table, receives new_id
        legacy_id_field: Destination column that stores the legacy id
            (None to not store it)
        timestamp_field: Source modification timestamp column
            (None = no timestamp; every row is compared by hash)
        key_type: Python type of source keys, int or str
        dependencies: Entity types whose records must be migrated first
        hash_fields: Explicit canonical field set (None = all columns minus
            volatile_fields and timestamp_field)
        volatile_fields: Columns excluded from the content hash
        active_conditions: Predicates selecting the live source rows;
            mapped rows outside this set are reported as deleted
        preserved_fields: Destination-only columns never overwritten on update
        hash_field: Destination column receiving the source content hash
    """

    entity_type: str
    source_table: str
    destination_table: str
    source_key: str = "id"
    destination_key: str = "id"
    legacy_id_field: str | None = "legacy_id"
    timestamp_field: str | None = "updated_at"
    key_type: type = int
    dependencies: tuple[str, ...] = ()
    hash_fields: tuple[str, ...] | None = None
    volatile_fields: frozenset[str] = DEFAULT_VOLATILE_FIELDS
    active_conditions: tuple[Condition, ...] = ()
    preserved_fields: tuple[str, ...] = ()
    hash_field: str | None = None

    def __post_init__(self) -> None:
        """Validate the descriptor."""
        for name in ("entity_type", "source_table", "destination_table", "source_key"):
            if not getattr(self, name):
                raise ValueError(f"{name} must not be empty")
        if self.key_type not in (int, str):
            raise ValueError(f"key_type must be int or str, got {self.key_type!r}")
        if self.entity_type in self.dependencies:
            raise ValueError(f"Entity type {self.entity_type!r} cannot depend on itself")

    def coerce_key(self, value: Any) -> RecordKey:
        """Convert a key read from storage (e.g. mapping text) to key_type."""
        if isinstance(value, self.key_type):
            return value  # type: ignore[no-any-return]
        return self.key_type(value)  # type: ignore[no-any-return]

    @property
    def hash_exclusions(self) -> frozenset[str]:
        """Columns left out of the content hash: volatile fields and the timestamp field."""
        if self.timestamp_field is None:
            return self.volatile_fields
        return self.volatile_fields | {self.timestamp_field}

    def content_hash(self, row: Mapping[str, Any]) -> str:
        """
        Content hash of a source row over the canonical field set.

        Without explicit hash_fields every column counts except the
        hash_exclusions, so touching a row without changing it keeps its hash.
        """
        return content_hash(row, fields=self.hash_fields, exclude=self.hash_exclusions)


class TransformContext:
    """
    Context handed to a transformer for one record.

    Lookups run against the current destination transaction, so parent
    mappings written earlier in the same batch are visible.

    Attributes:
        entity_type: Entity type being transformed
        legacy_id: Source key of the record
        new_id: Destination key assigned to the record
    """

    def __init__(
        self,
        entity_type: str,
        legacy_id: RecordKey,
        new_id: str,
        *,
        mappings: MappingStore,
        session: StoreSession | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.legacy_id = legacy_id
        self.new_id = new_id
        self._mappings = mappings
        self._session = session

    async def resolve_id(self, entity_type: str, legacy_id: RecordKey) -> str | None:
        """Return the new id of another record, or None if it is not mapped."""
        return await self._mappings.resolve_id(entity_type, legacy_id, session=self._session)

    async def require_id(self, entity_type: str, legacy_id: RecordKey) -> str:
        """
        Return the new id of a record that must already be migrated.

        Raises:
            RecordValidationError: If the referenced record has no mapping
        """
        new_id = await self.resolve_id(entity_type, legacy_id)
        if new_id is None:
            raise RecordValidationError(
                f"Missing mapping for referenced {entity_type} {legacy_id!r}",
                entity_type=self.entity_type,
                record_id=self.legacy_id,
            )
        return new_id


@runtime_checkable
class EntityTransformer(Protocol):
    """Converts a source row to a destination row."""

    async def transform(self, row: Row, context: TransformContext) -> Row:
        """
        Transform one source row.

        Args:
            row: Source row
            context: Identity context of the record

        Returns:
            Destination row (the destination key, legacy id and hash columns
            are filled in by the resolver)

        Raises:
            RecordValidationError: If the row cannot be transformed
        """
        ...


class FieldMapTransformer:
    """
    Generic transformer driven by field maps.

    Args:
        renames: Source column -> destination column
        constants: Destination columns set to fixed values
        references: Destination column -> (source column, parent entity type);
            the source value is a legacy id resolved through the mapping store
        exclude: Source columns dropped from the destination row

    Example:
        >>> transformer = FieldMapTransformer(
        ...     renames={"doc_name": "name"},
        ...     references={"doctor_id": ("doctor_ref", "doctors")},
        ...     exclude=("doctor_ref",),
        ... )
    """

    def __init__(
        self,
        *,
        renames: Mapping[str, str] | None = None,
        constants: Mapping[str, Any] | None = None,
        references: Mapping[str, tuple[str, str]] | None = None,
        exclude: Iterable[str] = (),
    ) -> None:
        self.renames = dict(renames or {})
        self.constants = dict(constants or {})
        self.references = dict(references or {})
        self.exclude = frozenset(exclude)

    async def transform(self, row: Row, context: TransformContext) -> Row:
        result: Row = {}
        for column, value in row.items():
            if column in self.exclude:
                continue
            result[self.renames.get(column, column)] = value

        for target, (source_column, parent_type) in self.references.items():
            legacy_ref = row.get(source_column)
            if legacy_ref is None:
                result[target] = None
                continue
            result[target] = await context.require_id(parent_type, legacy_ref)

        result.update(self.constants)
        return result


@runtime_checkable
class SchemaProvider(Protocol):
    """Resolves entity types to descriptors and transformers."""

    def entity_types(self) -> list[str]:
        """Registered entity types, in registration order."""
        ...

    def get_descriptor(self, entity_type: str) -> EntityDescriptor:
        """
        Return the descriptor of an entity type.

        Raises:
            SchemaError: If the entity type is unknown
        """
        ...

    def get_transformer(self, entity_type: str) -> EntityTransformer:
        """
        Return the transformer of an entity type.

        Raises:
            SchemaError: If the entity type is unknown
        """
        ...


@dataclass
class _Registration:
    descriptor: EntityDescriptor
    transformer: EntityTransformer = field(default_factory=FieldMapTransformer)


class SchemaRegistry:
    """
    In-process SchemaProvider.

    Example:
        >>> registry = SchemaRegistry()
        >>> registry.register(doctors, FieldMapTransformer())
        >>> registry.register(appointments, AppointmentTransformer())
        >>> registry.validate()
    """

    def __init__(self, descriptors: Sequence[EntityDescriptor] = ()) -> None:
        self._entries: dict[str, _Registration] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(
        self,
        descriptor: EntityDescriptor,
        transformer: EntityTransformer | None = None,
        *,
        replace: bool = False,
    ) -> None:
        """
        Register an entity type.

        Args:
            descriptor: Entity descriptor
            transformer: Row transformer (defaults to an identity FieldMapTransformer)
            replace: Allow replacing an existing registration

        Raises:
            SchemaError: If the entity type is already registered and replace is False
        """
        if descriptor.entity_type in self._entries and not replace:
            raise SchemaError(
                f"Entity type already registered: {descriptor.entity_type}",
                entity_type=descriptor.entity_type,
            )
        self._entries[descriptor.entity_type] = _Registration(
            descriptor=descriptor,
            transformer=transformer or FieldMapTransformer(),
        )
        logger.debug("Registered entity type %s", descriptor.entity_type)

    def entity_types(self) -> list[str]:
        return list(self._entries)

    def _entry(self, entity_type: str) -> _Registration:
        try:
            return self._entries[entity_type]
        except KeyError:
            raise SchemaError(
                f"Unknown entity type: {entity_type}",
                entity_type=entity_type,
            ) from None

    def get_descriptor(self, entity_type: str) -> EntityDescriptor:
        return self._entry(entity_type).descriptor

    def get_transformer(self, entity_type: str) -> EntityTransformer:
        return self._entry(entity_type).transformer

    def validate(self) -> None:
        """
        Check that every declared dependency is registered.

        Raises:
            SchemaError: Naming the first entity with an unknown dependency
        """
        for entity_type, entry in self._entries.items():
            missing = [d for d in entry.descriptor.dependencies if d not in self._entries]
            if missing:
                raise SchemaError(
                    f"Entity type {entity_type} depends on unknown types: {', '.join(missing)}",
                    entity_type=entity_type,
                )

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "EntityDescriptor",
    "EntityTransformer",
    "FieldMapTransformer",
    "SchemaProvider",
    "SchemaRegistry",
    "TransformContext",
]
