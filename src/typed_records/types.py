"""Field and schema definitions for the typed_records library."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from typed_records.errors import SchemaError, UnknownFieldError


class FieldKind(Enum):
    """Closed set of semantic field types supported by schemas."""

    ID = "id"
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    BINARY = "binary"
    UUID = "uuid"
    MAP = "map"

    @property
    def is_numeric(self) -> bool:
        """Return whether values of this kind are numbers."""
        return self in (FieldKind.ID, FieldKind.INTEGER, FieldKind.FLOAT, FieldKind.DECIMAL)


# Mapping from kind name strings to FieldKind enum values
FIELD_KIND_NAMES: dict[str, FieldKind] = {fk.value: fk for fk in FieldKind}

# Name of the primary key added when a schema does not declare one
DEFAULT_PRIMARY_KEY = "id"


def snake_case(name: str) -> str:
    """Convert a CamelCase schema name to snake_case."""
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    return name.lower()


def pluralize(word: str) -> str:
    """Naive English plural used for default relation names."""
    if re.search(r"(s|x|z|ch|sh)$", word):
        return word + "es"
    if re.search(r"[^aeiou]y$", word):
        return word[:-1] + "ies"
    return word + "s"


def default_relation(schema_name: str) -> str:
    """Return the relation name a schema maps to when none is given."""
    return pluralize(snake_case(schema_name))


@dataclass(frozen=True)
class FieldSpec:
    """Definition of a single field within a schema.

    Virtual fields take part in casting and validation but are never
    persisted (e.g. a plain-text password or its confirmation).
    """

    name: str
    kind: FieldKind
    virtual: bool = False
    default: Any = None
    primary_key: bool = False

    def default_value(self) -> Any:
        """Return a fresh copy of the default value."""
        if isinstance(self.default, (dict, list)):
            return copy.deepcopy(self.default)
        return self.default


class RelationshipKind(Enum):
    """How two schemas are associated."""

    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"


@dataclass(frozen=True)
class Relationship:
    """A declared association from an owner schema to a related schema.

    The join condition is ``related.related_key = owner.owner_key``. A
    ``related_key`` of None means the related schema's primary key and is
    resolved by the registry once the related schema is known.
    """

    kind: RelationshipKind
    name: str
    related: str
    owner_key: str
    related_key: str | None = None

    @classmethod
    def belongs_to(cls, name: str, related: str, foreign_key: str | None = None) -> Relationship:
        return cls(
            kind=RelationshipKind.BELONGS_TO,
            name=name,
            related=related,
            owner_key=foreign_key or f"{name}_id",
        )

    @classmethod
    def has_many(
        cls, name: str, related: str, owner: str, foreign_key: str | None = None,
        owner_key: str = DEFAULT_PRIMARY_KEY,
    ) -> Relationship:
        return cls(
            kind=RelationshipKind.HAS_MANY,
            name=name,
            related=related,
            owner_key=owner_key,
            related_key=foreign_key or f"{snake_case(owner)}_id",
        )

    @classmethod
    def has_one(
        cls, name: str, related: str, owner: str, foreign_key: str | None = None,
        owner_key: str = DEFAULT_PRIMARY_KEY,
    ) -> Relationship:
        return cls(
            kind=RelationshipKind.HAS_ONE,
            name=name,
            related=related,
            owner_key=owner_key,
            related_key=foreign_key or f"{snake_case(owner)}_id",
        )


@dataclass(frozen=True)
class SchemaDescriptor:
    """An ordered set of fields bound to a relation name.

    Build descriptors with ``SchemaDescriptor.define`` so that the
    primary key and foreign-key fields are filled in and the invariants
    are checked. Descriptors are immutable once built.
    """

    name: str
    relation: str
    fields: tuple[FieldSpec, ...]
    relationships: tuple[Relationship, ...] = ()
    primary_key: str = DEFAULT_PRIMARY_KEY
    _by_name: dict[str, FieldSpec] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        by_name: dict[str, FieldSpec] = {}
        for f in self.fields:
            if f.name in by_name:
                raise SchemaError(f"Schema '{self.name}': duplicate field '{f.name}'")
            by_name[f.name] = f
        if self.primary_key not in by_name:
            raise SchemaError(
                f"Schema '{self.name}': primary key '{self.primary_key}' is not a field"
            )
        object.__setattr__(self, "_by_name", by_name)

    @classmethod
    def define(
        cls,
        name: str,
        fields: Iterable[FieldSpec],
        *,
        relation: str | None = None,
        relationships: Iterable[Relationship] = (),
    ) -> SchemaDescriptor:
        """Build a descriptor, adding the implicit primary key and foreign keys.

        Args:
            name: Schema (entity kind) name, e.g. "User".
            fields: Declared fields in order.
            relation: Relation (table) name. Defaults to the snake_case
                plural of the schema name.
            relationships: Associations to other schemas.

        Returns:
            A validated SchemaDescriptor.

        Raises:
            SchemaError: If field or relationship names clash or more than
                one primary key is declared.
        """
        field_list = list(fields)
        rel_list = list(relationships)

        pks = [f for f in field_list if f.primary_key]
        if len(pks) > 1:
            names = ", ".join(f.name for f in pks)
            raise SchemaError(f"Schema '{name}': multiple primary keys ({names})")
        if pks:
            primary_key = pks[0].name
        else:
            if any(f.name == DEFAULT_PRIMARY_KEY for f in field_list):
                raise SchemaError(
                    f"Schema '{name}': field '{DEFAULT_PRIMARY_KEY}' must be declared primary_key"
                )
            primary_key = DEFAULT_PRIMARY_KEY
            field_list.insert(0, FieldSpec(DEFAULT_PRIMARY_KEY, FieldKind.ID, primary_key=True))

        declared = {f.name for f in field_list}
        rel_names: set[str] = set()
        for rel in rel_list:
            if rel.name in rel_names:
                raise SchemaError(f"Schema '{name}': duplicate relationship '{rel.name}'")
            if rel.name in declared:
                raise SchemaError(
                    f"Schema '{name}': relationship '{rel.name}' clashes with a field"
                )
            rel_names.add(rel.name)
            # belongs_to carries its foreign key on the owner side
            if rel.kind is RelationshipKind.BELONGS_TO and rel.owner_key not in declared:
                field_list.append(FieldSpec(rel.owner_key, FieldKind.ID))
                declared.add(rel.owner_key)

        return cls(
            name=name,
            relation=relation or default_relation(name),
            fields=tuple(field_list),
            relationships=tuple(rel_list),
            primary_key=primary_key,
        )

    def field(self, name: str) -> FieldSpec:
        """Get a field by name.

        Raises:
            UnknownFieldError: If the field is not part of this schema.
        """
        f = self._by_name.get(name)
        if f is None:
            raise UnknownFieldError(self.name, name)
        return f

    def has_field(self, name: str) -> bool:
        return name in self._by_name

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def persisted_fields(self) -> list[FieldSpec]:
        """Fields stored in the relation, in declaration order."""
        return [f for f in self.fields if not f.virtual]

    def relationship(self, name: str) -> Relationship | None:
        for rel in self.relationships:
            if rel.name == name:
                return rel
        return None

    def defaults(self) -> dict[str, Any]:
        """Return the default value of every field."""
        return {f.name: f.default_value() for f in self.fields}


class SchemaRegistry:
    """Registry of all declared schemas."""

    def __init__(self) -> None:
        self._schemas: dict[str, SchemaDescriptor] = {}
        self._relations: dict[str, str] = {}

    def register(self, descriptor: SchemaDescriptor) -> SchemaDescriptor:
        """Register a schema descriptor.

        Raises:
            SchemaError: If the schema name or relation is already taken.
        """
        if descriptor.name in self._schemas:
            raise SchemaError(f"Schema '{descriptor.name}' is already defined")
        owner = self._relations.get(descriptor.relation)
        if owner is not None:
            raise SchemaError(
                f"Relation '{descriptor.relation}' is already mapped by schema '{owner}'"
            )
        self._schemas[descriptor.name] = descriptor
        self._relations[descriptor.relation] = descriptor.name
        return descriptor

    def get(self, name: str) -> SchemaDescriptor | None:
        """Get a schema by schema name."""
        return self._schemas.get(name)

    def get_or_raise(self, name: str) -> SchemaDescriptor:
        """Get a schema by schema name, raising if not found."""
        descriptor = self._schemas.get(name)
        if descriptor is None:
            raise KeyError(f"Schema '{name}' not found")
        return descriptor

    def for_relation(self, relation: str) -> SchemaDescriptor | None:
        """Get the schema mapped to a relation name."""
        name = self._relations.get(relation)
        if name is None:
            return None
        return self._schemas[name]

    def resolve(self, name_or_relation: str) -> SchemaDescriptor | None:
        """Look a schema up by schema name first, then by relation name."""
        return self._schemas.get(name_or_relation) or self.for_relation(name_or_relation)

    def resolve_relationship(
        self, owner: SchemaDescriptor, name: str
    ) -> tuple[SchemaDescriptor, str, str]:
        """Resolve an association of ``owner`` to its join keys.

        Returns:
            (related descriptor, owner key, related key).

        Raises:
            KeyError: If the relationship or the related schema is unknown.
        """
        rel = owner.relationship(name)
        if rel is None:
            raise KeyError(f"Schema '{owner.name}' has no relationship '{name}'")
        related = self.get_or_raise(rel.related)
        related_key = rel.related_key or related.primary_key
        owner.field(rel.owner_key)
        related.field(related_key)
        return related, rel.owner_key, related_key

    def list_schemas(self) -> list[str]:
        """List all registered schema names."""
        return list(self._schemas.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._schemas

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._schemas.values())

    def __len__(self) -> int:
        return len(self._schemas)
