"""Schema class for declaring and using record schemas."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from typed_records.casting import load_value
from typed_records.entity import Entity, EntityState
from typed_records.parsing import SchemaParser
from typed_records.types import (
    FieldSpec,
    Relationship,
    SchemaDescriptor,
    SchemaRegistry,
)


class Schema:
    """Declared schemas plus helpers to build and load entities."""

    def __init__(self, registry: SchemaRegistry | None = None) -> None:
        """Initialize a schema set.

        Args:
            registry: Registry with the schema descriptors. An empty one
                is created when omitted.
        """
        self.registry = registry if registry is not None else SchemaRegistry()

    @classmethod
    def parse(cls, declarations: str) -> Schema:
        """Parse schema declarations and create a schema set.

        Args:
            declarations: DSL string declaring schemas.

        Returns:
            A new Schema instance.
        """
        parser = SchemaParser()
        return cls(parser.parse(declarations))

    def extend(self, declarations: str) -> list[str]:
        """Parse more declarations into this schema set.

        Returns:
            Names of the newly declared schemas.
        """
        before = set(self.registry.list_schemas())
        SchemaParser().parse(declarations, self.registry)
        return [name for name in self.registry.list_schemas() if name not in before]

    def define(
        self,
        name: str,
        fields: Iterable[FieldSpec],
        *,
        relation: str | None = None,
        relationships: Iterable[Relationship] = (),
    ) -> SchemaDescriptor:
        """Declare a schema programmatically and register it.

        Args:
            name: Schema name.
            fields: Declared fields in order.
            relation: Relation name (defaults to the snake_case plural).
            relationships: Associations to other schemas.

        Returns:
            The registered descriptor.
        """
        descriptor = SchemaDescriptor.define(
            name, fields, relation=relation, relationships=relationships
        )
        return self.registry.register(descriptor)

    def get(self, name: str) -> SchemaDescriptor:
        """Get a schema descriptor by name.

        Raises:
            KeyError: If the schema is not found.
        """
        return self.registry.get_or_raise(name)

    def list_schemas(self) -> list[str]:
        """List all declared schema names."""
        return self.registry.list_schemas()

    def new(self, name: str, **values: Any) -> Entity:
        """Build an unsaved entity of the named schema, with defaults applied."""
        return Entity.build(self.get(name), **values)

    def load(self, descriptor: SchemaDescriptor | str, row: Mapping[str, Any]) -> Entity:
        """Decode a storage row into a loaded entity.

        Columns that are not fields of the schema are ignored; missing
        fields take their defaults.
        """
        if isinstance(descriptor, str):
            descriptor = self.get(descriptor)
        return load_entity(descriptor, row)

    def __contains__(self, name: str) -> bool:
        return name in self.registry


def load_entity(descriptor: SchemaDescriptor, row: Mapping[str, Any]) -> Entity:
    """Decode a storage row into a loaded entity of ``descriptor``."""
    values = {
        f.name: load_value(f.kind, row[f.name])
        for f in descriptor.fields
        if f.name in row
    }
    return Entity(descriptor, values, EntityState.LOADED)
