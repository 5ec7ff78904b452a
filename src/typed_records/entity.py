"""Entity snapshots for schema records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from typed_records.errors import UnknownFieldError
from typed_records.types import SchemaDescriptor


class EntityState(Enum):
    """Where an entity snapshot came from."""

    BUILT = "built"  # constructed in memory, never persisted
    LOADED = "loaded"  # read from or written to the store
    DELETED = "deleted"  # removed from the store


@dataclass(frozen=True)
class Entity:
    """Immutable snapshot of one record of a schema.

    Field values are read with ``entity["name"]``, ``entity.get("name")``
    or attribute access. Every field of the descriptor is present; fields
    never set hold their default.
    """

    descriptor: SchemaDescriptor
    values: Mapping[str, Any]
    state: EntityState = EntityState.BUILT

    def __post_init__(self) -> None:
        for name in self.values:
            if not self.descriptor.has_field(name):
                raise UnknownFieldError(self.descriptor.name, name)
        merged = self.descriptor.defaults()
        merged.update(self.values)
        object.__setattr__(self, "values", MappingProxyType(merged))

    @classmethod
    def build(cls, descriptor: SchemaDescriptor, **values: Any) -> Entity:
        """Build a new, not yet persisted entity."""
        return cls(descriptor, values)

    @property
    def schema_name(self) -> str:
        return self.descriptor.name

    @property
    def primary_key(self) -> Any:
        """Return the primary key value (None until persisted)."""
        return self.values[self.descriptor.primary_key]

    @property
    def persisted(self) -> bool:
        return self.state is EntityState.LOADED

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def replace(self, state: EntityState | None = None, **changes: Any) -> Entity:
        """Return a copy with some field values (and optionally the state) changed."""
        values = dict(self.values)
        values.update(changes)
        return Entity(self.descriptor, values, self.state if state is None else state)

    def to_dict(self, include_virtual: bool = False) -> dict[str, Any]:
        """Return the field values as a plain dict."""
        return {
            f.name: self.values[f.name]
            for f in self.descriptor.fields
            if include_virtual or not f.virtual
        }

    def __getitem__(self, name: str) -> Any:
        try:
            return self.values[name]
        except KeyError:
            raise UnknownFieldError(self.descriptor.name, name) from None

    def __getattr__(self, name: str) -> Any:
        # Only consulted when normal lookup fails, i.e. for field names
        if name.startswith("_") or "values" not in self.__dict__:
            raise AttributeError(name)
        try:
            return self.values[name]
        except KeyError:
            raise AttributeError(
                f"'{self.descriptor.name}' entity has no field '{name}'"
            ) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __repr__(self) -> str:
        pk = self.values.get(self.descriptor.primary_key)
        return f"Entity({self.descriptor.name!r}, {self.descriptor.primary_key}={pk!r}, {self.state.value})"
