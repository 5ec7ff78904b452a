"""Composable query IR.

A query is a chain of immutable nodes; every builder method returns a
new node whose ``parent`` is the node it was called on. Nothing is
validated until the query is compiled, so a partially built query can be
shared and extended in several directions::

    base = from_(User, as_="u").where(field("u.active").eq(True))
    recent = base.order_by(desc("u.inserted_at")).limit(10)
    admins = base.where(field("u.admin").eq(True))
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from typed_records.expressions import (
    Expr,
    OrderItem,
    and_,
    to_field_expr,
    to_order_item,
    typed_key,
)
from typed_records.types import SchemaDescriptor

JOIN_KINDS = ("inner", "left")


@dataclass(frozen=True)
class Assoc:
    """Join target that follows a declared relationship of ``binding``."""

    binding: str
    relationship: str


def assoc(binding: str, relationship: str) -> Assoc:
    """Reference the relationship ``relationship`` of the schema bound as ``binding``."""
    return Assoc(binding, relationship)


class Query:
    """Base class for IR nodes, providing the fluent builder methods."""

    parent: Query | None

    def where(self, *predicates: Expr) -> Filter:
        """Add a filter, AND-ed with earlier filters."""
        return Filter(self, and_(*predicates))

    def or_where(self, *predicates: Expr) -> Filter:
        """Add a filter, OR-ed with everything filtered so far."""
        return Filter(self, and_(*predicates), conjunction="or")

    def having(self, *predicates: Expr) -> Filter:
        """Add a post-grouping filter; aggregates are allowed here."""
        return Filter(self, and_(*predicates), in_having=True)

    def join(
        self,
        target: str | SchemaDescriptor | Assoc,
        as_: str,
        on: Expr | None = None,
        kind: str = "inner",
    ) -> Join:
        """Join another relation under the binding ``as_``.

        Args:
            target: A relation or schema name, a descriptor, or an
                ``assoc(binding, relationship)`` to derive the join
                condition from a declared relationship.
            as_: Binding name for the joined relation.
            on: Join condition. Required unless ``target`` is an
                association, in which case it is AND-ed with the derived
                condition.
            kind: "inner" or "left".
        """
        if kind not in JOIN_KINDS:
            raise ValueError(f"Unknown join kind '{kind}'")
        if isinstance(target, SchemaDescriptor):
            target = target.name
        return Join(self, target, as_, on, kind)

    def select(self, *exprs: Expr | str) -> Projection:
        """Set the output columns. A later select replaces an earlier one."""
        return Projection(self, tuple(to_field_expr(e) for e in exprs))

    def distinct(self) -> Distinct:
        return Distinct(self)

    def group_by(self, *exprs: Expr | str) -> GroupBy:
        return GroupBy(self, tuple(to_field_expr(e) for e in exprs))

    def order_by(self, *items: OrderItem | Expr | str | tuple[Any, str]) -> OrderBy:
        """Add ordering terms; earlier terms take precedence over later ones."""
        return OrderBy(self, tuple(to_order_item(i) for i in items))

    def limit(self, count: int) -> Limit:
        _check_count("limit", count)
        return Limit(self, count)

    def offset(self, count: int) -> Offset:
        _check_count("offset", count)
        return Offset(self, count)

    def fragment(self, raw: str, *params: Any) -> Fragment:
        """Append a raw trailing clause (e.g. ``FOR UPDATE``) with ``?`` slots."""
        return Fragment(self, raw, tuple(params))

    def nodes(self) -> list[Query]:
        """Return the chain of nodes from the source to this node."""
        chain: list[Query] = []
        node: Query | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain


def _check_count(what: str, count: int) -> None:
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ValueError(f"{what} must be a non-negative integer, got {count!r}")


@dataclass(frozen=True)
class Source(Query):
    """The root relation of a query.

    ``source`` is a schema name or a relation name; the compiler resolves
    it against the schema registry when one is available.
    """

    source: str
    binding: str
    parent: None = None


@dataclass(frozen=True)
class Join(Query):
    parent: Query
    target: str | Assoc
    binding: str
    on: Expr | None = None
    kind: str = "inner"


@dataclass(frozen=True)
class Filter(Query):
    parent: Query
    predicate: Expr
    in_having: bool = False
    conjunction: str = "and"


@dataclass(frozen=True)
class Projection(Query):
    parent: Query
    exprs: tuple[Expr, ...]


@dataclass(frozen=True)
class Distinct(Query):
    parent: Query


@dataclass(frozen=True)
class GroupBy(Query):
    parent: Query
    exprs: tuple[Expr, ...]


@dataclass(frozen=True)
class OrderBy(Query):
    parent: Query
    items: tuple[OrderItem, ...]


@dataclass(frozen=True)
class Limit(Query):
    parent: Query
    count: int


@dataclass(frozen=True)
class Offset(Query):
    parent: Query
    count: int


@dataclass(frozen=True, eq=False)
class Fragment(Query):
    """A raw trailing clause with positional parameters."""

    parent: Query
    raw: str
    params: tuple[Any, ...] = ()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fragment):
            return NotImplemented
        return (
            self.parent == other.parent
            and self.raw == other.raw
            and typed_key(self.params) == typed_key(other.params)
        )

    def __hash__(self) -> int:
        return hash((self.parent, self.raw, typed_key(self.params)))


def from_(source: str | SchemaDescriptor, as_: str | None = None) -> Source:
    """Start a query over a relation or schema.

    Args:
        source: Relation name, schema name or schema descriptor.
        as_: Binding name. Defaults to the relation (or schema) name.
    """
    if isinstance(source, SchemaDescriptor):
        name = source.name
        binding = as_ or source.relation
    else:
        name = source
        binding = as_ or source
    return Source(name, binding)
