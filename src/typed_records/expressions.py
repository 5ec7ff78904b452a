"""Expression trees used inside query IR nodes.

Expressions are frozen dataclasses, so two expressions built the same
way compare and hash equal. Comparison builders are plain methods
(``eq``, ``gt``, ...) rather than operator overloads because ``==`` is
kept for structural equality.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

# Binary operators that compare values (None is not a valid operand)
COMPARISON_OPS = frozenset({"=", "<>", "<", "<=", ">", ">=", "like", "ilike"})

# Binary operators that compute values
ARITHMETIC_OPS = frozenset({"+", "-", "*", "/"})

AGGREGATE_FUNCTIONS = frozenset({"count", "sum", "avg", "min", "max"})


class Expr:
    """Base class for all expressions, with builder methods."""

    def eq(self, other: Any) -> BinaryOp:
        return BinaryOp("=", self, to_expr(other))

    def ne(self, other: Any) -> BinaryOp:
        return BinaryOp("<>", self, to_expr(other))

    def lt(self, other: Any) -> BinaryOp:
        return BinaryOp("<", self, to_expr(other))

    def le(self, other: Any) -> BinaryOp:
        return BinaryOp("<=", self, to_expr(other))

    def gt(self, other: Any) -> BinaryOp:
        return BinaryOp(">", self, to_expr(other))

    def ge(self, other: Any) -> BinaryOp:
        return BinaryOp(">=", self, to_expr(other))

    def like(self, pattern: Any) -> BinaryOp:
        return BinaryOp("like", self, to_expr(pattern))

    def ilike(self, pattern: Any) -> BinaryOp:
        return BinaryOp("ilike", self, to_expr(pattern))

    def add(self, other: Any) -> BinaryOp:
        return BinaryOp("+", self, to_expr(other))

    def sub(self, other: Any) -> BinaryOp:
        return BinaryOp("-", self, to_expr(other))

    def mul(self, other: Any) -> BinaryOp:
        return BinaryOp("*", self, to_expr(other))

    def div(self, other: Any) -> BinaryOp:
        return BinaryOp("/", self, to_expr(other))

    def in_(self, values: Iterable[Any]) -> InList:
        return InList(self, tuple(to_expr(v) for v in values))

    def not_in(self, values: Iterable[Any]) -> InList:
        return InList(self, tuple(to_expr(v) for v in values), negate=True)

    def is_null(self) -> IsNull:
        return IsNull(self)

    def is_not_null(self) -> IsNull:
        return IsNull(self, negate=True)

    def as_(self, name: str) -> Alias:
        return Alias(self, name)

    def asc(self) -> OrderItem:
        return OrderItem(self, "asc")

    def desc(self) -> OrderItem:
        return OrderItem(self, "desc")


@dataclass(frozen=True)
class FieldRef(Expr):
    """A field of the relation introduced under ``binding``."""

    binding: str
    name: str


@dataclass(frozen=True, eq=False)
class Literal(Expr):
    """A value that is always sent as a bound parameter.

    Equality takes the value's type into account, so ``Literal(True)``,
    ``Literal(1)`` and ``Literal(1.0)`` are distinct.
    """

    value: Any

    def __post_init__(self) -> None:
        if isinstance(self.value, list):
            object.__setattr__(self, "value", tuple(self.value))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Literal):
            return NotImplemented
        return typed_key(self.value) == typed_key(other.value)

    def __hash__(self) -> int:
        return hash(typed_key(self.value))


@dataclass(frozen=True)
class BinaryOp(Expr):
    """``left <op> right`` for comparison and arithmetic operators."""

    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class BoolOp(Expr):
    """AND / OR over two or more operands."""

    op: str  # "and" or "or"
    operands: tuple[Expr, ...]


@dataclass(frozen=True)
class Not(Expr):
    operand: Expr


@dataclass(frozen=True)
class IsNull(Expr):
    operand: Expr
    negate: bool = False


@dataclass(frozen=True)
class InList(Expr):
    operand: Expr
    values: tuple[Expr, ...]
    negate: bool = False


@dataclass(frozen=True)
class Aggregate(Expr):
    """An aggregate function; ``operand`` None means ``COUNT(*)``."""

    func: str
    operand: Expr | None = None
    distinct: bool = False


@dataclass(frozen=True, eq=False)
class SqlFragment(Expr):
    """Raw target-language text with ``?`` parameter slots.

    Parameters that are expressions are compiled in place; any other
    value is bound.
    """

    raw: str
    params: tuple[Any, ...] = ()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SqlFragment):
            return NotImplemented
        return self.raw == other.raw and typed_key(self.params) == typed_key(other.params)

    def __hash__(self) -> int:
        return hash((self.raw, typed_key(self.params)))


@dataclass(frozen=True)
class Alias(Expr):
    """A named output column in a select list."""

    expr: Expr
    name: str


@dataclass(frozen=True)
class OrderItem:
    """An ordering term."""

    expr: Expr
    direction: str = "asc"

    def __post_init__(self) -> None:
        if self.direction not in ("asc", "desc"):
            raise ValueError(f"Invalid order direction '{self.direction}'")


class Binding:
    """Shorthand for building field references of one binding.

    ``u = Binding("u")`` then ``u.username`` or ``u["username"]``.
    """

    def __init__(self, name: str) -> None:
        self._name = name

    def __getattr__(self, field_name: str) -> FieldRef:
        if field_name.startswith("_"):
            raise AttributeError(field_name)
        return FieldRef(self._name, field_name)

    def __getitem__(self, field_name: str) -> FieldRef:
        return FieldRef(self._name, field_name)

    def __repr__(self) -> str:
        return f"Binding({self._name!r})"


def typed_key(value: Any) -> Any:
    """Return an equality key that tells ``True``, ``1`` and ``1.0`` apart."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, tuple):
        return (tuple, tuple(typed_key(v) for v in value))
    return (type(value), value)


def to_expr(value: Any) -> Expr:
    """Wrap a plain value as a Literal; expressions pass through."""
    if isinstance(value, Expr):
        return value
    return Literal(value)


def field(path: str, name: str | None = None) -> FieldRef:
    """Reference a field: ``field("u.username")`` or ``field("u", "username")``."""
    if name is not None:
        return FieldRef(path, name)
    binding, sep, field_name = path.partition(".")
    if not sep or not binding or not field_name:
        raise ValueError(f"Field reference must look like 'binding.field', got '{path}'")
    return FieldRef(binding, field_name)


def to_field_expr(value: Expr | str) -> Expr:
    """Accept ``"binding.field"`` strings where an expression is expected."""
    if isinstance(value, str):
        return field(value)
    return value


def literal(value: Any) -> Literal:
    return Literal(value)


def and_(*operands: Any) -> Expr:
    if not operands:
        raise ValueError("and_() needs at least one operand")
    if len(operands) == 1:
        return to_expr(operands[0])
    return BoolOp("and", tuple(to_expr(o) for o in operands))


def or_(*operands: Any) -> Expr:
    if not operands:
        raise ValueError("or_() needs at least one operand")
    if len(operands) == 1:
        return to_expr(operands[0])
    return BoolOp("or", tuple(to_expr(o) for o in operands))


def not_(operand: Any) -> Not:
    return Not(to_expr(operand))


def count(expr: Expr | str | None = None, distinct: bool = False) -> Aggregate:
    """``COUNT(*)``, ``COUNT(expr)`` or ``COUNT(DISTINCT expr)``."""
    if expr is None:
        if distinct:
            raise ValueError("count(distinct=True) needs an expression")
        return Aggregate("count")
    return Aggregate("count", to_field_expr(expr), distinct)


def sum_(expr: Expr | str, distinct: bool = False) -> Aggregate:
    return Aggregate("sum", to_field_expr(expr), distinct)


def avg(expr: Expr | str, distinct: bool = False) -> Aggregate:
    return Aggregate("avg", to_field_expr(expr), distinct)


def min_(expr: Expr | str) -> Aggregate:
    return Aggregate("min", to_field_expr(expr))


def max_(expr: Expr | str) -> Aggregate:
    return Aggregate("max", to_field_expr(expr))


def fragment(raw: str, *params: Any) -> SqlFragment:
    """Embed raw text; each ``?`` is replaced by the next parameter."""
    return SqlFragment(raw, tuple(params))


def alias(expr: Expr | str, name: str) -> Alias:
    return Alias(to_field_expr(expr), name)


def asc(expr: Expr | str) -> OrderItem:
    return OrderItem(to_field_expr(expr), "asc")


def desc(expr: Expr | str) -> OrderItem:
    return OrderItem(to_field_expr(expr), "desc")


def to_order_item(item: OrderItem | Expr | str | tuple[Any, str]) -> OrderItem:
    """Normalize an ``order_by`` argument; bare expressions sort ascending."""
    if isinstance(item, OrderItem):
        return item
    if isinstance(item, tuple):
        expr, direction = item
        return OrderItem(to_field_expr(expr), direction.lower())
    return OrderItem(to_field_expr(item), "asc")
