"""Query compiler: lowers query IR into parameterized SQL.

Compilation is pure. Every literal value is emitted as a placeholder and
collected into ``CompiledQuery.parameters`` in the order the
placeholders appear in the text; values are never interpolated.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Mapping

from typed_records.dialects import Dialect, SQLiteDialect
from typed_records.errors import CompileError
from typed_records.expressions import (
    AGGREGATE_FUNCTIONS,
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    Aggregate,
    Alias,
    BinaryOp,
    BoolOp,
    Expr,
    FieldRef,
    InList,
    IsNull,
    Literal,
    Not,
    OrderItem,
    SqlFragment,
)
from typed_records.parsing import FragmentLexer, Placeholder
from typed_records.query import (
    Assoc,
    Distinct,
    Filter,
    Fragment,
    GroupBy,
    Join,
    Limit,
    Offset,
    OrderBy,
    Projection,
    Query,
    Source,
)
from typed_records.types import SchemaDescriptor, SchemaRegistry


@dataclass(frozen=True)
class CompiledQuery:
    """A statement ready to hand to a storage adapter.

    Attributes:
        text: Statement text with placeholders.
        parameters: Values for the placeholders, in text order.
        columns: Output column names when known.
        source: Schema name whose entities the rows decode to, when the
            statement returns whole records of one schema.
    """

    text: str
    parameters: tuple[Any, ...] = ()
    columns: tuple[str, ...] = ()
    source: str | None = None


@dataclass
class _BindingInfo:
    name: str
    relation: str
    descriptor: SchemaDescriptor | None


@dataclass
class _JoinPlan:
    kind: str
    info: _BindingInfo
    condition: Expr
    visible: frozenset[str]


@dataclass
class _Plan:
    """A flattened view of a query chain."""

    source: _BindingInfo
    bindings: dict[str, _BindingInfo] = field(default_factory=dict)
    joins: list[_JoinPlan] = field(default_factory=list)
    where: Expr | None = None
    having: Expr | None = None
    projection: tuple[Expr, ...] | None = None
    distinct: bool = False
    group_by: list[Expr] = field(default_factory=list)
    order_by: list[OrderItem] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None
    fragments: list[Fragment] = field(default_factory=list)


@dataclass
class _Scope:
    """What an expression may reference where it is being compiled."""

    bindings: Mapping[str, _BindingInfo]
    clause: str
    allow_aggregate: bool = False


class _Emitter:
    """Collects bound parameters and hands out placeholders."""

    def __init__(self, dialect: Dialect) -> None:
        self.dialect = dialect
        self.parameters: list[Any] = []

    def bind(self, value: Any) -> str:
        self.parameters.append(value)
        return self.dialect.placeholder(len(self.parameters))


_JOIN_KEYWORDS = {"inner": "INNER JOIN", "left": "LEFT JOIN"}


def _combine(current: Expr | None, predicate: Expr, conjunction: str) -> Expr:
    if current is None:
        return predicate
    return BoolOp(conjunction, (current, predicate))


class Compiler:
    """Compiles query IR into ``CompiledQuery`` values for one dialect."""

    def __init__(
        self,
        registry: SchemaRegistry | None = None,
        dialect: Dialect | None = None,
        cache_size: int = 512,
    ) -> None:
        """Initialize a compiler.

        Args:
            registry: Schemas used to resolve sources, validate field
                references and follow association joins.
            dialect: Target dialect (SQLite when omitted).
            cache_size: Maximum number of compiled queries kept.
        """
        self.registry = registry
        self.dialect = dialect or SQLiteDialect()
        self.cache_size = cache_size
        self._cache: dict[Query, CompiledQuery] = {}
        self._lock = threading.Lock()
        self._fragments = FragmentLexer()
        self._fragments.build()

    # --- Public API ---

    def compile(self, query: Query) -> CompiledQuery:
        """Compile a SELECT query.

        Raises:
            CompileError: On undefined or shadowed bindings, unknown
                fields, misplaced aggregates or malformed fragments.
        """
        try:
            with self._lock:
                cached = self._cache.get(query)
        except TypeError:
            # Unhashable literal somewhere in the tree
            return self._compile_select(query)
        if cached is not None:
            return cached
        compiled = self._compile_select(query)
        with self._lock:
            while self._cache and len(self._cache) >= self.cache_size:
                del self._cache[next(iter(self._cache))]
            if self.cache_size > 0:
                self._cache[query] = compiled
        return compiled

    def compile_insert(self, descriptor: SchemaDescriptor, values: Mapping[str, Any]) -> CompiledQuery:
        """Compile an INSERT of one record returning the stored row."""
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)
        names = self._persisted_names(descriptor, values)
        returning = self._returning(descriptor)
        if names:
            columns = ", ".join(q(n) for n in names)
            slots = ", ".join(emitter.bind(values[n]) for n in names)
            text = f"INSERT INTO {q(descriptor.relation)} ({columns}) VALUES ({slots}){returning}"
        else:
            text = f"INSERT INTO {q(descriptor.relation)} DEFAULT VALUES{returning}"
        return self._result(text, emitter, descriptor)

    def compile_update(
        self, descriptor: SchemaDescriptor, primary_key: Any, values: Mapping[str, Any]
    ) -> CompiledQuery:
        """Compile an UPDATE of one record by primary key returning the stored row."""
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)
        names = self._persisted_names(descriptor, values)
        if not names:
            raise CompileError(f"Nothing to update for schema '{descriptor.name}'")
        assignments = ", ".join(f"{q(n)} = {emitter.bind(values[n])}" for n in names)
        pk = emitter.bind(primary_key)
        text = (
            f"UPDATE {q(descriptor.relation)} SET {assignments} "
            f"WHERE {q(descriptor.primary_key)} = {pk}{self._returning(descriptor)}"
        )
        return self._result(text, emitter, descriptor)

    def compile_delete(self, descriptor: SchemaDescriptor, primary_key: Any) -> CompiledQuery:
        """Compile a DELETE of one record by primary key returning the deleted row."""
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)
        pk = emitter.bind(primary_key)
        text = (
            f"DELETE FROM {q(descriptor.relation)} "
            f"WHERE {q(descriptor.primary_key)} = {pk}{self._returning(descriptor)}"
        )
        return self._result(text, emitter, descriptor)

    def compile_delete_all(self, query: Query) -> CompiledQuery:
        """Compile a DELETE of every row a single-source query matches, returning them."""
        plan = self._plan(query)
        self._check_bulk(plan, "delete_all")
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)
        text = f"DELETE FROM {q(plan.source.relation)} AS {q(plan.source.name)}"
        text += self._where_sql(plan, emitter)
        text += " RETURNING *"
        return CompiledQuery(text, tuple(emitter.parameters))

    def compile_update_all(self, query: Query, values: Mapping[str, Any]) -> CompiledQuery:
        """Compile an UPDATE of every row a single-source query matches.

        ``values`` maps field names of the source to new values or to
        expressions (e.g. ``field("u.visits").add(1)``).
        """
        plan = self._plan(query)
        self._check_bulk(plan, "update_all")
        if not values:
            raise CompileError("update_all needs at least one field to set")
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)
        scope = _Scope(plan.bindings, "update_all")
        assignments = []
        for name, value in values.items():
            self._check_field(plan.source, name)
            if isinstance(value, Expr):
                rhs = self._expr(value, scope, emitter)
            else:
                rhs = emitter.bind(value)
            assignments.append(f"{q(name)} = {rhs}")
        text = (
            f"UPDATE {q(plan.source.relation)} AS {q(plan.source.name)} "
            f"SET {', '.join(assignments)}"
        )
        text += self._where_sql(plan, emitter)
        text += " RETURNING *"
        return CompiledQuery(text, tuple(emitter.parameters))

    # --- Planning ---

    def _resolve(self, name: str) -> SchemaDescriptor | None:
        if self.registry is None:
            return None
        return self.registry.resolve(name)

    def _plan(self, query: Query) -> _Plan:
        """Flatten a node chain, resolving bindings and joins."""
        nodes = query.nodes()
        root = nodes[0]
        if not isinstance(root, Source):
            raise CompileError(f"Query must start from a source, got {type(root).__name__}")

        descriptor = self._resolve(root.source)
        relation = descriptor.relation if descriptor else root.source
        source = _BindingInfo(root.binding, relation, descriptor)
        plan = _Plan(source=source, bindings={root.binding: source})

        for node in nodes[1:]:
            if isinstance(node, Join):
                plan.joins.append(self._plan_join(plan, node))
            elif isinstance(node, Filter):
                if node.in_having:
                    plan.having = _combine(plan.having, node.predicate, node.conjunction)
                else:
                    plan.where = _combine(plan.where, node.predicate, node.conjunction)
            elif isinstance(node, Projection):
                plan.projection = node.exprs
            elif isinstance(node, Distinct):
                plan.distinct = True
            elif isinstance(node, GroupBy):
                plan.group_by.extend(node.exprs)
            elif isinstance(node, OrderBy):
                plan.order_by.extend(node.items)
            elif isinstance(node, Limit):
                plan.limit = node.count
            elif isinstance(node, Offset):
                plan.offset = node.count
            elif isinstance(node, Fragment):
                plan.fragments.append(node)
            else:
                raise CompileError(f"Unknown query node: {type(node).__name__}")
        return plan

    def _plan_join(self, plan: _Plan, node: Join) -> _JoinPlan:
        if node.binding in plan.bindings:
            raise CompileError(f"Binding '{node.binding}' is already defined")

        if isinstance(node.target, Assoc):
            owner = plan.bindings.get(node.target.binding)
            if owner is None:
                raise CompileError(
                    f"Undefined binding '{node.target.binding}' in association join"
                )
            if owner.descriptor is None or self.registry is None:
                raise CompileError(
                    f"Binding '{owner.name}' has no registered schema to follow "
                    f"'{node.target.relationship}' from"
                )
            try:
                related, owner_key, related_key = self.registry.resolve_relationship(
                    owner.descriptor, node.target.relationship
                )
            except KeyError as e:
                raise CompileError(str(e.args[0])) from None
            info = _BindingInfo(node.binding, related.relation, related)
            condition: Expr = FieldRef(node.binding, related_key).eq(FieldRef(owner.name, owner_key))
            if node.on is not None:
                condition = BoolOp("and", (condition, node.on))
        else:
            if node.on is None:
                raise CompileError(f"Join '{node.binding}' needs an 'on' condition")
            descriptor = self._resolve(node.target)
            relation = descriptor.relation if descriptor else node.target
            info = _BindingInfo(node.binding, relation, descriptor)
            condition = node.on

        plan.bindings[node.binding] = info
        return _JoinPlan(node.kind, info, condition, frozenset(plan.bindings))

    @staticmethod
    def _check_bulk(plan: _Plan, operation: str) -> None:
        if (
            plan.joins or plan.projection is not None or plan.group_by or plan.having
            or plan.order_by or plan.limit is not None or plan.offset is not None
            or plan.distinct or plan.fragments
        ):
            raise CompileError(f"{operation} only supports a single source with filters")

    # --- SQL generation ---

    def _compile_select(self, query: Query) -> CompiledQuery:
        plan = self._plan(query)
        q = self.dialect.quote
        emitter = _Emitter(self.dialect)

        select_sql, columns, source = self._projection_sql(plan, emitter)
        parts = ["SELECT DISTINCT " if plan.distinct else "SELECT ", select_sql]
        parts.append(f" FROM {q(plan.source.relation)} AS {q(plan.source.name)}")

        for join in plan.joins:
            visible = {n: plan.bindings[n] for n in join.visible}
            on_sql = self._expr(join.condition, _Scope(visible, "join"), emitter)
            parts.append(
                f" {_JOIN_KEYWORDS[join.kind]} {q(join.info.relation)} AS {q(join.info.name)} ON {on_sql}"
            )

        parts.append(self._where_sql(plan, emitter))

        if plan.group_by:
            scope = _Scope(plan.bindings, "group_by")
            parts.append(" GROUP BY " + ", ".join(self._expr(e, scope, emitter) for e in plan.group_by))

        if plan.having is not None:
            scope = _Scope(plan.bindings, "having", allow_aggregate=True)
            parts.append(" HAVING " + self._expr(plan.having, scope, emitter))

        if plan.order_by:
            scope = _Scope(plan.bindings, "order_by", allow_aggregate=True)
            terms = [
                f"{self._expr(item.expr, scope, emitter)} {item.direction.upper()}"
                for item in plan.order_by
            ]
            parts.append(" ORDER BY " + ", ".join(terms))

        if plan.limit is not None:
            parts.append(f" LIMIT {emitter.bind(plan.limit)}")
        if plan.offset is not None:
            parts.append(f" OFFSET {emitter.bind(plan.offset)}")

        for node in plan.fragments:
            scope = _Scope(plan.bindings, "fragment")
            parts.append(" " + self._fragment_sql(node.raw, node.params, scope, emitter, False))

        return CompiledQuery("".join(parts), tuple(emitter.parameters), columns, source)

    def _where_sql(self, plan: _Plan, emitter: _Emitter) -> str:
        if plan.where is None:
            return ""
        return " WHERE " + self._expr(plan.where, _Scope(plan.bindings, "where"), emitter)

    def _projection_sql(
        self, plan: _Plan, emitter: _Emitter
    ) -> tuple[str, tuple[str, ...], str | None]:
        q = self.dialect.quote
        src = plan.source

        if plan.projection is None:
            if src.descriptor is None:
                return f"{q(src.name)}.*", (), None
            names = [f.name for f in src.descriptor.persisted_fields]
            select = ", ".join(f"{q(src.name)}.{q(n)}" for n in names)
            return select, tuple(names), src.descriptor.name

        if not plan.projection:
            raise CompileError("select() needs at least one expression")

        scope = _Scope(plan.bindings, "select", allow_aggregate=True)
        used: set[str] = set()
        terms: list[str] = []
        columns: list[str] = []
        for position, expr in enumerate(plan.projection, start=1):
            if isinstance(expr, Alias):
                sql = self._expr(expr.expr, scope, emitter)
                name = expr.name
                explicit = True
            elif isinstance(expr, FieldRef):
                sql = self._expr(expr, scope, emitter)
                name = expr.name
                explicit = False
                if name in used:
                    name = f"{expr.binding}_{expr.name}"
                    explicit = True
            else:
                sql = self._expr(expr, scope, emitter)
                name = self._default_column_name(expr, position)
                explicit = True
            if name in used:
                raise CompileError(f"Duplicate output column '{name}' in select")
            used.add(name)
            columns.append(name)
            terms.append(f"{sql} AS {q(name)}" if explicit else sql)
        return ", ".join(terms), tuple(columns), None

    @staticmethod
    def _default_column_name(expr: Expr, position: int) -> str:
        if isinstance(expr, Aggregate):
            if isinstance(expr.operand, FieldRef):
                return f"{expr.func}_{expr.operand.name}"
            return expr.func
        return f"column_{position}"

    @staticmethod
    def _persisted_names(descriptor: SchemaDescriptor, values: Mapping[str, Any]) -> list[str]:
        for name in values:
            descriptor.field(name)
        return [f.name for f in descriptor.persisted_fields if f.name in values]

    def _returning(self, descriptor: SchemaDescriptor) -> str:
        q = self.dialect.quote
        return " RETURNING " + ", ".join(q(f.name) for f in descriptor.persisted_fields)

    @staticmethod
    def _result(text: str, emitter: _Emitter, descriptor: SchemaDescriptor) -> CompiledQuery:
        columns = tuple(f.name for f in descriptor.persisted_fields)
        return CompiledQuery(text, tuple(emitter.parameters), columns, descriptor.name)

    # --- Expressions ---

    def _check_field(self, info: _BindingInfo, name: str) -> None:
        if info.descriptor is None:
            return
        if not info.descriptor.has_field(name):
            raise CompileError(
                f"Schema '{info.descriptor.name}' (binding '{info.name}') has no field '{name}'"
            )
        if info.descriptor.field(name).virtual:
            raise CompileError(
                f"Field '{name}' of schema '{info.descriptor.name}' is virtual and not stored"
            )

    def _expr(self, expr: Expr, scope: _Scope, emitter: _Emitter, in_aggregate: bool = False) -> str:
        q = self.dialect.quote

        if isinstance(expr, FieldRef):
            info = scope.bindings.get(expr.binding)
            if info is None:
                raise CompileError(f"Undefined binding '{expr.binding}' in {scope.clause}")
            self._check_field(info, expr.name)
            return f"{q(expr.binding)}.{q(expr.name)}"

        if isinstance(expr, Literal):
            return emitter.bind(expr.value)

        if isinstance(expr, BinaryOp):
            if expr.op not in COMPARISON_OPS and expr.op not in ARITHMETIC_OPS:
                raise CompileError(f"Unknown operator '{expr.op}'")
            if expr.op in COMPARISON_OPS and (
                _is_none(expr.left) or _is_none(expr.right)
            ):
                raise CompileError(
                    f"Comparing with None in {scope.clause}; use is_null() / is_not_null()"
                )
            left = self._expr(expr.left, scope, emitter, in_aggregate)
            right = self._expr(expr.right, scope, emitter, in_aggregate)
            if expr.op == "ilike" and not self.dialect.native_ilike:
                return f"(LOWER({left}) LIKE LOWER({right}))"
            return f"({left} {expr.op.upper()} {right})"

        if isinstance(expr, BoolOp):
            if expr.op not in ("and", "or"):
                raise CompileError(f"Unknown boolean operator '{expr.op}'")
            joiner = f" {expr.op.upper()} "
            return "(" + joiner.join(
                self._expr(o, scope, emitter, in_aggregate) for o in expr.operands
            ) + ")"

        if isinstance(expr, Not):
            return f"(NOT {self._expr(expr.operand, scope, emitter, in_aggregate)})"

        if isinstance(expr, IsNull):
            operand = self._expr(expr.operand, scope, emitter, in_aggregate)
            return f"({operand} IS NOT NULL)" if expr.negate else f"({operand} IS NULL)"

        if isinstance(expr, InList):
            operand = self._expr(expr.operand, scope, emitter, in_aggregate)
            if not expr.values:
                return "(1 = 1)" if expr.negate else "(1 = 0)"
            values = ", ".join(self._expr(v, scope, emitter, in_aggregate) for v in expr.values)
            keyword = "NOT IN" if expr.negate else "IN"
            return f"({operand} {keyword} ({values}))"

        if isinstance(expr, Aggregate):
            if expr.func not in AGGREGATE_FUNCTIONS:
                raise CompileError(f"Unknown aggregate '{expr.func}'")
            if in_aggregate:
                raise CompileError(f"Aggregate {expr.func}() cannot be nested in another aggregate")
            if not scope.allow_aggregate:
                raise CompileError(
                    f"Aggregate {expr.func}() is not allowed in {scope.clause}; "
                    "use select() or having()"
                )
            if expr.operand is None:
                if expr.func != "count":
                    raise CompileError(f"{expr.func}() needs an expression")
                return "COUNT(*)"
            operand = self._expr(expr.operand, scope, emitter, True)
            modifier = "DISTINCT " if expr.distinct else ""
            return f"{expr.func.upper()}({modifier}{operand})"

        if isinstance(expr, SqlFragment):
            return self._fragment_sql(expr.raw, expr.params, scope, emitter, in_aggregate)

        if isinstance(expr, Alias):
            raise CompileError(f"Aliases are only allowed in select, not in {scope.clause}")

        raise CompileError(f"Unknown expression: {type(expr).__name__}")

    def _fragment_sql(
        self,
        raw: str,
        params: tuple[Any, ...],
        scope: _Scope,
        emitter: _Emitter,
        in_aggregate: bool,
    ) -> str:
        try:
            parts = self._fragments.split(raw)
        except SyntaxError as e:
            raise CompileError(f"Malformed fragment {raw!r}: {e}") from None

        slots = sum(1 for p in parts if isinstance(p, Placeholder))
        if slots != len(params):
            raise CompileError(
                f"Fragment {raw!r} has {slots} placeholder(s) but {len(params)} parameter(s)"
            )

        out: list[str] = []
        for part in parts:
            if isinstance(part, Placeholder):
                param = params[part.position]
                if isinstance(param, Expr):
                    out.append(self._expr(param, scope, emitter, in_aggregate))
                else:
                    out.append(emitter.bind(param))
            else:
                out.append(part)
        return "".join(out)


def _is_none(expr: Expr) -> bool:
    return isinstance(expr, Literal) and expr.value is None


def compile_query(
    query: Query,
    registry: SchemaRegistry | None = None,
    dialect: Dialect | None = None,
) -> CompiledQuery:
    """Compile a query with a throwaway compiler."""
    return Compiler(registry, dialect).compile(query)
