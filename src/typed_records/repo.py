"""Execution facade: runs queries and commits changesets through an adapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ContextManager, Mapping

from typed_records.adapters.base import StorageAdapter
from typed_records.casting import load_value
from typed_records.changeset import (
    Action,
    Changeset,
    add_constraint_error,
    apply_changes,
)
from typed_records.compiler import CompiledQuery, Compiler
from typed_records.deadline import Deadline
from typed_records.dialects import Dialect
from typed_records.entity import Entity, EntityState
from typed_records.errors import MultipleResultsError, StorageError
from typed_records.expressions import AGGREGATE_FUNCTIONS, Aggregate, FieldRef, alias, to_field_expr
from typed_records.query import Query, from_
from typed_records.schema import load_entity
from typed_records.types import SchemaDescriptor, SchemaRegistry

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    """Result of an insert, update or delete.

    Attributes:
        entity: The stored entity, or None when the commit was rejected.
        changeset: The submitted changeset, carrying any errors added
            while committing.
    """

    entity: Entity | None
    changeset: Changeset

    @property
    def ok(self) -> bool:
        return self.entity is not None and self.changeset.valid


class Repo:
    """Compiles queries and changesets and executes them through an adapter.

    Invalid changesets never reach the adapter. Constraint violations
    reported by the store are mapped onto the changeset when it declares
    the violated constraint; any other storage failure is raised.
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        registry: SchemaRegistry,
        *,
        dialect: Dialect | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize a repo.

        Args:
            adapter: Store to execute statements against.
            registry: Schemas used for compiling and decoding rows.
            dialect: Target dialect for the compiler.
            timeout: Default deadline in seconds for each call that is
                not given an explicit deadline.
        """
        self.adapter = adapter
        self.registry = registry
        self.compiler = Compiler(registry, dialect)
        self.timeout = timeout

    def _deadline(self, deadline: Deadline | None) -> Deadline | None:
        if deadline is not None or self.timeout is None:
            return deadline
        return Deadline.after(self.timeout)

    # --- Queries ---

    def execute(self, compiled: CompiledQuery, deadline: Deadline | None = None) -> list[dict[str, Any]]:
        """Execute an already compiled statement and return raw rows."""
        logger.debug("Executing: %s (%d parameters)", compiled.text, len(compiled.parameters))
        return self.adapter.execute(compiled, self._deadline(deadline))

    def all(self, query: Query, deadline: Deadline | None = None) -> list[Any]:
        """Run a query and return every row.

        Rows are decoded into loaded entities when the query selects the
        default columns of a registered schema, and returned as dicts
        otherwise.

        Raises:
            CompileError: If the query is malformed.
            StorageError: If the adapter fails.
        """
        compiled = self.compiler.compile(query)
        rows = self.execute(compiled, deadline)
        if compiled.source is None:
            return rows
        descriptor = self.registry.get_or_raise(compiled.source)
        return [load_entity(descriptor, row) for row in rows]

    def one(self, query: Query, deadline: Deadline | None = None) -> Any:
        """Run a query expected to match at most one row.

        Returns:
            The row (or entity), or None when nothing matched.

        Raises:
            MultipleResultsError: If more than one row matched.
        """
        results = self.all(query, deadline)
        if len(results) > 1:
            raise MultipleResultsError(len(results))
        return results[0] if results else None

    def get(self, schema: str | SchemaDescriptor, primary_key: Any, deadline: Deadline | None = None) -> Entity | None:
        """Fetch one entity by primary key."""
        descriptor = self._descriptor(schema)
        query = from_(descriptor, as_="r").where(FieldRef("r", descriptor.primary_key).eq(primary_key))
        return self.one(query, deadline)

    def aggregate(
        self,
        query: Query,
        func: str,
        field: Any = None,
        deadline: Deadline | None = None,
    ) -> Any:
        """Compute one aggregate over the rows a query matches.

        Args:
            query: Query selecting the rows.
            func: One of "count", "sum", "avg", "min" or "max".
            field: Field to aggregate (a FieldRef or "binding.field");
                optional for "count".

        Returns:
            The aggregate value (None for an empty set, except count).
        """
        if func not in AGGREGATE_FUNCTIONS:
            raise ValueError(f"Unknown aggregate '{func}'")
        if field is None and func != "count":
            raise ValueError(f"{func} needs a field to aggregate")
        operand = to_field_expr(field) if field is not None else None
        compiled = self.compiler.compile(query.select(alias(Aggregate(func, operand), "value")))
        rows = self.execute(compiled, deadline)
        return rows[0]["value"] if rows else None

    def delete_all(self, query: Query, deadline: Deadline | None = None) -> int:
        """Delete every row a single-source query matches; return how many."""
        rows = self.execute(self.compiler.compile_delete_all(query), deadline)
        logger.info("Deleted %d row(s)", len(rows))
        return len(rows)

    def update_all(self, query: Query, values: Mapping[str, Any], deadline: Deadline | None = None) -> int:
        """Update every row a single-source query matches; return how many."""
        rows = self.execute(self.compiler.compile_update_all(query, values), deadline)
        logger.info("Updated %d row(s)", len(rows))
        return len(rows)

    # --- Commits ---

    def insert(self, changeset: Changeset, deadline: Deadline | None = None) -> CommitResult:
        """Insert the entity with the changeset's changes applied.

        Returns:
            A CommitResult whose entity is the stored record, or whose
            changeset carries the errors when the insert was rejected.

        Raises:
            StorageError: For failures that are not declared constraints.
        """
        changeset = changeset.evolve(action=Action.INSERT)
        if not changeset.valid:
            return self._rejected(changeset)

        applied = apply_changes(changeset)
        values = {
            f.name: applied.values[f.name]
            for f in changeset.descriptor.persisted_fields
            if applied.values[f.name] is not None
        }
        compiled = self.compiler.compile_insert(changeset.descriptor, values)
        return self._commit(changeset, compiled, applied, EntityState.LOADED, deadline)

    def update(self, changeset: Changeset, deadline: Deadline | None = None) -> CommitResult:
        """Write the changeset's changes to an already stored entity.

        A changeset without changes to stored fields succeeds without
        touching the store.
        """
        changeset = changeset.evolve(action=Action.UPDATE)
        if not changeset.valid:
            return self._rejected(changeset)
        if not changeset.data.persisted:
            raise ValueError(f"Cannot update a {changeset.descriptor.name} that was never stored")

        applied = apply_changes(changeset)
        persisted = {f.name for f in changeset.descriptor.persisted_fields}
        values = {k: v for k, v in changeset.changes.items() if k in persisted}
        if not values:
            return CommitResult(applied, changeset)
        compiled = self.compiler.compile_update(
            changeset.descriptor, changeset.data.primary_key, values
        )
        return self._commit(changeset, compiled, applied, EntityState.LOADED, deadline)

    def delete(self, data: Entity | Changeset, deadline: Deadline | None = None) -> CommitResult:
        """Delete a stored entity."""
        changeset = data if isinstance(data, Changeset) else Changeset(data=data)
        changeset = changeset.evolve(action=Action.DELETE)
        if not changeset.valid:
            return self._rejected(changeset)
        if not changeset.data.persisted:
            raise ValueError(f"Cannot delete a {changeset.descriptor.name} that was never stored")

        compiled = self.compiler.compile_delete(changeset.descriptor, changeset.data.primary_key)
        return self._commit(changeset, compiled, changeset.data, EntityState.DELETED, deadline)

    def commit(self, changeset: Changeset, deadline: Deadline | None = None) -> CommitResult:
        """Insert, update or delete depending on the changeset.

        Uses ``changeset.action`` when set, otherwise inserts entities
        that were never stored and updates the rest.
        """
        action = changeset.action
        if action is None:
            action = Action.UPDATE if changeset.data.persisted else Action.INSERT
        if action is Action.INSERT:
            return self.insert(changeset, deadline)
        if action is Action.UPDATE:
            return self.update(changeset, deadline)
        return self.delete(changeset, deadline)

    def transaction(self) -> ContextManager[Any]:
        """Scope the enclosed calls to one store transaction."""
        return self.adapter.transaction()

    # --- Helpers ---

    def _descriptor(self, schema: str | SchemaDescriptor) -> SchemaDescriptor:
        if isinstance(schema, SchemaDescriptor):
            return schema
        descriptor = self.registry.resolve(schema)
        if descriptor is None:
            raise KeyError(f"Unknown schema: {schema}")
        return descriptor

    @staticmethod
    def _rejected(changeset: Changeset) -> CommitResult:
        logger.info(
            "Rejected %s of %s: %d error(s)",
            changeset.action.value if changeset.action else "commit",
            changeset.descriptor.name,
            len(changeset.errors),
        )
        return CommitResult(None, changeset)

    def _commit(
        self,
        changeset: Changeset,
        compiled: CompiledQuery,
        applied: Entity,
        state: EntityState,
        deadline: Deadline | None,
    ) -> CommitResult:
        try:
            rows = self.execute(compiled, deadline)
        except StorageError as e:
            if not e.is_constraint_violation:
                raise
            mapped = add_constraint_error(changeset, e)
            if mapped is None:
                raise
            logger.warning(
                "Constraint %s violated on %s; mapped to field error",
                e.constraint_name or e.constraint_type,
                changeset.descriptor.name,
            )
            return CommitResult(None, mapped)

        action = changeset.action.value if changeset.action else "commit"
        if not rows:
            raise StorageError(
                f"{action} of {changeset.descriptor.name} affected no rows (stale entity?)"
            )
        logger.info("Committed %s of %s", action, changeset.descriptor.name)
        return CommitResult(_merge_row(applied, rows[0], state), changeset)


def _merge_row(entity: Entity, row: Mapping[str, Any], state: EntityState) -> Entity:
    """Overlay stored values (e.g. generated keys) onto an in-memory entity."""
    stored = {
        f.name: load_value(f.kind, row[f.name])
        for f in entity.descriptor.persisted_fields
        if f.name in row
    }
    return entity.replace(state, **stored)
