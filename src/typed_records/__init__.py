"""Typed Records - Schema-bound changesets and a composable query compiler."""

from typed_records.adapters import InMemoryAdapter, SQLiteAdapter, StorageAdapter
from typed_records.changeset import (
    Action,
    Changeset,
    Constraint,
    ErrorKind,
    FieldError,
    add_constraint_error,
    add_error,
    apply_changes,
    cast,
    change,
    check_constraint,
    delete_change,
    fetch_field,
    foreign_key_constraint,
    get_change,
    get_field,
    pipe,
    put_change,
    stage,
    traverse_errors,
    unique_constraint,
    validate_acceptance,
    validate_change,
    validate_confirmation,
    validate_exclusion,
    validate_format,
    validate_inclusion,
    validate_length,
    validate_number,
    validate_required,
)
from typed_records.compiler import CompiledQuery, Compiler, compile_query
from typed_records.deadline import CancellationToken, Deadline
from typed_records.dialects import Dialect, PostgresDialect, SQLiteDialect, get_dialect
from typed_records.entity import Entity, EntityState
from typed_records.errors import (
    CompileError,
    MultipleResultsError,
    SchemaError,
    StorageError,
    StorageErrorKind,
    TypedRecordsError,
    UnknownFieldError,
)
from typed_records.expressions import (
    Binding,
    alias,
    and_,
    asc,
    avg,
    count,
    desc,
    field,
    fragment,
    literal,
    max_,
    min_,
    not_,
    or_,
    sum_,
)
from typed_records.parsing import SchemaParser
from typed_records.query import assoc, from_
from typed_records.repo import CommitResult, Repo
from typed_records.schema import Schema
from typed_records.types import (
    FieldKind,
    FieldSpec,
    Relationship,
    RelationshipKind,
    SchemaDescriptor,
    SchemaRegistry,
)

__all__ = [
    # Main API
    "Schema",
    "SchemaParser",
    "Repo",
    "CommitResult",
    # Schemas and entities
    "FieldKind",
    "FieldSpec",
    "Relationship",
    "RelationshipKind",
    "SchemaDescriptor",
    "SchemaRegistry",
    "Entity",
    "EntityState",
    # Changesets
    "Action",
    "Changeset",
    "Constraint",
    "ErrorKind",
    "FieldError",
    "add_constraint_error",
    "add_error",
    "apply_changes",
    "cast",
    "change",
    "check_constraint",
    "delete_change",
    "fetch_field",
    "foreign_key_constraint",
    "get_change",
    "get_field",
    "pipe",
    "put_change",
    "stage",
    "traverse_errors",
    "unique_constraint",
    "validate_acceptance",
    "validate_change",
    "validate_confirmation",
    "validate_exclusion",
    "validate_format",
    "validate_inclusion",
    "validate_length",
    "validate_number",
    "validate_required",
    # Queries
    "Binding",
    "alias",
    "and_",
    "asc",
    "assoc",
    "avg",
    "count",
    "desc",
    "field",
    "fragment",
    "from_",
    "literal",
    "max_",
    "min_",
    "not_",
    "or_",
    "sum_",
    "CompiledQuery",
    "Compiler",
    "compile_query",
    "Dialect",
    "PostgresDialect",
    "SQLiteDialect",
    "get_dialect",
    # Storage
    "StorageAdapter",
    "SQLiteAdapter",
    "InMemoryAdapter",
    "Deadline",
    "CancellationToken",
    # Errors
    "TypedRecordsError",
    "SchemaError",
    "UnknownFieldError",
    "CompileError",
    "StorageError",
    "StorageErrorKind",
    "MultipleResultsError",
]

__version__ = "0.1.0"
