"""Exception types raised by typed_records.

Field-level problems (cast failures, validation failures, store-detected
constraint violations) are never raised; they are recorded on the
changeset as data. The exceptions here cover programmer errors,
malformed queries and storage failures.
"""

from __future__ import annotations

from enum import Enum


class TypedRecordsError(Exception):
    """Base class for all typed_records exceptions."""


class SchemaError(TypedRecordsError, ValueError):
    """A schema declaration is invalid (duplicate field, bad kind, ...)."""


class UnknownFieldError(TypedRecordsError, KeyError):
    """A field name does not belong to the schema it was used with."""

    def __init__(self, schema_name: str, field_name: str) -> None:
        super().__init__(f"Field '{field_name}' not found in schema '{schema_name}'")
        self.schema_name = schema_name
        self.field_name = field_name

    def __str__(self) -> str:
        return str(self.args[0])


class CompileError(TypedRecordsError):
    """A query IR could not be lowered to the target language."""


class MultipleResultsError(TypedRecordsError):
    """A query expected to return at most one row returned several."""

    def __init__(self, count: int) -> None:
        super().__init__(f"Expected at most one result, got {count}")
        self.count = count


class StorageErrorKind(Enum):
    """Categories of failures reported by a storage adapter."""

    CONNECTION = "connection"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNKNOWN = "unknown"


class StorageError(TypedRecordsError):
    """A storage adapter failed to execute a compiled query.

    Attributes:
        kind: Failure category.
        constraint_type: For constraint violations, one of "unique",
            "foreign_key" or "check" (None when the store did not say).
        constraint_name: For constraint violations, the name of the
            violated constraint as reported by the store.
    """

    def __init__(
        self,
        message: str,
        kind: StorageErrorKind = StorageErrorKind.UNKNOWN,
        *,
        constraint_type: str | None = None,
        constraint_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.constraint_type = constraint_type
        self.constraint_name = constraint_name

    @classmethod
    def constraint_violation(
        cls, name: str | None, constraint_type: str | None = None, message: str | None = None
    ) -> StorageError:
        """Build a constraint-violation error for the named constraint."""
        if message is None:
            message = f"Constraint violated: {name}"
        return cls(
            message,
            StorageErrorKind.CONSTRAINT_VIOLATION,
            constraint_type=constraint_type,
            constraint_name=name,
        )

    @classmethod
    def timeout(cls, message: str = "Deadline exceeded") -> StorageError:
        return cls(message, StorageErrorKind.TIMEOUT)

    @classmethod
    def cancelled(cls, message: str = "Operation cancelled") -> StorageError:
        return cls(message, StorageErrorKind.CANCELLED)

    @classmethod
    def connection(cls, message: str) -> StorageError:
        return cls(message, StorageErrorKind.CONNECTION)

    @property
    def is_constraint_violation(self) -> bool:
        return self.kind is StorageErrorKind.CONSTRAINT_VIOLATION
