"""The contract between the execution facade and a store."""

from __future__ import annotations

from typing import Any, ContextManager, Protocol, runtime_checkable

from typed_records.compiler import CompiledQuery
from typed_records.deadline import Deadline


@runtime_checkable
class StorageAdapter(Protocol):
    """Executes compiled statements against a store.

    Implementations raise ``StorageError`` for every failure, with
    ``kind`` set so callers can tell constraint violations, timeouts and
    cancellations apart. Rows are returned as plain dicts keyed by output
    column name.
    """

    def execute(self, compiled: CompiledQuery, deadline: Deadline | None = None) -> list[dict[str, Any]]: ...

    def transaction(self) -> ContextManager[Any]: ...
