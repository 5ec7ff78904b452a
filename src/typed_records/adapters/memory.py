"""In-memory adapter that records statements and replays scripted results."""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from typed_records.compiler import CompiledQuery
from typed_records.deadline import Deadline
from typed_records.errors import StorageError

logger = logging.getLogger(__name__)

# Rows to return, or an exception to raise
Response = Union[Iterable[Mapping[str, Any]], BaseException]


class InMemoryAdapter:
    """A fake store for exercising the execution facade without a database.

    Every executed statement is appended to ``executed``. Results come
    from ``handler`` when one is given, otherwise from the queue of
    scripted responses; an empty queue yields no rows.

    Example:
        adapter = InMemoryAdapter()
        adapter.push(StorageError.constraint_violation("unique_usernames", "unique"))
        repo = Repo(adapter, registry)
    """

    def __init__(
        self,
        responses: Iterable[Response] = (),
        handler: Callable[[CompiledQuery], Response] | None = None,
    ) -> None:
        self.executed: list[CompiledQuery] = []
        self.handler = handler
        self._responses: deque[Response] = deque(responses)
        self.commits = 0
        self.rollbacks = 0

    def push(self, response: Response) -> None:
        """Queue the result of a later ``execute`` call."""
        self._responses.append(response)

    def execute(self, compiled: CompiledQuery, deadline: Deadline | None = None) -> list[dict[str, Any]]:
        self.executed.append(compiled)
        logger.debug("memory: %s (%d parameters)", compiled.text, len(compiled.parameters))

        if deadline is not None:
            if deadline.cancelled():
                raise StorageError.cancelled()
            if deadline.expired():
                raise StorageError.timeout()

        if self.handler is not None:
            response = self.handler(compiled)
        elif self._responses:
            response = self._responses.popleft()
        else:
            response = []

        if isinstance(response, BaseException):
            raise response
        return [dict(row) for row in response]

    @contextmanager
    def transaction(self) -> Iterator[InMemoryAdapter]:
        """Count commits and rollbacks; no state is actually kept."""
        try:
            yield self
        except BaseException:
            self.rollbacks += 1
            raise
        self.commits += 1
