"""SQLite storage adapter built on the standard library driver."""

from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from typed_records.casting import dump_value
from typed_records.compiler import CompiledQuery
from typed_records.deadline import Deadline
from typed_records.errors import StorageError, StorageErrorKind

logger = logging.getLogger(__name__)

_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: (?P<columns>.+)$")
_CHECK_RE = re.compile(r"CHECK constraint failed: (?P<name>.+)$")
_NOT_NULL_RE = re.compile(r"NOT NULL constraint failed: (?P<column>.+)$")


class SQLiteAdapter:
    """Runs compiled statements on a SQLite database.

    The connection runs in autocommit mode; ``transaction()`` opens an
    explicit transaction and nests through savepoints.
    """

    def __init__(self, path: str = ":memory:", *, progress_interval: int = 1000) -> None:
        """Open the database.

        Args:
            path: Database file path, or ":memory:".
            progress_interval: Number of SQLite VM instructions between
                deadline checks.
        """
        self.path = path
        self.progress_interval = progress_interval
        try:
            self._conn = sqlite3.connect(path, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError.connection(f"Cannot open database '{path}': {e}") from e
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._depth = 0

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteAdapter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def executescript(self, script: str) -> None:
        """Run several statements at once, e.g. table definitions."""
        try:
            self._conn.executescript(script)
        except sqlite3.Error as e:
            raise self._translate(e) from e

    def execute(self, compiled: CompiledQuery, deadline: Deadline | None = None) -> list[dict[str, Any]]:
        """Execute a compiled statement and return its rows as dicts.

        Raises:
            StorageError: With kind TIMEOUT or CANCELLED when the deadline
                passes or its token is cancelled mid-statement, and
                CONSTRAINT_VIOLATION for integrity errors.
        """
        params = tuple(dump_value(p) for p in compiled.parameters)
        logger.debug("sqlite: %s (%d parameters)", compiled.text, len(params))

        aborted: list[StorageError] = []
        if deadline is not None:
            if deadline.cancelled():
                raise StorageError.cancelled()
            if deadline.expired():
                logger.warning("sqlite: deadline expired before execution")
                raise StorageError.timeout()

            def check_deadline() -> int:
                if deadline.cancelled():
                    aborted.append(StorageError.cancelled())
                    return 1
                if deadline.expired():
                    aborted.append(StorageError.timeout())
                    return 1
                return 0

            self._conn.set_progress_handler(check_deadline, self.progress_interval)

        try:
            cursor = self._conn.execute(compiled.text, params)
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            if aborted:
                if aborted[0].kind is StorageErrorKind.TIMEOUT:
                    logger.warning("sqlite: deadline expired during execution")
                raise aborted[0] from e
            raise self._translate(e) from e
        finally:
            if deadline is not None:
                self._conn.set_progress_handler(None, 0)

        if cursor.description is None:
            return []
        names = [column[0] for column in cursor.description]
        return [dict(zip(names, row)) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[SQLiteAdapter]:
        """Run the enclosed statements atomically.

        The outermost level uses BEGIN/COMMIT; nested levels use
        savepoints so an inner failure rolls back only its own work.
        """
        savepoint = f"typed_records_{self._depth}"
        outermost = self._depth == 0
        if outermost:
            self._control("BEGIN")
        else:
            self._control(f'SAVEPOINT "{savepoint}"')
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if outermost:
                self._control("ROLLBACK")
            else:
                self._control(f'ROLLBACK TO SAVEPOINT "{savepoint}"')
                self._control(f'RELEASE SAVEPOINT "{savepoint}"')
            raise
        self._depth -= 1
        if not outermost:
            self._control(f'RELEASE SAVEPOINT "{savepoint}"')
            return
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            # A rejected COMMIT (e.g. a deferred foreign key) leaves the transaction open
            logger.warning("sqlite: commit failed, rolling back: %s", e)
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise self._translate(e) from e

    def _control(self, statement: str) -> None:
        """Run a transaction control statement."""
        try:
            self._conn.execute(statement)
        except sqlite3.Error as e:
            raise self._translate(e) from e

    # --- Error translation ---

    def _translate(self, error: sqlite3.Error) -> StorageError:
        message = str(error)
        if isinstance(error, sqlite3.IntegrityError):
            return self._constraint_error(message)
        if isinstance(error, sqlite3.OperationalError) and "unable to open" in message:
            return StorageError.connection(message)
        return StorageError(message)

    def _constraint_error(self, message: str) -> StorageError:
        match = _UNIQUE_RE.search(message)
        if match:
            qualified = [c.strip() for c in match.group("columns").split(",")]
            table = qualified[0].split(".", 1)[0]
            columns = [c.split(".", 1)[-1] for c in qualified]
            name = self._unique_index_name(table, columns)
            return StorageError.constraint_violation(name, "unique", message)

        match = _CHECK_RE.search(message)
        if match:
            return StorageError.constraint_violation(match.group("name"), "check", message)

        if "FOREIGN KEY constraint failed" in message:
            # SQLite does not say which foreign key failed
            return StorageError.constraint_violation(None, "foreign_key", message)

        match = _NOT_NULL_RE.search(message)
        if match:
            return StorageError.constraint_violation(match.group("column"), "not_null", message)

        return StorageError.constraint_violation(None, None, message)

    def _unique_index_name(self, table: str, columns: list[str]) -> str | None:
        """Find the unique index on ``table`` covering exactly ``columns``."""
        candidates = []
        for row in self._conn.execute(f'PRAGMA index_list("{table}")'):
            index_name, unique = row[1], row[2]
            if not unique:
                continue
            info = self._conn.execute(f'PRAGMA index_info("{index_name}")').fetchall()
            if [r[2] for r in info] == columns:
                candidates.append(index_name)
        # Prefer explicitly named indexes over SQLite's automatic ones
        for name in candidates:
            if not name.startswith("sqlite_autoindex_"):
                return name
        return candidates[0] if candidates else None
