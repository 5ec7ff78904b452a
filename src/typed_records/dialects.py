"""Target-language details that differ between stores."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Dialect:
    """Placeholder style and identifier quoting for a SQL store."""

    name: str = "generic"
    native_ilike: bool = False

    def placeholder(self, position: int) -> str:
        """Return the placeholder for the 1-based parameter ``position``."""
        return "?"

    def quote(self, identifier: str) -> str:
        """Quote an identifier, doubling embedded quotes."""
        return '"' + identifier.replace('"', '""') + '"'


@dataclass(frozen=True)
class SQLiteDialect(Dialect):
    name: str = "sqlite"


@dataclass(frozen=True)
class PostgresDialect(Dialect):
    name: str = "postgres"
    native_ilike: bool = True

    def placeholder(self, position: int) -> str:
        return f"${position}"


DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgres": PostgresDialect(),
}


def get_dialect(name: str) -> Dialect:
    """Look a dialect up by name."""
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(f"Unknown dialect '{name}'") from None
