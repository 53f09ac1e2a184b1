"""SQL dialect abstraction for the run ledger.

The ledger writes its SQL once and asks a ``Dialect`` for the fragments
that differ between backends: placeholders, the row-locking suffix used
when selecting claim candidates, and the optional advisory lock taken on
a concurrency key before the claim update.

Architecture::

    ┌────────────────────────────────────────────────────────────────┐
    │  sql = f"... WHERE id = {d.placeholder(0)}"                    │
    │  sql += d.skip_locked()                                        │
    │  if lock := d.advisory_lock(d.placeholder(0)): conn.execute()  │
    └────────────────────────────────────────────────────────────────┘
                              │
                ┌─────────────┴──────────────┐
          ┌──────────┐                ┌──────────────────────────┐
          │ SQLite   │                │ PostgreSQL               │
          │ ?, ?     │                │ %s, %s                   │
          │ no locks │                │ FOR UPDATE SKIP LOCKED   │
          │          │                │ pg_advisory_xact_lock    │
          └──────────┘                └──────────────────────────┘

Examples:
    >>> from flowspine.core.dialect import get_dialect
    >>> d = get_dialect("sqlite")
    >>> d.placeholders(3)
    '?, ?, ?'
    >>> get_dialect("postgresql").skip_locked()
    ' FOR UPDATE SKIP LOCKED'

Guardrails:
    ❌ DON'T: Write backend-specific SQL in the ledger
    ✅ DO: Use Dialect methods for placeholders and locking fragments

Tags:
    dialect, sql, abstraction, portability, database, ledger
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a SQL fragment (string) valid for the target
    database.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list."""
        ...

    def skip_locked(self) -> str:
        """Suffix appended to candidate SELECTs so concurrent pollers skip
        rows another transaction has locked. Empty when unsupported."""
        ...

    def advisory_lock(self, key_placeholder: str) -> str | None:
        """Statement taking a transaction-scoped lock on a string key, or
        ``None`` when the backend serializes writers anyway."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect: ``?`` placeholders, database-level write lock."""

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def skip_locked(self) -> str:
        return ""

    def advisory_lock(self, key_placeholder: str) -> str | None:  # noqa: ARG002
        return None


class PostgreSQLDialect:
    """PostgreSQL dialect: ``%s`` placeholders (psycopg2), row and
    advisory locks for claim contention."""

    @property
    def name(self) -> str:
        return "postgresql"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def skip_locked(self) -> str:
        return " FOR UPDATE SKIP LOCKED"

    def advisory_lock(self, key_placeholder: str) -> str | None:
        return f"SELECT pg_advisory_xact_lock(hashtext({key_placeholder}))"


# =========================================================================
# Registry / Factory
# =========================================================================

# Pre-instantiated singletons (dialects are stateless)
_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]
