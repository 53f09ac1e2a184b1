"""
Canonical protocol definitions for flowspine.

Every module that needs a Connection, Source, Sink or Runtime imports the
contract from here. Protocols define shape, not inheritance: any object
with the right methods can be plugged into the engine.

Architecture:
    ::

        protocols.py
        ├── Connection   — sync DB protocol (sqlite3, psycopg2, ...)
        ├── Source       — cursor-paginated record producer
        ├── Sink         — record consumer (write, optional flush/close)
        └── Runtime      — per-record transform + batch sizing

    Consumers:
        execution/ledger.py (Connection), execution/batch.py,
        execution/executor.py, execution/registry.py (Source/Sink/Runtime)

Guardrails:
    ❌ DON'T: Duplicate these protocols in other modules
    ✅ DO: Import from flowspine.core.protocols

    ❌ DON'T: Require ``flush``/``close`` on every Sink
    ✅ DO: Check with ``getattr``, they are optional hooks

Tags:
    protocol, connection, source, sink, runtime, contracts
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

# ---------------------------------------------------------------------------
# Database Connection Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Connection(Protocol):
    """
    Minimal SYNCHRONOUS connection interface for database operations.

    ``sqlite3.Connection`` satisfies it natively; PostgreSQL drivers are
    wrapped in a thin sync adapter.

    Examples:
        >>> conn.execute("SELECT * FROM flow_runs WHERE id = ?", ("r-1",))
        >>> conn.commit()
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters. SYNC."""
        ...

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        """Execute SQL statement for multiple parameter sets. SYNC."""
        ...

    def commit(self) -> None:
        """Commit current transaction. SYNC."""
        ...

    def rollback(self) -> None:
        """Rollback current transaction. SYNC."""
        ...


# ---------------------------------------------------------------------------
# Data Flow Component Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class Source(Protocol):
    """Cursor-paginated record producer.

    ``next_batch(after, limit)`` returns at most ``limit`` records strictly
    after the position ``after`` (``None`` means from the beginning), in
    ascending cursor order. An empty sequence means the source is drained.

    A source may also define ``cursor_for(record)`` to extract the position
    token of a record; otherwise the engine uses ``record["id"]`` or
    ``record.id``.
    """

    def next_batch(self, after: Any, limit: int) -> Sequence[Any]:
        ...


@runtime_checkable
class Sink(Protocol):
    """Record consumer.

    Must tolerate at-least-once delivery: after a crash mid-batch, the
    whole in-flight batch is written again. ``flush()`` and ``close()``
    are optional and called when present.
    """

    def write(self, record: Any) -> None:
        ...


@runtime_checkable
class Runtime(Protocol):
    """Per-record transform plus execution settings.

    Attributes:
        batch_size: Records fetched per batch (positive), or None for the
            engine default
        enabled: When False the engine cancels the run without processing
    """

    batch_size: int | None
    enabled: bool

    def transform(self, record: Any) -> Any:
        ...


__all__ = [
    "Connection",
    "Source",
    "Sink",
    "Runtime",
]
