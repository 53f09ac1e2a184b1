"""Built-in Source, Sink and Runtime kinds.

These are deliberately small: enough to wire a flow end to end in tests,
demos and local development. Real connectors register their own kinds
through :mod:`flowspine.execution.registry`.

=========  ==============  ==============================================
Role       Kind            Component
=========  ==============  ==============================================
source     ``memory``      :class:`MemorySource`
sink       ``memory``      :class:`MemorySink`
sink       ``null``        :class:`NullSink`
sink       ``log``         :class:`LogSink`
runtime    ``passthrough`` :class:`PassthroughRuntime`
runtime    ``field_map``   :class:`FieldMapRuntime`
=========  ==============  ==============================================
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Any

from flowspine.core.logging import get_logger

from .registry import ComponentRegistry

logger = get_logger(__name__)


def record_cursor(record: Any, field: str = "id") -> Any:
    """Position of a record: ``record[field]``, ``record.<field>``, or the
    record itself for scalars."""
    if isinstance(record, Mapping):
        return record[field]
    if hasattr(record, field):
        return getattr(record, field)
    return record


# =============================================================================
# SOURCES
# =============================================================================


class MemorySource:
    """Serves a fixed list of records in cursor order.

    Args:
        records: Mappings, objects or scalars; sorted by their cursor
        cursor_field: Key or attribute holding each record's position
    """

    def __init__(self, records: Sequence[Any] = (), cursor_field: str = "id"):
        self.cursor_field = cursor_field
        try:
            self.records = sorted(records, key=self.cursor_for)
        except (KeyError, AttributeError) as e:
            raise ValueError(f"record without cursor field '{cursor_field}'") from e

    def cursor_for(self, record: Any) -> Any:
        return record_cursor(record, self.cursor_field)

    def next_batch(self, after: Any, limit: int) -> list[Any]:
        if after is None:
            remaining = self.records
        else:
            remaining = [r for r in self.records if self.cursor_for(r) > after]
        return list(remaining[:limit])


# =============================================================================
# SINKS
# =============================================================================


class MemorySink:
    """Collects written records in a list.

    With a ``name``, records go to a process-wide named buffer shared by
    every sink built with that name, so output survives the component
    being rebuilt for a retry or resumption.
    """

    _buffers: dict[str, list[Any]] = {}
    _buffers_lock = threading.Lock()

    def __init__(self, name: str | None = None):
        self.name = name
        if name is None:
            self.records: list[Any] = []
        else:
            with self._buffers_lock:
                self.records = self._buffers.setdefault(name, [])
        self.flushes = 0
        self.closed = False

    def write(self, record: Any) -> None:
        self.records.append(record)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True

    @classmethod
    def buffer(cls, name: str) -> list[Any]:
        with cls._buffers_lock:
            return cls._buffers.setdefault(name, [])

    @classmethod
    def clear_buffers(cls) -> None:
        with cls._buffers_lock:
            cls._buffers.clear()


class NullSink:
    """Discards records, counting them."""

    def __init__(self) -> None:
        self.count = 0

    def write(self, record: Any) -> None:
        self.count += 1


class LogSink:
    """Logs every record as a structured event."""

    def __init__(self, event: str = "record_written", level: str = "info"):
        self.event = event
        self.level = level.lower()
        if self.level not in ("debug", "info", "warning"):
            raise ValueError(f"Unsupported log level '{level}'")

    def write(self, record: Any) -> None:
        getattr(logger, self.level)(self.event, record=record)


# =============================================================================
# RUNTIMES
# =============================================================================


class PassthroughRuntime:
    """Passthrough runtime; subclasses override :meth:`transform`.

    Returning ``None`` from ``transform`` drops the record: it is not
    written but still counts as processed.
    """

    def __init__(self, batch_size: int | None = None, enabled: bool = True):
        if batch_size is not None and int(batch_size) < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        # None defers to EngineSettings.default_batch_size
        self.batch_size = int(batch_size) if batch_size is not None else None
        self.enabled = bool(enabled)

    def transform(self, record: Any) -> Any:
        return record


class FieldMapRuntime(PassthroughRuntime):
    """Renames keys of mapping records (``{"old": "new"}``).

    Args:
        mapping: Source key → output key
        drop_unmapped: Drop keys not named in ``mapping``
    """

    def __init__(
        self,
        mapping: dict[str, str],
        drop_unmapped: bool = False,
        batch_size: int | None = None,
        enabled: bool = True,
    ):
        super().__init__(batch_size=batch_size, enabled=enabled)
        if not isinstance(mapping, dict):
            raise ValueError("mapping must be a dict of field renames")
        self.mapping = mapping
        self.drop_unmapped = drop_unmapped

    def transform(self, record: Any) -> Any:
        if not isinstance(record, Mapping):
            raise TypeError(f"field_map expects mapping records, got {type(record).__name__}")
        result = {}
        for key, value in record.items():
            if key in self.mapping:
                result[self.mapping[key]] = value
            elif not self.drop_unmapped:
                result[key] = value
        return result


def register_builtin_components(registry: ComponentRegistry) -> None:
    registry.register("source", "memory", MemorySource, "In-memory record list")
    registry.register("sink", "memory", MemorySink, "Collect records in memory")
    registry.register("sink", "null", NullSink, "Discard records")
    registry.register("sink", "log", LogSink, "Log each record")
    registry.register("runtime", "passthrough", PassthroughRuntime, "Identity transform")
    registry.register("runtime", "field_map", FieldMapRuntime, "Rename record fields")


__all__ = [
    "record_cursor",
    "MemorySource",
    "MemorySink",
    "NullSink",
    "LogSink",
    "PassthroughRuntime",
    "FieldMapRuntime",
    "register_builtin_components",
]
