"""Type-preserving JSON encoding for cursors.

A cursor is whatever a source says a record's position is: an int, a
string, a timestamp, or a composite ``(updated_at, id)`` tuple. The SQL
ledger stores cursors as JSON text and the next checkpoint compares the
stored value against the new one with ``<``, so the round trip must give
back the same Python type. Plain ``json`` turns tuples into lists and
refuses datetimes; both break the comparison.

Non-JSON types are written as envelopes::

    {"__flowspine_type__": "tuple", "__flowspine_value__": [1700000000, 42]}
    {"__flowspine_type__": "datetime", "__flowspine_value__": "2024-01-01T00:00:00+00:00"}

Supported: ``tuple``, ``datetime``, ``date``, ``Decimal``. User dicts
that happen to contain the reserved key are wrapped in an
``escaped_dict`` envelope so they decode back unchanged.

Example:
    >>> from datetime import datetime, UTC
    >>> text = dumps_cursor((datetime(2024, 1, 1, tzinfo=UTC), 7))
    >>> loads_cursor(text)
    (datetime.datetime(2024, 1, 1, 0, 0, tzinfo=datetime.timezone.utc), 7)
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

TYPE_KEY = "__flowspine_type__"
VALUE_KEY = "__flowspine_value__"


def _envelope(kind: str, value: Any) -> dict[str, Any]:
    return {TYPE_KEY: kind, VALUE_KEY: value}


def _wrap(value: Any) -> Any:
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return _envelope("datetime", value.isoformat())
    if isinstance(value, date):
        return _envelope("date", value.isoformat())
    if isinstance(value, Decimal):
        return _envelope("decimal", str(value))
    if isinstance(value, tuple):
        return _envelope("tuple", [_wrap(v) for v in value])
    if isinstance(value, list):
        return [_wrap(v) for v in value]
    if isinstance(value, dict):
        wrapped = {k: _wrap(v) for k, v in value.items()}
        if TYPE_KEY in wrapped:
            return _envelope("escaped_dict", wrapped)
        return wrapped
    return value


def _unwrap(value: Any) -> Any:
    if isinstance(value, list):
        return [_unwrap(v) for v in value]
    if not isinstance(value, dict):
        return value
    if TYPE_KEY not in value:
        return {k: _unwrap(v) for k, v in value.items()}
    kind = value[TYPE_KEY]
    inner = value.get(VALUE_KEY)
    if kind == "tuple":
        return tuple(_unwrap(v) for v in inner)
    if kind == "datetime":
        return datetime.fromisoformat(inner)
    if kind == "date":
        return date.fromisoformat(inner)
    if kind == "decimal":
        return Decimal(inner)
    if kind == "escaped_dict":
        return {k: _unwrap(v) for k, v in inner.items()}
    raise ValueError(f"Unknown cursor envelope type: {kind!r}")


def dumps_cursor(value: Any) -> str | None:
    """Encode ``value`` as JSON text; ``None`` stays ``None``.

    Raises:
        TypeError: ``value`` contains a type with no JSON form
    """
    if value is None:
        return None
    return json.dumps(_wrap(value))


def loads_cursor(text: str | None) -> Any:
    """Decode text written by :func:`dumps_cursor`."""
    if text is None:
        return None
    return _unwrap(json.loads(text))


def normalize_cursor(value: Any) -> Any:
    """The value a cursor has after a store/load round trip."""
    return loads_cursor(dumps_cursor(value))


__all__ = ["TYPE_KEY", "VALUE_KEY", "dumps_cursor", "loads_cursor", "normalize_cursor"]
