"""
Factory functions that create engine components from settings.

Each factory uses lazy imports so that ``flowspine.core`` stays free of
execution-layer imports until a component is actually requested.

Features:
    - ``create_repository()`` — SQLite ledger or in-memory repository
    - ``configure_from_settings()`` — structlog setup from log fields

Tags:
    flowspine, configuration, factory-pattern, lazy-imports
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .settings import EngineSettings


def create_repository(settings: EngineSettings) -> Any:
    """Create the run repository selected by *settings.database_path*.

    A path (or ``":memory:"``) selects the SQLite :class:`RunLedger`, with
    tables created on first use; no path selects the in-memory repository.
    """
    if not settings.database_path:
        from flowspine.execution.repository import InMemoryRunRepository

        return InMemoryRunRepository()

    from flowspine.core.dialect import get_dialect
    from flowspine.execution.ledger import RunLedger

    if settings.database_path != ":memory:":
        Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, check_same_thread=False, timeout=30.0)
    ledger = RunLedger(conn, get_dialect("sqlite"))
    ledger.initialize()
    return ledger


def configure_from_settings(settings: EngineSettings) -> None:
    """Configure structlog from ``log_level`` / ``log_format``."""
    from flowspine.core.logging import configure_logging

    configure_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
    )
