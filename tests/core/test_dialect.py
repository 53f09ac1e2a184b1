"""Tests for SQL dialects."""

import sqlite3

import pytest

from flowspine.core.dialect import (
    PostgreSQLDialect,
    SQLiteDialect,
    get_dialect,
)
from flowspine.execution.ledger import RunLedger
from flowspine.execution.models import Flow


class TestSQLiteDialect:
    def test_placeholders(self):
        d = SQLiteDialect()
        assert d.name == "sqlite"
        assert d.placeholder(0) == "?"
        assert d.placeholders(3) == "?, ?, ?"

    def test_no_row_locking(self):
        d = SQLiteDialect()
        assert d.skip_locked() == ""
        assert d.advisory_lock("?") is None


class TestPostgreSQLDialect:
    def test_placeholders(self):
        d = PostgreSQLDialect()
        assert d.name == "postgresql"
        assert d.placeholders(2) == "%s, %s"

    def test_row_locking(self):
        d = PostgreSQLDialect()
        assert d.skip_locked() == " FOR UPDATE SKIP LOCKED"
        assert d.advisory_lock("%s") == "SELECT pg_advisory_xact_lock(hashtext(%s))"


class TestRegistry:
    def test_lookup(self):
        assert isinstance(get_dialect("sqlite"), SQLiteDialect)
        assert isinstance(get_dialect("PostgreSQL"), PostgreSQLDialect)

    def test_unknown(self):
        with pytest.raises(ValueError, match="oracle"):
            get_dialect("oracle")


class TestLedgerDialect:
    def test_ledger_accepts_dialect_name(self):
        conn = sqlite3.connect(":memory:")
        ledger = RunLedger(conn, "sqlite")
        ledger.initialize()
        flow = ledger.add_flow(Flow(name="orders"))
        assert ledger.get_flow_by_name("orders").id == flow.id
        conn.close()

    def test_unknown_dialect_name(self):
        with pytest.raises(ValueError):
            RunLedger(sqlite3.connect(":memory:"), "oracle")
