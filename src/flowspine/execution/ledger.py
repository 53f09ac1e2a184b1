"""Run ledger - SQL implementation of the run repository.

The RunLedger persists flows and runs in two tables and implements the
claim protocol as a single conditional ``UPDATE``: the run flips from
``pending`` to ``in_progress`` only if it is still pending *and* the
number of in-progress runs sharing its concurrency key is below the
limit, both evaluated inside the same statement.

Architecture:

    .. code-block:: text

        RunLedger — claim / checkpoint store
        ┌───────────────────────────────────────────────────────────┐
        │                                                           │
        │  FLOWS                     RUNS                           │
        │  ─────                     ────                           │
        │  add_flow()                create_run() / get_run()       │
        │  get_flow[_by_name]()      find_due() / find_stale()      │
        │  update_flow()             claim() / reclaim() / renew    │
        │  record_flow_run()         save_checkpoint() / finish()   │
        │                            cancel() / delete_runs_before()│
        │                                                           │
        ├───────────────────────────────────────────────────────────┤
        │  Tables:                                                  │
        │  ┌──────────────────┐     ┌──────────────────────────┐    │
        │  │ flowspine_flows  │────>│ flowspine_runs           │    │
        │  │ (configuration)  │     │ (state machine + cursor) │    │
        │  └──────────────────┘     └──────────────────────────┘    │
        └───────────────────────────────────────────────────────────┘

    Claim (PostgreSQL adds an advisory lock on the concurrency key first)::

        UPDATE flowspine_runs
           SET status = 'in_progress', claimed_by = ?, lease_expires_at = ?, ...
         WHERE id = ? AND status = 'pending'
           AND (SELECT COUNT(*) FROM flowspine_runs
                 WHERE status = 'in_progress' AND concurrency_key = ?) < ?

Component configs are stored as JSON text and cursors as type-preserving
JSON (see cursors.py); timestamps are fixed-width UTC strings so that
string comparison is time comparison.

Example:
    >>> import sqlite3
    >>> from flowspine.execution.ledger import RunLedger
    >>>
    >>> ledger = RunLedger(sqlite3.connect(":memory:", check_same_thread=False))
    >>> ledger.initialize()
    >>> ledger.add_flow(flow)
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

from flowspine.core.dialect import Dialect, SQLiteDialect, get_dialect
from flowspine.core.errors import (
    AlreadyClaimedError,
    ClaimConflictError,
    ConcurrencyLimitError,
    CursorRegressionError,
    FlowNotFoundError,
    RunNotFoundError,
)
from flowspine.core.logging import get_logger
from flowspine.core.protocols import Connection

from .models import (
    TERMINAL_STATUSES,
    ErrorClassification,
    Flow,
    FlowStatus,
    Run,
    RunStatus,
    utcnow,
    validate_run_transition,
)
from .cursors import dumps_cursor, loads_cursor, normalize_cursor
from .repository import UNSET, cursor_advances, cursor_regressed
from .retry import RetryPolicy

logger = get_logger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

LEDGER_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS flowspine_flows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        enabled INTEGER NOT NULL,
        status TEXT NOT NULL,
        interval_seconds INTEGER NOT NULL DEFAULT 0,
        concurrency_limit INTEGER,
        concurrency_group TEXT,
        concurrency_group_limit INTEGER,
        source_config TEXT NOT NULL,
        sink_config TEXT NOT NULL,
        runtime_config TEXT NOT NULL,
        retry_policy TEXT,
        source_cursor TEXT,
        last_run_at TEXT,
        last_run_status TEXT,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowspine_runs (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL REFERENCES flowspine_flows(id),
        status TEXT NOT NULL,
        run_after TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT,
        error_message TEXT,
        error_classification TEXT,
        start_cursor TEXT,
        first_cursor TEXT,
        last_cursor TEXT,
        records_processed INTEGER NOT NULL DEFAULT 0,
        resumption_count INTEGER NOT NULL DEFAULT 0,
        attempt INTEGER NOT NULL DEFAULT 1,
        retry_of_run_id TEXT,
        claimed_by TEXT,
        lease_expires_at TEXT,
        concurrency_key TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_flowspine_runs_due ON flowspine_runs (status, run_after)",
    "CREATE INDEX IF NOT EXISTS idx_flowspine_runs_key ON flowspine_runs (status, concurrency_key)",
    "CREATE INDEX IF NOT EXISTS idx_flowspine_runs_flow ON flowspine_runs (flow_id, status)",
)

_FLOW_COLUMNS = (
    "id, name, enabled, status, interval_seconds, concurrency_limit, concurrency_group, "
    "concurrency_group_limit, source_config, sink_config, runtime_config, retry_policy, "
    "source_cursor, last_run_at, last_run_status, last_error, created_at, updated_at"
)

_RUN_COLUMNS = (
    "id, flow_id, status, run_after, started_at, ended_at, error_message, "
    "error_classification, start_cursor, first_cursor, last_cursor, records_processed, "
    "resumption_count, attempt, retry_of_run_id, claimed_by, lease_expires_at, "
    "concurrency_key, cancel_requested, created_at, updated_at"
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=UTC)


class RunLedger:
    """SQL-backed run repository (SQLite or PostgreSQL).

    A single connection is shared by every thread of the process; an
    internal lock serializes statements on it. Cross-process exclusivity
    comes from the database: the conditional claim update, plus
    ``FOR UPDATE SKIP LOCKED`` and advisory locks where the dialect has them.
    """

    def __init__(self, conn: Connection, dialect: Dialect | str | None = None):
        """Initialize with a database connection.

        Args:
            conn: Database connection (sqlite3.Connection or a sync PG adapter)
            dialect: SQL dialect or its name, e.g. ``"postgresql"`` (default: SQLite)
        """
        self._conn = conn
        if isinstance(dialect, str):
            dialect = get_dialect(dialect)
        self._dialect = dialect or SQLiteDialect()
        self._db_lock = threading.RLock()

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._db_lock:
            for ddl in LEDGER_DDL:
                self._conn.execute(ddl)
            self._conn.commit()

    # =========================================================================
    # SQL PLUMBING
    # =========================================================================

    def _sql(self, sql: str) -> str:
        """Rewrite ``?`` placeholders for the dialect."""
        if self._dialect.placeholder(0) == "?":
            return sql
        return sql.replace("?", self._dialect.placeholder(0))

    def _execute(self, sql: str, params: tuple = ()) -> Any:
        return self._conn.execute(self._sql(sql), params)

    def _fetchone(self, sql: str, params: tuple = ()) -> Any:
        with self._db_lock:
            return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list:
        with self._db_lock:
            return list(self._execute(sql, params).fetchall())

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute one DML statement in its own transaction; return rowcount."""
        with self._db_lock:
            try:
                cursor = self._execute(sql, params)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            return cursor.rowcount

    # =========================================================================
    # FLOWS
    # =========================================================================

    def _flow_params(self, flow: Flow) -> tuple:
        return (
            flow.id,
            flow.name,
            1 if flow.enabled else 0,
            flow.status.value,
            flow.interval_seconds,
            flow.concurrency_limit,
            flow.concurrency_group,
            flow.concurrency_group_limit,
            json.dumps(flow.source_config),
            json.dumps(flow.sink_config),
            json.dumps(flow.runtime_config),
            json.dumps(flow.retry_policy.to_dict()) if flow.retry_policy else None,
            dumps_cursor(flow.source_cursor),
            _ts(flow.last_run_at),
            flow.last_run_status.value if flow.last_run_status else None,
            flow.last_error,
            _ts(flow.created_at),
            _ts(flow.updated_at),
        )

    def _row_to_flow(self, row: tuple) -> Flow:
        return Flow(
            id=row[0],
            name=row[1],
            enabled=bool(row[2]),
            status=FlowStatus(row[3]),
            interval_seconds=row[4],
            concurrency_limit=row[5],
            concurrency_group=row[6],
            concurrency_group_limit=row[7],
            source_config=json.loads(row[8]),
            sink_config=json.loads(row[9]),
            runtime_config=json.loads(row[10]),
            retry_policy=RetryPolicy.from_dict(json.loads(row[11]) if row[11] else None),
            source_cursor=loads_cursor(row[12]),
            last_run_at=_parse_ts(row[13]),
            last_run_status=RunStatus(row[14]) if row[14] else None,
            last_error=row[15],
            created_at=_parse_ts(row[16]),
            updated_at=_parse_ts(row[17]),
        )

    def add_flow(self, flow: Flow) -> Flow:
        existing = self.get_flow_by_name(flow.name)
        if existing is not None and existing.id != flow.id:
            raise ValueError(f"Flow name already exists: {flow.name}")
        placeholders = self._dialect.placeholders(18)
        self._write(
            f"INSERT INTO flowspine_flows ({_FLOW_COLUMNS}) VALUES ({placeholders})",
            self._flow_params(flow),
        )
        return flow

    def get_flow(self, flow_id: str) -> Flow | None:
        row = self._fetchone(f"SELECT {_FLOW_COLUMNS} FROM flowspine_flows WHERE id = ?", (flow_id,))
        return self._row_to_flow(row) if row else None

    def get_flow_by_name(self, name: str) -> Flow | None:
        row = self._fetchone(f"SELECT {_FLOW_COLUMNS} FROM flowspine_flows WHERE name = ?", (name,))
        return self._row_to_flow(row) if row else None

    def list_flows(self) -> list[Flow]:
        rows = self._fetchall(f"SELECT {_FLOW_COLUMNS} FROM flowspine_flows ORDER BY name")
        return [self._row_to_flow(row) for row in rows]

    def update_flow(self, flow: Flow) -> Flow:
        flow.updated_at = utcnow()
        params = self._flow_params(flow)
        count = self._write(
            """
            UPDATE flowspine_flows
            SET name = ?, enabled = ?, status = ?, interval_seconds = ?, concurrency_limit = ?,
                concurrency_group = ?, concurrency_group_limit = ?, source_config = ?,
                sink_config = ?, runtime_config = ?, retry_policy = ?, source_cursor = ?,
                last_run_at = ?, last_run_status = ?, last_error = ?, updated_at = ?
            WHERE id = ?
            """,
            params[1:16] + (params[17], flow.id),
        )
        if count == 0:
            raise FlowNotFoundError(flow.name)
        return flow

    def record_flow_run(
        self,
        flow_id: str,
        status: RunStatus,
        at: datetime,
        error: str | None = None,
        source_cursor: Any = UNSET,
    ) -> Flow:
        with self._db_lock:
            flow = self.get_flow(flow_id)
            if flow is None:
                raise FlowNotFoundError(flow_id)
            cursor_value = flow.source_cursor
            if source_cursor is not UNSET:
                source_cursor = normalize_cursor(source_cursor)
                if cursor_advances(flow.source_cursor, source_cursor):
                    cursor_value = source_cursor
            self._write(
                """
                UPDATE flowspine_flows
                SET last_run_at = ?, last_run_status = ?, last_error = ?, source_cursor = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (_ts(at), RunStatus(status).value, error, dumps_cursor(cursor_value), _ts(at), flow_id),
            )
            flow.last_run_at = at
            flow.last_run_status = RunStatus(status)
            flow.last_error = error
            flow.source_cursor = cursor_value
            flow.updated_at = at
            return flow

    # =========================================================================
    # RUNS
    # =========================================================================

    def _run_params(self, run: Run) -> tuple:
        return (
            run.id,
            run.flow_id,
            run.status.value,
            _ts(run.run_after),
            _ts(run.started_at),
            _ts(run.ended_at),
            run.error_message,
            run.error_classification.value if run.error_classification else None,
            dumps_cursor(run.start_cursor),
            dumps_cursor(run.first_cursor),
            dumps_cursor(run.last_cursor),
            run.records_processed,
            run.resumption_count,
            run.attempt,
            run.retry_of_run_id,
            run.claimed_by,
            _ts(run.lease_expires_at),
            run.concurrency_key,
            1 if run.cancel_requested else 0,
            _ts(run.created_at),
            _ts(run.updated_at),
        )

    def _row_to_run(self, row: tuple) -> Run:
        return Run(
            id=row[0],
            flow_id=row[1],
            status=RunStatus(row[2]),
            run_after=_parse_ts(row[3]),
            started_at=_parse_ts(row[4]),
            ended_at=_parse_ts(row[5]),
            error_message=row[6],
            error_classification=ErrorClassification(row[7]) if row[7] else None,
            start_cursor=loads_cursor(row[8]),
            first_cursor=loads_cursor(row[9]),
            last_cursor=loads_cursor(row[10]),
            records_processed=row[11],
            resumption_count=row[12],
            attempt=row[13],
            retry_of_run_id=row[14],
            claimed_by=row[15],
            lease_expires_at=_parse_ts(row[16]),
            concurrency_key=row[17],
            cancel_requested=bool(row[18]),
            created_at=_parse_ts(row[19]),
            updated_at=_parse_ts(row[20]),
        )

    def create_run(self, run: Run) -> Run:
        if self.get_flow(run.flow_id) is None:
            raise FlowNotFoundError(run.flow_id)
        placeholders = self._dialect.placeholders(21)
        self._write(
            f"INSERT INTO flowspine_runs ({_RUN_COLUMNS}) VALUES ({placeholders})",
            self._run_params(run),
        )
        return run

    def get_run(self, run_id: str) -> Run | None:
        row = self._fetchone(f"SELECT {_RUN_COLUMNS} FROM flowspine_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row else None

    def _require(self, run_id: str) -> Run:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(
        self,
        flow_id: str | None = None,
        status: RunStatus | None = None,
        limit: int | None = None,
    ) -> list[Run]:
        conditions = []
        params: list[Any] = []
        if flow_id is not None:
            conditions.append("flow_id = ?")
            params.append(flow_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(RunStatus(status).value)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = f"SELECT {_RUN_COLUMNS} FROM flowspine_runs{where} ORDER BY created_at"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_run(row) for row in self._fetchall(sql, tuple(params))]

    def has_open_run(self, flow_id: str) -> bool:
        row = self._fetchone(
            "SELECT COUNT(*) FROM flowspine_runs "
            "WHERE flow_id = ? AND status IN ('pending', 'in_progress')",
            (flow_id,),
        )
        return bool(row and row[0])

    def find_due(self, now: datetime, limit: int = 100) -> list[Run]:
        sql = (
            f"SELECT {_RUN_COLUMNS} FROM flowspine_runs "
            "WHERE status = 'pending' AND run_after <= ? "
            "ORDER BY run_after, created_at LIMIT ?"
            f"{self._dialect.skip_locked()}"
        )
        return [self._row_to_run(row) for row in self._fetchall(sql, (_ts(now), limit))]

    def find_stale(self, now: datetime, limit: int = 100) -> list[Run]:
        sql = (
            f"SELECT {_RUN_COLUMNS} FROM flowspine_runs "
            "WHERE status = 'in_progress' AND lease_expires_at IS NOT NULL "
            "AND lease_expires_at <= ? "
            "ORDER BY lease_expires_at LIMIT ?"
            f"{self._dialect.skip_locked()}"
        )
        return [self._row_to_run(row) for row in self._fetchall(sql, (_ts(now), limit))]

    def count_in_progress(self, concurrency_key: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM flowspine_runs WHERE status = 'in_progress' AND concurrency_key = ?",
            (concurrency_key,),
        )
        return int(row[0]) if row else 0

    # =========================================================================
    # CLAIM PROTOCOL
    # =========================================================================

    def claim(
        self,
        run_id: str,
        worker_id: str,
        concurrency_key: str,
        limit: int,
        now: datetime,
        lease_seconds: int,
    ) -> Run:
        lease = now + timedelta(seconds=lease_seconds)
        with self._db_lock:
            try:
                lock_sql = self._dialect.advisory_lock(self._dialect.placeholder(0))
                if lock_sql:
                    self._conn.execute(lock_sql, (concurrency_key,))
                cursor = self._execute(
                    """
                    UPDATE flowspine_runs
                    SET status = 'in_progress', claimed_by = ?, lease_expires_at = ?,
                        concurrency_key = ?, updated_at = ?
                    WHERE id = ? AND status = 'pending'
                      AND (SELECT COUNT(*) FROM flowspine_runs
                           WHERE status = 'in_progress' AND concurrency_key = ?) < ?
                    """,
                    (worker_id, _ts(lease), concurrency_key, _ts(now), run_id, concurrency_key, limit),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

            if cursor.rowcount == 1:
                return self._require(run_id)

            run = self._require(run_id)
            if run.status != RunStatus.PENDING:
                raise AlreadyClaimedError(run_id, f"status is {run.status.value}")
            raise ConcurrencyLimitError(run_id, concurrency_key, limit)

    def reclaim(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> Run:
        lease = now + timedelta(seconds=lease_seconds)
        with self._db_lock:
            count = self._write(
                """
                UPDATE flowspine_runs
                SET claimed_by = ?, lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status = 'in_progress'
                  AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?
                """,
                (worker_id, _ts(lease), _ts(now), run_id, _ts(now)),
            )
            if count == 1:
                return self._require(run_id)
            self._require(run_id)
            raise AlreadyClaimedError(run_id, "lease has not expired")

    def renew_lease(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        lease = now + timedelta(seconds=lease_seconds)
        count = self._write(
            """
            UPDATE flowspine_runs SET lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND claimed_by = ? AND status = 'in_progress'
            """,
            (_ts(lease), _ts(now), run_id, worker_id),
        )
        return count == 1

    # =========================================================================
    # CLAIM HOLDER
    # =========================================================================

    def _holder_update(self, sql: str, params: tuple, run_id: str, worker_id: str) -> None:
        """Run an UPDATE guarded by ``claimed_by``; lost ownership raises."""
        count = self._write(sql, params)
        if count != 1:
            self._require(run_id)
            raise ClaimConflictError(run_id, worker_id)

    def mark_started(self, run_id: str, worker_id: str, now: datetime) -> bool:
        with self._db_lock:
            count = self._write(
                """
                UPDATE flowspine_runs SET started_at = ?, updated_at = ?
                WHERE id = ? AND claimed_by = ? AND status = 'in_progress' AND started_at IS NULL
                """,
                (_ts(now), _ts(now), run_id, worker_id),
            )
            if count == 1:
                return True
            run = self._require(run_id)
            if run.status != RunStatus.IN_PROGRESS or run.claimed_by != worker_id:
                raise ClaimConflictError(run_id, worker_id)
            return False

    def save_checkpoint(
        self,
        run_id: str,
        worker_id: str,
        cursor: Any,
        first_cursor: Any,
        records_delta: int,
        now: datetime,
        lease_seconds: int,
    ) -> Run:
        lease = now + timedelta(seconds=lease_seconds)
        with self._db_lock:
            run = self._require(run_id)
            if run.status != RunStatus.IN_PROGRESS or run.claimed_by != worker_id:
                raise ClaimConflictError(run_id, worker_id)
            # compare in stored form: naive datetimes are stored as UTC
            cursor = normalize_cursor(cursor)
            first_cursor = normalize_cursor(first_cursor)
            if cursor_regressed(run.last_cursor, cursor):
                raise CursorRegressionError(run_id, run.last_cursor, cursor)
            self._holder_update(
                """
                UPDATE flowspine_runs
                SET last_cursor = ?, first_cursor = COALESCE(first_cursor, ?),
                    records_processed = records_processed + ?, lease_expires_at = ?,
                    updated_at = ?
                WHERE id = ? AND claimed_by = ? AND status = 'in_progress'
                """,
                (
                    dumps_cursor(cursor),
                    dumps_cursor(first_cursor),
                    records_delta,
                    _ts(lease),
                    _ts(now),
                    run_id,
                    worker_id,
                ),
                run_id,
                worker_id,
            )
            return self._require(run_id)

    def increment_resumptions(self, run_id: str, worker_id: str) -> int:
        with self._db_lock:
            self._holder_update(
                """
                UPDATE flowspine_runs
                SET resumption_count = resumption_count + 1, updated_at = ?
                WHERE id = ? AND claimed_by = ? AND status = 'in_progress'
                """,
                (_ts(utcnow()), run_id, worker_id),
                run_id,
                worker_id,
            )
            return self._require(run_id).resumption_count

    def finish(
        self,
        run_id: str,
        worker_id: str,
        status: RunStatus,
        now: datetime,
        error_message: str | None = None,
        classification: ErrorClassification | None = None,
    ) -> Run:
        validate_run_transition(RunStatus.IN_PROGRESS, status)
        with self._db_lock:
            self._holder_update(
                """
                UPDATE flowspine_runs
                SET status = ?, ended_at = ?, error_message = ?, error_classification = ?,
                    lease_expires_at = NULL, updated_at = ?
                WHERE id = ? AND claimed_by = ? AND status = 'in_progress'
                """,
                (
                    RunStatus(status).value,
                    _ts(now),
                    error_message,
                    classification.value if classification else None,
                    _ts(now),
                    run_id,
                    worker_id,
                ),
                run_id,
                worker_id,
            )
            return self._require(run_id)

    # =========================================================================
    # ADMIN
    # =========================================================================

    def cancel(self, run_id: str, now: datetime, reason: str | None = None) -> Run:
        with self._db_lock:
            run = self._require(run_id)
            if run.status == RunStatus.IN_PROGRESS:
                self._write(
                    "UPDATE flowspine_runs SET cancel_requested = 1, updated_at = ? "
                    "WHERE id = ? AND status = 'in_progress'",
                    (_ts(now), run_id),
                )
            else:
                validate_run_transition(run.status, RunStatus.CANCELLED)
                count = self._write(
                    "UPDATE flowspine_runs SET status = 'cancelled', ended_at = ?, "
                    "error_message = ?, updated_at = ? WHERE id = ? AND status = 'pending'",
                    (_ts(now), reason, _ts(now), run_id),
                )
                if count == 0:
                    # claimed between the read and the update
                    return self.cancel(run_id, now, reason)
            return self._require(run_id)

    def delete_runs_before(self, cutoff: datetime) -> int:
        statuses = ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))
        count = self._write(
            f"DELETE FROM flowspine_runs WHERE status IN ({statuses}) "
            "AND ended_at IS NOT NULL AND ended_at < ?",
            (_ts(cutoff),),
        )
        if count:
            logger.info("runs_deleted", count=count, cutoff=cutoff.isoformat())
        return count


__all__ = ["LEDGER_DDL", "RunLedger"]
