"""Run Repository — the claim/query contract and an in-memory backend.

Manifesto:
The scheduler, executor and batch processor never talk to a database
directly. They talk to a ``RunRepository``: a small contract whose one
hard requirement is that ``claim`` is atomic. Two workers calling
``claim`` for the same run must never both succeed, and the count of
in-progress runs for a concurrency key must be checked in the same
indivisible step that flips the run to ``in_progress``.

ARCHITECTURE
────────────
::

    RunRepository (Protocol)
      ├── flows  ─ add_flow / get_flow / get_flow_by_name / list_flows
      │            update_flow / record_flow_run
      ├── runs   ─ create_run / get_run / list_runs / has_open_run
      ├── polls  ─ find_due / find_stale / count_in_progress
      ├── claim  ─ claim / reclaim                    (atomic)
      ├── lease  ─ renew_lease                        (CAS on claimed_by)
      ├── holder ─ mark_started / save_checkpoint     (CAS on claimed_by)
      │            increment_resumptions / finish
      └── admin  ─ cancel / delete_runs_before

    Implementations:
      InMemoryRunRepository  (this module)  ─ threading.Lock
      RunLedger              (ledger.py)    ─ SQLite / PostgreSQL

Every method returns detached copies; mutating a returned ``Run`` does
not change stored state.

Related modules:
    ledger.py   — SQL implementation
    executor.py — the only writer of in-progress runs
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from flowspine.core.errors import (
    AlreadyClaimedError,
    ClaimConflictError,
    ConcurrencyLimitError,
    CursorRegressionError,
    FlowNotFoundError,
    RunNotFoundError,
)

from .models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ErrorClassification,
    Flow,
    Run,
    RunStatus,
    utcnow,
    validate_run_transition,
)

UNSET: Any = object()


def cursor_regressed(current: Any, proposed: Any) -> bool:
    """True if moving from ``current`` to ``proposed`` goes backwards.

    Incomparable cursors count as a regression.
    """
    if current is None:
        return False
    if proposed is None:
        return True
    try:
        return proposed < current
    except TypeError:
        return True


def cursor_advances(current: Any, proposed: Any) -> bool:
    """True if ``proposed`` should replace ``current`` as a high-water mark."""
    if proposed is None:
        return False
    if current is None:
        return True
    try:
        return proposed > current
    except TypeError:
        return True


@runtime_checkable
class RunRepository(Protocol):
    """Persistence contract for flows and runs."""

    # --- flows -------------------------------------------------------------

    def add_flow(self, flow: Flow) -> Flow: ...

    def get_flow(self, flow_id: str) -> Flow | None: ...

    def get_flow_by_name(self, name: str) -> Flow | None: ...

    def list_flows(self) -> list[Flow]: ...

    def update_flow(self, flow: Flow) -> Flow: ...

    def record_flow_run(
        self,
        flow_id: str,
        status: RunStatus,
        at: datetime,
        error: str | None = None,
        source_cursor: Any = UNSET,
    ) -> Flow: ...

    # --- runs --------------------------------------------------------------

    def create_run(self, run: Run) -> Run: ...

    def get_run(self, run_id: str) -> Run | None: ...

    def list_runs(
        self,
        flow_id: str | None = None,
        status: RunStatus | None = None,
        limit: int | None = None,
    ) -> list[Run]: ...

    def has_open_run(self, flow_id: str) -> bool: ...

    def find_due(self, now: datetime, limit: int = 100) -> list[Run]: ...

    def find_stale(self, now: datetime, limit: int = 100) -> list[Run]: ...

    def count_in_progress(self, concurrency_key: str) -> int: ...

    # --- claim protocol ----------------------------------------------------

    def claim(
        self,
        run_id: str,
        worker_id: str,
        concurrency_key: str,
        limit: int,
        now: datetime,
        lease_seconds: int,
    ) -> Run: ...

    def reclaim(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> Run: ...

    def renew_lease(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool: ...

    # --- claim holder ------------------------------------------------------

    def mark_started(self, run_id: str, worker_id: str, now: datetime) -> bool: ...

    def save_checkpoint(
        self,
        run_id: str,
        worker_id: str,
        cursor: Any,
        first_cursor: Any,
        records_delta: int,
        now: datetime,
        lease_seconds: int,
    ) -> Run: ...

    def increment_resumptions(self, run_id: str, worker_id: str) -> int: ...

    def finish(
        self,
        run_id: str,
        worker_id: str,
        status: RunStatus,
        now: datetime,
        error_message: str | None = None,
        classification: ErrorClassification | None = None,
    ) -> Run: ...

    # --- admin -------------------------------------------------------------

    def cancel(self, run_id: str, now: datetime, reason: str | None = None) -> Run: ...

    def delete_runs_before(self, cutoff: datetime) -> int: ...


class InMemoryRunRepository:
    """Thread-safe in-process repository.

    A single lock serializes every operation, which makes ``claim`` (status
    check, in-progress count and update) trivially atomic for all threads
    of one process. Use :class:`~flowspine.execution.ledger.RunLedger` when
    workers live in different processes.
    """

    def __init__(self) -> None:
        self._flows: dict[str, Flow] = {}
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # FLOWS
    # =========================================================================

    def add_flow(self, flow: Flow) -> Flow:
        with self._lock:
            for existing in self._flows.values():
                if existing.name == flow.name and existing.id != flow.id:
                    raise ValueError(f"Flow name already exists: {flow.name}")
            self._flows[flow.id] = copy.deepcopy(flow)
        return copy.deepcopy(flow)

    def get_flow(self, flow_id: str) -> Flow | None:
        with self._lock:
            flow = self._flows.get(flow_id)
            return copy.deepcopy(flow) if flow else None

    def get_flow_by_name(self, name: str) -> Flow | None:
        with self._lock:
            for flow in self._flows.values():
                if flow.name == name:
                    return copy.deepcopy(flow)
        return None

    def list_flows(self) -> list[Flow]:
        with self._lock:
            flows = sorted(self._flows.values(), key=lambda f: f.name)
            return [copy.deepcopy(f) for f in flows]

    def update_flow(self, flow: Flow) -> Flow:
        with self._lock:
            if flow.id not in self._flows:
                raise FlowNotFoundError(flow.name)
            flow.updated_at = utcnow()
            self._flows[flow.id] = copy.deepcopy(flow)
        return copy.deepcopy(flow)

    def record_flow_run(
        self,
        flow_id: str,
        status: RunStatus,
        at: datetime,
        error: str | None = None,
        source_cursor: Any = UNSET,
    ) -> Flow:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None:
                raise FlowNotFoundError(flow_id)
            flow.last_run_at = at
            flow.last_run_status = RunStatus(status)
            flow.last_error = error
            if source_cursor is not UNSET and cursor_advances(flow.source_cursor, source_cursor):
                flow.source_cursor = copy.deepcopy(source_cursor)
            flow.updated_at = at
            return copy.deepcopy(flow)

    # =========================================================================
    # RUNS
    # =========================================================================

    def create_run(self, run: Run) -> Run:
        with self._lock:
            if run.flow_id not in self._flows:
                raise FlowNotFoundError(run.flow_id)
            if run.id in self._runs:
                raise ValueError(f"Run already exists: {run.id}")
            self._runs[run.id] = copy.deepcopy(run)
        return copy.deepcopy(run)

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def _require(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(
        self,
        flow_id: str | None = None,
        status: RunStatus | None = None,
        limit: int | None = None,
    ) -> list[Run]:
        with self._lock:
            runs = [
                r
                for r in self._runs.values()
                if (flow_id is None or r.flow_id == flow_id)
                and (status is None or r.status == status)
            ]
            runs.sort(key=lambda r: r.created_at)
            if limit is not None:
                runs = runs[:limit]
            return [copy.deepcopy(r) for r in runs]

    def has_open_run(self, flow_id: str) -> bool:
        with self._lock:
            return any(
                r.flow_id == flow_id and r.status in OPEN_STATUSES for r in self._runs.values()
            )

    def find_due(self, now: datetime, limit: int = 100) -> list[Run]:
        with self._lock:
            due = [
                r for r in self._runs.values() if r.status == RunStatus.PENDING and r.run_after <= now
            ]
            due.sort(key=lambda r: (r.run_after, r.created_at))
            return [copy.deepcopy(r) for r in due[:limit]]

    def find_stale(self, now: datetime, limit: int = 100) -> list[Run]:
        with self._lock:
            stale = [r for r in self._runs.values() if r.lease_expired(now)]
            stale.sort(key=lambda r: r.lease_expires_at)
            return [copy.deepcopy(r) for r in stale[:limit]]

    def _in_progress(self, concurrency_key: str) -> int:
        return sum(
            1
            for r in self._runs.values()
            if r.status == RunStatus.IN_PROGRESS and r.concurrency_key == concurrency_key
        )

    def count_in_progress(self, concurrency_key: str) -> int:
        with self._lock:
            return self._in_progress(concurrency_key)

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
        with self._lock:
            run = self._require(run_id)
            if run.status != RunStatus.PENDING:
                raise AlreadyClaimedError(run_id, f"status is {run.status.value}")
            if self._in_progress(concurrency_key) >= limit:
                raise ConcurrencyLimitError(run_id, concurrency_key, limit)
            run.status = RunStatus.IN_PROGRESS
            run.claimed_by = worker_id
            run.concurrency_key = concurrency_key
            run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            run.updated_at = now
            return copy.deepcopy(run)

    def reclaim(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> Run:
        with self._lock:
            run = self._require(run_id)
            if not run.lease_expired(now):
                raise AlreadyClaimedError(run_id, "lease has not expired")
            run.claimed_by = worker_id
            run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            run.updated_at = now
            return copy.deepcopy(run)

    def renew_lease(self, run_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        """Extend the holder's lease; False when ``worker_id`` no longer holds the run."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status != RunStatus.IN_PROGRESS or run.claimed_by != worker_id:
                return False
            run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            run.updated_at = now
            return True

    # =========================================================================
    # CLAIM HOLDER
    # =========================================================================

    def _require_holder(self, run_id: str, worker_id: str) -> Run:
        run = self._require(run_id)
        if run.status != RunStatus.IN_PROGRESS or run.claimed_by != worker_id:
            raise ClaimConflictError(run_id, worker_id)
        return run

    def mark_started(self, run_id: str, worker_id: str, now: datetime) -> bool:
        with self._lock:
            run = self._require_holder(run_id, worker_id)
            if run.started_at is not None:
                return False
            run.started_at = now
            run.updated_at = now
            return True

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
        with self._lock:
            run = self._require_holder(run_id, worker_id)
            if cursor_regressed(run.last_cursor, cursor):
                raise CursorRegressionError(run_id, run.last_cursor, cursor)
            run.last_cursor = copy.deepcopy(cursor)
            if run.first_cursor is None:
                run.first_cursor = copy.deepcopy(first_cursor)
            run.records_processed += records_delta
            run.lease_expires_at = now + timedelta(seconds=lease_seconds)
            run.updated_at = now
            return copy.deepcopy(run)

    def increment_resumptions(self, run_id: str, worker_id: str) -> int:
        with self._lock:
            run = self._require_holder(run_id, worker_id)
            run.resumption_count += 1
            run.updated_at = utcnow()
            return run.resumption_count

    def finish(
        self,
        run_id: str,
        worker_id: str,
        status: RunStatus,
        now: datetime,
        error_message: str | None = None,
        classification: ErrorClassification | None = None,
    ) -> Run:
        with self._lock:
            run = self._require_holder(run_id, worker_id)
            validate_run_transition(run.status, status)
            run.status = status
            run.ended_at = now
            run.error_message = error_message
            run.error_classification = classification
            run.lease_expires_at = None
            run.updated_at = now
            return copy.deepcopy(run)

    # =========================================================================
    # ADMIN
    # =========================================================================

    def cancel(self, run_id: str, now: datetime, reason: str | None = None) -> Run:
        with self._lock:
            run = self._require(run_id)
            if run.status == RunStatus.IN_PROGRESS:
                run.cancel_requested = True
            else:
                validate_run_transition(run.status, RunStatus.CANCELLED)
                run.status = RunStatus.CANCELLED
                run.ended_at = now
                run.error_message = reason
            run.updated_at = now
            return copy.deepcopy(run)

    def delete_runs_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                r.id
                for r in self._runs.values()
                if r.status in TERMINAL_STATUSES and r.ended_at is not None and r.ended_at < cutoff
            ]
            for run_id in doomed:
                del self._runs[run_id]
            return len(doomed)


__all__ = [
    "UNSET",
    "cursor_regressed",
    "cursor_advances",
    "RunRepository",
    "InMemoryRunRepository",
]
