"""Flow and run records - configuration and execution state.

This module defines ``Flow`` (what to run, how often, under which limits)
and ``Run`` (one attempt at running it), plus the ``RunStatus`` state
machine every component goes through.

Manifesto:
    A run's status is the engine's only source of truth about ownership:
    ``in_progress`` means exactly one worker holds it. Transitions are
    therefore validated, never assigned ad hoc.

Tags:
    flowspine, execution, runs, flows, state-machine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from flowspine.core.errors import InvalidTransitionError

from .retry import RetryPolicy


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


OVERDUE_AFTER = timedelta(hours=1)


class FlowStatus(str, Enum):
    """Configuration status of a flow."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class RunStatus(str, Enum):
    """Run status — the canonical state machine.

    Valid transition graph::

        PENDING      → IN_PROGRESS | CANCELLED
        IN_PROGRESS  → SUCCESS | FAILED | CANCELLED
        SUCCESS      → (terminal)
        FAILED       → (terminal; a retry is a *new* run)
        CANCELLED    → (terminal)
    """

    PENDING = "pending"  # Waiting for run_after and a claim
    IN_PROGRESS = "in_progress"  # Claimed by exactly one worker
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


RUN_VALID_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({
        RunStatus.IN_PROGRESS,
        RunStatus.CANCELLED,
    }),
    RunStatus.IN_PROGRESS: frozenset({
        RunStatus.SUCCESS,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    }),
    RunStatus.SUCCESS: frozenset(),  # terminal
    RunStatus.FAILED: frozenset(),  # terminal
    RunStatus.CANCELLED: frozenset(),  # terminal
}

TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED})
OPEN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.IN_PROGRESS})


def validate_run_transition(current: RunStatus, target: RunStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_run_transition(RunStatus.IN_PROGRESS, RunStatus.SUCCESS)
        >>> # OK, no exception
        >>> validate_run_transition(RunStatus.SUCCESS, RunStatus.IN_PROGRESS)
        InvalidTransitionError: Invalid RunStatus transition: success → in_progress
    """
    allowed = RUN_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "RunStatus")


class ErrorClassification(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


@dataclass
class Flow:
    """A configured data flow.

    Component configs are tagged envelopes (``{"kind": "memory", ...}``)
    rebuilt through the component registry on every execution.

    Example:
        >>> flow = Flow(
        ...     name="orders_sync",
        ...     interval_seconds=60,
        ...     source_config={"kind": "memory", "records": []},
        ...     sink_config={"kind": "null"},
        ...     runtime_config={"kind": "passthrough", "batch_size": 2},
        ... )
        >>> flow.is_schedulable
        True
    """

    name: str
    source_config: dict[str, Any] = field(default_factory=dict)
    sink_config: dict[str, Any] = field(default_factory=dict)
    runtime_config: dict[str, Any] = field(default_factory=dict)
    interval_seconds: int = 0
    enabled: bool = True
    status: FlowStatus = FlowStatus.ACTIVE

    # === CONCURRENCY ===
    concurrency_limit: int | None = None
    """None defers to the limiter default (``default_concurrency_limit``, 1)"""
    concurrency_group: str | None = None
    concurrency_group_limit: int | None = None

    # === RETRY ===
    retry_policy: RetryPolicy | None = None

    # === INCREMENTAL STATE ===
    source_cursor: Any = None
    """Last cursor of the most recent successful run; new runs start after it"""

    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    last_error: str | None = None

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Flow name must be non-empty")
        if self.interval_seconds < 0:
            raise ValueError(f"interval_seconds must be >= 0, got {self.interval_seconds}")
        if self.concurrency_limit is not None and self.concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {self.concurrency_limit}")
        if self.concurrency_group_limit is not None and self.concurrency_group_limit < 1:
            raise ValueError(
                f"concurrency_group_limit must be >= 1, got {self.concurrency_group_limit}"
            )
        self.status = FlowStatus(self.status)
        if self.last_run_status is not None:
            self.last_run_status = RunStatus(self.last_run_status)

    @property
    def is_schedulable(self) -> bool:
        return self.enabled and self.status == FlowStatus.ACTIVE

    def enable(self) -> None:
        self.enabled = True
        self.status = FlowStatus.ACTIVE
        self.updated_at = utcnow()

    def disable(self) -> None:
        self.enabled = False
        self.status = FlowStatus.INACTIVE
        self.updated_at = utcnow()


@dataclass
class Run:
    """One attempt at executing a flow.

    Example:
        >>> run = Run(flow_id=flow.id, run_after=utcnow())
        >>> run.status
        <RunStatus.PENDING: 'pending'>
    """

    flow_id: str
    run_after: datetime = field(default_factory=utcnow)
    status: RunStatus = RunStatus.PENDING

    # === TIMESTAMPS ===
    started_at: datetime | None = None
    ended_at: datetime | None = None

    # === RESULT ===
    error_message: str | None = None
    error_classification: ErrorClassification | None = None

    # === CURSOR / CHECKPOINT ===
    start_cursor: Any = None
    """Position this run starts after (None = from the beginning)"""

    first_cursor: Any = None
    """Position of the first record this run processed"""

    last_cursor: Any = None
    """Position of the last checkpointed record; never decreases"""

    records_processed: int = 0
    resumption_count: int = 0

    # === RETRY TRACKING ===
    attempt: int = 1
    """Current attempt number (1-indexed)"""

    retry_of_run_id: str | None = None

    # === CLAIM ===
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    concurrency_key: str | None = None
    cancel_requested: bool = False
    """Operator asked to cancel an in-progress run; honoured at the next batch boundary"""

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = RunStatus(self.status)
        if self.error_classification is not None:
            self.error_classification = ErrorClassification(self.error_classification)

    def transition_to(self, target: RunStatus) -> None:
        """Validate and apply a status transition.

        Raises:
            InvalidTransitionError: If *self.status → target* is illegal.
        """
        validate_run_transition(self.status, target)
        self.status = target
        self.updated_at = utcnow()

    # === DERIVED ===

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def resumable(self) -> bool:
        """In progress with at least one checkpoint behind it."""
        return self.status == RunStatus.IN_PROGRESS and self.last_cursor is not None

    @property
    def resume_cursor(self) -> Any:
        """Where processing continues: the last checkpoint, else the start position."""
        return self.last_cursor if self.last_cursor is not None else self.start_cursor

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def is_due(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.status == RunStatus.PENDING and self.run_after <= now

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.status == RunStatus.PENDING and self.run_after <= now - OVERDUE_AFTER

    def lease_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.status == RunStatus.IN_PROGRESS
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )

    def progress_percentage(self, total: int) -> float | None:
        if total <= 0:
            return None
        return round(self.records_processed / total * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "status": self.status.value,
            "run_after": self.run_after.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error_message": self.error_message,
            "error_classification": (
                self.error_classification.value if self.error_classification else None
            ),
            "first_cursor": self.first_cursor,
            "last_cursor": self.last_cursor,
            "records_processed": self.records_processed,
            "resumption_count": self.resumption_count,
            "attempt": self.attempt,
            "retry_of_run_id": self.retry_of_run_id,
            "claimed_by": self.claimed_by,
            "cancel_requested": self.cancel_requested,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class ClaimedRun:
    """Proof of an exclusive claim: only the holder may checkpoint or finish."""

    run: Run
    worker_id: str
    concurrency_key: str
    claimed_at: datetime
    reclaimed: bool = False

    @property
    def run_id(self) -> str:
        return self.run.id


__all__ = [
    "utcnow",
    "new_id",
    "FlowStatus",
    "RunStatus",
    "RUN_VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "OPEN_STATUSES",
    "validate_run_transition",
    "ErrorClassification",
    "Flow",
    "Run",
    "ClaimedRun",
]
