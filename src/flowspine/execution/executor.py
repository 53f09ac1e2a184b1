"""Run lifecycle executor — start, execute, and finalize a claimed run.

WHY
───
Everything that can go wrong inside a flow (a source timing out, a sink
rejecting a row, a config naming a connector nobody registered) has to
end up as one of a few well-defined outcomes on the run record. The
executor is that boundary: callers hand it a claimed run and always get a
``RunOutcome`` back, never a raw exception.

ARCHITECTURE
────────────
::

    execute(claimed)
      ├── start()                  ─ stamp started_at (first entry) or
      │                              count a resumption (re-entry)
      ├── reconstruct components   ─ registry.build(source / sink / runtime)
      ├── runtime disabled?        ─ CANCELLED "runtime disabled"
      ├── BatchProcessor.process() ─ checkpointed loop
      │     └── cancelled?         ─ CANCELLED
      └── outcome
            ├── success            → finish_success()
            ├── ClaimConflictError → ABANDONED (another worker owns it now)
            └── Exception          → finish_failure()
                  ├── retriable    → run FAILED + new pending run (attempt + 1)
                  └── otherwise    → run FAILED (terminal) + failure callbacks

    Retries never reuse a run: each attempt is its own row, linked by
    ``retry_of_run_id``, so the audit trail keeps every failure.

Related modules:
    batch.py      — the checkpointed loop
    classifier.py — transient / permanent / unknown
    scheduler.py  — claims runs and hands them to the executor
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from flowspine.core.config.settings import EngineSettings
from flowspine.core.errors import (
    AlreadyClaimedError,
    ClaimConflictError,
    FlowNotFoundError,
    FlowSpineError,
    InvalidTransitionError,
    ReconstructionError,
    RunNotFoundError,
    RunStuckError,
)
from flowspine.core.logging import LogContext, get_logger

from .batch import BatchProcessor, BatchResult
from .callbacks import CallbackRegistry
from .classifier import ErrorClassifier
from .concurrency import ConcurrencyLimiter
from .events import (
    FLOW_CANCELLED,
    FLOW_COMPLETED,
    FLOW_DISCARDED,
    FLOW_FAILED,
    FLOW_RETRIED,
    FLOW_STARTED,
    RUN_ENQUEUED,
    EventBus,
)
from .models import ClaimedRun, ErrorClassification, Flow, Run, RunStatus, utcnow
from .registry import ComponentRegistry, get_default_registry
from .repository import UNSET, RunRepository
from .tracking import ErrorTracker

logger = get_logger(__name__)

RUNTIME_DISABLED = "runtime disabled"
CANCELLED_BY_OPERATOR = "cancelled by operator"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"
    NOT_CLAIMED = "not_claimed"


@dataclass
class RunOutcome:
    """What happened to a run handed to :meth:`RunExecutor.execute`.

    Attributes:
        status: Outcome category
        run: Latest persisted state of the run (None if it vanished)
        error: The exception that caused a failure / abandonment
        classification: Error classification for failures
        retry_run: The new pending run created for a retry
        batch: Processor result when the loop ran to completion or cancel
    """

    status: OutcomeStatus
    run: Run | None
    error: BaseException | None = None
    classification: ErrorClassification | None = None
    retry_run: Run | None = None
    batch: BatchResult | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class RunExecutor:
    """Executes claimed runs and records their outcome.

    All collaborators are injected; only ``repository`` is required.

    Example:
        >>> executor = RunExecutor(repository, settings, worker_id="worker-1")
        >>> claimed = repository_claim(...)  # via Scheduler.claim()
        >>> outcome = executor.execute(claimed)
        >>> outcome.status
        <OutcomeStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        repository: RunRepository,
        settings: EngineSettings | None = None,
        *,
        registry: ComponentRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        tracker: ErrorTracker | None = None,
        callbacks: CallbackRegistry | None = None,
        events: EventBus | None = None,
        limiter: ConcurrencyLimiter | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.settings = settings or EngineSettings()
        self.registry = registry or get_default_registry()
        self.classifier = classifier or ErrorClassifier(self.settings.retry_policy())
        self.tracker = tracker or ErrorTracker.from_settings(self.settings, self.classifier)
        self.callbacks = callbacks or CallbackRegistry()
        self.events = events or EventBus()
        self.limiter = limiter or ConcurrencyLimiter.from_settings(self.settings)
        self.worker_id = worker_id or self.settings.worker_id or default_worker_id()
        self.clock = clock

    # =========================================================================
    # CLAIM HELPERS
    # =========================================================================

    def _as_claimed(self, target: ClaimedRun | Run | str) -> ClaimedRun:
        """Resolve ``target`` to a claim held by this executor's worker.

        A pending run is claimed on the spot (through the limiter); an
        in-progress run must already be held by this worker.

        Raises:
            AlreadyClaimedError: Pending run not claimable right now
            InvalidTransitionError: Run already terminal
        """
        if isinstance(target, ClaimedRun):
            return target
        run_id = target if isinstance(target, str) else target.id
        run = self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        now = self.clock()
        if run.status == RunStatus.PENDING:
            flow = self._require_flow(run)
            key = self.limiter.key_for(flow)
            claimed = self.repository.claim(
                run.id,
                self.worker_id,
                key,
                self.limiter.limit_for(flow),
                now,
                self.settings.lease_seconds,
            )
            return ClaimedRun(run=claimed, worker_id=self.worker_id, concurrency_key=key, claimed_at=now)
        if run.status == RunStatus.IN_PROGRESS:
            if run.claimed_by != self.worker_id:
                raise AlreadyClaimedError(run.id, f"held by {run.claimed_by}")
            return ClaimedRun(
                run=run,
                worker_id=self.worker_id,
                concurrency_key=run.concurrency_key or "",
                claimed_at=now,
            )
        raise InvalidTransitionError(run.status.value, RunStatus.IN_PROGRESS.value)

    def _latest(self, run_id: str) -> Run | None:
        try:
            return self.repository.get_run(run_id)
        except Exception:
            logger.exception("run_lookup_failed", run_id=run_id)
            return None

    def _require_flow(self, run: Run) -> Flow:
        flow = self.repository.get_flow(run.flow_id)
        if flow is None:
            raise FlowNotFoundError(run.flow_id)
        return flow

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, target: ClaimedRun | Run | str) -> bool:
        """Stamp ``started_at`` on a claimed run.

        Idempotent: returns True on the first entry, False when the run had
        already been started (a resumption after a crash or reclaim).
        """
        claimed = self._as_claimed(target)
        return self.repository.mark_started(claimed.run_id, claimed.worker_id, self.clock())

    def execute(self, target: ClaimedRun | Run | str) -> RunOutcome:
        """Run a claimed (or claimable) run to an outcome. Never raises ``Exception``."""
        try:
            claimed = self._as_claimed(target)
        except (AlreadyClaimedError, InvalidTransitionError, RunNotFoundError, FlowNotFoundError) as e:
            run = target.run if isinstance(target, ClaimedRun) else None
            if isinstance(target, Run):
                run = target
            logger.info("run_not_claimed", reason=str(e))
            return RunOutcome(OutcomeStatus.NOT_CLAIMED, run, error=e)

        run = claimed.run
        flow = self.repository.get_flow(run.flow_id)
        if flow is None:
            return self._fail_orphan(claimed, FlowNotFoundError(run.flow_id))

        with LogContext(flow=flow.name, run_id=run.id, worker_id=claimed.worker_id):
            try:
                return self._execute(flow, claimed)
            except ClaimConflictError as e:
                logger.warning("run_abandoned", reason="claim lost", error=str(e))
                return RunOutcome(
                    OutcomeStatus.ABANDONED, self.repository.get_run(run.id), error=e
                )
            except Exception as e:
                try:
                    return self.finish_failure(flow, claimed, e)
                except Exception as handling_error:
                    logger.exception("failure_handling_error", error=str(e))
                    return RunOutcome(
                        OutcomeStatus.FAILED,
                        self._latest(claimed.run_id),
                        error=handling_error,
                    )

    def _execute(self, flow: Flow, claimed: ClaimedRun) -> RunOutcome:
        run = claimed.run
        first_entry = self.repository.mark_started(run.id, claimed.worker_id, self.clock())
        if not first_entry:
            resumptions = self.repository.increment_resumptions(run.id, claimed.worker_id)
            logger.info("run_resumed", resumptions=resumptions, cursor=run.last_cursor)
            if resumptions > self.settings.max_resumptions:
                raise RunStuckError(run.id, resumptions, self.settings.max_resumptions)

        run = self.repository.get_run(run.id) or run
        logger.info("run_started", attempt=run.attempt, resumed=not first_entry)
        self.events.emit(
            FLOW_STARTED,
            "executor",
            correlation_id=run.id,
            flow=flow.name,
            attempt=run.attempt,
            resumed=not first_entry,
        )

        source = self.registry.build("source", flow.source_config)
        sink = self.registry.build("sink", flow.sink_config)
        runtime = self.registry.build("runtime", flow.runtime_config)

        try:
            if not getattr(runtime, "enabled", True):
                return self._finish_cancelled(flow, claimed, RUNTIME_DISABLED)

            batch_size = getattr(runtime, "batch_size", None) or self.settings.default_batch_size
            processor = BatchProcessor(
                self.repository,
                claimed.worker_id,
                lease_seconds=self.settings.lease_seconds,
                events=self.events,
                clock=self.clock,
            )
            result = processor.process(run, source, sink, runtime, batch_size)
        finally:
            self._close(sink)

        if result.cancelled:
            return self._finish_cancelled(flow, claimed, CANCELLED_BY_OPERATOR, batch=result)
        return self.finish_success(flow, claimed, batch=result)

    def _record_flow_run(
        self,
        flow_id: str,
        status: RunStatus,
        at: datetime,
        error: str | None = None,
        source_cursor: Any = UNSET,
    ) -> None:
        """Update the flow's last-run fields once the run row is terminal.

        The run's own status is already committed, so a failure here is
        logged rather than allowed to change the outcome.
        """
        try:
            self.repository.record_flow_run(flow_id, status, at, error, source_cursor=source_cursor)
        except Exception:
            logger.exception("flow_update_failed", status=RunStatus(status).value)

    def _close(self, sink: Any) -> None:
        close = getattr(sink, "close", None)
        if not callable(close):
            return
        try:
            close()
        except Exception:
            logger.exception("sink_close_failed")

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    def finish_success(
        self, flow: Flow, claimed: ClaimedRun, batch: BatchResult | None = None
    ) -> RunOutcome:
        """Mark the run successful, advance the flow cursor, run complete callbacks."""
        now = self.clock()
        run = self.repository.finish(claimed.run_id, claimed.worker_id, RunStatus.SUCCESS, now)
        self._record_flow_run(flow.id, RunStatus.SUCCESS, now, None, source_cursor=run.last_cursor)

        logger.info(
            "run_completed",
            records_processed=run.records_processed,
            duration_seconds=run.duration_seconds,
            cursor=run.last_cursor,
        )
        self.events.emit(
            FLOW_COMPLETED,
            "executor",
            correlation_id=run.id,
            flow=flow.name,
            records_processed=run.records_processed,
            duration_seconds=run.duration_seconds,
        )
        self.callbacks.run_complete(flow, run)
        return RunOutcome(OutcomeStatus.SUCCESS, run, batch=batch)

    def finish_failure(self, flow: Flow, claimed: ClaimedRun, error: BaseException) -> RunOutcome:
        """Classify ``error`` and either schedule a retry run or fail terminally."""
        run = self.repository.get_run(claimed.run_id) or claimed.run
        now = self.clock()

        if isinstance(error, (ReconstructionError, RunStuckError)):
            classification = ErrorClassification.PERMANENT
        else:
            classification = self.classifier.classify(error, flow.retry_policy)
        policy = self.classifier.effective_policy(flow.retry_policy)
        retrying = (
            classification != ErrorClassification.PERMANENT
            and run.attempt < policy.effective_max_attempts
        )
        message = f"{type(error).__name__}: {error}"

        self.tracker.record(
            flow,
            error,
            run=run,
            attempt=run.attempt,
            classification=classification,
            retrying=retrying,
            now=now,
        )

        try:
            failed = self.repository.finish(
                claimed.run_id,
                claimed.worker_id,
                RunStatus.FAILED,
                now,
                error_message=message,
                classification=classification,
            )
        except ClaimConflictError as e:
            logger.warning("run_abandoned", reason="claim lost during failure handling", error=str(e))
            return RunOutcome(
                OutcomeStatus.ABANDONED,
                self.repository.get_run(claimed.run_id),
                error=error,
                classification=classification,
            )

        self._record_flow_run(flow.id, RunStatus.FAILED, now, message)

        retry_run = None
        wait = 0.0
        if retrying:
            wait = policy.backoff(run.attempt)
            if isinstance(error, FlowSpineError) and error.retry_after is not None:
                wait = max(wait, float(error.retry_after))
            try:
                retry_run = self.repository.create_run(
                    Run(
                        flow_id=flow.id,
                        run_after=now + timedelta(seconds=wait),
                        attempt=run.attempt + 1,
                        retry_of_run_id=run.id,
                        start_cursor=failed.resume_cursor,
                    )
                )
            except Exception:
                logger.exception("retry_enqueue_failed", attempt=run.attempt, error=message)

        if retry_run is not None:
            logger.warning(
                "run_retry_scheduled",
                error=message,
                classification=classification.value,
                attempt=run.attempt,
                max_attempts=policy.effective_max_attempts,
                wait_seconds=round(wait, 3),
                retry_run_id=retry_run.id,
            )
            self.events.emit(
                FLOW_RETRIED,
                "executor",
                correlation_id=run.id,
                flow=flow.name,
                attempt=run.attempt,
                wait_seconds=wait,
                classification=classification.value,
                error=message,
                retry_run_id=retry_run.id,
            )
            self.events.emit(
                RUN_ENQUEUED,
                "executor",
                correlation_id=retry_run.id,
                flow=flow.name,
                run_after=retry_run.run_after.isoformat(),
                reason="retry",
            )
            return RunOutcome(
                OutcomeStatus.RETRY_SCHEDULED,
                failed,
                error=error,
                classification=classification,
                retry_run=retry_run,
            )

        logger.error(
            "run_failed",
            error=message,
            classification=classification.value,
            attempt=run.attempt,
        )
        self.events.emit(
            FLOW_FAILED,
            "executor",
            correlation_id=run.id,
            flow=flow.name,
            attempt=run.attempt,
            classification=classification.value,
            error=message,
        )
        if classification == ErrorClassification.PERMANENT:
            self.events.emit(
                FLOW_DISCARDED,
                "executor",
                correlation_id=run.id,
                flow=flow.name,
                error=message,
            )
        self.callbacks.run_failure(flow, failed, error)
        return RunOutcome(OutcomeStatus.FAILED, failed, error=error, classification=classification)

    def _finish_cancelled(
        self,
        flow: Flow,
        claimed: ClaimedRun,
        reason: str,
        batch: BatchResult | None = None,
    ) -> RunOutcome:
        now = self.clock()
        run = self.repository.finish(
            claimed.run_id, claimed.worker_id, RunStatus.CANCELLED, now, error_message=reason
        )
        self._record_flow_run(flow.id, RunStatus.CANCELLED, now, reason)
        logger.info("run_cancelled", reason=reason, records_processed=run.records_processed)
        self.events.emit(
            FLOW_CANCELLED, "executor", correlation_id=run.id, flow=flow.name, reason=reason
        )
        return RunOutcome(OutcomeStatus.CANCELLED, run, batch=batch)

    def _fail_orphan(self, claimed: ClaimedRun, error: FlowNotFoundError) -> RunOutcome:
        """The run's flow no longer exists: fail it permanently, nothing else to update."""
        try:
            run = self.repository.finish(
                claimed.run_id,
                claimed.worker_id,
                RunStatus.FAILED,
                self.clock(),
                error_message=f"{type(error).__name__}: {error}",
                classification=ErrorClassification.PERMANENT,
            )
        except ClaimConflictError as e:
            return RunOutcome(OutcomeStatus.ABANDONED, self.repository.get_run(claimed.run_id), error=e)
        logger.error("run_failed", run_id=claimed.run_id, error=str(error))
        return RunOutcome(
            OutcomeStatus.FAILED, run, error=error, classification=ErrorClassification.PERMANENT
        )


__all__ = [
    "RUNTIME_DISABLED",
    "CANCELLED_BY_OPERATOR",
    "default_worker_id",
    "OutcomeStatus",
    "RunOutcome",
    "RunExecutor",
]
