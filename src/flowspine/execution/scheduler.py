"""Scheduler — finds due runs, claims them, and keeps flows recurring.

Manifesto:
    The scheduler is a poller, not a clock. Each ``tick()`` asks the
    repository what is due *now*, claims what the concurrency limits
    allow, and hands the claims to the executor. Timing precision is
    therefore "eventually, within one poll interval"; exclusivity comes
    entirely from the repository's atomic claim.

Tags:
    flowspine, scheduling, claim-protocol, beat-as-poller, recurring

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER TICK                                                               │
│                                                                               │
│   tick(now, capacity)                                                         │
│     0. renew_held_leases()                   (claims queued or running here)  │
│     1. find_stale(now)  ──► reclaim()        (crashed workers, expired lease) │
│          └── held by this scheduler          → skip                           │
│     2. find_due(now)    ──► for each pending run:                             │
│          ├── flow missing / not schedulable  → skip (stays pending)           │
│          ├── limiter.at_capacity()           → skip (stays pending)           │
│          └── claim()                         → ClaimedRun                     │
│                 └── AlreadyClaimedError      → claim failure (stays pending)  │
│     3. for each claim:                                                        │
│          executor.execute()  (inline, or via submit= e.g. pool.submit)        │
│          └── success  ──► schedule_next()   run_after = ended_at + interval   │
│                                                                               │
│   Operator API:                                                               │
│     enqueue_now / enqueue_later / ensure_scheduled / cancel / cleanup_old_runs│
│     enqueue_all / enqueue_group / enqueue_flows / enqueue_staggered           │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from flowspine.core.config.settings import EngineSettings
from flowspine.core.errors import AlreadyClaimedError, FlowNotFoundError
from flowspine.core.logging import get_logger

from .concurrency import ConcurrencyLimiter
from .events import FLOW_CANCELLED, RUN_ENQUEUED, EventBus
from .executor import OutcomeStatus, RunExecutor, RunOutcome
from .models import ClaimedRun, Flow, Run, RunStatus, utcnow
from .repository import RunRepository

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Statistics for the scheduler."""

    ticks: int = 0
    claimed: int = 0
    skipped: int = 0
    claim_failures: int = 0
    executed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "claimed": self.claimed,
            "skipped": self.skipped,
            "claim_failures": self.claim_failures,
            "executed": self.executed,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class TickResult:
    """What one scheduling pass did."""

    claimed: int = 0
    reclaimed: int = 0
    skipped: int = 0
    claim_failures: int = 0
    dispatch_failures: int = 0
    renewed: int = 0
    executed: int = 0
    outcomes: list[RunOutcome] = field(default_factory=list)


@dataclass
class BulkEnqueueResult:
    """Runs created by one bulk enqueue call."""

    runs: list[Run] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    group: str | None = None

    @property
    def enqueued(self) -> int:
        return len(self.runs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enqueued": self.enqueued,
            "run_ids": [r.id for r in self.runs],
            "skipped": list(self.skipped),
            "not_found": list(self.not_found),
            "group": self.group,
        }


class Scheduler:
    """Claims due runs and dispatches them to a :class:`RunExecutor`.

    Example:
        >>> scheduler = Scheduler(repository, settings=settings)
        >>> scheduler.ensure_scheduled()
        >>> result = scheduler.tick()
        >>> result.executed
        1
    """

    def __init__(
        self,
        repository: RunRepository,
        executor: RunExecutor | None = None,
        settings: EngineSettings | None = None,
        *,
        limiter: ConcurrencyLimiter | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        submit: Callable[..., Any] | None = None,
    ) -> None:
        """
        Args:
            repository: Run repository shared with the executor
            executor: Executor for claimed runs (built from the other args if omitted)
            settings: Engine settings (claim batch size, lease, retention)
            limiter: Concurrency limiter used for pre-claim skips and claims
            events: Event bus for ``run.enqueued`` / ``flow.cancelled``
            clock: Time source
            submit: ``submit(fn, claimed)`` for off-thread execution; inline if None
        """
        self.repository = repository
        self.settings = settings or (executor.settings if executor else EngineSettings())
        self.limiter = limiter or (
            executor.limiter if executor else ConcurrencyLimiter.from_settings(self.settings)
        )
        self.events = events or (executor.events if executor else EventBus())
        self.clock = clock
        self.executor = executor or RunExecutor(
            repository,
            self.settings,
            limiter=self.limiter,
            events=self.events,
            clock=clock,
        )
        self.submit = submit
        self.stats = SchedulerStats()
        self._stats_lock = threading.Lock()
        self._held: set[str] = set()
        self._held_lock = threading.Lock()

    @property
    def worker_id(self) -> str:
        return self.executor.worker_id

    # === Tick ===

    def tick(self, now: datetime | None = None, *, capacity: int | None = None) -> TickResult:
        """Run one scheduling pass.

        Args:
            now: Pass time (defaults to the clock)
            capacity: Most runs to claim or reclaim this pass; None is unbounded
        """
        now = now or self.clock()
        result = TickResult()
        claims: list[ClaimedRun] = []
        result.renewed = self.renew_held_leases(now)

        def has_room() -> bool:
            return capacity is None or len(claims) < capacity

        for stale in self.repository.find_stale(now, self.settings.claim_batch_size):
            if not has_room():
                break
            if self.is_held(stale.id):
                continue
            try:
                run = self.repository.reclaim(
                    stale.id, self.worker_id, now, self.settings.lease_seconds
                )
            except AlreadyClaimedError:
                result.claim_failures += 1
                continue
            except Exception as e:
                logger.exception("reclaim_error", run_id=stale.id)
                result.claim_failures += 1
                self._record_error(e)
                continue
            logger.warning(
                "run_reclaimed",
                run_id=run.id,
                previous_worker=stale.claimed_by,
                cursor=run.last_cursor,
            )
            claims.append(
                ClaimedRun(
                    run=run,
                    worker_id=self.worker_id,
                    concurrency_key=run.concurrency_key or "",
                    claimed_at=now,
                    reclaimed=True,
                )
            )
            result.reclaimed += 1

        for run in self.repository.find_due(now, self.settings.claim_batch_size):
            if not has_room():
                break
            flow = self.repository.get_flow(run.flow_id)
            if flow is None or not flow.is_schedulable:
                result.skipped += 1
                continue
            key = self.limiter.key_for(flow)
            if self.limiter.at_capacity(flow, self.repository.count_in_progress(key)):
                logger.debug("run_skipped_at_capacity", run_id=run.id, concurrency_key=key)
                result.skipped += 1
                continue
            try:
                claims.append(self.claim(run, flow, now))
            except AlreadyClaimedError as e:
                logger.debug("claim_failed", run_id=run.id, reason=str(e))
                result.claim_failures += 1
                continue
            except Exception as e:
                logger.exception("claim_error", run_id=run.id)
                result.claim_failures += 1
                self._record_error(e)
                continue
            result.claimed += 1

        for claimed in claims:
            with self._held_lock:
                self._held.add(claimed.run_id)
            if self.submit is None:
                result.outcomes.append(self.run_claimed(claimed))
                result.executed += 1
                continue
            try:
                self.submit(self.run_claimed, claimed)
            except Exception as e:
                # lease expiry hands the run to the next reclaim
                logger.exception("dispatch_failed", run_id=claimed.run_id)
                self._release(claimed.run_id)
                result.dispatch_failures += 1
                self._record_error(e)
                continue
            result.executed += 1

        with self._stats_lock:
            self.stats.ticks += 1
            self.stats.claimed += result.claimed + result.reclaimed
            self.stats.skipped += result.skipped
            self.stats.claim_failures += result.claim_failures
            self.stats.last_tick = now

        if claims or result.claim_failures:
            logger.info(
                "tick_completed",
                claimed=result.claimed,
                reclaimed=result.reclaimed,
                skipped=result.skipped,
                claim_failures=result.claim_failures,
                dispatch_failures=result.dispatch_failures,
            )
        return result

    # === Held claims ===

    def is_held(self, run_id: str) -> bool:
        """True while a claim of this scheduler is queued or executing."""
        with self._held_lock:
            return run_id in self._held

    def held_run_ids(self) -> set[str]:
        with self._held_lock:
            return set(self._held)

    def _release(self, run_id: str) -> None:
        with self._held_lock:
            self._held.discard(run_id)

    def renew_held_leases(self, now: datetime | None = None) -> int:
        """Extend the lease of every claim still queued or executing here.

        A claim waiting for a pool thread, or stuck in one long batch, never
        reaches a checkpoint; without this its lease would lapse and the
        run would be reclaimed while still held.
        """
        now = now or self.clock()
        renewed = 0
        for run_id in self.held_run_ids():
            try:
                if self.repository.renew_lease(
                    run_id, self.worker_id, now, self.settings.lease_seconds
                ):
                    renewed += 1
                else:
                    logger.debug("lease_not_renewed", run_id=run_id)
            except Exception as e:
                logger.exception("lease_renewal_error", run_id=run_id)
                self._record_error(e)
        return renewed

    def _record_error(self, error: BaseException) -> None:
        with self._stats_lock:
            self.stats.last_error = str(error)

    def claim(self, run: Run, flow: Flow, now: datetime | None = None) -> ClaimedRun:
        """Atomically claim ``run`` under its flow's concurrency key.

        Raises:
            AlreadyClaimedError: Taken by another worker, or the key is at its limit
        """
        now = now or self.clock()
        key = self.limiter.key_for(flow)
        claimed = self.repository.claim(
            run.id,
            self.worker_id,
            key,
            self.limiter.limit_for(flow),
            now,
            self.settings.lease_seconds,
        )
        logger.debug("run_claimed", run_id=run.id, flow=flow.name, concurrency_key=key)
        return ClaimedRun(run=claimed, worker_id=self.worker_id, concurrency_key=key, claimed_at=now)

    def run_claimed(self, claimed: ClaimedRun) -> RunOutcome:
        """Execute one claim and enqueue the flow's next run after a success."""
        try:
            outcome = self.executor.execute(claimed)
        finally:
            self._release(claimed.run_id)
        with self._stats_lock:
            self.stats.executed += 1
            if outcome.status == OutcomeStatus.FAILED and outcome.error is not None:
                self.stats.last_error = str(outcome.error)
        if outcome.status == OutcomeStatus.SUCCESS and outcome.run is not None:
            flow = self.repository.get_flow(outcome.run.flow_id)
            if flow is not None:
                self.schedule_next(flow, outcome.run)
        return outcome

    # === Recurring ===

    def schedule_next(self, flow: Flow, run: Run) -> Run | None:
        """Enqueue the next recurring run after ``run`` succeeded.

        No-op when the flow is not schedulable, has no interval, or
        already has an open run.
        """
        if not flow.is_schedulable or flow.interval_seconds <= 0:
            return None
        if self.repository.has_open_run(flow.id):
            return None
        ended_at = run.ended_at or self.clock()
        return self._enqueue(
            flow, ended_at + timedelta(seconds=flow.interval_seconds), reason="interval"
        )

    def _enqueue(self, flow: Flow, run_after: datetime, reason: str) -> Run:
        run = self.repository.create_run(
            Run(flow_id=flow.id, run_after=run_after, start_cursor=flow.source_cursor)
        )
        logger.info(
            "run_enqueued",
            run_id=run.id,
            flow=flow.name,
            run_after=run_after.isoformat(),
            reason=reason,
        )
        self.events.emit(
            RUN_ENQUEUED,
            "scheduler",
            correlation_id=run.id,
            flow=flow.name,
            run_after=run_after.isoformat(),
            reason=reason,
        )
        return run

    # === Bulk enqueue ===

    def enqueue_all(self, run_at: datetime | None = None) -> BulkEnqueueResult:
        """Enqueue one run for every schedulable flow."""
        flows = [f for f in self.repository.list_flows() if f.is_schedulable]
        return self._enqueue_many(flows, BulkEnqueueResult(), run_at)

    def enqueue_group(self, group: str, run_at: datetime | None = None) -> BulkEnqueueResult:
        """Enqueue one run for every schedulable flow in concurrency ``group``.

        The runs share the group's concurrency key, so the limiter still
        decides how many of them execute at once.
        """
        flows = [
            f
            for f in self.repository.list_flows()
            if f.is_schedulable and f.concurrency_group == group
        ]
        return self._enqueue_many(flows, BulkEnqueueResult(group=group), run_at)

    def enqueue_flows(
        self, flow_names: Iterable[str], run_at: datetime | None = None
    ) -> BulkEnqueueResult:
        """Enqueue the named flows; unknown and disabled names are reported, not raised."""
        result = BulkEnqueueResult()
        return self._enqueue_many(self._resolve(flow_names, result), result, run_at)

    def enqueue_staggered(
        self, flow_names: Iterable[str], interval_seconds: float = 10.0
    ) -> BulkEnqueueResult:
        """Enqueue the named flows ``interval_seconds`` apart, the first one now."""
        if interval_seconds < 0:
            raise ValueError(f"interval_seconds must be >= 0, got {interval_seconds}")
        result = BulkEnqueueResult()
        flows = self._resolve(flow_names, result)
        return self._enqueue_many(flows, result, stagger_seconds=interval_seconds)

    def _resolve(self, flow_names: Iterable[str], result: BulkEnqueueResult) -> list[Flow]:
        flows = []
        for name in flow_names:
            flow = self.repository.get_flow_by_name(name)
            if flow is None:
                result.not_found.append(name)
            elif not flow.is_schedulable:
                logger.info("enqueue_skipped", flow=name, reason="flow disabled")
                result.skipped.append(name)
            else:
                flows.append(flow)
        return flows

    def _enqueue_many(
        self,
        flows: list[Flow],
        result: BulkEnqueueResult,
        run_at: datetime | None = None,
        stagger_seconds: float = 0.0,
    ) -> BulkEnqueueResult:
        start = run_at or self.clock()
        for index, flow in enumerate(flows):
            due = start + timedelta(seconds=stagger_seconds * index)
            result.runs.append(self._enqueue(flow, due, reason="bulk"))
        if flows:
            logger.info("bulk_enqueued", count=len(result.runs), group=result.group)
        return result

    # === Operator API ===

    def _flow_named(self, flow_name: str) -> Flow:
        flow = self.repository.get_flow_by_name(flow_name)
        if flow is None:
            raise FlowNotFoundError(flow_name)
        return flow

    def enqueue_now(self, flow_name: str) -> Run | None:
        return self.enqueue_later(flow_name, 0)

    def enqueue_later(self, flow_name: str, wait_seconds: float) -> Run | None:
        """Create a pending run due in ``wait_seconds``; None for a disabled flow.

        Raises:
            FlowNotFoundError: No flow with that name
            ValueError: Negative wait
        """
        if wait_seconds < 0:
            raise ValueError(f"wait_seconds must be >= 0, got {wait_seconds}")
        flow = self._flow_named(flow_name)
        if not flow.is_schedulable:
            logger.info("enqueue_skipped", flow=flow_name, reason="flow disabled")
            return None
        return self._enqueue(
            flow, self.clock() + timedelta(seconds=wait_seconds), reason="manual"
        )

    def ensure_scheduled(self, now: datetime | None = None) -> list[Run]:
        """Give every schedulable flow without an open run a run due now."""
        now = now or self.clock()
        created = []
        for flow in self.repository.list_flows():
            if flow.is_schedulable and not self.repository.has_open_run(flow.id):
                created.append(self._enqueue(flow, now, reason="bootstrap"))
        return created

    def cancel(self, run_id: str, reason: str = "cancelled by operator") -> Run:
        """Cancel a pending run now, or ask an in-progress run to stop.

        An in-progress run only gets ``cancel_requested``; its executor
        stops at the next batch boundary and records the cancellation.

        Raises:
            RunNotFoundError: Unknown run
            InvalidTransitionError: Run already terminal
        """
        now = self.clock()
        run = self.repository.cancel(run_id, now, reason)
        if run.status == RunStatus.CANCELLED:
            flow = self.repository.record_flow_run(run.flow_id, RunStatus.CANCELLED, now, reason)
            logger.info("run_cancelled", run_id=run_id, flow=flow.name, reason=reason)
            self.events.emit(
                FLOW_CANCELLED, "scheduler", correlation_id=run_id, flow=flow.name, reason=reason
            )
        else:
            logger.info("run_cancel_requested", run_id=run_id)
        return run

    def cleanup_old_runs(self, older_than: timedelta | None = None) -> int:
        """Delete terminal runs that ended before ``now - older_than``."""
        if older_than is None:
            older_than = timedelta(days=self.settings.run_retention_days)
        return self.repository.delete_runs_before(self.clock() - older_than)


__all__ = ["BulkEnqueueResult", "Scheduler", "SchedulerStats", "TickResult"]
