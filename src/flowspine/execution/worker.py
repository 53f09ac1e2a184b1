"""Background worker loop — polls the scheduler and runs claims on a thread pool.

The WorkerLoop turns a :class:`Scheduler` into a long-running process:
every ``poll_interval_seconds`` it calls ``scheduler.tick()`` with
``submit`` bound to its own thread pool, so claimed runs execute in
parallel while the poll loop itself stays single-threaded.

Usage (programmatic)::

    from flowspine.core.config import load_settings, create_repository
    from flowspine.execution.worker import WorkerLoop

    settings = load_settings()
    worker = WorkerLoop.from_settings(settings)
    worker.start()  # blocks until SIGINT/SIGTERM
"""

from __future__ import annotations

import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flowspine.core.config.settings import EngineSettings
from flowspine.core.logging import get_logger

from .executor import OutcomeStatus, RunExecutor, RunOutcome, default_worker_id
from .models import ClaimedRun, utcnow
from .repository import RunRepository
from .scheduler import Scheduler

logger = get_logger(__name__)


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    total_processed: int = 0
    total_completed: int = 0
    total_failed: int = 0
    total_retried: int = 0
    total_cancelled: int = 0
    total_abandoned: int = 0
    uptime_seconds: float = 0
    last_poll_at: datetime | None = None
    active_runs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed,
            "total_retried": self.total_retried,
            "total_cancelled": self.total_cancelled,
            "total_abandoned": self.total_abandoned,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "active_runs": self.active_runs,
        }


_OUTCOME_COUNTERS = {
    OutcomeStatus.SUCCESS: "total_completed",
    OutcomeStatus.FAILED: "total_failed",
    OutcomeStatus.RETRY_SCHEDULED: "total_retried",
    OutcomeStatus.CANCELLED: "total_cancelled",
    OutcomeStatus.ABANDONED: "total_abandoned",
}


# --------------------------------------------------------------------------- #
# Global worker registry (for stats / health)
# --------------------------------------------------------------------------- #

_active_workers: dict[str, WorkerLoop] = {}
_workers_lock = threading.Lock()


def get_active_workers() -> list[str]:
    """Return the ids of all worker loops running in this process."""
    with _workers_lock:
        return list(_active_workers)


def get_worker_stats() -> list[dict[str, Any]]:
    """Return stats dicts for all active workers."""
    with _workers_lock:
        return [w.get_stats().to_dict() for w in _active_workers.values()]


# --------------------------------------------------------------------------- #
# WorkerLoop
# --------------------------------------------------------------------------- #


class WorkerLoop:
    """Polls for due runs and executes them on a thread pool.

    Architecture:
        1. ``scheduler.tick()`` reclaims stale runs and claims due ones
           (atomically, within concurrency limits).
        2. Each claim is submitted to the pool; the executor drives it
           through the batch loop and records the outcome.
        3. Successful runs enqueue their next recurring run.
        4. Every ``upkeep_every`` polls, tracked errors past their TTL are
           dropped.

    Each tick claims no more runs than there are free pool slots, and the
    scheduler renews the lease of every claim it still holds.

    Thread-safety:
        The poll loop is single-threaded; only ``_execute`` runs on pool
        threads. Claims are exclusive, so pool threads never share a run.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        poll_interval: float = 1.0,
        max_workers: int = 4,
        upkeep_every: int = 60,
    ):
        self.scheduler = scheduler
        self._poll_interval = poll_interval
        self._max_workers = max_workers
        self._upkeep_every = max(upkeep_every, 1)
        self._polls = 0
        self._shutdown = threading.Event()
        self._started_at = utcnow()
        self._stats = WorkerStats()
        self._stats_lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._active_run_ids: set[str] = set()
        self.status = "idle"

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        repository: RunRepository | None = None,
        **executor_kwargs: Any,
    ) -> WorkerLoop:
        """Build repository, executor and scheduler from ``settings``."""
        if repository is None:
            from flowspine.core.config.factory import create_repository

            repository = create_repository(settings)
        worker_id = settings.worker_id or default_worker_id()
        executor = RunExecutor(repository, settings, worker_id=worker_id, **executor_kwargs)
        scheduler = Scheduler(repository, executor, settings)
        return cls(
            scheduler,
            poll_interval=settings.poll_interval_seconds,
            max_workers=settings.max_workers,
        )

    @property
    def worker_id(self) -> str:
        return self.scheduler.worker_id

    @property
    def running(self) -> bool:
        return self.status == "running"

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the poll loop (blocking). Installs signal handlers for
        graceful shutdown on SIGINT / SIGTERM.
        """
        logger.info(
            "worker_starting",
            worker_id=self.worker_id,
            poll_interval=self._poll_interval,
            max_workers=self._max_workers,
        )
        with _workers_lock:
            _active_workers[self.worker_id] = self

        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            # not in the main thread
            pass

        self._pool = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=self.worker_id,
        )
        self.scheduler.submit = self._submit
        self.status = "running"
        try:
            self._run_loop()
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread. Returns the thread."""
        t = threading.Thread(target=self.start, name=f"{self.worker_id}-loop", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        """Request graceful shutdown; in-flight runs finish first."""
        logger.info("worker_stopping", worker_id=self.worker_id)
        self._shutdown.set()
        self.status = "stopping"

    def get_stats(self) -> WorkerStats:
        """Return current worker statistics."""
        with self._stats_lock:
            self._stats.active_runs = len(self._active_run_ids)
        self._stats.uptime_seconds = (utcnow() - self._started_at).total_seconds()
        return self._stats

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            self.poll_once()
            self._shutdown.wait(self._poll_interval)

    def poll_once(self) -> int:
        """One scheduler tick; returns the number of runs dispatched.

        With a pool, at most the number of free pool slots is claimed so no
        claim sits in the pool queue.
        """
        dispatched = 0
        capacity = None
        if self._pool is not None:
            with self._stats_lock:
                capacity = max(self._max_workers - len(self._active_run_ids), 0)
        try:
            dispatched = self.scheduler.tick(capacity=capacity).executed
        except Exception as e:
            logger.exception("worker_poll_error", worker_id=self.worker_id)
            self.scheduler.stats.last_error = str(e)
        self._stats.last_poll_at = utcnow()
        self._polls += 1
        if self._polls % self._upkeep_every == 0:
            self.upkeep()
        return dispatched

    def upkeep(self) -> int:
        """Periodic housekeeping: expire tracked errors past their TTL."""
        try:
            return self.scheduler.executor.tracker.cleanup()
        except Exception:
            logger.exception("worker_upkeep_error", worker_id=self.worker_id)
            return 0

    def _submit(self, fn: Any, claimed: ClaimedRun) -> Future:
        with self._stats_lock:
            self._active_run_ids.add(claimed.run_id)
        assert self._pool is not None
        return self._pool.submit(self._execute, fn, claimed)

    def _execute(self, fn: Any, claimed: ClaimedRun) -> RunOutcome | None:
        try:
            outcome = fn(claimed)
        except Exception:
            logger.exception("worker_execution_error", run_id=claimed.run_id)
            return None
        finally:
            with self._stats_lock:
                self._active_run_ids.discard(claimed.run_id)
                self._stats.total_processed += 1
        counter = _OUTCOME_COUNTERS.get(outcome.status)
        if counter is not None:
            with self._stats_lock:
                setattr(self._stats, counter, getattr(self._stats, counter) + 1)
        return outcome

    # ------------------------------------------------------------------ #
    # Signals & cleanup
    # ------------------------------------------------------------------ #

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("worker_signal_received", signal=signum)
        self.stop()

    def _cleanup(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        self.scheduler.submit = None
        with _workers_lock:
            _active_workers.pop(self.worker_id, None)
        self.status = "stopped"
        logger.info(
            "worker_stopped",
            worker_id=self.worker_id,
            processed=self._stats.total_processed,
        )


__all__ = ["WorkerLoop", "WorkerStats", "get_active_workers", "get_worker_stats"]
