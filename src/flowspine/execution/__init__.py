"""flowspine execution — scheduling, claiming, and resumable flow runs.

WHY
───
A flow run has to be picked up by exactly one worker, survive that
worker dying, respect per-flow and per-group concurrency limits, and
fail in a way that says whether trying again could help. This package
is that lifecycle, with the database hidden behind one small contract.

ARCHITECTURE
────────────
::

    Scheduler.tick()
      ├── RunRepository.find_due / find_stale
      ├── ConcurrencyLimiter ─ key_for / limit_for (checked inside claim)
      └── RunExecutor.execute(claimed)
            ├── ComponentRegistry ─ {"kind": ...} → Source / Sink / Runtime
            ├── BatchProcessor    ─ fetch → transform → write → checkpoint
            └── outcome
                  ├── ErrorClassifier + RetryPolicy ─ retry run or fail
                  ├── ErrorTracker                  ─ recent failures
                  ├── CallbackRegistry              ─ after_complete / after_failure
                  └── EventBus                      ─ flow.* / batch.* events

MODULE MAP (recommended reading order)
──────────────────────────────────────
Models & storage
  1. models.py       ─ Flow, Run, RunStatus state machine, ClaimedRun
  2. repository.py   ─ RunRepository contract + InMemoryRunRepository
  3. ledger.py       ─ RunLedger (SQLite / PostgreSQL)
     cursors.py      ─ type-preserving cursor JSON

Policy
  4. retry.py        ─ RetryPolicy + wait strategies
  5. classifier.py   ─ ErrorClassifier (transient / permanent / unknown)
  6. concurrency.py  ─ ConcurrencyLimiter
  7. tracking.py     ─ ErrorTracker

Components
  8. registry.py     ─ ComponentRegistry (tagged-variant reconstruction)
  9. components.py   ─ built-in memory / null / log / passthrough / field_map

Execution
 10. batch.py        ─ BatchProcessor
 11. executor.py     ─ RunExecutor
 12. scheduler.py    ─ Scheduler
 13. worker.py       ─ WorkerLoop

Hooks
 14. callbacks.py    ─ CallbackRegistry
 15. events.py       ─ EventBus

Reporting
 16. metrics.py      ─ RunMetrics (stats, throughput, health)
"""

from .batch import BatchProcessor, BatchResult
from .callbacks import CallbackRegistry
from .classifier import ErrorClassifier
from .components import (
    FieldMapRuntime,
    LogSink,
    MemorySink,
    MemorySource,
    NullSink,
    PassthroughRuntime,
)
from .concurrency import ConcurrencyLimiter
from .events import Event, EventBus
from .executor import OutcomeStatus, RunExecutor, RunOutcome
from .ledger import RunLedger
from .metrics import RunMetrics
from .models import (
    ClaimedRun,
    ErrorClassification,
    Flow,
    FlowStatus,
    Run,
    RunStatus,
    utcnow,
)
from .registry import (
    ComponentConfig,
    ComponentRegistry,
    get_default_registry,
    register_runtime,
    register_sink,
    register_source,
    reset_default_registry,
)
from .repository import InMemoryRunRepository, RunRepository
from .retry import RetryPolicy
from .scheduler import BulkEnqueueResult, Scheduler, SchedulerStats, TickResult
from .tracking import ErrorRecord, ErrorTracker
from .worker import WorkerLoop, WorkerStats

__all__ = [
    # models
    "ClaimedRun",
    "ErrorClassification",
    "Flow",
    "FlowStatus",
    "Run",
    "RunStatus",
    "utcnow",
    # storage
    "InMemoryRunRepository",
    "RunLedger",
    "RunRepository",
    # policy
    "ConcurrencyLimiter",
    "ErrorClassifier",
    "ErrorRecord",
    "ErrorTracker",
    "RetryPolicy",
    # components
    "ComponentConfig",
    "ComponentRegistry",
    "FieldMapRuntime",
    "LogSink",
    "MemorySink",
    "MemorySource",
    "NullSink",
    "PassthroughRuntime",
    "get_default_registry",
    "register_runtime",
    "register_sink",
    "register_source",
    "reset_default_registry",
    # execution
    "BatchProcessor",
    "BatchResult",
    "BulkEnqueueResult",
    "OutcomeStatus",
    "RunExecutor",
    "RunOutcome",
    "Scheduler",
    "SchedulerStats",
    "TickResult",
    "WorkerLoop",
    "WorkerStats",
    # hooks
    "CallbackRegistry",
    "Event",
    "EventBus",
    # reporting
    "RunMetrics",
]
