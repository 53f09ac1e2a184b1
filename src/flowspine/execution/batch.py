"""Cursor batch processor — the checkpointed Source → Runtime → Sink loop.

WHY
───
A flow that moves a million rows must survive a worker dying at row
731,042. The processor pulls records in fixed-size batches after the
run's last checkpoint, pushes each through the runtime into the sink,
and persists the batch's last cursor before fetching the next one. A
crash therefore loses at most the in-flight batch, which is re-read
and re-written on resume (the sink must tolerate at-least-once).

ARCHITECTURE
────────────
::

    cursor = run.last_cursor or run.start_cursor
    loop:
      records = source.next_batch(after=cursor, limit=batch_size)
      ├── empty                 → done
      ├── transform + write each record
      ├── sink.flush()          (if the sink has one)
      ├── save_checkpoint(last position, +len(records))   ← atomic, CAS
      ├── cancel requested?     → stop (batch boundary)
      └── len < batch_size      → done

Related modules:
    executor.py   — builds the components and interprets the result
    repository.py — save_checkpoint (ownership + monotonic cursor)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flowspine.core.logging import get_logger
from flowspine.core.protocols import Runtime, Sink, Source

from .components import record_cursor
from .events import BATCH_PROCESSED, EventBus
from .models import Run, utcnow
from .repository import RunRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one processor pass over a run.

    Attributes:
        cursor: Last checkpointed position (unchanged if nothing was read)
        records_processed: Records handled during this pass
        batches: Batches checkpointed during this pass
        cancelled: Stopped at a batch boundary on operator request
    """

    cursor: Any
    records_processed: int
    batches: int
    cancelled: bool = False


def position_of(source: Any, record: Any) -> Any:
    """Cursor of ``record``: ``source.cursor_for(record)`` when defined,
    else ``record["id"]`` / ``record.id``."""
    cursor_for = getattr(source, "cursor_for", None)
    if callable(cursor_for):
        return cursor_for(record)
    return record_cursor(record, "id")


class BatchProcessor:
    """Drives one claimed run through its source in checkpointed batches.

    Args:
        repository: Where checkpoints are persisted
        worker_id: Claim holder; checkpoints from anyone else are rejected
        lease_seconds: Lease renewed at every checkpoint
        events: Optional bus for ``batch.processed`` events
        clock: Time source (patched in tests)
    """

    def __init__(
        self,
        repository: RunRepository,
        worker_id: str,
        *,
        lease_seconds: int = 300,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.events = events
        self.clock = clock

    def process(
        self,
        run: Run,
        source: Source,
        sink: Sink,
        runtime: Runtime,
        batch_size: int,
    ) -> BatchResult:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        cursor = run.resume_cursor
        processed = 0
        batches = 0

        if run.cancel_requested:
            return BatchResult(cursor, 0, 0, cancelled=True)

        while True:
            records = list(source.next_batch(cursor, batch_size))
            if not records:
                break

            batch_first = None
            batch_last = cursor
            for record in records:
                position = position_of(source, record)
                output = runtime.transform(record)
                if output is not None:
                    sink.write(output)
                if batch_first is None:
                    batch_first = position
                batch_last = position

            flush = getattr(sink, "flush", None)
            if callable(flush):
                flush()

            checkpoint = self.repository.save_checkpoint(
                run.id,
                self.worker_id,
                batch_last,
                first_cursor=batch_first,
                records_delta=len(records),
                now=self.clock(),
                lease_seconds=self.lease_seconds,
            )
            cursor = batch_last
            processed += len(records)
            batches += 1

            logger.debug(
                "batch_checkpointed",
                run_id=run.id,
                cursor=cursor,
                batch_records=len(records),
                records_processed=checkpoint.records_processed,
            )
            if self.events is not None:
                self.events.emit(
                    BATCH_PROCESSED,
                    "batch_processor",
                    correlation_id=run.id,
                    flow_id=run.flow_id,
                    cursor=cursor,
                    batch_records=len(records),
                    records_processed=checkpoint.records_processed,
                )

            if checkpoint.cancel_requested:
                return BatchResult(cursor, processed, batches, cancelled=True)
            if len(records) < batch_size:
                break

        return BatchResult(cursor, processed, batches)


__all__ = ["BatchResult", "BatchProcessor", "position_of"]
