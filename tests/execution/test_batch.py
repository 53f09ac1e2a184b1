"""Tests for the checkpointed batch processor."""

import pytest

from flowspine.core.errors import ClaimConflictError, CursorRegressionError
from flowspine.execution.batch import BatchProcessor, position_of
from flowspine.execution.components import MemorySink, MemorySource, PassthroughRuntime
from flowspine.execution.events import BATCH_PROCESSED, EventBus
from flowspine.execution.models import Flow, Run, RunStatus

LEASE = 60


@pytest.fixture
def flow(memory_repo):
    return memory_repo.add_flow(Flow(name="orders"))


@pytest.fixture
def claimed_run(memory_repo, flow, now):
    run = memory_repo.create_run(Run(flow_id=flow.id, run_after=now))
    return memory_repo.claim(run.id, "w-1", "flow:orders", 1, now, LEASE)


def _records(n):
    return [{"id": i, "value": i * 10} for i in range(1, n + 1)]


class DropOddRuntime(PassthroughRuntime):
    def transform(self, record):
        return record if record["id"] % 2 == 0 else None


class BackwardsSource:
    """Returns a lower position in its second batch."""

    def __init__(self):
        self.calls = 0

    def next_batch(self, after, limit):
        self.calls += 1
        if self.calls == 1:
            return [{"id": 5}, {"id": 6}]
        if self.calls == 2:
            return [{"id": 3}, {"id": 4}]
        return []


class TestPositionOf:
    def test_source_cursor_for(self):
        source = MemorySource([{"seq": 1}], cursor_field="seq")
        assert position_of(source, {"seq": 9}) == 9

    def test_default_id(self):
        assert position_of(object(), {"id": 4}) == 4


class TestBatchProcessor:
    """Fetch → transform → write → checkpoint loop."""

    def test_processes_all_records(self, memory_repo, claimed_run):
        sink = MemorySink()
        processor = BatchProcessor(memory_repo, "w-1", lease_seconds=LEASE)
        result = processor.process(
            claimed_run, MemorySource(_records(5)), sink, PassthroughRuntime(), batch_size=2
        )
        assert result.records_processed == 5
        assert result.batches == 3
        assert result.cursor == 5
        assert result.cancelled is False
        assert [r["id"] for r in sink.records] == [1, 2, 3, 4, 5]
        assert sink.flushes == 3

        stored = memory_repo.get_run(claimed_run.id)
        assert stored.first_cursor == 1
        assert stored.last_cursor == 5
        assert stored.records_processed == 5

    def test_exact_multiple_ends_on_empty_batch(self, memory_repo, claimed_run):
        processor = BatchProcessor(memory_repo, "w-1")
        result = processor.process(
            claimed_run, MemorySource(_records(4)), MemorySink(), PassthroughRuntime(), 2
        )
        assert result.records_processed == 4
        assert result.batches == 2

    def test_empty_source(self, memory_repo, claimed_run):
        result = BatchProcessor(memory_repo, "w-1").process(
            claimed_run, MemorySource([]), MemorySink(), PassthroughRuntime(), 10
        )
        assert result.records_processed == 0
        assert result.cursor is None
        assert memory_repo.get_run(claimed_run.id).last_cursor is None

    def test_starts_after_start_cursor(self, memory_repo, flow, now):
        run = memory_repo.create_run(Run(flow_id=flow.id, run_after=now, start_cursor=3))
        run = memory_repo.claim(run.id, "w-1", "flow:orders", 1, now, LEASE)
        sink = MemorySink()
        BatchProcessor(memory_repo, "w-1").process(
            run, MemorySource(_records(5)), sink, PassthroughRuntime(), 10
        )
        assert [r["id"] for r in sink.records] == [4, 5]
        assert memory_repo.get_run(run.id).first_cursor == 4

    def test_dropped_records_still_count(self, memory_repo, claimed_run):
        sink = MemorySink()
        result = BatchProcessor(memory_repo, "w-1").process(
            claimed_run, MemorySource(_records(4)), sink, DropOddRuntime(), 10
        )
        assert [r["id"] for r in sink.records] == [2, 4]
        assert result.records_processed == 4
        assert memory_repo.get_run(claimed_run.id).last_cursor == 4

    def test_invalid_batch_size(self, memory_repo, claimed_run):
        with pytest.raises(ValueError):
            BatchProcessor(memory_repo, "w-1").process(
                claimed_run, MemorySource([]), MemorySink(), PassthroughRuntime(), 0
            )

    def test_emits_batch_events(self, memory_repo, claimed_run):
        bus = EventBus()
        cursors = []
        bus.subscribe(BATCH_PROCESSED, lambda e: cursors.append(e.payload["cursor"]))
        BatchProcessor(memory_repo, "w-1", events=bus).process(
            claimed_run, MemorySource(_records(5)), MemorySink(), PassthroughRuntime(), 2
        )
        assert cursors == [2, 4, 5]

    def test_cursor_regression_raises(self, memory_repo, claimed_run):
        with pytest.raises(CursorRegressionError):
            BatchProcessor(memory_repo, "w-1").process(
                claimed_run, BackwardsSource(), MemorySink(), PassthroughRuntime(), 2
            )
        assert memory_repo.get_run(claimed_run.id).last_cursor == 6

    def test_checkpoint_from_non_holder_rejected(self, memory_repo, claimed_run):
        with pytest.raises(ClaimConflictError):
            BatchProcessor(memory_repo, "intruder").process(
                claimed_run, MemorySource(_records(2)), MemorySink(), PassthroughRuntime(), 2
            )


class TestCancellation:
    def test_cancel_before_first_batch(self, memory_repo, claimed_run, now):
        memory_repo.cancel(claimed_run.id, now)
        run = memory_repo.get_run(claimed_run.id)
        sink = MemorySink()
        result = BatchProcessor(memory_repo, "w-1").process(
            run, MemorySource(_records(5)), sink, PassthroughRuntime(), 2
        )
        assert result.cancelled is True
        assert sink.records == []

    def test_cancel_honoured_at_batch_boundary(self, memory_repo, claimed_run, now):
        class CancellingSink(MemorySink):
            def write(self, record):
                super().write(record)
                if record["id"] == 1:
                    memory_repo.cancel(claimed_run.id, now)

        sink = CancellingSink()
        result = BatchProcessor(memory_repo, "w-1").process(
            claimed_run, MemorySource(_records(6)), sink, PassthroughRuntime(), 2
        )
        assert result.cancelled is True
        assert [r["id"] for r in sink.records] == [1, 2]
        stored = memory_repo.get_run(claimed_run.id)
        assert stored.last_cursor == 2
        assert stored.status == RunStatus.IN_PROGRESS
