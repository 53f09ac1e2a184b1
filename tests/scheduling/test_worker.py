"""Tests for WorkerLoop."""

import time
from datetime import timedelta
from unittest import mock

import pytest

from flowspine.core.config import EngineSettings
from flowspine.execution.executor import RunExecutor
from flowspine.execution.models import RunStatus, utcnow
from flowspine.execution.repository import InMemoryRunRepository
from flowspine.execution.scheduler import Scheduler
from flowspine.execution.worker import WorkerLoop, get_active_workers, get_worker_stats


def _records(n):
    return [{"id": i} for i in range(1, n + 1)]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def worker(memory_repo, settings, registry):
    executor = RunExecutor(memory_repo, settings, registry=registry, worker_id="loop-1")
    return WorkerLoop(Scheduler(memory_repo, executor), poll_interval=0.01, max_workers=2)


class TestPollOnce:
    def test_runs_inline_without_pool(self, worker, memory_repo, make_flow):
        flow = memory_repo.add_flow(make_flow(records=_records(3)))
        worker.scheduler.ensure_scheduled()
        assert worker.poll_once() == 1
        assert memory_repo.get_flow(flow.id).last_run_status == RunStatus.SUCCESS
        assert worker.get_stats().last_poll_at is not None

    def test_nothing_due(self, worker):
        assert worker.poll_once() == 0

    def test_poll_error_is_logged(self, worker):
        with mock.patch.object(worker.scheduler, "tick", side_effect=RuntimeError("database gone")):
            assert worker.poll_once() == 0
        assert worker.scheduler.stats.last_error == "database gone"


class TestBackgroundLoop:
    def test_start_and_stop(self, worker, memory_repo, make_flow):
        flow = memory_repo.add_flow(make_flow(records=_records(5)))
        worker.scheduler.ensure_scheduled()

        thread = worker.start_background()
        try:
            assert _wait_for(
                lambda: memory_repo.get_flow(flow.id).last_run_status == RunStatus.SUCCESS
            )
            assert _wait_for(lambda: worker.get_stats().total_completed == 1)
            assert "loop-1" in get_active_workers()
            assert get_worker_stats()[0]["total_completed"] == 1
        finally:
            worker.stop()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert worker.status == "stopped"
        assert not worker.running
        assert worker.scheduler.submit is None
        assert "loop-1" not in get_active_workers()

        stats = worker.get_stats().to_dict()
        assert stats["total_processed"] == 1
        assert stats["active_runs"] == 0

    def test_failure_counters(self, worker, memory_repo, make_flow):
        memory_repo.add_flow(
            make_flow(records=_records(1), sink_config={"kind": "failing", "error": "value"})
        )
        worker.scheduler.ensure_scheduled()
        thread = worker.start_background()
        try:
            assert _wait_for(lambda: worker.get_stats().total_failed == 1)
        finally:
            worker.stop()
            thread.join(timeout=5)


class TestFromSettings:
    def test_builds_stack(self):
        settings = EngineSettings(
            worker_id="w-settings",
            poll_interval_seconds=0.5,
            max_workers=3,
            database_path=None,
        )
        repository = InMemoryRunRepository()
        worker = WorkerLoop.from_settings(settings, repository)
        assert worker.worker_id == "w-settings"
        assert worker.scheduler.repository is repository
        assert worker.scheduler.settings is settings
        assert worker._poll_interval == 0.5
        assert worker._max_workers == 3
        assert worker.status == "idle"


class TestCapacity:
    def test_claims_only_free_slots(self, worker):
        worker._pool = mock.Mock()
        worker._active_run_ids = {"run-a"}
        with mock.patch.object(worker.scheduler, "tick", wraps=worker.scheduler.tick) as tick:
            worker.poll_once()
        tick.assert_called_once_with(capacity=1)

    def test_full_pool_claims_nothing(self, worker, memory_repo, make_flow):
        memory_repo.add_flow(make_flow(records=_records(1)))
        [run] = worker.scheduler.ensure_scheduled()
        worker._pool = mock.Mock()
        worker._active_run_ids = {"run-a", "run-b"}

        assert worker.poll_once() == 0
        assert memory_repo.get_run(run.id).status == RunStatus.PENDING

    def test_inline_is_unbounded(self, worker):
        with mock.patch.object(worker.scheduler, "tick", wraps=worker.scheduler.tick) as tick:
            worker.poll_once()
        tick.assert_called_once_with(capacity=None)


class TestUpkeep:
    def test_expired_errors_dropped(self, memory_repo, settings, registry, make_flow):
        executor = RunExecutor(memory_repo, settings, registry=registry, worker_id="loop-1")
        worker = WorkerLoop(Scheduler(memory_repo, executor), upkeep_every=2)
        flow = make_flow()
        tracker = executor.tracker
        tracker.record(flow, TimeoutError("old"), now=utcnow() - timedelta(days=8))
        tracker.record(flow, TimeoutError("recent"))

        worker.poll_once()
        assert len(tracker) == 2
        worker.poll_once()
        assert [e.error_message for e in tracker.recent_errors()] == ["recent"]

    def test_upkeep_error_is_logged(self, worker):
        with mock.patch.object(
            worker.scheduler.executor.tracker, "cleanup", side_effect=RuntimeError("boom")
        ):
            assert worker.upkeep() == 0
