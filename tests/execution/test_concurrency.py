"""Tests for ConcurrencyLimiter."""

import pytest

from flowspine.core.config import EngineSettings
from flowspine.execution.concurrency import ConcurrencyLimiter
from flowspine.execution.executor import RunExecutor
from flowspine.execution.models import Flow, Run
from flowspine.execution.repository import InMemoryRunRepository
from flowspine.execution.scheduler import Scheduler


class TestKeys:
    def test_ungrouped_flow_keyed_by_name(self):
        assert ConcurrencyLimiter().key_for(Flow(name="orders")) == "flow:orders"

    def test_grouped_flows_share_key(self):
        limiter = ConcurrencyLimiter()
        a = Flow(name="a", concurrency_group="warehouse")
        b = Flow(name="b", concurrency_group="warehouse")
        assert limiter.key_for(a) == limiter.key_for(b) == "group:warehouse"


class TestLimits:
    def test_flow_limit(self):
        assert ConcurrencyLimiter().limit_for(Flow(name="a", concurrency_limit=3)) == 3

    def test_group_limit_wins(self):
        flow = Flow(name="a", concurrency_limit=5, concurrency_group="g", concurrency_group_limit=2)
        assert ConcurrencyLimiter().limit_for(flow) == 2

    def test_group_without_limit_falls_back(self):
        flow = Flow(name="a", concurrency_limit=4, concurrency_group="g")
        assert ConcurrencyLimiter().limit_for(flow) == 4

    def test_at_capacity(self):
        limiter = ConcurrencyLimiter()
        flow = Flow(name="a", concurrency_limit=2)
        assert limiter.at_capacity(flow, 1) is False
        assert limiter.at_capacity(flow, 2) is True

    def test_invalid_default(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(default_limit=0)

    def test_unset_flow_limit_uses_default(self):
        flow = Flow(name="a")
        assert flow.concurrency_limit is None
        assert ConcurrencyLimiter().limit_for(flow) == 1
        assert ConcurrencyLimiter(default_limit=3).limit_for(flow) == 3
        pinned = Flow(name="b", concurrency_limit=1)
        assert ConcurrencyLimiter(default_limit=3).limit_for(pinned) == 1


class TestFromSettings:
    def test_default_limit_from_settings(self):
        settings = EngineSettings(default_concurrency_limit=4, database_path=None)
        limiter = ConcurrencyLimiter.from_settings(settings)
        assert limiter.default_limit == 4
        assert limiter.at_capacity(Flow(name="a"), 3) is False
        assert limiter.at_capacity(Flow(name="a"), 4) is True

    def test_executor_and_scheduler_share_settings_limiter(self):
        settings = EngineSettings(default_concurrency_limit=2, database_path=None)
        scheduler = Scheduler(InMemoryRunRepository(), settings=settings)
        assert scheduler.limiter.default_limit == 2
        assert scheduler.executor.limiter is scheduler.limiter

    def test_settings_limit_applies_to_claims(self, memory_repo, registry, make_flow, now):
        settings = EngineSettings(default_concurrency_limit=2, database_path=None)
        executor = RunExecutor(memory_repo, settings, registry=registry, worker_id="w-1")
        scheduler = Scheduler(memory_repo, executor, submit=lambda fn, claimed: None)
        flow = memory_repo.add_flow(make_flow(records=[{"id": 1}]))
        for _ in range(3):
            memory_repo.create_run(Run(flow_id=flow.id, run_after=now))

        result = scheduler.tick(now)

        assert result.claimed == 2
        assert result.skipped == 1
