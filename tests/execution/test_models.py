"""Tests for Flow / Run models and the run state machine."""

from datetime import timedelta

import pytest

from flowspine.core.errors import InvalidTransitionError
from flowspine.execution.models import (
    RUN_VALID_TRANSITIONS,
    TERMINAL_STATUSES,
    ClaimedRun,
    ErrorClassification,
    Flow,
    FlowStatus,
    Run,
    RunStatus,
    validate_run_transition,
)


class TestRunStateMachine:
    """Valid and invalid transitions."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (RunStatus.PENDING, RunStatus.IN_PROGRESS),
            (RunStatus.PENDING, RunStatus.CANCELLED),
            (RunStatus.IN_PROGRESS, RunStatus.SUCCESS),
            (RunStatus.IN_PROGRESS, RunStatus.FAILED),
            (RunStatus.IN_PROGRESS, RunStatus.CANCELLED),
        ],
    )
    def test_valid(self, current, target):
        validate_run_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (RunStatus.PENDING, RunStatus.SUCCESS),
            (RunStatus.SUCCESS, RunStatus.PENDING),
            (RunStatus.FAILED, RunStatus.IN_PROGRESS),
            (RunStatus.CANCELLED, RunStatus.PENDING),
        ],
    )
    def test_invalid(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_run_transition(current, target)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert RUN_VALID_TRANSITIONS[status] == frozenset()

    def test_transition_to(self):
        run = Run(flow_id="f")
        run.transition_to(RunStatus.IN_PROGRESS)
        assert run.status == RunStatus.IN_PROGRESS
        with pytest.raises(InvalidTransitionError):
            run.transition_to(RunStatus.PENDING)


class TestFlow:
    def test_defaults(self):
        flow = Flow(name="orders")
        assert flow.enabled is True
        assert flow.status == FlowStatus.ACTIVE
        assert flow.concurrency_limit is None
        assert flow.is_schedulable is True

    def test_status_coerced_from_string(self):
        assert Flow(name="orders", status="draft").status == FlowStatus.DRAFT

    def test_draft_not_schedulable(self):
        assert Flow(name="orders", status=FlowStatus.DRAFT).is_schedulable is False

    def test_enable_disable(self):
        flow = Flow(name="orders")
        flow.disable()
        assert flow.enabled is False
        assert flow.status == FlowStatus.INACTIVE
        assert flow.is_schedulable is False
        flow.enable()
        assert flow.is_schedulable is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": ""},
            {"name": "x", "interval_seconds": -1},
            {"name": "x", "concurrency_limit": 0},
            {"name": "x", "concurrency_group_limit": 0},
        ],
    )
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            Flow(**kwargs)


class TestRunDerived:
    def test_resume_cursor_prefers_checkpoint(self):
        run = Run(flow_id="f", start_cursor=10)
        assert run.resume_cursor == 10
        run.last_cursor = 42
        assert run.resume_cursor == 42

    def test_resumable(self):
        run = Run(flow_id="f", status=RunStatus.IN_PROGRESS)
        assert run.resumable is False
        run.last_cursor = 1
        assert run.resumable is True

    def test_duration(self, now):
        run = Run(flow_id="f", started_at=now, ended_at=now + timedelta(seconds=90))
        assert run.duration_seconds == 90.0
        assert Run(flow_id="f").duration_seconds is None

    def test_due_and_overdue(self, now):
        run = Run(flow_id="f", run_after=now)
        assert run.is_due(now) is True
        assert run.is_due(now - timedelta(seconds=1)) is False
        assert run.is_overdue(now + timedelta(minutes=30)) is False
        assert run.is_overdue(now + timedelta(hours=1)) is True

    def test_lease_expired(self, now):
        run = Run(flow_id="f", status=RunStatus.IN_PROGRESS, lease_expires_at=now)
        assert run.lease_expired(now) is True
        assert run.lease_expired(now - timedelta(seconds=1)) is False
        assert Run(flow_id="f", lease_expires_at=now).lease_expired(now) is False

    def test_progress_percentage(self):
        run = Run(flow_id="f", records_processed=25)
        assert run.progress_percentage(100) == 25.0
        assert run.progress_percentage(0) is None

    def test_to_dict(self, now):
        run = Run(
            flow_id="f",
            run_after=now,
            error_classification="transient",
            last_cursor=5,
        )
        data = run.to_dict()
        assert data["status"] == "pending"
        assert data["error_classification"] == "transient"
        assert data["last_cursor"] == 5
        assert run.error_classification == ErrorClassification.TRANSIENT

    def test_claimed_run_id(self, now):
        run = Run(flow_id="f")
        claimed = ClaimedRun(run=run, worker_id="w", concurrency_key="flow:f", claimed_at=now)
        assert claimed.run_id == run.id
        assert claimed.reclaimed is False
