"""Tests for the flowspine error hierarchy."""

import pytest

from flowspine.core.errors import (
    AlreadyClaimedError,
    ClaimConflictError,
    ClaimError,
    ConcurrencyLimitError,
    ConfigError,
    CursorRegressionError,
    ErrorCategory,
    FlowNotFoundError,
    FlowSpineError,
    InvalidTransitionError,
    NetworkError,
    ReconstructionError,
    RunStuckError,
    TransientError,
    UnknownComponentKindError,
    get_retry_after,
    is_retryable,
)


class TestFlowSpineError:
    """Tests for the base error."""

    def test_defaults(self):
        error = FlowSpineError("boom")
        assert error.message == "boom"
        assert error.category == ErrorCategory.INTERNAL
        assert error.retryable is False
        assert error.retry_after is None
        assert str(error) == "boom"

    def test_overrides(self):
        error = FlowSpineError("boom", category=ErrorCategory.SINK, retryable=True, retry_after=30)
        assert error.category == ErrorCategory.SINK
        assert error.retryable is True
        assert error.retry_after == 30

    def test_cause_is_chained(self):
        cause = OSError("disk")
        error = FlowSpineError("write failed", cause=cause)
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "disk"

    def test_with_context_sets_known_fields_and_metadata(self):
        error = FlowSpineError("x").with_context(flow="orders", run_id="r-1", table="t")
        assert error.context.flow == "orders"
        assert error.context.run_id == "r-1"
        assert error.context.metadata == {"table": "t"}

    def test_to_dict(self):
        error = TransientError("slow", retry_after=5).with_context(flow="orders")
        data = error.to_dict()
        assert data["error_type"] == "TransientError"
        assert data["retryable"] is True
        assert data["retry_after"] == 5
        assert data["context"] == {"flow": "orders"}


class TestHierarchy:
    """Subclass defaults and structure."""

    def test_transient_errors_are_retryable(self):
        assert TransientError("t").retryable is True
        assert NetworkError("n").retryable is True

    def test_config_errors_are_not_retryable(self):
        assert ConfigError("c").retryable is False
        assert ReconstructionError("r").retryable is False

    def test_unknown_kind_message_lists_registered(self):
        error = UnknownComponentKindError("sink", "http", ["memory", "null"])
        assert isinstance(error, ReconstructionError)
        assert "http" in str(error)
        assert "memory, null" in str(error)
        assert error.context.component == "sink"
        assert error.context.kind == "http"

    def test_claim_errors(self):
        limit = ConcurrencyLimitError("r-1", "flow:orders", 2)
        assert isinstance(limit, AlreadyClaimedError)
        assert isinstance(limit, ClaimError)
        assert limit.concurrency_key == "flow:orders"
        assert limit.limit == 2
        assert ClaimConflictError("r-1", "w-1").retryable is True

    def test_execution_errors(self):
        stuck = RunStuckError("r-1", 11, 10)
        assert stuck.resumptions == 11
        regression = CursorRegressionError("r-1", 5, 3)
        assert regression.current == 5
        assert regression.proposed == 3
        assert regression.retryable is False

    def test_invalid_transition_is_value_error(self):
        error = InvalidTransitionError("success", "pending")
        assert isinstance(error, ValueError)
        assert "success" in str(error)

    def test_not_found(self):
        assert FlowNotFoundError("orders").category == ErrorCategory.NOT_FOUND


class TestHelpers:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (TransientError("t"), True),
            (ConfigError("c"), False),
            (ConnectionError(), True),
            (TimeoutError(), True),
            (ValueError(), False),
        ],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected

    def test_get_retry_after(self):
        assert get_retry_after(TransientError("t", retry_after=7)) == 7
        assert get_retry_after(ValueError()) is None
