"""
Structured error types for the flowspine engine.

Every error the engine raises carries enough metadata for the executor to
decide between *retry* and *terminal failure* without string matching:

- **Category:** What kind of error (network, config, claim, cursor, ...)
- **Retryable:** Whether the operation may succeed if attempted again
- **Retry-after:** Optional upstream hint for the wait before retrying
- **Context:** Flow / run / component metadata for logging
- **Cause:** Chained underlying exception for root cause analysis

Manifesto:
    - **Typed Error Hierarchy:** Different error types for different failure domains
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry metadata for logging and the error tracker
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      FlowSpineError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError    ConfigError            ClaimError             │
        │  (retryable=True)  (CONFIG)               (CLAIM)                │
        │       │                │                     │                   │
        │  NetworkError      ReconstructionError   AlreadyClaimedError     │
        │                    UnknownComponentKind  ClaimConflictError      │
        │                                                                  │
        │  ExecutionError    LookupFailure                                 │
        │  (EXECUTION)       (NOT_FOUND)                                   │
        │       │                │                                         │
        │  RunStuckError     RunNotFoundError                              │
        │  CursorRegression  FlowNotFoundError                             │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Mark configuration errors retryable - retrying cannot fix them
    ✅ DO: Raise ReconstructionError when a component cannot be rebuilt

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    flowspine, claim, cursor
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for classification and routing."""

    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    SOURCE = "SOURCE"
    SINK = "SINK"
    CONFIG = "CONFIG"
    CLAIM = "CLAIM"
    EXECUTION = "EXECUTION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        flow: Name of the flow being executed
        run_id: Run identifier
        component: Component role (``source``, ``sink``, ``runtime``)
        kind: Component kind from the config envelope
        worker_id: Worker that held the claim
        metadata: Additional key-value pairs
    """

    flow: str | None = None
    run_id: str | None = None
    component: str | None = None
    kind: str | None = None
    worker_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("flow", "run_id", "component", "kind", "worker_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class FlowSpineError(Exception):
    """
    Base class for all flowspine errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.

    Examples:
        >>> error = FlowSpineError("Fetch failed", retryable=True, retry_after=30)
        >>> error.retryable
        True
        >>> error.with_context(flow="orders", run_id="r-1").context.flow
        'orders'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FlowSpineError:
        """Add context to this error (fluent API).

        Usage:
            raise ReconstructionError("bad config").with_context(
                flow="orders", component="sink", kind="http"
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(FlowSpineError):
    """Temporary error that may succeed on retry (timeouts, resets, lock waits)."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Network-related transient error."""

    default_category = ErrorCategory.NETWORK


# =============================================================================
# CONFIGURATION ERRORS (Never Retryable)
# =============================================================================


class ConfigError(FlowSpineError):
    """Invalid or missing engine/flow configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class ReconstructionError(ConfigError):
    """A Source, Sink or Runtime could not be rebuilt from its stored config.

    Raised for malformed envelopes and for factories that reject their
    parameters. Always permanent: the same config will fail the same way.
    """


class UnknownComponentKindError(ReconstructionError):
    """The config envelope names a ``kind`` with no registered factory."""

    def __init__(self, role: str, kind: str, available: list[str] | None = None):
        known = ", ".join(sorted(available or [])) or "none"
        super().__init__(f"Unknown {role} kind '{kind}' (registered: {known})")
        self.role = role
        self.kind = kind
        self.context.component = role
        self.context.kind = kind


# =============================================================================
# CLAIM ERRORS
# =============================================================================


class ClaimError(FlowSpineError):
    """Base for errors raised by the claim protocol."""

    default_category = ErrorCategory.CLAIM


class AlreadyClaimedError(ClaimError):
    """The run was not claimable: another worker holds it, it is no longer
    pending, or its concurrency key is at capacity."""

    def __init__(self, run_id: str, reason: str = "already claimed"):
        super().__init__(f"Run {run_id} not claimable: {reason}")
        self.run_id = run_id
        self.reason = reason


class ConcurrencyLimitError(AlreadyClaimedError):
    """The run's concurrency key already has ``limit`` runs in progress."""

    def __init__(self, run_id: str, concurrency_key: str, limit: int):
        super().__init__(run_id, f"{concurrency_key} at capacity ({limit})")
        self.concurrency_key = concurrency_key
        self.limit = limit


class ClaimConflictError(ClaimError):
    """The worker lost ownership of a run it was executing (lease reclaimed)."""

    default_retryable = True

    def __init__(self, run_id: str, worker_id: str | None = None):
        super().__init__(f"Run {run_id} is no longer held by worker {worker_id}")
        self.run_id = run_id
        self.context.worker_id = worker_id


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(FlowSpineError):
    """Base for errors raised while driving a run."""

    default_category = ErrorCategory.EXECUTION


class RunStuckError(ExecutionError):
    """The run was resumed more times than ``max_resumptions`` allows."""

    def __init__(self, run_id: str, resumptions: int, max_resumptions: int):
        super().__init__(
            f"Run {run_id} exceeded max resumptions ({resumptions} > {max_resumptions})"
        )
        self.run_id = run_id
        self.resumptions = resumptions
        self.max_resumptions = max_resumptions


class CursorRegressionError(ExecutionError):
    """A checkpoint tried to move ``last_cursor`` backwards."""

    def __init__(self, run_id: str, current: Any, proposed: Any):
        super().__init__(
            f"Run {run_id} cursor would regress from {current!r} to {proposed!r}"
        )
        self.run_id = run_id
        self.current = current
        self.proposed = proposed


class InvalidTransitionError(ValueError):
    """Raised when an illegal run state transition is attempted.

    If you discover a legitimate transition that is blocked, add it to
    ``RUN_VALID_TRANSITIONS`` explicitly; never remove the guard.
    """

    def __init__(self, current: str, target: str, enum_name: str = "RunStatus") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# LOOKUP ERRORS
# =============================================================================


class RunNotFoundError(FlowSpineError):
    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class FlowNotFoundError(FlowSpineError):
    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, flow: str):
        super().__init__(f"Flow not found: {flow}")
        self.flow = flow


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, FlowSpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def get_retry_after(error: Exception) -> int | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, FlowSpineError):
        return error.retry_after
    return None


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FlowSpineError",
    "TransientError",
    "NetworkError",
    "ConfigError",
    "ReconstructionError",
    "UnknownComponentKindError",
    "ClaimError",
    "AlreadyClaimedError",
    "ConcurrencyLimitError",
    "ClaimConflictError",
    "ExecutionError",
    "RunStuckError",
    "CursorRegressionError",
    "InvalidTransitionError",
    "RunNotFoundError",
    "FlowNotFoundError",
    "is_retryable",
    "get_retry_after",
]
