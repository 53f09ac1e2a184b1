"""flowspine core -- domain-agnostic engine primitives.

Architecture::

    errors.py          Structured error hierarchy (FlowSpineError, TransientError, ...)
    logging.py         structlog configuration + LogContext
    protocols.py       Canonical protocols (Connection, Source, Sink, Runtime)
    dialect.py         SQL dialect abstraction (SQLite, PostgreSQL)
    config/            EngineSettings (pydantic-settings) + factories
"""

from .errors import (
    AlreadyClaimedError,
    ClaimConflictError,
    ConcurrencyLimitError,
    ConfigError,
    CursorRegressionError,
    ErrorCategory,
    ErrorContext,
    FlowNotFoundError,
    FlowSpineError,
    InvalidTransitionError,
    ReconstructionError,
    RunNotFoundError,
    RunStuckError,
    TransientError,
    is_retryable,
)
from .logging import LogContext, configure_logging, get_logger
from .protocols import Connection, Runtime, Sink, Source

__all__ = [
    "AlreadyClaimedError",
    "ClaimConflictError",
    "ConcurrencyLimitError",
    "ConfigError",
    "CursorRegressionError",
    "ErrorCategory",
    "ErrorContext",
    "FlowNotFoundError",
    "FlowSpineError",
    "InvalidTransitionError",
    "ReconstructionError",
    "RunNotFoundError",
    "RunStuckError",
    "TransientError",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "Connection",
    "Runtime",
    "Sink",
    "Source",
]
