"""Retry wait strategies and the per-flow retry policy.

A failed run is retried by enqueuing a *new* pending run whose
``run_after`` is pushed out by the policy's wait strategy. The default
strategy grows polynomially (``attempt**4 + 2`` seconds) with up to 15%
proportional jitter so that a burst of failures does not retry in lockstep.

Example:
    >>> from flowspine.execution.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(max_attempts=3, wait="exponentially_longer", jitter=0.0)
    >>> [policy.backoff(n) for n in (1, 2, 3)]
    [2.0, 4.0, 8.0]
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from flowspine.core.errors import ConfigError

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WAIT = "polynomially_longer"
DEFAULT_JITTER = 0.15


class RetryStrategy(ABC):
    """Abstract base for retry wait strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: One-based number of the attempt that just failed

        Returns:
            Delay in seconds before the retry run becomes due
        """
        ...


def _with_jitter(base: float, jitter: float) -> float:
    return base + base * jitter * random.random()


@dataclass
class PolynomialBackoff(RetryStrategy):
    """Delay = attempt**4 + 2, plus up to ``jitter`` of that as noise.

    Attempt 1 waits ~3s, attempt 2 ~18s, attempt 3 ~83s, attempt 4 ~258s.
    """

    jitter: float = DEFAULT_JITTER

    def next_delay(self, attempt: int) -> float:
        return _with_jitter(float(attempt**4 + 2), self.jitter)


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional proportional jitter.

    Delay = min(multiplier ** attempt, max_delay) + jitter

    Attributes:
        jitter: Fraction of the base delay added as random noise (0.0-1.0)
        multiplier: Exponential multiplier (default: 2)
        max_delay: Optional cap in seconds, applied before jitter
    """

    jitter: float = DEFAULT_JITTER
    multiplier: float = 2.0
    max_delay: float | None = None

    def next_delay(self, attempt: int) -> float:
        delay = float(self.multiplier**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return _with_jitter(delay, self.jitter)


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between retries."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return float(self.delay)


@dataclass
class CallableBackoff(RetryStrategy):
    """Delegates to a user function ``(attempt) -> seconds``."""

    func: Callable[[int], float]

    def next_delay(self, attempt: int) -> float:
        delay = float(self.func(attempt))
        return max(0.0, delay)


def resolve_wait(wait: Any, jitter: float = DEFAULT_JITTER) -> RetryStrategy:
    """Turn a wait setting into a strategy.

    Accepts ``"polynomially_longer"``, ``"exponentially_longer"``, a number
    of seconds, a callable ``(attempt) -> seconds`` or a ready
    :class:`RetryStrategy`.

    Raises:
        ConfigError: For any other value.
    """
    if isinstance(wait, RetryStrategy):
        return wait
    if wait is None or wait == "polynomially_longer":
        return PolynomialBackoff(jitter=jitter)
    if wait == "exponentially_longer":
        return ExponentialBackoff(jitter=jitter)
    if isinstance(wait, bool):
        raise ConfigError(f"Invalid retry wait: {wait!r}")
    if isinstance(wait, (int, float)):
        if wait < 0:
            raise ConfigError(f"Retry wait must be non-negative, got {wait}")
        return ConstantBackoff(delay=float(wait))
    if callable(wait):
        return CallableBackoff(func=wait)
    raise ConfigError(
        f"Invalid retry wait: {wait!r} "
        "(expected 'polynomially_longer', 'exponentially_longer', a number or a callable)"
    )


@dataclass
class RetryPolicy:
    """Retry settings for a flow, or the engine-wide defaults.

    ``None`` fields inherit from the policy this one is merged over; the
    error-class lists are additive. The lists hold exception types or
    names (``"TimeoutError"``, ``"psycopg2.errors.DeadlockDetected"``).

    Attributes:
        max_attempts: Total attempts including the first (None = inherit)
        transient_errors: Extra classes always retried
        permanent_errors: Extra classes never retried
        wait: Wait setting accepted by :func:`resolve_wait` (None = inherit)
        jitter: Proportional jitter for the built-in strategies (None = inherit)
    """

    max_attempts: int | None = None
    transient_errors: tuple[Any, ...] = field(default_factory=tuple)
    permanent_errors: tuple[Any, ...] = field(default_factory=tuple)
    wait: Any = None
    jitter: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.jitter is not None and not 0.0 <= self.jitter <= 1.0:
            raise ConfigError(f"jitter must be within [0, 1], got {self.jitter}")
        self.transient_errors = tuple(self.transient_errors)
        self.permanent_errors = tuple(self.permanent_errors)

    def merged_over(self, base: RetryPolicy) -> RetryPolicy:
        """Return the effective policy: this one's fields win where set."""
        return RetryPolicy(
            max_attempts=self.max_attempts if self.max_attempts is not None else base.max_attempts,
            transient_errors=_union(base.transient_errors, self.transient_errors),
            permanent_errors=_union(base.permanent_errors, self.permanent_errors),
            wait=self.wait if self.wait is not None else base.wait,
            jitter=self.jitter if self.jitter is not None else base.jitter,
        )

    @property
    def effective_max_attempts(self) -> int:
        return self.max_attempts if self.max_attempts is not None else DEFAULT_MAX_ATTEMPTS

    def strategy(self) -> RetryStrategy:
        jitter = self.jitter if self.jitter is not None else DEFAULT_JITTER
        return resolve_wait(self.wait, jitter)

    def backoff(self, attempt: int) -> float:
        """Seconds to wait before retrying after ``attempt`` failed."""
        return self.strategy().next_delay(attempt)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for the ledger (callable waits are not persisted)."""
        wait = self.wait if isinstance(self.wait, (str, int, float)) else None
        return {
            "max_attempts": self.max_attempts,
            "transient_errors": [_error_name(e) for e in self.transient_errors],
            "permanent_errors": [_error_name(e) for e in self.permanent_errors],
            "wait": wait,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetryPolicy | None:
        if not data:
            return None
        return cls(
            max_attempts=data.get("max_attempts"),
            transient_errors=tuple(data.get("transient_errors") or ()),
            permanent_errors=tuple(data.get("permanent_errors") or ()),
            wait=data.get("wait"),
            jitter=data.get("jitter"),
        )


def _error_name(entry: Any) -> str:
    if isinstance(entry, type):
        return f"{entry.__module__}.{entry.__qualname__}"
    return str(entry)


def _union(first: tuple[Any, ...], second: tuple[Any, ...]) -> tuple[Any, ...]:
    merged = list(first)
    for entry in second:
        if entry not in merged:
            merged.append(entry)
    return tuple(merged)


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_WAIT",
    "DEFAULT_JITTER",
    "RetryStrategy",
    "PolynomialBackoff",
    "ExponentialBackoff",
    "ConstantBackoff",
    "CallableBackoff",
    "resolve_wait",
    "RetryPolicy",
]
