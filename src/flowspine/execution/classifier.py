"""Error classification: transient, permanent or unknown.

The executor asks the classifier two questions about every failure: what
kind of error is this, and may the run be retried? Classification works
on membership lists of exception types or names, so flows can name
driver errors (``"psycopg2.errors.DeadlockDetected"``) without importing
the driver.

Precedence, first match wins::

    flow permanent  →  flow transient  →  global transient  →  global permanent
        →  FlowSpineError.retryable  →  unknown

Unknown errors are retried like transient ones but stay flagged as
``unknown`` on the run and in the error tracker, so operators can
promote them to one of the lists.

Example:
    >>> classifier = ErrorClassifier()
    >>> classifier.classify(TimeoutError("read timed out"))
    <ErrorClassification.TRANSIENT: 'transient'>
    >>> classifier.classify(ValueError("bad row"))
    <ErrorClassification.PERMANENT: 'permanent'>
"""

from __future__ import annotations

from typing import Any, Iterable

from flowspine.core.errors import FlowSpineError

from .models import ErrorClassification
from .retry import RetryPolicy

DEFAULT_TRANSIENT_ERRORS: tuple[str, ...] = (
    "TransientError",
    "TimeoutError",
    "ConnectionError",
    "OperationalError",
    "DeadlockDetected",
    "LockNotAvailable",
    "ClaimConflictError",
)

DEFAULT_PERMANENT_ERRORS: tuple[str, ...] = (
    "ValueError",
    "TypeError",
    "KeyError",
    "AttributeError",
    "NameError",
    "NotImplementedError",
    "ConfigError",
)


def matches(error: BaseException, entry: Any) -> bool:
    """True if ``error`` is an instance of ``entry``.

    ``entry`` is an exception type, or a name compared against every class
    in the error's MRO by ``__name__`` and by ``module.qualname``.
    """
    if isinstance(entry, type):
        return isinstance(error, entry)
    name = str(entry)
    for klass in type(error).__mro__:
        if klass.__name__ == name or f"{klass.__module__}.{klass.__qualname__}" == name:
            return True
    return False


def _any_match(error: BaseException, entries: Iterable[Any]) -> bool:
    return any(matches(error, entry) for entry in entries)


class ErrorClassifier:
    """Classifies errors against the global policy and an optional flow policy.

    Args:
        policy: Engine-wide policy; its lists extend the defaults
        include_defaults: Seed the global lists with the built-in names
    """

    def __init__(self, policy: RetryPolicy | None = None, *, include_defaults: bool = True):
        self.policy = policy or RetryPolicy()
        defaults_t = DEFAULT_TRANSIENT_ERRORS if include_defaults else ()
        defaults_p = DEFAULT_PERMANENT_ERRORS if include_defaults else ()
        self.transient_errors: tuple[Any, ...] = defaults_t + tuple(self.policy.transient_errors)
        self.permanent_errors: tuple[Any, ...] = defaults_p + tuple(self.policy.permanent_errors)

    def add_transient_error(self, entry: Any) -> None:
        if entry not in self.transient_errors:
            self.transient_errors += (entry,)

    def add_permanent_error(self, entry: Any) -> None:
        if entry not in self.permanent_errors:
            self.permanent_errors += (entry,)

    def classify(
        self, error: BaseException, flow_policy: RetryPolicy | None = None
    ) -> ErrorClassification:
        if flow_policy is not None:
            if _any_match(error, flow_policy.permanent_errors):
                return ErrorClassification.PERMANENT
            if _any_match(error, flow_policy.transient_errors):
                return ErrorClassification.TRANSIENT
        if _any_match(error, self.transient_errors):
            return ErrorClassification.TRANSIENT
        if _any_match(error, self.permanent_errors):
            return ErrorClassification.PERMANENT
        if isinstance(error, FlowSpineError):
            if error.retryable:
                return ErrorClassification.TRANSIENT
            return ErrorClassification.PERMANENT
        return ErrorClassification.UNKNOWN

    def effective_policy(self, flow_policy: RetryPolicy | None = None) -> RetryPolicy:
        """The flow's policy merged field by field over the global one."""
        if flow_policy is None:
            return self.policy
        return flow_policy.merged_over(self.policy)

    def retriable(
        self,
        error: BaseException,
        attempt: int,
        max_attempts: int | None = None,
        flow_policy: RetryPolicy | None = None,
    ) -> bool:
        """``attempt < max_attempts`` and the error is not permanent.

        ``max_attempts`` defaults to the effective policy's value.
        """
        if max_attempts is None:
            max_attempts = self.effective_policy(flow_policy).effective_max_attempts
        if attempt >= max_attempts:
            return False
        return self.classify(error, flow_policy) != ErrorClassification.PERMANENT

    def discardable(self, error: BaseException, flow_policy: RetryPolicy | None = None) -> bool:
        return self.classify(error, flow_policy) == ErrorClassification.PERMANENT


__all__ = [
    "DEFAULT_TRANSIENT_ERRORS",
    "DEFAULT_PERMANENT_ERRORS",
    "matches",
    "ErrorClassifier",
]
