"""In-process error tracking for monitoring and debugging.

Every failure the executor handles is recorded here with its flow, run,
classification and attempt. The tracker answers "what has been failing
lately?" without a database query: ``recent_errors()`` for a flow and
``statistics()`` for 24h totals grouped by flow, classification and error
class.

Entries are bounded (oldest dropped first) and expire after a TTL.
Optional ``on_retry`` / ``on_permanent_failure`` hooks run in an isolated
failure domain: a hook that raises is logged and ignored.
"""

from __future__ import annotations

import threading
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from flowspine.core.logging import get_logger

from .classifier import ErrorClassifier
from .models import ErrorClassification, Flow, Run, utcnow

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 1000
BACKTRACE_FRAMES = 10
STATISTICS_WINDOW = timedelta(hours=24)

ErrorHook = Callable[[Flow, BaseException, "ErrorRecord"], None]


@dataclass(frozen=True)
class ErrorRecord:
    """One recorded error occurrence."""

    flow_name: str
    flow_id: str
    run_id: str | None
    error_class: str
    error_message: str
    classification: ErrorClassification
    attempt: int
    occurred_at: datetime
    backtrace: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_name": self.flow_name,
            "flow_id": self.flow_id,
            "run_id": self.run_id,
            "error_class": self.error_class,
            "error_message": self.error_message,
            "error_classification": self.classification.value,
            "attempt": self.attempt,
            "occurred_at": self.occurred_at.isoformat(),
            "backtrace": list(self.backtrace),
        }


def truncate_message(message: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    if len(message) > max_length:
        return message[:max_length] + "..."
    return message


class ErrorTracker:
    """Bounded, thread-safe store of recent error occurrences.

    Args:
        classifier: Used when ``record`` is called without a classification
        ttl_seconds: Entries older than this are dropped by ``cleanup``
        max_entries: Oldest entries are evicted beyond this size
        enabled: When False, ``record`` is a no-op returning None
        on_retry: Hook called for errors that will be retried
        on_permanent_failure: Hook called for permanent errors
    """

    def __init__(
        self,
        classifier: ErrorClassifier | None = None,
        *,
        ttl_seconds: int = 7 * 86_400,
        max_entries: int = 10_000,
        enabled: bool = True,
        on_retry: ErrorHook | None = None,
        on_permanent_failure: ErrorHook | None = None,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.enabled = enabled
        self.on_retry = on_retry
        self.on_permanent_failure = on_permanent_failure
        self._entries: deque[ErrorRecord] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any, classifier: ErrorClassifier | None = None) -> ErrorTracker:
        return cls(
            classifier,
            ttl_seconds=settings.error_ttl_seconds,
            max_entries=settings.error_max_entries,
            enabled=settings.error_tracking_enabled,
        )

    def record(
        self,
        flow: Flow,
        error: BaseException,
        *,
        run: Run | None = None,
        attempt: int = 1,
        classification: ErrorClassification | None = None,
        retrying: bool = False,
        now: datetime | None = None,
    ) -> ErrorRecord | None:
        """Store an occurrence and notify the matching hook."""
        if not self.enabled:
            return None

        if classification is None:
            classification = self.classifier.classify(error, flow.retry_policy)

        frames = traceback.format_tb(error.__traceback__)[-BACKTRACE_FRAMES:]
        entry = ErrorRecord(
            flow_name=flow.name,
            flow_id=flow.id,
            run_id=run.id if run is not None else None,
            error_class=type(error).__name__,
            error_message=truncate_message(str(error)),
            classification=classification,
            attempt=attempt,
            occurred_at=now or utcnow(),
            backtrace=tuple(line.rstrip() for line in frames),
        )
        with self._lock:
            self._entries.append(entry)

        self._notify(flow, error, entry, retrying)
        return entry

    def _notify(self, flow: Flow, error: BaseException, entry: ErrorRecord, retrying: bool) -> None:
        hook: ErrorHook | None = None
        if entry.classification == ErrorClassification.PERMANENT:
            hook = self.on_permanent_failure
        elif retrying:
            hook = self.on_retry
        if hook is None:
            return
        try:
            hook(flow, error, entry)
        except Exception:
            logger.exception("error_hook_failed", flow=flow.name, run_id=entry.run_id)

    def recent_errors(self, flow_name: str | None = None, limit: int = 100) -> list[ErrorRecord]:
        """Most recent entries, oldest first, optionally for one flow."""
        with self._lock:
            entries = list(self._entries)
        if flow_name is not None:
            entries = [e for e in entries if e.flow_name == flow_name]
        if limit <= 0:
            return []
        return entries[-limit:]

    def statistics(self, now: datetime | None = None) -> dict[str, Any]:
        """Totals for the last 24 hours."""
        cutoff = (now or utcnow()) - STATISTICS_WINDOW
        with self._lock:
            recent = [e for e in self._entries if e.occurred_at > cutoff]
        return {
            "total_24h": len(recent),
            "by_flow": dict(Counter(e.flow_name for e in recent)),
            "by_classification": dict(Counter(e.classification.value for e in recent)),
            "by_error_class": dict(Counter(e.error_class for e in recent)),
        }

    def cleanup(self, now: datetime | None = None) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        cutoff = (now or utcnow()) - self.ttl
        with self._lock:
            kept = [e for e in self._entries if e.occurred_at >= cutoff]
            removed = len(self._entries) - len(kept)
            self._entries.clear()
            self._entries.extend(kept)
        if removed:
            logger.debug("error_tracker_cleanup", removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = [
    "ErrorRecord",
    "ErrorTracker",
    "truncate_message",
]
