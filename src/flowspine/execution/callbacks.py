"""After-complete / after-failure callbacks for flows.

Callbacks let one flow react to another's outcome (chain a downstream
flow, page someone, update a metric) without touching the executor.
They run after the run's terminal transition has been persisted and in
an isolated failure domain: a callback that raises is logged and
skipped, it never changes the run's outcome or stops other callbacks.

Example::

    callbacks = CallbackRegistry()

    @callbacks.after_complete(flow="orders_export")
    def chain_enrichment(run):
        scheduler.enqueue_later("orders_enrichment", wait_seconds=60)

    callbacks.after_failure(alert_ops, unless=lambda run: run.attempt < 3)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowspine.core.logging import get_logger

from .models import Flow, Run

logger = get_logger(__name__)

Condition = Callable[[Run], Any]


@dataclass(frozen=True)
class Callback:
    """A registered callback and the conditions gating it."""

    func: Callable[..., Any]
    flow: str | None = None
    if_: Condition | None = None
    unless: Condition | None = None

    @property
    def name(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))

    def applies_to(self, flow: Flow) -> bool:
        return self.flow is None or self.flow == flow.name

    def should_run(self, run: Run) -> bool:
        if self.if_ is not None and not self.if_(run):
            return False
        if self.unless is not None and self.unless(run):
            return False
        return True


class CallbackRegistry:
    """Holds after-complete and after-failure callbacks.

    A callback registered with ``flow=None`` runs for every flow.
    ``after_complete`` callbacks are called as ``func(run)``;
    ``after_failure`` callbacks as ``func(run, error)``.
    """

    def __init__(self) -> None:
        self._complete: list[Callback] = []
        self._failure: list[Callback] = []
        self._lock = threading.Lock()

    def _add(self, target: list[Callback], func, flow, if_, unless):
        def register(f: Callable[..., Any]) -> Callable[..., Any]:
            with self._lock:
                target.append(Callback(func=f, flow=flow, if_=if_, unless=unless))
            return f

        if func is None:
            return register
        return register(func)

    def after_complete(
        self,
        func: Callable[[Run], Any] | None = None,
        *,
        flow: str | None = None,
        if_: Condition | None = None,
        unless: Condition | None = None,
    ):
        """Register ``func`` (or decorate) to run after a successful run."""
        return self._add(self._complete, func, flow, if_, unless)

    def after_failure(
        self,
        func: Callable[[Run, BaseException], Any] | None = None,
        *,
        flow: str | None = None,
        if_: Condition | None = None,
        unless: Condition | None = None,
    ):
        """Register ``func`` (or decorate) to run after a terminal failure."""
        return self._add(self._failure, func, flow, if_, unless)

    def run_complete(self, flow: Flow, run: Run) -> list[Any]:
        return self._run(self._complete, flow, run)

    def run_failure(self, flow: Flow, run: Run, error: BaseException) -> list[Any]:
        return self._run(self._failure, flow, run, error)

    def _run(self, callbacks: list[Callback], flow: Flow, run: Run, *args: Any) -> list[Any]:
        with self._lock:
            selected = [cb for cb in callbacks if cb.applies_to(flow)]

        results = []
        for cb in selected:
            try:
                if not cb.should_run(run):
                    continue
                result = cb.func(run, *args)
            except Exception:
                logger.exception(
                    "callback_failed",
                    callback=cb.name,
                    flow=flow.name,
                    run_id=run.id,
                )
                continue
            if result is not None:
                results.append(result)
        return results

    def clear(self) -> None:
        with self._lock:
            self._complete.clear()
            self._failure.clear()

    def __len__(self) -> int:
        return len(self._complete) + len(self._failure)


__all__ = ["Callback", "CallbackRegistry"]
