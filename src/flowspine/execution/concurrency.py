"""Concurrency limiter — how many runs of a flow (or group) may be in progress.

WHY
───
Two runs of the same incremental flow racing over one cursor corrupt the
sink; a handful of flows hammering the same upstream API need a shared
budget. Every run is stamped with a *concurrency key* at claim time and
the claim refuses to push the number of in-progress runs for that key
past its limit.

ARCHITECTURE
────────────
::

    ConcurrencyLimiter
      ├── .key_for(flow)       ─ "group:<group>" or "flow:<name>"
      ├── .limit_for(flow)     ─ group limit, else flow limit (default 1)
      └── .at_capacity(flow, n)─ pre-claim skip check

    Enforcement lives in the repository's atomic claim: the count of
    in-progress runs for the key and the pending → in_progress update
    happen under one lock (in-memory) or in one statement (SQL). The
    limiter only decides *which* key and limit apply.

Example::

    limiter = ConcurrencyLimiter()
    key = limiter.key_for(flow)          # "group:warehouse"
    limit = limiter.limit_for(flow)      # 3
    claimed = repo.claim(run.id, worker_id, key, limit, now, lease_seconds)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import Flow

if TYPE_CHECKING:
    from flowspine.core.config.settings import EngineSettings

GROUP_PREFIX = "group:"
FLOW_PREFIX = "flow:"


class ConcurrencyLimiter:
    """Maps flows to concurrency keys and effective limits.

    Grouped flows share one key and use ``concurrency_group_limit`` (falling
    back to the flow's own ``concurrency_limit``); ungrouped flows are keyed
    by name and limited independently.
    """

    def __init__(self, default_limit: int = 1):
        if default_limit < 1:
            raise ValueError(f"default_limit must be >= 1, got {default_limit}")
        self.default_limit = default_limit

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> ConcurrencyLimiter:
        return cls(default_limit=settings.default_concurrency_limit)

    def key_for(self, flow: Flow) -> str:
        if flow.concurrency_group:
            return f"{GROUP_PREFIX}{flow.concurrency_group}"
        return f"{FLOW_PREFIX}{flow.name}"

    def limit_for(self, flow: Flow) -> int:
        if flow.concurrency_group and flow.concurrency_group_limit is not None:
            return flow.concurrency_group_limit
        return flow.concurrency_limit or self.default_limit

    def at_capacity(self, flow: Flow, in_progress: int) -> bool:
        return in_progress >= self.limit_for(flow)


__all__ = ["ConcurrencyLimiter", "GROUP_PREFIX", "FLOW_PREFIX"]
