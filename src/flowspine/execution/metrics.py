"""Run metrics — success rates, durations, throughput and health from run rows.

Everything here is computed on demand from ``RunRepository.list_runs`` and
``list_flows``; there is no separate counter store to keep in sync. The
results are plain dicts, ready for a status endpoint or a log line.

ARCHITECTURE
────────────
::

    RunMetrics(repository, tracker=None, clock=utcnow)
      ├── .flow_stats(name, period)        ─ one flow: counts, success rate,
      │                                      avg duration, records, throughput
      ├── .system_stats(period)            ─ all flows and runs
      ├── .throughput_series(period, step) ─ successful runs / records per bucket
      └── .health_check()                  ─ repository / flows / stale runs /
                                             error rate → healthy|degraded|critical

Example::

    metrics = RunMetrics(repository, tracker=executor.tracker)
    metrics.flow_stats("orders_sync")["success_rate"]   # 97.5
    metrics.health_check()["status"]                    # "healthy"
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from flowspine.core.logging import get_logger

from .models import Run, RunStatus, utcnow
from .repository import RunRepository
from .tracking import ErrorTracker

logger = get_logger(__name__)

DEFAULT_PERIOD = timedelta(hours=24)
DEFAULT_BUCKET = timedelta(hours=1)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

ERRORS_DEGRADED = 100
ERRORS_CRITICAL = 500


def success_rate(runs: Iterable[Run]) -> float:
    """Percentage of finished (success or failed) runs that succeeded."""
    finished = [r for r in runs if r.status in (RunStatus.SUCCESS, RunStatus.FAILED)]
    if not finished:
        return 0.0
    succeeded = sum(1 for r in finished if r.status == RunStatus.SUCCESS)
    return round(succeeded / len(finished) * 100, 2)


def average_duration(runs: Iterable[Run]) -> float | None:
    durations = [r.duration_seconds for r in runs if r.duration_seconds is not None]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 2)


def total_records(runs: Iterable[Run]) -> int:
    return sum(r.records_processed or 0 for r in runs)


def _latest(values: Iterable[datetime | None]) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class RunMetrics:
    """On-demand statistics over the run history.

    Args:
        repository: Source of flows and runs
        tracker: Error tracker for the 24h error count (optional)
        clock: Time source
    """

    def __init__(
        self,
        repository: RunRepository,
        tracker: ErrorTracker | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.tracker = tracker
        self.clock = clock

    def _runs_since(self, cutoff: datetime, flow_id: str | None = None) -> list[Run]:
        return [r for r in self.repository.list_runs(flow_id=flow_id) if r.created_at > cutoff]

    def flow_stats(self, flow_name: str, period: timedelta = DEFAULT_PERIOD) -> dict[str, Any]:
        """Statistics for one flow's runs created within ``period``.

        An unknown flow name yields zeroed statistics.
        """
        flow = self.repository.get_flow_by_name(flow_name)
        runs = self._runs_since(self.clock() - period, flow.id) if flow else []
        hours = period.total_seconds() / 3600
        records = total_records(runs)
        return {
            "flow_name": flow_name,
            "period_seconds": period.total_seconds(),
            "total_runs": len(runs),
            "completed": sum(1 for r in runs if r.status == RunStatus.SUCCESS),
            "failed": sum(1 for r in runs if r.status == RunStatus.FAILED),
            "in_progress": sum(1 for r in runs if r.status == RunStatus.IN_PROGRESS),
            "success_rate": success_rate(runs),
            "avg_duration": average_duration(runs),
            "total_records": records,
            "throughput_per_hour": round(records / hours, 2) if hours else 0.0,
            "last_run_at": _iso(_latest(r.started_at for r in runs)),
            "last_success_at": _iso(
                _latest(r.ended_at for r in runs if r.status == RunStatus.SUCCESS)
            ),
            "last_failure_at": _iso(
                _latest(r.ended_at for r in runs if r.status == RunStatus.FAILED)
            ),
        }

    def system_stats(self, period: timedelta = DEFAULT_PERIOD) -> dict[str, Any]:
        """Totals across every flow for runs created within ``period``."""
        now = self.clock()
        flows = self.repository.list_flows()
        runs = self._runs_since(now - period)
        by_status = {status: 0 for status in RunStatus}
        for run in runs:
            by_status[run.status] += 1
        stats: dict[str, Any] = {
            "period_seconds": period.total_seconds(),
            "total_flows": len(flows),
            "schedulable_flows": sum(1 for f in flows if f.is_schedulable),
            "total_runs": len(runs),
            "completed_runs": by_status[RunStatus.SUCCESS],
            "failed_runs": by_status[RunStatus.FAILED],
            "in_progress_runs": by_status[RunStatus.IN_PROGRESS],
            "pending_runs": by_status[RunStatus.PENDING],
            "cancelled_runs": by_status[RunStatus.CANCELLED],
            "success_rate": success_rate(runs),
            "avg_duration": average_duration(runs),
            "total_records": total_records(runs),
        }
        if self.tracker is not None:
            stats["errors_24h"] = self.tracker.statistics(now)["total_24h"]
        return stats

    def throughput_series(
        self,
        period: timedelta = DEFAULT_PERIOD,
        bucket: timedelta = DEFAULT_BUCKET,
    ) -> list[dict[str, Any]]:
        """Successful runs and their records, bucketed by ``ended_at``.

        Buckets start at ``now - period`` and are ``bucket`` wide; the last
        one may extend past now.
        """
        if bucket.total_seconds() <= 0:
            raise ValueError(f"bucket must be positive, got {bucket}")
        now = self.clock()
        start = now - period
        finished = [
            r
            for r in self.repository.list_runs(status=RunStatus.SUCCESS)
            if r.ended_at is not None and r.ended_at >= start
        ]

        series = []
        current = start
        while current < now:
            end = current + bucket
            in_bucket = [r for r in finished if current <= r.ended_at < end]
            series.append(
                {
                    "timestamp": current.isoformat(),
                    "completed": len(in_bucket),
                    "records": total_records(in_bucket),
                }
            )
            current = end
        return series

    # === Health ===

    def health_check(self) -> dict[str, Any]:
        """Overall status: healthy if every check is, critical if any is."""
        now = self.clock()
        checks = {
            "repository": self._check_repository(),
            "flows": self._check_flows(),
            "stale_runs": self._check_stale(now),
            "error_rate": self._check_error_rate(now),
        }
        statuses = {check["status"] for check in checks.values()}
        if statuses == {HEALTHY}:
            status = HEALTHY
        elif CRITICAL in statuses:
            status = CRITICAL
        else:
            status = DEGRADED
        if status != HEALTHY:
            logger.warning("health_check_failed", status=status)
        return {"status": status, "timestamp": now.isoformat(), "checks": checks}

    def _check_repository(self) -> dict[str, Any]:
        try:
            self.repository.list_flows()
        except Exception as e:
            logger.exception("health_repository_error")
            return {"status": CRITICAL, "message": str(e)}
        return {"status": HEALTHY, "message": "repository reachable"}

    def _check_flows(self) -> dict[str, Any]:
        try:
            flows = self.repository.list_flows()
        except Exception as e:
            return {"status": CRITICAL, "message": str(e)}
        schedulable = sum(1 for f in flows if f.is_schedulable)
        if flows and not schedulable:
            return {
                "status": DEGRADED,
                "message": "no schedulable flows",
                "total": len(flows),
                "schedulable": 0,
            }
        return {
            "status": HEALTHY,
            "message": f"{schedulable}/{len(flows)} flows schedulable",
            "total": len(flows),
            "schedulable": schedulable,
        }

    def _check_stale(self, now: datetime) -> dict[str, Any]:
        try:
            stale = self.repository.find_stale(now)
        except Exception as e:
            return {"status": CRITICAL, "message": str(e)}
        if stale:
            return {
                "status": DEGRADED,
                "message": f"{len(stale)} runs with an expired lease",
                "stale": len(stale),
            }
        return {"status": HEALTHY, "message": "no expired leases", "stale": 0}

    def _check_error_rate(self, now: datetime) -> dict[str, Any]:
        if self.tracker is None:
            return {"status": HEALTHY, "message": "error tracking not attached"}
        errors = self.tracker.statistics(now)["total_24h"]
        if errors > ERRORS_CRITICAL:
            return {"status": CRITICAL, "message": "critical error rate", "errors_24h": errors}
        if errors > ERRORS_DEGRADED:
            return {"status": DEGRADED, "message": "high error rate", "errors_24h": errors}
        return {"status": HEALTHY, "message": "error rate normal", "errors_24h": errors}


__all__ = [
    "HEALTHY",
    "DEGRADED",
    "CRITICAL",
    "success_rate",
    "average_duration",
    "total_records",
    "RunMetrics",
]
