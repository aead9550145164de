"""Health checks for a running engine.

Two checks feed one overall verdict:

- ``database``: a round-trip through the repository (``SELECT 1`` for the SQL
  store) plus the stored rule count. Unhealthy when it fails, degraded when
  it is slow.
- ``job_system``: catch-up run statistics from the :class:`JobTracker`.
  Degraded when a run has been going for too long or more than half of the
  recorded runs failed.

The overall status is the worst of the checks.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from .errors import RecurringEngineError
from .jobs import JobTracker
from .logging_setup import get_logger
from .repository import RuleRepository
from .scheduler import CATCH_UP_JOB

logger = get_logger("recurring_engine.health")

SLOW_DATABASE_MS = 5000.0
LONG_RUNNING_JOB = timedelta(minutes=30)
MAX_FAILURE_RATE = 0.5


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass(frozen=True, slots=True)
class HealthCheck:
    name: str
    status: HealthStatus
    checked_at: datetime
    message: str | None = None
    response_time_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SystemHealth:
    overall: HealthStatus
    checks: list[HealthCheck]
    uptime_seconds: float
    timestamp: datetime
    version: str

    @property
    def ok(self) -> bool:
        return self.overall is not HealthStatus.UNHEALTHY


def _package_version() -> str:
    try:
        return version("recurring-engine")
    except PackageNotFoundError:
        return "0.0.0+local"


class HealthMonitor:
    def __init__(
        self,
        repository: RuleRepository,
        tracker: JobTracker,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        slow_database_ms: float = SLOW_DATABASE_MS,
        long_running_job: timedelta = LONG_RUNNING_JOB,
    ) -> None:
        self._repo = repository
        self._tracker = tracker
        self._clock = clock
        self._slow_database_ms = slow_database_ms
        self._long_running_job = long_running_job
        self._started = time.monotonic()
        self._version = _package_version()

    def check_database(self) -> HealthCheck:
        t0 = time.perf_counter()
        try:
            rules = self._repo.ping()
        except RecurringEngineError as exc:
            logger.error("Database health check failed: %s", exc)
            return HealthCheck(
                name="database",
                status=HealthStatus.UNHEALTHY,
                checked_at=self._clock(),
                message=str(exc),
                response_time_ms=(time.perf_counter() - t0) * 1000.0,
            )

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        slow = elapsed_ms > self._slow_database_ms
        return HealthCheck(
            name="database",
            status=HealthStatus.DEGRADED if slow else HealthStatus.HEALTHY,
            checked_at=self._clock(),
            message="Database response time is slow" if slow else None,
            response_time_ms=elapsed_ms,
            details={"recurring_rules": rules},
        )

    def check_jobs(self) -> HealthCheck:
        now = self._clock()
        stats = self._tracker.stats(CATCH_UP_JOB)
        running = self._tracker.running()
        stuck = [e for e in running if now - e.started_at > self._long_running_job]
        failure_rate = stats.failed / stats.total if stats.total else 0.0

        status, message = HealthStatus.HEALTHY, None
        if stuck:
            status, message = HealthStatus.DEGRADED, f"{len(stuck)} long-running job(s) detected"
        elif failure_rate > MAX_FAILURE_RATE:
            status, message = HealthStatus.DEGRADED, f"High failure rate: {failure_rate:.1%}"

        return HealthCheck(
            name="job_system",
            status=status,
            checked_at=now,
            message=message,
            details={
                "total_executions": stats.total,
                "successful_executions": stats.succeeded,
                "failed_executions": stats.failed,
                "failure_rate": failure_rate,
                "average_duration_ms": stats.average_duration_ms,
                "running_jobs": len(running),
                "long_running_jobs": len(stuck),
                "last_execution": stats.last.started_at if stats.last else None,
            },
        )

    def check(self) -> SystemHealth:
        checks = [self.check_database(), self.check_jobs()]
        overall = max((c.status for c in checks), key=_SEVERITY.__getitem__)
        health = SystemHealth(
            overall=overall,
            checks=checks,
            uptime_seconds=time.monotonic() - self._started,
            timestamp=self._clock(),
            version=self._version,
        )
        if overall is not HealthStatus.HEALTHY:
            logger.warning(
                "System health is %s: %s",
                overall,
                "; ".join(f"{c.name}: {c.message}" for c in checks if c.message),
            )
        return health


__all__ = ["HealthCheck", "HealthMonitor", "HealthStatus", "SystemHealth"]
