from datetime import UTC, datetime, timedelta

import pytest

from recurring_engine.api import RecurringEngine, build_in_memory_engine
from recurring_engine.errors import PersistenceError
from recurring_engine.health import HealthMonitor, HealthStatus
from recurring_engine.scheduler import CATCH_UP_JOB


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 6, 1, 3, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def _check(health, name: str):
    return next(c for c in health.checks if c.name == name)


def test_fresh_engine_is_healthy(engine: RecurringEngine):
    engine.create_rule(
        {
            "owner_id": "u1",
            "amount": "-15.99",
            "frequency": {"type": "MONTHLY"},
            "start_date": "2025-01-01",
        }
    )

    health = engine.health()

    assert health.overall is HealthStatus.HEALTHY
    assert health.ok
    assert [c.name for c in health.checks] == ["database", "job_system"]
    assert _check(health, "database").details == {"recurring_rules": 1}
    assert _check(health, "job_system").details["total_executions"] == 0


def test_catch_up_runs_show_up_in_job_stats(engine: RecurringEngine):
    engine.run_catch_up()
    engine.run_catch_up()

    jobs = _check(engine.health(), "job_system")

    assert jobs.status is HealthStatus.HEALTHY
    assert jobs.details["total_executions"] == 2
    assert jobs.details["successful_executions"] == 2
    assert jobs.details["last_execution"] is not None


def test_long_running_job_degrades_health():
    clock = _Clock()
    engine = build_in_memory_engine(clock=clock)
    engine.jobs.start(CATCH_UP_JOB)

    assert engine.health().overall is HealthStatus.HEALTHY

    clock.now += timedelta(minutes=31)
    health = engine.health()

    assert health.overall is HealthStatus.DEGRADED
    assert health.ok
    jobs = _check(health, "job_system")
    assert jobs.details["long_running_jobs"] == 1
    assert "long-running" in jobs.message


def test_high_failure_rate_degrades_health(engine: RecurringEngine):
    for _ in range(2):
        engine.jobs.fail(engine.jobs.start(CATCH_UP_JOB), "database unavailable")
    engine.jobs.complete(engine.jobs.start(CATCH_UP_JOB))

    jobs = _check(engine.health(), "job_system")

    assert jobs.status is HealthStatus.DEGRADED
    assert jobs.details["failed_executions"] == 2
    assert jobs.details["failure_rate"] == pytest.approx(2 / 3)


def test_database_failure_makes_engine_unhealthy(
    engine: RecurringEngine, monkeypatch: pytest.MonkeyPatch
):
    def _down() -> int:
        raise PersistenceError("connection refused")

    monkeypatch.setattr(engine.repository, "ping", _down)

    health = engine.health()

    assert health.overall is HealthStatus.UNHEALTHY
    assert not health.ok
    database = _check(health, "database")
    assert database.message == "connection refused"
    assert database.response_time_ms is not None


def test_slow_database_degrades_health(engine: RecurringEngine):
    monitor = HealthMonitor(engine.repository, engine.jobs, slow_database_ms=-1.0)

    database = monitor.check_database()

    assert database.status is HealthStatus.DEGRADED
    assert database.message == "Database response time is slow"


def test_health_against_database(sql_engine: RecurringEngine):
    sql_engine.create_rule(
        {
            "owner_id": "u1",
            "amount": "-15.99",
            "frequency": {"type": "WEEKLY"},
            "start_date": "2025-01-01",
        }
    )

    health = sql_engine.health()

    assert health.overall is HealthStatus.HEALTHY
    assert _check(health, "database").details == {"recurring_rules": 1}
