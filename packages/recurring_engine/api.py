"""Public API for the ``recurring_engine`` package.

:class:`RecurringEngine` wires one repository, the shared per-rule locks, the
occurrence generator, the lifecycle manager, the catch-up driver and the
health monitor together and exposes the operations callers need. Use
:func:`build_engine` for the database-backed engine and
:func:`build_in_memory_engine` for tests and embedded use.

DB imports are local to :func:`build_engine` so that in-memory consumers do
not pay for SQLAlchemy at import time.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from .config import EngineSettings, load_settings
from .generator import Deadline, OccurrenceGenerator
from .health import HealthMonitor, SystemHealth
from .jobs import JobTracker
from .lifecycle import RuleLifecycleManager
from .locks import KeyedLocks
from .models import InstallmentSummary, Occurrence, RecurrenceRule, RuleSpec, RuleUpdate
from .repository import InMemoryRuleRepository, RuleRepository
from .scheduler import CatchUpReport, SchedulerDriver


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RecurringEngine:
    def __init__(
        self,
        repository: RuleRepository,
        *,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.repository = repository
        self.locks = KeyedLocks()
        self._clock = clock
        self.generator = OccurrenceGenerator(repository, self.locks, clock=clock)
        self.lifecycle = RuleLifecycleManager(
            repository,
            self.locks,
            clock=clock,
            default_currency=self.settings.default_currency,
        )
        self.jobs = JobTracker(clock=clock)
        self.scheduler = SchedulerDriver(
            repository,
            self.generator,
            max_workers=self.settings.max_workers,
            tracker=self.jobs,
        )
        self.monitor = HealthMonitor(repository, self.jobs, clock=clock)

    def _default_deadline(self, deadline: Deadline | float | None) -> Deadline | None:
        if deadline is None:
            seconds = self.settings.deadline_seconds
            return Deadline.after(seconds) if seconds is not None else None
        if isinstance(deadline, (int, float)):
            return Deadline.after(deadline)
        return deadline

    # ---- lifecycle ----

    def create_rule(self, spec: RuleSpec | Mapping[str, Any]) -> RecurrenceRule:
        return self.lifecycle.create(spec)

    def update_rule(
        self,
        rule_id: str,
        changes: RuleUpdate | Mapping[str, Any],
        *,
        delete_future_transactions: bool = False,
        today: date | None = None,
    ) -> RecurrenceRule:
        return self.lifecycle.update(
            rule_id,
            changes,
            delete_future_transactions=delete_future_transactions,
            today=today,
        )

    def delete_rule(
        self,
        rule_id: str,
        *,
        delete_future_transactions: bool = False,
        today: date | None = None,
    ) -> None:
        self.lifecycle.delete(
            rule_id, delete_future_transactions=delete_future_transactions, today=today
        )

    def pause_rule(self, rule_id: str) -> RecurrenceRule:
        return self.lifecycle.pause(rule_id)

    def resume_rule(self, rule_id: str) -> RecurrenceRule:
        return self.lifecycle.resume(rule_id)

    def set_rule_active(self, rule_id: str, active: bool) -> RecurrenceRule:
        return self.lifecycle.set_active(rule_id, active)

    # ---- reads ----

    def get_rule(self, rule_id: str) -> RecurrenceRule:
        return self.lifecycle.get(rule_id)

    def list_rules(
        self,
        owner_id: str,
        *,
        is_installment: bool | None = None,
        include_deleted: bool = False,
    ) -> list[RecurrenceRule]:
        return self.lifecycle.list_rules(
            owner_id, is_installment=is_installment, include_deleted=include_deleted
        )

    def list_occurrences(self, rule_id: str) -> list[Occurrence]:
        return self.repository.list_occurrences(rule_id)

    def preview_rule(self, rule_id: str, *, limit: int = 12) -> list[Occurrence]:
        return self.lifecycle.preview(rule_id, limit=limit)

    def installment_summary(self, rule_id: str) -> InstallmentSummary:
        return self.lifecycle.installment_summary(rule_id)

    # ---- generation ----

    def generate_due(
        self,
        rule_id: str,
        as_of: date | None = None,
        *,
        deadline: Deadline | float | None = None,
    ) -> list[Occurrence]:
        rule = self.lifecycle.get(rule_id)
        as_of = as_of or self._clock().date()
        return self.generator.generate_due(
            rule, as_of, deadline=self._default_deadline(deadline)
        )

    def run_catch_up(
        self,
        as_of: date | None = None,
        *,
        deadline: Deadline | float | None = None,
    ) -> CatchUpReport:
        as_of = as_of or self._clock().date()
        return self.scheduler.run_catch_up(as_of, deadline=self._default_deadline(deadline))

    # ---- operations ----

    def health(self) -> SystemHealth:
        return self.monitor.check()


def build_engine(
    database_url: str | None = None,
    *,
    settings: EngineSettings | None = None,
) -> RecurringEngine:
    """Engine backed by ``rt_rules`` / ``rt_occurrences`` at ``database_url``.

    Falls back to ``settings.database_url`` and then ``DATABASE_URL``.
    """

    from .persistence import SqlRuleRepository

    settings = settings or load_settings()
    url = database_url or settings.database_url
    if not url:
        raise RuntimeError("DATABASE_URL is not set; pass database_url or configure the env")
    return RecurringEngine(SqlRuleRepository(url), settings=settings)


def build_in_memory_engine(
    *,
    settings: EngineSettings | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> RecurringEngine:
    return RecurringEngine(InMemoryRuleRepository(), settings=settings, clock=clock)


__all__ = ["RecurringEngine", "build_engine", "build_in_memory_engine"]
