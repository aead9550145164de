"""Catch-up driver: generate due occurrences for every due rule.

Rules are independent, so they are processed concurrently on a bounded
thread pool. A failing rule is recorded in the report and logged; it never
stops the others. Its persisted cursor is unchanged, so the next run retries
it from the same position.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from .generator import Deadline, GenerationResult, OccurrenceGenerator
from .jobs import JobTracker
from .logging_setup import get_logger
from .models import Occurrence
from .pmap import p_map_settled
from .repository import RuleRepository

logger = get_logger("recurring_engine.scheduler")

CATCH_UP_JOB = "recurring-catch-up"


@dataclass(slots=True)
class CatchUpReport:
    as_of: date
    processed: int = 0
    created: dict[str, list[Occurrence]] = field(default_factory=dict)
    failed: dict[str, Exception] = field(default_factory=dict)
    completed_rules: list[str] = field(default_factory=list)
    truncated_rules: list[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(len(v) for v in self.created.values())

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> dict[str, object]:
        return {
            "as_of": self.as_of.isoformat(),
            "processed": self.processed,
            "created": self.created_count,
            "failed": len(self.failed),
            "completed": len(self.completed_rules),
            "truncated": len(self.truncated_rules),
        }


class SchedulerDriver:
    def __init__(
        self,
        repository: RuleRepository,
        generator: OccurrenceGenerator,
        *,
        max_workers: int = 4,
        tracker: JobTracker | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._repo = repository
        self._generator = generator
        self._max_workers = max_workers
        self.tracker = tracker or JobTracker()

    def run_catch_up(self, as_of: date, *, deadline: Deadline | None = None) -> CatchUpReport:
        """Generate everything due on or before ``as_of`` for all active rules."""

        report = CatchUpReport(as_of=as_of)
        with self.tracker.track(CATCH_UP_JOB) as job_id:
            due = self._repo.list_due_rules(as_of)
            logger.info("Catch-up as of %s: %d due rule(s)", as_of, len(due))

            outcomes = p_map_settled(
                due,
                lambda rule: self._generator.run(rule, as_of, deadline=deadline),
                concurrency=self._max_workers,
            )
            for outcome in outcomes:
                rule_id = outcome.item.id
                if not outcome.ok:
                    report.failed[rule_id] = outcome.error
                    logger.error(
                        "Catch-up failed for rule %s: %s",
                        rule_id,
                        outcome.error,
                        exc_info=outcome.error,
                    )
                    continue
                result: GenerationResult = outcome.value
                report.processed += 1
                report.created[rule_id] = result.created
                if result.completed:
                    report.completed_rules.append(rule_id)
                if result.truncated:
                    report.truncated_rules.append(rule_id)

            self.tracker.complete(job_id, result=report.summary())

        logger.info(
            "Catch-up as of %s done: processed=%d created=%d failed=%d",
            as_of,
            report.processed,
            report.created_count,
            len(report.failed),
        )
        return report


__all__ = ["CATCH_UP_JOB", "CatchUpReport", "SchedulerDriver"]
