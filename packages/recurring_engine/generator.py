"""Occurrence generation: turn due rule positions into persisted transactions.

``generate_due`` is a catch-up loop. Every position between the rule's cursor
and ``as_of`` is materialized in order, so a scheduler that was down for N
periods produces the N missed occurrences in one pass with contiguous
``sequence_index`` values.

Idempotency rests on two things: the ``(rule_id, sequence_index)`` key makes
replays insert nothing, and the whole loop (occurrence inserts plus the single
cursor write) runs in one ``repository.atomic()`` block under the per-rule
lock, so the persisted cursor always matches the persisted occurrences.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal

from .amortization import installment_amount_at
from .calendar_calc import next_due_date
from .errors import NotFoundError
from .locks import KeyedLocks
from .logging_setup import get_logger
from .models import Occurrence, RecurrenceRule, RuleStatus
from .repository import RuleRepository

logger = get_logger("recurring_engine.generator")


@dataclass(frozen=True, slots=True)
class Deadline:
    """Monotonic-clock deadline checked before each loop iteration."""

    at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def expired(self) -> bool:
        return time.monotonic() >= self.at

    def remaining(self) -> float:
        return max(0.0, self.at - time.monotonic())


@dataclass(frozen=True, slots=True)
class GenerationResult:
    rule: RecurrenceRule
    created: list[Occurrence] = field(default_factory=list)
    truncated: bool = False

    @property
    def completed(self) -> bool:
        return self.rule.status is RuleStatus.COMPLETED


def occurrence_label(rule: RecurrenceRule, sequence_index: int) -> str:
    if not rule.is_installment or rule.total_occurrences is None:
        return rule.description
    return f"{rule.description} ({sequence_index}/{rule.total_occurrences})".strip()


def occurrence_amount(rule: RecurrenceRule, sequence_index: int) -> Decimal:
    if rule.is_installment and rule.total_occurrences is not None:
        return installment_amount_at(
            rule.amount,
            rule.total_occurrences,
            sequence_index,
            rule.currency,
            settled_amount=rule.settled_amount,
            settled_count=rule.settled_occurrences,
        )
    return rule.amount


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OccurrenceGenerator:
    def __init__(
        self,
        repository: RuleRepository,
        locks: KeyedLocks | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._locks = locks or KeyedLocks()
        self._clock = clock

    def generate_due(
        self,
        rule: RecurrenceRule,
        as_of: date,
        *,
        deadline: Deadline | None = None,
    ) -> list[Occurrence]:
        """Create every occurrence of ``rule`` due on or before ``as_of``.

        Returns the occurrences created by this call; positions that already
        existed are skipped but still advance the cursor.
        """

        return self.run(rule, as_of, deadline=deadline).created

    def run(
        self,
        rule: RecurrenceRule,
        as_of: date,
        *,
        deadline: Deadline | None = None,
    ) -> GenerationResult:
        if not rule.is_active:
            return GenerationResult(rule=rule)

        with self._locks.hold(rule.id), self._repo.atomic():
            # Always continue from the persisted cursor, not the caller's copy.
            current = self._repo.get_rule(rule.id, for_update=True)
            if current is None or current.is_deleted:
                raise NotFoundError(rule.id)
            if not current.is_active:
                return GenerationResult(rule=current)
            return self._advance(current, as_of, deadline)

    def _advance(
        self,
        rule: RecurrenceRule,
        as_of: date,
        deadline: Deadline | None,
    ) -> GenerationResult:
        now = self._clock()
        cursor = rule.next_due_date
        generated = rule.occurrences_generated
        status = rule.status
        created: list[Occurrence] = []
        truncated = False

        while (
            cursor <= as_of
            and (rule.end_date is None or cursor <= rule.end_date)
            and (rule.total_occurrences is None or generated < rule.total_occurrences)
        ):
            if deadline is not None and deadline.expired():
                truncated = True
                break

            seq = generated + 1
            occurrence = Occurrence(
                rule_id=rule.id,
                sequence_index=seq,
                owner_id=rule.owner_id,
                amount=occurrence_amount(rule, seq),
                currency=rule.currency,
                due_date=cursor,
                description=occurrence_label(rule, seq),
                category=rule.category,
                account=rule.account,
                created_at=now,
            )
            if self._repo.save_occurrence(occurrence):
                created.append(occurrence)
                logger.debug("Created occurrence %s #%d due %s", rule.id, seq, cursor)
            else:
                logger.debug("Occurrence %s #%d already exists; skipping", rule.id, seq)

            generated = seq
            cursor = next_due_date(rule.frequency, cursor)

            if rule.total_occurrences is not None and generated >= rule.total_occurrences:
                status = RuleStatus.COMPLETED
                break

        # Also covers plans that were already full when this call started.
        if status is RuleStatus.ACTIVE and (
            (rule.total_occurrences is not None and generated >= rule.total_occurrences)
            or (rule.end_date is not None and cursor > rule.end_date)
        ):
            status = RuleStatus.COMPLETED

        if truncated:
            logger.warning(
                "Deadline reached for rule %s after %d occurrence(s); cursor saved at %s",
                rule.id,
                generated - rule.occurrences_generated,
                cursor,
            )

        if (
            cursor == rule.next_due_date
            and generated == rule.occurrences_generated
            and status is rule.status
        ):
            return GenerationResult(rule=rule, created=created, truncated=truncated)

        saved = self._repo.save_rule(
            replace(
                rule,
                next_due_date=cursor,
                occurrences_generated=generated,
                status=status,
                last_processed_at=now,
            )
        )
        if saved.status is RuleStatus.COMPLETED:
            logger.info(
                "Rule %s completed after %d occurrence(s)", rule.id, saved.occurrences_generated
            )
        return GenerationResult(rule=saved, created=created, truncated=truncated)


__all__ = [
    "Deadline",
    "GenerationResult",
    "OccurrenceGenerator",
    "occurrence_amount",
    "occurrence_label",
]
