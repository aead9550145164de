"""Rule lifecycle: create, update, delete, pause/resume and read models.

State machine::

    ACTIVE  <->  PAUSED
      |            |
      v            v
    COMPLETED    DELETED   (DELETED is reachable from every state)

Every mutation validates fully before the first write and runs inside one
``repository.atomic()`` block under the rule's lock, so a rejected or failed
operation leaves the stored rule untouched.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from itertools import islice
from typing import Any

from .amortization import amount_paid, quantize, remaining_balance
from .calendar_calc import iter_due_dates, next_due_date, validate_frequency
from .errors import InvalidInstallmentPlan, InvalidStateError, NotFoundError, ValidationError
from .generator import occurrence_amount, occurrence_label
from .locks import KeyedLocks
from .logging_setup import get_logger
from .models import (
    Frequency,
    FrequencySpec,
    FrequencyType,
    InstallmentSummary,
    Occurrence,
    RecurrenceRule,
    RuleKind,
    RuleSpec,
    RuleStatus,
    RuleUpdate,
    parse_rule_spec,
    parse_rule_update,
)
from .repository import RuleRepository

logger = get_logger("recurring_engine.lifecycle")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _frequency(spec: FrequencySpec, start_date: date) -> Frequency:
    freq = validate_frequency(spec.to_frequency())
    if freq.type in (FrequencyType.MONTHLY, FrequencyType.YEARLY) and freq.anchor_day is None:
        freq = replace(freq, anchor_day=start_date.day)
    return freq


def _signed_amount(amount: Decimal, kind: RuleKind | None, currency: str) -> Decimal:
    if amount.is_nan() or amount.is_infinite():
        raise ValidationError("amount must be a finite number")
    if amount == 0:
        raise ValidationError("amount must be non-zero")
    if quantize(amount, currency) != amount:
        raise ValidationError(f"amount {amount} has more decimals than {currency} allows")
    if kind is RuleKind.INCOME:
        amount = abs(amount)
    elif kind is RuleKind.EXPENSE:
        amount = -abs(amount)
    return quantize(amount, currency)


def _check_installment(is_installment: bool, total_occurrences: int | None) -> None:
    if is_installment:
        if total_occurrences is None:
            raise ValidationError("total_occurrences is required for installment rules")
        if total_occurrences <= 0:
            raise InvalidInstallmentPlan(
                f"total_occurrences must be positive, got {total_occurrences}"
            )
    elif total_occurrences is not None:
        raise ValidationError("total_occurrences is only allowed on installment rules")


def _check_dates(start_date: date, end_date: date | None) -> None:
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date must not be before start_date")


def _can_continue(rule: RecurrenceRule) -> bool:
    if rule.total_occurrences is not None and rule.occurrences_generated >= rule.total_occurrences:
        return False
    return rule.end_date is None or rule.next_due_date <= rule.end_date


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RuleLifecycleManager:
    def __init__(
        self,
        repository: RuleRepository,
        locks: KeyedLocks | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        default_currency: str = "EUR",
    ) -> None:
        self._repo = repository
        self._locks = locks or KeyedLocks()
        self._clock = clock
        self._default_currency = default_currency

    def _today(self, today: date | None) -> date:
        return today if today is not None else self._clock().date()

    def _load(self, rule_id: str, *, for_update: bool = False) -> RecurrenceRule:
        rule = self._repo.get_rule(rule_id, for_update=for_update)
        if rule is None or rule.is_deleted:
            raise NotFoundError(rule_id)
        return rule

    # ---- create ----

    def create(self, spec: RuleSpec | Mapping[str, Any]) -> RecurrenceRule:
        spec = parse_rule_spec(spec)
        currency = spec.currency or self._default_currency

        frequency = _frequency(spec.frequency, spec.start_date)
        amount = _signed_amount(spec.amount, spec.kind, currency)
        _check_installment(spec.is_installment, spec.total_occurrences)
        _check_dates(spec.start_date, spec.end_date)

        rule = RecurrenceRule(
            id=str(uuid.uuid4()),
            owner_id=spec.owner_id,
            amount=amount,
            currency=currency,
            frequency=frequency,
            start_date=spec.start_date,
            end_date=spec.end_date,
            next_due_date=spec.start_date,
            occurrences_generated=0,
            is_installment=spec.is_installment,
            total_occurrences=spec.total_occurrences,
            category=spec.category,
            account=spec.account,
            description=spec.description,
            notes=spec.notes,
            status=RuleStatus.ACTIVE,
        )
        with self._repo.atomic():
            saved = self._repo.save_rule(rule)
        logger.info(
            "Created rule %s for owner %s (%s every %d, installment=%s)",
            saved.id,
            saved.owner_id,
            saved.frequency.type,
            saved.frequency.interval,
            saved.is_installment,
        )
        return saved

    # ---- update ----

    def update(
        self,
        rule_id: str,
        changes: RuleUpdate | Mapping[str, Any],
        *,
        delete_future_transactions: bool = False,
        today: date | None = None,
    ) -> RecurrenceRule:
        """Apply a partial update.

        With ``delete_future_transactions`` the occurrences dated after
        ``today`` are removed and the cursor restarts from the last remaining
        occurrence under the new schedule. Without it, already generated
        occurrences stay as they are.

        Changing the total or the count of an installment plan keeps the
        installments generated so far and spreads the rest of the total over
        the remaining ones, so a finished plan still sums to its total.
        """

        provided = parse_rule_update(changes).provided()
        today = self._today(today)

        with self._locks.hold(rule_id), self._repo.atomic():
            current = self._load(rule_id, for_update=True)
            updated = self._merge(current, provided)

            schedule_changed = (
                updated.frequency != current.frequency or updated.start_date != current.start_date
            )
            if delete_future_transactions:
                removed = self._repo.delete_future_occurrences(rule_id, today)
                latest = self._repo.latest_occurrence(rule_id)
                updated = replace(
                    updated,
                    occurrences_generated=latest.sequence_index if latest else 0,
                    next_due_date=self._cursor_after(updated, latest),
                )
                logger.info("Rule %s: removed %d future occurrence(s)", rule_id, removed)
            elif schedule_changed:
                latest = self._repo.latest_occurrence(rule_id)
                updated = replace(updated, next_due_date=self._cursor_after(updated, latest))

            plan_changed = (
                updated.is_installment != current.is_installment
                or updated.amount != current.amount
                or updated.total_occurrences != current.total_occurrences
            )
            if plan_changed or updated.occurrences_generated < current.settled_occurrences:
                updated = self._settle(
                    updated, amount_given="amount" in provided or "kind" in provided
                )

            if updated.status is RuleStatus.COMPLETED and _can_continue(updated):
                updated = replace(updated, status=RuleStatus.ACTIVE)
            elif updated.status is RuleStatus.ACTIVE and not _can_continue(updated):
                updated = replace(updated, status=RuleStatus.COMPLETED)

            saved = self._repo.save_rule(updated)

        logger.info(
            "Updated rule %s (fields=%s, delete_future=%s, status=%s)",
            rule_id,
            sorted(provided),
            delete_future_transactions,
            saved.status,
        )
        return saved

    def _merge(self, current: RecurrenceRule, provided: dict[str, Any]) -> RecurrenceRule:
        for name in ("amount", "frequency", "start_date", "is_installment"):
            if name in provided and provided[name] is None:
                raise ValidationError(f"{name} cannot be cleared")

        start_date = provided.get("start_date", current.start_date)
        end_date = provided.get("end_date", current.end_date)
        _check_dates(start_date, end_date)

        if "frequency" in provided:
            frequency = _frequency(provided["frequency"], start_date)
        else:
            frequency = current.frequency

        amount = current.amount
        if "amount" in provided or "kind" in provided:
            amount = _signed_amount(
                provided.get("amount", current.amount), provided.get("kind"), current.currency
            )

        is_installment = provided.get("is_installment", current.is_installment)
        if "total_occurrences" in provided:
            total = provided["total_occurrences"]
        else:
            total = current.total_occurrences if is_installment else None
        _check_installment(is_installment, total)
        if total is not None and total < current.occurrences_generated:
            raise InvalidInstallmentPlan(
                f"cannot reduce total_occurrences to {total}: "
                f"{current.occurrences_generated} already generated"
            )

        description = provided.get("description", current.description)
        return replace(
            current,
            amount=amount,
            frequency=frequency,
            start_date=start_date,
            end_date=end_date,
            is_installment=is_installment,
            total_occurrences=total,
            category=provided.get("category", current.category),
            account=provided.get("account", current.account),
            description=description or "",
            notes=provided.get("notes", current.notes),
        )

    def _settle(self, rule: RecurrenceRule, *, amount_given: bool) -> RecurrenceRule:
        """Fix the installments generated so far and amortize the rest of the plan.

        A plan left with no installments to go is closed at what was generated,
        unless the caller asked for a different total.
        """

        generated = rule.occurrences_generated
        if not rule.is_installment or generated == 0:
            return replace(rule, settled_amount=Decimal(0), settled_occurrences=0)

        paid = quantize(
            sum(
                (
                    o.amount
                    for o in self._repo.list_occurrences(rule.id)
                    if o.sequence_index <= generated
                ),
                Decimal(0),
            ),
            rule.currency,
        )
        remaining = rule.total_occurrences - generated
        if remaining == 0:
            if amount_given and rule.amount != paid:
                raise InvalidInstallmentPlan(
                    f"all {generated} installment(s) are generated ({paid}); "
                    f"the total cannot become {rule.amount}"
                )
            return replace(rule, amount=paid, settled_amount=paid, settled_occurrences=generated)

        balance = rule.amount - paid
        if balance == 0 or (balance > 0) != (rule.amount > 0):
            raise InvalidInstallmentPlan(
                f"{generated} installment(s) totalling {paid} already generated; "
                f"a total of {rule.amount} leaves nothing for the remaining {remaining}"
            )
        return replace(rule, settled_amount=paid, settled_occurrences=generated)

    @staticmethod
    def _cursor_after(rule: RecurrenceRule, latest: Occurrence | None) -> date:
        if latest is None:
            return rule.start_date
        return max(next_due_date(rule.frequency, latest.due_date), rule.start_date)

    # ---- delete / pause / resume ----

    def delete(
        self,
        rule_id: str,
        *,
        delete_future_transactions: bool = False,
        today: date | None = None,
    ) -> None:
        """Soft-delete the rule. Past occurrences are always kept."""

        today = self._today(today)
        with self._locks.hold(rule_id), self._repo.atomic():
            current = self._load(rule_id, for_update=True)
            removed = 0
            if delete_future_transactions:
                removed = self._repo.delete_future_occurrences(rule_id, today)
            self._repo.save_rule(
                replace(current, status=RuleStatus.DELETED, deleted_at=self._clock())
            )
        logger.info("Deleted rule %s (removed %d future occurrence(s))", rule_id, removed)

    def pause(self, rule_id: str) -> RecurrenceRule:
        return self._set_status(rule_id, RuleStatus.PAUSED)

    def resume(self, rule_id: str) -> RecurrenceRule:
        return self._set_status(rule_id, RuleStatus.ACTIVE)

    def set_active(self, rule_id: str, active: bool) -> RecurrenceRule:
        return self.resume(rule_id) if active else self.pause(rule_id)

    def _set_status(self, rule_id: str, target: RuleStatus) -> RecurrenceRule:
        with self._locks.hold(rule_id), self._repo.atomic():
            current = self._load(rule_id, for_update=True)
            if current.status is target:
                return current
            if current.status is RuleStatus.COMPLETED:
                raise InvalidStateError(f"rule {rule_id} is completed and cannot change to {target}")
            status = target
            if target is RuleStatus.ACTIVE and not _can_continue(current):
                status = RuleStatus.COMPLETED
            saved = self._repo.save_rule(replace(current, status=status))
        logger.info("Rule %s is now %s", rule_id, saved.status)
        return saved

    # ---- read side ----

    def get(self, rule_id: str) -> RecurrenceRule:
        return self._load(rule_id)

    def list_rules(
        self,
        owner_id: str,
        *,
        is_installment: bool | None = None,
        include_deleted: bool = False,
    ) -> list[RecurrenceRule]:
        return self._repo.list_rules(
            owner_id, is_installment=is_installment, include_deleted=include_deleted
        )

    def preview(self, rule_id: str, *, limit: int = 12) -> list[Occurrence]:
        """Occurrences the rule would produce next, without persisting anything."""

        rule = self._load(rule_id)
        if rule.status is RuleStatus.COMPLETED or limit <= 0:
            return []
        if rule.remaining_occurrences is not None:
            limit = min(limit, rule.remaining_occurrences)
        dates = iter_due_dates(rule.frequency, rule.next_due_date, until=rule.end_date)
        return [
            Occurrence(
                rule_id=rule.id,
                sequence_index=rule.occurrences_generated + offset,
                owner_id=rule.owner_id,
                amount=occurrence_amount(rule, rule.occurrences_generated + offset),
                currency=rule.currency,
                due_date=due,
                description=occurrence_label(rule, rule.occurrences_generated + offset),
                category=rule.category,
                account=rule.account,
            )
            for offset, due in enumerate(islice(dates, limit), start=1)
        ]

    def installment_summary(self, rule_id: str) -> InstallmentSummary:
        rule = self._load(rule_id)
        if not rule.is_installment or rule.total_occurrences is None:
            raise InvalidStateError(f"rule {rule_id} is not an installment plan")

        n = rule.total_occurrences
        generated = rule.occurrences_generated
        finished = generated >= n
        settled = {
            "settled_amount": rule.settled_amount,
            "settled_count": rule.settled_occurrences,
        }
        return InstallmentSummary(
            rule_id=rule.id,
            currency=rule.currency,
            total_amount=rule.amount,
            total_occurrences=n,
            occurrences_generated=generated,
            amount_paid=amount_paid(rule.amount, n, generated, rule.currency, **settled),
            remaining_balance=remaining_balance(
                rule.amount, n, generated, rule.currency, **settled
            ),
            next_installment_amount=(
                None if finished else occurrence_amount(rule, generated + 1)
            ),
            remaining_occurrences=n - generated,
            next_due_date=None if finished else rule.next_due_date,
        )


__all__ = ["RuleLifecycleManager"]
