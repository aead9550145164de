from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from recurring_engine.api import RecurringEngine
from recurring_engine.errors import PersistenceError
from recurring_engine.generator import Deadline
from recurring_engine.models import RuleStatus


# ---- Helpers -----------------------------------------------------------------


def _monthly(engine: RecurringEngine, **overrides: Any):
    spec: dict[str, Any] = {
        "owner_id": "u1",
        "amount": "-15.99",
        "frequency": {"type": "MONTHLY", "interval": 1},
        "start_date": "2025-06-01",
        "description": "Streaming",
    }
    spec.update(overrides)
    return engine.create_rule(spec)


def _installment(engine: RecurringEngine, total: str, n: int, start: str, **overrides: Any):
    spec: dict[str, Any] = {
        "owner_id": "u1",
        "amount": total,
        "frequency": {"type": "MONTHLY"},
        "start_date": start,
        "is_installment": True,
        "total_occurrences": n,
        "description": "Loan",
    }
    spec.update(overrides)
    return engine.create_rule(spec)


class _ExpiresAfter:
    """Deadline stand-in that reports expiry after ``n`` checks."""

    def __init__(self, n: int) -> None:
        self.checks = 0
        self.n = n

    def expired(self) -> bool:
        self.checks += 1
        return self.checks > self.n


# ---- Scenarios ---------------------------------------------------------------


def test_monthly_subscription_catch_up_in_one_pass(engine: RecurringEngine):
    rule = _monthly(engine)

    created = engine.generate_due(rule.id, date(2025, 9, 1))

    assert [o.due_date for o in created] == [
        date(2025, 6, 1),
        date(2025, 7, 1),
        date(2025, 8, 1),
        date(2025, 9, 1),
    ]
    assert [o.sequence_index for o in created] == [1, 2, 3, 4]
    assert all(o.amount == Decimal("-15.99") for o in created)
    assert all(o.description == "Streaming" for o in created)

    after = engine.get_rule(rule.id)
    assert after.next_due_date == date(2025, 10, 1)
    assert after.occurrences_generated == 4
    assert after.status is RuleStatus.ACTIVE
    assert after.last_processed_at is not None


def test_installment_loan_completes_after_last_installment(engine: RecurringEngine):
    rule = _installment(engine, "-6000.00", 24, "2025-01-15")

    created = engine.generate_due(rule.id, date(2026, 11, 15))
    assert len(created) == 23
    assert all(o.amount == Decimal("-250.00") for o in created)
    assert created[0].description == "Loan (1/24)"

    summary = engine.installment_summary(rule.id)
    assert summary.remaining_balance == Decimal("-250.00")
    assert summary.next_installment_amount == Decimal("-250.00")
    assert summary.remaining_occurrences == 1
    assert summary.next_due_date == date(2026, 12, 15)

    last = engine.generate_due(rule.id, date(2026, 12, 15))
    assert [o.sequence_index for o in last] == [24]
    done = engine.get_rule(rule.id)
    assert done.status is RuleStatus.COMPLETED
    assert not done.is_active
    assert engine.installment_summary(rule.id).remaining_balance == Decimal("0.00")


# ---- Properties --------------------------------------------------------------


def test_generate_due_is_idempotent(engine: RecurringEngine):
    rule = _monthly(engine)

    first = engine.generate_due(rule.id, date(2025, 9, 1))
    state_after_first = engine.get_rule(rule.id)
    second = engine.generate_due(rule.id, date(2025, 9, 1))
    state_after_second = engine.get_rule(rule.id)

    assert len(first) == 4
    assert second == []
    assert state_after_second == state_after_first
    assert len(engine.list_occurrences(rule.id)) == 4


def test_stale_rule_copy_continues_from_persisted_cursor(engine: RecurringEngine):
    rule = _monthly(engine)
    engine.generator.generate_due(rule, date(2025, 7, 1))

    # Same stale object again: nothing is regenerated.
    assert engine.generator.generate_due(rule, date(2025, 7, 1)) == []
    assert [o.sequence_index for o in engine.list_occurrences(rule.id)] == [1, 2]


def test_installment_amounts_conserve_total(engine: RecurringEngine):
    rule = _installment(engine, "100.00", 3, "2025-01-10")

    created = engine.generate_due(rule.id, date(2030, 1, 1))

    assert [o.amount for o in created] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert sum(o.amount for o in created) == Decimal("100.00")
    assert [o.description for o in created] == ["Loan (1/3)", "Loan (2/3)", "Loan (3/3)"]


def test_natural_completion_never_produces_extra_occurrence(engine: RecurringEngine):
    rule = _installment(engine, "90.00", 3, "2025-01-10")
    engine.generate_due(rule.id, date(2025, 3, 10))

    done = engine.get_rule(rule.id)
    assert done.status is RuleStatus.COMPLETED
    assert done.occurrences_generated == 3

    assert engine.generator.generate_due(done, date(2099, 1, 1)) == []
    assert len(engine.list_occurrences(rule.id)) == 3



def test_full_plan_left_active_is_completed_without_new_occurrences(engine: RecurringEngine):
    rule = _installment(engine, "90.00", 3, "2025-01-10")
    engine.generate_due(rule.id, date(2025, 3, 10))
    stored = engine.repository.get_rule(rule.id)
    engine.repository.save_rule(replace(stored, status=RuleStatus.ACTIVE))

    assert engine.generate_due(rule.id, date(2025, 6, 1)) == []

    after = engine.get_rule(rule.id)
    assert after.status is RuleStatus.COMPLETED
    assert after.occurrences_generated == 3
    assert engine.run_catch_up(date(2030, 1, 1)).processed == 0


def test_cursor_is_monotonic(engine: RecurringEngine):
    rule = _monthly(engine, frequency={"type": "WEEKLY", "interval": 2})
    previous = engine.get_rule(rule.id)
    for as_of in (date(2025, 6, 1), date(2025, 7, 1), date(2025, 9, 30)):
        engine.generate_due(rule.id, as_of)
        current = engine.get_rule(rule.id)
        assert current.next_due_date > previous.next_due_date
        assert current.occurrences_generated > previous.occurrences_generated
        previous = current


def test_end_of_month_rule_clamps(engine: RecurringEngine):
    rule = _monthly(engine, start_date="2025-01-31")
    assert rule.frequency.anchor_day == 31

    created = engine.generate_due(rule.id, date(2025, 4, 30))
    assert [o.due_date for o in created] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]
    assert engine.get_rule(rule.id).next_due_date == date(2025, 5, 31)


def test_nothing_due_before_start(engine: RecurringEngine):
    rule = _monthly(engine)
    assert engine.generate_due(rule.id, date(2025, 5, 31)) == []
    assert engine.get_rule(rule.id).version == rule.version


def test_open_rule_with_end_date_completes(engine: RecurringEngine):
    rule = _monthly(engine, start_date="2025-01-01", end_date="2025-03-01")

    created = engine.generate_due(rule.id, date(2025, 12, 31))

    assert [o.due_date for o in created] == [date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)]
    assert engine.get_rule(rule.id).status is RuleStatus.COMPLETED


def test_paused_rule_generates_nothing(engine: RecurringEngine):
    rule = _monthly(engine)
    engine.pause_rule(rule.id)

    assert engine.generate_due(rule.id, date(2025, 9, 1)) == []
    # A stale active copy is re-checked against the stored state.
    assert engine.generator.generate_due(rule, date(2025, 9, 1)) == []
    assert engine.list_occurrences(rule.id) == []


# ---- Deadlines and failures --------------------------------------------------


def test_deadline_stops_before_next_iteration_and_saves_progress(engine: RecurringEngine):
    rule = _monthly(engine)

    created = engine.generate_due(rule.id, date(2025, 12, 1), deadline=_ExpiresAfter(2))

    assert len(created) == 2
    after = engine.get_rule(rule.id)
    assert after.occurrences_generated == 2
    assert after.next_due_date == date(2025, 8, 1)

    # The next call resumes from the saved cursor.
    rest = engine.generate_due(rule.id, date(2025, 12, 1))
    assert [o.sequence_index for o in rest] == [3, 4, 5, 6, 7]


def test_expired_deadline_creates_nothing(engine: RecurringEngine):
    rule = _monthly(engine)
    assert engine.generate_due(rule.id, date(2025, 9, 1), deadline=Deadline(at=0.0)) == []
    assert engine.get_rule(rule.id).occurrences_generated == 0


def test_failed_cursor_write_rolls_back_occurrences(
    engine: RecurringEngine, monkeypatch: pytest.MonkeyPatch
):
    rule = _monthly(engine)
    repo = engine.repository

    original = repo.save_rule
    failing = {"on": True}

    def _flaky(r):
        if failing["on"]:
            raise PersistenceError("disk full")
        return original(r)

    monkeypatch.setattr(repo, "save_rule", _flaky)
    with pytest.raises(PersistenceError):
        engine.generate_due(rule.id, date(2025, 9, 1))
    failing["on"] = False

    assert engine.list_occurrences(rule.id) == []
    assert engine.get_rule(rule.id).occurrences_generated == 0

    # Retrying after the failure generates everything exactly once.
    assert len(engine.generate_due(rule.id, date(2025, 9, 1))) == 4


def test_concurrent_generation_for_same_rule_does_not_duplicate(engine: RecurringEngine):
    rule = _monthly(engine, frequency={"type": "DAILY"})

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(lambda _: engine.generator.generate_due(rule, date(2025, 6, 30)), range(8))
        )

    assert sum(len(r) for r in results) == 30
    occurrences = engine.list_occurrences(rule.id)
    assert [o.sequence_index for o in occurrences] == list(range(1, 31))
    assert engine.get_rule(rule.id).next_due_date == date(2025, 7, 1)
