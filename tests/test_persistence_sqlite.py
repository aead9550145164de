from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from recurring_engine.api import RecurringEngine
from recurring_engine.errors import ConcurrentModificationError, NotFoundError, PersistenceError
from recurring_engine.models import Occurrence, RuleStatus
from recurring_engine.persistence import SqlRuleRepository

from tests.helpers.db import count_rows


def _subscription(engine: RecurringEngine, **overrides):
    spec = {
        "owner_id": "u1",
        "amount": "-15.99",
        "frequency": {"type": "MONTHLY"},
        "start_date": "2025-06-01",
        "description": "Streaming",
        "category": "entertainment",
    }
    spec.update(overrides)
    return engine.create_rule(spec)


def test_rule_round_trips_through_database(sql_engine: RecurringEngine):
    rule = _subscription(sql_engine, end_date="2026-06-01", notes="family plan")

    loaded = sql_engine.get_rule(rule.id)

    assert loaded.id == rule.id
    assert loaded.amount == Decimal("-15.99")
    assert loaded.frequency == rule.frequency
    assert loaded.start_date == date(2025, 6, 1)
    assert loaded.end_date == date(2026, 6, 1)
    assert loaded.next_due_date == date(2025, 6, 1)
    assert loaded.status is RuleStatus.ACTIVE
    assert loaded.notes == "family plan"
    assert loaded.category == "entertainment"
    assert loaded.version == 1
    assert loaded.created_at is not None


def test_generation_persists_occurrences_and_cursor(sql_engine: RecurringEngine, sqlite_url: str):
    rule = _subscription(sql_engine)

    created = sql_engine.generate_due(rule.id, date(2025, 9, 1))

    assert len(created) == 4
    stored = sql_engine.list_occurrences(rule.id)
    assert [o.sequence_index for o in stored] == [1, 2, 3, 4]
    assert [o.amount for o in stored] == [Decimal("-15.99")] * 4
    assert stored[-1].due_date == date(2025, 9, 1)
    assert count_rows(sqlite_url, "rt_occurrences") == 4

    after = sql_engine.get_rule(rule.id)
    assert after.next_due_date == date(2025, 10, 1)
    assert after.occurrences_generated == 4
    assert after.version == 2

    # Replay writes nothing.
    assert sql_engine.generate_due(rule.id, date(2025, 9, 1)) == []
    assert sql_engine.get_rule(rule.id).version == 2
    assert count_rows(sqlite_url, "rt_occurrences") == 4


def test_installment_plan_completes_in_database(sql_engine: RecurringEngine):
    rule = sql_engine.create_rule(
        {
            "owner_id": "u1",
            "amount": "100.00",
            "frequency": {"type": "MONTHLY"},
            "start_date": "2025-01-10",
            "is_installment": True,
            "total_occurrences": 3,
            "description": "Phone",
        }
    )

    created = sql_engine.generate_due(rule.id, date(2025, 12, 31))

    assert [o.amount for o in created] == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
    assert [o.description for o in sql_engine.list_occurrences(rule.id)] == [
        "Phone (1/3)",
        "Phone (2/3)",
        "Phone (3/3)",
    ]
    assert sql_engine.get_rule(rule.id).status is RuleStatus.COMPLETED
    assert sql_engine.installment_summary(rule.id).remaining_balance == Decimal("0.00")


def test_stale_rule_write_is_rejected(sql_engine: RecurringEngine):
    repo = sql_engine.repository
    rule = _subscription(sql_engine)

    repo.save_rule(replace(rule, notes="first writer"))

    with pytest.raises(ConcurrentModificationError) as exc_info:
        repo.save_rule(replace(rule, notes="second writer"))
    assert exc_info.value.expected_version == 1
    assert exc_info.value.actual_version == 2
    assert sql_engine.get_rule(rule.id).notes == "first writer"


def test_duplicate_occurrence_insert_is_ignored(sql_engine: RecurringEngine):
    repo = sql_engine.repository
    rule = _subscription(sql_engine)
    occurrence = Occurrence(
        rule_id=rule.id,
        sequence_index=1,
        owner_id="u1",
        amount=Decimal("-15.99"),
        due_date=date(2025, 6, 1),
    )

    assert repo.save_occurrence(occurrence) is True
    assert repo.save_occurrence(replace(occurrence, amount=Decimal("-1.00"))) is False
    assert repo.get_occurrence(rule.id, 1).amount == Decimal("-15.99")
    assert repo.get_occurrence(rule.id, 2) is None


def test_delete_future_occurrences_counts_rows(sql_engine: RecurringEngine):
    rule = _subscription(sql_engine)
    sql_engine.generate_due(rule.id, date(2025, 12, 1))

    removed = sql_engine.repository.delete_future_occurrences(rule.id, date(2025, 9, 15))

    assert removed == 3
    assert sql_engine.repository.latest_occurrence(rule.id).due_date == date(2025, 9, 1)


def test_update_and_delete_with_future_cleanup(sql_engine: RecurringEngine):
    rule = _subscription(sql_engine)
    sql_engine.generate_due(rule.id, date(2025, 12, 1))

    updated = sql_engine.update_rule(
        rule.id,
        {"frequency": {"type": "MONTHLY", "interval": 2}},
        delete_future_transactions=True,
        today=date(2025, 8, 15),
    )
    assert updated.occurrences_generated == 3
    assert updated.next_due_date == date(2025, 10, 1)

    sql_engine.delete_rule(rule.id, delete_future_transactions=True, today=date(2025, 7, 1))
    with pytest.raises(NotFoundError):
        sql_engine.get_rule(rule.id)
    assert [o.due_date for o in sql_engine.list_occurrences(rule.id)] == [
        date(2025, 6, 1),
        date(2025, 7, 1),
    ]
    assert sql_engine.list_rules("u1") == []
    assert len(sql_engine.list_rules("u1", include_deleted=True)) == 1


def test_list_due_rules_ordering(sql_engine: RecurringEngine):
    late = _subscription(sql_engine, start_date="2025-03-01")
    early = _subscription(sql_engine, start_date="2025-01-01")
    _subscription(sql_engine, start_date="2025-08-01")
    paused = _subscription(sql_engine, start_date="2025-02-01")
    sql_engine.pause_rule(paused.id)

    due = sql_engine.repository.list_due_rules(date(2025, 6, 1))

    assert [r.id for r in due] == [early.id, late.id]


def test_list_rules_orders_by_next_due_date(sql_engine: RecurringEngine):
    first = _subscription(sql_engine, start_date="2025-01-01")
    second = _subscription(sql_engine, start_date="2025-02-01")
    sql_engine.generate_due(first.id, date(2025, 2, 1))

    assert [r.id for r in sql_engine.list_rules("u1")] == [second.id, first.id]


def test_settled_installments_round_trip(sql_engine: RecurringEngine):
    rule = _subscription(
        sql_engine,
        amount="-100.00",
        is_installment=True,
        total_occurrences=3,
        start_date="2025-01-01",
    )
    sql_engine.generate_due(rule.id, date(2025, 1, 1))

    sql_engine.update_rule(rule.id, {"total_occurrences": 4})
    loaded = sql_engine.get_rule(rule.id)

    assert loaded.settled_amount == Decimal("-33.33")
    assert loaded.settled_occurrences == 1
    sql_engine.generate_due(rule.id, date(2025, 12, 1))
    amounts = [o.amount for o in sql_engine.list_occurrences(rule.id)]
    assert amounts[1:] == [Decimal("-22.22"), Decimal("-22.22"), Decimal("-22.23")]
    assert sum(amounts) == Decimal("-100.00")
    assert sql_engine.get_rule(rule.id).status is RuleStatus.COMPLETED


def test_ping_counts_rules(sql_engine: RecurringEngine):
    assert sql_engine.repository.ping() == 0
    _subscription(sql_engine)
    assert sql_engine.repository.ping() == 1


def test_catch_up_against_database(sql_engine: RecurringEngine, sqlite_url: str):
    _subscription(sql_engine, start_date="2025-01-01")
    _subscription(sql_engine, start_date="2025-02-01", frequency={"type": "WEEKLY"})

    report = sql_engine.run_catch_up(date(2025, 3, 1))

    assert report.ok
    assert report.processed == 2
    assert report.created_count == 3 + 5
    assert count_rows(sqlite_url, "rt_occurrences") == 8


def test_missing_schema_raises_persistence_error(tmp_path: Path):
    repo = SqlRuleRepository(f"sqlite+pysqlite:///{tmp_path / 'empty.sqlite3'}")

    with pytest.raises(PersistenceError):
        repo.get_rule("anything")
