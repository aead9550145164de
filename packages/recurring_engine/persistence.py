# ruff: noqa: I001
"""SQLAlchemy-backed :class:`RuleRepository`.

Rules and occurrences live in ``rt_rules`` / ``rt_occurrences`` owned by
``libs/db`` (``db.models.recurring``); sessions come from ``db.client``.

Scope:
- Idempotent occurrence inserts via the dialect's ``INSERT ... ON CONFLICT DO
  NOTHING`` on ``(rule_id, sequence_index)``.
- Version-guarded rule updates (optimistic locking).
- ``SELECT ... FOR UPDATE`` on rule re-reads where the dialect supports it.

Every SQLAlchemy failure surfaces as :class:`PersistenceError`.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy import text as sql_text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.recurring import RtOccurrence, RtRule
from .amortization import quantize
from .errors import ConcurrentModificationError, PersistenceError
from .logging_setup import get_logger
from .models import Frequency, FrequencyType, Occurrence, RecurrenceRule, RuleStatus
from .repository import RuleRepository

logger = get_logger("recurring_engine.persistence")

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------


def _rule_from_row(row: RtRule) -> RecurrenceRule:
    return RecurrenceRule(
        id=row.id,
        owner_id=row.owner_id,
        amount=quantize(row.amount, row.currency_code),
        currency=row.currency_code,
        frequency=Frequency(
            type=FrequencyType(row.frequency_type),
            interval=row.frequency_interval,
            anchor_day=row.anchor_day,
            weekday=row.weekday,
        ),
        start_date=row.start_date,
        end_date=row.end_date,
        next_due_date=row.next_due_date,
        occurrences_generated=row.occurrences_generated,
        is_installment=bool(row.is_installment),
        total_occurrences=row.total_occurrences,
        settled_amount=quantize(row.settled_amount, row.currency_code),
        settled_occurrences=row.settled_occurrences,
        category=row.category,
        account=row.account,
        description=row.description or "",
        notes=row.notes,
        status=RuleStatus(row.status),
        version=row.version,
        last_processed_at=row.last_processed_at,
        deleted_at=row.deleted_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _rule_values(rule: RecurrenceRule) -> dict[str, Any]:
    return {
        "owner_id": rule.owner_id,
        "description": rule.description,
        "notes": rule.notes,
        "amount": rule.amount,
        "currency_code": rule.currency,
        "category": rule.category,
        "account": rule.account,
        "frequency_type": str(rule.frequency.type),
        "frequency_interval": rule.frequency.interval,
        "anchor_day": rule.frequency.anchor_day,
        "weekday": rule.frequency.weekday,
        "start_date": rule.start_date,
        "end_date": rule.end_date,
        "is_installment": rule.is_installment,
        "total_occurrences": rule.total_occurrences,
        "settled_amount": rule.settled_amount,
        "settled_occurrences": rule.settled_occurrences,
        "occurrences_generated": rule.occurrences_generated,
        "next_due_date": rule.next_due_date,
        "status": str(rule.status),
        "last_processed_at": rule.last_processed_at,
        "deleted_at": rule.deleted_at,
    }


def _occurrence_from_row(row: RtOccurrence) -> Occurrence:
    return Occurrence(
        rule_id=row.rule_id,
        sequence_index=row.sequence_index,
        owner_id=row.owner_id,
        amount=quantize(row.amount, row.currency_code),
        currency=row.currency_code,
        due_date=row.due_date,
        description=row.description or "",
        category=row.category,
        account=row.account,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlRuleRepository(RuleRepository):
    """Repository over the shared database.

    ``atomic()`` opens one session per thread and commits when the outermost
    block exits. Calls made outside ``atomic()`` run in their own short
    transaction.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url
        self._local = threading.local()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        try:
            with session_scope(database_url=self._database_url) as session:
                self._local.session = session
                try:
                    yield
                finally:
                    self._local.session = None
        except SQLAlchemyError as exc:
            logger.warning("Database operation failed: %s", exc.__class__.__name__)
            raise PersistenceError(f"database operation failed: {exc}") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self.atomic():
            yield self._local.session

    # ---- rules ----

    def get_rule(self, rule_id: str, *, for_update: bool = False) -> RecurrenceRule | None:
        stmt = (
            select(RtRule)
            .where(RtRule.id == rule_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        with self._session() as s:
            row = s.execute(stmt).scalar_one_or_none()
            return _rule_from_row(row) if row is not None else None

    def save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        now = datetime.now(UTC)
        with self._session() as s:
            if rule.version == 0:
                existing = s.execute(
                    select(RtRule.version).where(RtRule.id == rule.id)
                ).scalar_one_or_none()
                if existing is not None:
                    raise ConcurrentModificationError(
                        rule.id, expected_version=0, actual_version=existing
                    )
                s.add(
                    RtRule(
                        id=rule.id,
                        version=1,
                        created_at=now,
                        updated_at=now,
                        **_rule_values(rule),
                    )
                )
                s.flush()
                return replace(rule, version=1, created_at=now, updated_at=now)

            result = s.execute(
                update(RtRule)
                .where(RtRule.id == rule.id, RtRule.version == rule.version)
                .values(**_rule_values(rule), version=rule.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = s.execute(
                    select(RtRule.version).where(RtRule.id == rule.id)
                ).scalar_one_or_none()
                raise ConcurrentModificationError(
                    rule.id, expected_version=rule.version, actual_version=actual
                )
            return replace(rule, version=rule.version + 1, updated_at=now)

    def list_rules(
        self,
        owner_id: str,
        *,
        is_installment: bool | None = None,
        include_deleted: bool = False,
    ) -> list[RecurrenceRule]:
        stmt = select(RtRule).where(RtRule.owner_id == owner_id)
        if is_installment is not None:
            stmt = stmt.where(RtRule.is_installment.is_(is_installment))
        if not include_deleted:
            stmt = stmt.where(RtRule.status != str(RuleStatus.DELETED))
        stmt = stmt.order_by(RtRule.next_due_date, RtRule.id)
        with self._session() as s:
            return [_rule_from_row(r) for r in s.execute(stmt).scalars()]

    def list_due_rules(self, as_of: date) -> list[RecurrenceRule]:
        stmt = (
            select(RtRule)
            .where(
                RtRule.status == str(RuleStatus.ACTIVE),
                RtRule.deleted_at.is_(None),
                RtRule.next_due_date <= as_of,
            )
            .order_by(RtRule.next_due_date, RtRule.id)
        )
        with self._session() as s:
            return [_rule_from_row(r) for r in s.execute(stmt).scalars()]

    def ping(self) -> int:
        with self._session() as s:
            s.execute(sql_text("SELECT 1"))
            return int(s.execute(select(func.count()).select_from(RtRule)).scalar_one())

    # ---- occurrences ----

    def get_occurrence(self, rule_id: str, sequence_index: int) -> Occurrence | None:
        stmt = select(RtOccurrence).where(
            RtOccurrence.rule_id == rule_id,
            RtOccurrence.sequence_index == sequence_index,
        )
        with self._session() as s:
            row = s.execute(stmt).scalar_one_or_none()
            return _occurrence_from_row(row) if row is not None else None

    def save_occurrence(self, occurrence: Occurrence) -> bool:
        values = {
            "rule_id": occurrence.rule_id,
            "sequence_index": occurrence.sequence_index,
            "owner_id": occurrence.owner_id,
            "amount": occurrence.amount,
            "currency_code": occurrence.currency,
            "due_date": occurrence.due_date,
            "description": occurrence.description,
            "category": occurrence.category,
            "account": occurrence.account,
            "created_at": occurrence.created_at or func.now(),
        }
        with self._session() as s:
            insert_fn = _DIALECT_INSERTS.get(s.get_bind().dialect.name)
            if insert_fn is not None:
                stmt = insert_fn(RtOccurrence.__table__).values(values)
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=[RtOccurrence.rule_id, RtOccurrence.sequence_index]
                )
                return s.execute(stmt).rowcount == 1

            # Dialects without ON CONFLICT: rely on the row lock held on the rule.
            if self.get_occurrence(occurrence.rule_id, occurrence.sequence_index) is not None:
                return False
            s.add(RtOccurrence(**values))
            s.flush()
            return True

    def list_occurrences(self, rule_id: str) -> list[Occurrence]:
        stmt = (
            select(RtOccurrence)
            .where(RtOccurrence.rule_id == rule_id)
            .order_by(RtOccurrence.sequence_index)
        )
        with self._session() as s:
            return [_occurrence_from_row(r) for r in s.execute(stmt).scalars()]

    def latest_occurrence(self, rule_id: str) -> Occurrence | None:
        stmt = (
            select(RtOccurrence)
            .where(RtOccurrence.rule_id == rule_id)
            .order_by(RtOccurrence.sequence_index.desc())
            .limit(1)
        )
        with self._session() as s:
            row = s.execute(stmt).scalar_one_or_none()
            return _occurrence_from_row(row) if row is not None else None

    def delete_future_occurrences(self, rule_id: str, after: date) -> int:
        stmt = delete(RtOccurrence).where(
            RtOccurrence.rule_id == rule_id,
            RtOccurrence.due_date > after,
        )
        with self._session() as s:
            return s.execute(stmt.execution_options(synchronize_session=False)).rowcount


__all__ = ["SqlRuleRepository"]
