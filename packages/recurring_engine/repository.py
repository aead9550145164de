"""Storage interface for rules and occurrences, plus an in-memory implementation.

The generator and lifecycle manager only talk to :class:`RuleRepository`.
``persistence.SqlRuleRepository`` is the database-backed implementation;
:class:`InMemoryRuleRepository` backs tests and embedding callers that keep
state elsewhere.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import replace
from datetime import UTC, date, datetime

from .errors import ConcurrentModificationError
from .models import Occurrence, RecurrenceRule, RuleStatus


class RuleRepository(ABC):
    """Persistence port used by the engine.

    ``atomic()`` groups writes: everything inside the block is committed
    together or not at all. Blocks may nest; only the outermost one commits.
    """

    @abstractmethod
    def atomic(self) -> AbstractContextManager[None]: ...

    @abstractmethod
    def get_rule(self, rule_id: str, *, for_update: bool = False) -> RecurrenceRule | None:
        """Return the rule, including soft-deleted ones, or ``None``.

        ``for_update`` asks the backend for a row lock held until the
        enclosing ``atomic()`` block ends, where the backend supports it.
        """

    @abstractmethod
    def save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        """Insert (``version == 0``) or update the rule.

        Updates only succeed when the stored version equals ``rule.version``;
        otherwise :class:`ConcurrentModificationError` is raised. Returns the
        stored copy carrying the new version.
        """

    @abstractmethod
    def list_rules(
        self,
        owner_id: str,
        *,
        is_installment: bool | None = None,
        include_deleted: bool = False,
    ) -> list[RecurrenceRule]:
        """An owner's rules, soonest ``next_due_date`` first."""

    @abstractmethod
    def list_due_rules(self, as_of: date) -> list[RecurrenceRule]:
        """Active rules with ``next_due_date <= as_of``, oldest cursor first."""

    @abstractmethod
    def ping(self) -> int:
        """Round-trip to the store; return the number of stored rules."""

    @abstractmethod
    def get_occurrence(self, rule_id: str, sequence_index: int) -> Occurrence | None: ...

    @abstractmethod
    def save_occurrence(self, occurrence: Occurrence) -> bool:
        """Insert unless ``(rule_id, sequence_index)`` exists. Returns True when inserted."""

    @abstractmethod
    def list_occurrences(self, rule_id: str) -> list[Occurrence]:
        """All occurrences of the rule ordered by ``sequence_index``."""

    @abstractmethod
    def latest_occurrence(self, rule_id: str) -> Occurrence | None:
        """The occurrence with the highest ``sequence_index``."""

    @abstractmethod
    def delete_future_occurrences(self, rule_id: str, after: date) -> int:
        """Delete occurrences with ``due_date > after``; return how many were removed."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryRuleRepository(RuleRepository):
    """Thread-safe dict-backed repository.

    ``atomic()`` holds the store lock for the whole block and restores a
    snapshot when the block raises.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._local = threading.local()
        self._rules: dict[str, RecurrenceRule] = {}
        self._occurrences: dict[str, dict[int, Occurrence]] = {}

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            if depth:
                self._local.depth = depth + 1
                try:
                    yield
                finally:
                    self._local.depth = depth
                return

            snapshot = (
                dict(self._rules),
                {rule_id: dict(occ) for rule_id, occ in self._occurrences.items()},
            )
            self._local.depth = 1
            try:
                yield
            except BaseException:
                self._rules, self._occurrences = snapshot
                raise
            finally:
                self._local.depth = 0

    # ---- rules ----

    def get_rule(self, rule_id: str, *, for_update: bool = False) -> RecurrenceRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        with self._lock:
            current = self._rules.get(rule.id)
            now = _utcnow()
            if rule.version == 0:
                if current is not None:
                    raise ConcurrentModificationError(
                        rule.id, expected_version=0, actual_version=current.version
                    )
                stored = replace(rule, version=1, created_at=now, updated_at=now)
            else:
                if current is None or current.version != rule.version:
                    raise ConcurrentModificationError(
                        rule.id,
                        expected_version=rule.version,
                        actual_version=None if current is None else current.version,
                    )
                stored = replace(
                    rule,
                    version=rule.version + 1,
                    created_at=current.created_at,
                    updated_at=now,
                )
            self._rules[rule.id] = stored
            return stored

    def list_rules(
        self,
        owner_id: str,
        *,
        is_installment: bool | None = None,
        include_deleted: bool = False,
    ) -> list[RecurrenceRule]:
        with self._lock:
            rules = [
                r
                for r in self._rules.values()
                if r.owner_id == owner_id
                and (include_deleted or r.status is not RuleStatus.DELETED)
                and (is_installment is None or r.is_installment == is_installment)
            ]
        return sorted(rules, key=lambda r: (r.next_due_date, r.id))

    def list_due_rules(self, as_of: date) -> list[RecurrenceRule]:
        with self._lock:
            due = [
                r
                for r in self._rules.values()
                if r.status is RuleStatus.ACTIVE and r.next_due_date <= as_of
            ]
        return sorted(due, key=lambda r: (r.next_due_date, r.id))

    def ping(self) -> int:
        with self._lock:
            return len(self._rules)

    # ---- occurrences ----

    def get_occurrence(self, rule_id: str, sequence_index: int) -> Occurrence | None:
        with self._lock:
            return self._occurrences.get(rule_id, {}).get(sequence_index)

    def save_occurrence(self, occurrence: Occurrence) -> bool:
        with self._lock:
            by_seq = self._occurrences.setdefault(occurrence.rule_id, {})
            if occurrence.sequence_index in by_seq:
                return False
            by_seq[occurrence.sequence_index] = replace(
                occurrence, created_at=occurrence.created_at or _utcnow()
            )
            return True

    def list_occurrences(self, rule_id: str) -> list[Occurrence]:
        with self._lock:
            by_seq = self._occurrences.get(rule_id, {})
            return [by_seq[i] for i in sorted(by_seq)]

    def latest_occurrence(self, rule_id: str) -> Occurrence | None:
        with self._lock:
            by_seq = self._occurrences.get(rule_id)
            if not by_seq:
                return None
            return by_seq[max(by_seq)]

    def delete_future_occurrences(self, rule_id: str, after: date) -> int:
        with self._lock:
            by_seq = self._occurrences.get(rule_id, {})
            doomed = [i for i, occ in by_seq.items() if occ.due_date > after]
            for i in doomed:
                del by_seq[i]
            return len(doomed)


__all__ = ["InMemoryRuleRepository", "RuleRepository"]
