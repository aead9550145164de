"""Exception taxonomy for ``recurring_engine``.

All engine errors derive from :class:`RecurringEngineError` so callers (the
CLI, an HTTP layer, the scheduler driver) can catch the whole family in one
place while still distinguishing the cases they surface differently:

- validation-type errors (``ValidationError`` and its subclasses) are caller
  mistakes and are never retried;
- ``PersistenceError`` and ``ConcurrentModificationError`` are transient and
  safe to retry from the persisted cursor;
- ``NotFoundError`` is raised for unknown or deleted rules.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class RecurringEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(RecurringEngineError, ValueError):
    """Malformed rule specification (bad fields, inconsistent installment data).

    ``errors`` carries per-field details when the failure came from schema
    validation, in pydantic's ``errors()`` shape.
    """

    def __init__(self, message: str, *, errors: Sequence[Mapping[str, Any]] | None = None):
        super().__init__(message)
        self.errors: tuple[Mapping[str, Any], ...] = tuple(errors or ())


class InvalidFrequency(ValidationError):
    """Interval <= 0, or an anchor day / weekday outside its range."""


class InvalidInstallmentPlan(ValidationError):
    """Non-positive occurrence counts or shrinking below what was generated."""


class InvalidStateError(ValidationError):
    """Lifecycle transition not allowed from the rule's current status."""


class NotFoundError(RecurringEngineError, LookupError):
    """No live rule exists for the given identifier."""

    def __init__(self, rule_id: str):
        super().__init__(f"recurrence rule not found: {rule_id}")
        self.rule_id = rule_id


class PersistenceError(RecurringEngineError):
    """Transient repository failure; the operation can be retried."""


class ConcurrentModificationError(RecurringEngineError):
    """Optimistic-lock failure: another writer changed the rule first."""

    def __init__(self, rule_id: str, *, expected_version: int, actual_version: int | None):
        super().__init__(
            f"rule {rule_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.rule_id = rule_id
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = [
    "ConcurrentModificationError",
    "InvalidFrequency",
    "InvalidInstallmentPlan",
    "InvalidStateError",
    "NotFoundError",
    "PersistenceError",
    "RecurringEngineError",
    "ValidationError",
]
