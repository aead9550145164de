"""Domain records and input schemas for ``recurring_engine``.

Two families live here:

- Frozen dataclasses for engine state (:class:`RecurrenceRule`,
  :class:`Occurrence`, :class:`InstallmentSummary`, :class:`Frequency`). The
  engine never mutates them in place; cursor advances and lifecycle changes
  produce new instances via ``dataclasses.replace``.
- pydantic models for caller input (:class:`RuleSpec` for creation,
  :class:`RuleUpdate` for partial updates). They check structure and types
  only; domain rules (frequency ranges, installment consistency) are enforced
  by the lifecycle manager so that the specific engine errors surface.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class FrequencyType(StrEnum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RuleStatus(StrEnum):
    """Lifecycle states. Rules are created directly in ``ACTIVE``."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    DELETED = "deleted"


class RuleKind(StrEnum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


# ---------------------------------------------------------------------------
# Engine state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Frequency:
    """Recurrence descriptor.

    ``anchor_day`` (1-31) pins MONTHLY/YEARLY occurrences to a day of month,
    clamped to the month's length. ``weekday`` (0=Monday..6=Sunday) pins
    WEEKLY occurrences to a day of week.
    """

    type: FrequencyType
    interval: int = 1
    anchor_day: int | None = None
    weekday: int | None = None


@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    """A declarative recurring-transaction schedule plus its generation cursor.

    For installment plans ``amount`` is the total amortized over
    ``total_occurrences``; for open rules it is the per-occurrence amount.
    ``version`` is the optimistic-lock token: ``0`` means never persisted.

    ``settled_amount`` / ``settled_occurrences`` record the installments that
    were already generated when the plan was last changed; only the rest of
    ``amount`` is amortized over the remaining occurrences.
    """

    id: str
    owner_id: str
    amount: Decimal
    frequency: Frequency
    start_date: date
    next_due_date: date
    currency: str = "EUR"
    occurrences_generated: int = 0
    end_date: date | None = None
    is_installment: bool = False
    total_occurrences: int | None = None
    settled_amount: Decimal = Decimal(0)
    settled_occurrences: int = 0
    category: str | None = None
    account: str | None = None
    description: str = ""
    notes: str | None = None
    status: RuleStatus = RuleStatus.ACTIVE
    version: int = 0
    last_processed_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is RuleStatus.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.status is RuleStatus.DELETED

    @property
    def kind(self) -> RuleKind:
        return RuleKind.INCOME if self.amount > 0 else RuleKind.EXPENSE

    @property
    def remaining_occurrences(self) -> int | None:
        if self.total_occurrences is None:
            return None
        return self.total_occurrences - self.occurrences_generated


@dataclass(frozen=True, slots=True)
class Occurrence:
    """One concrete transaction materialized from a rule."""

    rule_id: str
    sequence_index: int
    owner_id: str
    amount: Decimal
    due_date: date
    currency: str = "EUR"
    description: str = ""
    category: str | None = None
    account: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class InstallmentSummary:
    """Read model consumed by UIs for installment plans."""

    rule_id: str
    currency: str
    total_amount: Decimal
    total_occurrences: int
    occurrences_generated: int
    amount_paid: Decimal
    remaining_balance: Decimal
    next_installment_amount: Decimal | None
    remaining_occurrences: int
    next_due_date: date | None


# ---------------------------------------------------------------------------
# Caller input
# ---------------------------------------------------------------------------


class FrequencySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: FrequencyType
    interval: int = 1
    anchor_day: int | None = None
    weekday: int | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    def to_frequency(self) -> Frequency:
        return Frequency(
            type=self.type,
            interval=self.interval,
            anchor_day=self.anchor_day,
            weekday=self.weekday,
        )


class RuleSpec(BaseModel):
    """Input for creating a rule.

    ``amount`` is signed (negative = expense). When ``kind`` is given the sign
    is derived from it and ``amount`` may be passed as a magnitude.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    owner_id: str
    amount: Decimal
    frequency: FrequencySpec
    start_date: date
    currency: str | None = None
    end_date: date | None = None
    is_installment: bool = False
    total_occurrences: int | None = None
    category: str | None = None
    account: str | None = None
    description: str = ""
    notes: str | None = None
    kind: RuleKind | None = None

    @field_validator("owner_id")
    @classmethod
    def _owner_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("owner_id must be non-empty")
        return v

    @field_validator("currency")
    @classmethod
    def _currency_code(cls, v: str | None) -> str | None:
        if v is None:
            return None
        code = v.upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("currency must be a 3-letter ISO 4217 code")
        return code


class RuleUpdate(BaseModel):
    """Partial update. Only fields present in ``model_fields_set`` are applied.

    Passing ``None`` explicitly clears an optional field (e.g. ``end_date``).
    ``id`` and ``owner_id`` are immutable and therefore not accepted.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    amount: Decimal | None = None
    frequency: FrequencySpec | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_installment: bool | None = None
    total_occurrences: int | None = None
    category: str | None = None
    account: str | None = None
    description: str | None = None
    notes: str | None = None
    kind: RuleKind | None = None

    def provided(self) -> dict[str, Any]:
        """Return only the explicitly provided fields."""

        return {name: getattr(self, name) for name in self.model_fields_set}


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: type[ModelT], data: ModelT | Mapping[str, Any]) -> ModelT:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        raise ValidationError(
            f"invalid {model.__name__}: {fields}",
            errors=e.errors(include_url=False),
        ) from e


def parse_rule_spec(data: RuleSpec | Mapping[str, Any]) -> RuleSpec:
    return _parse(RuleSpec, data)


def parse_rule_update(data: RuleUpdate | Mapping[str, Any]) -> RuleUpdate:
    return _parse(RuleUpdate, data)


__all__ = [
    "Frequency",
    "FrequencySpec",
    "FrequencyType",
    "InstallmentSummary",
    "Occurrence",
    "RecurrenceRule",
    "RuleKind",
    "RuleSpec",
    "RuleStatus",
    "RuleUpdate",
    "parse_rule_spec",
    "parse_rule_update",
]
