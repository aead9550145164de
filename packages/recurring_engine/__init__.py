"""Public interface for the ``recurring_engine`` package.

Re-exports the engine facade, the domain records and input schemas, and the
error taxonomy. There is no runtime logic here, only symbol re-exports.
"""

from .api import RecurringEngine, build_engine, build_in_memory_engine
from .errors import (
    ConcurrentModificationError,
    InvalidFrequency,
    InvalidInstallmentPlan,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    RecurringEngineError,
    ValidationError,
)
from .generator import Deadline
from .health import HealthStatus, SystemHealth
from .models import (
    Frequency,
    FrequencyType,
    InstallmentSummary,
    Occurrence,
    RecurrenceRule,
    RuleKind,
    RuleSpec,
    RuleStatus,
    RuleUpdate,
)
from .repository import InMemoryRuleRepository, RuleRepository
from .scheduler import CatchUpReport

__all__ = [
    # API
    "RecurringEngine",
    "build_engine",
    "build_in_memory_engine",
    "CatchUpReport",
    "Deadline",
    "HealthStatus",
    "SystemHealth",
    # Storage
    "RuleRepository",
    "InMemoryRuleRepository",
    # Models / types
    "Frequency",
    "FrequencyType",
    "InstallmentSummary",
    "Occurrence",
    "RecurrenceRule",
    "RuleKind",
    "RuleSpec",
    "RuleStatus",
    "RuleUpdate",
    # Errors
    "RecurringEngineError",
    "ValidationError",
    "InvalidFrequency",
    "InvalidInstallmentPlan",
    "InvalidStateError",
    "NotFoundError",
    "PersistenceError",
    "ConcurrentModificationError",
]
