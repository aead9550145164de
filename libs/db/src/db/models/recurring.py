from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CHAR,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import expression as sa_expr


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: rt_rules
# ---------------------------


class RtRule(Base):
    __tablename__ = "rt_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Signed: negative = expense, positive = income. For installment plans this
    # is the total amount amortized over ``total_occurrences``.
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency_code: Mapped[str] = mapped_column(CHAR(3), nullable=False, server_default="EUR")
    # Opaque references owned by other services; no FK on purpose.
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    account: Mapped[str | None] = mapped_column(String, nullable=True)

    frequency_type: Mapped[str] = mapped_column(String(8), nullable=False)
    frequency_interval: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    anchor_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weekday: Mapped[int | None] = mapped_column(Integer, nullable=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_installment: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    total_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Installments fixed by an earlier plan change; see recurring_engine.amortization.
    settled_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 4), nullable=False, server_default="0"
    )
    settled_occurrences: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    # Cursor: (next_due_date, occurrences_generated)
    occurrences_generated: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="0"
    )
    next_due_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="active")
    # Optimistic lock; bumped on every write.
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    last_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "frequency_type in ('DAILY','WEEKLY','MONTHLY','YEARLY')",
            name="ck_rt_rules_frequency_type",
        ),
        CheckConstraint("frequency_interval > 0", name="ck_rt_rules_frequency_interval"),
        CheckConstraint(
            "anchor_day IS NULL OR (anchor_day >= 1 AND anchor_day <= 31)",
            name="ck_rt_rules_anchor_day",
        ),
        CheckConstraint(
            "weekday IS NULL OR (weekday >= 0 AND weekday <= 6)",
            name="ck_rt_rules_weekday",
        ),
        CheckConstraint(
            "status in ('active','paused','completed','deleted')",
            name="ck_rt_rules_status",
        ),
        CheckConstraint(
            (
                "(is_installment AND total_occurrences IS NOT NULL AND total_occurrences > 0) "
                "OR (NOT is_installment AND total_occurrences IS NULL)"
            ),
            name="ck_rt_rules_installment_total",
        ),
        CheckConstraint(
            "total_occurrences IS NULL OR occurrences_generated <= total_occurrences",
            name="ck_rt_rules_generated_le_total",
        ),
        CheckConstraint("occurrences_generated >= 0", name="ck_rt_rules_generated_nonneg"),
        CheckConstraint(
            "settled_occurrences >= 0 AND settled_occurrences <= occurrences_generated",
            name="ck_rt_rules_settled_range",
        ),
        CheckConstraint("next_due_date >= start_date", name="ck_rt_rules_cursor_after_start"),
        Index("ix_rt_rules_status_next_due", "status", "next_due_date"),
        Index("ix_rt_rules_owner", "owner_id"),
    )


# ---------------------------
# Core: rt_occurrences
# ---------------------------


class RtOccurrence(Base):
    __tablename__ = "rt_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Non-owning back-reference. Rules are soft-deleted so the FK always holds.
    rule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("rt_rules.id", ondelete="RESTRICT"), nullable=False
    )
    sequence_index: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency_code: Mapped[str] = mapped_column(CHAR(3), nullable=False, server_default="EUR")
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    account: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        # Idempotency key for generation: one row per (rule, position).
        UniqueConstraint("rule_id", "sequence_index", name="uq_rt_occ_rule_seq"),
        CheckConstraint("sequence_index >= 1", name="ck_rt_occ_sequence_positive"),
        Index("ix_rt_occ_rule_due", "rule_id", "due_date"),
    )


__all__ = [
    "Base",
    "RtRule",
    "RtOccurrence",
]
