# ruff: noqa: I001
"""Recurring rules and generated occurrences.

Revision ID: 0001_rt_core
Revises: None
Create Date: 2025-10-02
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_rt_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # rt_rules
    op.create_table(
        "rt_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 4), nullable=False),
        sa.Column(
            "currency_code",
            sa.CHAR(3),
            nullable=False,
            server_default=sa.text("'EUR'"),
        ),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("account", sa.Text(), nullable=True),
        sa.Column("frequency_type", sa.String(8), nullable=False),
        sa.Column(
            "frequency_interval",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("anchor_day", sa.Integer(), nullable=True),
        sa.Column("weekday", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "is_installment",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("total_occurrences", sa.Integer(), nullable=True),
        sa.Column(
            "occurrences_generated",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default=sa.text("'active'"),
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "frequency_type in ('DAILY','WEEKLY','MONTHLY','YEARLY')",
            name="ck_rt_rules_frequency_type",
        ),
        sa.CheckConstraint("frequency_interval > 0", name="ck_rt_rules_frequency_interval"),
        sa.CheckConstraint(
            "anchor_day IS NULL OR (anchor_day >= 1 AND anchor_day <= 31)",
            name="ck_rt_rules_anchor_day",
        ),
        sa.CheckConstraint(
            "weekday IS NULL OR (weekday >= 0 AND weekday <= 6)",
            name="ck_rt_rules_weekday",
        ),
        sa.CheckConstraint(
            "status in ('active','paused','completed','deleted')",
            name="ck_rt_rules_status",
        ),
        sa.CheckConstraint(
            (
                "(is_installment AND total_occurrences IS NOT NULL AND total_occurrences > 0) "
                "OR (NOT is_installment AND total_occurrences IS NULL)"
            ),
            name="ck_rt_rules_installment_total",
        ),
        sa.CheckConstraint(
            "total_occurrences IS NULL OR occurrences_generated <= total_occurrences",
            name="ck_rt_rules_generated_le_total",
        ),
        sa.CheckConstraint("occurrences_generated >= 0", name="ck_rt_rules_generated_nonneg"),
        sa.CheckConstraint(
            "next_due_date >= start_date", name="ck_rt_rules_cursor_after_start"
        ),
    )
    op.create_index(
        "ix_rt_rules_status_next_due", "rt_rules", ["status", "next_due_date"], unique=False
    )
    op.create_index("ix_rt_rules_owner", "rt_rules", ["owner_id"], unique=False)

    # rt_occurrences
    op.create_table(
        "rt_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(36), nullable=False),
        sa.Column("sequence_index", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 4), nullable=False),
        sa.Column(
            "currency_code",
            sa.CHAR(3),
            nullable=False,
            server_default=sa.text("'EUR'"),
        ),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("account", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(
            ["rule_id"],
            ["rt_rules.id"],
            name="fk_rt_occ_rule",
            ondelete="RESTRICT",
        ),
        sa.UniqueConstraint("rule_id", "sequence_index", name="uq_rt_occ_rule_seq"),
        sa.CheckConstraint("sequence_index >= 1", name="ck_rt_occ_sequence_positive"),
    )
    op.create_index("ix_rt_occ_rule_due", "rt_occurrences", ["rule_id", "due_date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_rt_occ_rule_due", table_name="rt_occurrences")
    op.drop_table("rt_occurrences")
    op.drop_index("ix_rt_rules_owner", table_name="rt_rules")
    op.drop_index("ix_rt_rules_status_next_due", table_name="rt_rules")
    op.drop_table("rt_rules")
