# ruff: noqa: I001
"""Track installments settled by a plan change so the rest can be re-amortized.

Revision ID: 0002_rt_settled_installments
Revises: 0001_rt_core
Create Date: 2025-10-20
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0002_rt_settled_installments"
down_revision: str | None = "0001_rt_core"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Existing plans have nothing settled: defaults keep their schedules unchanged
    op.add_column(
        "rt_rules",
        sa.Column(
            "settled_amount", sa.Numeric(18, 4), nullable=False, server_default=sa.text("0")
        ),
    )
    op.add_column(
        "rt_rules",
        sa.Column(
            "settled_occurrences", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
    )

    op.create_check_constraint(
        "ck_rt_rules_settled_range",
        "rt_rules",
        condition=sa.text(
            "settled_occurrences >= 0 AND settled_occurrences <= occurrences_generated"
        ),
    )


def downgrade() -> None:
    op.drop_constraint("ck_rt_rules_settled_range", table_name="rt_rules")
    op.drop_column("rt_rules", "settled_occurrences")
    op.drop_column("rt_rules", "settled_amount")
