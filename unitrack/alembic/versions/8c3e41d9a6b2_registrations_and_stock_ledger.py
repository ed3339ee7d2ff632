"""unit registrations and aggregate stock ledger

Revision ID: 8c3e41d9a6b2
Revises: 5b1f0c2a7d10
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8c3e41d9a6b2"
down_revision: Union[str, Sequence[str], None] = "5b1f0c2a7d10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False)


def _qty(name: str, default: str | None = None) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(14, 3),
        nullable=False,
        server_default=sa.text(default) if default is not None else None,
    )


def upgrade() -> None:
    op.create_table(
        "unit_registrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("unit_ids", sa.JSON(), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "stock_levels",
        sa.Column("product_id", sa.Uuid(), primary_key=True),
        sa.Column("location_id", sa.Uuid(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        _qty("qty_on_hand", default="0"),
        _ts("updated_at"),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_stock_on_hand_nonneg"),
    )

    op.create_table(
        "stock_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("location_id", sa.Uuid(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        _qty("quantity_before"),
        _qty("quantity_change"),
        _qty("quantity_after"),
        sa.Column("reason", sa.String(255)),
        sa.Column("reference_type", sa.String(64), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=False),
        sa.Column("receipt_id", sa.Uuid()),
        sa.Column("performed_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        _ts("created_at"),
    )
    op.create_index("ix_stock_txn_reference", "stock_transactions", ["reference_type", "reference_id"])
    op.create_index("ix_stock_txn_product_location", "stock_transactions", ["product_id", "location_id"])


def downgrade() -> None:
    op.drop_index("ix_stock_txn_product_location", table_name="stock_transactions")
    op.drop_index("ix_stock_txn_reference", table_name="stock_transactions")
    op.drop_table("stock_transactions")
    op.drop_table("stock_levels")
    op.drop_table("unit_registrations")
