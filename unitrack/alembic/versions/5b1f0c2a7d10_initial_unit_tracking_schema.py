"""initial unit tracking schema

Revision ID: 5b1f0c2a7d10
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5b1f0c2a7d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Types partagés entre tables : créés une fois, explicitement
ROLE = postgresql.ENUM("admin", "manager", "staff", name="role", create_type=False)
LOCATION_TYPE = postgresql.ENUM("warehouse", "distribution", "retail", name="location_type", create_type=False)
UNIT_STATUS = postgresql.ENUM(
    "available",
    "reserved",
    "in_transit",
    "consumed",
    "sold",
    "damaged",
    "expired",
    "sample",
    "adjustment",
    name="unit_status",
    create_type=False,
)
SCAN_OPERATION = postgresql.ENUM(
    "receiving",
    "transfer_out",
    "transfer_in",
    "audit",
    "damage",
    "reprint",
    "convert",
    "sale",
    "adjustment",
    "bin_move",
    name="scan_operation",
    create_type=False,
)
OPERATION_STATUS = postgresql.ENUM("success", "discrepancy", name="operation_status", create_type=False)
SCAN_OUTCOME = postgresql.ENUM("succeeded", "rejected", name="scan_outcome", create_type=False)
TRANSFER_STATUS = postgresql.ENUM(
    "draft", "approved", "in_transit", "completed", "cancelled", name="transfer_status", create_type=False
)
ITEM_CONDITION = postgresql.ENUM("good", "damaged", "expired", "rejected", name="item_condition", create_type=False)

ALL_ENUMS = (
    ROLE,
    LOCATION_TYPE,
    UNIT_STATUS,
    SCAN_OPERATION,
    OPERATION_STATUS,
    SCAN_OUTCOME,
    TRANSFER_STATUS,
    ITEM_CONDITION,
)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _qty(name: str, nullable: bool = False, default: str | None = None) -> sa.Column:
    return sa.Column(
        name,
        sa.Numeric(14, 3),
        nullable=nullable,
        server_default=sa.text(default) if default is not None else None,
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ALL_ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "locations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("type", LOCATION_TYPE, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("store_id", "name", name="uq_location_store_name"),
    )
    op.create_index("ix_locations_store_id", "locations", ["store_id"])

    op.create_table(
        "staff_users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", ROLE, nullable=False, server_default="staff"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )
    op.create_index("ix_staff_users_store_id", "staff_users", ["store_id"])

    op.create_table(
        "unit_conversion_tiers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("category_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("tiers", sa.JSON(), nullable=False),
        sa.Column("base_unit", sa.String(16), nullable=False, server_default="g"),
        sa.Column("track_individual_units", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("require_scan_on_receive", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("require_scan_on_transfer", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_partial_conversion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("store_id", "slug", name="uq_tier_template_store_slug"),
    )
    op.create_index("ix_tier_template_store_category", "unit_conversion_tiers", ["store_id", "category_id"])

    op.create_table(
        "inventory_units",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("qr_code", sa.String(64), nullable=False, unique=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column(
            "template_id",
            sa.Uuid(),
            sa.ForeignKey("unit_conversion_tiers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("tier_id", sa.String(32), nullable=False),
        sa.Column("tier_label", sa.String(128)),
        _qty("quantity"),
        sa.Column("base_unit", sa.String(16), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", UNIT_STATUS, nullable=False, server_default="available"),
        _ts("status_changed_at", nullable=True),
        sa.Column(
            "current_location_id",
            sa.Uuid(),
            sa.ForeignKey("locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("bin_location", sa.String(64)),
        sa.Column("batch_number", sa.String(64)),
        sa.Column("parent_unit_id", sa.Uuid(), sa.ForeignKey("inventory_units.id", ondelete="RESTRICT")),
        sa.Column("parent_unit_index", sa.Integer()),
        sa.Column("conversion_id", sa.Uuid()),
        _ts("received_at", nullable=True),
        sa.Column("received_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_unit_quantity_nonneg"),
        sa.CheckConstraint("generation >= 0", name="ck_unit_generation_nonneg"),
    )
    op.create_index("ix_inventory_units_store_id", "inventory_units", ["store_id"])
    op.create_index("ix_inventory_units_product_id", "inventory_units", ["product_id"])
    op.create_index("ix_inventory_units_batch_number", "inventory_units", ["batch_number"])
    op.create_index(
        "ix_units_product_location_status",
        "inventory_units",
        ["product_id", "current_location_id", "status"],
    )

    op.create_table(
        "inventory_unit_scans",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("unit_id", sa.Uuid(), sa.ForeignKey("inventory_units.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("qr_code", sa.String(64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("operation", SCAN_OPERATION, nullable=False),
        sa.Column("operation_status", OPERATION_STATUS, nullable=False, server_default="success"),
        sa.Column("location_id", sa.Uuid(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_name", sa.String(200)),
        sa.Column("scanned_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.Column("scanned_by_name", sa.String(200)),
        sa.Column("previous_status", UNIT_STATUS),
        sa.Column("new_status", UNIT_STATUS, nullable=False),
        sa.Column("previous_location_id", sa.Uuid()),
        sa.Column("new_location_id", sa.Uuid(), nullable=False),
        sa.Column("bin_location", sa.String(64)),
        _qty("quantity_after"),
        _qty("expected_quantity", nullable=True),
        _qty("actual_quantity", nullable=True),
        _qty("variance", nullable=True),
        sa.Column("notes", sa.Text()),
        _ts("scanned_at"),
        sa.Column("prev_hash", sa.String(64)),
        sa.Column("record_hash", sa.String(64), nullable=False),
        sa.UniqueConstraint("unit_id", "sequence", name="uq_unit_scan_sequence"),
    )
    op.create_index("ix_inventory_unit_scans_qr_code", "inventory_unit_scans", ["qr_code"])
    op.create_index("ix_unit_scans_store_time", "inventory_unit_scans", ["store_id", "scanned_at"])

    op.create_table(
        "scan_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("qr_code", sa.String(64), nullable=False),
        sa.Column("operation", SCAN_OPERATION, nullable=False),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("location_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("outcome", SCAN_OUTCOME, nullable=False),
        sa.Column("error_code", sa.String(64)),
        sa.Column("error_message", sa.Text()),
        sa.Column("scan_ids", sa.JSON(), nullable=False),
        sa.Column("conversion_id", sa.Uuid()),
        _ts("created_at"),
    )
    op.create_index("ix_scan_requests_store_outcome", "scan_requests", ["store_id", "outcome"])

    op.create_table(
        "unit_conversions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column(
            "source_unit_id",
            sa.Uuid(),
            sa.ForeignKey("inventory_units.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("source_tier_id", sa.String(32), nullable=False),
        sa.Column("target_tier_id", sa.String(32), nullable=False),
        sa.Column("portions_created", sa.Integer(), nullable=False),
        _qty("portion_size"),
        _qty("total_consumed"),
        _qty("remaining_quantity"),
        _qty("variance", default="0"),
        sa.Column("tracked_individually", sa.Boolean(), nullable=False),
        sa.Column("created_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        _ts("created_at"),
        sa.CheckConstraint("portions_created > 0", name="ck_conversion_portions_pos"),
    )
    op.create_index("ix_unit_conversions_source_unit_id", "unit_conversions", ["source_unit_id"])

    op.create_table(
        "tier_stock_levels",
        sa.Column("product_id", sa.Uuid(), primary_key=True),
        sa.Column("location_id", sa.Uuid(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("tier_id", sa.String(32), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        _qty("quantity", default="0"),
        _ts("updated_at"),
        sa.CheckConstraint("quantity >= 0", name="ck_tier_stock_quantity_nonneg"),
    )

    op.create_table(
        "inventory_transfers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("store_id", sa.Uuid(), nullable=False),
        sa.Column("transfer_number", sa.String(32), nullable=False),
        sa.Column(
            "source_location_id",
            sa.Uuid(),
            sa.ForeignKey("locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "destination_location_id",
            sa.Uuid(),
            sa.ForeignKey("locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("status", TRANSFER_STATUS, nullable=False, server_default="draft"),
        sa.Column("notes", sa.Text()),
        sa.Column("tracking_number", sa.String(128)),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("approved_at", nullable=True),
        _ts("shipped_at", nullable=True),
        _ts("received_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.Column("created_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.Column("approved_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.Column("received_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.Column("cancelled_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.UniqueConstraint("store_id", "transfer_number", name="uq_transfer_store_number"),
        sa.CheckConstraint(
            "source_location_id <> destination_location_id",
            name="ck_transfer_distinct_locations",
        ),
    )

    op.create_table(
        "inventory_transfer_items",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transfer_id",
            sa.Uuid(),
            sa.ForeignKey("inventory_transfers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        _qty("quantity"),
        _qty("received_quantity", default="0"),
        sa.Column("condition", ITEM_CONDITION),
        sa.Column("condition_notes", sa.Text()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
        sa.CheckConstraint("quantity > 0", name="ck_transfer_item_qty_pos"),
        sa.CheckConstraint("received_quantity >= 0", name="ck_transfer_item_received_nonneg"),
    )
    op.create_index("ix_inventory_transfer_items_transfer_id", "inventory_transfer_items", ["transfer_id"])

    op.create_table(
        "inventory_transfer_receipts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transfer_id",
            sa.Uuid(),
            sa.ForeignKey("inventory_transfers.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "item_id",
            sa.Uuid(),
            sa.ForeignKey("inventory_transfer_items.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _qty("quantity"),
        sa.Column("condition", ITEM_CONDITION, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("received_by_user_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        _ts("received_at"),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        sa.CheckConstraint("quantity > 0", name="ck_transfer_receipt_qty_pos"),
    )
    op.create_index(
        "ix_inventory_transfer_receipts_transfer_id",
        "inventory_transfer_receipts",
        ["transfer_id"],
    )

    op.create_table(
        "transfer_sequences",
        sa.Column("store_id", sa.Uuid(), primary_key=True),
        sa.Column("current_value", sa.BigInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("actor_id", sa.Uuid(), sa.ForeignKey("staff_users.id", ondelete="SET NULL")),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text()),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "transfer_sequences",
        "inventory_transfer_receipts",
        "inventory_transfer_items",
        "inventory_transfers",
        "tier_stock_levels",
        "unit_conversions",
        "scan_requests",
        "inventory_unit_scans",
        "inventory_units",
        "unit_conversion_tiers",
        "staff_users",
        "locations",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum in reversed(ALL_ENUMS):
        enum.drop(bind, checkfirst=True)
