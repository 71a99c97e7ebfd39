"""Add consumables ledger, balances, lots, containers and audit events.

Revision ID: 5a7c1e2d9b40
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "5a7c1e2d9b40"
down_revision = None
branch_labels = None
depends_on = None

QTY = sa.Numeric(18, 6)


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return bool(insp.has_table(table_name))


def _index_exists(table_name: str, index_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    if not insp.has_table(table_name):
        return False
    return any(i.get("name") == index_name for i in insp.get_indexes(table_name))


def _create_index(name: str, table: str, columns, *, unique: bool = False) -> None:
    if not _index_exists(table, name):
        op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    if not _table_exists("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("actor_user_id", sa.String(length=64), nullable=True),
            sa.Column("description", sa.String(length=512), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("after", sa.JSON(), nullable=True),
            sa.Column("correlation_id", sa.String(length=64), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
    _create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
    _create_index("ix_audit_events_action_time", "audit_events", ["action", "occurred_at"])
    _create_index("ix_audit_events_actor_user_id", "audit_events", ["actor_user_id"])
    _create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"])

    if not _table_exists("consumable_items"):
        op.create_table(
            "consumable_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("cas_number", sa.String(length=64), nullable=True),
            sa.Column("base_uom", sa.String(length=32), nullable=False),
            sa.Column("is_hazardous", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_controlled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_chemical", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("requires_lot_tracking", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("requires_container_tracking", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("default_min_stock", QTY, nullable=True),
            sa.Column("default_reorder_point", QTY, nullable=True),
            sa.Column("storage_condition", sa.String(length=200), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
    _create_index("ix_consumable_items_name", "consumable_items", ["name"])

    if not _table_exists("consumable_units"):
        op.create_table(
            "consumable_units",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("group", sa.String(length=16), nullable=False),
            sa.Column("to_base", sa.Numeric(24, 12), nullable=False),
            sa.Column("aliases", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.UniqueConstraint("code", name="uq_consumable_unit_code"),
        )
    _create_index("ix_consumable_units_group", "consumable_units", ["is_active", "group"])

    if not _table_exists("consumable_reason_codes"):
        op.create_table(
            "consumable_reason_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("category", sa.String(length=16), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.UniqueConstraint("category", "code", name="uq_consumable_reason_code"),
        )
    _create_index("ix_consumable_reason_codes_category", "consumable_reason_codes", ["category"])

    if not _table_exists("consumable_lots"):
        op.create_table(
            "consumable_lots",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("item_id", sa.Integer(), sa.ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("supplier_id", sa.String(length=64), nullable=True),
            sa.Column("lot_number", sa.String(length=120), nullable=False),
            sa.Column("received_date", sa.Date(), nullable=False),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.Column("sds_url", sa.String(length=512), nullable=True),
            sa.Column("coa_url", sa.String(length=512), nullable=True),
            sa.Column("invoice_url", sa.String(length=512), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("item_id", "lot_number", name="uq_consumable_lot_number"),
        )
    _create_index("ix_consumable_lots_item_id", "consumable_lots", ["item_id"])
    _create_index("ix_consumable_lots_supplier_id", "consumable_lots", ["supplier_id"])
    _create_index("ix_consumable_lots_item_expiry", "consumable_lots", ["item_id", "expiry_date", "received_date"])
    _create_index("ix_consumable_lots_expiry", "consumable_lots", ["expiry_date"])

    if not _table_exists("consumable_containers"):
        op.create_table(
            "consumable_containers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("lot_id", sa.Integer(), sa.ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("container_code", sa.String(length=64), nullable=False),
            sa.Column("initial_qty_base", QTY, nullable=False),
            sa.Column("current_qty_base", QTY, nullable=False),
            sa.Column("location_type", sa.String(length=16), nullable=False),
            sa.Column("location_id", sa.String(length=64), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("opened_date", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("lot_id", "container_code", name="uq_consumable_container_code"),
            sa.CheckConstraint(
                "current_qty_base >= 0 AND current_qty_base <= initial_qty_base",
                name="ck_consumable_container_qty_bounds",
            ),
        )
    _create_index("ix_consumable_containers_lot_id", "consumable_containers", ["lot_id"])
    _create_index("ix_consumable_containers_status", "consumable_containers", ["status"])
    _create_index(
        "ix_consumable_containers_location",
        "consumable_containers",
        ["location_type", "location_id", "status"],
    )

    if not _table_exists("consumable_balances"):
        op.create_table(
            "consumable_balances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("holder_type", sa.String(length=16), nullable=False),
            sa.Column("holder_id", sa.String(length=64), nullable=False),
            sa.Column("item_id", sa.Integer(), sa.ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("lot_id", sa.Integer(), sa.ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=True),
            sa.Column("lot_key", sa.String(length=32), nullable=False),
            sa.Column("qty_on_hand_base", QTY, nullable=False, server_default="0"),
            sa.Column("qty_reserved_base", QTY, nullable=False, server_default="0"),
            sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("frozen_reason", sa.Text(), nullable=True),
            sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("holder_type", "holder_id", "item_id", "lot_key", name="uq_consumable_balance_key"),
        )
    _create_index("ix_consumable_balances_item", "consumable_balances", ["item_id", "lot_id"])
    _create_index("ix_consumable_balances_holder", "consumable_balances", ["holder_type", "holder_id"])

    if not _table_exists("consumable_ledger_entries"):
        op.create_table(
            "consumable_ledger_entries",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("tx_type", sa.String(length=32), nullable=False),
            sa.Column("tx_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("from_holder_type", sa.String(length=16), nullable=True),
            sa.Column("from_holder_id", sa.String(length=64), nullable=True),
            sa.Column("to_holder_type", sa.String(length=16), nullable=True),
            sa.Column("to_holder_id", sa.String(length=64), nullable=True),
            sa.Column("item_id", sa.Integer(), sa.ForeignKey("consumable_items.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("lot_id", sa.Integer(), sa.ForeignKey("consumable_lots.id", ondelete="RESTRICT"), nullable=True),
            sa.Column(
                "container_id",
                sa.Integer(),
                sa.ForeignKey("consumable_containers.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("qty_base", QTY, nullable=False),
            sa.Column("entered_qty", QTY, nullable=False),
            sa.Column("entered_uom", sa.String(length=32), nullable=False),
            sa.Column(
                "reason_code_id",
                sa.Integer(),
                sa.ForeignKey("consumable_reason_codes.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("qty_base > 0", name="ck_consumable_ledger_qty_positive"),
            sa.CheckConstraint(
                "from_holder_id IS NOT NULL OR to_holder_id IS NOT NULL",
                name="ck_consumable_ledger_has_holder",
            ),
        )
    _create_index("ix_consumable_ledger_time", "consumable_ledger_entries", ["tx_time", "id"])
    _create_index("ix_consumable_ledger_tx_type", "consumable_ledger_entries", ["tx_type"])
    _create_index("ix_consumable_ledger_item_lot", "consumable_ledger_entries", ["item_id", "lot_id", "tx_time"])
    _create_index(
        "ix_consumable_ledger_from",
        "consumable_ledger_entries",
        ["from_holder_type", "from_holder_id", "item_id"],
    )
    _create_index(
        "ix_consumable_ledger_to",
        "consumable_ledger_entries",
        ["to_holder_type", "to_holder_id", "item_id"],
    )

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        # Second line of defence behind the ORM listeners: reject UPDATE/DELETE on ledger rows.
        op.execute(
            """
            CREATE OR REPLACE FUNCTION consumable_ledger_reject_change() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'consumable_ledger_entries is append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            DROP TRIGGER IF EXISTS trg_consumable_ledger_append_only ON consumable_ledger_entries;
            CREATE TRIGGER trg_consumable_ledger_append_only
                BEFORE UPDATE OR DELETE ON consumable_ledger_entries
                FOR EACH ROW EXECUTE FUNCTION consumable_ledger_reject_change();
            """
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_consumable_ledger_append_only ON consumable_ledger_entries;")
        op.execute("DROP FUNCTION IF EXISTS consumable_ledger_reject_change();")

    for table in (
        "consumable_ledger_entries",
        "consumable_balances",
        "consumable_containers",
        "consumable_lots",
        "consumable_reason_codes",
        "consumable_units",
        "consumable_items",
        "audit_events",
    ):
        if _table_exists(table):
            op.drop_table(table)
