"""Initial schema: accounts, warehouse ledger, transfers and order settlement.

Revision ID: a1c3e5f70912
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f70912"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return bool(insp.has_table(table_name))


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


ACCOUNT_ROLE = ("ADMIN", "COORDINATOR", "WAREHOUSEMAN", "TECHNICIAN")
ITEM_TYPE = ("DEVICE", "MATERIAL")
ITEM_STATUS = (
    "AVAILABLE",
    "ASSIGNED",
    "ASSIGNED_TO_ORDER",
    "COLLECTED_FROM_CLIENT",
    "RETURNED",
    "RETURNED_TO_OPERATOR",
    "TRANSFER",
)
HISTORY_ACTION = (
    "RECEIVED",
    "ISSUED",
    "ASSIGNED_TO_ORDER",
    "COLLECTED_FROM_CLIENT",
    "RETURNED",
    "RETURNED_TO_OPERATOR",
    "RETURNED_TO_TECHNICIAN",
    "TRANSFER",
)
DEVICE_CATEGORY = (
    "MODEM_HFC",
    "MODEM_GPON",
    "DECODER_1_WAY",
    "DECODER_2_WAY",
    "NETWORK_DEVICE",
    "ONT",
    "UA",
    "OTHER",
)
MATERIAL_UNIT = ("PIECE", "METER")
TECHNICIAN_TRANSFER_STATUS = ("PENDING", "CONFIRMED", "REJECTED", "CANCELED")
LOCATION_TRANSFER_STATUS = ("REQUESTED", "RECEIVED", "REJECTED", "CANCELED")
ORDER_STATUS = ("PENDING", "ASSIGNED", "COMPLETED", "NOT_COMPLETED", "CANCELED")
ORDER_TYPE = ("INSTALLATION", "SERVICE", "OUTAGE")
SERVICE_TYPE = ("NET", "DTV", "TEL", "ATV")
DEVICE_SOURCE = ("WAREHOUSE", "CLIENT")


def upgrade() -> None:
    # --- Accounts ---
    if not _table_exists("locations"):
        op.create_table(
            "locations",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False, unique=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    if not _table_exists("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("email", sa.String(255), nullable=False),
            sa.Column("full_name", sa.String(255), nullable=False),
            sa.Column("role", _enum("account_role", *ACCOUNT_ROLE), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_role", "users", ["role"])
        op.create_index("idx_users_role_active", "users", ["role", "is_active"])

    if not _table_exists("user_locations"):
        op.create_table(
            "user_locations",
            sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="CASCADE"),
                primary_key=True,
            ),
        )

    # --- Definitions ---
    if not _table_exists("device_definitions"):
        op.create_table(
            "device_definitions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("category", _enum("device_category", *DEVICE_CATEGORY), nullable=False),
            sa.Column("price", sa.Numeric(12, 2), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("category", "name", name="uq_device_definitions_category_name"),
        )

    if not _table_exists("material_definitions"):
        op.create_table(
            "material_definitions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False, unique=True),
            sa.Column("index", sa.String(64), nullable=True, unique=True),
            sa.Column("unit", _enum("material_unit", *MATERIAL_UNIT), nullable=False),
            sa.Column("price", sa.Numeric(12, 2), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    # --- Orders (header first; warehouse history points at it) ---
    if not _table_exists("orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("order_number", sa.String(64), nullable=False),
            sa.Column("type", _enum("order_type", *ORDER_TYPE), nullable=False),
            sa.Column("status", _enum("order_status", *ORDER_STATUS), nullable=False),
            sa.Column("assigned_to_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_assigned_status", "orders", ["assigned_to_id", "status"])

    # --- Warehouse ledger ---
    if not _table_exists("warehouse_items"):
        op.create_table(
            "warehouse_items",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("item_type", _enum("warehouse_item_type", *ITEM_TYPE), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("status", _enum("warehouse_item_status", *ITEM_STATUS), nullable=False),
            sa.Column("price", sa.Numeric(12, 2), nullable=False),
            sa.Column(
                "assigned_to_id",
                sa.String(36),
                sa.ForeignKey("users.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column(
                "location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            # DEVICE payload
            sa.Column("serial_number", sa.String(64), nullable=True, unique=True),
            sa.Column("category", _enum("device_category", *DEVICE_CATEGORY), nullable=True),
            sa.Column(
                "device_definition_id",
                sa.String(36),
                sa.ForeignKey("device_definitions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            # MATERIAL payload
            sa.Column(
                "material_definition_id",
                sa.String(36),
                sa.ForeignKey("material_definitions.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("quantity", sa.Integer(), nullable=True),
            sa.Column("unit", _enum("material_unit", *MATERIAL_UNIT), nullable=True),
            sa.Column("index", sa.String(64), nullable=True),
            sa.CheckConstraint(
                "NOT (assigned_to_id IS NOT NULL AND location_id IS NOT NULL)",
                name="ck_warehouse_items_single_holder",
            ),
            sa.CheckConstraint(
                "quantity IS NULL OR quantity >= 0",
                name="ck_warehouse_items_quantity_non_negative",
            ),
        )
        op.create_index("ix_warehouse_items_assigned_to_id", "warehouse_items", ["assigned_to_id"])
        op.create_index("ix_warehouse_items_location_id", "warehouse_items", ["location_id"])
        op.create_index(
            "ix_warehouse_items_material_definition_id",
            "warehouse_items",
            ["material_definition_id"],
        )
        op.create_index("ix_warehouse_items_holder", "warehouse_items", ["item_type", "assigned_to_id", "status"])
        op.create_index("ix_warehouse_items_location", "warehouse_items", ["item_type", "location_id", "status"])

    if not _table_exists("location_transfers"):
        op.create_table(
            "location_transfers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "from_location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column(
                "to_location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("status", _enum("location_transfer_status", *LOCATION_TRANSFER_STATUS), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column(
                "requested_by_id",
                sa.String(36),
                sa.ForeignKey("users.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("confirmed_by_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("from_location_id <> to_location_id", name="ck_location_transfers_distinct"),
        )
        op.create_index("ix_location_transfers_to_status", "location_transfers", ["to_location_id", "status"])
        op.create_index("ix_location_transfers_from_status", "location_transfers", ["from_location_id", "status"])

    if not _table_exists("location_transfer_lines"):
        op.create_table(
            "location_transfer_lines",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "transfer_id",
                sa.String(36),
                sa.ForeignKey("location_transfers.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("item_type", _enum("warehouse_item_type", *ITEM_TYPE), nullable=False),
            sa.Column("item_id", sa.String(36), sa.ForeignKey("warehouse_items.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "material_definition_id",
                sa.String(36),
                sa.ForeignKey("material_definitions.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("category", _enum("device_category", *DEVICE_CATEGORY), nullable=True),
            sa.Column("serial_number", sa.String(64), nullable=True),
            sa.Column("index", sa.String(64), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit", _enum("material_unit", *MATERIAL_UNIT), nullable=True),
        )
        op.create_index("ix_location_transfer_lines_transfer_id", "location_transfer_lines", ["transfer_id"])

    if not _table_exists("warehouse_history"):
        op.create_table(
            "warehouse_history",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "item_id",
                sa.String(36),
                sa.ForeignKey("warehouse_items.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("action", _enum("warehouse_history_action", *HISTORY_ACTION), nullable=False),
            sa.Column("performed_by_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("action_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=True),
            sa.Column(
                "assigned_order_id",
                sa.String(36),
                sa.ForeignKey("orders.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("assigned_to_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "from_location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "to_location_id",
                sa.String(36),
                sa.ForeignKey("locations.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "location_transfer_id",
                sa.String(36),
                sa.ForeignKey("location_transfers.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("notes", sa.Text(), nullable=True),
        )
        op.create_index("ix_warehouse_history_item_date", "warehouse_history", ["item_id", "action_date"])
        op.create_index("ix_warehouse_history_order_action", "warehouse_history", ["assigned_order_id", "action"])

    if not _table_exists("pending_transfers"):
        op.create_table(
            "pending_transfers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("item_type", _enum("warehouse_item_type", *ITEM_TYPE), nullable=False),
            sa.Column("item_id", sa.String(36), sa.ForeignKey("warehouse_items.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "material_definition_id",
                sa.String(36),
                sa.ForeignKey("material_definitions.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("sender_id", sa.String(36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("recipient_id", sa.String(36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("status", _enum("technician_transfer_status", *TECHNICIAN_TRANSFER_STATUS), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolved_by_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.CheckConstraint("quantity > 0", name="ck_pending_transfers_quantity_positive"),
        )
        op.create_index(
            "uq_pending_transfers_open_device",
            "pending_transfers",
            ["item_id"],
            unique=True,
            sqlite_where=sa.text("status = 'PENDING' AND item_type = 'DEVICE'"),
            postgresql_where=sa.text("status = 'PENDING' AND item_type = 'DEVICE'"),
        )
        op.create_index("ix_pending_transfers_recipient_status", "pending_transfers", ["recipient_id", "status"])
        op.create_index("ix_pending_transfers_sender_status", "pending_transfers", ["sender_id", "status"])

    if not _table_exists("technician_material_deficits"):
        op.create_table(
            "technician_material_deficits",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("technician_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column(
                "material_definition_id",
                sa.String(36),
                sa.ForeignKey("material_definitions.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("technician_id", "material_definition_id", name="uq_technician_material_deficit"),
        )

    # --- Order settlement records ---
    if not _table_exists("order_settlement_entries"):
        op.create_table(
            "order_settlement_entries",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("code", sa.String(64), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
        )
        op.create_index("ix_order_settlement_entries_order_id", "order_settlement_entries", ["order_id"])

    if not _table_exists("order_materials"):
        op.create_table(
            "order_materials",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column(
                "material_definition_id",
                sa.String(36),
                sa.ForeignKey("material_definitions.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("unit", _enum("material_unit", *MATERIAL_UNIT), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.UniqueConstraint("order_id", "material_definition_id", name="uq_order_materials_order_definition"),
        )
        op.create_index("ix_order_materials_order_id", "order_materials", ["order_id"])

    if not _table_exists("order_equipment"):
        op.create_table(
            "order_equipment",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column(
                "item_id",
                sa.String(36),
                sa.ForeignKey("warehouse_items.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("order_id", "item_id", name="uq_order_equipment_order_item"),
        )
        op.create_index("ix_order_equipment_order_id", "order_equipment", ["order_id"])
        op.create_index("ix_order_equipment_item", "order_equipment", ["item_id"])

    if not _table_exists("order_services"):
        op.create_table(
            "order_services",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("type", _enum("service_type", *SERVICE_TYPE), nullable=False),
            sa.Column("device_id", sa.String(36), nullable=True),
            sa.Column("device_source", _enum("device_source", *DEVICE_SOURCE), nullable=True),
            sa.Column("device_name", sa.String(128), nullable=True),
            sa.Column("device_category", _enum("device_category", *DEVICE_CATEGORY), nullable=True),
            sa.Column("serial_number", sa.String(64), nullable=True),
            sa.Column("device_id2", sa.String(36), nullable=True),
            sa.Column("device_name2", sa.String(128), nullable=True),
            sa.Column("device_category2", _enum("device_category", *DEVICE_CATEGORY), nullable=True),
            sa.Column("serial_number2", sa.String(64), nullable=True),
            sa.Column("speed_test", sa.String(64), nullable=True),
            sa.Column("us_dbm_down", sa.Float(), nullable=True),
            sa.Column("us_dbm_up", sa.Float(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
        )
        op.create_index("ix_order_services_order_id", "order_services", ["order_id"])

    if not _table_exists("order_extra_devices"):
        op.create_table(
            "order_extra_devices",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "service_id",
                sa.String(36),
                sa.ForeignKey("order_services.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("item_id", sa.String(36), nullable=True),
            sa.Column("source", _enum("device_source", *DEVICE_SOURCE), nullable=False),
            sa.Column("category", _enum("device_category", *DEVICE_CATEGORY), nullable=True),
            sa.Column("name", sa.String(128), nullable=True),
            sa.Column("serial_number", sa.String(64), nullable=True),
        )
        op.create_index("ix_order_extra_devices_service_id", "order_extra_devices", ["service_id"])

    if not _table_exists("order_history"):
        op.create_table(
            "order_history",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("status_before", _enum("order_status", *ORDER_STATUS), nullable=False),
            sa.Column("status_after", _enum("order_status", *ORDER_STATUS), nullable=False),
            sa.Column("changed_by_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
        )
        op.create_index("ix_order_history_order_id", "order_history", ["order_id"])


def downgrade() -> None:
    # Reverse dependency order; guarded so a partial upgrade can be unwound.
    for table_name in (
        "order_history",
        "order_extra_devices",
        "order_services",
        "order_equipment",
        "order_materials",
        "order_settlement_entries",
        "technician_material_deficits",
        "pending_transfers",
        "warehouse_history",
        "location_transfer_lines",
        "location_transfers",
        "warehouse_items",
        "orders",
        "material_definitions",
        "device_definitions",
        "user_locations",
        "users",
        "locations",
    ):
        if _table_exists(table_name):
            op.drop_table(table_name)
