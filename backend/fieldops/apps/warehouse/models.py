from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import object_session, relationship

from fieldops.database import Base
from fieldops.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemType(str, enum.Enum):
    DEVICE = "DEVICE"
    MATERIAL = "MATERIAL"


class ItemStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    ASSIGNED_TO_ORDER = "ASSIGNED_TO_ORDER"
    COLLECTED_FROM_CLIENT = "COLLECTED_FROM_CLIENT"
    RETURNED = "RETURNED"
    RETURNED_TO_OPERATOR = "RETURNED_TO_OPERATOR"
    TRANSFER = "TRANSFER"


class HistoryAction(str, enum.Enum):
    RECEIVED = "RECEIVED"
    ISSUED = "ISSUED"
    ASSIGNED_TO_ORDER = "ASSIGNED_TO_ORDER"
    COLLECTED_FROM_CLIENT = "COLLECTED_FROM_CLIENT"
    RETURNED = "RETURNED"
    RETURNED_TO_OPERATOR = "RETURNED_TO_OPERATOR"
    RETURNED_TO_TECHNICIAN = "RETURNED_TO_TECHNICIAN"
    TRANSFER = "TRANSFER"


class DeviceCategory(str, enum.Enum):
    MODEM_HFC = "MODEM_HFC"
    MODEM_GPON = "MODEM_GPON"
    DECODER_1_WAY = "DECODER_1_WAY"
    DECODER_2_WAY = "DECODER_2_WAY"
    NETWORK_DEVICE = "NETWORK_DEVICE"
    ONT = "ONT"
    UA = "UA"
    OTHER = "OTHER"


class MaterialUnit(str, enum.Enum):
    PIECE = "PIECE"
    METER = "METER"


class TechnicianTransferStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"


class LocationTransferStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    RECEIVED = "RECEIVED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"


# Statuses in which a device sits on a technician's stock.
TECHNICIAN_HELD_STATUSES = (ItemStatus.ASSIGNED, ItemStatus.COLLECTED_FROM_CLIENT)


class DeviceDefinition(Base):
    __tablename__ = "device_definitions"
    __table_args__ = (
        UniqueConstraint("category", "name", name="uq_device_definitions_category_name"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(128), nullable=False)
    category = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=False)
    price = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class MaterialDefinition(Base):
    __tablename__ = "material_definitions"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(128), nullable=False, unique=True)
    index = Column(String(64), nullable=True, unique=True)
    unit = Column(
        SAEnum(MaterialUnit, name="material_unit", native_enum=False),
        nullable=False,
        default=MaterialUnit.PIECE,
    )
    price = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class WarehouseItem(Base):
    """
    Common envelope of a ledger row.

    A row is held by exactly one side: a technician (`assigned_to_id`), a
    location (`location_id`), or neither while it is consumed by an order or
    has left the system. DEVICE and MATERIAL payloads live on the subclasses.
    """

    __tablename__ = "warehouse_items"
    __table_args__ = (
        CheckConstraint(
            "NOT (assigned_to_id IS NOT NULL AND location_id IS NOT NULL)",
            name="ck_warehouse_items_single_holder",
        ),
        CheckConstraint(
            "quantity IS NULL OR quantity >= 0",
            name="ck_warehouse_items_quantity_non_negative",
        ),
        Index("ix_warehouse_items_holder", "item_type", "assigned_to_id", "status"),
        Index("ix_warehouse_items_location", "item_type", "location_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    item_type = Column(SAEnum(ItemType, name="warehouse_item_type", native_enum=False), nullable=False)
    name = Column(String(128), nullable=False)
    status = Column(
        SAEnum(ItemStatus, name="warehouse_item_status", native_enum=False),
        nullable=False,
        default=ItemStatus.AVAILABLE,
    )
    price = Column(Numeric(12, 2), nullable=False, default=0)
    assigned_to_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True, index=True)
    location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"polymorphic_on": item_type}


class DeviceItem(WarehouseItem):
    """A serialized unit; moves are identity moves on this row."""

    serial_number = Column(String(64), nullable=True, unique=True)
    category = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=True)
    device_definition_id = Column(
        String(36),
        ForeignKey("device_definitions.id", ondelete="SET NULL"),
        nullable=True,
    )

    __mapper_args__ = {"polymorphic_identity": ItemType.DEVICE}

    def open_transfer(self) -> Optional["PendingTransfer"]:
        session = object_session(self)
        if session is None or self.id is None:
            return None
        return (
            session.query(PendingTransfer)
            .filter(
                PendingTransfer.item_id == self.id,
                PendingTransfer.item_type == ItemType.DEVICE,
                PendingTransfer.status == TechnicianTransferStatus.PENDING,
            )
            .first()
        )

    @property
    def transfer_pending(self) -> bool:
        return self.open_transfer() is not None

    @property
    def transfer_to_id(self) -> Optional[str]:
        transfer = self.open_transfer()
        return transfer.recipient_id if transfer else None


class MaterialStock(WarehouseItem):
    """Fungible stock of one material definition held by one technician or location."""

    material_definition_id = Column(
        String(36),
        ForeignKey("material_definitions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    quantity = Column(Integer, nullable=True)
    unit = Column(SAEnum(MaterialUnit, name="material_unit", native_enum=False), nullable=True)
    index = Column(String(64), nullable=True)

    definition = relationship("MaterialDefinition", lazy="joined")

    __mapper_args__ = {"polymorphic_identity": ItemType.MATERIAL}


class WarehouseHistory(Base):
    """Append-only record of one ledger transition."""

    __tablename__ = "warehouse_history"
    __table_args__ = (
        Index("ix_warehouse_history_item_date", "item_id", "action_date"),
        Index("ix_warehouse_history_order_action", "assigned_order_id", "action"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String(36), ForeignKey("warehouse_items.id", ondelete="CASCADE"), nullable=False)
    action = Column(SAEnum(HistoryAction, name="warehouse_history_action", native_enum=False), nullable=False)
    performed_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    quantity = Column(Integer, nullable=True)
    assigned_order_id = Column(String(36), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    assigned_to_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    from_location_id = Column(String(36), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    to_location_id = Column(String(36), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True)
    location_transfer_id = Column(
        String(36),
        ForeignKey("location_transfers.id", ondelete="SET NULL"),
        nullable=True,
    )
    notes = Column(Text, nullable=True)


class PendingTransfer(Base):
    """
    Technician-to-technician escrow.

    DEVICE: the device row stays with the sender until confirm; at most one
    PENDING transfer per device. MATERIAL: the quantity already left the
    sender's stock row and is parked here until confirm, reject or cancel.
    """

    __tablename__ = "pending_transfers"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_pending_transfers_quantity_positive"),
        Index(
            "uq_pending_transfers_open_device",
            "item_id",
            unique=True,
            sqlite_where=text("status = 'PENDING' AND item_type = 'DEVICE'"),
            postgresql_where=text("status = 'PENDING' AND item_type = 'DEVICE'"),
        ),
        Index("ix_pending_transfers_recipient_status", "recipient_id", "status"),
        Index("ix_pending_transfers_sender_status", "sender_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    item_type = Column(SAEnum(ItemType, name="warehouse_item_type", native_enum=False), nullable=False)
    item_id = Column(String(36), ForeignKey("warehouse_items.id", ondelete="SET NULL"), nullable=True)
    material_definition_id = Column(
        String(36),
        ForeignKey("material_definitions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    name = Column(String(128), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    status = Column(
        SAEnum(TechnicianTransferStatus, name="technician_transfer_status", native_enum=False),
        nullable=False,
        default=TechnicianTransferStatus.PENDING,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class LocationTransfer(Base):
    __tablename__ = "location_transfers"
    __table_args__ = (
        CheckConstraint("from_location_id <> to_location_id", name="ck_location_transfers_distinct"),
        Index("ix_location_transfers_to_status", "to_location_id", "status"),
        Index("ix_location_transfers_from_status", "from_location_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    from_location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    to_location_id = Column(String(36), ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    status = Column(
        SAEnum(LocationTransferStatus, name="location_transfer_status", native_enum=False),
        nullable=False,
        default=LocationTransferStatus.REQUESTED,
    )
    notes = Column(Text, nullable=True)
    requested_by_id = Column(String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    confirmed_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    lines = relationship(
        "LocationTransferLine",
        back_populates="transfer",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LocationTransferLine.id",
    )


class LocationTransferLine(Base):
    """Snapshot of one moved device or material quantity."""

    __tablename__ = "location_transfer_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transfer_id = Column(String(36), ForeignKey("location_transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    item_type = Column(SAEnum(ItemType, name="warehouse_item_type", native_enum=False), nullable=False)
    item_id = Column(String(36), ForeignKey("warehouse_items.id", ondelete="SET NULL"), nullable=True)
    material_definition_id = Column(
        String(36),
        ForeignKey("material_definitions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    name = Column(String(128), nullable=False)
    category = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=True)
    serial_number = Column(String(64), nullable=True)
    index = Column(String(64), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit = Column(SAEnum(MaterialUnit, name="material_unit", native_enum=False), nullable=True)

    transfer = relationship("LocationTransfer", back_populates="lines")


class TechnicianMaterialDeficit(Base):
    """Units a technician reported as used beyond what their stock held."""

    __tablename__ = "technician_material_deficits"
    __table_args__ = (
        UniqueConstraint(
            "technician_id",
            "material_definition_id",
            name="uq_technician_material_deficit",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    technician_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    material_definition_id = Column(
        String(36),
        ForeignKey("material_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
