from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from fieldops.database import Base
from fieldops.apps.warehouse.models import DeviceCategory, MaterialUnit
from fieldops.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"
    NOT_COMPLETED = "NOT_COMPLETED"
    CANCELED = "CANCELED"


class OrderType(str, enum.Enum):
    INSTALLATION = "INSTALLATION"
    SERVICE = "SERVICE"
    OUTAGE = "OUTAGE"


class ServiceType(str, enum.Enum):
    NET = "NET"
    DTV = "DTV"
    TEL = "TEL"
    ATV = "ATV"


class DeviceSource(str, enum.Enum):
    WAREHOUSE = "WAREHOUSE"
    CLIENT = "CLIENT"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_assigned_status", "assigned_to_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    order_number = Column(String(64), nullable=False, unique=True, index=True)
    type = Column(SAEnum(OrderType, name="order_type", native_enum=False), nullable=False)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    assigned_to_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    settlement_entries = relationship(
        "OrderSettlementEntry",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderSettlementEntry.id",
    )
    materials = relationship(
        "OrderMaterial",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderMaterial.id",
    )
    # Links are written by the warehouse ledger; the order only reads them.
    equipment = relationship(
        "OrderEquipment",
        viewonly=True,
        lazy="selectin",
        order_by="OrderEquipment.id",
    )
    services = relationship(
        "OrderService",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderService.position",
    )


class OrderSettlementEntry(Base):
    """A billable work code reported on completion."""

    __tablename__ = "order_settlement_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)


class OrderMaterial(Base):
    """Consumption snapshot; not linked to live stock after it is written."""

    __tablename__ = "order_materials"
    __table_args__ = (
        UniqueConstraint("order_id", "material_definition_id", name="uq_order_materials_order_definition"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    material_definition_id = Column(
        String(36),
        ForeignKey("material_definitions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    name = Column(String(128), nullable=False)
    unit = Column(SAEnum(MaterialUnit, name="material_unit", native_enum=False), nullable=False)
    quantity = Column(Integer, nullable=False)


class OrderEquipment(Base):
    """Link between an order and a device row it consumed or collected."""

    __tablename__ = "order_equipment"
    __table_args__ = (
        UniqueConstraint("order_id", "item_id", name="uq_order_equipment_order_item"),
        Index("ix_order_equipment_item", "item_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("warehouse_items.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    item = relationship("WarehouseItem", lazy="joined")


class OrderService(Base):
    """Installed service with its device references and measurements."""

    __tablename__ = "order_services"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    type = Column(SAEnum(ServiceType, name="service_type", native_enum=False), nullable=False)

    device_id = Column(String(36), nullable=True)
    device_source = Column(SAEnum(DeviceSource, name="device_source", native_enum=False), nullable=True)
    device_name = Column(String(128), nullable=True)
    device_category = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=True)
    serial_number = Column(String(64), nullable=True)

    device_id2 = Column(String(36), nullable=True)
    device_name2 = Column(String(128), nullable=True)
    device_category2 = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=True)
    serial_number2 = Column(String(64), nullable=True)

    speed_test = Column(String(64), nullable=True)
    us_dbm_down = Column(Float, nullable=True)
    us_dbm_up = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    extra_devices = relationship(
        "OrderExtraDevice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderExtraDevice.id",
    )


class OrderExtraDevice(Base):
    __tablename__ = "order_extra_devices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(String(36), ForeignKey("order_services.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(36), nullable=True)
    source = Column(SAEnum(DeviceSource, name="device_source", native_enum=False), nullable=False)
    category = Column(SAEnum(DeviceCategory, name="device_category", native_enum=False), nullable=True)
    name = Column(String(128), nullable=True)
    serial_number = Column(String(64), nullable=True)


class OrderHistory(Base):
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status_before = Column(SAEnum(OrderStatus, name="order_status", native_enum=False), nullable=False)
    status_after = Column(SAEnum(OrderStatus, name="order_status", native_enum=False), nullable=False)
    changed_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notes = Column(Text, nullable=True)
