from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from fieldops.apps.warehouse.models import DeviceCategory, ItemStatus, MaterialUnit

from . import models


class WorkCodeIn(BaseModel):
    code: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class UsedMaterialIn(BaseModel):
    material_definition_id: str
    quantity: int = Field(..., gt=0)


class CollectedDeviceIn(BaseModel):
    name: str
    category: DeviceCategory
    serial_number: Optional[str] = None


class ExtraDeviceIn(BaseModel):
    source: models.DeviceSource
    item_id: Optional[str] = None
    category: Optional[DeviceCategory] = None
    name: Optional[str] = None
    serial_number: Optional[str] = None


class ServiceIn(BaseModel):
    type: models.ServiceType

    device_id: Optional[str] = None
    device_source: Optional[models.DeviceSource] = None
    device_name: Optional[str] = None
    device_category: Optional[DeviceCategory] = None
    serial_number: Optional[str] = None

    # Second device is always taken from stock.
    device_id2: Optional[str] = None
    device_name2: Optional[str] = None
    device_category2: Optional[DeviceCategory] = None
    serial_number2: Optional[str] = None

    speed_test: Optional[str] = None
    us_dbm_down: Optional[float] = None
    us_dbm_up: Optional[float] = None
    notes: Optional[str] = None

    extra_devices: List[ExtraDeviceIn] = Field(default_factory=list)


class OrderCompletionRequest(BaseModel):
    status: models.OrderStatus
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    work_codes: List[WorkCodeIn] = Field(default_factory=list)
    equipment_ids: List[str] = Field(default_factory=list)
    issued_device_ids: List[str] = Field(default_factory=list)
    used_materials: List[UsedMaterialIn] = Field(default_factory=list)
    collected_devices: List[CollectedDeviceIn] = Field(default_factory=list)
    services: List[ServiceIn] = Field(default_factory=list)


class SettlementEntryRead(BaseModel):
    code: str
    quantity: int

    class Config:
        from_attributes = True


class OrderMaterialRead(BaseModel):
    material_definition_id: str
    name: str
    unit: MaterialUnit
    quantity: int

    class Config:
        from_attributes = True


class EquipmentItemRead(BaseModel):
    id: str
    name: str
    status: ItemStatus
    serial_number: Optional[str] = None
    category: Optional[DeviceCategory] = None

    class Config:
        from_attributes = True


class OrderEquipmentRead(BaseModel):
    item_id: str
    item: EquipmentItemRead

    class Config:
        from_attributes = True


class ExtraDeviceRead(BaseModel):
    source: models.DeviceSource
    item_id: Optional[str] = None
    category: Optional[DeviceCategory] = None
    name: Optional[str] = None
    serial_number: Optional[str] = None

    class Config:
        from_attributes = True


class ServiceRead(BaseModel):
    id: str
    position: int
    type: models.ServiceType
    device_id: Optional[str] = None
    device_source: Optional[models.DeviceSource] = None
    device_name: Optional[str] = None
    device_category: Optional[DeviceCategory] = None
    serial_number: Optional[str] = None
    device_id2: Optional[str] = None
    device_name2: Optional[str] = None
    device_category2: Optional[DeviceCategory] = None
    serial_number2: Optional[str] = None
    speed_test: Optional[str] = None
    us_dbm_down: Optional[float] = None
    us_dbm_up: Optional[float] = None
    notes: Optional[str] = None
    extra_devices: List[ExtraDeviceRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: str
    order_number: str
    type: models.OrderType
    status: models.OrderStatus
    assigned_to_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    failure_reason: Optional[str] = None
    settlement_entries: List[SettlementEntryRead] = Field(default_factory=list)
    materials: List[OrderMaterialRead] = Field(default_factory=list)
    equipment: List[OrderEquipmentRead] = Field(default_factory=list)
    services: List[ServiceRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class SettlementRead(BaseModel):
    order: OrderRead
    warnings: List[str] = Field(default_factory=list)
    history_ids: List[int] = Field(default_factory=list)

    class Config:
        from_attributes = True


class AmendPolicyRead(BaseModel):
    order_id: str
    can_amend: bool
    deadline: Optional[datetime] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True
