from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class ReceiveRequest(BaseModel):
    item_type: models.ItemType
    definition_id: str
    location_id: Optional[str] = None
    serial_number: Optional[str] = None
    quantity: Optional[int] = Field(None, gt=0)


class IssueRequest(BaseModel):
    item_id: str
    technician_id: str
    location_id: Optional[str] = None
    quantity: Optional[int] = Field(None, gt=0)


class ReturnRequest(BaseModel):
    item_id: str
    location_id: Optional[str] = None
    quantity: Optional[int] = Field(None, gt=0)


class CollectRequest(BaseModel):
    order_id: str
    name: str
    category: models.DeviceCategory
    serial_number: Optional[str] = None


class ItemRead(BaseModel):
    id: str
    item_type: models.ItemType
    name: str
    status: models.ItemStatus
    price: Decimal
    assigned_to_id: Optional[str] = None
    location_id: Optional[str] = None
    serial_number: Optional[str] = None
    category: Optional[models.DeviceCategory] = None
    material_definition_id: Optional[str] = None
    quantity: Optional[int] = None
    unit: Optional[models.MaterialUnit] = None
    index: Optional[str] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class HistoryRead(BaseModel):
    id: int
    item_id: str
    action: models.HistoryAction
    performed_by_id: Optional[str] = None
    action_date: datetime
    quantity: Optional[int] = None
    assigned_order_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    from_location_id: Optional[str] = None
    to_location_id: Optional[str] = None
    location_transfer_id: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class LedgerResultRead(BaseModel):
    item: ItemRead
    entry: HistoryRead

    class Config:
        from_attributes = True


class DeficitRead(BaseModel):
    material_definition_id: str
    quantity: int
    updated_at: datetime

    class Config:
        from_attributes = True


class TechnicianStockRead(BaseModel):
    technician_id: str
    devices: List[ItemRead] = Field(default_factory=list)
    materials: List[ItemRead] = Field(default_factory=list)
    deficits: List[DeficitRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# TECHNICIAN TRANSFERS
# ---------------------------------------------------------------------------


class TransferRequest(BaseModel):
    recipient_id: str
    item_id: str
    quantity: Optional[int] = Field(None, gt=0)


class PendingTransferRead(BaseModel):
    id: str
    item_type: models.ItemType
    item_id: Optional[str] = None
    material_definition_id: Optional[str] = None
    name: str
    quantity: int
    sender_id: str
    recipient_id: str
    status: models.TechnicianTransferStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by_id: Optional[str] = None

    class Config:
        from_attributes = True


class TransferResolutionRead(BaseModel):
    transfer: PendingTransferRead
    history_id: Optional[int] = None


# ---------------------------------------------------------------------------
# LOCATION TRANSFERS
# ---------------------------------------------------------------------------


class MaterialLineIn(BaseModel):
    material_definition_id: str
    quantity: int = Field(..., gt=0)


class LocationTransferRequest(BaseModel):
    to_location_id: str
    from_location_id: Optional[str] = None
    device_ids: List[str] = Field(default_factory=list)
    materials: List[MaterialLineIn] = Field(default_factory=list)
    notes: Optional[str] = None


class LocationTransferLineRead(BaseModel):
    item_type: models.ItemType
    item_id: Optional[str] = None
    material_definition_id: Optional[str] = None
    name: str
    category: Optional[models.DeviceCategory] = None
    serial_number: Optional[str] = None
    index: Optional[str] = None
    quantity: int
    unit: Optional[models.MaterialUnit] = None

    class Config:
        from_attributes = True


class LocationTransferRead(BaseModel):
    id: str
    from_location_id: str
    to_location_id: str
    status: models.LocationTransferStatus
    notes: Optional[str] = None
    requested_by_id: str
    confirmed_by_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime
    lines: List[LocationTransferLineRead] = Field(default_factory=list)

    class Config:
        from_attributes = True


class BatchResolutionRead(BaseModel):
    transfer: LocationTransferRead
    history_ids: List[int] = Field(default_factory=list)
