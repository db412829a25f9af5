"""
Item ledger: the only code that moves a warehouse row between holders.

Devices move by identity (the same row changes status / holder). Materials
move by quantity: the source row is decremented with a conditional UPDATE and
the destination row for (definition, holder) is found or created and
incremented. Every state change appends one history entry in the same
session and is returned with it as a LedgerResult.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.orders import models as order_models
from fieldops.utils.identifiers import normalize_serial

from . import history, models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    item: models.WarehouseItem
    entry: models.WarehouseHistory


@dataclass(frozen=True)
class MaterialConsumption:
    definition: models.MaterialDefinition
    requested: int
    covered: int
    result: Optional[LedgerResult]

    @property
    def missing(self) -> int:
        return self.requested - self.covered


# ---------------------------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------------------------


def _describe(device: models.DeviceItem) -> str:
    return f"{device.name} SN: {device.serial_number or 'none'}"


def get_item(db: Session, item_id: str, *, lock: bool = False) -> models.WarehouseItem:
    query = db.query(models.WarehouseItem).filter(models.WarehouseItem.id == item_id)
    if lock:
        query = query.with_for_update()
    item = query.first()
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Item {item_id} not found.")
    return item


def get_device(db: Session, item_id: str, *, lock: bool = False) -> models.DeviceItem:
    item = get_item(db, item_id, lock=lock)
    if not isinstance(item, models.DeviceItem):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{item.name} is a material, not a device.",
        )
    return item


def get_material_stock(db: Session, item_id: str, *, lock: bool = False) -> models.MaterialStock:
    item = get_item(db, item_id, lock=lock)
    if not isinstance(item, models.MaterialStock):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{item.name} is a device, not a material.",
        )
    return item


def get_device_definition(db: Session, definition_id: str) -> models.DeviceDefinition:
    definition = (
        db.query(models.DeviceDefinition)
        .filter(models.DeviceDefinition.id == definition_id)
        .first()
    )
    if not definition:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device definition not found.")
    return definition


def get_material_definition(db: Session, definition_id: str) -> models.MaterialDefinition:
    definition = (
        db.query(models.MaterialDefinition)
        .filter(models.MaterialDefinition.id == definition_id)
        .first()
    )
    if not definition:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Material definition not found.")
    return definition


def find_stock(
    db: Session,
    *,
    definition_id: str,
    technician_id: Optional[str] = None,
    location_id: Optional[str] = None,
) -> Optional[models.MaterialStock]:
    query = db.query(models.MaterialStock).filter(
        models.MaterialStock.material_definition_id == definition_id
    )
    if technician_id is not None:
        query = query.filter(models.MaterialStock.assigned_to_id == technician_id)
    else:
        query = query.filter(
            models.MaterialStock.assigned_to_id.is_(None),
            models.MaterialStock.location_id == location_id,
        )
    return query.order_by(models.MaterialStock.created_at.asc()).with_for_update().first()


def ensure_stock(
    db: Session,
    *,
    definition: models.MaterialDefinition,
    technician_id: Optional[str] = None,
    location_id: Optional[str] = None,
) -> models.MaterialStock:
    if (technician_id is None) == (location_id is None):
        raise ValueError("Material stock is held by exactly one technician or location")
    stock = find_stock(
        db,
        definition_id=definition.id,
        technician_id=technician_id,
        location_id=location_id,
    )
    if stock:
        return stock
    stock = models.MaterialStock(
        name=definition.name,
        material_definition_id=definition.id,
        quantity=0,
        unit=definition.unit,
        index=definition.index,
        price=definition.price or 0,
        status=models.ItemStatus.ASSIGNED if technician_id else models.ItemStatus.AVAILABLE,
        assigned_to_id=technician_id,
        location_id=location_id,
    )
    db.add(stock)
    db.flush()
    return stock


def _require_quantity(quantity: Optional[int]) -> int:
    if quantity is None or quantity <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A positive quantity is required for materials.",
        )
    return quantity


def _decrement(db: Session, stock: models.MaterialStock, quantity: int) -> None:
    db.flush()
    updated = (
        db.query(models.MaterialStock)
        .filter(
            models.MaterialStock.id == stock.id,
            models.MaterialStock.quantity >= quantity,
        )
        .update(
            {models.MaterialStock.quantity: models.MaterialStock.quantity - quantity},
            synchronize_session="fetch",
        )
    )
    if not updated:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Insufficient stock of {stock.name}: requested {quantity}, available {stock.quantity}.",
        )


def _increment(db: Session, stock: models.MaterialStock, quantity: int) -> None:
    db.flush()
    db.query(models.MaterialStock).filter(models.MaterialStock.id == stock.id).update(
        {models.MaterialStock.quantity: models.MaterialStock.quantity + quantity},
        synchronize_session="fetch",
    )


def _link(db: Session, *, order_id: str, item_id: str) -> order_models.OrderEquipment:
    link = (
        db.query(order_models.OrderEquipment)
        .filter(
            order_models.OrderEquipment.order_id == order_id,
            order_models.OrderEquipment.item_id == item_id,
        )
        .first()
    )
    if link:
        return link
    link = order_models.OrderEquipment(order_id=order_id, item_id=item_id)
    db.add(link)
    db.flush()
    return link


def unlink(db: Session, *, order_id: str, item_id: str) -> None:
    db.query(order_models.OrderEquipment).filter(
        order_models.OrderEquipment.order_id == order_id,
        order_models.OrderEquipment.item_id == item_id,
    ).delete(synchronize_session=False)


def _ensure_no_open_transfer(device: models.DeviceItem) -> None:
    if device.transfer_pending:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Device {_describe(device)} has a pending transfer.",
        )


# ---------------------------------------------------------------------------
# RECEIPT
# ---------------------------------------------------------------------------


def receive_device(
    db: Session,
    *,
    actor: account_models.User,
    location_id: str,
    definition_id: str,
    serial_number: Optional[str],
) -> LedgerResult:
    account_services.ensure_location_access(actor, location_id)
    definition = get_device_definition(db, definition_id)
    if definition.price is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Device definition {definition.name} has no price.",
        )
    serial = normalize_serial(serial_number)
    if not serial:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="serial_number is required to receive a device.",
        )
    existing = db.query(models.DeviceItem).filter(models.DeviceItem.serial_number == serial).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Device with serial number {serial} already exists.",
        )

    device = models.DeviceItem(
        name=definition.name,
        category=definition.category,
        device_definition_id=definition.id,
        serial_number=serial,
        price=definition.price,
        status=models.ItemStatus.AVAILABLE,
        location_id=location_id,
    )
    db.add(device)
    db.flush()
    entry = history.record(
        db,
        item=device,
        action=models.HistoryAction.RECEIVED,
        performed_by_id=actor.id,
        quantity=1,
        to_location_id=location_id,
    )
    return LedgerResult(device, entry)


def receive_material(
    db: Session,
    *,
    actor: account_models.User,
    location_id: str,
    definition_id: str,
    quantity: Optional[int],
) -> LedgerResult:
    account_services.ensure_location_access(actor, location_id)
    quantity = _require_quantity(quantity)
    definition = get_material_definition(db, definition_id)
    if definition.price is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Material definition {definition.name} has no price.",
        )
    stock = ensure_stock(db, definition=definition, location_id=location_id)
    _increment(db, stock, quantity)
    entry = history.record(
        db,
        item=stock,
        action=models.HistoryAction.RECEIVED,
        performed_by_id=actor.id,
        quantity=quantity,
        to_location_id=location_id,
    )
    return LedgerResult(stock, entry)


def receive(
    db: Session,
    *,
    actor: account_models.User,
    item_type: models.ItemType,
    location_id: str,
    definition_id: str,
    serial_number: Optional[str] = None,
    quantity: Optional[int] = None,
) -> LedgerResult:
    if item_type == models.ItemType.DEVICE:
        if quantity not in (None, 1):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Devices are received one serial number at a time.",
            )
        return receive_device(
            db,
            actor=actor,
            location_id=location_id,
            definition_id=definition_id,
            serial_number=serial_number,
        )
    return receive_material(
        db,
        actor=actor,
        location_id=location_id,
        definition_id=definition_id,
        quantity=quantity,
    )


# ---------------------------------------------------------------------------
# WAREHOUSE <-> TECHNICIAN
# ---------------------------------------------------------------------------


def issue_to(
    db: Session,
    *,
    actor: account_models.User,
    item_id: str,
    technician_id: str,
    location_id: str,
    quantity: Optional[int] = None,
) -> LedgerResult:
    """Hand stock of `location_id` to a technician."""
    account_services.ensure_location_access(actor, location_id)
    technician = account_services.get_active_technician(db, technician_id)
    item = get_item(db, item_id, lock=True)

    if item.location_id != location_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{item.name} is not stored at this location.",
        )

    if isinstance(item, models.DeviceItem):
        if quantity not in (None, 1):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Devices are issued one at a time.",
            )
        if item.status != models.ItemStatus.AVAILABLE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Device {_describe(item)} is not available (status {item.status.value}).",
            )
        item.status = models.ItemStatus.ASSIGNED
        item.assigned_to_id = technician.id
        item.location_id = None
        db.flush()
        entry = history.record(
            db,
            item=item,
            action=models.HistoryAction.ISSUED,
            performed_by_id=actor.id,
            quantity=1,
            assigned_to_id=technician.id,
            from_location_id=location_id,
        )
        return LedgerResult(item, entry)

    quantity = _require_quantity(quantity)
    _decrement(db, item, quantity)
    target = ensure_stock(db, definition=item.definition, technician_id=technician.id)
    _increment(db, target, quantity)
    entry = history.record(
        db,
        item=target,
        action=models.HistoryAction.ISSUED,
        performed_by_id=actor.id,
        quantity=quantity,
        assigned_to_id=technician.id,
        from_location_id=location_id,
    )
    return LedgerResult(target, entry)


def return_to_location(
    db: Session,
    *,
    actor: account_models.User,
    item_id: str,
    location_id: str,
    quantity: Optional[int] = None,
) -> LedgerResult:
    """Take stock back from a technician into `location_id`."""
    account_services.ensure_location_access(actor, location_id)
    item = get_item(db, item_id, lock=True)

    if item.assigned_to_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{item.name} is not held by a technician.",
        )
    technician_id = item.assigned_to_id

    if isinstance(item, models.DeviceItem):
        if item.status not in models.TECHNICIAN_HELD_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Device {_describe(item)} cannot be returned (status {item.status.value}).",
            )
        _ensure_no_open_transfer(item)
        if item.status == models.ItemStatus.COLLECTED_FROM_CLIENT:
            item.status = models.ItemStatus.RETURNED
        else:
            item.status = models.ItemStatus.AVAILABLE
        item.assigned_to_id = None
        item.location_id = location_id
        db.flush()
        entry = history.record(
            db,
            item=item,
            action=models.HistoryAction.RETURNED,
            performed_by_id=actor.id,
            quantity=1,
            assigned_to_id=technician_id,
            to_location_id=location_id,
        )
        return LedgerResult(item, entry)

    quantity = _require_quantity(quantity)
    _decrement(db, item, quantity)
    target = ensure_stock(db, definition=item.definition, location_id=location_id)
    _increment(db, target, quantity)
    entry = history.record(
        db,
        item=target,
        action=models.HistoryAction.RETURNED,
        performed_by_id=actor.id,
        quantity=quantity,
        assigned_to_id=technician_id,
        to_location_id=location_id,
    )
    return LedgerResult(target, entry)


def return_to_operator(
    db: Session,
    *,
    actor: account_models.User,
    item_id: str,
    location_id: str,
    quantity: Optional[int] = None,
) -> LedgerResult:
    """Ship stock of `location_id` back to the operator; devices leave the system."""
    account_services.ensure_location_access(actor, location_id)
    item = get_item(db, item_id, lock=True)

    if item.location_id != location_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{item.name} is not stored at this location.",
        )

    if isinstance(item, models.DeviceItem):
        if item.status not in (models.ItemStatus.AVAILABLE, models.ItemStatus.RETURNED):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Device {_describe(item)} cannot be returned to the operator (status {item.status.value}).",
            )
        item.status = models.ItemStatus.RETURNED_TO_OPERATOR
        item.location_id = None
        db.flush()
        entry = history.record(
            db,
            item=item,
            action=models.HistoryAction.RETURNED_TO_OPERATOR,
            performed_by_id=actor.id,
            quantity=1,
            from_location_id=location_id,
        )
        return LedgerResult(item, entry)

    quantity = _require_quantity(quantity)
    _decrement(db, item, quantity)
    entry = history.record(
        db,
        item=item,
        action=models.HistoryAction.RETURNED_TO_OPERATOR,
        performed_by_id=actor.id,
        quantity=quantity,
        from_location_id=location_id,
    )
    return LedgerResult(item, entry)


# ---------------------------------------------------------------------------
# ORDERS
# ---------------------------------------------------------------------------


def _ordered_unique(ids: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item_id in ids:
        if item_id and item_id not in seen:
            seen.add(item_id)
            result.append(item_id)
    return result


def consume_for_order(
    db: Session,
    *,
    actor: account_models.User,
    order: order_models.Order,
    item_ids: Iterable[str],
    holder_id: Optional[str],
) -> List[LedgerResult]:
    """
    Move devices onto an order as ASSIGNED_TO_ORDER.

    With `holder_id` every device must sit on that technician's stock. Without
    it (admin edit) a device may come from any technician or from a location.
    Devices already consumed by this order are left as they are. The entry
    keeps the previous holder so a later amendment can give the device back.
    """
    ids = _ordered_unique(item_ids)
    if not ids:
        return []

    claimed = (
        db.query(order_models.OrderEquipment, order_models.Order, models.DeviceItem)
        .join(order_models.Order, order_models.Order.id == order_models.OrderEquipment.order_id)
        .join(models.DeviceItem, models.DeviceItem.id == order_models.OrderEquipment.item_id)
        .filter(
            order_models.OrderEquipment.item_id.in_(ids),
            order_models.OrderEquipment.order_id != order.id,
            models.DeviceItem.status == models.ItemStatus.ASSIGNED_TO_ORDER,
        )
        .all()
    )
    if claimed:
        conflict_list = ", ".join(
            f"{_describe(device)} -> order {other.order_number}" for _, other, device in claimed
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Some devices are already assigned to other orders: {conflict_list}",
        )

    linked_here = {
        row.item_id
        for row in db.query(order_models.OrderEquipment.item_id)
        .filter(
            order_models.OrderEquipment.order_id == order.id,
            order_models.OrderEquipment.item_id.in_(ids),
        )
        .all()
    }

    to_consume: List[models.DeviceItem] = []
    invalid: List[str] = []
    for item_id in ids:
        device = get_device(db, item_id, lock=True)
        if device.id in linked_here and device.status == models.ItemStatus.ASSIGNED_TO_ORDER:
            continue
        _ensure_no_open_transfer(device)
        if holder_id is not None:
            valid = device.assigned_to_id == holder_id and device.status == models.ItemStatus.ASSIGNED
        else:
            valid = (
                device.status == models.ItemStatus.ASSIGNED and device.assigned_to_id is not None
            ) or (
                device.status == models.ItemStatus.AVAILABLE and device.location_id is not None
            )
        if not valid:
            invalid.append(f"{_describe(device)} -> status: {device.status.value}")
            continue
        to_consume.append(device)

    if invalid:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Some devices are not on the technician's stock or have an invalid status: "
            + "; ".join(invalid),
        )

    results: List[LedgerResult] = []
    for device in to_consume:
        previous_holder = device.assigned_to_id
        previous_location = device.location_id
        device.status = models.ItemStatus.ASSIGNED_TO_ORDER
        device.assigned_to_id = None
        device.location_id = None
        db.flush()
        _link(db, order_id=order.id, item_id=device.id)
        entry = history.record(
            db,
            item=device,
            action=models.HistoryAction.ASSIGNED_TO_ORDER,
            performed_by_id=actor.id,
            quantity=1,
            assigned_order_id=order.id,
            assigned_to_id=previous_holder,
            from_location_id=previous_location,
        )
        results.append(LedgerResult(device, entry))
    return results


def collect_from_client(
    db: Session,
    *,
    actor: account_models.User,
    order: order_models.Order,
    technician_id: str,
    name: str,
    category: models.DeviceCategory,
    serial_number: Optional[str],
) -> LedgerResult:
    """Record a device picked up at the client; it lands on the technician's stock."""
    serial = normalize_serial(serial_number)
    device = None
    if serial:
        device = (
            db.query(models.DeviceItem)
            .filter(models.DeviceItem.serial_number == serial)
            .with_for_update()
            .first()
        )

    if device is not None:
        if device.status in (
            models.ItemStatus.AVAILABLE,
            models.ItemStatus.ASSIGNED,
            models.ItemStatus.TRANSFER,
            models.ItemStatus.RETURNED,
        ):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Device {_describe(device)} is in stock (status {device.status.value}) "
                "and cannot be collected from a client.",
            )
        _ensure_no_open_transfer(device)
        device.name = name or device.name
        device.category = category or device.category
    else:
        device = models.DeviceItem(
            name=name,
            category=category,
            serial_number=serial,
            price=0,
        )
        db.add(device)

    device.status = models.ItemStatus.COLLECTED_FROM_CLIENT
    device.assigned_to_id = technician_id
    device.location_id = None
    db.flush()
    _link(db, order_id=order.id, item_id=device.id)
    entry = history.record(
        db,
        item=device,
        action=models.HistoryAction.COLLECTED_FROM_CLIENT,
        performed_by_id=actor.id,
        quantity=1,
        assigned_order_id=order.id,
        assigned_to_id=technician_id,
    )
    return LedgerResult(device, entry)


def return_device_from_order(
    db: Session,
    *,
    actor: account_models.User,
    device: models.DeviceItem,
    order: order_models.Order,
    fallback_technician_id: Optional[str] = None,
) -> LedgerResult:
    """
    Give a consumed device back to whoever held it before this order took it.

    The previous holder comes from the ASSIGNED_TO_ORDER entry of this order:
    a technician gets it back as ASSIGNED, a location as AVAILABLE.
    """
    consumed = history.latest_entry(
        db,
        item_id=device.id,
        action=models.HistoryAction.ASSIGNED_TO_ORDER,
        order_id=order.id,
    )
    unlink(db, order_id=order.id, item_id=device.id)

    technician_id = consumed.assigned_to_id if consumed else None
    location_id = consumed.from_location_id if consumed else None
    if technician_id is None and location_id is None:
        if fallback_technician_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Cannot determine where to return device {_describe(device)}.",
            )
        logger.warning(
            "Consumed device has no recorded holder; returning to order technician",
            extra={"item_id": device.id, "order_id": order.id, "technician_id": fallback_technician_id},
        )
        technician_id = fallback_technician_id

    if technician_id is not None:
        device.status = models.ItemStatus.ASSIGNED
        device.assigned_to_id = technician_id
        device.location_id = None
        action = models.HistoryAction.RETURNED_TO_TECHNICIAN
    else:
        device.status = models.ItemStatus.AVAILABLE
        device.assigned_to_id = None
        device.location_id = location_id
        action = models.HistoryAction.RETURNED
    db.flush()
    entry = history.record(
        db,
        item=device,
        action=action,
        performed_by_id=actor.id,
        quantity=1,
        assigned_order_id=order.id,
        assigned_to_id=technician_id,
        to_location_id=location_id if technician_id is None else None,
    )
    return LedgerResult(device, entry)


def _state_before(entry: models.WarehouseHistory):
    """(status, technician, location) a device had right after `entry`."""
    action = entry.action
    if action == models.HistoryAction.ASSIGNED_TO_ORDER:
        return models.ItemStatus.ASSIGNED_TO_ORDER, None, None
    if action == models.HistoryAction.RETURNED_TO_OPERATOR:
        return models.ItemStatus.RETURNED_TO_OPERATOR, None, None
    if action == models.HistoryAction.COLLECTED_FROM_CLIENT:
        return models.ItemStatus.COLLECTED_FROM_CLIENT, entry.assigned_to_id, None
    if action in (models.HistoryAction.RECEIVED, models.HistoryAction.RETURNED):
        return models.ItemStatus.AVAILABLE, None, entry.to_location_id
    if action == models.HistoryAction.TRANSFER and entry.to_location_id:
        return models.ItemStatus.AVAILABLE, None, entry.to_location_id
    return models.ItemStatus.ASSIGNED, entry.assigned_to_id, None


def undo_collection(
    db: Session,
    *,
    actor: account_models.User,
    device: models.DeviceItem,
    order: order_models.Order,
) -> Optional[LedgerResult]:
    """
    Revert a client collection recorded on `order` (admin edit).

    A device that only exists because of this collection is deleted, unless
    another order still links it. A device with earlier provenance goes back to
    the state recorded before the collection.
    """
    collection = history.latest_entry(
        db,
        item_id=device.id,
        action=models.HistoryAction.COLLECTED_FROM_CLIENT,
        order_id=order.id,
    )
    unlink(db, order_id=order.id, item_id=device.id)
    if collection is None:
        return None

    prior = history.latest_entry(db, item_id=device.id, before_id=collection.id)
    if prior is None:
        still_linked = (
            db.query(order_models.OrderEquipment)
            .filter(order_models.OrderEquipment.item_id == device.id)
            .count()
        )
        if still_linked:
            return None
        history.purge_item(db, item=device)
        return None

    restored_status, technician_id, location_id = _state_before(prior)
    if restored_status in models.TECHNICIAN_HELD_STATUSES and technician_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot restore device {_describe(device)}: previous holder unknown.",
        )
    device.status = restored_status
    device.assigned_to_id = technician_id
    device.location_id = location_id
    db.flush()

    if restored_status in models.TECHNICIAN_HELD_STATUSES:
        action = models.HistoryAction.RETURNED_TO_TECHNICIAN
    elif restored_status == models.ItemStatus.AVAILABLE:
        action = models.HistoryAction.RETURNED
    elif restored_status == models.ItemStatus.ASSIGNED_TO_ORDER:
        action = models.HistoryAction.ASSIGNED_TO_ORDER
    else:
        action = models.HistoryAction.RETURNED_TO_OPERATOR

    entry = history.record(
        db,
        item=device,
        action=action,
        performed_by_id=actor.id,
        quantity=1,
        assigned_order_id=prior.assigned_order_id if action == models.HistoryAction.ASSIGNED_TO_ORDER else order.id,
        assigned_to_id=technician_id if technician_id else prior.assigned_to_id,
        from_location_id=prior.from_location_id if action == models.HistoryAction.ASSIGNED_TO_ORDER else None,
        to_location_id=location_id,
        notes=f"Collection on order {order.order_number} removed.",
    )
    return LedgerResult(device, entry)


def consume_material(
    db: Session,
    *,
    actor: account_models.User,
    order: order_models.Order,
    technician_id: str,
    definition: models.MaterialDefinition,
    quantity: int,
) -> MaterialConsumption:
    """
    Take up to `quantity` of a material from the technician for an order.

    Stock never goes below zero; the caller decides what to do with the
    uncovered part.
    """
    stock = find_stock(db, definition_id=definition.id, technician_id=technician_id)
    available = stock.quantity if stock else 0
    covered = min(available, quantity)
    if covered <= 0:
        return MaterialConsumption(definition, quantity, 0, None)

    _decrement(db, stock, covered)
    entry = history.record(
        db,
        item=stock,
        action=models.HistoryAction.ASSIGNED_TO_ORDER,
        performed_by_id=actor.id,
        quantity=covered,
        assigned_order_id=order.id,
        assigned_to_id=technician_id,
    )
    return MaterialConsumption(definition, quantity, covered, LedgerResult(stock, entry))


def record_deficit(
    db: Session,
    *,
    technician_id: str,
    definition_id: str,
    quantity: int,
) -> models.TechnicianMaterialDeficit:
    deficit = (
        db.query(models.TechnicianMaterialDeficit)
        .filter(
            models.TechnicianMaterialDeficit.technician_id == technician_id,
            models.TechnicianMaterialDeficit.material_definition_id == definition_id,
        )
        .with_for_update()
        .first()
    )
    if deficit is None:
        deficit = models.TechnicianMaterialDeficit(
            technician_id=technician_id,
            material_definition_id=definition_id,
            quantity=0,
        )
        db.add(deficit)
        db.flush()
    db.query(models.TechnicianMaterialDeficit).filter(
        models.TechnicianMaterialDeficit.id == deficit.id
    ).update(
        {models.TechnicianMaterialDeficit.quantity: models.TechnicianMaterialDeficit.quantity + quantity},
        synchronize_session="fetch",
    )
    return deficit


# ---------------------------------------------------------------------------
# TRANSFERS
# ---------------------------------------------------------------------------
#
# Escrow (request) and its release (reject / cancel) restore the pre-request
# state and are recorded on the transfer itself. The confirming move is the
# ownership change and gets the TRANSFER entry.


def escrow_material(db: Session, *, stock: models.MaterialStock, quantity: int) -> None:
    _decrement(db, stock, _require_quantity(quantity))


def release_material(
    db: Session,
    *,
    definition: models.MaterialDefinition,
    quantity: int,
    technician_id: Optional[str] = None,
    location_id: Optional[str] = None,
) -> models.MaterialStock:
    stock = ensure_stock(db, definition=definition, technician_id=technician_id, location_id=location_id)
    _increment(db, stock, quantity)
    return stock


def hold_device_in_transit(db: Session, *, device: models.DeviceItem) -> None:
    device.status = models.ItemStatus.TRANSFER
    db.flush()


def release_device_from_transit(db: Session, *, device: models.DeviceItem) -> None:
    device.status = models.ItemStatus.AVAILABLE
    db.flush()


def transfer_device_to_technician(
    db: Session,
    *,
    device: models.DeviceItem,
    sender_id: str,
    recipient_id: str,
) -> LedgerResult:
    device.assigned_to_id = recipient_id
    device.location_id = None
    db.flush()
    entry = history.record(
        db,
        item=device,
        action=models.HistoryAction.TRANSFER,
        performed_by_id=sender_id,
        quantity=1,
        assigned_to_id=recipient_id,
    )
    return LedgerResult(device, entry)


def transfer_material_to_technician(
    db: Session,
    *,
    definition: models.MaterialDefinition,
    quantity: int,
    sender_id: str,
    recipient_id: str,
) -> LedgerResult:
    stock = release_material(db, definition=definition, quantity=quantity, technician_id=recipient_id)
    entry = history.record(
        db,
        item=stock,
        action=models.HistoryAction.TRANSFER,
        performed_by_id=sender_id,
        quantity=quantity,
        assigned_to_id=recipient_id,
    )
    return LedgerResult(stock, entry)


def move_device_to_location(
    db: Session,
    *,
    actor: account_models.User,
    device: models.DeviceItem,
    to_location_id: str,
    transfer_id: str,
) -> LedgerResult:
    from_location_id = device.location_id
    device.status = models.ItemStatus.AVAILABLE
    device.location_id = to_location_id
    db.flush()
    entry = history.record(
        db,
        item=device,
        action=models.HistoryAction.TRANSFER,
        performed_by_id=actor.id,
        quantity=1,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        location_transfer_id=transfer_id,
    )
    return LedgerResult(device, entry)


def move_material_to_location(
    db: Session,
    *,
    actor: account_models.User,
    definition: models.MaterialDefinition,
    quantity: int,
    from_location_id: str,
    to_location_id: str,
    transfer_id: str,
) -> LedgerResult:
    stock = release_material(db, definition=definition, quantity=quantity, location_id=to_location_id)
    entry = history.record(
        db,
        item=stock,
        action=models.HistoryAction.TRANSFER,
        performed_by_id=actor.id,
        quantity=quantity,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        location_transfer_id=transfer_id,
    )
    return LedgerResult(stock, entry)
