"""
Building blocks shared by order settlement and amendment.

Each helper reconciles one part of an order (work codes, materials,
equipment, collected devices, services) against a submitted completion
payload. Nothing here commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import exists
from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.warehouse import history, ledger
from fieldops.apps.warehouse import models as warehouse_models
from fieldops.utils.identifiers import normalize_serial

from . import models, schemas

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    order: models.Order
    warnings: List[str] = field(default_factory=list)
    history_ids: List[int] = field(default_factory=list)

    def track(self, results: Iterable[Optional[ledger.LedgerResult]]) -> None:
        for result in results:
            if result is not None:
                self.history_ids.append(result.entry.id)


def get_order(db: Session, order_id: str, *, lock: bool = False) -> models.Order:
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if lock:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found.")
    return order


def ensure_order_technician(actor: account_models.User, order: models.Order) -> None:
    if order.assigned_to_id is None or order.assigned_to_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This order is not assigned to you.",
        )


def order_technician_id(order: models.Order) -> str:
    if order.assigned_to_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Order {order.order_number} has no assigned technician.",
        )
    return order.assigned_to_id


def transition_payload(order: models.Order, payload: schemas.OrderCompletionRequest) -> dict:
    return {
        "status": payload.status,
        "order_type": order.type,
        "work_codes": payload.work_codes,
    }


def record_order_history(
    db: Session,
    *,
    order: models.Order,
    status_before: models.OrderStatus,
    actor: account_models.User,
    notes: Optional[str] = None,
) -> models.OrderHistory:
    entry = models.OrderHistory(
        order_id=order.id,
        status_before=status_before,
        status_after=order.status,
        changed_by_id=actor.id,
        notes=notes,
    )
    db.add(entry)
    db.flush()
    return entry


# ---------------------------------------------------------------------------
# WORK CODES / MATERIALS
# ---------------------------------------------------------------------------


def replace_work_codes(order: models.Order, work_codes: List[schemas.WorkCodeIn]) -> None:
    order.settlement_entries = [
        models.OrderSettlementEntry(code=entry.code, quantity=entry.quantity)
        for entry in work_codes
    ]


def reconcile_materials(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    technician_id: str,
    used_materials: List[schemas.UsedMaterialIn],
    result: SettlementResult,
) -> None:
    """
    Bring the order's material snapshot in line with `used_materials`.

    Only growth against the previous snapshot is taken from the technician's
    stock; a lower figure just rewrites the snapshot. Whatever the stock
    cannot cover becomes a warning and a technician deficit.
    """
    requested: "OrderedDict[str, int]" = OrderedDict()
    for used in used_materials:
        requested[used.material_definition_id] = (
            requested.get(used.material_definition_id, 0) + used.quantity
        )

    current: Dict[str, models.OrderMaterial] = {
        row.material_definition_id: row for row in order.materials
    }

    for row in list(order.materials):
        if row.material_definition_id not in requested:
            order.materials.remove(row)

    for definition_id, quantity in requested.items():
        definition = ledger.get_material_definition(db, definition_id)
        row = current.get(definition_id)
        delta = quantity - (row.quantity if row else 0)

        if delta > 0:
            consumption = ledger.consume_material(
                db,
                actor=actor,
                order=order,
                technician_id=technician_id,
                definition=definition,
                quantity=delta,
            )
            result.track([consumption.result])
            if consumption.missing > 0:
                warning = (
                    f"Insufficient stock for material {definition.name}: "
                    f"used {delta}, technician held {consumption.covered}."
                )
                result.warnings.append(warning)
                logger.warning(
                    "Material shortage during settlement",
                    extra={
                        "order_id": order.id,
                        "technician_id": technician_id,
                        "material_definition_id": definition.id,
                        "missing": consumption.missing,
                    },
                )
                ledger.record_deficit(
                    db,
                    technician_id=technician_id,
                    definition_id=definition.id,
                    quantity=consumption.missing,
                )

        if row is None:
            order.materials.append(
                models.OrderMaterial(
                    material_definition_id=definition.id,
                    name=definition.name,
                    unit=definition.unit,
                    quantity=quantity,
                )
            )
        else:
            row.name = definition.name
            row.unit = definition.unit
            row.quantity = quantity
    db.flush()


# ---------------------------------------------------------------------------
# DEVICES
# ---------------------------------------------------------------------------


def referenced_device_ids(payload: schemas.OrderCompletionRequest) -> List[str]:
    """Every stock device id the payload points at, in submission order."""
    ids: List[str] = list(payload.equipment_ids) + list(payload.issued_device_ids)
    if payload.status == models.OrderStatus.COMPLETED:
        for service in payload.services:
            if service.device_id and service.device_source != models.DeviceSource.CLIENT:
                ids.append(service.device_id)
            if service.device_id2:
                ids.append(service.device_id2)
            for extra in service.extra_devices:
                if extra.source == models.DeviceSource.WAREHOUSE and extra.item_id:
                    ids.append(extra.item_id)
    return list(OrderedDict.fromkeys(i for i in ids if i))


def _linked_devices(db: Session, order: models.Order) -> List[warehouse_models.DeviceItem]:
    return (
        db.query(warehouse_models.DeviceItem)
        .join(
            models.OrderEquipment,
            models.OrderEquipment.item_id == warehouse_models.DeviceItem.id,
        )
        .filter(models.OrderEquipment.order_id == order.id)
        .order_by(models.OrderEquipment.id.asc())
        .all()
    )


def _orphaned_devices(db: Session, order: models.Order) -> List[warehouse_models.DeviceItem]:
    """Devices this order consumed that no order links any more."""
    candidates = (
        db.query(warehouse_models.DeviceItem)
        .join(
            warehouse_models.WarehouseHistory,
            warehouse_models.WarehouseHistory.item_id == warehouse_models.DeviceItem.id,
        )
        .filter(
            warehouse_models.WarehouseHistory.assigned_order_id == order.id,
            warehouse_models.WarehouseHistory.action == warehouse_models.HistoryAction.ASSIGNED_TO_ORDER,
            warehouse_models.DeviceItem.status == warehouse_models.ItemStatus.ASSIGNED_TO_ORDER,
            ~exists().where(models.OrderEquipment.item_id == warehouse_models.DeviceItem.id),
        )
        .distinct()
        .all()
    )
    orphans = []
    for device in candidates:
        latest = history.latest_entry(
            db,
            item_id=device.id,
            action=warehouse_models.HistoryAction.ASSIGNED_TO_ORDER,
        )
        if latest is not None and latest.assigned_order_id == order.id:
            orphans.append(device)
    return orphans


def sync_equipment(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    device_ids: List[str],
    holder_id: Optional[str],
    result: SettlementResult,
) -> None:
    """
    Make the consumed devices of `order` equal to `device_ids`.

    Dropped devices go back to whoever held them before; collected devices
    are left to `sync_collected`. New ids are consumed from `holder_id`'s
    stock, or from any holder when `holder_id` is None.
    """
    keep = set(device_ids)
    for device in _linked_devices(db, order):
        if device.id in keep or device.status != warehouse_models.ItemStatus.ASSIGNED_TO_ORDER:
            continue
        result.track(
            [
                ledger.return_device_from_order(
                    db,
                    actor=actor,
                    device=device,
                    order=order,
                    fallback_technician_id=order.assigned_to_id,
                )
            ]
        )

    for device in _orphaned_devices(db, order):
        if device.id in keep:
            continue
        logger.warning(
            "Returning orphaned device consumed by order",
            extra={"order_id": order.id, "item_id": device.id},
        )
        result.track(
            [
                ledger.return_device_from_order(
                    db,
                    actor=actor,
                    device=device,
                    order=order,
                    fallback_technician_id=order.assigned_to_id,
                )
            ]
        )

    result.track(
        ledger.consume_for_order(
            db,
            actor=actor,
            order=order,
            item_ids=device_ids,
            holder_id=holder_id,
        )
    )


def _collected_key(serial_number: Optional[str], name: Optional[str], category) -> tuple:
    serial = normalize_serial(serial_number)
    if serial:
        return ("serial", serial)
    return ("unserialized", (name or "").strip().lower(), getattr(category, "value", category))


def sync_collected(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    technician_id: str,
    collected: List[schemas.CollectedDeviceIn],
    purge: bool,
    result: SettlementResult,
) -> None:
    """
    Reconcile devices collected from the client, matched by normalized serial.

    Devices no longer listed are detached from the order; with `purge` (admin
    edit) a device still sitting with the technician is also undone: deleted
    when this collection created it, restored otherwise.
    """
    wanted = Counter(_collected_key(d.serial_number, d.name, d.category) for d in collected)

    for device in _linked_devices(db, order):
        collection = history.latest_entry(
            db,
            item_id=device.id,
            action=warehouse_models.HistoryAction.COLLECTED_FROM_CLIENT,
            order_id=order.id,
        )
        if collection is None:
            continue
        key = _collected_key(device.serial_number, device.name, device.category)
        if wanted[key] > 0:
            wanted[key] -= 1
            continue

        still_held = (
            device.status == warehouse_models.ItemStatus.COLLECTED_FROM_CLIENT
            and device.assigned_to_id == technician_id
        )
        if purge and still_held:
            if device.transfer_pending:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"{device.name} SN: {device.serial_number} has a pending transfer.",
                )
            result.track([ledger.undo_collection(db, actor=actor, device=device, order=order)])
        else:
            ledger.unlink(db, order_id=order.id, item_id=device.id)

    for device_in in collected:
        key = _collected_key(device_in.serial_number, device_in.name, device_in.category)
        if wanted[key] <= 0:
            continue
        wanted[key] -= 1
        result.track(
            [
                ledger.collect_from_client(
                    db,
                    actor=actor,
                    order=order,
                    technician_id=technician_id,
                    name=device_in.name,
                    category=device_in.category,
                    serial_number=device_in.serial_number,
                )
            ]
        )
    db.flush()


# ---------------------------------------------------------------------------
# SERVICES
# ---------------------------------------------------------------------------


def _live_device(db: Session, item_id: str) -> warehouse_models.DeviceItem:
    return ledger.get_device(db, item_id)


def replace_services(
    db: Session,
    *,
    order: models.Order,
    services: List[schemas.ServiceIn],
) -> None:
    """
    Rewrite the installed services of a COMPLETED order.

    Stock devices take name, category and serial from their live row;
    client devices keep what the caller declared.
    """
    if order.status != models.OrderStatus.COMPLETED:
        order.services = []
        db.flush()
        return

    rows = []
    for position, service in enumerate(services):
        row = models.OrderService(
            position=position,
            type=service.type,
            device_source=service.device_source,
            speed_test=service.speed_test,
            us_dbm_down=service.us_dbm_down,
            us_dbm_up=service.us_dbm_up,
            notes=service.notes,
        )

        if service.device_id and service.device_source != models.DeviceSource.CLIENT:
            device = _live_device(db, service.device_id)
            row.device_id = device.id
            row.device_name = device.name
            row.device_category = device.category
            row.serial_number = device.serial_number
        else:
            row.device_id = service.device_id
            row.device_name = service.device_name
            row.device_category = service.device_category
            row.serial_number = normalize_serial(service.serial_number)

        if service.device_id2:
            device = _live_device(db, service.device_id2)
            row.device_id2 = device.id
            row.device_name2 = device.name
            row.device_category2 = device.category
            row.serial_number2 = device.serial_number

        for extra in service.extra_devices:
            if extra.source == models.DeviceSource.WAREHOUSE:
                if not extra.item_id:
                    raise HTTPException(
                        status_code=status.HTTP_400_BAD_REQUEST,
                        detail="Extra devices from stock need an item_id.",
                    )
                device = _live_device(db, extra.item_id)
                row.extra_devices.append(
                    models.OrderExtraDevice(
                        item_id=device.id,
                        source=extra.source,
                        category=device.category,
                        name=device.name,
                        serial_number=device.serial_number,
                    )
                )
            else:
                row.extra_devices.append(
                    models.OrderExtraDevice(
                        item_id=extra.item_id,
                        source=extra.source,
                        category=extra.category,
                        name=extra.name,
                        serial_number=normalize_serial(extra.serial_number),
                    )
                )
        rows.append(row)

    order.services = rows
    db.flush()


# ---------------------------------------------------------------------------
# FULL RECONCILIATION
# ---------------------------------------------------------------------------


def apply_completion(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    payload: schemas.OrderCompletionRequest,
    holder_id: Optional[str],
    purge_collected: bool,
    result: SettlementResult,
) -> None:
    """Work codes, materials, devices and services of one completion payload."""
    technician_id = order_technician_id(order)

    replace_work_codes(order, payload.work_codes)
    reconcile_materials(
        db,
        actor=actor,
        order=order,
        technician_id=technician_id,
        used_materials=payload.used_materials,
        result=result,
    )
    sync_equipment(
        db,
        actor=actor,
        order=order,
        device_ids=referenced_device_ids(payload),
        holder_id=holder_id,
        result=result,
    )
    sync_collected(
        db,
        actor=actor,
        order=order,
        technician_id=technician_id,
        collected=payload.collected_devices,
        purge=purge_collected,
        result=result,
    )
    replace_services(db, order=order, services=payload.services)

    db.flush()
    db.expire(order, ["equipment"])


def collect_for_order(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
    name: str,
    category: warehouse_models.DeviceCategory,
    serial_number: Optional[str],
) -> ledger.LedgerResult:
    """Record a pickup at the client ahead of settlement."""
    order = get_order(db, order_id, lock=True)
    ensure_order_technician(actor, order)
    if order.status != models.OrderStatus.ASSIGNED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Order {order.order_number} is not open (status {order.status.value}).",
        )
    return ledger.collect_from_client(
        db,
        actor=actor,
        order=order,
        technician_id=actor.id,
        name=name,
        category=category,
        serial_number=serial_number,
    )
