"""
Location-to-location batches.

Requesting a batch puts its devices in TRANSFER (they stay at the source
location) and takes its material quantities off the source stock straight
away. The destination confirms or rejects; the source may cancel.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.workflow import ensure_transition

from . import ledger, models

logger = logging.getLogger(__name__)


@dataclass
class BatchResolution:
    transfer: models.LocationTransfer
    results: List[ledger.LedgerResult] = field(default_factory=list)

    @property
    def history_ids(self) -> List[int]:
        return [result.entry.id for result in self.results]


def _ensure_scope(actor: account_models.User, location_id: str, detail: str) -> None:
    account_services.ensure_roles(actor, *account_services.WAREHOUSE_ROLES)
    if actor.is_admin_or_coordinator:
        return
    if location_id not in actor.location_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def get_location_transfer(db: Session, transfer_id: str, *, lock: bool = False) -> models.LocationTransfer:
    query = db.query(models.LocationTransfer).filter(models.LocationTransfer.id == transfer_id)
    if lock:
        query = query.with_for_update()
    transfer = query.first()
    if not transfer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location transfer not found.")
    return transfer


def request_location_transfer(
    db: Session,
    *,
    actor: account_models.User,
    from_location_id: str,
    to_location_id: str,
    device_ids: Iterable[str] = (),
    materials: Iterable[Tuple[str, int]] = (),
    notes: Optional[str] = None,
) -> models.LocationTransfer:
    """
    Open a batch from `from_location_id` to `to_location_id`.

    `materials` is a sequence of (material definition id, quantity); repeated
    definitions are summed into one line.
    """
    _ensure_scope(actor, from_location_id, "This is not your source warehouse.")
    account_services.get_location(db, from_location_id)
    account_services.get_location(db, to_location_id)
    if from_location_id == to_location_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Source and destination locations must differ.",
        )

    device_ids = list(OrderedDict.fromkeys(i for i in device_ids if i))
    quantities: "OrderedDict[str, int]" = OrderedDict()
    for definition_id, quantity in materials:
        if quantity is None or quantity <= 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Material quantities must be positive.",
            )
        quantities[definition_id] = quantities.get(definition_id, 0) + quantity
    if not device_ids and not quantities:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A transfer needs at least one device or material.",
        )

    transfer = models.LocationTransfer(
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        notes=notes,
        requested_by_id=actor.id,
    )
    db.add(transfer)
    db.flush()

    for device_id in device_ids:
        device = ledger.get_device(db, device_id, lock=True)
        if device.location_id != from_location_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{device.name} SN: {device.serial_number} is not stored at the source location.",
            )
        if device.status != models.ItemStatus.AVAILABLE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{device.name} SN: {device.serial_number} is not available (status {device.status.value}).",
            )
        ledger.hold_device_in_transit(db, device=device)
        transfer.lines.append(
            models.LocationTransferLine(
                item_type=models.ItemType.DEVICE,
                item_id=device.id,
                name=device.name,
                category=device.category,
                serial_number=device.serial_number,
                quantity=1,
            )
        )

    for definition_id, quantity in quantities.items():
        definition = ledger.get_material_definition(db, definition_id)
        stock = ledger.find_stock(db, definition_id=definition.id, location_id=from_location_id)
        if stock is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Insufficient material stock: {definition.name}.",
            )
        ledger.escrow_material(db, stock=stock, quantity=quantity)
        transfer.lines.append(
            models.LocationTransferLine(
                item_type=models.ItemType.MATERIAL,
                item_id=stock.id,
                material_definition_id=definition.id,
                name=definition.name,
                index=definition.index,
                quantity=quantity,
                unit=definition.unit,
            )
        )

    db.flush()
    logger.info(
        "Location transfer requested",
        extra={
            "transfer_id": transfer.id,
            "from_location_id": from_location_id,
            "to_location_id": to_location_id,
            "lines": len(transfer.lines),
        },
    )
    return transfer


def _resolve(
    db: Session,
    *,
    actor: account_models.User,
    transfer: models.LocationTransfer,
    to_status: models.LocationTransferStatus,
) -> None:
    ensure_transition(
        db,
        actor_user_id=actor.id,
        entity_type="location_transfer",
        entity_id=transfer.id,
        from_state=transfer.status,
        to_state=to_status,
        before_obj=transfer,
        after_obj={"status": to_status},
    )
    transfer.status = to_status
    transfer.confirmed_by_id = actor.id
    transfer.confirmed_at = datetime.now(timezone.utc)
    db.flush()


def _restore_to_source(db: Session, transfer: models.LocationTransfer) -> None:
    for line in transfer.lines:
        if line.item_type == models.ItemType.DEVICE:
            if line.item_id is None:
                continue
            device = ledger.get_device(db, line.item_id, lock=True)
            ledger.release_device_from_transit(db, device=device)
        else:
            definition = ledger.get_material_definition(db, line.material_definition_id)
            ledger.release_material(
                db,
                definition=definition,
                quantity=line.quantity,
                location_id=transfer.from_location_id,
            )


def confirm_location_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> BatchResolution:
    transfer = get_location_transfer(db, transfer_id, lock=True)
    _ensure_scope(actor, transfer.to_location_id, "This is not your destination warehouse.")
    _resolve(db, actor=actor, transfer=transfer, to_status=models.LocationTransferStatus.RECEIVED)

    resolution = BatchResolution(transfer)
    for line in transfer.lines:
        if line.item_type == models.ItemType.DEVICE:
            if line.item_id is None:
                continue
            device = ledger.get_device(db, line.item_id, lock=True)
            resolution.results.append(
                ledger.move_device_to_location(
                    db,
                    actor=actor,
                    device=device,
                    to_location_id=transfer.to_location_id,
                    transfer_id=transfer.id,
                )
            )
        else:
            definition = ledger.get_material_definition(db, line.material_definition_id)
            resolution.results.append(
                ledger.move_material_to_location(
                    db,
                    actor=actor,
                    definition=definition,
                    quantity=line.quantity,
                    from_location_id=transfer.from_location_id,
                    to_location_id=transfer.to_location_id,
                    transfer_id=transfer.id,
                )
            )

    logger.info(
        "Location transfer received",
        extra={"transfer_id": transfer.id, "history_ids": resolution.history_ids},
    )
    return resolution


def reject_location_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> BatchResolution:
    transfer = get_location_transfer(db, transfer_id, lock=True)
    _ensure_scope(actor, transfer.to_location_id, "This is not your destination warehouse.")
    _resolve(db, actor=actor, transfer=transfer, to_status=models.LocationTransferStatus.REJECTED)
    _restore_to_source(db, transfer)
    logger.info("Location transfer rejected", extra={"transfer_id": transfer.id})
    return BatchResolution(transfer)


def cancel_location_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> BatchResolution:
    transfer = get_location_transfer(db, transfer_id, lock=True)
    _ensure_scope(actor, transfer.from_location_id, "This is not your source warehouse.")
    _resolve(db, actor=actor, transfer=transfer, to_status=models.LocationTransferStatus.CANCELED)
    _restore_to_source(db, transfer)
    logger.info("Location transfer canceled", extra={"transfer_id": transfer.id})
    return BatchResolution(transfer)


def incoming_location_transfers(db: Session, *, location_id: str) -> List[models.LocationTransfer]:
    return (
        db.query(models.LocationTransfer)
        .filter(
            models.LocationTransfer.to_location_id == location_id,
            models.LocationTransfer.status == models.LocationTransferStatus.REQUESTED,
        )
        .order_by(models.LocationTransfer.created_at.asc())
        .all()
    )


def outgoing_location_transfers(db: Session, *, location_id: str) -> List[models.LocationTransfer]:
    return (
        db.query(models.LocationTransfer)
        .filter(
            models.LocationTransfer.from_location_id == location_id,
            models.LocationTransfer.status == models.LocationTransferStatus.REQUESTED,
        )
        .order_by(models.LocationTransfer.created_at.asc())
        .all()
    )
