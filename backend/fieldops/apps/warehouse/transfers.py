"""
Technician-to-technician transfers.

A request parks the moved stock in a PendingTransfer: a device keeps its row
on the sender and is earmarked by the open transfer; a material quantity is
taken off the sender's row at once. Confirm hands the stock to the recipient
(one TRANSFER history entry); reject and cancel put it back on the sender.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.workflow import ensure_transition

from . import ledger, models

logger = logging.getLogger(__name__)


@dataclass
class TransferResolution:
    transfer: models.PendingTransfer
    result: Optional[ledger.LedgerResult] = None


@dataclass
class TechnicianStock:
    technician_id: str
    devices: List[models.DeviceItem] = field(default_factory=list)
    materials: List[models.MaterialStock] = field(default_factory=list)
    deficits: List[models.TechnicianMaterialDeficit] = field(default_factory=list)


def get_transfer(db: Session, transfer_id: str, *, lock: bool = False) -> models.PendingTransfer:
    query = db.query(models.PendingTransfer).filter(models.PendingTransfer.id == transfer_id)
    if lock:
        query = query.with_for_update()
    transfer = query.first()
    if not transfer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transfer not found.")
    return transfer


def request_transfer(
    db: Session,
    *,
    actor: account_models.User,
    recipient_id: str,
    item_id: str,
    quantity: Optional[int] = None,
) -> models.PendingTransfer:
    account_services.ensure_roles(actor, account_models.AccountRole.TECHNICIAN)
    recipient = account_services.get_active_technician(db, recipient_id)
    if recipient.id == actor.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot transfer stock to yourself.",
        )

    item = ledger.get_item(db, item_id, lock=True)
    if item.assigned_to_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{item.name} is not on your stock.",
        )

    if isinstance(item, models.DeviceItem):
        if quantity not in (None, 1):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Devices are transferred one at a time.",
            )
        if item.status not in models.TECHNICIAN_HELD_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{item.name} cannot be transferred (status {item.status.value}).",
            )
        if item.transfer_pending:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{item.name} already has a pending transfer.",
            )
        transfer = models.PendingTransfer(
            item_type=models.ItemType.DEVICE,
            item_id=item.id,
            name=item.name,
            quantity=1,
            sender_id=actor.id,
            recipient_id=recipient.id,
        )
        db.add(transfer)
        db.flush()
        return transfer

    if quantity is None or quantity <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A positive quantity is required for materials.",
        )
    ledger.escrow_material(db, stock=item, quantity=quantity)

    # One open escrow per (sender, recipient, material); repeated requests add up.
    transfer = (
        db.query(models.PendingTransfer)
        .filter(
            models.PendingTransfer.item_type == models.ItemType.MATERIAL,
            models.PendingTransfer.sender_id == actor.id,
            models.PendingTransfer.recipient_id == recipient.id,
            models.PendingTransfer.material_definition_id == item.material_definition_id,
            models.PendingTransfer.status == models.TechnicianTransferStatus.PENDING,
        )
        .with_for_update()
        .first()
    )
    if transfer:
        transfer.quantity = transfer.quantity + quantity
    else:
        transfer = models.PendingTransfer(
            item_type=models.ItemType.MATERIAL,
            item_id=item.id,
            material_definition_id=item.material_definition_id,
            name=item.name,
            quantity=quantity,
            sender_id=actor.id,
            recipient_id=recipient.id,
        )
        db.add(transfer)
    db.flush()
    return transfer


def _resolve(
    db: Session,
    *,
    actor: account_models.User,
    transfer: models.PendingTransfer,
    to_status: models.TechnicianTransferStatus,
) -> None:
    ensure_transition(
        db,
        actor_user_id=actor.id,
        entity_type="technician_transfer",
        entity_id=transfer.id,
        from_state=transfer.status,
        to_state=to_status,
        before_obj=transfer,
        after_obj={"status": to_status},
    )
    transfer.status = to_status
    transfer.resolved_at = datetime.now(timezone.utc)
    transfer.resolved_by_id = actor.id
    db.flush()


def _give_back(db: Session, transfer: models.PendingTransfer) -> None:
    if transfer.item_type == models.ItemType.MATERIAL:
        definition = ledger.get_material_definition(db, transfer.material_definition_id)
        ledger.release_material(
            db,
            definition=definition,
            quantity=transfer.quantity,
            technician_id=transfer.sender_id,
        )


def confirm_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> TransferResolution:
    transfer = get_transfer(db, transfer_id, lock=True)
    if transfer.recipient_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the recipient can confirm this transfer.",
        )
    _resolve(db, actor=actor, transfer=transfer, to_status=models.TechnicianTransferStatus.CONFIRMED)

    if transfer.item_type == models.ItemType.DEVICE:
        device = ledger.get_device(db, transfer.item_id, lock=True)
        if device.assigned_to_id != transfer.sender_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{device.name} is no longer held by the sender.",
            )
        result = ledger.transfer_device_to_technician(
            db,
            device=device,
            sender_id=transfer.sender_id,
            recipient_id=transfer.recipient_id,
        )
    else:
        definition = ledger.get_material_definition(db, transfer.material_definition_id)
        result = ledger.transfer_material_to_technician(
            db,
            definition=definition,
            quantity=transfer.quantity,
            sender_id=transfer.sender_id,
            recipient_id=transfer.recipient_id,
        )

    logger.info(
        "Technician transfer confirmed",
        extra={
            "transfer_id": transfer.id,
            "sender_id": transfer.sender_id,
            "recipient_id": transfer.recipient_id,
            "quantity": transfer.quantity,
        },
    )
    return TransferResolution(transfer, result)


def reject_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> TransferResolution:
    transfer = get_transfer(db, transfer_id, lock=True)
    if transfer.recipient_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the recipient can reject this transfer.",
        )
    _resolve(db, actor=actor, transfer=transfer, to_status=models.TechnicianTransferStatus.REJECTED)
    _give_back(db, transfer)
    logger.info("Technician transfer rejected", extra={"transfer_id": transfer.id})
    return TransferResolution(transfer)


def cancel_transfer(
    db: Session,
    *,
    actor: account_models.User,
    transfer_id: str,
) -> TransferResolution:
    transfer = get_transfer(db, transfer_id, lock=True)
    if transfer.sender_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the sender can cancel this transfer.",
        )
    _resolve(db, actor=actor, transfer=transfer, to_status=models.TechnicianTransferStatus.CANCELED)
    _give_back(db, transfer)
    logger.info("Technician transfer canceled", extra={"transfer_id": transfer.id})
    return TransferResolution(transfer)


# ---------------------------------------------------------------------------
# READ MODELS
# ---------------------------------------------------------------------------


def incoming_transfers(db: Session, *, technician_id: str) -> List[models.PendingTransfer]:
    return (
        db.query(models.PendingTransfer)
        .filter(
            models.PendingTransfer.recipient_id == technician_id,
            models.PendingTransfer.status == models.TechnicianTransferStatus.PENDING,
        )
        .order_by(models.PendingTransfer.created_at.asc())
        .all()
    )


def outgoing_transfers(db: Session, *, technician_id: str) -> List[models.PendingTransfer]:
    return (
        db.query(models.PendingTransfer)
        .filter(
            models.PendingTransfer.sender_id == technician_id,
            models.PendingTransfer.status == models.TechnicianTransferStatus.PENDING,
        )
        .order_by(models.PendingTransfer.created_at.asc())
        .all()
    )


def technician_stock(db: Session, *, technician_id: str) -> TechnicianStock:
    """What a technician holds right now; escrowed material is already off the rows."""
    account_services.get_user(db, technician_id)
    devices = (
        db.query(models.DeviceItem)
        .filter(
            models.DeviceItem.assigned_to_id == technician_id,
            models.DeviceItem.status.in_(models.TECHNICIAN_HELD_STATUSES),
        )
        .order_by(models.DeviceItem.name.asc(), models.DeviceItem.serial_number.asc())
        .all()
    )
    materials = (
        db.query(models.MaterialStock)
        .filter(
            models.MaterialStock.assigned_to_id == technician_id,
            models.MaterialStock.quantity > 0,
        )
        .order_by(models.MaterialStock.name.asc())
        .all()
    )
    deficits = (
        db.query(models.TechnicianMaterialDeficit)
        .filter(
            models.TechnicianMaterialDeficit.technician_id == technician_id,
            models.TechnicianMaterialDeficit.quantity > 0,
        )
        .all()
    )
    return TechnicianStock(technician_id, devices, materials, deficits)
