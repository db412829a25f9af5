"""
Append-only history of ledger transitions.

Only the ledger writes here; every ledger mutation hands back the entry it
appended together with the row it changed.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from . import models


def record(
    db: Session,
    *,
    item: models.WarehouseItem,
    action: models.HistoryAction,
    performed_by_id: Optional[str],
    quantity: Optional[int] = None,
    assigned_order_id: Optional[str] = None,
    assigned_to_id: Optional[str] = None,
    from_location_id: Optional[str] = None,
    to_location_id: Optional[str] = None,
    location_transfer_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> models.WarehouseHistory:
    entry = models.WarehouseHistory(
        item_id=item.id,
        action=action,
        performed_by_id=performed_by_id,
        quantity=quantity,
        assigned_order_id=assigned_order_id,
        assigned_to_id=assigned_to_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        location_transfer_id=location_transfer_id,
        notes=notes,
    )
    db.add(entry)
    db.flush()
    return entry


def item_timeline(db: Session, *, item_id: str) -> List[models.WarehouseHistory]:
    item = db.query(models.WarehouseItem).filter(models.WarehouseItem.id == item_id).first()
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found.")
    return (
        db.query(models.WarehouseHistory)
        .filter(models.WarehouseHistory.item_id == item_id)
        .order_by(models.WarehouseHistory.action_date.asc(), models.WarehouseHistory.id.asc())
        .all()
    )


def entries_by_ids(db: Session, *, ids: Iterable[int]) -> List[models.WarehouseHistory]:
    ids = list(ids)
    if not ids:
        return []
    return (
        db.query(models.WarehouseHistory)
        .filter(models.WarehouseHistory.id.in_(ids))
        .order_by(models.WarehouseHistory.id.asc())
        .all()
    )


def latest_entry(
    db: Session,
    *,
    item_id: str,
    action: Optional[models.HistoryAction] = None,
    order_id: Optional[str] = None,
    before_id: Optional[int] = None,
) -> Optional[models.WarehouseHistory]:
    query = db.query(models.WarehouseHistory).filter(models.WarehouseHistory.item_id == item_id)
    if action is not None:
        query = query.filter(models.WarehouseHistory.action == action)
    if order_id is not None:
        query = query.filter(models.WarehouseHistory.assigned_order_id == order_id)
    if before_id is not None:
        query = query.filter(models.WarehouseHistory.id < before_id)
    return query.order_by(models.WarehouseHistory.id.desc()).first()


def purge_item(db: Session, *, item: models.WarehouseItem) -> None:
    """Drop a row and its history; used only for devices recorded by mistake."""
    db.query(models.WarehouseHistory).filter(
        models.WarehouseHistory.item_id == item.id
    ).delete(synchronize_session=False)
    db.delete(item)
    db.flush()
