from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fieldops.database import get_db
from fieldops.security import get_current_active_user, require_roles
from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.orders import services as order_services

from . import history, ledger, location_transfers, schemas, transfers

router = APIRouter(prefix="/warehouse", tags=["warehouse"])

WAREHOUSE_ROLES = [
    account_models.AccountRole.ADMIN,
    account_models.AccountRole.COORDINATOR,
    account_models.AccountRole.WAREHOUSEMAN,
]

TECHNICIAN_ROLES = [account_models.AccountRole.TECHNICIAN]


def _ledger_response(db: Session, result: ledger.LedgerResult) -> schemas.LedgerResultRead:
    db.commit()
    db.refresh(result.item)
    db.refresh(result.entry)
    return schemas.LedgerResultRead.model_validate(result)


# ---------------------------------------------------------------------------
# LEDGER
# ---------------------------------------------------------------------------


@router.post("/receive", response_model=schemas.LedgerResultRead, status_code=status.HTTP_201_CREATED)
def receive(
    payload: schemas.ReceiveRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=payload.location_id)
    result = ledger.receive(
        db,
        actor=current_user,
        item_type=payload.item_type,
        location_id=location_id,
        definition_id=payload.definition_id,
        serial_number=payload.serial_number,
        quantity=payload.quantity,
    )
    return _ledger_response(db, result)


@router.post("/issue", response_model=schemas.LedgerResultRead)
def issue(
    payload: schemas.IssueRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=payload.location_id)
    result = ledger.issue_to(
        db,
        actor=current_user,
        item_id=payload.item_id,
        technician_id=payload.technician_id,
        location_id=location_id,
        quantity=payload.quantity,
    )
    return _ledger_response(db, result)


@router.post("/return", response_model=schemas.LedgerResultRead)
def return_to_location(
    payload: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=payload.location_id)
    result = ledger.return_to_location(
        db,
        actor=current_user,
        item_id=payload.item_id,
        location_id=location_id,
        quantity=payload.quantity,
    )
    return _ledger_response(db, result)


@router.post("/return-to-operator", response_model=schemas.LedgerResultRead)
def return_to_operator(
    payload: schemas.ReturnRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=payload.location_id)
    result = ledger.return_to_operator(
        db,
        actor=current_user,
        item_id=payload.item_id,
        location_id=location_id,
        quantity=payload.quantity,
    )
    return _ledger_response(db, result)


@router.post("/collect", response_model=schemas.LedgerResultRead, status_code=status.HTTP_201_CREATED)
def collect(
    payload: schemas.CollectRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    result = order_services.collect_for_order(
        db,
        actor=current_user,
        order_id=payload.order_id,
        name=payload.name,
        category=payload.category,
        serial_number=payload.serial_number,
    )
    return _ledger_response(db, result)


@router.get("/technician-stock", response_model=schemas.TechnicianStockRead)
def technician_stock(
    technician_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(get_current_active_user),
):
    if current_user.is_technician:
        if technician_id and technician_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Technicians can only view their own stock.",
            )
        technician_id = current_user.id
    elif not technician_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="technician_id is required.",
        )
    stock = transfers.technician_stock(db, technician_id=technician_id)
    return schemas.TechnicianStockRead.model_validate(stock)


@router.get("/items/{item_id}/history", response_model=List[schemas.HistoryRead])
def item_history(
    item_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    return history.item_timeline(db, item_id=item_id)


@router.get("/history", response_model=List[schemas.HistoryRead])
def history_by_ids(
    ids: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    return history.entries_by_ids(db, ids=ids)


# ---------------------------------------------------------------------------
# TECHNICIAN TRANSFERS
# ---------------------------------------------------------------------------


def _transfer_response(db: Session, resolution: transfers.TransferResolution) -> schemas.TransferResolutionRead:
    db.commit()
    db.refresh(resolution.transfer)
    return schemas.TransferResolutionRead(
        transfer=schemas.PendingTransferRead.model_validate(resolution.transfer),
        history_id=resolution.result.entry.id if resolution.result else None,
    )


@router.post(
    "/transfers/request",
    response_model=schemas.PendingTransferRead,
    status_code=status.HTTP_201_CREATED,
)
def request_transfer(
    payload: schemas.TransferRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    transfer = transfers.request_transfer(
        db,
        actor=current_user,
        recipient_id=payload.recipient_id,
        item_id=payload.item_id,
        quantity=payload.quantity,
    )
    db.commit()
    db.refresh(transfer)
    return transfer


@router.post("/transfers/{transfer_id}/confirm", response_model=schemas.TransferResolutionRead)
def confirm_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    resolution = transfers.confirm_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _transfer_response(db, resolution)


@router.post("/transfers/{transfer_id}/reject", response_model=schemas.TransferResolutionRead)
def reject_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    resolution = transfers.reject_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _transfer_response(db, resolution)


@router.post("/transfers/{transfer_id}/cancel", response_model=schemas.TransferResolutionRead)
def cancel_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    resolution = transfers.cancel_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _transfer_response(db, resolution)


@router.get("/transfers/incoming", response_model=List[schemas.PendingTransferRead])
def incoming_transfers(
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    return transfers.incoming_transfers(db, technician_id=current_user.id)


@router.get("/transfers/outgoing", response_model=List[schemas.PendingTransferRead])
def outgoing_transfers(
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    return transfers.outgoing_transfers(db, technician_id=current_user.id)


# ---------------------------------------------------------------------------
# LOCATION TRANSFERS
# ---------------------------------------------------------------------------


def _batch_response(
    db: Session,
    resolution: location_transfers.BatchResolution,
) -> schemas.BatchResolutionRead:
    history_ids = resolution.history_ids
    db.commit()
    db.refresh(resolution.transfer)
    return schemas.BatchResolutionRead(
        transfer=schemas.LocationTransferRead.model_validate(resolution.transfer),
        history_ids=history_ids,
    )


@router.post(
    "/location-transfers/request",
    response_model=schemas.LocationTransferRead,
    status_code=status.HTTP_201_CREATED,
)
def request_location_transfer(
    payload: schemas.LocationTransferRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    from_location_id = account_services.resolve_location(
        db, actor=current_user, location_id=payload.from_location_id
    )
    transfer = location_transfers.request_location_transfer(
        db,
        actor=current_user,
        from_location_id=from_location_id,
        to_location_id=payload.to_location_id,
        device_ids=payload.device_ids,
        materials=[(line.material_definition_id, line.quantity) for line in payload.materials],
        notes=payload.notes,
    )
    db.commit()
    db.refresh(transfer)
    return transfer


@router.post("/location-transfers/{transfer_id}/confirm", response_model=schemas.BatchResolutionRead)
def confirm_location_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    resolution = location_transfers.confirm_location_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _batch_response(db, resolution)


@router.post("/location-transfers/{transfer_id}/reject", response_model=schemas.BatchResolutionRead)
def reject_location_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    resolution = location_transfers.reject_location_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _batch_response(db, resolution)


@router.post("/location-transfers/{transfer_id}/cancel", response_model=schemas.BatchResolutionRead)
def cancel_location_transfer(
    transfer_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    resolution = location_transfers.cancel_location_transfer(db, actor=current_user, transfer_id=transfer_id)
    return _batch_response(db, resolution)


@router.get("/location-transfers/incoming", response_model=List[schemas.LocationTransferRead])
def incoming_location_transfers(
    location_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=location_id)
    return location_transfers.incoming_location_transfers(db, location_id=location_id)


@router.get("/location-transfers/outgoing", response_model=List[schemas.LocationTransferRead])
def outgoing_location_transfers(
    location_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*WAREHOUSE_ROLES)),
):
    location_id = account_services.resolve_location(db, actor=current_user, location_id=location_id)
    return location_transfers.outgoing_location_transfers(db, location_id=location_id)
