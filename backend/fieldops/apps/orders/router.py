from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fieldops.database import get_db
from fieldops.security import require_roles
from fieldops.apps.accounts import models as account_models

from . import amendment, schemas, services, settlement

router = APIRouter(prefix="/orders", tags=["orders"])

TECHNICIAN_ROLES = [account_models.AccountRole.TECHNICIAN]

ORDER_ADMIN_ROLES = [
    account_models.AccountRole.ADMIN,
    account_models.AccountRole.COORDINATOR,
]


def _settlement_response(db: Session, result: services.SettlementResult) -> schemas.SettlementRead:
    db.commit()
    db.refresh(result.order)
    return schemas.SettlementRead(
        order=schemas.OrderRead.model_validate(result.order),
        warnings=result.warnings,
        history_ids=result.history_ids,
    )


@router.post("/{order_id}/complete", response_model=schemas.SettlementRead)
def complete_order(
    order_id: str,
    payload: schemas.OrderCompletionRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    result = settlement.complete_order(db, actor=current_user, order_id=order_id, payload=payload)
    return _settlement_response(db, result)


@router.post("/{order_id}/admin-complete", response_model=schemas.SettlementRead)
def admin_complete_order(
    order_id: str,
    payload: schemas.OrderCompletionRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*ORDER_ADMIN_ROLES)),
):
    result = settlement.admin_complete_order(db, actor=current_user, order_id=order_id, payload=payload)
    return _settlement_response(db, result)


@router.post("/{order_id}/amend", response_model=schemas.SettlementRead)
def amend_order(
    order_id: str,
    payload: schemas.OrderCompletionRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    result = amendment.amend_completion(db, actor=current_user, order_id=order_id, payload=payload)
    return _settlement_response(db, result)


@router.post("/{order_id}/admin-edit", response_model=schemas.SettlementRead)
def admin_edit_order(
    order_id: str,
    payload: schemas.OrderCompletionRequest,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*ORDER_ADMIN_ROLES)),
):
    result = amendment.admin_edit_completion(db, actor=current_user, order_id=order_id, payload=payload)
    return _settlement_response(db, result)


@router.get("/{order_id}/amend-policy", response_model=schemas.AmendPolicyRead)
def amend_policy(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: account_models.User = Depends(require_roles(*TECHNICIAN_ROLES)),
):
    policy = amendment.can_technician_amend(db, actor=current_user, order_id=order_id)
    return schemas.AmendPolicyRead.model_validate(policy)
