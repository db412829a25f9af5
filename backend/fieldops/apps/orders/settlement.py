"""
First completion of an order.

Status, work codes, materials, devices and services are settled in one unit
of work: any refusal raised along the way leaves the session to be rolled
back with nothing written. A material shortage is the only problem that
does not abort; it comes back as a warning on the result.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.workflow import ensure_transition

from . import models, schemas, services

logger = logging.getLogger(__name__)


def _settle(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    payload: schemas.OrderCompletionRequest,
    holder_id: Optional[str],
    note: str,
) -> services.SettlementResult:
    services.order_technician_id(order)
    ensure_transition(
        db,
        actor_user_id=actor.id,
        entity_type="order_completion",
        entity_id=order.id,
        from_state=order.status,
        to_state=payload.status,
        before_obj=order,
        after_obj=services.transition_payload(order, payload),
    )

    status_before = order.status
    order.status = payload.status
    order.notes = payload.notes
    order.failure_reason = payload.failure_reason if payload.status == models.OrderStatus.NOT_COMPLETED else None
    order.completed_at = datetime.now(timezone.utc)
    db.flush()

    result = services.SettlementResult(order)
    services.apply_completion(
        db,
        actor=actor,
        order=order,
        payload=payload,
        holder_id=holder_id,
        purge_collected=False,
        result=result,
    )
    services.record_order_history(db, order=order, status_before=status_before, actor=actor, notes=note)

    logger.info(
        "Order settled",
        extra={
            "order_id": order.id,
            "status": order.status.value,
            "actor_user_id": actor.id,
            "warnings": len(result.warnings),
        },
    )
    return result


def complete_order(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
    payload: schemas.OrderCompletionRequest,
) -> services.SettlementResult:
    """Completion by the assigned technician; devices must come off their stock."""
    order = services.get_order(db, order_id, lock=True)
    services.ensure_order_technician(actor, order)
    return _settle(
        db,
        actor=actor,
        order=order,
        payload=payload,
        holder_id=order.assigned_to_id,
        note="Completed by technician.",
    )


def admin_complete_order(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
    payload: schemas.OrderCompletionRequest,
) -> services.SettlementResult:
    """Completion on the technician's behalf; devices may come from any holder."""
    account_services.ensure_roles(actor, *account_services.ORDER_ADMIN_ROLES)
    order = services.get_order(db, order_id, lock=True)
    return _settle(
        db,
        actor=actor,
        order=order,
        payload=payload,
        holder_id=None,
        note=f"Completed by {actor.role.value.lower()}.",
    )
