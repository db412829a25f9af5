"""
Corrections to an already settled order.

The technician may amend within ORDER_AMEND_WINDOW_MINUTES of completion;
admins and coordinators may edit at any time. Both re-run the settlement
reconciliation against what the order links today, so submitting the same
payload twice changes nothing the second time. Materials are never credited
back to stock: a lower figure only rewrites the snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from fieldops.apps.accounts import models as account_models
from fieldops.apps.accounts import services as account_services
from fieldops.apps.workflow import ensure_transition

from . import models, policy, schemas, services

logger = logging.getLogger(__name__)


@dataclass
class AmendPolicy:
    order_id: str
    can_amend: bool
    deadline: Optional[datetime] = None
    reason: Optional[str] = None


def _amend(
    db: Session,
    *,
    actor: account_models.User,
    order: models.Order,
    payload: schemas.OrderCompletionRequest,
    workflow: str,
    holder_id: Optional[str],
    purge_collected: bool,
    note: str,
) -> services.SettlementResult:
    ensure_transition(
        db,
        actor_user_id=actor.id,
        entity_type=workflow,
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
    db.flush()

    result = services.SettlementResult(order)
    services.apply_completion(
        db,
        actor=actor,
        order=order,
        payload=payload,
        holder_id=holder_id,
        purge_collected=purge_collected,
        result=result,
    )
    services.record_order_history(db, order=order, status_before=status_before, actor=actor, notes=note)

    logger.info(
        "Order amended",
        extra={
            "order_id": order.id,
            "workflow": workflow,
            "status_before": status_before.value,
            "status_after": order.status.value,
            "actor_user_id": actor.id,
        },
    )
    return result


def amend_completion(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
    payload: schemas.OrderCompletionRequest,
) -> services.SettlementResult:
    """Technician correction; collected devices are only detached, never deleted."""
    order = services.get_order(db, order_id, lock=True)
    services.ensure_order_technician(actor, order)
    return _amend(
        db,
        actor=actor,
        order=order,
        payload=payload,
        workflow="order_amendment",
        holder_id=order.assigned_to_id,
        purge_collected=False,
        note="Amended by technician.",
    )


def admin_edit_completion(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
    payload: schemas.OrderCompletionRequest,
) -> services.SettlementResult:
    account_services.ensure_roles(actor, *account_services.ORDER_ADMIN_ROLES)
    order = services.get_order(db, order_id, lock=True)
    return _amend(
        db,
        actor=actor,
        order=order,
        payload=payload,
        workflow="order_admin_edit",
        holder_id=None,
        purge_collected=True,
        note=f"Edited by {actor.role.value.lower()}.",
    )


def can_technician_amend(
    db: Session,
    *,
    actor: account_models.User,
    order_id: str,
) -> AmendPolicy:
    order = services.get_order(db, order_id)
    if order.assigned_to_id != actor.id:
        return AmendPolicy(order.id, False, reason="This order is not assigned to you.")
    if order.status not in (models.OrderStatus.COMPLETED, models.OrderStatus.NOT_COMPLETED):
        return AmendPolicy(order.id, False, reason="Only completed orders can be amended.")
    if order.completed_at is None:
        return AmendPolicy(order.id, False, reason="Order has no completion time.")

    deadline = policy.amend_deadline(order.completed_at)
    if not policy.is_within_amend_window(order.completed_at):
        return AmendPolicy(
            order.id,
            False,
            deadline=deadline,
            reason=f"The {policy.ORDER_AMEND_WINDOW_MINUTES} minute amendment window has expired.",
        )
    return AmendPolicy(order.id, True, deadline=deadline)
