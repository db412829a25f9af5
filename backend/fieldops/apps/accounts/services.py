from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from . import models

WAREHOUSE_ROLES = (
    models.AccountRole.ADMIN,
    models.AccountRole.COORDINATOR,
    models.AccountRole.WAREHOUSEMAN,
)

ORDER_ADMIN_ROLES = (
    models.AccountRole.ADMIN,
    models.AccountRole.COORDINATOR,
)


def get_user(db: Session, user_id: str) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return user


def get_location(db: Session, location_id: str) -> models.Location:
    location = db.query(models.Location).filter(models.Location.id == location_id).first()
    if not location:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found.")
    return location


def get_active_technician(db: Session, user_id: str) -> models.User:
    user = get_user(db, user_id)
    if user.role != models.AccountRole.TECHNICIAN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"User {user.full_name} is not a technician.",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Technician {user.full_name} is inactive.",
        )
    return user


def ensure_roles(actor: models.User, *roles: models.AccountRole) -> None:
    if actor.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions for this operation",
        )


def ensure_location_access(actor: models.User, location_id: str) -> None:
    """Admins and coordinators act everywhere; warehousemen only on their own locations."""
    ensure_roles(actor, *WAREHOUSE_ROLES)
    if actor.is_admin_or_coordinator:
        return
    if location_id not in actor.location_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not assigned to this location.",
        )


def resolve_location(
    db: Session,
    *,
    actor: models.User,
    location_id: Optional[str] = None,
) -> str:
    """
    Return the location an actor is operating on.

    - ADMIN / COORDINATOR must name the location explicitly.
    - WAREHOUSEMAN falls back to their single assigned location; an explicit
      id must be one of theirs.
    - TECHNICIAN never acts on a location.
    """
    if actor.role == models.AccountRole.TECHNICIAN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Technicians cannot act on a warehouse location.",
        )

    if actor.is_admin_or_coordinator:
        if not location_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="location_id is required for administrators and coordinators.",
            )
        return get_location(db, location_id).id

    assigned = actor.location_ids
    if location_id:
        if location_id not in assigned:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not assigned to this location.",
            )
        return location_id

    if not assigned:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No location is assigned to your account.",
        )
    if len(assigned) > 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You are assigned to several locations; pass location_id explicitly.",
        )
    return assigned[0]
