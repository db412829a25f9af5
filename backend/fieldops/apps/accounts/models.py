from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import List

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    Table,
)
from sqlalchemy.orm import relationship

from fieldops.database import Base
from fieldops.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, enum.Enum):
    """Roles that gate the warehouse and settlement transitions."""

    ADMIN = "ADMIN"
    COORDINATOR = "COORDINATOR"
    WAREHOUSEMAN = "WAREHOUSEMAN"
    TECHNICIAN = "TECHNICIAN"


user_locations = Table(
    "user_locations",
    Base.metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("location_id", String(36), ForeignKey("locations.id", ondelete="CASCADE"), primary_key=True),
)


class Location(Base):
    """A physical warehouse that holds AVAILABLE / RETURNED stock."""

    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(128), nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class User(Base):
    """
    Staff account.

    Warehousemen are scoped to the locations they are assigned to; admins and
    coordinators act on any location but always name it explicitly.
    Technicians hold stock themselves and never act on a location.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_role_active", "role", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=False)
    role = Column(
        SAEnum(AccountRole, name="account_role", native_enum=False),
        nullable=False,
        default=AccountRole.TECHNICIAN,
        index=True,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    locations = relationship("Location", secondary=user_locations, lazy="selectin")

    @property
    def location_ids(self) -> List[str]:
        return [location.id for location in self.locations]

    @property
    def is_technician(self) -> bool:
        return self.role == AccountRole.TECHNICIAN

    @property
    def is_admin_or_coordinator(self) -> bool:
        return self.role in (AccountRole.ADMIN, AccountRole.COORDINATOR)
