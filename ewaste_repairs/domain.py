from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    RECYCLER = "RECYCLER"
    TECHNICIAN = "TECHNICIAN"
    EDUCATOR = "EDUCATOR"
    ADMIN = "ADMIN"
    BUSINESS = "BUSINESS"


CUSTOMER_ROLES: frozenset[Role] = frozenset({Role.USER, Role.BUSINESS})
IMPACT_RECORDER_ROLES: frozenset[Role] = frozenset(
    {Role.RECYCLER, Role.TECHNICIAN, Role.ADMIN}
)


class RepairStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    ESTIMATE_CONFIRMED = "ESTIMATE_CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES: frozenset[RepairStatus] = frozenset(
    {RepairStatus.COMPLETED, RepairStatus.CANCELLED}
)


# Reachable targets per current status.
TRANSITIONS: dict[RepairStatus, frozenset[RepairStatus]] = {
    RepairStatus.PENDING: frozenset({RepairStatus.ACCEPTED, RepairStatus.CANCELLED}),
    RepairStatus.ACCEPTED: frozenset(
        {RepairStatus.IN_PROGRESS, RepairStatus.CANCELLED}
    ),
    RepairStatus.IN_PROGRESS: frozenset(
        {
            RepairStatus.IN_PROGRESS,
            RepairStatus.ESTIMATE_CONFIRMED,
            RepairStatus.COMPLETED,
            RepairStatus.CANCELLED,
        }
    ),
    RepairStatus.ESTIMATE_CONFIRMED: frozenset(
        {RepairStatus.IN_PROGRESS, RepairStatus.COMPLETED, RepairStatus.CANCELLED}
    ),
    RepairStatus.COMPLETED: frozenset(),
    RepairStatus.CANCELLED: frozenset(),
}


class NotificationType(str, Enum):
    REPAIR_REQUEST = "REPAIR_REQUEST"
    REPAIR_UPDATE = "REPAIR_UPDATE"
    REPAIR_ESTIMATE = "REPAIR_ESTIMATE"
    REPAIR_CONFIRMED = "REPAIR_CONFIRMED"
    STATUS_UPDATE = "STATUS_UPDATE"
    ACHIEVEMENT = "ACHIEVEMENT"
    PICKUP_REQUEST = "PICKUP_REQUEST"


class EventType(str, Enum):
    NEW_REPAIR_REQUEST = "NEW_REPAIR_REQUEST"
    REPAIR_STATUS_UPDATE = "REPAIR_STATUS_UPDATE"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    password_hash: str
    role: Role
    full_name: str = ""
    email: str = ""
    is_active: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "name": self.full_name,
            "email": self.email,
        }


@dataclass(frozen=True)
class RepairRequest:
    id: int
    user_id: int
    device_type: str
    description: str
    customer_address: str
    status: RepairStatus
    created_at: datetime
    updated_at: datetime
    technician_id: int | None = None
    estimated_cost: Decimal | None = None
    pickup_date: datetime | None = None
    pickup_address: str | None = None
    technician_phone: str | None = None
    technician_email: str | None = None
    pickup_notes: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "technicianId": self.technician_id,
            "deviceType": self.device_type,
            "description": self.description,
            "customerAddress": self.customer_address,
            "status": self.status.value,
            "estimatedCost": (
                float(self.estimated_cost) if self.estimated_cost is not None else None
            ),
            "pickupDate": _iso(self.pickup_date),
            "pickupAddress": self.pickup_address,
            "technicianPhone": self.technician_phone,
            "technicianEmail": self.technician_email,
            "pickupNotes": self.pickup_notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: int
    title: str
    message: str
    type: NotificationType
    read: bool
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "read": self.read,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class NotificationDraft:
    """A notification row waiting to be written alongside a state change."""

    user_id: int
    title: str
    message: str
    type: NotificationType


@dataclass(frozen=True)
class ImpactTotals:
    user_id: int
    carbon_saved: float
    points: int
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "userId": self.user_id,
            "carbonSaved": self.carbon_saved,
            "points": self.points,
            "updatedAt": _iso(self.updated_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
