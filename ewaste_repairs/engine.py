"""Repair request lifecycle.

Every mutation runs in the same order: validate the input, check the caller's
role, load the record, check that the transition is legal, then persist the new
state together with its notification rows in one compare-and-swap transaction.
Only after that commit are events pushed to connected sessions, so a failed
operation never leaves a notification or an event behind.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Protocol

from ewaste_repairs.domain import (
    CUSTOMER_ROLES,
    IMPACT_RECORDER_ROLES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    EventType,
    ImpactTotals,
    Notification,
    NotificationDraft,
    NotificationType,
    RepairRequest,
    RepairStatus,
    Role,
)
from ewaste_repairs.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ewaste_repairs.impact import achievement_notification, carbon_points, parse_carbon
from ewaste_repairs.realtime import ConnectionRegistry
from ewaste_repairs.store import SqliteStore

logger = logging.getLogger(__name__)

NEW_REQUEST_SCOPES = ("technicians", "all")
CENTS = Decimal("0.01")
MAX_COST = Decimal("1000000000")


class Actor(Protocol):
    id: int
    role: Role


class RepairLifecycle:
    def __init__(
        self,
        store: SqliteStore,
        registry: ConnectionRegistry,
        *,
        new_request_scope: str = "technicians",
    ) -> None:
        if new_request_scope not in NEW_REQUEST_SCOPES:
            raise ValueError(f"Unknown new request scope: {new_request_scope}")
        self.store = store
        self.registry = registry
        self.new_request_scope = new_request_scope

    # queries

    def get_request(self, actor: Actor, request_id: int) -> RepairRequest:
        record = self._load(request_id)
        if not _can_view(actor, record):
            raise AuthorizationError("You do not have access to this repair request.")
        return record

    def list_available(self, actor: Actor) -> list[RepairRequest]:
        _require_role(actor, Role.TECHNICIAN)
        return self.store.list_requests(status=RepairStatus.PENDING)

    def list_for_user(self, actor: Actor, user_id: int) -> list[RepairRequest]:
        if actor.id != user_id and actor.role != Role.ADMIN:
            raise AuthorizationError("You can only list your own repair requests.")
        return self.store.list_requests(user_id=user_id)

    def list_for_technician(self, actor: Actor, technician_id: int) -> list[RepairRequest]:
        if actor.role == Role.ADMIN:
            return self.store.list_requests(technician_id=technician_id)
        _require_role(actor, Role.TECHNICIAN)
        if actor.id != technician_id:
            raise AuthorizationError("You can only list your own assignments.")
        return self.store.list_requests(technician_id=technician_id)

    # transitions

    def create_request(
        self,
        actor: Actor,
        *,
        device_type: str,
        description: str,
        customer_address: str,
    ) -> RepairRequest:
        device_type = _require_text("deviceType", device_type)
        description = _require_text("description", description)
        customer_address = _require_text("customerAddress", customer_address)
        if actor.role not in CUSTOMER_ROLES:
            raise AuthorizationError("Only customers can request repairs.")

        draft = NotificationDraft(
            user_id=actor.id,
            title="Repair request created",
            message=(
                f"Your repair request for {device_type} has been submitted. "
                "A technician will review it shortly."
            ),
            type=NotificationType.REPAIR_REQUEST,
        )
        record = self.store.create_request(
            user_id=actor.id,
            device_type=device_type,
            description=description,
            customer_address=customer_address,
            notifications=[draft],
        )
        logger.info("Repair request %s created by user %s", record.id, actor.id)

        payload = record.to_dict()
        if self.new_request_scope == "all":
            self.registry.broadcast(EventType.NEW_REPAIR_REQUEST, payload)
        else:
            self.registry.publish_to_role(
                Role.TECHNICIAN, EventType.NEW_REPAIR_REQUEST, payload
            )
        return record

    def accept_request(
        self,
        actor: Actor,
        request_id: int,
        *,
        pickup_date: datetime | str,
        pickup_address: str,
        technician_phone: str,
        technician_email: str,
        pickup_notes: str | None = None,
    ) -> RepairRequest:
        _require_role(actor, Role.TECHNICIAN)
        when = _parse_datetime("pickupDate", pickup_date)
        pickup_address = _require_text("pickupAddress", pickup_address)
        technician_phone = _require_text("technicianPhone", technician_phone)
        technician_email = _require_text("technicianEmail", technician_email)
        notes = (pickup_notes or "").strip() or None

        record = self._load(request_id)
        if record.status != RepairStatus.PENDING:
            raise InvalidStateError(
                f"Repair request {request_id} is no longer pending."
            )

        message = (
            f"A technician accepted your {record.device_type} repair request. "
            f"Pickup is scheduled for {when:%Y-%m-%d %H:%M} at {pickup_address}. "
            f"Contact: {technician_phone}, {technician_email}."
        )
        if notes:
            message += f" Notes: {notes}"
        draft = NotificationDraft(
            user_id=record.user_id,
            title="Repair request accepted",
            message=message,
            type=NotificationType.REPAIR_UPDATE,
        )
        updated = self.store.transition_request(
            request_id,
            expected_status=RepairStatus.PENDING,
            new_status=RepairStatus.ACCEPTED,
            changes={
                "technician_id": actor.id,
                "pickup_date": when,
                "pickup_address": pickup_address,
                "technician_phone": technician_phone,
                "technician_email": technician_email,
                "pickup_notes": notes,
            },
            notifications=[draft],
        )
        if updated is None:
            raise InvalidStateError(
                f"Repair request {request_id} was accepted by another technician."
            )
        logger.info("Repair request %s accepted by technician %s", request_id, actor.id)
        self._publish_update(updated)
        return updated

    def update_status(
        self,
        actor: Actor,
        request_id: int,
        new_status: RepairStatus | str,
        estimated_cost: Decimal | float | str | None = None,
        carbon_saved: Decimal | float | str | None = None,
    ) -> RepairRequest:
        status = _parse_status(new_status)
        if status == RepairStatus.CANCELLED:
            if estimated_cost is not None or carbon_saved is not None:
                raise ValidationError("A cancellation takes no cost or impact.")
            return self.cancel(actor, request_id)
        if status in (RepairStatus.ACCEPTED, RepairStatus.ESTIMATE_CONFIRMED):
            raise InvalidStateError(
                f"{status.value} is set by accepting or confirming, not by a status update."
            )
        cost = _parse_cost(estimated_cost) if estimated_cost is not None else None
        carbon = parse_carbon(carbon_saved) if carbon_saved is not None else None
        if carbon is not None and status != RepairStatus.COMPLETED:
            raise ValidationError("carbonSaved can only be recorded on completion.")

        _require_role(actor, Role.TECHNICIAN)
        record = self._load(request_id)
        if record.technician_id != actor.id:
            raise AuthorizationError("Only the assigned technician can update this repair.")
        if status not in TRANSITIONS[record.status]:
            raise InvalidStateError(
                f"Cannot move a repair from {record.status.value} to {status.value}."
            )
        revising = (
            status == RepairStatus.IN_PROGRESS and record.status != RepairStatus.ACCEPTED
        )
        if revising and cost is None:
            raise ValidationError("Provide a revised estimatedCost.")

        drafts: list[NotificationDraft] = []
        if cost is not None:
            drafts.append(
                NotificationDraft(
                    user_id=record.user_id,
                    title="Repair estimate",
                    message=(
                        f"The estimated cost for repairing your {record.device_type} "
                        f"is {cost:.2f}. Please confirm to proceed."
                    ),
                    type=NotificationType.REPAIR_ESTIMATE,
                )
            )
        impact = None
        if carbon is not None:
            points = carbon_points(carbon)
            impact = (
                record.user_id,
                float(carbon),
                points,
                achievement_notification(record.user_id, carbon, points),
            )

        updated = self.store.transition_request(
            request_id,
            expected_status=record.status,
            new_status=status,
            changes={"estimated_cost": cost} if cost is not None else None,
            notifications=drafts,
            impact=impact,
        )
        if updated is None:
            raise InvalidStateError(
                f"Repair request {request_id} changed while it was being updated."
            )
        logger.info(
            "Repair request %s moved %s -> %s by technician %s",
            request_id,
            record.status.value,
            status.value,
            actor.id,
        )
        self._publish_update(updated)
        return updated

    def start_progress(
        self,
        actor: Actor,
        request_id: int,
        estimated_cost: Decimal | float | str | None = None,
    ) -> RepairRequest:
        return self.update_status(
            actor, request_id, RepairStatus.IN_PROGRESS, estimated_cost=estimated_cost
        )

    def complete(
        self,
        actor: Actor,
        request_id: int,
        estimated_cost: Decimal | float | str | None = None,
        carbon_saved: Decimal | float | str | None = None,
    ) -> RepairRequest:
        return self.update_status(
            actor,
            request_id,
            RepairStatus.COMPLETED,
            estimated_cost=estimated_cost,
            carbon_saved=carbon_saved,
        )

    def confirm_estimate(self, actor: Actor, request_id: int) -> RepairRequest:
        record = self._load(request_id)
        if actor.id != record.user_id:
            raise AuthorizationError("Only the customer can confirm an estimate.")
        if record.estimated_cost is None:
            raise InvalidStateError("There is no estimate to confirm yet.")
        if record.status != RepairStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"An estimate cannot be confirmed while the repair is {record.status.value}."
            )

        drafts: list[NotificationDraft] = []
        if record.technician_id is not None:
            drafts.append(
                NotificationDraft(
                    user_id=record.technician_id,
                    title="Estimate confirmed",
                    message=(
                        f"The customer confirmed the estimate of {record.estimated_cost:.2f} "
                        f"for the {record.device_type} repair."
                    ),
                    type=NotificationType.REPAIR_CONFIRMED,
                )
            )
        # The customer confirms the amount they saw; a revision in between
        # must be confirmed again.
        updated = self.store.transition_request(
            request_id,
            expected_status=RepairStatus.IN_PROGRESS,
            new_status=RepairStatus.ESTIMATE_CONFIRMED,
            guard={"estimated_cost": record.estimated_cost},
            notifications=drafts,
        )
        if updated is None:
            raise InvalidStateError(
                f"Repair request {request_id} changed while confirming the estimate."
            )
        logger.info("Estimate for repair request %s confirmed by user %s", request_id, actor.id)
        self._publish_update(updated)
        return updated

    def cancel(self, actor: Actor, request_id: int) -> RepairRequest:
        record = self._load(request_id)
        is_owner = actor.id == record.user_id
        is_technician = record.technician_id is not None and actor.id == record.technician_id
        if not (is_owner or is_technician or actor.role == Role.ADMIN):
            raise AuthorizationError("You cannot cancel this repair request.")
        if record.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Repair request {request_id} is already {record.status.value}."
            )

        recipients = {record.user_id}
        if record.technician_id is not None:
            recipients.add(record.technician_id)
        recipients.discard(actor.id)
        drafts = [
            NotificationDraft(
                user_id=recipient,
                title="Repair request cancelled",
                message=f"The {record.device_type} repair request #{record.id} was cancelled.",
                type=NotificationType.STATUS_UPDATE,
            )
            for recipient in sorted(recipients)
        ]
        updated = self.store.transition_request(
            request_id,
            expected_status=record.status,
            new_status=RepairStatus.CANCELLED,
            notifications=drafts,
        )
        if updated is None:
            raise InvalidStateError(
                f"Repair request {request_id} changed while it was being cancelled."
            )
        logger.info("Repair request %s cancelled by user %s", request_id, actor.id)
        self._publish_update(updated)
        return updated

    # impact

    def record_impact(
        self, actor: Actor, user_id: int, carbon_saved: Decimal | float | str
    ) -> ImpactTotals:
        carbon = parse_carbon(carbon_saved)
        if actor.role not in IMPACT_RECORDER_ROLES:
            raise AuthorizationError("You cannot record environmental impact.")
        if self.store.get_user_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} does not exist.")
        points = carbon_points(carbon)
        totals = self.store.add_impact(
            user_id=user_id,
            carbon_saved=float(carbon),
            points=points,
            notification=achievement_notification(user_id, carbon, points),
        )
        logger.info("Recorded %s kg CO2 / %s points for user %s", carbon, points, user_id)
        return totals

    def impact_for(self, actor: Actor, user_id: int) -> ImpactTotals:
        if actor.id != user_id and actor.role != Role.ADMIN:
            raise AuthorizationError("You can only view your own impact.")
        return self.store.get_impact(user_id)

    # notifications

    def list_notifications(self, actor: Actor) -> list[Notification]:
        return self.store.list_notifications(actor.id)

    def unread_notification_count(self, actor: Actor) -> int:
        return self.store.unread_notifications_count(actor.id)

    def mark_notification_read(self, actor: Actor, notification_id: int) -> None:
        if not self.store.mark_notification_read(actor.id, notification_id):
            raise NotFoundError(f"Notification {notification_id} not found.")

    # helpers

    def _load(self, request_id: int) -> RepairRequest:
        record = self.store.get_request(request_id)
        if record is None:
            raise NotFoundError(f"Repair request {request_id} not found.")
        return record

    def _publish_update(self, record: RepairRequest) -> None:
        payload = record.to_dict()
        self.registry.publish(record.user_id, EventType.REPAIR_STATUS_UPDATE, payload)
        if record.technician_id is not None and record.technician_id != record.user_id:
            self.registry.publish(
                record.technician_id, EventType.REPAIR_STATUS_UPDATE, payload
            )


def _can_view(actor: Actor, record: RepairRequest) -> bool:
    if actor.role == Role.ADMIN or actor.id == record.user_id:
        return True
    if actor.role != Role.TECHNICIAN:
        return False
    return record.status == RepairStatus.PENDING or record.technician_id == actor.id


def _require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise AuthorizationError(f"This action requires role {allowed}.")


def _require_text(name: str, value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required.")
    return value.strip()


def _parse_status(value: RepairStatus | str) -> RepairStatus:
    if isinstance(value, RepairStatus):
        return value
    try:
        return RepairStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown status: {value}") from None


def _parse_cost(value: Decimal | float | str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("estimatedCost must be a number.")
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("estimatedCost must be a number.") from None
    if not cost.is_finite() or cost < 0:
        raise ValidationError("estimatedCost must be a non-negative number.")
    if cost > MAX_COST:
        raise ValidationError("estimatedCost is too large.")
    return cost.quantize(CENTS)


def _parse_datetime(name: str, value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required.")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date.") from None
