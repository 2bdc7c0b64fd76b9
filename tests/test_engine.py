from __future__ import annotations

from decimal import Decimal

import pytest

from ewaste_repairs.domain import NotificationType, RepairStatus, Role
from ewaste_repairs.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


def create_laptop_request(engine, customer):
    return engine.create_request(
        customer,
        device_type="Laptop",
        description="Screen flickers after boot",
        customer_address="12 Green Street",
    )


def accept(engine, technician, request_id):
    return engine.accept_request(
        technician,
        request_id,
        pickup_date="2030-01-15T10:00:00",
        pickup_address="12 Green Street",
        technician_phone="+1 555 0100",
        technician_email="tech@example.com",
    )


def test_created_request_is_pending_without_technician(engine, customer, store):
    created = create_laptop_request(engine, customer)

    assert created.status == RepairStatus.PENDING
    assert created.technician_id is None
    assert created.estimated_cost is None
    assert created.user_id == customer.id

    notifications = store.list_notifications(customer.id)
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.REPAIR_REQUEST
    assert "Laptop" in notifications[0].message


@pytest.mark.parametrize(
    "field", ["device_type", "description", "customer_address"]
)
def test_create_rejects_blank_fields(engine, customer, store, field):
    values = {
        "device_type": "Phone",
        "description": "Battery swollen",
        "customer_address": "1 Main Road",
    }
    values[field] = "   "

    with pytest.raises(ValidationError):
        engine.create_request(customer, **values)

    assert store.list_requests() == []
    assert store.list_notifications(customer.id) == []


def test_technician_cannot_create_request(engine, technician):
    with pytest.raises(AuthorizationError):
        create_laptop_request(engine, technician)


def test_list_available_is_technician_only_and_newest_first(engine, customer, technician):
    first = create_laptop_request(engine, customer)
    second = engine.create_request(
        customer,
        device_type="Printer",
        description="Paper jam",
        customer_address="12 Green Street",
    )
    accept(engine, technician, first.id)

    available = engine.list_available(technician)
    assert [r.id for r in available] == [second.id]

    with pytest.raises(AuthorizationError):
        engine.list_available(customer)


def test_lists_for_user_and_technician(engine, store, customer, technician):
    first = create_laptop_request(engine, customer)
    second = create_laptop_request(engine, customer)
    accept(engine, technician, first.id)

    assert [r.id for r in engine.list_for_user(customer, customer.id)] == [second.id, first.id]
    assert [r.id for r in engine.list_for_technician(technician, technician.id)] == [first.id]

    with pytest.raises(AuthorizationError):
        engine.list_for_user(technician, customer.id)
    with pytest.raises(AuthorizationError):
        engine.list_for_technician(customer, technician.id)

    admin = store.get_user("admin")
    assert len(engine.list_for_user(admin, customer.id)) == 2


def test_accept_sets_pickup_fields_and_notifies_customer_once(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    before = len(store.list_notifications(customer.id))

    accepted = engine.accept_request(
        technician,
        created.id,
        pickup_date="2030-01-15T10:00:00",
        pickup_address="Depot 4",
        technician_phone="+1 555 0100",
        technician_email="tech@example.com",
        pickup_notes="Bring the charger",
    )

    assert accepted.status == RepairStatus.ACCEPTED
    assert accepted.technician_id == technician.id
    assert accepted.pickup_address == "Depot 4"
    assert accepted.technician_phone == "+1 555 0100"
    assert accepted.technician_email == "tech@example.com"
    assert accepted.pickup_notes == "Bring the charger"
    assert accepted.pickup_date is not None and accepted.pickup_date.year == 2030

    notifications = store.list_notifications(customer.id)
    assert len(notifications) == before + 1
    latest = notifications[0]
    assert latest.type == NotificationType.REPAIR_UPDATE
    assert "2030-01-15 10:00" in latest.message
    assert "+1 555 0100" in latest.message
    assert "tech@example.com" in latest.message


def test_accept_twice_fails_and_keeps_first_technician(engine, store, customer, technician):
    other = store.create_user(
        username="tech2", password="tech2", role=Role.TECHNICIAN, full_name="Second"
    )
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    with pytest.raises(InvalidStateError):
        accept(engine, other, created.id)

    assert store.get_request(created.id).technician_id == technician.id


def test_accept_unknown_request_and_wrong_role(engine, customer, technician):
    with pytest.raises(NotFoundError):
        accept(engine, technician, 999)

    created = create_laptop_request(engine, customer)
    with pytest.raises(AuthorizationError):
        accept(engine, customer, created.id)


def test_accept_rejects_bad_pickup_date(engine, customer, technician):
    created = create_laptop_request(engine, customer)
    with pytest.raises(ValidationError):
        engine.accept_request(
            technician,
            created.id,
            pickup_date="next tuesday",
            pickup_address="Depot",
            technician_phone="123",
            technician_email="t@example.com",
        )


def test_update_status_with_estimate_notifies_customer(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    before = len(store.list_notifications(customer.id))

    updated = engine.update_status(technician, created.id, "IN_PROGRESS", 150)

    assert updated.status == RepairStatus.IN_PROGRESS
    assert updated.estimated_cost == Decimal("150.00")
    assert updated.started_at is not None
    notifications = store.list_notifications(customer.id)
    assert len(notifications) == before + 1
    assert notifications[0].type == NotificationType.REPAIR_ESTIMATE
    assert "150.00" in notifications[0].message


def test_update_status_without_estimate_creates_no_notification(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    before = len(store.list_notifications(customer.id))

    engine.update_status(technician, created.id, RepairStatus.IN_PROGRESS)

    assert len(store.list_notifications(customer.id)) == before


def test_completed_keeps_most_recent_estimate(engine, customer, technician, store):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS", "80.5")
    engine.update_status(technician, created.id, "IN_PROGRESS", "95")

    engine.update_status(technician, created.id, "COMPLETED")
    record = store.get_request(created.id)
    assert record.status == RepairStatus.COMPLETED
    assert record.estimated_cost == Decimal("95.00")
    assert record.completed_at is not None


def test_completed_with_cost_overwrites_estimate(engine, customer, technician, store):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS", 40)

    engine.update_status(technician, created.id, "COMPLETED", 55.25)

    record = store.get_request(created.id)
    assert record.status == RepairStatus.COMPLETED
    assert record.estimated_cost == Decimal("55.25")


def test_revising_in_progress_requires_cost(engine, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS")

    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "IN_PROGRESS")


@pytest.mark.parametrize("target", ["COMPLETED", "PENDING"])
def test_illegal_transitions_from_accepted(engine, customer, technician, store, target):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    with pytest.raises(InvalidStateError):
        engine.update_status(technician, created.id, target)

    assert store.get_request(created.id).status == RepairStatus.ACCEPTED


@pytest.mark.parametrize("target", ["ACCEPTED", "ESTIMATE_CONFIRMED"])
def test_update_status_cannot_skip_named_operations(engine, customer, technician, target):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS", 10)

    with pytest.raises(InvalidStateError):
        engine.update_status(technician, created.id, target)


def test_update_status_rejects_unknown_status_and_bad_cost(engine, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "FIXED")
    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "IN_PROGRESS", "-3")
    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "IN_PROGRESS", "abc")


def test_only_assigned_technician_updates_status(engine, store, customer, technician):
    other = store.create_user(username="tech2", password="tech2", role=Role.TECHNICIAN)
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    with pytest.raises(AuthorizationError):
        engine.update_status(other, created.id, "IN_PROGRESS")
    with pytest.raises(AuthorizationError):
        engine.update_status(customer, created.id, "IN_PROGRESS")


def test_update_status_unknown_request(engine, technician):
    with pytest.raises(NotFoundError):
        engine.update_status(technician, 404, "IN_PROGRESS")


def test_confirm_without_estimate_changes_nothing(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS")
    customer_before = len(store.list_notifications(customer.id))
    technician_before = len(store.list_notifications(technician.id))

    with pytest.raises(InvalidStateError):
        engine.confirm_estimate(customer, created.id)

    assert store.get_request(created.id).status == RepairStatus.IN_PROGRESS
    assert len(store.list_notifications(customer.id)) == customer_before
    assert len(store.list_notifications(technician.id)) == technician_before


def test_confirm_unknown_request_and_foreign_customer(engine, store, customer, technician):
    with pytest.raises(NotFoundError):
        engine.confirm_estimate(customer, 12345)

    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS", 20)
    business = store.get_user("business")
    with pytest.raises(AuthorizationError):
        engine.confirm_estimate(business, created.id)


def test_revised_estimate_needs_new_confirmation(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS", 100)
    engine.confirm_estimate(customer, created.id)

    revised = engine.update_status(technician, created.id, "IN_PROGRESS", 120)
    assert revised.status == RepairStatus.IN_PROGRESS
    assert revised.estimated_cost == Decimal("120.00")

    confirmed = engine.confirm_estimate(customer, created.id)
    assert confirmed.status == RepairStatus.ESTIMATE_CONFIRMED


def test_cancel_by_customer_notifies_technician(engine, store, customer, technician, connect):
    technician_conn = connect(technician)
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    cancelled = engine.cancel(customer, created.id)

    assert cancelled.status == RepairStatus.CANCELLED
    latest = store.list_notifications(technician.id)[0]
    assert latest.type == NotificationType.STATUS_UPDATE
    assert technician_conn.events[-1]["data"]["status"] == "CANCELLED"

    with pytest.raises(InvalidStateError):
        engine.cancel(customer, created.id)
    with pytest.raises(InvalidStateError):
        engine.update_status(technician, created.id, "IN_PROGRESS")


def test_cancel_by_stranger_is_rejected(engine, store, customer):
    created = create_laptop_request(engine, customer)
    stranger = store.get_user("educator")

    with pytest.raises(AuthorizationError):
        engine.cancel(stranger, created.id)


def test_get_request_visibility(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    assert engine.get_request(technician, created.id).id == created.id

    accept(engine, technician, created.id)
    other = store.create_user(username="tech2", password="tech2", role=Role.TECHNICIAN)
    with pytest.raises(AuthorizationError):
        engine.get_request(other, created.id)
    with pytest.raises(NotFoundError):
        engine.get_request(customer, 777)


def test_completion_with_carbon_records_impact(engine, store, customer, technician):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    engine.update_status(technician, created.id, "IN_PROGRESS")

    engine.complete(technician, created.id, carbon_saved="2.37")

    totals = store.get_impact(customer.id)
    assert totals.points == 23
    assert totals.carbon_saved == pytest.approx(2.37)
    assert store.list_notifications(customer.id)[0].type == NotificationType.ACHIEVEMENT


def test_carbon_only_allowed_on_completion(engine, customer, technician, store):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)

    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "IN_PROGRESS", carbon_saved=1)
    assert store.get_impact(customer.id).points == 0


def test_mark_notification_read_only_for_recipient(engine, store, customer, technician):
    create_laptop_request(engine, customer)
    notification = store.list_notifications(customer.id)[0]
    assert engine.unread_notification_count(customer) == 1

    with pytest.raises(NotFoundError):
        engine.mark_notification_read(technician, notification.id)

    engine.mark_notification_read(customer, notification.id)
    assert engine.unread_notification_count(customer) == 0
    assert engine.list_notifications(customer)[0].read is True


def test_end_to_end_repair_flow(engine, store, customer, technician, connect):
    assert (customer.id, technician.id) == (1, 2)
    customer_conn = connect(customer)
    technician_conn = connect(technician)

    created = create_laptop_request(engine, customer)
    assert created.status == RepairStatus.PENDING
    assert [e["type"] for e in technician_conn.events] == ["NEW_REPAIR_REQUEST"]
    assert technician_conn.events[0]["data"]["deviceType"] == "Laptop"
    assert customer_conn.events == []

    customer_before = len(store.list_notifications(customer.id))
    accepted = engine.accept_request(
        technician,
        created.id,
        pickup_date="2030-03-01T09:30:00",
        pickup_address="12 Green Street",
        technician_phone="555-0199",
        technician_email="fixit@example.com",
    )
    assert accepted.status == RepairStatus.ACCEPTED
    assert accepted.technician_id == 2
    customer_notes = store.list_notifications(customer.id)
    assert len(customer_notes) == customer_before + 1
    assert customer_notes[0].type == NotificationType.REPAIR_UPDATE
    assert "2030-03-01" in customer_notes[0].message
    assert "555-0199" in customer_notes[0].message

    in_progress = engine.update_status(technician, created.id, "IN_PROGRESS", 150.00)
    assert in_progress.status == RepairStatus.IN_PROGRESS
    assert in_progress.estimated_cost == Decimal("150.00")
    customer_notes = store.list_notifications(customer.id)
    assert len(customer_notes) == customer_before + 2
    assert customer_notes[0].type == NotificationType.REPAIR_ESTIMATE
    for connection in (customer_conn, technician_conn):
        event = connection.events[-1]
        assert event["type"] == "REPAIR_STATUS_UPDATE"
        assert event["data"]["id"] == created.id
        assert event["data"]["status"] == "IN_PROGRESS"
        assert event["data"]["estimatedCost"] == 150.0
        assert event["data"]["technicianEmail"] == "fixit@example.com"

    assert store.list_notifications(technician.id) == []
    confirmed = engine.confirm_estimate(customer, created.id)
    assert confirmed.status == RepairStatus.ESTIMATE_CONFIRMED
    technician_notes = store.list_notifications(technician.id)
    assert len(technician_notes) == 1
    assert technician_notes[0].type == NotificationType.REPAIR_CONFIRMED

    completed = engine.update_status(technician, created.id, "COMPLETED")
    assert completed.status == RepairStatus.COMPLETED
    assert completed.estimated_cost == Decimal("150.00")
    assert [e["data"]["status"] for e in customer_conn.events] == [
        "ACCEPTED",
        "IN_PROGRESS",
        "ESTIMATE_CONFIRMED",
        "COMPLETED",
    ]


@pytest.mark.parametrize("cost", ["1e30", "1000000000.01"])
def test_oversized_estimate_is_rejected_before_any_change(
    engine, store, customer, technician, cost
):
    created = create_laptop_request(engine, customer)
    accept(engine, technician, created.id)
    before = len(store.list_notifications(customer.id))

    with pytest.raises(ValidationError):
        engine.update_status(technician, created.id, "IN_PROGRESS", cost)

    record = store.get_request(created.id)
    assert record.status == RepairStatus.ACCEPTED
    assert record.estimated_cost is None
    assert len(store.list_notifications(customer.id)) == before
