from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi import HTTPException

from fieldops.apps.accounts import models as account_models
from fieldops.apps.warehouse import history, ledger
from fieldops.apps.warehouse import models as warehouse_models


def _create_location(db, name="Main warehouse"):
    location = account_models.Location(name=name)
    db.add(location)
    db.flush()
    return location


def _create_user(db, role, email, locations=()):
    user = account_models.User(email=email, full_name=email.split("@")[0].title(), role=role)
    user.locations = list(locations)
    db.add(user)
    db.flush()
    return user


def _device_definition(db, name="HFC Modem", price=Decimal("120.00")):
    definition = warehouse_models.DeviceDefinition(
        name=name,
        category=warehouse_models.DeviceCategory.MODEM_HFC,
        price=price,
    )
    db.add(definition)
    db.flush()
    return definition


def _material_definition(db, name="Kabel", price=Decimal("1.50")):
    definition = warehouse_models.MaterialDefinition(
        name=name,
        index="MAT-001",
        unit=warehouse_models.MaterialUnit.METER,
        price=price,
    )
    db.add(definition)
    db.flush()
    return definition


def _history_count(db, item_id=None):
    query = db.query(warehouse_models.WarehouseHistory)
    if item_id is not None:
        query = query.filter(warehouse_models.WarehouseHistory.item_id == item_id)
    return query.count()


@pytest.fixture()
def setup(db_session):
    location = _create_location(db_session)
    warehouseman = _create_user(
        db_session, account_models.AccountRole.WAREHOUSEMAN, "wm@example.com", [location]
    )
    technician = _create_user(db_session, account_models.AccountRole.TECHNICIAN, "tech@example.com")
    return {
        "location": location,
        "warehouseman": warehouseman,
        "technician": technician,
        "device_definition": _device_definition(db_session),
        "material_definition": _material_definition(db_session),
    }


def _receive_device(db, setup, serial="SN-1"):
    return ledger.receive_device(
        db,
        actor=setup["warehouseman"],
        location_id=setup["location"].id,
        definition_id=setup["device_definition"].id,
        serial_number=serial,
    ).item


def _receive_material(db, setup, quantity=10):
    return ledger.receive_material(
        db,
        actor=setup["warehouseman"],
        location_id=setup["location"].id,
        definition_id=setup["material_definition"].id,
        quantity=quantity,
    ).item


def test_receive_device_normalizes_serial_and_records_history(db_session, setup):
    result = ledger.receive_device(
        db_session,
        actor=setup["warehouseman"],
        location_id=setup["location"].id,
        definition_id=setup["device_definition"].id,
        serial_number="  abc123 ",
    )

    device = result.item
    assert device.serial_number == "ABC123"
    assert device.status == warehouse_models.ItemStatus.AVAILABLE
    assert device.location_id == setup["location"].id
    assert device.assigned_to_id is None
    assert device.price == Decimal("120.00")
    assert result.entry.action == warehouse_models.HistoryAction.RECEIVED
    assert result.entry.to_location_id == setup["location"].id
    assert _history_count(db_session, device.id) == 1


def test_receive_duplicate_serial_conflicts(db_session, setup):
    _receive_device(db_session, setup, serial="abc123")

    with pytest.raises(HTTPException) as exc:
        _receive_device(db_session, setup, serial="ABC123 ")
    assert exc.value.status_code == 409


def test_receive_device_requires_priced_definition(db_session, setup):
    unpriced = _device_definition(db_session, name="Unpriced modem", price=None)

    with pytest.raises(HTTPException) as exc:
        ledger.receive_device(
            db_session,
            actor=setup["warehouseman"],
            location_id=setup["location"].id,
            definition_id=unpriced.id,
            serial_number="SN-9",
        )
    assert exc.value.status_code == 400


def test_receive_material_merges_into_location_row(db_session, setup):
    first = _receive_material(db_session, setup, quantity=10)
    second = _receive_material(db_session, setup, quantity=5)

    assert first.id == second.id
    assert second.quantity == 15
    assert second.unit == warehouse_models.MaterialUnit.METER
    assert second.index == "MAT-001"
    assert _history_count(db_session, first.id) == 2


def test_warehouseman_cannot_receive_into_foreign_location(db_session, setup):
    other = _create_location(db_session, name="Remote warehouse")

    with pytest.raises(HTTPException) as exc:
        ledger.receive_material(
            db_session,
            actor=setup["warehouseman"],
            location_id=other.id,
            definition_id=setup["material_definition"].id,
            quantity=3,
        )
    assert exc.value.status_code == 403


def test_issue_device_moves_row_to_technician(db_session, setup):
    device = _receive_device(db_session, setup)

    result = ledger.issue_to(
        db_session,
        actor=setup["warehouseman"],
        item_id=device.id,
        technician_id=setup["technician"].id,
        location_id=setup["location"].id,
    )

    assert result.item.id == device.id
    assert device.status == warehouse_models.ItemStatus.ASSIGNED
    assert device.assigned_to_id == setup["technician"].id
    assert device.location_id is None
    assert result.entry.action == warehouse_models.HistoryAction.ISSUED
    assert result.entry.from_location_id == setup["location"].id
    assert _history_count(db_session, device.id) == 2


def test_issue_material_splits_and_merges_rows(db_session, setup):
    stock = _receive_material(db_session, setup, quantity=10)

    first = ledger.issue_to(
        db_session,
        actor=setup["warehouseman"],
        item_id=stock.id,
        technician_id=setup["technician"].id,
        location_id=setup["location"].id,
        quantity=4,
    )
    second = ledger.issue_to(
        db_session,
        actor=setup["warehouseman"],
        item_id=stock.id,
        technician_id=setup["technician"].id,
        location_id=setup["location"].id,
        quantity=3,
    )

    technician_row = first.item
    assert technician_row.id != stock.id
    assert second.item.id == technician_row.id
    assert technician_row.quantity == 7
    assert technician_row.status == warehouse_models.ItemStatus.ASSIGNED
    assert technician_row.location_id is None
    assert stock.quantity == 3
    assert second.entry.quantity == 3


def test_issue_more_than_available_reports_material(db_session, setup):
    stock = _receive_material(db_session, setup, quantity=10)
    before = _history_count(db_session)

    with pytest.raises(HTTPException) as exc:
        ledger.issue_to(
            db_session,
            actor=setup["warehouseman"],
            item_id=stock.id,
            technician_id=setup["technician"].id,
            location_id=setup["location"].id,
            quantity=11,
        )

    assert exc.value.status_code == 400
    assert "Kabel" in exc.value.detail
    assert _history_count(db_session) == before


def test_issue_from_wrong_location_is_forbidden(db_session, setup):
    other = _create_location(db_session, name="Remote warehouse")
    admin = _create_user(db_session, account_models.AccountRole.ADMIN, "admin@example.com")
    device = _receive_device(db_session, setup)

    with pytest.raises(HTTPException) as exc:
        ledger.issue_to(
            db_session,
            actor=admin,
            item_id=device.id,
            technician_id=setup["technician"].id,
            location_id=other.id,
        )
    assert exc.value.status_code == 403


def test_issue_unknown_item_not_found(db_session, setup):
    with pytest.raises(HTTPException) as exc:
        ledger.issue_to(
            db_session,
            actor=setup["warehouseman"],
            item_id="missing",
            technician_id=setup["technician"].id,
            location_id=setup["location"].id,
        )
    assert exc.value.status_code == 404


def test_issue_to_non_technician_rejected(db_session, setup):
    device = _receive_device(db_session, setup)

    with pytest.raises(HTTPException) as exc:
        ledger.issue_to(
            db_session,
            actor=setup["warehouseman"],
            item_id=device.id,
            technician_id=setup["warehouseman"].id,
            location_id=setup["location"].id,
        )
    assert exc.value.status_code == 400


def test_return_device_and_material_to_location(db_session, setup):
    device = _receive_device(db_session, setup)
    stock = _receive_material(db_session, setup, quantity=10)
    technician_id = setup["technician"].id
    location_id = setup["location"].id
    actor = setup["warehouseman"]

    ledger.issue_to(db_session, actor=actor, item_id=device.id, technician_id=technician_id, location_id=location_id)
    issued = ledger.issue_to(
        db_session,
        actor=actor,
        item_id=stock.id,
        technician_id=technician_id,
        location_id=location_id,
        quantity=4,
    )

    device_result = ledger.return_to_location(db_session, actor=actor, item_id=device.id, location_id=location_id)
    material_result = ledger.return_to_location(
        db_session,
        actor=actor,
        item_id=issued.item.id,
        location_id=location_id,
        quantity=3,
    )

    assert device.status == warehouse_models.ItemStatus.AVAILABLE
    assert device.location_id == location_id
    assert device.assigned_to_id is None
    assert device_result.entry.assigned_to_id == technician_id
    assert [e.action for e in history.item_timeline(db_session, item_id=device.id)] == [
        warehouse_models.HistoryAction.RECEIVED,
        warehouse_models.HistoryAction.ISSUED,
        warehouse_models.HistoryAction.RETURNED,
    ]

    assert material_result.item.id == stock.id
    assert stock.quantity == 9
    assert issued.item.quantity == 1


def test_return_device_without_technician_rejected(db_session, setup):
    device = _receive_device(db_session, setup)

    with pytest.raises(HTTPException) as exc:
        ledger.return_to_location(
            db_session,
            actor=setup["warehouseman"],
            item_id=device.id,
            location_id=setup["location"].id,
        )
    assert exc.value.status_code == 400


def test_return_to_operator(db_session, setup):
    device = _receive_device(db_session, setup)
    stock = _receive_material(db_session, setup, quantity=10)

    device_result = ledger.return_to_operator(
        db_session,
        actor=setup["warehouseman"],
        item_id=device.id,
        location_id=setup["location"].id,
    )
    ledger.return_to_operator(
        db_session,
        actor=setup["warehouseman"],
        item_id=stock.id,
        location_id=setup["location"].id,
        quantity=4,
    )

    assert device.status == warehouse_models.ItemStatus.RETURNED_TO_OPERATOR
    assert device.location_id is None
    assert device_result.entry.from_location_id == setup["location"].id
    assert stock.quantity == 6


def test_return_to_operator_requires_item_at_location(db_session, setup):
    device = _receive_device(db_session, setup)
    ledger.issue_to(
        db_session,
        actor=setup["warehouseman"],
        item_id=device.id,
        technician_id=setup["technician"].id,
        location_id=setup["location"].id,
    )

    with pytest.raises(HTTPException) as exc:
        ledger.return_to_operator(
            db_session,
            actor=setup["warehouseman"],
            item_id=device.id,
            location_id=setup["location"].id,
        )
    assert exc.value.status_code == 403


def test_every_ledger_call_appends_one_history_entry(db_session, setup):
    actor = setup["warehouseman"]
    location_id = setup["location"].id
    technician_id = setup["technician"].id

    device = _receive_device(db_session, setup)
    stock = _receive_material(db_session, setup, quantity=10)
    issued = ledger.issue_to(
        db_session,
        actor=actor,
        item_id=stock.id,
        technician_id=technician_id,
        location_id=location_id,
        quantity=5,
    )
    ledger.issue_to(db_session, actor=actor, item_id=device.id, technician_id=technician_id, location_id=location_id)
    ledger.return_to_location(db_session, actor=actor, item_id=device.id, location_id=location_id)
    ledger.return_to_location(
        db_session,
        actor=actor,
        item_id=issued.item.id,
        location_id=location_id,
        quantity=5,
    )

    assert _history_count(db_session) == 6
