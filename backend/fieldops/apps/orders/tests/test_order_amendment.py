from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from fieldops.apps.accounts import models as account_models
from fieldops.apps.orders import amendment, policy, schemas, settlement
from fieldops.apps.orders import models as order_models
from fieldops.apps.warehouse import history, ledger
from fieldops.apps.warehouse import models as warehouse_models


def _create_user(db, role, email, locations=()):
    user = account_models.User(email=email, full_name=email.split("@")[0].title(), role=role)
    user.locations = list(locations)
    db.add(user)
    db.flush()
    return user


@pytest.fixture()
def setup(db_session):
    location = account_models.Location(name="Main warehouse")
    db_session.add(location)
    db_session.flush()

    warehouseman = _create_user(
        db_session, account_models.AccountRole.WAREHOUSEMAN, "wm@example.com", [location]
    )
    admin = _create_user(db_session, account_models.AccountRole.ADMIN, "admin@example.com")
    technician = _create_user(db_session, account_models.AccountRole.TECHNICIAN, "anna@example.com")
    other_technician = _create_user(db_session, account_models.AccountRole.TECHNICIAN, "bart@example.com")

    modem = warehouse_models.DeviceDefinition(
        name="HFC Modem",
        category=warehouse_models.DeviceCategory.MODEM_HFC,
        price=Decimal("120.00"),
    )
    kabel = warehouse_models.MaterialDefinition(
        name="Kabel",
        unit=warehouse_models.MaterialUnit.METER,
        price=Decimal("1.50"),
    )
    db_session.add_all([modem, kabel])
    db_session.flush()

    devices = [
        ledger.receive_device(
            db_session,
            actor=warehouseman,
            location_id=location.id,
            definition_id=modem.id,
            serial_number=serial,
        ).item
        for serial in ("MOD-1", "MOD-2", "MOD-3")
    ]
    for device in devices[:2]:
        ledger.issue_to(
            db_session,
            actor=warehouseman,
            item_id=device.id,
            technician_id=technician.id,
            location_id=location.id,
        )

    stock = ledger.receive_material(
        db_session,
        actor=warehouseman,
        location_id=location.id,
        definition_id=kabel.id,
        quantity=30,
    ).item
    technician_kabel = ledger.issue_to(
        db_session,
        actor=warehouseman,
        item_id=stock.id,
        technician_id=technician.id,
        location_id=location.id,
        quantity=10,
    ).item

    order = order_models.Order(
        order_number="ORD-A",
        type=order_models.OrderType.INSTALLATION,
        status=order_models.OrderStatus.ASSIGNED,
        assigned_to_id=technician.id,
    )
    db_session.add(order)
    db_session.flush()

    return {
        "location": location,
        "warehouseman": warehouseman,
        "admin": admin,
        "technician": technician,
        "other_technician": other_technician,
        "devices": devices,
        "kabel": kabel,
        "technician_kabel": technician_kabel,
        "order": order,
    }


def _payload(setup, kabel=None, equipment=(), collected=(), **kwargs):
    kwargs.setdefault("status", order_models.OrderStatus.COMPLETED)
    kwargs.setdefault("work_codes", [schemas.WorkCodeIn(code="INST-NET")])
    used = []
    if kabel is not None:
        used.append(schemas.UsedMaterialIn(material_definition_id=setup["kabel"].id, quantity=kabel))
    return schemas.OrderCompletionRequest(
        equipment_ids=[d.id for d in equipment],
        used_materials=used,
        collected_devices=[
            schemas.CollectedDeviceIn(
                name="Old modem",
                category=warehouse_models.DeviceCategory.MODEM_HFC,
                serial_number=serial,
            )
            for serial in collected
        ],
        **kwargs,
    )


def _complete(db, setup, payload):
    return settlement.complete_order(
        db,
        actor=setup["technician"],
        order_id=setup["order"].id,
        payload=payload,
    )


def _amend(db, setup, payload):
    return amendment.amend_completion(
        db,
        actor=setup["technician"],
        order_id=setup["order"].id,
        payload=payload,
    )


def _admin_edit(db, setup, payload):
    return amendment.admin_edit_completion(
        db,
        actor=setup["admin"],
        order_id=setup["order"].id,
        payload=payload,
    )


def _expire_window(db, order):
    order.completed_at = datetime.now(timezone.utc) - timedelta(
        minutes=policy.ORDER_AMEND_WINDOW_MINUTES + 5
    )
    db.flush()


def test_lower_material_figure_only_rewrites_snapshot(db_session, setup):
    order = setup["order"]
    stock = setup["technician_kabel"]

    _complete(db_session, setup, _payload(setup, kabel=4))
    assert stock.quantity == 6
    assert [m.quantity for m in order.materials] == [4]

    _amend(db_session, setup, _payload(setup, kabel=2))
    assert stock.quantity == 6
    assert [m.quantity for m in order.materials] == [2]

    result = _amend(db_session, setup, _payload(setup, kabel=5))
    assert stock.quantity == 3
    assert [m.quantity for m in order.materials] == [5]
    assert len(result.history_ids) == 1


def test_same_amendment_twice_changes_nothing(db_session, setup):
    device = setup["devices"][0]
    payload = _payload(setup, kabel=4, equipment=[device], collected=["OLD-1"])
    _complete(db_session, setup, payload)

    first = _amend(db_session, setup, payload)
    second = _amend(db_session, setup, payload)

    assert first.history_ids == []
    assert second.history_ids == []
    assert setup["technician_kabel"].quantity == 6
    assert device.status == warehouse_models.ItemStatus.ASSIGNED_TO_ORDER
    assert len(setup["order"].equipment) == 2


def test_dropped_device_goes_back_to_technician(db_session, setup):
    kept, dropped = setup["devices"][:2]
    _complete(db_session, setup, _payload(setup, equipment=[kept, dropped]))

    result = _amend(db_session, setup, _payload(setup, equipment=[kept]))

    assert dropped.status == warehouse_models.ItemStatus.ASSIGNED
    assert dropped.assigned_to_id == setup["technician"].id
    assert kept.status == warehouse_models.ItemStatus.ASSIGNED_TO_ORDER
    assert [link.item_id for link in setup["order"].equipment] == [kept.id]
    entry = history.latest_entry(db_session, item_id=dropped.id)
    assert entry.id in result.history_ids
    assert entry.action == warehouse_models.HistoryAction.RETURNED_TO_TECHNICIAN


def test_admin_edit_returns_warehouse_device_to_its_location(db_session, setup):
    in_warehouse = setup["devices"][2]
    settlement.admin_complete_order(
        db_session,
        actor=setup["admin"],
        order_id=setup["order"].id,
        payload=_payload(setup, equipment=[in_warehouse]),
    )

    _admin_edit(db_session, setup, _payload(setup))

    assert in_warehouse.status == warehouse_models.ItemStatus.AVAILABLE
    assert in_warehouse.location_id == setup["location"].id
    assert in_warehouse.assigned_to_id is None
    entry = history.latest_entry(db_session, item_id=in_warehouse.id)
    assert entry.action == warehouse_models.HistoryAction.RETURNED
    assert entry.to_location_id == setup["location"].id


def test_technician_amendment_window_expires(db_session, setup):
    _complete(db_session, setup, _payload(setup, kabel=4))
    _expire_window(db_session, setup["order"])

    with pytest.raises(HTTPException) as exc:
        _amend(db_session, setup, _payload(setup, kabel=2))
    assert exc.value.status_code == 400
    assert exc.value.detail["code"] == "missing_requirements"

    _admin_edit(db_session, setup, _payload(setup, kabel=2))
    assert [m.quantity for m in setup["order"].materials] == [2]


def test_amendment_needs_a_settled_order(db_session, setup):
    with pytest.raises(HTTPException) as exc:
        _amend(db_session, setup, _payload(setup))
    assert exc.value.status_code == 400


def test_technician_amendment_detaches_collected_device(db_session, setup):
    _complete(db_session, setup, _payload(setup, collected=["OLD-1"]))

    _amend(db_session, setup, _payload(setup))

    device = (
        db_session.query(warehouse_models.DeviceItem)
        .filter(warehouse_models.DeviceItem.serial_number == "OLD-1")
        .one()
    )
    assert device.status == warehouse_models.ItemStatus.COLLECTED_FROM_CLIENT
    assert device.assigned_to_id == setup["technician"].id
    assert setup["order"].equipment == []


def test_admin_edit_deletes_mistaken_collection(db_session, setup):
    _complete(db_session, setup, _payload(setup, collected=["OLD-1"]))
    device_id = (
        db_session.query(warehouse_models.DeviceItem.id)
        .filter(warehouse_models.DeviceItem.serial_number == "OLD-1")
        .scalar()
    )

    _admin_edit(db_session, setup, _payload(setup))

    assert (
        db_session.query(warehouse_models.WarehouseItem)
        .filter(warehouse_models.WarehouseItem.id == device_id)
        .count()
        == 0
    )
    assert (
        db_session.query(warehouse_models.WarehouseHistory)
        .filter(warehouse_models.WarehouseHistory.item_id == device_id)
        .count()
        == 0
    )


def test_admin_edit_restores_device_with_earlier_history(db_session, setup):
    device = setup["devices"][2]
    ledger.return_to_operator(
        db_session,
        actor=setup["warehouseman"],
        item_id=device.id,
        location_id=setup["location"].id,
    )
    _complete(db_session, setup, _payload(setup, collected=["mod-3"]))
    assert device.status == warehouse_models.ItemStatus.COLLECTED_FROM_CLIENT

    result = _admin_edit(db_session, setup, _payload(setup))

    assert device.status == warehouse_models.ItemStatus.RETURNED_TO_OPERATOR
    assert device.assigned_to_id is None
    entry = history.latest_entry(db_session, item_id=device.id)
    assert entry.id in result.history_ids
    assert entry.action == warehouse_models.HistoryAction.RETURNED_TO_OPERATOR


def test_unlinked_consumed_device_is_returned(db_session, setup):
    device = setup["devices"][0]
    _complete(db_session, setup, _payload(setup, equipment=[device]))
    ledger.unlink(db_session, order_id=setup["order"].id, item_id=device.id)
    db_session.flush()

    _amend(db_session, setup, _payload(setup))

    assert device.status == warehouse_models.ItemStatus.ASSIGNED
    assert device.assigned_to_id == setup["technician"].id


def test_amend_policy(db_session, setup):
    order = setup["order"]

    policy_before = amendment.can_technician_amend(
        db_session, actor=setup["technician"], order_id=order.id
    )
    assert policy_before.can_amend is False

    _complete(db_session, setup, _payload(setup))
    allowed = amendment.can_technician_amend(db_session, actor=setup["technician"], order_id=order.id)
    assert allowed.can_amend is True
    assert allowed.deadline is not None

    stranger = amendment.can_technician_amend(
        db_session, actor=setup["other_technician"], order_id=order.id
    )
    assert stranger.can_amend is False

    _expire_window(db_session, order)
    expired = amendment.can_technician_amend(db_session, actor=setup["technician"], order_id=order.id)
    assert expired.can_amend is False
    assert "expired" in expired.reason
