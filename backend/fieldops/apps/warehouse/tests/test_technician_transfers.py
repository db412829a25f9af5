from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi import HTTPException

from fieldops.apps.accounts import models as account_models
from fieldops.apps.warehouse import ledger, transfers
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
    sender = _create_user(db_session, account_models.AccountRole.TECHNICIAN, "anna@example.com")
    recipient = _create_user(db_session, account_models.AccountRole.TECHNICIAN, "bart@example.com")

    device_definition = warehouse_models.DeviceDefinition(
        name="HFC Modem",
        category=warehouse_models.DeviceCategory.MODEM_HFC,
        price=Decimal("120.00"),
    )
    material_definition = warehouse_models.MaterialDefinition(
        name="Kabel",
        unit=warehouse_models.MaterialUnit.METER,
        price=Decimal("1.50"),
    )
    db_session.add_all([device_definition, material_definition])
    db_session.flush()

    device = ledger.receive_device(
        db_session,
        actor=warehouseman,
        location_id=location.id,
        definition_id=device_definition.id,
        serial_number="ABC123",
    ).item
    ledger.issue_to(
        db_session,
        actor=warehouseman,
        item_id=device.id,
        technician_id=sender.id,
        location_id=location.id,
    )

    stock = ledger.receive_material(
        db_session,
        actor=warehouseman,
        location_id=location.id,
        definition_id=material_definition.id,
        quantity=20,
    ).item
    material = ledger.issue_to(
        db_session,
        actor=warehouseman,
        item_id=stock.id,
        technician_id=sender.id,
        location_id=location.id,
        quantity=10,
    ).item

    return {
        "location": location,
        "warehouseman": warehouseman,
        "sender": sender,
        "recipient": recipient,
        "device": device,
        "material": material,
        "location_stock": stock,
        "material_definition": material_definition,
    }


def _history_count(db, item_id):
    return (
        db.query(warehouse_models.WarehouseHistory)
        .filter(warehouse_models.WarehouseHistory.item_id == item_id)
        .count()
    )


def _material_rows(db, technician_id):
    return (
        db.query(warehouse_models.MaterialStock)
        .filter(warehouse_models.MaterialStock.assigned_to_id == technician_id)
        .all()
    )


def test_device_transfer_rejected_keeps_owner(db_session, setup):
    device = setup["device"]
    entries_before = _history_count(db_session, device.id)

    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=device.id,
    )
    assert device.transfer_pending is True
    assert device.transfer_to_id == setup["recipient"].id
    assert device.assigned_to_id == setup["sender"].id

    resolution = transfers.reject_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)

    assert resolution.transfer.status == warehouse_models.TechnicianTransferStatus.REJECTED
    assert resolution.result is None
    assert device.assigned_to_id == setup["sender"].id
    assert device.status == warehouse_models.ItemStatus.ASSIGNED
    assert device.transfer_pending is False
    assert _history_count(db_session, device.id) == entries_before


def test_device_transfer_confirm_moves_ownership(db_session, setup):
    device = setup["device"]
    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=device.id,
    )

    resolution = transfers.confirm_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)

    assert device.assigned_to_id == setup["recipient"].id
    assert device.transfer_pending is False
    entry = resolution.result.entry
    assert entry.action == warehouse_models.HistoryAction.TRANSFER
    assert entry.performed_by_id == setup["sender"].id
    assert entry.assigned_to_id == setup["recipient"].id
    assert resolution.transfer.resolved_by_id == setup["recipient"].id
    assert resolution.transfer.resolved_at is not None


def test_only_recipient_confirms_and_only_sender_cancels(db_session, setup):
    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["device"].id,
    )

    with pytest.raises(HTTPException) as exc:
        transfers.confirm_transfer(db_session, actor=setup["sender"], transfer_id=transfer.id)
    assert exc.value.status_code == 403

    with pytest.raises(HTTPException) as exc:
        transfers.cancel_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)
    assert exc.value.status_code == 403

    resolution = transfers.cancel_transfer(db_session, actor=setup["sender"], transfer_id=transfer.id)
    assert resolution.transfer.status == warehouse_models.TechnicianTransferStatus.CANCELED
    assert setup["device"].assigned_to_id == setup["sender"].id


def test_device_with_open_transfer_cannot_be_requested_again(db_session, setup):
    transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["device"].id,
    )

    with pytest.raises(HTTPException) as exc:
        transfers.request_transfer(
            db_session,
            actor=setup["sender"],
            recipient_id=setup["recipient"].id,
            item_id=setup["device"].id,
        )
    assert exc.value.status_code == 409


def test_device_with_open_transfer_cannot_be_returned(db_session, setup):
    transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["device"].id,
    )

    with pytest.raises(HTTPException) as exc:
        ledger.return_to_location(
            db_session,
            actor=setup["warehouseman"],
            item_id=setup["device"].id,
            location_id=setup["location"].id,
        )
    assert exc.value.status_code == 409


def test_resolved_transfer_cannot_be_resolved_again(db_session, setup):
    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["device"].id,
    )
    transfers.reject_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)

    with pytest.raises(HTTPException) as exc:
        transfers.confirm_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)
    assert exc.value.status_code == 400
    assert exc.value.detail["code"] == "invalid_transition"


def test_transfer_guards(db_session, setup):
    with pytest.raises(HTTPException) as exc:
        transfers.request_transfer(
            db_session,
            actor=setup["sender"],
            recipient_id=setup["sender"].id,
            item_id=setup["device"].id,
        )
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        transfers.request_transfer(
            db_session,
            actor=setup["recipient"],
            recipient_id=setup["sender"].id,
            item_id=setup["device"].id,
        )
    assert exc.value.status_code == 403

    with pytest.raises(HTTPException) as exc:
        transfers.request_transfer(
            db_session,
            actor=setup["warehouseman"],
            recipient_id=setup["recipient"].id,
            item_id=setup["device"].id,
        )
    assert exc.value.status_code == 403


def test_material_request_then_cancel_restores_sender(db_session, setup):
    material = setup["material"]

    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=material.id,
        quantity=4,
    )

    assert material.quantity == 6
    stock = transfers.technician_stock(db_session, technician_id=setup["sender"].id)
    assert [row.quantity for row in stock.materials] == [6]
    assert [t.id for t in transfers.incoming_transfers(db_session, technician_id=setup["recipient"].id)] == [
        transfer.id
    ]
    assert [t.id for t in transfers.outgoing_transfers(db_session, technician_id=setup["sender"].id)] == [
        transfer.id
    ]

    transfers.cancel_transfer(db_session, actor=setup["sender"], transfer_id=transfer.id)

    assert material.quantity == 10
    assert len(_material_rows(db_session, setup["sender"].id)) == 1
    assert _material_rows(db_session, setup["recipient"].id) == []
    assert transfers.incoming_transfers(db_session, technician_id=setup["recipient"].id) == []


def test_material_reject_restores_sender(db_session, setup):
    material = setup["material"]
    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=material.id,
        quantity=10,
    )
    assert material.quantity == 0

    transfers.reject_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)

    assert material.quantity == 10
    assert len(_material_rows(db_session, setup["sender"].id)) == 1


def test_material_confirm_merges_into_recipient_row(db_session, setup):
    existing = ledger.issue_to(
        db_session,
        actor=setup["warehouseman"],
        item_id=setup["location_stock"].id,
        technician_id=setup["recipient"].id,
        location_id=setup["location"].id,
        quantity=2,
    ).item

    transfer = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["material"].id,
        quantity=4,
    )
    resolution = transfers.confirm_transfer(db_session, actor=setup["recipient"], transfer_id=transfer.id)

    assert resolution.result.item.id == existing.id
    assert existing.quantity == 6
    assert setup["material"].quantity == 6
    assert resolution.result.entry.quantity == 4
    assert len(_material_rows(db_session, setup["recipient"].id)) == 1


def test_repeated_material_requests_share_one_escrow(db_session, setup):
    first = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["material"].id,
        quantity=3,
    )
    second = transfers.request_transfer(
        db_session,
        actor=setup["sender"],
        recipient_id=setup["recipient"].id,
        item_id=setup["material"].id,
        quantity=2,
    )

    assert first.id == second.id
    assert second.quantity == 5
    assert setup["material"].quantity == 5


def test_material_request_over_stock_rejected(db_session, setup):
    with pytest.raises(HTTPException) as exc:
        transfers.request_transfer(
            db_session,
            actor=setup["sender"],
            recipient_id=setup["recipient"].id,
            item_id=setup["material"].id,
            quantity=11,
        )
    assert exc.value.status_code == 400
    assert "Kabel" in exc.value.detail
