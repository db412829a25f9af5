from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi import HTTPException

from fieldops import main
from fieldops.apps.accounts import models as account_models
from fieldops.apps.orders import router as orders_router
from fieldops.apps.warehouse import models as warehouse_models
from fieldops.apps.warehouse import router as warehouse_router
from fieldops.apps.warehouse import schemas as warehouse_schemas


def _has_route(router, path, method):
    return any(route.path == path and method in (route.methods or []) for route in router.routes)


def test_warehouse_router_has_expected_routes():
    router = warehouse_router.router
    for path in (
        "/warehouse/receive",
        "/warehouse/issue",
        "/warehouse/return",
        "/warehouse/return-to-operator",
        "/warehouse/collect",
        "/warehouse/transfers/request",
        "/warehouse/transfers/{transfer_id}/confirm",
        "/warehouse/transfers/{transfer_id}/reject",
        "/warehouse/transfers/{transfer_id}/cancel",
        "/warehouse/location-transfers/request",
        "/warehouse/location-transfers/{transfer_id}/confirm",
        "/warehouse/location-transfers/{transfer_id}/reject",
        "/warehouse/location-transfers/{transfer_id}/cancel",
    ):
        assert _has_route(router, path, "POST"), path
    for path in (
        "/warehouse/technician-stock",
        "/warehouse/items/{item_id}/history",
        "/warehouse/history",
        "/warehouse/transfers/incoming",
        "/warehouse/transfers/outgoing",
        "/warehouse/location-transfers/incoming",
        "/warehouse/location-transfers/outgoing",
    ):
        assert _has_route(router, path, "GET"), path


def test_orders_router_has_expected_routes():
    router = orders_router.router
    for suffix in ("complete", "admin-complete", "amend", "admin-edit"):
        assert _has_route(router, f"/orders/{{order_id}}/{suffix}", "POST"), suffix
    assert _has_route(router, "/orders/{order_id}/amend-policy", "GET")


def test_app_mounts_routers_and_health():
    paths = main.app.openapi()["paths"]
    assert "/warehouse/receive" in paths
    assert "/orders/{order_id}/complete" in paths
    assert main.health() == {"status": "ok"}


def test_allowed_origins_from_env(monkeypatch):
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://ops.example.com, https://admin.example.com")
    assert main._allowed_origins() == ["https://ops.example.com", "https://admin.example.com"]

    monkeypatch.delenv("CORS_ALLOWED_ORIGINS")
    assert "http://localhost:5173" in main._allowed_origins()


def test_receive_endpoint_commits_and_serializes(db_session):
    location = account_models.Location(name="Main warehouse")
    db_session.add(location)
    db_session.flush()
    user = account_models.User(
        email="wm@example.com",
        full_name="Warehouse Keeper",
        role=account_models.AccountRole.WAREHOUSEMAN,
    )
    user.locations = [location]
    definition = warehouse_models.MaterialDefinition(
        name="Kabel",
        unit=warehouse_models.MaterialUnit.METER,
        price=Decimal("1.50"),
    )
    db_session.add_all([user, definition])
    db_session.commit()

    response = warehouse_router.receive(
        warehouse_schemas.ReceiveRequest(
            item_type=warehouse_models.ItemType.MATERIAL,
            definition_id=definition.id,
            quantity=12,
        ),
        db=db_session,
        current_user=user,
    )

    assert response.item.quantity == 12
    assert response.item.location_id == location.id
    assert response.entry.action == warehouse_models.HistoryAction.RECEIVED
    db_session.rollback()
    assert (
        db_session.query(warehouse_models.MaterialStock)
        .filter(warehouse_models.MaterialStock.location_id == location.id)
        .one()
        .quantity
        == 12
    )

    timeline = warehouse_router.item_history(response.item.id, db=db_session, current_user=user)
    assert [entry.id for entry in timeline] == [response.entry.id]
    assert warehouse_router.history_by_ids(ids=[response.entry.id], db=db_session, current_user=user)


def test_technician_stock_endpoint_scopes_technicians(db_session):
    technician = account_models.User(
        email="tech@example.com",
        full_name="Tech",
        role=account_models.AccountRole.TECHNICIAN,
    )
    coordinator = account_models.User(
        email="coord@example.com",
        full_name="Coord",
        role=account_models.AccountRole.COORDINATOR,
    )
    db_session.add_all([technician, coordinator])
    db_session.flush()

    own = warehouse_router.technician_stock(technician_id=None, db=db_session, current_user=technician)
    assert own.technician_id == technician.id
    assert own.devices == [] and own.materials == []

    with pytest.raises(HTTPException) as exc:
        warehouse_router.technician_stock(technician_id=coordinator.id, db=db_session, current_user=technician)
    assert exc.value.status_code == 403

    with pytest.raises(HTTPException) as exc:
        warehouse_router.technician_stock(technician_id=None, db=db_session, current_user=coordinator)
    assert exc.value.status_code == 400
