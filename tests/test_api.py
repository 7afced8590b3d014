import pytest
from fastapi.testclient import TestClient

from fieldops.api.deps import get_dispatcher, get_notifier
from fieldops.database import get_db
from fieldops.main import create_app
from fieldops.services.notifications import CrewNotificationDispatcher

INSTALLER_HEADERS = {"X-Actor-Id": "7", "X-Actor-Role": "installer"}


@pytest.fixture
def client(session_factory, notifier, expo, fcm):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_dispatcher] = lambda: CrewNotificationDispatcher(
        session_factory, expo_transport=expo, fcm_transport=fcm
    )
    with TestClient(app) as test_client:
        yield test_client


def _create_crew(client, name="Norte 1", number=None):
    response = client.post("/api/crews", json={"name": name, "number": number})
    assert response.status_code == 201
    return response.json()


def _create_item(client, code="CONN-SC", item_type="material", stock=0):
    response = client.post("/api/inventory/items", json={"code": code, "description": code, "type": item_type})
    assert response.status_code == 201
    item = response.json()
    if stock:
        response = client.post(f"/api/inventory/items/{item['id']}/restock", json={"quantity": stock})
        assert response.status_code == 200
    return item


def test_health(client):
    assert client.get("/api/health").json()["status"] == "healthy"


def test_order_intake_and_duplicate_ticket(client):
    payload = {
        "Nombre Cliente": "Ana Pérez",
        "Dirección": "Calle 5 #20",
        "ticket": "T-100",
        "observaciones": "Instalación de fibra",
    }

    first = client.post("/api/orders", json=payload)
    second = client.post("/api/orders", json=payload)

    assert first.status_code == 201
    assert first.json()["type"] == "installation"
    assert first.json()["status"] == "pending"
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "DUPLICATE_TICKET"
    assert len(client.get("/api/orders").json()) == 1


def test_order_intake_requires_name_and_address(client):
    response = client.post("/api/orders", json={"direccion": "Calle 1"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_OPERATION"


def test_clearing_a_required_field_is_a_400(client):
    order = client.post("/api/orders", json={"name": "Luis", "address": "Rambla 55"}).json()

    response = client.put(f"/api/orders/{order['id']}", json={"subscriber_name": None})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_OPERATION"
    assert client.get(f"/api/orders/{order['id']}").json()["subscriber_name"] == "Luis"


def test_missing_order_is_404(client):
    response = client.get("/api/orders/999")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_completion_through_the_api(client, notifier):
    crew = _create_crew(client, number=3)
    item = _create_item(client, stock=10)
    grant = client.post(f"/api/crews/{crew['id']}/inventory/grant", json={"item_id": item["id"], "quantity": 2})
    assert grant.json()["quantity"] == 2

    order = client.post("/api/orders", json={"name": "Luis", "address": "Rambla 55", "cuadrilla": "3"}).json()
    assert order["assigned_to"] == crew["id"]

    too_much = client.put(f"/api/orders/{order['id']}", headers=INSTALLER_HEADERS, json={
        "status": "completed", "materials_used": [{"item_id": item["id"], "quantity": 3}],
    })
    assert too_much.status_code == 400
    assert too_much.json()["detail"]["code"] == "INSUFFICIENT_HOLDING"
    assert client.get(f"/api/orders/{order['id']}").json()["status"] == "assigned"

    done = client.put(f"/api/orders/{order['id']}", headers=INSTALLER_HEADERS, json={
        "status": "completed", "materials_used": [{"item_id": item["id"], "quantity": 2}],
    })
    assert done.status_code == 200
    assert done.json()["materials_used"] == [
        {"item_id": item["id"], "quantity": 2, "batch_code": None, "instance_ids": None}
    ]
    assert client.get(f"/api/crews/{crew['id']}/inventory").json() == []

    history = client.get(f"/api/orders/{order['id']}/history").json()
    assert [h["change_type"] for h in history] == ["created", "status_change", "materials_added"]
    assert history[-1]["changed_by"] == 7
    assert notifier.events[-1].kind == "status_change"
    assert notifier.events[-1].exclude_actor_id == 7


def test_batch_lifecycle_through_the_api(client):
    item = _create_item(client, code="FIBER-DROP")
    created = client.post("/api/inventory/batches", json={
        "batch_code": "reel-01", "item_id": item["id"], "initial_quantity": 10,
    })
    assert created.status_code == 201
    assert created.json()["batch_code"] == "REEL-01"

    not_empty = client.delete("/api/inventory/batches/REEL-01")
    assert not_empty.status_code == 400
    assert not_empty.json()["detail"]["code"] == "NOT_EMPTY"

    duplicate = client.post("/api/inventory/batches", json={
        "batch_code": "REEL-01", "item_id": item["id"], "initial_quantity": 1,
    })
    assert duplicate.status_code == 409


def test_instances_through_the_api(client):
    crew = _create_crew(client)
    item = _create_item(client, code="ONT", item_type="equipment")
    added = client.post("/api/inventory/instances", json={
        "item_id": item["id"], "instances": [{"unique_id": "SN-1"}, {"unique_id": "SN-2"}],
    })
    assert added.status_code == 201

    assigned = client.post("/api/inventory/instances/assign", json={"instance_ids": ["SN-1"], "crew_id": crew["id"]})
    assert assigned.json()[0]["status"] == "assigned_to_crew"

    returned = client.post("/api/inventory/instances/return", json={"instance_ids": ["SN-1"], "reason": "Spare"})
    again = client.post("/api/inventory/instances/return", json={"instance_ids": ["SN-1"], "reason": "Spare"})
    assert returned.status_code == 200
    assert again.status_code == 400
    assert again.json()["detail"]["code"] == "NOT_ASSIGNED"

    stats = client.get("/api/inventory/statistics").json()
    assert stats["instances_by_status"]["in_stock"] == 2


def test_inventory_snapshot_endpoints(client):
    crew = _create_crew(client)
    item = _create_item(client, stock=8)
    client.post(f"/api/crews/{crew['id']}/inventory/grant", json={"item_id": item["id"], "quantity": 3})

    created = client.post("/api/inventory/snapshots")

    assert created.status_code == 201
    body = created.json()
    assert body["total_warehouse_stock"] == 5
    assert body["crew_inventories"][0]["items"][0]["quantity"] == 3
    assert [s["id"] for s in client.get("/api/inventory/snapshots").json()] == [body["id"]]


def test_push_token_and_test_notification(client, expo):
    crew = _create_crew(client)
    installer = client.post("/api/installers", json={"code": "I-1", "name": "Ana"}).json()
    client.put(f"/api/crews/{crew['id']}/members", json={"leader_id": installer["id"], "member_ids": []})
    registered = client.put(
        f"/api/installers/{installer['id']}/push-token", json={"token": "ExponentPushToken[device]"}
    )
    assert registered.status_code == 200

    sent = client.post("/api/admin/test-notification", json={"crew_id": crew["id"]})

    assert sent.json() == {"crew_id": crew["id"], "delivered": 1}
    assert expo.calls[0]["tokens"] == ["ExponentPushToken[device]"]
    metrics = client.get("/api/admin/notification-metrics", params={"kind": "test"}).json()
    assert metrics[0]["successful"] == 1

    cleanup = client.post("/api/admin/cleanup-tokens")
    assert cleanup.json()["removed"] == 0
