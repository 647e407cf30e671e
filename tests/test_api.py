"""HTTP and websocket surface of the dispatch service."""

import pytest
from fastapi.testclient import TestClient

from conftest import order_payload
from delivery_dispatch.main import app
from delivery_dispatch.services.dispatch import INVALID_TRANSITION_MESSAGE
from delivery_dispatch.services.orders.base import ALREADY_TAKEN_MESSAGE


@pytest.fixture()
def client():
    with TestClient(app) as client:
        yield client


def _create(client, **overrides):
    response = client.post("/api/orders", json=order_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()["order"]


def _make_ready(client, order_id):
    for status in ("ACCEPTED", "PREPARING", "READY"):
        response = client.patch(f"/api/orders/{order_id}", json={"status": status})
        assert response.status_code == 200, response.text
    return response.json()["order"]


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "operational"
        assert data["orderStore"] == "healthy"
        assert data["redis"] == "not used"

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/health"


class TestOrderEndpoints:
    def test_create_order(self, client):
        response = client.post("/api/orders", json=order_payload(notes="Ring twice"))
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True

        order = body["order"]
        assert order["status"] == "PENDING"
        assert order["subtotal"] == 1020.0
        assert order["deliveryFee"] == 500.0
        assert order["total"] == 1520.0
        assert order["driverId"] is None
        assert order["notes"] == "Ring twice"
        assert order["items"][0]["productId"] == "prod-001"
        assert order["items"][0]["subtotal"] == 900.0

    def test_create_order_validation_error(self, client):
        response = client.post("/api/orders", json=order_payload(items=[]))
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["error"] == "ValidationError"

    def test_get_order(self, client):
        order = _create(client)
        response = client.get(f"/api/orders/{order['id']}")
        assert response.status_code == 200
        assert response.json()["order"]["id"] == order["id"]

    def test_get_unknown_order(self, client):
        response = client.get("/api/orders/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_list_orders(self, client):
        first = _create(client)
        _create(client)
        client.patch(f"/api/orders/{first['id']}", json={"status": "ACCEPTED"})

        everything = client.get("/api/orders").json()
        assert everything["total"] == 2

        accepted = client.get("/api/orders", params={"status": "accepted"}).json()
        assert accepted["total"] == 1
        assert accepted["orders"][0]["id"] == first["id"]

    def test_list_orders_unknown_status(self, client):
        response = client.get("/api/orders", params={"status": "LOST"})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"


class TestStatusUpdates:
    def test_walk_through_lifecycle(self, client):
        order = _create(client)
        ready = _make_ready(client, order["id"])
        assert ready["status"] == "READY"
        assert ready["acceptedAt"] and ready["preparingAt"] and ready["readyAt"]
        assert ready["assignedAt"] is None

    def test_invalid_transition(self, client):
        order = _create(client)
        response = client.patch(f"/api/orders/{order['id']}", json={"status": "READY"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "InvalidTransition"
        assert body["detail"].startswith(INVALID_TRANSITION_MESSAGE)

    def test_missing_status(self, client):
        order = _create(client)
        response = client.patch(f"/api/orders/{order['id']}", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "MissingField"

    def test_unknown_order(self, client):
        response = client.patch("/api/orders/nope", json={"status": "ACCEPTED"})
        assert response.status_code == 404


class TestAcceptDelivery:
    def test_first_driver_wins(self, client):
        order = _create(client)
        _make_ready(client, order["id"])

        won = client.post(f"/api/orders/{order['id']}/accept", json={"driverId": "D1"})
        assert won.status_code == 200
        assert won.json()["order"]["status"] == "ASSIGNED"
        assert won.json()["order"]["driverId"] == "D1"

        lost = client.post(f"/api/orders/{order['id']}/accept", json={"driverId": "D2"})
        assert lost.status_code == 409
        assert lost.json() == {
            "success": False,
            "error": "AlreadyAssigned",
            "detail": ALREADY_TAKEN_MESSAGE,
        }

    def test_not_ready(self, client):
        order = _create(client)
        response = client.post(f"/api/orders/{order['id']}/accept", json={"driverId": "D1"})
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidState"

    def test_missing_driver(self, client):
        order = _create(client)
        _make_ready(client, order["id"])
        response = client.post(f"/api/orders/{order['id']}/accept", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "MissingField"

    def test_unknown_order(self, client):
        response = client.post("/api/orders/nope/accept", json={"driverId": "D1"})
        assert response.status_code == 404


class TestIdempotency:
    def test_replayed_create_returns_the_same_order(self, client):
        headers = {"Idempotency-Key": "create-1"}
        first = client.post("/api/orders", json=order_payload(), headers=headers)
        second = client.post("/api/orders", json=order_payload(), headers=headers)

        assert first.status_code == second.status_code == 201
        assert second.headers["Idempotent-Replay"] == "true"
        assert "Idempotent-Replay" not in first.headers
        assert first.json() == second.json()
        assert client.get("/api/orders").json()["total"] == 1

    def test_replayed_accept_is_not_a_lost_race(self, client):
        order = _create(client)
        _make_ready(client, order["id"])
        headers = {"Idempotency-Key": "accept-1"}
        url = f"/api/orders/{order['id']}/accept"

        first = client.post(url, json={"driverId": "D1"}, headers=headers)
        replay = client.post(url, json={"driverId": "D1"}, headers=headers)
        assert first.status_code == replay.status_code == 200
        assert replay.json()["order"]["driverId"] == "D1"

    def test_key_reused_for_another_request(self, client):
        headers = {"Idempotency-Key": "create-2"}
        client.post("/api/orders", json=order_payload(), headers=headers)
        response = client.post("/api/orders", json=order_payload(city="Oran"), headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_rejections_are_replayed_too(self, client):
        order = _create(client)
        headers = {"Idempotency-Key": "patch-1"}
        url = f"/api/orders/{order['id']}"
        first = client.patch(url, json={"status": "READY"}, headers=headers)
        second = client.patch(url, json={"status": "READY"}, headers=headers)
        assert first.status_code == second.status_code == 400
        assert second.headers["Idempotent-Replay"] == "true"


class TestDriverLocation:
    def test_report_and_read_back(self, client):
        response = client.post(
            "/api/drivers/location",
            json={"driverId": "D1", "location": {"lat": 36.75, "lng": 3.06, "heading": 180, "speed": 7.5}},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["driverId"] == "D1"
        assert body["location"]["lat"] == 36.75
        assert body["timestamp"]

        latest = client.get("/api/drivers/D1/location")
        assert latest.status_code == 200
        assert latest.json()["location"]["lng"] == 3.06

    def test_out_of_range(self, client):
        response = client.post(
            "/api/drivers/location",
            json={"driverId": "D1", "location": {"lat": 123.0, "lng": 3.06, "heading": 0, "speed": 0}},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert client.get("/api/drivers/D1/location").status_code == 404

    @pytest.mark.parametrize("missing", ["heading", "speed"])
    def test_heading_and_speed_are_required(self, client, missing):
        location = {"lat": 36.75, "lng": 3.06, "heading": 90, "speed": 5}
        del location[missing]
        response = client.post("/api/drivers/location", json={"driverId": "D1", "location": location})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert client.get("/api/drivers/D1/location").status_code == 404

    def test_boolean_heading_is_rejected(self, client):
        response = client.post(
            "/api/drivers/location",
            json={"driverId": "D1", "location": {"lat": 1.0, "lng": 1.0, "heading": True, "speed": 0}},
        )
        assert response.status_code == 400

    def test_missing_driver(self, client):
        response = client.post("/api/drivers/location", json={"location": {"lat": 1.0, "lng": 1.0, "heading": 0, "speed": 0}})
        assert response.status_code == 400

    def test_unknown_driver(self, client):
        assert client.get("/api/drivers/ghost/location").status_code == 404


class TestEventFeed:
    def test_order_viewer_receives_updates(self, client):
        order = _create(client)
        with client.websocket_connect(f"/ws/events?orderId={order['id']}") as ws:
            client.patch(f"/api/orders/{order['id']}", json={"status": "ACCEPTED"})
            event = ws.receive_json()

        assert event["type"] == "order_updated"
        assert event["order"]["id"] == order["id"]
        assert event["order"]["status"] == "ACCEPTED"

    def test_order_viewer_follows_assigned_driver(self, client):
        order = _create(client)
        _make_ready(client, order["id"])
        with client.websocket_connect(f"/ws/events?orderId={order['id']}") as ws:
            client.post(f"/api/orders/{order['id']}/accept", json={"driverId": "D1"})
            client.post("/api/drivers/location", json={"driverId": "D2", "location": {"lat": 2.0, "lng": 2.0, "heading": 0, "speed": 0}})
            client.post("/api/drivers/location", json={"driverId": "D1", "location": {"lat": 1.0, "lng": 1.0, "heading": 0, "speed": 0}})
            assigned = ws.receive_json()
            location = ws.receive_json()

        assert assigned["type"] == "order_assigned"
        assert assigned["driverId"] == "D1"
        assert location["type"] == "driver_location_updated"
        assert location["driverId"] == "D1"
        assert location["location"]["lat"] == 1.0
