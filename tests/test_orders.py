from __future__ import annotations

from datetime import datetime

from fastapi.testclient import TestClient

from conftest import place_order
from orders_api import db
from orders_api.main import app, get_now
from orders_api.models import Order


def _order(client, order_id):
    for o in client.get("/api/orders").json():
        if o["id"] == order_id:
            return o
    return None


def test_create_order_is_pending(client):
    me = client.get("/api/auth/me").json()["user"]
    order = place_order(client, userName="Kostas", userEmail="kostas@example.com")

    assert isinstance(order["id"], int)
    assert order["status"] == "pending"
    assert order["userId"] == me["id"]
    assert order["confirmed"] is False
    assert order["address"] == "Ermou 1, Athens"
    assert order["userName"] == "Kostas"


def test_client_cannot_set_server_fields(client):
    order = place_order(client, status="fulfilled", fulfilled=True, id=999)
    assert order["status"] == "pending"
    assert order["fulfilled"] is False
    assert order["id"] != 999


def test_closed_day_rejects_order(client, clock):
    clock.now = datetime(2025, 6, 9, 16, 0)  # Monday, closed all day
    r = client.post("/api/orders", json={"items": []})
    assert r.status_code == 400
    body = r.json()
    assert body["closed"] is True
    assert body["error"] == "Store is currently closed"


def test_outside_opening_window_rejects_order(client, clock):
    clock.now = datetime(2025, 6, 11, 7, 0)  # Wednesday 10:00 in Athens
    r = client.post("/api/orders", json={"items": []})
    assert r.status_code == 400
    body = r.json()
    assert body["closed"] is True
    assert body["hours"] == {"open": "18:00", "close": "23:30"}
    assert client.get("/api/orders").json() == []


def test_lifecycle_and_auto_preparing(client, clock):
    order = place_order(client)
    oid = order["id"]

    r = client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": True})
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "confirmed"
    assert r.json()["order"]["confirmedAt"]

    clock.advance(minutes=4)
    assert _order(client, oid)["preparing"] is False

    clock.advance(minutes=1)
    current = _order(client, oid)
    assert current["preparing"] is True
    assert current["status"] == "preparing"
    assert current["preparingAt"]

    r = client.patch(f"/api/orders/{oid}/cooked", json={"cooked": True})
    assert r.json()["order"]["status"] == "cooked"

    r = client.patch(f"/api/orders/{oid}", json={"fulfilled": True})
    assert r.json()["order"]["status"] == "fulfilled"


def test_unconfirmed_order_is_not_moved_to_preparing(client, clock):
    oid = place_order(client)["id"]
    client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": True})
    client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": False})

    clock.advance(minutes=10)
    current = _order(client, oid)
    assert current["preparing"] is False
    assert current["status"] == "pending"


def test_unconfirming_a_preparing_order_resets_it(client, clock):
    oid = place_order(client)["id"]
    client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": True})
    clock.advance(minutes=6)
    assert _order(client, oid)["status"] == "preparing"

    r = client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": False})
    order = r.json()["order"]
    assert order["status"] == "pending"
    assert order["preparing"] is False
    assert order["preparingAt"] is None
    assert _order(client, oid)["status"] == "pending"


def test_numeric_discount_code_is_accepted(client):
    order = place_order(client, discountCode=123)
    assert order["discountCode"] == "123"


def _stored_order(order_id):
    with db.SessionLocal() as session:
        return session.get(Order, order_id)


def test_preparing_survives_restart(data_dir, clock):
    app.dependency_overrides[get_now] = clock
    try:
        with TestClient(app) as c:
            oid = place_order(c)["id"]
            c.patch(f"/api/orders/{oid}/confirm", json={"confirmed": True})

        clock.advance(minutes=2)
        with TestClient(app):
            assert _stored_order(oid).preparing is False

        clock.advance(minutes=4)
        with TestClient(app):
            # applied by startup alone, before any listing request
            stored = _stored_order(oid)
            assert stored.preparing is True
            assert stored.preparing_at == clock.now
    finally:
        app.dependency_overrides.clear()


def test_unknown_order_is_404(client):
    assert client.patch("/api/orders/12345/confirm", json={"confirmed": True}).status_code == 404
    assert client.patch("/api/orders/12345/cooked", json={"cooked": True}).status_code == 404
    assert client.patch("/api/orders/12345", json={"fulfilled": True}).status_code == 404
    assert client.delete("/api/orders/12345").status_code == 404


def test_deleting_fulfilled_order_archives_it(client):
    oid = place_order(client)["id"]
    client.patch(f"/api/orders/{oid}", json={"fulfilled": True})

    r = client.delete(f"/api/orders/{oid}")
    assert r.status_code == 200
    assert r.json()["archived"] is True
    assert client.get("/api/orders").json() == []

    history = client.get("/api/history").json()
    assert len(history) == 1
    assert history[0]["id"] == oid
    assert history[0]["deletedAt"]
    assert history[0]["fulfilled"] is True


def test_deleting_unfulfilled_order_is_not_archived(client):
    oid = place_order(client)["id"]
    r = client.delete(f"/api/orders/{oid}")
    assert r.json()["archived"] is False
    assert client.get("/api/history").json() == []


def test_ids_stay_stable_after_deletes(client):
    first = place_order(client, timestamp="t1")["id"]
    second = place_order(client, timestamp="t2")["id"]
    client.delete(f"/api/orders/{first}")

    r = client.patch(f"/api/orders/{second}/cooked", json={"cooked": True})
    assert r.json()["order"]["timestamp"] == "t2"


def test_cancel_unconfirmed_order(client):
    place_order(client, timestamp="2025-06-11T16:05:00.000Z")
    r = client.delete("/api/orders/cancel/2025-06-11T16:05:00.000Z")
    assert r.status_code == 200
    assert client.get("/api/orders").json() == []


def test_cancel_confirmed_order_is_rejected(client):
    oid = place_order(client, timestamp="2025-06-11T16:06:00.000Z")["id"]
    client.patch(f"/api/orders/{oid}/confirm", json={"confirmed": True})

    r = client.delete("/api/orders/cancel/2025-06-11T16:06:00.000Z")
    assert r.status_code == 400
    assert r.json()["error"] == "Cannot cancel confirmed order"
    assert _order(client, oid) is not None


def test_cancel_unknown_timestamp(client):
    assert client.delete("/api/orders/cancel/never").status_code == 404


def test_orders_by_user(client):
    place_order(client, userEmail="a@example.com", userPhone="6900000010")
    place_order(client, userEmail="b@example.com")

    assert client.get("/api/orders/by-user").status_code == 400
    assert len(client.get("/api/orders/by-user", params={"email": "a@example.com"}).json()) == 1
    assert len(client.get("/api/orders/by-user", params={"phone": "6900000010"}).json()) == 1

    me = client.get("/api/auth/me").json()["user"]
    assert len(client.get("/api/orders/by-user", params={"userId": me["id"]}).json()) == 2


def test_user_orders_lists_only_own(client):
    place_order(client)
    token = client.get("/api/auth/me").json()["user"]["token"]

    client.cookies.clear()
    place_order(client)

    mine = client.get("/api/user/orders", headers={"Authorization": f"Bearer {token}"}).json()
    assert len(mine) == 1


def test_delete_all_orders(client):
    place_order(client)
    place_order(client)
    assert client.delete("/api/orders/all").status_code == 200
    assert client.get("/api/orders").json() == []
