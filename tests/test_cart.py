from __future__ import annotations

import pytest

from conftest import create_discount, place_order

ITEMS = [
    {"item": "Smash Burger", "price": 5.5, "quantity": 2},
    {"item": "Fries", "price": 3.0, "quantity": 1},
]


def test_get_cart_creates_empty_cart(client):
    cart = client.get("/api/cart").json()
    assert cart["items"] == []
    assert cart["subtotal"] == 0
    assert cart["total"] == 0
    assert cart["expiresAt"] > cart["createdAt"]

    assert client.get("/api/cart").json()["id"] == cart["id"]


def test_put_cart_computes_percentage_discount(client):
    create_discount(client, "SUMMER10", discountPercent=10)

    r = client.put("/api/cart", json={"items": ITEMS, "discountCode": "summer10"})
    assert r.status_code == 200
    cart = r.json()
    assert cart["discountCode"] == "SUMMER10"
    assert cart["subtotal"] == pytest.approx(14.0)
    assert cart["discountAmount"] == pytest.approx(1.4)
    assert cart["total"] == pytest.approx(12.6)
    assert cart["items"][0]["item"] == "Smash Burger"


def test_flat_discount_never_goes_below_zero(client):
    create_discount(client, "TWENTYOFF", type="flat", value=20)

    cart = client.put("/api/cart", json={"items": ITEMS, "discountCode": "TWENTYOFF"}).json()
    assert cart["discountAmount"] == pytest.approx(14.0)
    assert cart["total"] == pytest.approx(0.0)


def test_discount_code_kept_when_omitted_and_cleared_by_null(client):
    create_discount(client, "KEEP5", discountPercent=5)
    client.put("/api/cart", json={"items": ITEMS, "discountCode": "KEEP5"})

    kept = client.put("/api/cart", json={"items": ITEMS[:1]}).json()
    assert kept["discountCode"] == "KEEP5"
    assert kept["discountAmount"] == pytest.approx(0.55)

    cleared = client.put("/api/cart", json={"items": ITEMS[:1], "discountCode": None}).json()
    assert cleared["discountCode"] is None
    assert cleared["discountAmount"] == 0
    assert cleared["total"] == pytest.approx(11.0)


def test_expired_or_unknown_code_gives_no_discount(client):
    create_discount(client, "OLD", expiryDate="2024-01-01")

    for code in ("OLD", "NOPE"):
        cart = client.put("/api/cart", json={"items": ITEMS, "discountCode": code}).json()
        assert cart["discountAmount"] == 0
        assert cart["total"] == pytest.approx(14.0)


def test_items_must_be_a_list(client):
    r = client.put("/api/cart", json={"items": "burger"})
    assert r.status_code == 400
    assert "items" in r.json()["error"]

    r = client.put("/api/cart", json={"items": [{"price": 2.0, "quantity": 0}]})
    assert r.status_code == 400


def test_delete_cart(client):
    first = client.put("/api/cart", json={"items": ITEMS}).json()
    assert client.delete("/api/cart").json() == {"success": True}

    fresh = client.get("/api/cart").json()
    assert fresh["id"] != first["id"]
    assert fresh["items"] == []


def test_expired_cart_comes_back_empty(client, clock):
    client.put("/api/cart", json={"items": ITEMS})
    clock.advance(days=8)

    cart = client.get("/api/cart").json()
    assert cart["items"] == []
    assert cart["subtotal"] == 0


def test_placing_an_order_clears_the_cart(client):
    first = client.put("/api/cart", json={"items": ITEMS}).json()
    place_order(client)

    cart = client.get("/api/cart").json()
    assert cart["id"] != first["id"]
    assert cart["items"] == []
