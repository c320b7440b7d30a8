from __future__ import annotations

import json
from datetime import datetime

from fastapi.testclient import TestClient

from orders_api.main import app, get_now

WEEK = {
    "monday": {"open": "09:00", "close": "17:00"},
    "tuesday": {"open": "09:00", "close": "17:00"},
    "wednesday": {"open": "09:00", "close": "17:00"},
    "thursday": {"open": "09:00", "close": "17:00"},
    "friday": {"open": "09:00", "close": "17:00"},
    "saturday": "Closed",
    "sunday": "Closed",
}


def test_seeded_hours(client):
    hours = client.get("/api/opening-hours").json()
    assert list(hours) == ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    assert hours["monday"] == "Closed"
    assert hours["wednesday"] == {"open": "18:00", "close": "23:30"}


def test_is_open_during_window(client):
    data = client.get("/api/is-open").json()
    assert data == {
        "isOpen": True,
        "message": "Store is open",
        "currentDay": "wednesday",
        "hours": {"open": "18:00", "close": "23:30"},
    }


def test_close_time_is_exclusive(client, clock):
    clock.now = datetime(2025, 6, 11, 20, 30)  # 23:30 in Athens
    data = client.get("/api/is-open").json()
    assert data["isOpen"] is False
    assert data["message"] == "Store is currently closed. Opening hours: 18:00 - 23:30"


def test_closed_day(client, clock):
    clock.now = datetime(2025, 6, 9, 12, 0)
    data = client.get("/api/is-open").json()
    assert data == {"isOpen": False, "message": "Store is currently closed", "currentDay": "monday"}


def test_update_hours(client, clock):
    r = client.put("/api/opening-hours", json=WEEK)
    assert r.status_code == 200
    assert r.json()["hours"] == WEEK
    assert client.get("/api/opening-hours").json() == WEEK

    clock.now = datetime(2025, 6, 9, 7, 0)  # Monday 10:00 in Athens
    assert client.get("/api/is-open").json()["isOpen"] is True
    r = client.post("/api/orders", json={"items": []})
    assert r.status_code == 200


def test_update_requires_every_day(client):
    partial = {k: v for k, v in WEEK.items() if k != "sunday"}
    r = client.put("/api/opening-hours", json=partial)
    assert r.status_code == 400
    assert r.json()["error"] == "Missing hours for sunday"


def test_update_rejects_bad_times(client):
    bad = dict(WEEK, monday={"open": "9am", "close": "17:00"})
    r = client.put("/api/opening-hours", json=bad)
    assert r.status_code == 400
    assert client.get("/api/opening-hours").json()["monday"] == "Closed"


def test_hours_seeded_from_data_dir_file(data_dir, clock):
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "opening_hours.json").write_text(json.dumps(WEEK), encoding="utf-8")

    app.dependency_overrides[get_now] = clock
    try:
        with TestClient(app) as c:
            assert c.get("/api/opening-hours").json() == WEEK
    finally:
        app.dependency_overrides.clear()


def test_unhandled_error_is_generic_500(data_dir, clock):
    def broken_clock():
        raise RuntimeError("clock unavailable")

    app.dependency_overrides[get_now] = clock
    try:
        with TestClient(app, raise_server_exceptions=False) as c:
            app.dependency_overrides[get_now] = broken_clock
            r = c.get("/api/is-open")
            assert r.status_code == 500
            assert r.json() == {"error": "Internal server error"}
    finally:
        app.dependency_overrides.clear()
