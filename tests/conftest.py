from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from orders_api.config import get_settings
from orders_api.main import app, get_now


class Clock:
    """Naive-UTC clock the app reads through the get_now dependency."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# Wednesday 2025-06-11, 19:00 in Athens (UTC+3 in summer)
OPEN_WEDNESDAY = datetime(2025, 6, 11, 16, 0)


@pytest.fixture
def clock() -> Clock:
    return Clock(OPEN_WEDNESDAY)


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    path = tmp_path / "data"
    monkeypatch.setenv("DATA_DIR", str(path))
    monkeypatch.delenv("PERSISTENT_STORAGE_DIR", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    monkeypatch.setenv("COOKIE_SECURE", "0")
    monkeypatch.setenv("SCHEDULER_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


@pytest.fixture
def client(data_dir, clock):
    app.dependency_overrides[get_now] = clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def reload_settings(monkeypatch, **env: str) -> None:
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()


def create_discount(client: TestClient, code: str, **fields: Any) -> Dict[str, Any]:
    body = {"code": code, "discountPercent": 10, "expiryDate": "2030-01-01", "usageLimit": 0}
    body.update(fields)
    r = client.post("/api/discounts", json=body)
    assert r.status_code == 200, r.text
    return r.json()["discount"]


def place_order(client: TestClient, **fields: Any) -> Dict[str, Any]:
    body = {
        "items": [{"name": "Classic Burger", "price": 8.5, "quantity": 1}],
        "address": "Ermou 1, Athens",
        "timestamp": "2025-06-11T16:00:00.000Z",
    }
    body.update(fields)
    r = client.post("/api/orders", json=body)
    assert r.status_code == 200, r.text
    return r.json()["order"]


def discount_by_code(client: TestClient, code: str) -> Dict[str, Any]:
    for d in client.get("/api/discounts").json():
        if d["code"] == code:
            return d
    raise AssertionError(f"discount {code} not found")
