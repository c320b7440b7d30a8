# orders_api/config.py
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field

# Load .env locally (safe in prod too)
try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass


DEFAULT_CORS_ORIGINS = "http://localhost:3000,https://burgercy.com,https://www.burgercy.com"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: str = "1") -> bool:
    return _env(name, default).lower() not in {"0", "false", "no", "off"}


def _data_dir() -> Path:
    # PERSISTENT_STORAGE_DIR is what the hosted disk mount exports
    raw = _env("DATA_DIR") or _env("PERSISTENT_STORAGE_DIR") or "data"
    return Path(raw).expanduser().resolve()


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_data_dir)
    database_url: str = Field(default_factory=lambda: _env("DATABASE_URL"))
    port: int = Field(default_factory=lambda: _env_int("PORT", 8000))

    jwt_secret: str = Field(default_factory=lambda: _env("JWT_SECRET", "dev-secret-change-me"))
    jwt_alg: str = Field(default_factory=lambda: _env("JWT_ALG", "HS256"))
    jwt_expire_minutes: int = Field(default_factory=lambda: _env_int("JWT_EXPIRE_MIN", 1440))

    store_timezone: str = Field(default_factory=lambda: _env("STORE_TIMEZONE", "Europe/Athens"))

    order_rate_limit: int = Field(default_factory=lambda: _env_int("ORDER_RATE_LIMIT", 10))
    order_rate_window_minutes: int = Field(default_factory=lambda: _env_int("ORDER_RATE_WINDOW_MIN", 15))
    checkout_rate_limit: int = Field(default_factory=lambda: _env_int("CHECKOUT_RATE_LIMIT", 10))
    checkout_rate_window_minutes: int = Field(default_factory=lambda: _env_int("CHECKOUT_RATE_WINDOW_MIN", 15))

    preparing_delay_minutes: int = Field(default_factory=lambda: _env_int("PREPARING_DELAY_MIN", 5))
    scheduler_interval_seconds: int = Field(default_factory=lambda: _env_int("SCHEDULER_INTERVAL_SECONDS", 30))

    admin_api_key: str = Field(default_factory=lambda: _env("ADMIN_API_KEY"))
    cors_origins: List[str] = Field(
        default_factory=lambda: [o.strip() for o in _env("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if o.strip()]
    )
    cookie_secure: bool = Field(default_factory=lambda: _env_flag("COOKIE_SECURE", "1"))
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "info").lower())

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'orders.db'}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
