# orders_api/models.py
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)

from .db import Base


def utcnow() -> datetime:
    """Naive UTC, which is what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid4())


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=True)
    email = Column(String, unique=True, index=True, nullable=True)
    phone = Column(String, index=True, nullable=True)
    password_hash = Column(String, nullable=True)
    is_guest = Column(Boolean, default=True, nullable=False)
    session_version = Column(Integer, default=1, nullable=False)  # bumped on login
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_login = Column(DateTime, nullable=True)


class Cart(Base):
    __tablename__ = "carts"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
    items = Column(JSON, default=list, nullable=False)
    discount_code = Column(String, nullable=True)
    discount_amount = Column(Float, default=0.0, nullable=False)
    subtotal = Column(Float, default=0.0, nullable=False)
    total = Column(Float, default=0.0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=True)
    payload = Column(JSON, default=dict, nullable=False)  # items, address, contact...

    # copied out of the payload for lookups
    client_timestamp = Column(String, index=True, nullable=True)
    user_name = Column(String, nullable=True)
    user_email = Column(String, index=True, nullable=True)
    user_phone = Column(String, index=True, nullable=True)
    discount_code = Column(String, nullable=True)

    confirmed = Column(Boolean, default=False, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    preparing = Column(Boolean, default=False, nullable=False)
    preparing_at = Column(DateTime, nullable=True)
    cooked = Column(Boolean, default=False, nullable=False)
    cooked_at = Column(DateTime, nullable=True)
    fulfilled = Column(Boolean, default=False, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    @property
    def status(self) -> str:
        if self.fulfilled:
            return "fulfilled"
        if self.cooked:
            return "cooked"
        if self.preparing:
            return "preparing"
        if self.confirmed:
            return "confirmed"
        return "pending"


class HistoryEntry(Base):
    __tablename__ = "order_history"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, index=True, nullable=False)
    snapshot = Column(JSON, nullable=False)
    deleted_at = Column(DateTime, default=utcnow, nullable=False)


class DiscountCode(Base):
    __tablename__ = "discount_codes"
    code = Column(String, primary_key=True)  # always upper-case
    kind = Column(String, default="percentage", nullable=False)  # percentage | flat
    value = Column(Float, nullable=False)
    expiry_date = Column(Date, nullable=False)
    usage_limit = Column(Integer, default=0, nullable=False)  # 0 = unlimited
    used_count = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class OpeningHoursDay(Base):
    __tablename__ = "opening_hours"
    day = Column(String, primary_key=True)  # monday..sunday
    closed = Column(Boolean, default=True, nullable=False)
    open_time = Column(String, nullable=True)  # HH:MM
    close_time = Column(String, nullable=True)


class RateLimit(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("identifier", "endpoint", name="uq_rate_limit_key"),)
    id = Column(String, primary_key=True, default=_uuid)
    identifier = Column(String, nullable=False)
    endpoint = Column(String, nullable=False)
    attempts = Column(Integer, default=1, nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, index=True, nullable=False)
    action = Column(String, nullable=False)  # mark_preparing
    due_at = Column(DateTime, index=True, nullable=False)
    done_at = Column(DateTime, nullable=True)
