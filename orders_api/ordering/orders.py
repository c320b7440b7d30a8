# orders_api/ordering/orders.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import HistoryEntry, Order, ScheduledTask
from . import discounts

logger = structlog.get_logger()

MARK_PREPARING = "mark_preparing"

# Fields the server owns; a client payload cannot override them
_RESERVED = {
    "id",
    "userId",
    "status",
    "createdAt",
    "confirmed",
    "confirmedAt",
    "preparing",
    "preparingAt",
    "cooked",
    "cookedAt",
    "fulfilled",
    "fulfilledAt",
}


class OrderNotFound(Exception):
    pass


class OrderAlreadyConfirmed(Exception):
    pass


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


def _str_or_none(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def serialize(order: Order) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(order.payload or {})
    out.update(
        {
            "id": order.id,
            "userId": order.user_id,
            "status": order.status,
            "discountCode": order.discount_code,
            "confirmed": order.confirmed,
            "confirmedAt": _iso(order.confirmed_at),
            "preparing": order.preparing,
            "preparingAt": _iso(order.preparing_at),
            "cooked": order.cooked,
            "cookedAt": _iso(order.cooked_at),
            "fulfilled": order.fulfilled,
            "fulfilledAt": _iso(order.fulfilled_at),
            "createdAt": _iso(order.created_at),
        }
    )
    return out


def serialize_history(entry: HistoryEntry) -> Dict[str, Any]:
    out = dict(entry.snapshot or {})
    out["historyId"] = entry.id
    out["deletedAt"] = _iso(entry.deleted_at)
    return out


def create(db: Session, user_id: Optional[str], payload: Dict[str, Any], now: datetime) -> Order:
    data = {k: v for k, v in (payload or {}).items() if k not in _RESERVED}
    order = Order(
        user_id=user_id,
        payload=data,
        client_timestamp=_str_or_none(data.get("timestamp")),
        user_name=_str_or_none(data.get("userName")),
        user_email=_str_or_none(data.get("userEmail")),
        user_phone=_str_or_none(data.get("userPhone")),
        discount_code=discounts.normalize_code(data.get("discountCode")) or None,
        created_at=now,
    )
    db.add(order)
    db.flush()
    logger.info("order_created", order_id=order.id, user_id=user_id)
    return order


def get(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def list_active(db: Session) -> List[Order]:
    return db.query(Order).order_by(Order.id).all()


def list_for(
    db: Session,
    *,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> List[Order]:
    clauses = []
    if user_id:
        clauses.append(Order.user_id == user_id)
    if email:
        clauses.append(Order.user_email == email)
    if phone:
        clauses.append(Order.user_phone == phone)
    if not clauses:
        return []
    return db.query(Order).filter(or_(*clauses)).order_by(Order.id).all()


def set_fulfilled(db: Session, order_id: int, fulfilled: bool, now: datetime) -> Order:
    order = get(db, order_id)
    order.fulfilled = bool(fulfilled)
    order.fulfilled_at = now if fulfilled else None
    db.flush()
    logger.info("order_fulfilled" if fulfilled else "order_unfulfilled", order_id=order_id)
    return order


def set_cooked(db: Session, order_id: int, cooked: bool, now: datetime) -> Order:
    order = get(db, order_id)
    order.cooked = bool(cooked)
    order.cooked_at = now
    db.flush()
    logger.info("order_cooked", order_id=order_id, cooked=order.cooked)
    return order


def set_confirmed(
    db: Session,
    order_id: int,
    confirmed: bool,
    now: datetime,
    preparing_delay: timedelta,
) -> Order:
    """Confirming consumes one use of the order's discount code and
    schedules the automatic move to "preparing". Re-confirming an already
    confirmed order does neither again."""
    order = get(db, order_id)
    was_confirmed = order.confirmed

    order.confirmed = bool(confirmed)
    order.confirmed_at = now
    if not confirmed:
        order.preparing = False
        order.preparing_at = None

    if confirmed and not was_confirmed:
        if order.discount_code:
            discounts.increment_usage(db, order.discount_code)
        db.add(
            ScheduledTask(
                order_id=order.id,
                action=MARK_PREPARING,
                due_at=now + preparing_delay,
            )
        )
    db.flush()
    logger.info("order_confirmed", order_id=order_id, confirmed=order.confirmed)
    return order


def delete(db: Session, order_id: int, now: datetime) -> Optional[HistoryEntry]:
    """Remove an order. Fulfilled orders are archived first."""
    order = get(db, order_id)
    entry = None
    if order.fulfilled:
        entry = HistoryEntry(order_id=order.id, snapshot=serialize(order), deleted_at=now)
        db.add(entry)
    db.delete(order)
    db.flush()
    logger.info("order_deleted", order_id=order_id, archived=entry is not None)
    return entry


def delete_all(db: Session) -> int:
    count = db.query(Order).delete(synchronize_session=False)
    db.flush()
    logger.info("orders_cleared", count=count)
    return count


def cancel_by_timestamp(db: Session, timestamp: str) -> Order:
    order = (
        db.query(Order)
        .filter(Order.client_timestamp == timestamp)
        .order_by(Order.id)
        .first()
    )
    if order is None:
        raise OrderNotFound(timestamp)
    if order.confirmed:
        raise OrderAlreadyConfirmed(order.id)
    db.delete(order)
    db.flush()
    logger.info("order_cancelled", order_id=order.id)
    return order


def run_due_tasks(db: Session, now: datetime) -> int:
    """Apply every scheduled transition whose time has come. Returns how
    many orders changed."""
    tasks = (
        db.query(ScheduledTask)
        .filter(ScheduledTask.done_at.is_(None), ScheduledTask.due_at <= now)
        .order_by(ScheduledTask.due_at, ScheduledTask.id)
        .all()
    )
    changed = 0
    for task in tasks:
        if task.action == MARK_PREPARING:
            order = db.get(Order, task.order_id)
            # the order may have been unconfirmed or removed meanwhile
            if order is not None and order.confirmed and not order.preparing:
                order.preparing = True
                order.preparing_at = now
                changed += 1
                logger.info("order_preparing", order_id=order.id, task_id=task.id)
        else:
            logger.warning("unknown_scheduled_action", task_id=task.id, action=task.action)
        task.done_at = now
    db.flush()
    return changed


def list_history(db: Session) -> List[HistoryEntry]:
    return db.query(HistoryEntry).order_by(HistoryEntry.deleted_at.desc(), HistoryEntry.id.desc()).all()


def delete_history_entry(db: Session, history_id: int) -> None:
    entry = db.get(HistoryEntry, history_id)
    if entry is None:
        raise OrderNotFound(history_id)
    db.delete(entry)
    db.flush()


def clear_history(db: Session) -> int:
    count = db.query(HistoryEntry).delete(synchronize_session=False)
    db.flush()
    return count
