# orders_api/ordering/cart.py
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import Cart
from . import discounts

CART_TTL = timedelta(days=7)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


def line_total(line: Dict[str, Any]) -> float:
    qty = int(line.get("quantity", 1) or 0)
    price = float(line.get("price", 0.0) or 0.0)
    return qty * price


def cart_subtotal(items: List[Dict[str, Any]]) -> float:
    return round(sum(line_total(x) for x in items), 2)


def serialize(cart: Cart) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "userId": cart.user_id,
        "items": list(cart.items or []),
        "discountCode": cart.discount_code,
        "discountAmount": cart.discount_amount,
        "subtotal": cart.subtotal,
        "total": cart.total,
        "createdAt": _iso(cart.created_at),
        "updatedAt": _iso(cart.updated_at),
        "expiresAt": _iso(cart.expires_at),
    }


def _new_cart(user_id: str, now: datetime) -> Cart:
    return Cart(
        user_id=user_id,
        items=[],
        discount_code=None,
        discount_amount=0.0,
        subtotal=0.0,
        total=0.0,
        created_at=now,
        updated_at=now,
        expires_at=now + CART_TTL,
    )


def get_or_create(db: Session, user_id: str, now: datetime) -> Cart:
    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    if cart is None:
        cart = _new_cart(user_id, now)
        db.add(cart)
        db.flush()
        return cart

    # Stale carts come back empty
    if cart.expires_at and cart.expires_at <= now:
        cart.items = []
        cart.discount_code = None
        cart.discount_amount = 0.0
        cart.subtotal = 0.0
        cart.total = 0.0
        cart.updated_at = now
        cart.expires_at = now + CART_TTL
        db.flush()
    return cart


def update(
    db: Session,
    user_id: str,
    items: List[Dict[str, Any]],
    now: datetime,
    today: date,
    *,
    discount_code: Optional[str] = None,
    set_discount_code: bool = False,
) -> Cart:
    """Replace the items and recompute the totals.

    ``set_discount_code`` distinguishes "leave the stored code alone" from an
    explicit null that clears it.
    """
    cart = get_or_create(db, user_id, now)
    cart.items = [dict(x) for x in items]
    if set_discount_code:
        cart.discount_code = discounts.normalize_code(discount_code) or None

    subtotal = cart_subtotal(cart.items)
    amount = 0.0
    if cart.discount_code:
        check = discounts.check(discounts.find(db, cart.discount_code), today)
        if check.valid:
            amount = discounts.discount_amount(check.discount, subtotal)

    cart.subtotal = subtotal
    cart.discount_amount = amount
    cart.total = round(subtotal - amount, 2)
    cart.updated_at = now
    cart.expires_at = now + CART_TTL
    db.flush()
    return cart


def delete(db: Session, user_id: str) -> int:
    return db.query(Cart).filter(Cart.user_id == user_id).delete(synchronize_session=False)
