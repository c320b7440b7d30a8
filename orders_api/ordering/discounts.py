# orders_api/ordering/discounts.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import DiscountCode

logger = structlog.get_logger()

PERCENTAGE = "percentage"
FLAT = "flat"
KINDS = {PERCENTAGE, FLAT}


class DiscountExists(Exception):
    pass


@dataclass
class Validation:
    valid: bool
    message: str
    discount: Optional[DiscountCode] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid, "message": self.message}
        if self.valid and self.discount is not None:
            d = self.discount
            out["type"] = d.kind
            out["value"] = d.value
            out["discountPercent"] = _percent(d)
        return out


def normalize_code(code: Any) -> str:
    # clients occasionally send numeric codes
    return "" if code is None else str(code).strip().upper()


def _percent(d: DiscountCode) -> Optional[float]:
    if d.kind != PERCENTAGE:
        return None
    v = float(d.value)
    return int(v) if v.is_integer() else v


def serialize(d: DiscountCode) -> Dict[str, Any]:
    return {
        "code": d.code,
        "type": d.kind,
        "value": d.value,
        "discountPercent": _percent(d),
        "expiryDate": d.expiry_date.isoformat(),
        "usageLimit": d.usage_limit,
        "usedCount": d.used_count,
        "active": d.active,
        "createdAt": d.created_at.isoformat() + "Z" if d.created_at else None,
    }


def find(db: Session, code: Optional[str]) -> Optional[DiscountCode]:
    key = normalize_code(code)
    if not key:
        return None
    return db.get(DiscountCode, key)


def check(discount: Optional[DiscountCode], today: date) -> Validation:
    """Expiry is day-granular and the expiry day itself is still valid."""
    if discount is None:
        return Validation(False, "Invalid discount code")
    if not discount.active:
        return Validation(False, "Invalid discount code")
    if discount.expiry_date < today:
        return Validation(False, "Discount code expired")
    if discount.usage_limit > 0 and discount.used_count >= discount.usage_limit:
        return Validation(False, "Discount code limit reached")

    if discount.kind == PERCENTAGE:
        message = f"{_percent(discount)}% discount applied!"
    else:
        message = f"{discount.value:.2f} discount applied!"
    return Validation(True, message, discount)


def validate(db: Session, code: Optional[str], today: date) -> Validation:
    if not normalize_code(code):
        return Validation(False, "Please enter a code")
    return check(find(db, code), today)


def discount_amount(discount: Optional[DiscountCode], subtotal: float) -> float:
    if discount is None or subtotal <= 0:
        return 0.0
    if discount.kind == PERCENTAGE:
        amount = subtotal * (float(discount.value) / 100.0)
    else:
        amount = float(discount.value)
    return round(min(max(amount, 0.0), subtotal), 2)


def increment_usage(db: Session, code: Optional[str]) -> Optional[int]:
    """Atomic used_count += 1. Returns the new count, or None for an unknown code."""
    key = normalize_code(code)
    if not key:
        return None
    result = db.execute(
        update(DiscountCode)
        .where(DiscountCode.code == key)
        .values(used_count=DiscountCode.used_count + 1)
    )
    if result.rowcount == 0:
        return None
    db.flush()
    new_count = db.query(DiscountCode.used_count).filter(DiscountCode.code == key).scalar()
    logger.info("discount_usage_incremented", code=key, used_count=new_count)
    return new_count


def list_all(db: Session) -> List[DiscountCode]:
    return db.query(DiscountCode).order_by(DiscountCode.created_at, DiscountCode.code).all()


def create(
    db: Session,
    *,
    code: str,
    value: float,
    expiry_date: date,
    kind: str = PERCENTAGE,
    usage_limit: int = 0,
    active: bool = True,
) -> DiscountCode:
    key = normalize_code(code)
    if not key:
        raise ValueError("Discount code is required")
    if kind not in KINDS:
        raise ValueError(f"Unknown discount type '{kind}'")
    if value < 0 or (kind == PERCENTAGE and value > 100):
        raise ValueError("Discount value out of range")
    if db.get(DiscountCode, key) is not None:
        raise DiscountExists(key)

    d = DiscountCode(
        code=key,
        kind=kind,
        value=float(value),
        expiry_date=expiry_date,
        usage_limit=max(int(usage_limit), 0),
        used_count=0,
        active=active,
    )
    db.add(d)
    db.flush()
    logger.info("discount_created", code=key, type=kind, value=value)
    return d
