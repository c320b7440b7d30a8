# orders_api/main.py
from __future__ import annotations

import asyncio
import hmac
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import Body, Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import (
    GUEST_TOKEN_TTL,
    create_guest_cookie,
    create_token,
    decode_guest_cookie,
    decode_token,
    hash_password,
    is_valid_phone,
    sanitize_input,
    verify_password,
)
from .config import Settings, get_settings
from .db import SessionLocal, dispose_db, get_db, init_db
from .export import XLSX_MEDIA_TYPE, collect_contacts, contacts_workbook
from .log import configure_logging
from .models import User, utcnow
from .ordering import cart as carts
from .ordering import discounts, hours
from .ordering import orders
from .ordering.ratelimit import check_rate_limit

logger = structlog.get_logger()

AUTH_COOKIE = "auth_token"
GUEST_COOKIE = "guest_id"
COOKIE_MAX_AGE = 60 * 60 * 24 * 30


# -------------------
# Background sweep for scheduled transitions
# -------------------
def sweep_due_tasks(now: Optional[datetime] = None) -> int:
    with SessionLocal() as db:
        changed = orders.run_due_tasks(db, now or utcnow())
        db.commit()
    return changed


async def _scheduler_loop(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweep_due_tasks)
        except Exception:
            # keep the loop alive; the next tick retries
            logger.exception("scheduled_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db(settings)

    # transitions that came due while the process was down
    sweep_due_tasks(app.dependency_overrides.get(get_now, get_now)())

    task = None
    if settings.scheduler_interval_seconds > 0:
        task = asyncio.create_task(_scheduler_loop(settings.scheduler_interval_seconds))
    logger.info("application_startup", data_dir=str(settings.data_dir), port=settings.port)
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    dispose_db()
    logger.info("application_shutdown")


app = FastAPI(
    title="Restaurant Ordering API",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------
# Error rendering: every error body is {"error": ...}
# -------------------
@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = dict(exc.detail)
    else:
        content = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": f"{loc}: {msg}" if loc else msg})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", error=str(exc), path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# -------------------
# Schemas
# -------------------
class RegisterIn(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    password: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class CheckoutIn(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class CartLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class CartIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[CartLine]
    discount_code: Optional[str] = Field(default=None, alias="discountCode")


class FulfilledIn(BaseModel):
    fulfilled: bool = True


class ConfirmIn(BaseModel):
    confirmed: bool = True


class CookedIn(BaseModel):
    cooked: bool = True


class ValidateDiscountIn(BaseModel):
    code: Optional[str] = None


class DiscountIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    type: Literal["percentage", "flat"] = "percentage"
    value: Optional[float] = None
    discount_percent: Optional[float] = Field(default=None, alias="discountPercent")
    expiry_date: date = Field(..., alias="expiryDate")
    usage_limit: int = Field(default=0, alias="usageLimit", ge=0)
    active: bool = True


class DiscountUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Optional[Literal["percentage", "flat"]] = None
    value: Optional[float] = None
    discount_percent: Optional[float] = Field(default=None, alias="discountPercent")
    expiry_date: Optional[date] = Field(default=None, alias="expiryDate")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)
    active: Optional[bool] = None


# -------------------
# Helpers / dependencies
# -------------------
@dataclass
class Caller:
    user: User
    token: str


def get_now() -> datetime:
    return utcnow()


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


def serialize_user(u: User, token: Optional[str] = None) -> Dict[str, Any]:
    out = {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "phone": u.phone,
        "isGuest": u.is_guest,
        "createdAt": _iso(u.created_at),
        "updatedAt": _iso(u.updated_at),
        "lastLogin": _iso(u.last_login),
    }
    if token:
        out["token"] = token
    return out


def _bearer_or_cookie(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    return cookie_token or None


def _user_for_token(db: Session, token: str) -> Optional[User]:
    claims = decode_token(token)
    if not claims:
        return None
    u = db.get(User, claims.user_id)
    # an older session version means the token was rotated out
    if not u or u.session_version != claims.session_version:
        return None
    return u


def _set_identity_cookies(response: Response, settings: Settings, user: User, token: str) -> None:
    samesite = "none" if settings.cookie_secure else "lax"
    for key, value in ((GUEST_COOKIE, create_guest_cookie(user.id)), (AUTH_COOKIE, token)):
        response.set_cookie(
            key=key,
            value=value,
            httponly=True,
            secure=settings.cookie_secure,
            samesite=samesite,
            max_age=COOKIE_MAX_AGE,
        )


def require_user(
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
    auth_token: str | None = Cookie(default=None, alias=AUTH_COOKIE),
) -> Caller:
    token = _bearer_or_cookie(authorization, auth_token)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    u = _user_for_token(db, token)
    if not u:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return Caller(u, token)


def require_user_or_guest(
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None),
    auth_token: str | None = Cookie(default=None, alias=AUTH_COOKIE),
    guest_id: str | None = Cookie(default=None, alias=GUEST_COOKIE),
) -> Caller:
    """
    Storefront callers:
      - valid token (header or cookie) -> that user
      - else a signed guest_id cookie naming a guest -> that guest, with a fresh token
      - else a brand new guest user, identified by cookies from now on
    """
    token = _bearer_or_cookie(authorization, auth_token)
    if token:
        u = _user_for_token(db, token)
        if u:
            return Caller(u, token)

    guest_user_id = decode_guest_cookie(guest_id) if guest_id else None
    u = db.get(User, guest_user_id) if guest_user_id else None
    if u is None or not u.is_guest or u.password_hash:
        u = User(is_guest=True, session_version=1)
        db.add(u)
        db.commit()
        db.refresh(u)
        logger.info("guest_created", user_id=u.id)

    token = create_token(u.id, u.session_version, expires_in=GUEST_TOKEN_TTL)
    _set_identity_cookies(response, settings, u, token)
    return Caller(u, token)


def require_staff(
    settings: Settings = Depends(get_settings),
    x_admin_key: str | None = Header(default=None),
) -> None:
    """Dashboard/admin guard; open when no ADMIN_API_KEY is configured."""
    if not settings.admin_api_key:
        return
    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Admin key required")
    if not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")


def _enforce_rate_limit(
    db: Session,
    identifier: str,
    endpoint: str,
    now: datetime,
    max_attempts: int,
    window_minutes: int,
    message: str,
) -> None:
    decision = check_rate_limit(db, identifier, endpoint, now, max_attempts, window_minutes)
    # attempts count even when the request fails further down
    db.commit()
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": message, "retryAfter": decision.retry_after},
            headers={"Retry-After": str(decision.retry_after)},
        )


def _today(now: datetime, settings: Settings) -> date:
    return hours.store_today(now, settings.store_timezone)


def _order_or_404(fn, *args):
    try:
        return fn(*args)
    except orders.OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


# -------------------
# Health
# -------------------
@app.get("/")
def root():
    return {"ok": True, "service": "orders-api"}


# -------------------
# Auth
# -------------------
@app.post("/api/auth/register")
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    if not (payload.name and payload.email and payload.phone and payload.password):
        raise HTTPException(status_code=400, detail="All fields are required")

    email = str(payload.email).strip().lower()
    phone = sanitize_input(payload.phone)
    exists = db.query(User).filter(or_(User.email == email, User.phone == phone)).first()
    if exists:
        raise HTTPException(status_code=409, detail="User with this email or phone already exists")

    u = User(
        name=sanitize_input(payload.name),
        email=email,
        phone=phone,
        password_hash=hash_password(payload.password),
        is_guest=False,
        session_version=1,
    )
    db.add(u)
    db.commit()
    db.refresh(u)

    token = create_token(u.id, u.session_version)
    logger.info("user_registered", user_id=u.id)
    return {"success": True, "user": serialize_user(u), "token": token}


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    if not (payload.email and payload.password):
        raise HTTPException(status_code=400, detail="Email and password are required")

    u = db.query(User).filter(User.email == payload.email.strip().lower()).first()
    if not u or not verify_password(payload.password, u.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    # rotate: tokens from earlier sessions stop working
    u.session_version = (u.session_version or 0) + 1
    u.last_login = now
    db.commit()
    db.refresh(u)

    token = create_token(u.id, u.session_version)
    logger.info("user_login", user_id=u.id)
    return {"success": True, "user": serialize_user(u), "token": token}


@app.get("/api/auth/me")
def me(caller: Caller = Depends(require_user_or_guest)):
    return {"user": serialize_user(caller.user, caller.token)}


# -------------------
# Cart
# -------------------
@app.get("/api/cart")
def get_cart(
    caller: Caller = Depends(require_user_or_guest),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    cart = carts.get_or_create(db, caller.user.id, now)
    db.commit()
    return carts.serialize(cart)


@app.put("/api/cart")
def put_cart(
    payload: CartIn,
    caller: Caller = Depends(require_user_or_guest),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    cart = carts.update(
        db,
        caller.user.id,
        [line.model_dump() for line in payload.items],
        now,
        _today(now, settings),
        discount_code=payload.discount_code,
        set_discount_code="discount_code" in payload.model_fields_set,
    )
    db.commit()
    return carts.serialize(cart)


@app.delete("/api/cart")
def delete_cart(caller: Caller = Depends(require_user_or_guest), db: Session = Depends(get_db)):
    carts.delete(db, caller.user.id)
    db.commit()
    return {"success": True}


@app.post("/api/cart/checkout")
def checkout(
    payload: CheckoutIn,
    request: Request,
    caller: Caller = Depends(require_user_or_guest),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    """Turns the calling guest into a named customer."""
    identifier = request.client.host if request.client else "unknown"
    _enforce_rate_limit(
        db,
        identifier,
        "/api/cart/checkout",
        now,
        settings.checkout_rate_limit,
        settings.checkout_rate_window_minutes,
        "Too many checkout attempts. Please try again later.",
    )

    if not (payload.name and payload.phone):
        raise HTTPException(status_code=400, detail="Name and phone are required")

    name = sanitize_input(payload.name)
    phone = sanitize_input(payload.phone)
    if not is_valid_phone(phone):
        raise HTTPException(status_code=400, detail="Invalid phone number format")

    taken = db.query(User).filter(User.phone == phone, User.id != caller.user.id).first()
    if taken:
        raise HTTPException(status_code=409, detail="An account with this phone number already exists")

    u = caller.user
    u.name = name
    u.phone = phone
    u.is_guest = False
    u.updated_at = now
    db.commit()
    db.refresh(u)

    logger.info("guest_checked_out", user_id=u.id)
    return {"success": True, "user": serialize_user(u), "message": "Account created successfully"}


# -------------------
# Orders
# -------------------
@app.get("/api/user/orders")
def my_orders(
    caller: Caller = Depends(require_user),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    orders.run_due_tasks(db, now)
    db.commit()
    return [orders.serialize(o) for o in orders.list_for(db, user_id=caller.user.id)]


@app.get("/api/orders/by-user")
def orders_by_user(
    user_id: str | None = Query(default=None, alias="userId"),
    email: str | None = Query(default=None),
    phone: str | None = Query(default=None),
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    if not (user_id or email or phone):
        raise HTTPException(status_code=400, detail="userId, email, or phone required")

    orders.run_due_tasks(db, now)
    db.commit()
    found = orders.list_for(db, user_id=user_id, email=email, phone=phone)
    return [orders.serialize(o) for o in found]


@app.get("/api/orders", dependencies=[Depends(require_staff)])
def list_orders(db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    orders.run_due_tasks(db, now)
    db.commit()
    return [orders.serialize(o) for o in orders.list_active(db)]


@app.post("/api/orders")
def create_order(
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(require_user_or_guest),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    _enforce_rate_limit(
        db,
        caller.user.id,
        "/api/orders",
        now,
        settings.order_rate_limit,
        settings.order_rate_window_minutes,
        "Too many order attempts. Please try again later.",
    )

    status = hours.check_open(db, now, settings.store_timezone)
    if not status.is_open:
        detail: Dict[str, Any] = {"error": status.message, "closed": True}
        if status.hours:
            detail["hours"] = status.hours
        logger.info("order_rejected_closed", user_id=caller.user.id, day=status.current_day)
        raise HTTPException(status_code=400, detail=detail)

    order = orders.create(db, caller.user.id, payload, now)
    carts.delete(db, caller.user.id)
    db.commit()
    db.refresh(order)

    return {"success": True, "message": "Order saved successfully", "order": orders.serialize(order)}


@app.delete("/api/orders/all", dependencies=[Depends(require_staff)])
def clear_orders(db: Session = Depends(get_db)):
    orders.delete_all(db)
    db.commit()
    return {"success": True, "message": "All orders cleared successfully"}


@app.delete("/api/orders/cancel/{timestamp}")
def cancel_order(timestamp: str, db: Session = Depends(get_db)):
    try:
        orders.cancel_by_timestamp(db, timestamp)
    except orders.OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except orders.OrderAlreadyConfirmed:
        raise HTTPException(status_code=400, detail="Cannot cancel confirmed order")
    db.commit()
    return {"success": True, "message": "Order cancelled successfully"}


@app.patch("/api/orders/{order_id}", dependencies=[Depends(require_staff)])
def mark_fulfilled(
    order_id: int,
    payload: FulfilledIn,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    order = _order_or_404(orders.set_fulfilled, db, order_id, payload.fulfilled, now)
    db.commit()
    return {"success": True, "message": "Order updated successfully", "order": orders.serialize(order)}


@app.patch("/api/orders/{order_id}/confirm", dependencies=[Depends(require_staff)])
def confirm_order(
    order_id: int,
    payload: ConfirmIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    delay = timedelta(minutes=settings.preparing_delay_minutes)
    order = _order_or_404(orders.set_confirmed, db, order_id, payload.confirmed, now, delay)
    db.commit()
    return {"success": True, "message": "Order confirmed successfully", "order": orders.serialize(order)}


@app.patch("/api/orders/{order_id}/cooked", dependencies=[Depends(require_staff)])
def mark_cooked(
    order_id: int,
    payload: CookedIn,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
):
    order = _order_or_404(orders.set_cooked, db, order_id, payload.cooked, now)
    db.commit()
    return {"success": True, "message": "Order marked as cooked successfully", "order": orders.serialize(order)}


@app.delete("/api/orders/{order_id}", dependencies=[Depends(require_staff)])
def delete_order(order_id: int, db: Session = Depends(get_db), now: datetime = Depends(get_now)):
    entry = _order_or_404(orders.delete, db, order_id, now)
    db.commit()
    return {"success": True, "message": "Order deleted successfully", "archived": entry is not None}


# -------------------
# Discounts
# -------------------
@app.post("/api/validate-discount")
def validate_discount(
    payload: ValidateDiscountIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    return discounts.validate(db, payload.code, _today(now, settings)).to_dict()


@app.get("/api/discounts", dependencies=[Depends(require_staff)])
def list_discounts(db: Session = Depends(get_db)):
    return [discounts.serialize(d) for d in discounts.list_all(db)]


@app.post("/api/discounts", dependencies=[Depends(require_staff)])
def create_discount(payload: DiscountIn, db: Session = Depends(get_db)):
    value = payload.value if payload.value is not None else payload.discount_percent
    if value is None:
        raise HTTPException(status_code=400, detail="Discount value is required")
    try:
        d = discounts.create(
            db,
            code=payload.code,
            value=value,
            expiry_date=payload.expiry_date,
            kind=payload.type,
            usage_limit=payload.usage_limit,
            active=payload.active,
        )
    except discounts.DiscountExists:
        raise HTTPException(status_code=409, detail="Discount code already exists")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()
    return {"success": True, "discount": discounts.serialize(d)}


@app.put("/api/discounts/{code}", dependencies=[Depends(require_staff)])
def update_discount(code: str, payload: DiscountUpdateIn, db: Session = Depends(get_db)):
    d = discounts.find(db, code)
    if d is None:
        raise HTTPException(status_code=404, detail="Discount code not found")

    kind = payload.type or d.kind
    value = payload.value if payload.value is not None else payload.discount_percent
    if value is None:
        value = d.value
    if value < 0 or (kind == discounts.PERCENTAGE and value > 100):
        raise HTTPException(status_code=400, detail="Discount value out of range")

    d.kind = kind
    d.value = float(value)
    if payload.expiry_date is not None:
        d.expiry_date = payload.expiry_date
    if payload.usage_limit is not None:
        d.usage_limit = payload.usage_limit
    if payload.active is not None:
        d.active = payload.active
    db.commit()
    return {"success": True, "discount": discounts.serialize(d)}


@app.delete("/api/discounts/{code}", dependencies=[Depends(require_staff)])
def delete_discount(code: str, db: Session = Depends(get_db)):
    d = discounts.find(db, code)
    if d is None:
        raise HTTPException(status_code=404, detail="Discount code not found")
    db.delete(d)
    db.commit()
    logger.info("discount_deleted", code=d.code)
    return {"success": True, "message": "Discount deleted successfully"}


# -------------------
# History & export
# -------------------
@app.get("/api/history", dependencies=[Depends(require_staff)])
def get_history(db: Session = Depends(get_db)):
    return [orders.serialize_history(e) for e in orders.list_history(db)]


@app.delete("/api/history/all", dependencies=[Depends(require_staff)])
def clear_history(db: Session = Depends(get_db)):
    orders.clear_history(db)
    db.commit()
    return {"success": True, "message": "History cleared successfully"}


@app.delete("/api/history/{history_id}", dependencies=[Depends(require_staff)])
def delete_history_item(history_id: int, db: Session = Depends(get_db)):
    try:
        orders.delete_history_entry(db, history_id)
    except orders.OrderNotFound:
        raise HTTPException(status_code=404, detail="History item not found")
    db.commit()
    return {"success": True, "message": "History item deleted successfully"}


@app.get("/api/export-contacts", dependencies=[Depends(require_staff)])
def export_contacts(db: Session = Depends(get_db)):
    everything = [orders.serialize(o) for o in orders.list_active(db)]
    everything += [orders.serialize_history(e) for e in orders.list_history(db)]

    contacts = collect_contacts(everything)
    if not contacts:
        raise HTTPException(status_code=404, detail="No contacts found")

    return Response(
        content=contacts_workbook(contacts),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=customer_contacts.xlsx"},
    )


# -------------------
# Opening hours
# -------------------
@app.get("/api/opening-hours")
def get_opening_hours(db: Session = Depends(get_db)):
    return hours.load_opening_hours(db)


@app.put("/api/opening-hours", dependencies=[Depends(require_staff)])
def put_opening_hours(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    try:
        saved = hours.save_opening_hours(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.commit()
    logger.info("opening_hours_updated")
    return {"success": True, "hours": saved}


@app.get("/api/is-open")
def is_open(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    now: datetime = Depends(get_now),
):
    return hours.check_open(db, now, settings.store_timezone).to_dict()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("orders_api.main:app", host="0.0.0.0", port=settings.port, workers=1, log_level="info")


if __name__ == "__main__":
    run()
