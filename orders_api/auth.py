# orders_api/auth.py
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import get_settings


pwd = CryptContext(schemes=["argon2"], deprecated="auto")

GUEST_TOKEN_TTL = timedelta(days=30)

_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_version: int


def hash_password(p: str) -> str:
    return pwd.hash(p)


def verify_password(p: str, h: Optional[str]) -> bool:
    if not h:
        return False
    try:
        return pwd.verify(p, h)
    except ValueError:
        return False


def create_token(user_id: str, session_version: int, expires_in: Optional[timedelta] = None) -> str:
    settings = get_settings()
    if expires_in is None:
        expires_in = timedelta(minutes=settings.jwt_expire_minutes)
    exp = datetime.now(timezone.utc) + expires_in
    payload = {"sub": str(user_id), "sv": int(session_version), "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str) -> Optional[TokenClaims]:
    settings = get_settings()
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        return None
    sub = data.get("sub")
    if not sub:
        return None
    try:
        return TokenClaims(user_id=str(sub), session_version=int(data.get("sv", 0)))
    except (TypeError, ValueError):
        return None


def create_guest_cookie(user_id: str) -> str:
    """Signed guest identifier; a bare user id is never trusted."""
    settings = get_settings()
    exp = datetime.now(timezone.utc) + GUEST_TOKEN_TTL
    payload = {"sub": str(user_id), "typ": "guest", "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_guest_cookie(value: str) -> Optional[str]:
    settings = get_settings()
    try:
        data = jwt.decode(value, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        return None
    if data.get("typ") != "guest" or not data.get("sub"):
        return None
    return str(data["sub"])


def sanitize_input(raw: str) -> str:
    return _TAG_RE.sub("", _SCRIPT_RE.sub("", (raw or "").strip()))


def is_valid_phone(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone or "")
    return 10 <= len(digits) <= 15
