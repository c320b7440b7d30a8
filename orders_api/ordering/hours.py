# orders_api/ordering/hours.py
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..models import OpeningHoursDay

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

CLOSED = "Closed"

_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass
class OpenStatus:
    is_open: bool
    message: str
    current_day: str
    hours: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "isOpen": self.is_open,
            "message": self.message,
            "currentDay": self.current_day,
        }
        if self.hours:
            out["hours"] = self.hours
        return out


def to_minutes(hhmm: str) -> int:
    m = _HHMM_RE.match((hhmm or "").strip())
    if not m:
        raise ValueError(f"Invalid time '{hhmm}', expected HH:MM")
    return int(m.group(1)) * 60 + int(m.group(2))


def parse_day_hours(value: Any) -> Tuple[bool, Optional[str], Optional[str]]:
    """Accepts "Closed" or {"open": "HH:MM", "close": "HH:MM"}."""
    if isinstance(value, str) and value.strip().lower() == CLOSED.lower():
        return True, None, None
    if isinstance(value, dict):
        open_at = str(value.get("open") or "").strip()
        close_at = str(value.get("close") or "").strip()
        to_minutes(open_at)
        to_minutes(close_at)
        return False, open_at, close_at
    raise ValueError(f"Invalid opening hours value: {value!r}")


def store_local(now: datetime, tz_name: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def store_today(now: datetime, tz_name: str) -> date:
    return store_local(now, tz_name).date()


def _day_value(row: Optional[OpeningHoursDay]) -> Any:
    if row is None or row.closed:
        return CLOSED
    return {"open": row.open_time, "close": row.close_time}


def load_opening_hours(db: Session) -> Dict[str, Any]:
    rows = {r.day: r for r in db.query(OpeningHoursDay).all()}
    return {day: _day_value(rows.get(day)) for day in WEEKDAYS}


def save_opening_hours(db: Session, hours: Dict[str, Any]) -> Dict[str, Any]:
    """Replace all seven days. Raises ValueError on a missing or malformed day."""
    parsed = {}
    for day in WEEKDAYS:
        if day not in hours or not hours[day]:
            raise ValueError(f"Missing hours for {day}")
        parsed[day] = parse_day_hours(hours[day])

    for day, (closed, open_at, close_at) in parsed.items():
        row = db.get(OpeningHoursDay, day)
        if row is None:
            row = OpeningHoursDay(day=day)
            db.add(row)
        row.closed = closed
        row.open_time = open_at
        row.close_time = close_at
    db.flush()
    return load_opening_hours(db)


def check_open(db: Session, now: datetime, tz_name: str) -> OpenStatus:
    local = store_local(now, tz_name)
    current_day = WEEKDAYS[local.weekday()]
    row = db.get(OpeningHoursDay, current_day)

    if row is None or row.closed:
        return OpenStatus(False, "Store is currently closed", current_day)

    if not (row.open_time and row.close_time):
        return OpenStatus(False, "Opening hours not configured", current_day)

    minutes = local.hour * 60 + local.minute
    is_open = to_minutes(row.open_time) <= minutes < to_minutes(row.close_time)
    hours = {"open": row.open_time, "close": row.close_time}
    if is_open:
        return OpenStatus(True, "Store is open", current_day, hours)
    return OpenStatus(
        False,
        f"Store is currently closed. Opening hours: {row.open_time} - {row.close_time}",
        current_day,
        hours,
    )
