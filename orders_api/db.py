# orders_api/db.py
from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterator, List

import structlog
from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import Settings

logger = structlog.get_logger()

Base = declarative_base()

SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

engine: Engine | None = None

# Repository defaults shipped with the package
DEFAULTS_DIR = Path(__file__).resolve().parent / "defaults"


def init_db(settings: Settings) -> Engine:
    """Create the engine, the tables, and seed defaults on a fresh database."""
    global engine

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    url = settings.sqlalchemy_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}

    if engine is not None:
        engine.dispose()
    engine = create_engine(url, connect_args=connect_args, future=True)
    SessionLocal.configure(bind=engine)

    # Import models so they register on Base.metadata
    from . import models

    fresh = not inspect(engine).has_table(models.OpeningHoursDay.__tablename__)
    Base.metadata.create_all(bind=engine)

    if fresh:
        with SessionLocal() as db:
            seed_defaults(db, settings.data_dir)
            db.commit()
        logger.info("database_seeded", url=url)
    else:
        logger.info("database_ready", url=url)
    return engine


def dispose_db() -> None:
    global engine
    if engine is not None:
        engine.dispose()
        engine = None


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _load_seed(data_dir: Path, filename: str) -> Any:
    """A file in the data directory wins over the bundled default."""
    for path in (data_dir / filename, DEFAULTS_DIR / filename):
        if path.exists():
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {path}: {e}") from e
    return None


def seed_defaults(db: Session, data_dir: Path) -> None:
    from .models import DiscountCode, OpeningHoursDay
    from .ordering.hours import WEEKDAYS, parse_day_hours

    hours: Dict[str, Any] = _load_seed(data_dir, "opening_hours.json") or {}
    for day in WEEKDAYS:
        closed, open_at, close_at = parse_day_hours(hours.get(day, "Closed"))
        db.add(OpeningHoursDay(day=day, closed=closed, open_time=open_at, close_time=close_at))

    codes: List[Dict[str, Any]] = _load_seed(data_dir, "discount_codes.json") or []
    seen = set()
    for raw in codes:
        code = str(raw.get("code") or "").strip().upper()
        if not code or code in seen:
            continue
        seen.add(code)
        value = raw.get("value", raw.get("discountPercent", 0))
        db.add(
            DiscountCode(
                code=code,
                kind=str(raw.get("type") or "percentage"),
                value=float(value or 0),
                expiry_date=date.fromisoformat(str(raw["expiryDate"])[:10]),
                usage_limit=int(raw.get("usageLimit") or 0),
                used_count=int(raw.get("usedCount") or 0),
                active=bool(raw.get("active", True)),
            )
        )
