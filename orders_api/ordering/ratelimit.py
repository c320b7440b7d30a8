# orders_api/ordering/ratelimit.py
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models import RateLimit

logger = structlog.get_logger()


@dataclass
class Decision:
    allowed: bool
    remaining: int
    retry_after: Optional[int] = None


def check_rate_limit(
    db: Session,
    identifier: str,
    endpoint: str,
    now: datetime,
    max_attempts: int = 5,
    window_minutes: int = 15,
) -> Decision:
    """Count one attempt for (identifier, endpoint) in a window that starts
    with the first attempt. Elapsed windows are pruned before counting."""
    window = timedelta(minutes=window_minutes)
    cutoff = now - window

    db.query(RateLimit).filter(RateLimit.window_start <= cutoff).delete(synchronize_session=False)

    existing = (
        db.query(RateLimit)
        .filter(RateLimit.identifier == identifier, RateLimit.endpoint == endpoint)
        .first()
    )

    if existing is None:
        db.add(RateLimit(identifier=identifier, endpoint=endpoint, attempts=1, window_start=now))
        db.flush()
        return Decision(True, max_attempts - 1)

    if existing.attempts >= max_attempts:
        elapsed = (now - existing.window_start).total_seconds()
        retry_after = max(math.ceil(window.total_seconds() - elapsed), 1)
        logger.warning(
            "rate_limited",
            identifier=identifier,
            endpoint=endpoint,
            attempts=existing.attempts,
            retry_after=retry_after,
        )
        return Decision(False, 0, retry_after)

    db.execute(
        update(RateLimit)
        .where(RateLimit.id == existing.id)
        .values(attempts=RateLimit.attempts + 1)
    )
    db.flush()
    db.refresh(existing)
    return Decision(True, max(max_attempts - existing.attempts, 0))
