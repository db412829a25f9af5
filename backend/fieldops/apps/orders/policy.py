from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

ORDER_AMEND_WINDOW_MINUTES = int(os.getenv("ORDER_AMEND_WINDOW_MINUTES", "15"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def amend_deadline(completed_at: datetime) -> datetime:
    return _aware(completed_at) + timedelta(minutes=ORDER_AMEND_WINDOW_MINUTES)


def is_within_amend_window(completed_at: datetime, now: Optional[datetime] = None) -> bool:
    now = _aware(now) if now is not None else _utcnow()
    return now <= amend_deadline(completed_at)
