from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    # Services take an injectable clock; this is the wall-clock default.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # Treat naive timestamps as UTC so comparisons never mix aware and naive values.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
