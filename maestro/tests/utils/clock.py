from __future__ import annotations

from datetime import datetime, timedelta, timezone


class MutableClock:
    # Injectable clock so expiry, cooldown and retention windows can be stepped in tests.
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current
