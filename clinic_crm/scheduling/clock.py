"""Injectable time source."""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, current: datetime):
        self.current = ensure_utc(current)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def clinic_tzinfo(name: str) -> tzinfo:
    """Resolve the configured clinic zone."""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)
