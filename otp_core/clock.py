"""
Clocks
======
Injectable time sources. All timestamps are timezone-aware UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time."""
    
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time."""
    
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Clock that only moves when told to.
    
    Example:
        clock = ManualClock()
        engine = OTPEngine(store, clock=clock)
        clock.advance(seconds=601)  # every code issued so far is now expired
    """
    
    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)
    
    def now(self) -> datetime:
        return self._now
    
    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)
    
    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        """Move the clock forward; accepts the same keywords as timedelta."""
        self._now += timedelta(seconds=seconds, **kwargs)
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite returns them) and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
