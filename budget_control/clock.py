"""
Time Source

DESIGN DECISION: Every time-dependent decision (delegation windows,
approval timestamps, migration timestamps) reads ONE injected clock that
represents server time. Callers never pass their own "now"; a phone with a
skewed clock must not be able to switch authority on or off.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from uuid import uuid4


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a document identifier."""
    return uuid4().hex


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Source of server time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current instant (UTC, timezone-aware)."""
        pass


class SystemClock(Clock):
    """Clock backed by the host's UTC time."""

    def now(self) -> datetime:
        return utc_now()
