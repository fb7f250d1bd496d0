"""
Injectable time source for lifecycle timestamps.

Every status change stamps ``approved_at``/``paid_at``/... from a Clock
handed to the service, never from ``datetime.now()``, so tests can pin
the stamps and concurrent handlers can share one deterministic source.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite stores no offset, so values read back are naive; they were
    written as UTC and are re-tagged as such.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Source of the current instant. ``now()`` is always aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Manually driven clock for tests.

    ``now()`` is stable between calls; ``advance()`` and ``tick()`` move it
    forward. Safe to share between request-handler threads.
    """

    def __init__(self, start: datetime | None = None):
        self._current = ensure_utc(start) if start is not None else EPOCH
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, seconds: float | timedelta = 1) -> datetime:
        step = seconds if isinstance(seconds, timedelta) else timedelta(seconds=seconds)
        if step < timedelta(0):
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._current += step
            return self._current

    def tick(self) -> datetime:
        return self.advance(1)
