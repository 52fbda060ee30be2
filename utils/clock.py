"""
Clock collaborator.

Everything that compares against "now" (window checks, follow-up due
times, pruning) takes a Clock so tests can pin time.
"""
from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone


class Clock(abc.ABC):
    @abc.abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, delta: timedelta = None, **kwargs) -> datetime:
        self._now = self._now + (delta or timedelta(**kwargs))
        return self._now
