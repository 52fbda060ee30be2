"""
Engagement window policy.

Free-form messages are only allowed while a conversation's last inbound
message is less than 24 hours old. Exactly 24 hours elapsed is outside.
A conversation with no known inbound activity is outside, which routes
it to a template.

Pure functions: time is always passed in, never read from a clock.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

ENGAGEMENT_WINDOW = timedelta(hours=24)


def is_within_window(
    now: datetime,
    last_inbound_timestamp: Optional[datetime],
    window: timedelta = ENGAGEMENT_WINDOW,
) -> bool:
    if last_inbound_timestamp is None:
        return False
    return now - last_inbound_timestamp < window


def window_remaining(
    now: datetime,
    last_inbound_timestamp: Optional[datetime],
    window: timedelta = ENGAGEMENT_WINDOW,
) -> timedelta:
    """Time left before the window closes; zero when already closed."""
    if not is_within_window(now, last_inbound_timestamp, window):
        return timedelta(0)
    return window - (now - last_inbound_timestamp)


class WindowPolicy:
    """Window check bound to a configured window length."""

    def __init__(self, window: timedelta = ENGAGEMENT_WINDOW):
        self.window = window

    @classmethod
    def from_hours(cls, hours: float) -> WindowPolicy:
        return cls(timedelta(hours=hours))

    def is_within_window(self, now: datetime, last_inbound_timestamp: Optional[datetime]) -> bool:
        return is_within_window(now, last_inbound_timestamp, self.window)

    def remaining(self, now: datetime, last_inbound_timestamp: Optional[datetime]) -> timedelta:
        return window_remaining(now, last_inbound_timestamp, self.window)
