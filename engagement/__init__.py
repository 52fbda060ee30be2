"""Per-conversation engagement tracking and the 24-hour window policy."""
from engagement.cache import EngagementCache, DEFAULT_CACHE_KEY, DEFAULT_RETENTION
from engagement.window import (
    ENGAGEMENT_WINDOW, WindowPolicy, is_within_window, window_remaining,
)

__all__ = [
    "EngagementCache", "DEFAULT_CACHE_KEY", "DEFAULT_RETENTION",
    "ENGAGEMENT_WINDOW", "WindowPolicy", "is_within_window", "window_remaining",
]
