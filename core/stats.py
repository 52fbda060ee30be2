"""
Messaging statistics — read-only aggregates for monitoring screens.

ActionCounters are bumped by the dispatcher and the follow-up scheduler;
StatsAggregator folds them together with the engagement cache. Every
conversation lands in exactly one of within_window / outside_window.

The counters are per process: they start at zero on every restart while
the engagement cache is reloaded from the store. A follow-up counts once
as follow_ups_sent and once under the path it took (regular_sent or
templates_sent).
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional

from engagement.cache import EngagementCache
from engagement.window import WindowPolicy
from models.schemas import EngagementAction, MessagingStats


@dataclass
class ActionCounters:
    templates_sent: int = 0
    regular_sent: int = 0
    follow_ups_sent: int = 0
    follow_ups_dropped: int = 0

    def record(self, action: EngagementAction) -> None:
        if action == EngagementAction.TEMPLATE_SENT:
            self.templates_sent += 1
        elif action == EngagementAction.REGULAR_SENT:
            self.regular_sent += 1
        elif action == EngagementAction.FOLLOW_UP_SENT:
            self.follow_ups_sent += 1

    def record_dropped(self) -> None:
        self.follow_ups_dropped += 1

    def reset(self) -> None:
        self.templates_sent = 0
        self.regular_sent = 0
        self.follow_ups_sent = 0
        self.follow_ups_dropped = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StatsAggregator:

    def __init__(
        self,
        cache: EngagementCache,
        counters: ActionCounters,
        policy: WindowPolicy = None,
        scheduler=None,  # type: job_queue.followup_scheduler.FollowUpScheduler
    ):
        self.cache = cache
        self.counters = counters
        self.policy = policy or WindowPolicy()
        self.scheduler = scheduler

    def compute_stats(self, now: datetime) -> MessagingStats:
        records = self.cache.all()
        within = sum(
            1 for r in records if self.policy.is_within_window(now, r.last_inbound_timestamp)
        )
        return MessagingStats(
            total_conversations=len(records),
            within_window=within,
            outside_window=len(records) - within,
            templates_sent=self.counters.templates_sent,
            regular_sent=self.counters.regular_sent,
            follow_ups_sent=self.counters.follow_ups_sent,
            follow_ups_dropped=self.counters.follow_ups_dropped,
            pending_follow_ups=len(self.scheduler) if self.scheduler is not None else 0,
        )

    def conversations_outside_window(self, now: datetime, limit: Optional[int] = None) -> list[str]:
        """Conversation ids that currently need a template to be reached."""
        ids = sorted(
            r.conversation_id for r in self.cache.all()
            if not self.policy.is_within_window(now, r.last_inbound_timestamp)
        )
        return ids[:limit] if limit is not None else ids
