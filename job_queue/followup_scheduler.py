"""
Follow-up Scheduler — deferred re-engagement of template conversations.

Action lifecycle:

    PENDING ──(scheduled_at <= now)──▶ DUE ──▶ EXECUTING ──ok──▶ COMPLETED (removed)
       ▲                                          │
       └──── FAILED: retry_count += 1, ◀──fail────┤
             scheduled_at = now + retry_delay     │
                                                  └──retry_count > max_retries,
                                                     or non-retryable error──▶ DROPPED (removed)

Only one tick runs at a time; a tick that arrives while another is in
progress returns 0 without touching the queue. One action's failure
never stops the rest of the tick.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from core.stats import ActionCounters
from models.schemas import FollowUpAction, FollowUpState
from utils.clock import Clock, SystemClock

logger = structlog.get_logger()

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = timedelta(minutes=5)

FollowUpExecutor = Callable[[FollowUpAction], Awaitable[Any]]


class FollowUpScheduler:
    """
    In-process queue of FollowUpActions drained by tick().

    The executor is the callable that performs one action; it is usually
    Dispatcher.execute_follow_up and is attached after construction
    because the dispatcher itself enqueues into this scheduler.
    """

    def __init__(
        self,
        executor: Optional[FollowUpExecutor] = None,
        clock: Clock = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        counters: ActionCounters = None,
    ):
        self.executor = executor
        self.clock = clock or SystemClock()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.counters = counters or ActionCounters()
        self._queue: list[FollowUpAction] = []
        self._lock = asyncio.Lock()
        self._processing = False
        self.completed_count = 0
        self.dropped_count = 0

    # ── Queue access ──────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def pending(self) -> list[FollowUpAction]:
        return [a.model_copy(deep=True) for a in self._queue]

    async def enqueue(self, action: FollowUpAction) -> bool:
        """Add an action. Returns False if an identical one is already queued."""
        async with self._lock:
            if any(a.dedupe_key == action.dedupe_key for a in self._queue):
                logger.debug("followup_duplicate_ignored",
                             conversation_id=action.conversation_id,
                             template_type=action.template_type.value,
                             scheduled_at=action.scheduled_at.isoformat())
                return False
            action.state = FollowUpState.PENDING
            self._queue.append(action)

        logger.info("followup_enqueued",
                    action_id=action.action_id,
                    conversation_id=action.conversation_id,
                    template_type=action.template_type.value,
                    scheduled_at=action.scheduled_at.isoformat())
        return True

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._queue)
            self._queue = []
        return count

    # ── Processing ────────────────────────────────────────────

    async def tick(self, now: datetime = None) -> int:
        """Run every due action once. Returns how many were executed."""
        if self._processing:
            logger.debug("followup_tick_skipped", reason="tick_in_progress")
            return 0
        self._processing = True

        try:
            now = now or self.clock.now()
            async with self._lock:
                due = [a for a in self._queue if a.is_due(now)]
                for action in due:
                    action.state = FollowUpState.DUE

            for action in due:
                await self._run(action, now)

            if due:
                logger.info("followup_tick_complete",
                            executed=len(due), remaining=len(self._queue))
            return len(due)
        finally:
            self._processing = False

    async def _run(self, action: FollowUpAction, now: datetime) -> None:
        if self.executor is None:
            raise RuntimeError("FollowUpScheduler has no executor attached")

        action.state = FollowUpState.EXECUTING
        try:
            await self.executor(action)
        except Exception as e:
            await self._record_failure(action, now, e)
            return

        action.state = FollowUpState.COMPLETED
        await self._remove(action)
        self.completed_count += 1
        logger.info("followup_completed",
                    action_id=action.action_id,
                    conversation_id=action.conversation_id,
                    retry_count=action.retry_count)

    async def _record_failure(self, action: FollowUpAction, now: datetime, error: Exception) -> None:
        action.state = FollowUpState.FAILED
        action.retry_count += 1
        action.last_error = str(error)
        retryable = getattr(error, "retryable", True)

        if not retryable or action.retry_count > self.max_retries:
            action.state = FollowUpState.DROPPED
            await self._remove(action)
            self.dropped_count += 1
            self.counters.record_dropped()
            logger.warning("followup_dropped",
                           action_id=action.action_id,
                           conversation_id=action.conversation_id,
                           retry_count=action.retry_count,
                           retryable=retryable,
                           error=str(error))
            return

        action.scheduled_at = now + self.retry_delay
        action.state = FollowUpState.PENDING
        logger.warning("followup_failed_retry_scheduled",
                       action_id=action.action_id,
                       conversation_id=action.conversation_id,
                       retry_count=action.retry_count,
                       next_attempt_at=action.scheduled_at.isoformat(),
                       error=str(error))

    async def _remove(self, action: FollowUpAction) -> None:
        async with self._lock:
            self._queue = [a for a in self._queue if a.action_id != action.action_id]
