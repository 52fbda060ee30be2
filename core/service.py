"""
Messaging Service — the one object the app holds.

Owns the engagement cache, follow-up scheduler, dispatcher, stats and the
two background tasks, all built from injected collaborators. Nothing in
here is a module-level singleton; build one with create_messaging_service()
or construct it directly in tests.

Lifecycle:
    service = create_messaging_service(settings)
    await service.initialize()      # load cache, start ticker + pruner
    ...
    await service.shutdown()        # stop background tasks, flush cache
"""
from __future__ import annotations

import math
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from channels.base import ChatHistory, DirectSender, GenericTemplateSender, TemplateSender
from config.settings import Settings, get_settings
from core.dispatcher import Dispatcher
from core.stats import ActionCounters, StatsAggregator
from database.store_base import BaseBlobStore
from database.store_factory import create_store
from engagement.cache import EngagementCache
from engagement.window import WindowPolicy
from job_queue.background import PeriodicTask
from job_queue.followup_scheduler import FollowUpScheduler
from models.schemas import (
    Attachment, DispatchOptions, DispatchResult, EngagementRecord,
    EngagementSnapshot, MessagingStats,
)
from templates.registry import TemplateRegistry
from templates.selector import TemplateSelector
from utils.clock import Clock, SystemClock

logger = structlog.get_logger()


class MessagingService:

    def __init__(
        self,
        store: BaseBlobStore,
        direct: DirectSender,
        template_sender: TemplateSender,
        generic_sender: GenericTemplateSender,
        history: ChatHistory,
        settings: Settings = None,
        clock: Clock = None,
        selector: TemplateSelector = None,
        registry: TemplateRegistry = None,
    ):
        self.settings = settings or Settings()
        cfg = self.settings.messaging
        self.clock = clock or SystemClock()
        self.policy = WindowPolicy.from_hours(cfg.window_hours)
        self.counters = ActionCounters()

        self.cache = EngagementCache(
            store,
            key=self.settings.storage.cache_key,
            retention=timedelta(days=cfg.retention_days),
        )
        self.scheduler = FollowUpScheduler(
            clock=self.clock,
            max_retries=cfg.max_retries,
            retry_delay=timedelta(seconds=cfg.retry_delay_seconds),
            counters=self.counters,
        )
        self.dispatcher = Dispatcher(
            cache=self.cache,
            direct=direct,
            template_sender=template_sender,
            generic_sender=generic_sender,
            history=history,
            scheduler=self.scheduler,
            clock=self.clock,
            policy=self.policy,
            selector=selector,
            registry=registry,
            counters=self.counters,
            send_timeout=cfg.send_timeout_seconds,
            follow_up_delay=timedelta(seconds=cfg.follow_up_delay_seconds),
        )
        self.scheduler.executor = self.dispatcher.execute_follow_up
        self.stats = StatsAggregator(self.cache, self.counters, self.policy, self.scheduler)

        self._ticker = PeriodicTask("followup_tick", self.process_follow_ups,
                                    interval_s=cfg.tick_interval_seconds)
        self._pruner = PeriodicTask("engagement_prune", self.prune_engagement_data,
                                    interval_s=cfg.prune_interval_seconds)
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, start_background: bool = True) -> None:
        if self._initialized:
            return
        loaded = self.cache.load_all()
        if start_background:
            await self._ticker.start()
            await self._pruner.start()
        self._initialized = True
        logger.info("messaging_service_initialized",
                    cached_conversations=loaded,
                    background=start_background)

    async def shutdown(self) -> None:
        await self._ticker.stop()
        await self._pruner.stop()
        self.cache.save_all()
        close = getattr(self.dispatcher.direct, "close", None)
        if close is not None:
            await close()
        self._initialized = False
        logger.info("messaging_service_stopped", pending_follow_ups=len(self.scheduler))

    async def reset(self) -> None:
        """Drop all engagement state, queued follow-ups and counters."""
        self.cache.clear()
        cleared = await self.scheduler.clear()
        self.counters.reset()
        logger.info("messaging_service_reset", follow_ups_cleared=cleared)

    # ── Engagement ────────────────────────────────────────────

    def record_inbound(
        self,
        conversation_id: str,
        timestamp: datetime = None,
        message_id: Optional[str] = None,
        message_type: str = "text",
    ) -> EngagementRecord:
        """Feed an inbound message (webhook, push, poll) into the cache."""
        return self.cache.record_inbound(
            conversation_id, timestamp or self.clock.now(), message_id, message_type,
        )

    async def is_within_messaging_window(self, conversation_id: str) -> bool:
        return await self.dispatcher.is_within_window(conversation_id)

    async def get_engagement(self, conversation_id: str) -> EngagementSnapshot:
        record = await self.dispatcher.resolve_record(conversation_id)
        now = self.clock.now()
        last = record.last_inbound_timestamp if record else None
        snapshot = EngagementSnapshot(
            conversation_id=conversation_id,
            record=record,
            is_within_window=self.policy.is_within_window(now, last),
            window_remaining_seconds=math.floor(self.policy.remaining(now, last).total_seconds()),
        )
        if last is not None:
            elapsed = now - last
            snapshot.hours_since_inbound = round(elapsed / timedelta(hours=1))
            snapshot.days_since_inbound = round(elapsed / timedelta(days=1))
        return snapshot

    # ── Sending ───────────────────────────────────────────────

    async def send_smart_message(
        self,
        conversation_id: str,
        text: str,
        attachments: list[Attachment] = None,
        options: DispatchOptions = None,
    ) -> DispatchResult:
        return await self.dispatcher.send_smart_message(conversation_id, text, attachments, options)

    async def send_template_message(
        self,
        conversation_id: str,
        text: str,
        options: DispatchOptions = None,
    ) -> dict[str, Any]:
        return await self.dispatcher.send_template_message(conversation_id, text, options)

    # ── Background work ───────────────────────────────────────

    async def process_follow_ups(self) -> int:
        return await self.scheduler.tick(self.clock.now())

    async def prune_engagement_data(self) -> int:
        return self.cache.prune(self.clock.now())

    # ── Stats ─────────────────────────────────────────────────

    def get_messaging_stats(self) -> MessagingStats:
        return self.stats.compute_stats(self.clock.now())

    def conversations_outside_window(self, limit: Optional[int] = None) -> list[str]:
        return self.stats.conversations_outside_window(self.clock.now(), limit)


def create_messaging_service(
    settings: Settings = None,
    client=None,   # type: channels.chat_api.ChatAPIClient, or any object implementing all four collaborators
    store: BaseBlobStore = None,
    clock: Clock = None,
) -> MessagingService:
    """Wire a MessagingService from settings: REST client, configured store and template overrides."""
    settings = settings or get_settings()

    if client is None:
        from channels.chat_api import ChatAPIClient
        client = ChatAPIClient(settings.api)

    if store is None:
        store = create_store(settings.storage)

    registry = TemplateRegistry(include_defaults=settings.templates.include_defaults)
    if settings.templates.definitions:
        registry.register_from_config(settings.templates.definitions)

    return MessagingService(
        store=store,
        direct=client,
        template_sender=client,
        generic_sender=client,
        history=client,
        settings=settings,
        clock=clock,
        registry=registry,
    )
