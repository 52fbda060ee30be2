"""Shared test fixtures for the engagement-window dispatcher."""
import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from channels.base import ChatHistory, DirectSender, GenericTemplateSender, TemplateSender
from config.settings import reset_settings
from core.dispatcher import Dispatcher
from core.stats import ActionCounters
from database.store_memory import InMemoryBlobStore
from engagement.cache import EngagementCache
from job_queue.followup_scheduler import FollowUpScheduler
from models.schemas import ChatMessage, MessageDirection, UserDetails
from utils.clock import ManualClock

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeChatBackend(DirectSender, TemplateSender, GenericTemplateSender, ChatHistory):
    """
    Records every collaborator call and replays scripted failures.

    fail(method, *errors)        raise each error once, in order
    fail_always(method, error)   raise error on every call
    delays[method] = seconds     sleep before answering
    """

    def __init__(self):
        self.calls: list[tuple[str, str, Any]] = []
        self.messages: dict[str, list[ChatMessage]] = {}
        self.users: dict[str, UserDetails] = {}
        self.delays: dict[str, float] = {}
        self._scripted: dict[str, list[Exception]] = {}
        self._always: dict[str, Exception] = {}

    def fail(self, method: str, *errors: Exception):
        self._scripted.setdefault(method, []).extend(errors)

    def fail_always(self, method: str, error: Exception):
        self._always[method] = error

    def heal(self, method: str = None):
        if method is None:
            self._scripted.clear()
            self._always.clear()
        else:
            self._scripted.pop(method, None)
            self._always.pop(method, None)

    def calls_to(self, method: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == method]

    def add_message(self, conversation_id: str, timestamp: datetime,
                    direction=MessageDirection.INBOUND, message_id: str = None):
        self.messages.setdefault(conversation_id, []).append(ChatMessage(
            id=message_id or f"m{len(self.messages.get(conversation_id, [])) + 1}",
            text="hello",
            direction=direction,
            timestamp=timestamp,
        ))

    async def _answer(self, method: str, conversation_id: str, payload: Any):
        self.calls.append((method, conversation_id, payload))
        if self.delays.get(method):
            await asyncio.sleep(self.delays[method])
        if self._scripted.get(method):
            raise self._scripted[method].pop(0)
        if method in self._always:
            raise self._always[method]

    async def send(self, conversation_id, text, attachments, ai_enabled):
        await self._answer("send", conversation_id,
                           {"text": text, "attachments": attachments, "ai_enabled": ai_enabled})
        return {"status": True, "message_id": f"msg_{len(self.calls)}"}

    async def send_template(self, conversation_id, payload):
        await self._answer("send_template", conversation_id, payload)
        return {"status": True, "endpoint": "template"}

    async def send_generic_template(self, conversation_id, payload):
        await self._answer("send_generic_template", conversation_id, payload)
        return {"status": True, "endpoint": "generic"}

    async def fetch_messages(self, conversation_id):
        await self._answer("fetch_messages", conversation_id, None)
        return sorted(self.messages.get(conversation_id, []), key=lambda m: m.timestamp)

    async def fetch_user_details(self, conversation_id):
        await self._answer("fetch_user_details", conversation_id, None)
        return self.users.get(conversation_id)


@pytest.fixture(autouse=True)
def _reset_settings():
    yield
    reset_settings()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def cache(store) -> EngagementCache:
    return EngagementCache(store)


@pytest.fixture
def counters() -> ActionCounters:
    return ActionCounters()


@pytest.fixture
def backend() -> FakeChatBackend:
    return FakeChatBackend()


@pytest.fixture
def scheduler(clock, counters) -> FollowUpScheduler:
    return FollowUpScheduler(clock=clock, counters=counters)


@pytest.fixture
def dispatcher(cache, backend, scheduler, clock, counters) -> Dispatcher:
    d = Dispatcher(
        cache=cache,
        direct=backend,
        template_sender=backend,
        generic_sender=backend,
        history=backend,
        scheduler=scheduler,
        clock=clock,
        counters=counters,
        send_timeout=1.0,
    )
    scheduler.executor = d.execute_follow_up
    return d
