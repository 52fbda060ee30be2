"""
Dispatcher — routes every outbound message through the 24-hour window.

    send_smart_message
        │
        ├─ resolve EngagementRecord (cache, else chat history)
        ├─ window open?  ──yes──▶ DirectSender.send                 → path=direct
        │                 └─no──▶ send_template_message             → path=template
        │                          └─ FollowUpScheduler.enqueue
        └─ record the action on the EngagementRecord

Template sends walk an ordered fallback list (dedicated template endpoint,
then the generic endpoint with the template flag) and stop at the first
success. If both fail the caller gets a TemplateDispatchError holding both
causes. AuthRequired and ConversationNotFound are never retried or
fallen back from.

Every collaborator call is bounded by send_timeout; a timeout becomes a
TransportFailure tagged with the path and collaborator that hung.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from channels.base import (
    CHAT_HISTORY, DIRECT_SEND, GENERIC_ENDPOINT, TEMPLATE_ENDPOINT,
    AuthRequired, ChatHistory, ConversationNotFound, DirectSender, DispatchError,
    GenericTemplateSender, TemplateDispatchError, TemplateSender, TransportFailure,
)
from core.stats import ActionCounters
from engagement.cache import EngagementCache
from engagement.window import WindowPolicy
from job_queue.followup_scheduler import FollowUpScheduler
from models.schemas import (
    Attachment, DispatchOptions, DispatchPath, DispatchResult, EngagementAction,
    EngagementRecord, FollowUpAction, MessageDirection, TemplatePayload,
    TemplateType, UserDetails,
)
from templates.registry import (
    FALLBACK_TEMPLATE_TYPE, TemplateRegistry, follow_up_message, follow_up_template_text,
)
from templates.selector import (
    KeywordTemplateSelector, TemplateSelector, build_components, prepare_parameters,
)
from utils.clock import Clock, SystemClock

logger = structlog.get_logger()

DEFAULT_SEND_TIMEOUT = 15.0
DEFAULT_FOLLOW_UP_DELAY = timedelta(hours=24)

# Errors that end a template attempt without trying the next endpoint
_NO_FALLBACK = (AuthRequired, ConversationNotFound)


class Dispatcher:

    def __init__(
        self,
        cache: EngagementCache,
        direct: DirectSender,
        template_sender: TemplateSender,
        generic_sender: GenericTemplateSender,
        history: ChatHistory,
        scheduler: FollowUpScheduler,
        clock: Clock = None,
        policy: WindowPolicy = None,
        selector: TemplateSelector = None,
        registry: TemplateRegistry = None,
        counters: ActionCounters = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        follow_up_delay: timedelta = DEFAULT_FOLLOW_UP_DELAY,
    ):
        self.cache = cache
        self.direct = direct
        self.template_sender = template_sender
        self.generic_sender = generic_sender
        self.history = history
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.policy = policy or WindowPolicy()
        self.selector = selector or KeywordTemplateSelector()
        self.registry = registry or TemplateRegistry()
        self.counters = counters or ActionCounters()
        self.send_timeout = send_timeout
        self.follow_up_delay = follow_up_delay

    # ── Engagement lookup ─────────────────────────────────────

    async def resolve_record(self, conversation_id: str) -> Optional[EngagementRecord]:
        """
        Cached record, or one built from the chat history.

        Records with no inbound timestamp (only ever written to) are
        re-checked against history. Returns None when the conversation
        has no inbound messages at all.
        """
        record = self.cache.get(conversation_id)
        if record is not None and record.last_inbound_timestamp is not None:
            return record

        messages = await self._call(
            lambda: self.history.fetch_messages(conversation_id), CHAT_HISTORY, None,
        )
        inbound = [m for m in messages if m.direction == MessageDirection.INBOUND]
        if not inbound:
            logger.info("no_inbound_history", conversation_id=conversation_id)
            return record

        latest = max(inbound, key=lambda m: m.timestamp)
        return self.cache.record_inbound(
            conversation_id, latest.timestamp, latest.id, latest.message_type,
        )

    async def is_within_window(self, conversation_id: str) -> bool:
        record = await self.resolve_record(conversation_id)
        return self.policy.is_within_window(
            self.clock.now(), record.last_inbound_timestamp if record else None,
        )

    # ── Public sends ──────────────────────────────────────────

    async def send_smart_message(
        self,
        conversation_id: str,
        text: str,
        attachments: list[Attachment] = None,
        options: DispatchOptions = None,
    ) -> DispatchResult:
        options = options or DispatchOptions()
        attachments = list(attachments or [])
        if not conversation_id:
            raise ValueError("conversation_id is required")
        if not (text or "").strip() and not attachments:
            raise ValueError("Message text is required when no attachments are provided")

        now = self.clock.now()
        record = await self.resolve_record(conversation_id)
        within = self.policy.is_within_window(now, record.last_inbound_timestamp if record else None)
        logger.info("dispatch_route_selected",
                    conversation_id=conversation_id,
                    within_window=within,
                    last_inbound=(record.last_inbound_timestamp.isoformat()
                                  if record and record.last_inbound_timestamp else None))

        if within:
            response = await self._call(
                lambda: self.direct.send(conversation_id, text, attachments, options.ai_enabled),
                DIRECT_SEND, DispatchPath.DIRECT,
            )
            sent_at = self.clock.now()
            self._record(conversation_id, EngagementAction.REGULAR_SENT,
                         {"attachments": len(attachments)}, sent_at)
            return DispatchResult(path=DispatchPath.DIRECT, provider_response=response, sent_at=sent_at)

        if attachments:
            logger.warning("attachments_dropped_for_template",
                           conversation_id=conversation_id, attachments=len(attachments))

        response, template_type = await self._send_template(conversation_id, text, options)
        sent_at = self.clock.now()

        action_id = None
        if options.schedule_follow_up:
            delay = options.follow_up_delay if options.follow_up_delay is not None else self.follow_up_delay
            action = FollowUpAction(
                conversation_id=conversation_id,
                template_type=template_type,
                created_at=sent_at,
                scheduled_at=sent_at + delay,
                options={"ai_enabled": options.ai_enabled},
            )
            if await self.scheduler.enqueue(action):
                action_id = action.action_id

        return DispatchResult(
            path=DispatchPath.TEMPLATE,
            provider_response=response,
            sent_at=sent_at,
            template_type=template_type,
            follow_up_action_id=action_id,
        )

    async def send_template_message(
        self,
        conversation_id: str,
        text: str,
        options: DispatchOptions = None,
    ) -> dict[str, Any]:
        """Send as a template regardless of the window. No follow-up is queued."""
        response, _ = await self._send_template(conversation_id, text, options or DispatchOptions())
        return response

    async def execute_follow_up(self, action: FollowUpAction) -> DispatchResult:
        """
        Run one scheduled follow-up. The window is checked again now: a
        conversation that has come back gets a plain message, otherwise
        another template of the same type.
        """
        conversation_id = action.conversation_id
        template_type = action.template_type
        logger.info("followup_executing",
                    action_id=action.action_id,
                    conversation_id=conversation_id,
                    attempt=action.retry_count + 1)

        if await self.is_within_window(conversation_id):
            response = await self._call(
                lambda: self.direct.send(
                    conversation_id, follow_up_message(template_type), [],
                    action.options.get("ai_enabled", True),
                ),
                DIRECT_SEND, DispatchPath.DIRECT,
            )
            path = DispatchPath.DIRECT
            self.counters.record(EngagementAction.REGULAR_SENT)
        else:
            response, _ = await self._send_template(
                conversation_id,
                follow_up_template_text(template_type),
                DispatchOptions(template_type=template_type, schedule_follow_up=False),
                record=False,
            )
            path = DispatchPath.TEMPLATE
            self.counters.record(EngagementAction.TEMPLATE_SENT)

        # One FOLLOW_UP_SENT entry on the record whichever path was taken
        sent_at = self.clock.now()
        self._record(conversation_id, EngagementAction.FOLLOW_UP_SENT,
                     {"template_type": template_type.value, "path": path.value,
                      "action_id": action.action_id}, sent_at)
        return DispatchResult(path=path, provider_response=response, sent_at=sent_at,
                              template_type=template_type)

    # ── Template path ─────────────────────────────────────────

    async def _send_template(
        self,
        conversation_id: str,
        text: str,
        options: DispatchOptions,
        record: bool = True,
    ) -> tuple[dict[str, Any], TemplateType]:
        template_type = options.template_type or self.selector.determine_template_type(text)
        if template_type not in self.registry:
            logger.warning("template_type_unregistered",
                           template_type=template_type.value,
                           fallback=FALLBACK_TEMPLATE_TYPE.value)
            template_type = FALLBACK_TEMPLATE_TYPE
        definition = self.registry.get(template_type)

        user = await self._user_details(conversation_id)
        parameters = prepare_parameters(template_type, text, user, self.clock.now())
        payload = TemplatePayload.build(definition, build_components(definition, parameters))

        logger.info("template_prepared",
                    conversation_id=conversation_id,
                    template=definition.name,
                    parameters=list(parameters))
        response = await self._send_with_fallback(conversation_id, payload)

        if record:
            self._record(conversation_id, EngagementAction.TEMPLATE_SENT,
                         {"template_type": template_type.value}, self.clock.now())
        return response, template_type

    async def _send_with_fallback(self, conversation_id: str, payload: TemplatePayload) -> dict[str, Any]:
        attempts: list[tuple[str, Callable[[], Awaitable[dict[str, Any]]]]] = [
            (TEMPLATE_ENDPOINT,
             lambda: self.template_sender.send_template(conversation_id, payload.model_dump())),
            (GENERIC_ENDPOINT,
             lambda: self.generic_sender.send_generic_template(conversation_id, payload.with_template_flag())),
        ]

        errors: list[DispatchError] = []
        for collaborator, send in attempts:
            try:
                response = await self._call(send, collaborator, DispatchPath.TEMPLATE)
            except _NO_FALLBACK:
                raise
            except DispatchError as e:
                errors.append(e)
                logger.warning("template_endpoint_failed",
                               conversation_id=conversation_id,
                               endpoint=collaborator,
                               error=str(e))
                continue

            logger.info("template_sent",
                        conversation_id=conversation_id,
                        template=payload.template["name"],
                        endpoint=collaborator,
                        fallback_used=bool(errors))
            return response

        raise TemplateDispatchError(conversation_id, errors)

    async def _user_details(self, conversation_id: str) -> UserDetails:
        try:
            details = await self._call(
                lambda: self.history.fetch_user_details(conversation_id),
                CHAT_HISTORY, DispatchPath.TEMPLATE,
            )
        except AuthRequired:
            raise
        except DispatchError as e:
            logger.warning("user_details_unavailable", conversation_id=conversation_id, error=str(e))
            details = None

        details = details or UserDetails()
        if details.last_activity is None:
            record = self.cache.get(conversation_id)
            if record is not None:
                details.last_activity = record.last_inbound_timestamp
        return details

    # ── Helpers ───────────────────────────────────────────────

    async def _call(
        self,
        fn: Callable[[], Awaitable[Any]],
        collaborator: str,
        path: Optional[DispatchPath],
    ) -> Any:
        """Await a collaborator call with the send timeout, tagging any failure."""
        try:
            return await asyncio.wait_for(fn(), timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                f"{collaborator} timed out after {self.send_timeout}s",
                collaborator=collaborator, path=path,
            ) from e
        except DispatchError as e:
            e.collaborator = e.collaborator or collaborator
            if e.path is None:
                e.path = path
            raise
        except Exception as e:
            raise TransportFailure(
                f"{collaborator} failed: {e}", collaborator=collaborator, path=path,
            ) from e

    def _record(self, conversation_id: str, action: EngagementAction,
                details: dict[str, Any], now) -> None:
        self.cache.record_action(conversation_id, action, details, now)
        self.counters.record(action)
