"""
Core data models for the engagement-window dispatcher.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TemplateType(str, Enum):
    """Template categories. Values are the approved template names."""
    FOLLOW_UP = "follow_up_reminder"
    ENGAGEMENT = "engagement_prompt"
    OFFER = "special_offer"
    NEWS = "news_update"
    SURVEY = "quick_survey"
    CUSTOMER_SERVICE = "customer_service_followup"


class DispatchPath(str, Enum):
    DIRECT = "direct"
    TEMPLATE = "template"


class EngagementAction(str, Enum):
    TEMPLATE_SENT = "template_sent"
    REGULAR_SENT = "regular_sent"
    FOLLOW_UP_SENT = "follow_up_sent"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class FollowUpState(str, Enum):
    PENDING = "pending"
    DUE = "due"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"


# ──────────────────────────────────────────────────────────────
#  Engagement Record — one per conversation
# ──────────────────────────────────────────────────────────────

class EngagementRecord(BaseModel):
    """
    Last-known inbound activity for a conversation plus the most recent
    dispatcher action taken on it.

    last_inbound_timestamp is None for conversations we have only ever
    written to (e.g. a template sent to a chat with no inbound history).
    """
    model_config = ConfigDict(validate_assignment=True)

    conversation_id: str
    last_inbound_timestamp: Optional[UTCDateTime] = None
    last_inbound_message_id: Optional[str] = None
    last_inbound_message_type: str = "text"
    last_action: Optional[EngagementAction] = None
    last_action_details: dict[str, Any] = {}
    last_action_at: Optional[UTCDateTime] = None
    engagement_count: int = Field(default=0, ge=0)

    @property
    def retention_anchor(self) -> Optional[datetime]:
        """Timestamp retention is measured from: last inbound, else last action."""
        return self.last_inbound_timestamp or self.last_action_at


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class ParameterSlot(BaseModel):
    """A positional placeholder inside a template component."""
    name: str = ""
    default: str = ""


class ComponentSpec(BaseModel):
    kind: str                                 # header | body | button
    parameter_slots: list[ParameterSlot] = []
    sub_type: Optional[str] = None            # e.g. "quick_reply" for buttons
    index: Optional[int] = None


class TemplateDefinition(BaseModel):
    name: str
    language_code: str = "en"
    components: list[ComponentSpec] = []


class TemplatePayload(BaseModel):
    """Body sent to the template endpoint."""
    type: str = "template"
    template: dict[str, Any]

    @classmethod
    def build(cls, definition: TemplateDefinition, components: list[dict[str, Any]]) -> TemplatePayload:
        return cls(template={
            "name": definition.name,
            "language": {"code": definition.language_code},
            "components": components,
        })

    def with_template_flag(self) -> dict[str, Any]:
        """Payload shape for the generic endpoint fallback."""
        data = self.model_dump()
        data["is_template_message"] = True
        data["template_type"] = self.template["name"]
        return data


# ──────────────────────────────────────────────────────────────
#  Messages and contacts
# ──────────────────────────────────────────────────────────────

class Attachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    url: str = ""
    size_bytes: int = 0
    data: bytes = b""


class ChatMessage(BaseModel):
    """A message as returned by the chat-history collaborator."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = ""
    direction: MessageDirection
    timestamp: UTCDateTime
    message_type: str = "text"


class UserDetails(BaseModel):
    name: str = "Valued Customer"
    last_activity: Optional[UTCDateTime] = None
    phone: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Dispatch
# ──────────────────────────────────────────────────────────────

class DispatchOptions(BaseModel):
    template_type: Optional[TemplateType] = None    # None → infer from text
    ai_enabled: bool = True
    follow_up_delay: Optional[timedelta] = None     # None → dispatcher default (24h)
    schedule_follow_up: bool = True


class DispatchResult(BaseModel):
    path: DispatchPath
    provider_response: dict[str, Any] = {}
    sent_at: UTCDateTime
    template_type: Optional[TemplateType] = None
    follow_up_action_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Follow-up Action — a deferred re-engagement attempt
# ──────────────────────────────────────────────────────────────

class FollowUpAction(BaseModel):
    action_id: str = Field(default_factory=lambda: f"fu_{uuid.uuid4().hex[:12]}")
    conversation_id: str
    template_type: TemplateType
    created_at: UTCDateTime
    scheduled_at: UTCDateTime
    retry_count: int = Field(default=0, ge=0)
    options: dict[str, Any] = {}
    state: FollowUpState = FollowUpState.PENDING
    last_error: str = ""

    @model_validator(mode="after")
    def _scheduled_not_before_created(self) -> FollowUpAction:
        if self.scheduled_at < self.created_at:
            raise ValueError("scheduled_at must not precede created_at")
        return self

    @property
    def dedupe_key(self) -> tuple[str, str, datetime]:
        return (self.conversation_id, self.template_type.value, self.scheduled_at)

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at <= now


# ──────────────────────────────────────────────────────────────
#  Observability
# ──────────────────────────────────────────────────────────────

class MessagingStats(BaseModel):
    total_conversations: int = 0
    within_window: int = 0
    outside_window: int = 0
    templates_sent: int = 0
    regular_sent: int = 0
    follow_ups_sent: int = 0
    follow_ups_dropped: int = 0
    pending_follow_ups: int = 0


class EngagementSnapshot(BaseModel):
    conversation_id: str
    record: Optional[EngagementRecord] = None
    is_within_window: bool = False
    hours_since_inbound: Optional[int] = None
    days_since_inbound: Optional[int] = None
    window_remaining_seconds: int = 0
