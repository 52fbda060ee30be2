"""
Channel collaborators — error taxonomy and the interfaces the dispatcher
talks to.

Provides:
- DispatchError: structured error hierarchy (path + collaborator + retryable)
- DirectSender: free-form send, only valid inside the engagement window
- TemplateSender: dedicated template endpoint
- GenericTemplateSender: generic send endpoint accepting a flagged template
- ChatHistory: message history and contact details for a conversation
"""
from __future__ import annotations

import abc
from typing import Any, Optional

from models.schemas import Attachment, ChatMessage, DispatchPath, UserDetails


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DispatchError(Exception):
    """
    Base exception for every dispatch failure.

    path and collaborator identify where the failure happened so callers
    can tell a failed direct send from a failed template send.
    """

    retryable_default = False

    def __init__(
        self,
        message: str,
        collaborator: str = "",
        path: Optional[DispatchPath] = None,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ):
        self.collaborator = collaborator
        self.path = path
        self.retryable = self.retryable_default if retryable is None else retryable
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "collaborator": self.collaborator,
            "path": self.path.value if self.path else None,
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


class AuthRequired(DispatchError):
    """Credentials missing or rejected. The caller must re-authenticate."""


class TransportFailure(DispatchError):
    """Network error, timeout or 5xx."""
    retryable_default = True


class TemplateRejected(DispatchError):
    """The provider refused the template payload."""


class ConversationNotFound(DispatchError):
    """No history can be resolved for the conversation."""


class TemplateDispatchError(DispatchError):
    """Every template endpoint failed. Carries each underlying error."""

    def __init__(self, conversation_id: str, errors: list[DispatchError]):
        self.conversation_id = conversation_id
        self.errors = list(errors)
        detail = "; ".join(f"{e.collaborator or '?'}: {e}" for e in self.errors)
        super().__init__(
            f"Template message to {conversation_id} failed on all endpoints ({detail})",
            collaborator=",".join(e.collaborator for e in self.errors),
            path=DispatchPath.TEMPLATE,
            retryable=any(e.retryable for e in self.errors),
        )

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["causes"] = [e.to_dict() for e in self.errors]
        return d


# ══════════════════════════════════════════════════════════════
#  COLLABORATOR INTERFACES
# ══════════════════════════════════════════════════════════════

# Names carried on DispatchError.collaborator
DIRECT_SEND = "direct_send"
TEMPLATE_ENDPOINT = "template_endpoint"
GENERIC_ENDPOINT = "generic_endpoint"
CHAT_HISTORY = "chat_history"


class DirectSender(abc.ABC):

    @abc.abstractmethod
    async def send(
        self,
        conversation_id: str,
        text: str,
        attachments: list[Attachment],
        ai_enabled: bool,
    ) -> dict[str, Any]:
        ...


class TemplateSender(abc.ABC):

    @abc.abstractmethod
    async def send_template(self, conversation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...


class GenericTemplateSender(abc.ABC):

    @abc.abstractmethod
    async def send_generic_template(self, conversation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """payload is the template payload plus is_template_message/template_type."""
        ...


class ChatHistory(abc.ABC):

    @abc.abstractmethod
    async def fetch_messages(self, conversation_id: str) -> list[ChatMessage]:
        """Messages for the conversation, oldest first. Raises ConversationNotFound."""
        ...

    @abc.abstractmethod
    async def fetch_user_details(self, conversation_id: str) -> Optional[UserDetails]:
        ...
