"""Dispatcher collaborators: error taxonomy, interfaces and the REST client."""
from channels.base import (
    AuthRequired,
    ChatHistory,
    ConversationNotFound,
    DirectSender,
    DispatchError,
    GenericTemplateSender,
    TemplateDispatchError,
    TemplateRejected,
    TemplateSender,
    TransportFailure,
)
from channels.chat_api import ChatAPIClient, detect_message_type, parse_timestamp

__all__ = [
    "DispatchError", "AuthRequired", "TransportFailure", "TemplateRejected",
    "ConversationNotFound", "TemplateDispatchError",
    "DirectSender", "TemplateSender", "GenericTemplateSender", "ChatHistory",
    "ChatAPIClient", "detect_message_type", "parse_timestamp",
]
