"""
Chat API client — REST implementation of every dispatcher collaborator.

Endpoints (configurable in settings.yaml under api.endpoints):
  GET  /chat/detail/{conversation_id}     message history + contact fields
  POST /chat/sendmsg/{conversation_id}    free-form send (multipart form)
  POST /chat/template/{conversation_id}   dedicated template endpoint (JSON)

HTTP status mapping:
  401/403              → AuthRequired
  404/405/501 from     → TemplateRejected (endpoint unavailable, the
    /chat/template       dispatcher falls back to the generic endpoint)
  other 404            → ConversationNotFound
  408/429/5xx, network → TransportFailure
  other 4xx            → TemplateRejected on template endpoints,
                         non-retryable DispatchError otherwise

Reads retry transport failures with tenacity. Sends are never retried
here; retries belong to the follow-up scheduler.
"""
from __future__ import annotations

import json
import time
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    CHAT_HISTORY, DIRECT_SEND, GENERIC_ENDPOINT, TEMPLATE_ENDPOINT,
    AuthRequired, ChatHistory, ConversationNotFound, DirectSender, DispatchError,
    GenericTemplateSender, TemplateRejected, TemplateSender, TransportFailure,
)
from config.settings import APIConfig, get_settings
from models.schemas import Attachment, ChatMessage, MessageDirection, UserDetails, as_utc

logger = structlog.get_logger()

# Statuses meaning the dedicated template endpoint is not deployed
_ENDPOINT_UNAVAILABLE = (404, 405, 501)


def detect_message_type(attachments: list[Attachment]) -> str:
    """Message type the backend expects, from the first attachment's MIME type."""
    if not attachments:
        return "text"
    mime = (attachments[0].content_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if "pdf" in mime or "document" in mime or "text" in mime:
        return "document"
    return "file"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings and epoch seconds/milliseconds. Naive → UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    return as_utc(dt)


def _is_inbound(raw: dict[str, Any]) -> bool:
    flag = raw.get("is_incoming_message")
    if flag is not None:
        return str(flag) in ("1", "true", "True")
    return raw.get("sender") == "received" or raw.get("direction") == "inbound"


def _raise_for_status(response: httpx.Response, collaborator: str, template: bool = False) -> None:
    code = response.status_code
    if code < 400:
        return
    detail = response.text[:200]
    message = f"{collaborator} returned HTTP {code}: {detail}"
    if code in (401, 403):
        raise AuthRequired(message, collaborator=collaborator, status_code=code)
    if collaborator == TEMPLATE_ENDPOINT and code in _ENDPOINT_UNAVAILABLE:
        raise TemplateRejected(message, collaborator=collaborator, status_code=code)
    if code == 404:
        raise ConversationNotFound(message, collaborator=collaborator, status_code=code)
    if code in (408, 429) or code >= 500:
        raise TransportFailure(message, collaborator=collaborator, status_code=code)
    if template:
        raise TemplateRejected(message, collaborator=collaborator, status_code=code)
    raise DispatchError(message, collaborator=collaborator, retryable=False, status_code=code)


def _response_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"status_code": response.status_code, "body": response.text}
    if isinstance(body, dict):
        return body
    return {"status_code": response.status_code, "data": body}


class ChatAPIClient(DirectSender, TemplateSender, GenericTemplateSender, ChatHistory):
    """
    Talks to the CRM chat backend over httpx.

    Pass transport=httpx.MockTransport(...) in tests.
    """

    def __init__(
        self,
        config: APIConfig = None,
        transport: httpx.AsyncBaseTransport = None,
        read_attempts: int = 3,
        read_wait=None,
        detail_reuse_seconds: float = 5.0,
    ):
        self.config = config or get_settings().api
        self._transport = transport
        self._read_attempts = read_attempts
        self._read_wait = read_wait or wait_exponential(multiplier=1, max=10)
        self.detail_reuse_seconds = detail_reuse_seconds
        # conversation_id → (monotonic fetch time, chat detail body)
        self._recent_details: dict[str, tuple[float, dict[str, Any]]] = {}
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Accept": "application/json"}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    def _url(self, endpoint: str, conversation_id: str) -> str:
        template = self.config.endpoints.get(endpoint, endpoint)
        return template.replace("{conversation_id}", quote(conversation_id, safe=""))

    async def _request(self, method: str, url: str, collaborator: str,
                       template: bool = False, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportFailure(f"{collaborator} timed out: {e}", collaborator=collaborator) from e
        except httpx.TransportError as e:
            raise TransportFailure(f"{collaborator} unreachable: {e}", collaborator=collaborator) from e
        _raise_for_status(response, collaborator, template=template)
        return response

    async def _get_json(self, url: str, collaborator: str) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransportFailure),
            stop=stop_after_attempt(self._read_attempts),
            wait=self._read_wait,
            reraise=True,
        ):
            with attempt:
                response = await self._request("GET", url, collaborator)
                return _response_body(response)

    # ── Chat history ──────────────────────────────────────────

    async def _fetch_detail(self, conversation_id: str) -> dict[str, Any]:
        """
        GET the chat detail. A body fetched within detail_reuse_seconds is
        handed out once more instead of fetching again, so the history read
        and the contact read of one template send share a single request.
        """
        recent = self._recent_details.pop(conversation_id, None)
        if recent is not None and time.monotonic() - recent[0] < self.detail_reuse_seconds:
            return recent[1]

        body = await self._get_json(self._url("chat_detail", conversation_id), CHAT_HISTORY)
        if body.get("requiresAuth"):
            raise AuthRequired(body.get("message", "Authentication required"),
                               collaborator=CHAT_HISTORY)
        if body.get("status") is False:
            raise ConversationNotFound(
                body.get("message", f"No chat detail for {conversation_id}"),
                collaborator=CHAT_HISTORY,
            )
        now = time.monotonic()
        self._recent_details = {
            cid: entry for cid, entry in self._recent_details.items()
            if now - entry[0] < self.detail_reuse_seconds
        }
        self._recent_details[conversation_id] = (now, body)
        return body

    async def fetch_messages(self, conversation_id: str) -> list[ChatMessage]:
        body = await self._fetch_detail(conversation_id)
        raw_messages = body.get("messages")
        if raw_messages is None and isinstance(body.get("data"), list):
            raw_messages = body["data"]

        messages = []
        for raw in raw_messages or []:
            ts = parse_timestamp(raw.get("created_at") or raw.get("timestamp") or raw.get("updated_at"))
            if ts is None:
                logger.debug("chat_message_skipped_no_timestamp",
                             conversation_id=conversation_id, message_id=raw.get("id"))
                continue
            messages.append(ChatMessage(
                id=str(raw.get("id", "")),
                text=raw.get("message") or raw.get("text") or "",
                direction=MessageDirection.INBOUND if _is_inbound(raw) else MessageDirection.OUTBOUND,
                timestamp=ts,
                message_type=raw.get("message_type") or "text",
            ))
        messages.sort(key=lambda m: m.timestamp)
        return messages

    async def fetch_user_details(self, conversation_id: str) -> Optional[UserDetails]:
        body = await self._fetch_detail(conversation_id)
        contact = body.get("contact")
        if not isinstance(contact, dict):
            contact = body.get("data") if isinstance(body.get("data"), dict) else body

        name = contact.get("name") or contact.get("contact_name")
        return UserDetails(
            name=name or "Valued Customer",
            last_activity=parse_timestamp(contact.get("last_message_time")),
            phone=contact.get("phone") or contact.get("contact_phone"),
        )

    # ── Sends ─────────────────────────────────────────────────

    async def send(
        self,
        conversation_id: str,
        text: str,
        attachments: list[Attachment],
        ai_enabled: bool,
    ) -> dict[str, Any]:
        data = {
            "message": (text or "").strip(),
            "message_type": detect_message_type(attachments),
            "enable_ai_bot": "1" if ai_enabled else "0",
        }
        files = [
            ("files[]", (a.filename, a.data, a.content_type)) for a in attachments or []
        ]
        response = await self._request(
            "POST", self._url("send_message", conversation_id), DIRECT_SEND,
            data=data, files=files or None,
        )
        logger.info("direct_message_posted",
                    conversation_id=conversation_id,
                    message_type=data["message_type"],
                    attachments=len(files))
        return _response_body(response)

    async def send_template(self, conversation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST", self._url("send_template", conversation_id), TEMPLATE_ENDPOINT,
            template=True, json=payload,
        )
        return _response_body(response)

    async def send_generic_template(self, conversation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = {
            "message": json.dumps(payload),
            "message_type": "template",
            "enable_ai_bot": "0",
        }
        response = await self._request(
            "POST", self._url("send_message", conversation_id), GENERIC_ENDPOINT,
            template=True, data=data,
        )
        return _response_body(response)

    async def close(self):
        if self.client:
            await self.client.aclose()
