from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .metrics import MESSAGES_RECEIVED_TOTAL, MESSAGES_SENT_TOTAL
from .models import Message
from .protocol import GROUP_SUFFIX, MEDIA_PLACEHOLDER
from .store import UserStore, validate_user_id
from .webhooks import WebhookDispatcher

if TYPE_CHECKING:  # pragma: no cover
    from .registry import SessionRegistry


LOGGER = logging.getLogger("wagateway.events")

_TEXT_TYPES = {"", "chat", "text", "conversation", "extendedtext"}


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def normalize_inbound(user_id: str, raw: Mapping[str, Any]) -> Message:
    """Turn a raw inbound protocol event into a received :class:`Message`."""

    sender = str(raw.get("from") or raw.get("sender") or "").strip()
    chat = str(raw.get("chat") or "").strip()
    is_group = _truthy(raw.get("isGroup")) or chat.endswith(GROUP_SUFFIX) or sender.endswith(GROUP_SUFFIX)

    kind = str(raw.get("type") or "").strip().lower()
    text = raw.get("body")
    if not isinstance(text, str) or not text:
        text = raw.get("text")
    if kind not in _TEXT_TYPES or not isinstance(text, str) or not text:
        text = MEDIA_PLACEHOLDER

    contact = raw.get("pushName") or raw.get("notifyName") or ""
    if not contact:
        contact = sender.split("@", 1)[0]

    group_name: Optional[str] = None
    if is_group:
        group_name = str(raw.get("groupName") or raw.get("chatName") or chat or sender)

    data: Dict[str, Any] = {
        "id": str(raw.get("id") or "").strip() or secrets.token_hex(8),
        "from": sender,
        "to": str(raw.get("to") or user_id),
        "body": text,
        "direction": "received",
        "isGroup": is_group,
        "groupName": group_name,
        "contactName": str(contact),
    }
    if raw.get("timestamp") is not None:
        data["timestamp"] = raw["timestamp"]
    return Message.model_validate(data)


class EventIngestion:
    """Persist protocol events and hand received messages to the dispatcher."""

    def __init__(self, store: UserStore, dispatcher: WebhookDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._registry: Optional["SessionRegistry"] = None

    def bind(self, registry: "SessionRegistry") -> None:
        self._registry = registry

    async def on_inbound_message(self, user_id: str, raw: Mapping[str, Any]) -> Optional[Message]:
        validate_user_id(user_id)
        if _truthy(raw.get("fromMe")):
            LOGGER.debug("stage=incoming_skip user_id=%s reason=from_me", user_id)
            return None
        message = normalize_inbound(user_id, raw)
        await self._store.record_message(user_id, message, "messagesReceived")
        MESSAGES_RECEIVED_TOTAL.inc()
        LOGGER.info(
            "stage=incoming user_id=%s message_id=%s is_group=%s",
            user_id,
            message.id,
            message.is_group,
        )
        self._dispatcher.dispatch(user_id, message)
        return message

    async def on_outbound_sent(self, user_id: str, message: Message) -> None:
        validate_user_id(user_id)
        await self._store.record_message(user_id, message, "messagesSent")
        MESSAGES_SENT_TOTAL.inc()

    async def on_connection_event(
        self,
        user_id: str,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._registry is None:
            raise RuntimeError("event ingestion is not bound to a session registry")
        handle = await self._registry.get_or_create(user_id)
        await handle.apply_connection_event(kind, payload or {})


__all__ = ["EventIngestion", "normalize_inbound"]
