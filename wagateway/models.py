"""Record schema persisted per user and served over the API."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, model_validator


MESSAGE_LIMIT = 500
STAT_FIELDS = ("messagesSent", "messagesReceived", "groupsJoined", "groupsLeft")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _timestamp_to_iso(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 10_000_000_000:
            seconds /= 1000.0
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return value


class _AliasModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(_AliasModel):
    id: str = Field(..., min_length=1)
    from_: str = Field(..., alias="from")
    to: str
    body: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
    direction: Literal["sent", "received"]
    is_group: bool = Field(default=False, alias="isGroup")
    group_name: str | None = Field(default=None, alias="groupName")
    contact_name: str | None = Field(default=None, alias="contactName")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, values: Any) -> Any:
        if not isinstance(values, Mapping):
            return values
        data = dict(values)
        # records written before the direction field existed use "type"
        if "direction" not in data and data.get("type") in ("sent", "received"):
            data["direction"] = data.pop("type")
        if "timestamp" in data:
            data["timestamp"] = _timestamp_to_iso(data["timestamp"])
        if data.get("body") is None:
            data["body"] = ""
        return data

    @model_validator(mode="after")
    def _group_name_only_for_groups(self) -> "Message":
        if not self.is_group:
            self.group_name = None
        elif not self.group_name:
            self.group_name = self.to if self.direction == "sent" else self.from_
        return self


class GroupSummary(_AliasModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    participant_count: int = Field(default=0, ge=0, alias="participantCount")
    is_read_only: bool = Field(default=False, alias="isReadOnly")


class Webhook(_AliasModel):
    id: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    name: str = ""
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")

    @model_validator(mode="after")
    def _default_name(self) -> "Webhook":
        if not self.name:
            self.name = self.url
        return self


class UserStats(_AliasModel):
    messages_sent: int = Field(default=0, ge=0, alias="messagesSent")
    messages_received: int = Field(default=0, ge=0, alias="messagesReceived")
    groups_joined: int = Field(default=0, ge=0, alias="groupsJoined")
    groups_left: int = Field(default=0, ge=0, alias="groupsLeft")

    def increment(self, key: str, amount: int = 1) -> int:
        field_name = _STAT_ATTRS.get(key)
        if field_name is None:
            raise ValueError(f"unknown stat: {key}")
        value = getattr(self, field_name) + amount
        setattr(self, field_name, value)
        return value


_STAT_ATTRS = {
    "messagesSent": "messages_sent",
    "messagesReceived": "messages_received",
    "groupsJoined": "groups_joined",
    "groupsLeft": "groups_left",
}


class UserRecord(_AliasModel):
    messages: List[Message] = Field(default_factory=list)
    groups: List[GroupSummary] = Field(default_factory=list)
    webhooks: List[Webhook] = Field(default_factory=list)
    stats: UserStats = Field(default_factory=UserStats)

    @model_validator(mode="before")
    @classmethod
    def _no_null_collections(cls, values: Any) -> Any:
        if not isinstance(values, Mapping):
            return values
        data = dict(values)
        for key in ("messages", "groups", "webhooks"):
            if data.get(key) is None:
                data[key] = []
        if data.get("stats") is None:
            data["stats"] = {}
        return data

    def append_message(self, message: Message) -> None:
        self.messages.append(message)
        overflow = len(self.messages) - MESSAGE_LIMIT
        if overflow > 0:
            del self.messages[:overflow]

    def recent_messages(self, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        return list(reversed(self.messages[-limit:]))

    def find_webhook(self, url: str) -> Webhook | None:
        for hook in self.webhooks:
            if hook.url == url:
                return hook
        return None

    def clear_bot_data(self) -> None:
        self.messages = []
        self.webhooks = []
        self.stats = UserStats()

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


__all__ = [
    "MESSAGE_LIMIT",
    "STAT_FIELDS",
    "Message",
    "GroupSummary",
    "Webhook",
    "UserStats",
    "UserRecord",
    "utc_now_iso",
]
