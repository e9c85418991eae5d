"""Protocol-client contract and the HTTP sidecar implementation.

The device connection itself lives in a sidecar process (``waweb``). The
gateway drives it over HTTP and receives its events back on
``/events/{user_id}``; every event is funnelled through
:meth:`ProtocolClient.feed` into the owning session's sink.
"""
from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from .errors import ConnectionLostError, ProtocolError
from .models import GroupSummary


LOGGER = logging.getLogger("wagateway.protocol")

USER_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
INVITE_PREFIXES = ("https://chat.whatsapp.com/", "http://chat.whatsapp.com/")
MEDIA_PLACEHOLDER = "Media/Other Message"


class EventKind:
    MESSAGE_RECEIVED = "message-received"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged-out"
    PAIR_SUCCESS = "pair-success"
    QR_CODE = "qr-code"


EVENT_KINDS = frozenset(
    {
        EventKind.MESSAGE_RECEIVED,
        EventKind.CONNECTED,
        EventKind.DISCONNECTED,
        EventKind.LOGGED_OUT,
        EventKind.PAIR_SUCCESS,
        EventKind.QR_CODE,
    }
)


def user_jid(number: str) -> str:
    cleaned = (number or "").strip()
    if "@" in cleaned:
        return cleaned
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        raise ValueError("number is required")
    return f"{digits}{USER_SUFFIX}"


def group_jid(group_id: str) -> str:
    cleaned = (group_id or "").strip()
    if not cleaned:
        raise ValueError("groupId is required")
    if "@" in cleaned:
        return cleaned
    return f"{cleaned}{GROUP_SUFFIX}"


def invite_code(link: str) -> str:
    cleaned = (link or "").strip()
    for prefix in INVITE_PREFIXES:
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    cleaned = cleaned.strip("/")
    if not cleaned:
        raise ValueError("inviteLink is required")
    return cleaned


@dataclass(frozen=True, slots=True)
class ProtocolEvent:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ProtocolEvent":
        kind = str(data.get("event") or data.get("kind") or "").strip().lower().replace("_", "-")
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind or '<empty>'}")
        payload = data.get("data")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError("event data must be an object")
        return cls(kind=kind, payload=dict(payload))


@dataclass(frozen=True, slots=True)
class ConnectedIdentity:
    pushname: str = ""
    phone: str = ""
    platform: str = ""

    @classmethod
    def from_payload(cls, data: Mapping[str, Any] | None) -> "ConnectedIdentity":
        data = data or {}
        phone = str(data.get("phone") or data.get("wid") or data.get("id") or "")
        if "@" in phone:
            phone = phone.split("@", 1)[0].split(":", 1)[0]
        return cls(
            pushname=str(data.get("pushname") or data.get("pushName") or ""),
            phone=phone,
            platform=str(data.get("platform") or ""),
        )

    def to_payload(self) -> Dict[str, str]:
        return {"pushname": self.pushname, "phone": self.phone, "platform": self.platform}


@dataclass(frozen=True, slots=True)
class SendResult:
    id: str = ""
    timestamp: Any = None


EventSink = Callable[["ProtocolClient", ProtocolEvent], Awaitable[None]]
ClientFactory = Callable[[str, EventSink], "ProtocolClient"]


class ProtocolClient(abc.ABC):
    """One user's link to the messaging network."""

    def __init__(self, user_id: str, sink: EventSink) -> None:
        self.user_id = user_id
        self._sink = sink
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def emit(self, event: ProtocolEvent) -> None:
        if event.kind == EventKind.CONNECTED:
            self._connected = True
        elif event.kind in (EventKind.DISCONNECTED, EventKind.LOGGED_OUT):
            self._connected = False
        await self._sink(self, event)

    async def feed(self, data: Mapping[str, Any]) -> ProtocolEvent:
        event = ProtocolEvent.from_payload(data)
        await self.emit(event)
        return event

    async def has_session(self) -> bool:
        return False

    @abc.abstractmethod
    async def connect(self) -> Optional[ConnectedIdentity]:
        """Open the link; returns the identity when the device is already paired."""

    @abc.abstractmethod
    async def disconnect(self) -> None: ...

    @abc.abstractmethod
    async def logout(self) -> None: ...

    @abc.abstractmethod
    async def request_pairing_code(self, phone: str) -> str: ...

    @abc.abstractmethod
    async def send_message(self, jid: str, body: str) -> SendResult: ...

    @abc.abstractmethod
    async def list_groups(self) -> List[GroupSummary]: ...

    @abc.abstractmethod
    async def join_group(self, code: str) -> str: ...

    @abc.abstractmethod
    async def leave_group(self, group_id: str) -> None: ...

    @abc.abstractmethod
    async def add_participants(self, group_id: str, jids: List[str]) -> Dict[str, Any]: ...


def _group_from_payload(item: Mapping[str, Any]) -> Optional[GroupSummary]:
    group_id = str(item.get("id") or item.get("jid") or "").strip()
    if not group_id:
        return None
    participants = item.get("participantCount")
    if participants is None:
        members = item.get("participants")
        participants = len(members) if isinstance(members, list) else 0
    return GroupSummary(
        id=group_id,
        name=str(item.get("name") or item.get("subject") or ""),
        participant_count=int(participants or 0),
        is_read_only=bool(item.get("isReadOnly") or item.get("announce") or False),
    )


class WawebClient(ProtocolClient):
    """Drive a device session held by the ``waweb`` sidecar."""

    def __init__(
        self,
        user_id: str,
        sink: EventSink,
        *,
        http: httpx.AsyncClient,
        base_url: str,
        callback_url: str,
        token: str | None = None,
    ) -> None:
        super().__init__(user_id, sink)
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._token = token

    def _url(self, path: str) -> str:
        return f"{self._base_url}/session/{quote(self.user_id, safe='')}{path}"

    @staticmethod
    def _error_text(response: httpx.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            return str(data.get("error") or data.get("detail") or default)
        return default

    async def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self._token:
            headers["X-Auth-Token"] = self._token
        try:
            response = await self._http.request(method, self._url(path), json=payload, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "stage=sidecar_unreachable user_id=%s path=%s error=%s", self.user_id, path, exc
            )
            raise ProtocolError(f"sidecar unreachable: {exc}") from exc
        if response.status_code in (409, 410):
            self._connected = False
            raise ConnectionLostError(self._error_text(response, "not_connected"))
        if response.status_code >= 400:
            raise ProtocolError(self._error_text(response, f"sidecar_http_{response.status_code}"))
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"items": data}

    async def has_session(self) -> bool:
        data = await self._request("GET", "/status")
        return bool(data.get("registered"))

    async def connect(self) -> Optional[ConnectedIdentity]:
        data = await self._request("POST", "/start", {"webhook_url": self._callback_url})
        self._connected = True
        me = data.get("me")
        if data.get("connected") and isinstance(me, Mapping):
            return ConnectedIdentity.from_payload(me)
        return None

    async def disconnect(self) -> None:
        self._connected = False
        await self._request("POST", "/stop")

    async def logout(self) -> None:
        self._connected = False
        await self._request("POST", "/logout")

    async def request_pairing_code(self, phone: str) -> str:
        digits = re.sub(r"\D", "", phone or "")
        if not digits:
            raise ProtocolError("invalid phone number")
        data = await self._request("POST", "/pair", {"phone": digits})
        code = str(data.get("code") or "").strip()
        if not code:
            raise ProtocolError("pairing code missing from sidecar response")
        return code

    async def send_message(self, jid: str, body: str) -> SendResult:
        data = await self._request("POST", "/send", {"to": jid, "text": body})
        return SendResult(id=str(data.get("id") or ""), timestamp=data.get("timestamp"))

    async def list_groups(self) -> List[GroupSummary]:
        data = await self._request("GET", "/groups")
        items = data.get("groups") or data.get("items") or []
        groups: List[GroupSummary] = []
        for item in items:
            if isinstance(item, Mapping):
                group = _group_from_payload(item)
                if group is not None:
                    groups.append(group)
        return groups

    async def join_group(self, code: str) -> str:
        data = await self._request("POST", "/groups/join", {"code": code})
        return str(data.get("groupId") or data.get("gid") or "")

    async def leave_group(self, group_id: str) -> None:
        await self._request("POST", f"/groups/{quote(group_id, safe='@.')}/leave")

    async def add_participants(self, group_id: str, jids: List[str]) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/groups/{quote(group_id, safe='@.')}/participants",
            {"participants": jids},
        )


class WawebClientFactory:
    """Build :class:`WawebClient` instances sharing one HTTP connection pool."""

    def __init__(
        self,
        *,
        base_url: str,
        callback_base: str,
        token: str | None = None,
        timeout: float = 15.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._callback_base = callback_base.rstrip("/")
        self._token = token
        self._http = http or httpx.AsyncClient(timeout=timeout)

    def __call__(self, user_id: str, sink: EventSink) -> WawebClient:
        return WawebClient(
            user_id,
            sink,
            http=self._http,
            base_url=self._base_url,
            callback_url=f"{self._callback_base}/events/{user_id}",
            token=self._token,
        )

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = [
    "EventKind",
    "EVENT_KINDS",
    "ProtocolEvent",
    "ConnectedIdentity",
    "SendResult",
    "EventSink",
    "ClientFactory",
    "ProtocolClient",
    "WawebClient",
    "WawebClientFactory",
    "MEDIA_PLACEHOLDER",
    "user_jid",
    "group_jid",
    "invite_code",
]
