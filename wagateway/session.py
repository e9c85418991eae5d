"""Per-user connection state machine.

A :class:`SessionHandle` owns one user's protocol client, the background
credential exchange and the renderable status. Status changes replace an
immutable :class:`SessionState` in a single assignment, so readers always
see a consistent combination of fields.
"""
from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import qrcode

from .errors import ConnectionLostError, CredentialExchangeError, NotConnectedError, ProtocolError
from .events import EventIngestion
from .metrics import EVENT_ERRORS, STATE_TRANSITIONS_TOTAL
from .models import GroupSummary, Message, utc_now_iso
from .protocol import (
    ConnectedIdentity,
    EventKind,
    EventSink,
    ProtocolClient,
    ProtocolEvent,
    group_jid,
    invite_code,
    user_jid,
)
from .store import UserStore


LOGGER = logging.getLogger("wagateway")

T = TypeVar("T")

DISCONNECTED = "disconnected"
INITIALIZING = "initializing"
QR = "qr"
PAIRING_CODE = "pairing_code"
READY = "ready"
ERROR = "error"
STATUSES = (DISCONNECTED, INITIALIZING, QR, PAIRING_CODE, READY, ERROR)
CONNECT_METHODS = (QR, PAIRING_CODE)

PHONE_REQUIRED_ERROR = "Phone number is required for pairing code"
_MIN_PHONE_DIGITS = 7

ClientBuilder = Callable[[EventSink], ProtocolClient]


@dataclass(frozen=True, slots=True)
class CredentialArtifact:
    kind: str
    value: str


@dataclass(frozen=True, slots=True)
class SessionState:
    status: str = DISCONNECTED
    credential_artifact: Optional[CredentialArtifact] = None
    connected_identity: Optional[ConnectedIdentity] = None
    last_error: Optional[str] = None
    changed_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.status not in STATUSES:
            raise ValueError(f"unknown status: {self.status}")
        if self.credential_artifact is not None and self.status not in (QR, PAIRING_CODE):
            raise ValueError("credential artifact outside a credential exchange")
        if self.connected_identity is not None and self.status != READY:
            raise ValueError("connected identity outside ready")
        if self.last_error is not None and self.status != ERROR:
            raise ValueError("last error outside error")

    def to_payload(self) -> Dict[str, Any]:
        artifact = self.credential_artifact
        identity = self.connected_identity.to_payload() if self.connected_identity else None
        return {
            "status": self.status,
            "credentialArtifact": {"kind": artifact.kind, "value": artifact.value} if artifact else None,
            "connectedIdentity": identity,
            "lastError": self.last_error,
            "qr": artifact.value if artifact and artifact.kind == QR else None,
            "pairingCode": artifact.value if artifact and artifact.kind == PAIRING_CODE else None,
            "info": identity,
            "error": self.last_error,
        }


def render_qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=14,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class SessionHandle:
    """One user's session; created and owned by the session registry."""

    def __init__(
        self,
        user_id: str,
        store: UserStore,
        ingestion: EventIngestion,
        *,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._ingestion = ingestion
        self._on_change = on_change
        self._state = SessionState()
        self._client: Optional[ProtocolClient] = None
        self._method: Optional[str] = None
        self._exchange_task: Optional[asyncio.Task[Any]] = None
        self._refresh_task: Optional[asyncio.Task[Any]] = None
        self._groups_stale = True
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._state.status

    @property
    def client(self) -> Optional[ProtocolClient]:
        return self._client

    @property
    def groups_stale(self) -> bool:
        return self._groups_stale

    @property
    def exchange_task(self) -> Optional[asyncio.Task[Any]]:
        return self._exchange_task

    def _transition(
        self,
        status: str,
        *,
        artifact: Optional[CredentialArtifact] = None,
        identity: Optional[ConnectedIdentity] = None,
        error: Optional[str] = None,
        reason: str | None = None,
    ) -> SessionState:
        previous = self._state.status
        self._state = SessionState(
            status=status,
            credential_artifact=artifact,
            connected_identity=identity,
            last_error=error,
        )
        if previous != status:
            LOGGER.info(
                "stage=state_transition user_id=%s from=%s to=%s reason=%s",
                self.user_id,
                previous,
                status,
                reason or "unspecified",
            )
            STATE_TRANSITIONS_TOTAL.labels(status).inc()
        if status == READY and previous != READY:
            self._schedule_group_refresh()
        if previous == READY and status != READY:
            self._groups_stale = True
        if self._on_change is not None:
            self._on_change()
        return self._state

    async def _teardown_client(self, *, reason: str, disconnect_client: bool = True) -> None:
        task = self._exchange_task
        self._exchange_task = None
        client = self._client
        self._client = None

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            LOGGER.info("stage=exchange_cancelled user_id=%s reason=%s", self.user_id, reason)

        if client is not None and disconnect_client:
            try:
                await client.disconnect()
            except Exception as exc:
                LOGGER.warning(
                    "stage=client_disconnect_fail user_id=%s reason=%s error=%s",
                    self.user_id,
                    reason,
                    exc,
                )

    async def connect(
        self,
        build_client: ClientBuilder,
        method: str = QR,
        phone_number: str | None = None,
    ) -> SessionState:
        """Start a fresh credential exchange, replacing any in-flight one.

        Returns once the exchange is running in the background; progress is
        observed through :attr:`state`.
        """

        if method not in CONNECT_METHODS:
            raise ValueError(f"unsupported method: {method}")
        phone_digits = re.sub(r"\D", "", phone_number or "")

        async with self._lock:
            await self._teardown_client(reason="reconnect")
            self._method = method
            self._transition(INITIALIZING, reason=f"connect_{method}")

            if method == PAIRING_CODE:
                if not phone_digits:
                    self._transition(ERROR, error=PHONE_REQUIRED_ERROR, reason="pairing_phone_missing")
                    raise CredentialExchangeError(PHONE_REQUIRED_ERROR)
                if len(phone_digits) < _MIN_PHONE_DIGITS:
                    message = f"Invalid phone number for pairing code: {phone_number}"
                    self._transition(ERROR, error=message, reason="pairing_phone_invalid")
                    raise CredentialExchangeError(message)

            client = build_client(self._on_protocol_event)
            self._client = client
            self._exchange_task = asyncio.create_task(
                self._run_exchange(client, method, phone_digits)
            )
        return self._state

    async def _run_exchange(self, client: ProtocolClient, method: str, phone: str) -> None:
        try:
            identity = await client.connect()
            if client is not self._client:
                return
            if identity is not None:
                self._transition(READY, identity=identity, reason="session_resume")
                return
            if method == PAIRING_CODE:
                code = await client.request_pairing_code(phone)
                if client is not self._client:
                    return
                self._transition(
                    PAIRING_CODE,
                    artifact=CredentialArtifact(PAIRING_CODE, code),
                    reason="pairing_code_issued",
                )
            elif self._state.status == INITIALIZING:
                self._transition(QR, reason="awaiting_qr")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("exchange").inc()
            if isinstance(exc, ProtocolError):
                LOGGER.warning(
                    "stage=exchange_fail user_id=%s method=%s error=%s", self.user_id, method, exc
                )
            else:
                LOGGER.exception("stage=exchange_fail user_id=%s method=%s", self.user_id, method)
            if client is self._client:
                self._transition(
                    ERROR,
                    error=str(exc) or exc.__class__.__name__,
                    reason="exchange_failed",
                )

    async def _on_protocol_event(self, client: ProtocolClient, event: ProtocolEvent) -> None:
        if client is not self._client:
            LOGGER.info("stage=stale_event user_id=%s kind=%s", self.user_id, event.kind)
            return
        try:
            if event.kind == EventKind.MESSAGE_RECEIVED:
                await self._ingestion.on_inbound_message(self.user_id, event.payload)
            else:
                await self._ingestion.on_connection_event(self.user_id, event.kind, event.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            EVENT_ERRORS.labels("event_exception").inc()
            LOGGER.exception(
                "stage=event_handler_error user_id=%s kind=%s", self.user_id, event.kind
            )
            if client is self._client:
                self._transition(
                    ERROR,
                    error=str(exc) or "event_handler_error",
                    reason="event_handler_error",
                )

    async def apply_connection_event(self, kind: str, payload: Dict[str, Any]) -> None:
        if kind == EventKind.CONNECTED:
            me = payload.get("me") if isinstance(payload.get("me"), dict) else payload
            self._transition(READY, identity=ConnectedIdentity.from_payload(me), reason="connected")
        elif kind == EventKind.PAIR_SUCCESS:
            LOGGER.info(
                "stage=pair_success user_id=%s platform=%s",
                self.user_id,
                payload.get("platform") or "unknown",
            )
        elif kind == EventKind.QR_CODE:
            code = str(payload.get("code") or payload.get("qr") or "")
            if not code or self._method != QR or self._state.status not in (INITIALIZING, QR):
                LOGGER.debug("stage=qr_skip user_id=%s status=%s", self.user_id, self._state.status)
                return
            artifact = CredentialArtifact(QR, render_qr_data_url(code))
            self._transition(QR, artifact=artifact, reason="qr_refresh")
        elif kind == EventKind.DISCONNECTED:
            if self._state.status in (DISCONNECTED, ERROR):
                return
            reason = str(payload.get("reason") or "unknown")
            self._transition(ERROR, error=f"Connection lost: {reason}", reason="remote_disconnect")
        elif kind == EventKind.LOGGED_OUT:
            async with self._lock:
                await self._teardown_client(reason="logged_out", disconnect_client=False)
                self._method = None
                self._transition(DISCONNECTED, reason="logged_out")
                await self._store.clear_bot_data(self.user_id)
        else:
            raise ValueError(f"unknown connection event: {kind}")

    async def disconnect(self) -> SessionState:
        """Log the device out, drop the client and reset the user's bot data."""

        async with self._lock:
            # detach first so events raised by the logout are treated as stale
            client = self._client
            self._client = None
            await self._teardown_client(reason="manual_disconnect")
            if client is not None:
                try:
                    await client.logout()
                except Exception as exc:
                    LOGGER.warning("stage=logout_fail user_id=%s error=%s", self.user_id, exc)
                try:
                    await client.disconnect()
                except Exception as exc:
                    LOGGER.warning(
                        "stage=client_disconnect_fail user_id=%s reason=manual_disconnect error=%s",
                        self.user_id,
                        exc,
                    )
            self._method = None
            self._transition(DISCONNECTED, reason="manual_disconnect")
            await self._store.clear_bot_data(self.user_id)
        return self._state

    async def close(self) -> None:
        refresh = self._refresh_task
        self._refresh_task = None
        if refresh is not None and not refresh.done():
            refresh.cancel()
        async with self._lock:
            await self._teardown_client(reason="shutdown")

    def _require_ready(self) -> ProtocolClient:
        client = self._client
        if self._state.status != READY or client is None or not client.is_connected():
            raise NotConnectedError()
        return client

    async def _call(self, stage: str, client: ProtocolClient, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except ConnectionLostError as exc:
            EVENT_ERRORS.labels("connection_lost").inc()
            LOGGER.warning(
                "stage=%s_fail user_id=%s error=%s connection_lost=true", stage, self.user_id, exc
            )
            if client is self._client:
                self._transition(ERROR, error=f"Connection lost: {exc}", reason="connection_lost")
            raise
        except ProtocolError as exc:
            EVENT_ERRORS.labels("protocol").inc()
            LOGGER.warning("stage=%s_fail user_id=%s error=%s", stage, self.user_id, exc)
            raise

    def _still_current(self, client: ProtocolClient, stage: str) -> bool:
        if client is self._client:
            return True
        LOGGER.info("stage=%s_result_dropped user_id=%s reason=client_replaced", stage, self.user_id)
        return False

    def _sent_message(self, result_id: str, result_ts: Any, to: str, body: str, **extra: Any) -> Message:
        data: Dict[str, Any] = {
            "id": result_id or secrets.token_hex(8),
            "from": "me",
            "to": to,
            "body": body,
            "timestamp": result_ts if result_ts is not None else utc_now_iso(),
            "direction": "sent",
        }
        data.update(extra)
        return Message.model_validate(data)

    async def send_message(self, number: str, body: str) -> Message:
        jid = user_jid(number)
        client = self._require_ready()
        result = await self._call("send", client, client.send_message(jid, body))
        message = self._sent_message(
            result.id, result.timestamp, jid, body, isGroup=False, contactName=number
        )
        if not self._still_current(client, "send"):
            return message
        await self._ingestion.on_outbound_sent(self.user_id, message)
        LOGGER.info("stage=send_ok user_id=%s message_id=%s", self.user_id, message.id)
        return message

    async def send_group_message(self, group_id: str, body: str) -> Message:
        jid = group_jid(group_id)
        client = self._require_ready()
        result = await self._call("send_group", client, client.send_message(jid, body))
        record = await self._store.load(self.user_id)
        group_name = next((group.name for group in record.groups if group.id == jid and group.name), jid)
        message = self._sent_message(
            result.id,
            result.timestamp,
            jid,
            body,
            isGroup=True,
            groupName=group_name,
            contactName="Group",
        )
        if not self._still_current(client, "send_group"):
            return message
        await self._ingestion.on_outbound_sent(self.user_id, message)
        LOGGER.info("stage=send_group_ok user_id=%s message_id=%s", self.user_id, message.id)
        return message

    async def join_group(self, invite_link: str) -> str:
        code = invite_code(invite_link)
        client = self._require_ready()
        group_id = await self._call("join_group", client, client.join_group(code))
        if not self._still_current(client, "join_group"):
            return group_id
        await self._store.increment_stat(self.user_id, "groupsJoined")
        self._groups_stale = True
        LOGGER.info("stage=group_joined user_id=%s group_id=%s", self.user_id, group_id)
        return group_id

    async def leave_group(self, group_id: str) -> None:
        jid = group_jid(group_id)
        client = self._require_ready()
        await self._call("leave_group", client, client.leave_group(jid))
        if not self._still_current(client, "leave_group"):
            return
        await self._store.increment_stat(self.user_id, "groupsLeft")
        self._groups_stale = True
        LOGGER.info("stage=group_left user_id=%s group_id=%s", self.user_id, jid)

    async def add_participants(self, group_id: str, participants: List[str]) -> Dict[str, Any]:
        jid = group_jid(group_id)
        jids = [user_jid(number) for number in participants if str(number).strip()]
        if not jids:
            raise ValueError("participants are required")
        client = self._require_ready()
        result = await self._call("add_participants", client, client.add_participants(jid, jids))
        self._groups_stale = True
        return result

    async def refresh_groups(self) -> List[GroupSummary]:
        client = self._require_ready()
        groups = await self._call("list_groups", client, client.list_groups())
        await self._store.replace_groups(self.user_id, groups)
        if client is self._client and self._state.status == READY:
            self._groups_stale = False
        LOGGER.info("stage=groups_refreshed user_id=%s count=%s", self.user_id, len(groups))
        return groups

    def _schedule_group_refresh(self) -> None:
        previous = self._refresh_task
        if previous is not None and not previous.done():
            previous.cancel()
        self._refresh_task = asyncio.create_task(self._refresh_groups_quietly())

    async def _refresh_groups_quietly(self) -> None:
        try:
            await self.refresh_groups()
        except asyncio.CancelledError:
            raise
        except NotConnectedError:
            LOGGER.info("stage=groups_refresh_skip user_id=%s status=%s", self.user_id, self.status)
        except Exception as exc:
            LOGGER.warning("stage=groups_refresh_fail user_id=%s error=%s", self.user_id, exc)


__all__ = [
    "STATUSES",
    "CONNECT_METHODS",
    "DISCONNECTED",
    "INITIALIZING",
    "QR",
    "PAIRING_CODE",
    "READY",
    "ERROR",
    "PHONE_REQUIRED_ERROR",
    "CredentialArtifact",
    "SessionState",
    "SessionHandle",
    "render_qr_data_url",
]
