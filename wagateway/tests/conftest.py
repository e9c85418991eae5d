from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from wagateway.auth import CredentialDirectory, Identity
from wagateway.events import EventIngestion
from wagateway.models import GroupSummary
from wagateway.protocol import ConnectedIdentity, ProtocolClient, SendResult
from wagateway.registry import SessionRegistry
from wagateway.store import FileUserStore
from wagateway.webhooks import WebhookDispatcher


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeProtocolClient(ProtocolClient):
    """In-memory protocol client; tests drive events through ``emit``/``feed``."""

    def __init__(
        self,
        user_id: str,
        sink,
        *,
        identity: Optional[ConnectedIdentity] = None,
        pairing_code: str = "ABCD-1234",
        connect_error: Optional[Exception] = None,
        connect_gate: Optional[asyncio.Event] = None,
        linked: bool = False,
    ) -> None:
        super().__init__(user_id, sink)
        self.identity_on_connect = identity
        self.pairing_code = pairing_code
        self.connect_error = connect_error
        self.connect_gate = connect_gate
        self.linked = linked
        self.calls: List[str] = []
        self.sent: List[tuple[str, str]] = []
        self.send_error: Optional[Exception] = None
        self.send_gate: Optional[asyncio.Event] = None
        self.groups: List[GroupSummary] = [
            GroupSummary(id="120363000000000001@g.us", name="Family", participant_count=4),
        ]

    async def has_session(self) -> bool:
        return self.linked

    async def connect(self) -> Optional[ConnectedIdentity]:
        self.calls.append("connect")
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True
        return self.identity_on_connect

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self._connected = False

    async def logout(self) -> None:
        self.calls.append("logout")
        self._connected = False

    async def request_pairing_code(self, phone: str) -> str:
        self.calls.append(f"pair:{phone}")
        return self.pairing_code

    async def send_message(self, jid: str, body: str) -> SendResult:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, body))
        return SendResult(id=f"out-{len(self.sent)}", timestamp=1_700_000_000)

    async def list_groups(self) -> List[GroupSummary]:
        self.calls.append("list_groups")
        return list(self.groups)

    async def join_group(self, code: str) -> str:
        self.calls.append(f"join:{code}")
        return "120363000000000002@g.us"

    async def leave_group(self, group_id: str) -> None:
        self.calls.append(f"leave:{group_id}")

    async def add_participants(self, group_id: str, jids: List[str]) -> Dict[str, Any]:
        self.calls.append(f"add:{group_id}")
        return {"added": jids}


class FakeClientFactory:
    def __init__(self) -> None:
        self.clients: List[FakeProtocolClient] = []
        self.options: Dict[str, Any] = {}
        self.closed = False

    def __call__(self, user_id: str, sink) -> FakeProtocolClient:
        client = FakeProtocolClient(user_id, sink, **self.options)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeProtocolClient:
        return self.clients[-1]

    async def aclose(self) -> None:
        self.closed = True


class StubCredentials(CredentialDirectory):
    def __init__(self, tokens: Optional[Dict[str, Identity]] = None) -> None:
        self.tokens = dict(tokens or {})

    def verify_token(self, token: str | None) -> Optional[Identity]:
        if not token:
            return None
        return self.tokens.get(token)

    def user_exists_any(self) -> bool:
        return bool(self.tokens)


class WebhookRecorder:
    """MockTransport handler collecting webhook POSTs; URLs in ``failing`` error out."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.failing: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) in self.failing:
            raise httpx.ConnectError("connection refused", request=request)
        self.requests.append(request)
        return httpx.Response(200, json={"ok": True})

    def urls(self) -> List[str]:
        return [str(request.url) for request in self.requests]


@pytest.fixture
def fake_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def webhook_recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def gateway(tmp_path: Path, fake_factory: FakeClientFactory, webhook_recorder: WebhookRecorder):
    store = FileUserStore(tmp_path)
    dispatcher = WebhookDispatcher(
        store,
        http=httpx.AsyncClient(transport=httpx.MockTransport(webhook_recorder)),
    )
    ingestion = EventIngestion(store, dispatcher)
    registry = SessionRegistry(store, ingestion, fake_factory)
    return SimpleNamespace(
        store=store,
        dispatcher=dispatcher,
        ingestion=ingestion,
        registry=registry,
        factory=fake_factory,
        webhooks=webhook_recorder,
        data_dir=tmp_path,
    )


@pytest.fixture
def settle():
    async def _settle(handle, rounds: int = 5) -> None:
        task = handle.exchange_task
        if task is not None and not task.done():
            await task
        for _ in range(rounds):
            await asyncio.sleep(0)
        refresh = handle._refresh_task
        if refresh is not None and not refresh.done():
            await refresh

    return _settle


@pytest.fixture
def credentials() -> StubCredentials:
    return StubCredentials()
