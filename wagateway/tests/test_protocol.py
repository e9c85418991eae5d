from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from wagateway.errors import ConnectionLostError, ProtocolError
from wagateway.protocol import (
    ConnectedIdentity,
    EventKind,
    ProtocolEvent,
    WawebClientFactory,
    group_jid,
    invite_code,
    user_jid,
)


def test_address_helpers():
    assert user_jid("+254 700-000-000") == "254700000000@s.whatsapp.net"
    assert user_jid("254700000000@c.us") == "254700000000@c.us"
    assert group_jid("120363000000000001") == "120363000000000001@g.us"
    assert group_jid("120363000000000001@g.us") == "120363000000000001@g.us"
    assert invite_code("https://chat.whatsapp.com/AbC123") == "AbC123"
    assert invite_code("AbC123") == "AbC123"
    with pytest.raises(ValueError):
        user_jid("   ")
    with pytest.raises(ValueError):
        invite_code("https://chat.whatsapp.com/")


def test_protocol_event_parsing():
    event = ProtocolEvent.from_payload({"event": "logged_out", "data": {"reason": "x"}})
    assert event.kind == EventKind.LOGGED_OUT
    assert event.payload == {"reason": "x"}

    with pytest.raises(ValueError):
        ProtocolEvent.from_payload({"event": "typing"})
    with pytest.raises(ValueError):
        ProtocolEvent.from_payload({"event": "connected", "data": ["not", "a", "dict"]})


def test_connected_identity_strips_device_suffix():
    identity = ConnectedIdentity.from_payload({"wid": "254700000000:12@s.whatsapp.net", "pushName": "Bot"})
    assert identity.phone == "254700000000"
    assert identity.pushname == "Bot"


class _Sidecar:
    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responses: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = f"{request.method} {request.url.path}"
        return self.responses.get(key, httpx.Response(200, json={}))


def _factory(sidecar: _Sidecar) -> WawebClientFactory:
    return WawebClientFactory(
        base_url="http://waweb:9001/",
        callback_base="http://app:3000",
        token="secret-token",
        http=httpx.AsyncClient(transport=httpx.MockTransport(sidecar)),
    )


async def _no_events(client, event) -> None:
    return None


@pytest.mark.anyio
async def test_waweb_connect_registers_callback_and_returns_identity():
    sidecar = _Sidecar()
    sidecar.responses["POST /session/abc-123/start"] = httpx.Response(
        200, json={"connected": True, "me": {"pushname": "Bot", "phone": "254700000000", "platform": "android"}}
    )
    factory = _factory(sidecar)
    client = factory("abc-123", _no_events)

    identity = await client.connect()

    assert identity == ConnectedIdentity(pushname="Bot", phone="254700000000", platform="android")
    assert client.is_connected()
    request = sidecar.requests[0]
    assert request.headers["X-Auth-Token"] == "secret-token"
    assert json.loads(request.content) == {"webhook_url": "http://app:3000/events/abc-123"}
    await factory.aclose()


@pytest.mark.anyio
async def test_waweb_maps_errors():
    sidecar = _Sidecar()
    sidecar.responses["POST /session/abc-123/send"] = httpx.Response(409, json={"error": "not_connected"})
    sidecar.responses["POST /session/abc-123/groups/join"] = httpx.Response(500, json={"error": "boom"})
    client = _factory(sidecar)("abc-123", _no_events)

    with pytest.raises(ConnectionLostError):
        await client.send_message("254700000000@s.whatsapp.net", "hi")
    with pytest.raises(ProtocolError) as excinfo:
        await client.join_group("AbC123")
    assert str(excinfo.value) == "boom"


@pytest.mark.anyio
async def test_waweb_transport_failure_is_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    factory = WawebClientFactory(
        base_url="http://waweb:9001",
        callback_base="http://app:3000",
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    client = factory("abc-123", _no_events)

    with pytest.raises(ProtocolError):
        await client.has_session()


@pytest.mark.anyio
async def test_waweb_group_listing_and_pairing():
    sidecar = _Sidecar()
    sidecar.responses["GET /session/abc-123/groups"] = httpx.Response(
        200,
        json={
            "groups": [
                {"id": "1@g.us", "subject": "Team", "participants": [{"id": "a"}, {"id": "b"}], "announce": True},
                {"name": "missing id"},
            ]
        },
    )
    sidecar.responses["POST /session/abc-123/pair"] = httpx.Response(200, json={"code": "WXYZ-9876"})
    client = _factory(sidecar)("abc-123", _no_events)

    groups = await client.list_groups()
    code = await client.request_pairing_code("+254 700 000 000")

    assert [group.to_payload() for group in groups] == [
        {"id": "1@g.us", "name": "Team", "participantCount": 2, "isReadOnly": True}
    ]
    assert code == "WXYZ-9876"
    pair_request = sidecar.requests[-1]
    assert json.loads(pair_request.content) == {"phone": "254700000000"}


@pytest.mark.anyio
async def test_feed_tracks_connection_and_forwards_to_sink():
    received: list[ProtocolEvent] = []

    async def sink(client, event) -> None:
        received.append(event)

    client = _factory(_Sidecar())("abc-123", sink)

    await client.feed({"event": "connected", "data": {"me": {"pushname": "Bot"}}})
    assert client.is_connected()
    await client.feed({"event": "disconnected", "data": {"reason": "stream"}})
    assert not client.is_connected()

    assert [event.kind for event in received] == ["connected", "disconnected"]
