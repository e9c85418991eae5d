from __future__ import annotations

import hmac
import logging
from typing import Any, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .auth import FileCredentialDirectory, Identity, extract_token
from .config import gateway_config
from .errors import (
    ConnectionLostError,
    CredentialExchangeError,
    DuplicateWebhookError,
    NotConnectedError,
    ProtocolError,
    WebhookNotFoundError,
)
from .events import EventIngestion
from .main import init_logging
from .models import MESSAGE_LIMIT
from .protocol import WawebClientFactory
from .registry import SessionRegistry
from .session import READY, SessionHandle
from .store import build_store, validate_user_id
from .webhooks import WebhookDispatcher


logger = logging.getLogger("wagateway.api")

UNAUTHORIZED_MESSAGE = "Unauthorized: please log in"
DEFAULT_MESSAGE_LIMIT = 50

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SendMessageRequest(_RequestModel):
    number: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, validation_alias=AliasChoices("body", "message"))


class SendGroupMessageRequest(_RequestModel):
    group_id: str = Field(..., min_length=1, alias="groupId")
    body: str = Field(..., min_length=1, validation_alias=AliasChoices("body", "message"))


class JoinGroupRequest(_RequestModel):
    invite_link: str = Field(..., min_length=1, alias="inviteLink")


class LeaveGroupRequest(_RequestModel):
    group_id: str = Field(..., min_length=1, alias="groupId")


class AddToGroupRequest(_RequestModel):
    group_id: str = Field(..., min_length=1, alias="groupId")
    participants: List[str] = Field(..., min_length=1)


class RegisterWebhookRequest(_RequestModel):
    url: str = Field(..., min_length=1)
    name: Optional[str] = None


class UnregisterWebhookRequest(_RequestModel):
    id: Optional[str] = None
    url: Optional[str] = None


class ReconnectRequest(_RequestModel):
    method: Literal["qr", "pairing_code"] = "qr"
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


def _parse_limit(raw: str | None) -> int:
    try:
        limit = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_MESSAGE_LIMIT
    if limit <= 0:
        return DEFAULT_MESSAGE_LIMIT
    return min(limit, MESSAGE_LIMIT)


def _error(status_code: int, message: str, *, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def create_app() -> FastAPI:
    init_logging()
    cfg = gateway_config()
    store = build_store(cfg)
    dispatcher = WebhookDispatcher(store, timeout=cfg.webhook_timeout)
    ingestion = EventIngestion(store, dispatcher)
    client_factory = WawebClientFactory(
        base_url=cfg.waweb_url,
        callback_base=cfg.internal_url,
        token=cfg.waweb_token,
        timeout=cfg.waweb_timeout,
    )
    registry = SessionRegistry(store, ingestion, client_factory)
    credentials = FileCredentialDirectory(cfg.data_dir / "auth.json")
    logger.info(
        "stage=app_configured store=%s waweb_url=%s events_token_present=%s",
        cfg.store_backend,
        cfg.waweb_url,
        "true" if cfg.events_token else "false",
    )

    app = FastAPI(title="wagateway")
    app.state.config = cfg
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.ingestion = ingestion
    app.state.registry = registry
    app.state.credentials = credentials

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages: list[str] = []
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ())]
            if loc and loc[0] in ("body", "query", "path", "header"):
                loc = loc[1:]
            field = ".".join(loc) or "request body"
            if err.get("type") == "missing":
                messages.append(f"{field} is required")
            else:
                messages.append(f"{field}: {err.get('msg')}")
        return _error(400, "; ".join(messages) or "invalid request")

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        logger.info("event=request_rejected path=%s error=%s", request.url.path, exc)
        return _error(400, str(exc) or "invalid request")

    @app.exception_handler(CredentialExchangeError)
    async def _exchange_error(request: Request, exc: CredentialExchangeError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(NotConnectedError)
    async def _not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(DuplicateWebhookError)
    async def _duplicate_webhook(request: Request, exc: DuplicateWebhookError) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(WebhookNotFoundError)
    async def _webhook_not_found(request: Request, exc: WebhookNotFoundError) -> JSONResponse:
        return _error(404, str(exc) or "Webhook not found")

    @app.exception_handler(ProtocolError)
    async def _protocol_error(request: Request, exc: ProtocolError) -> JSONResponse:
        lost = isinstance(exc, ConnectionLostError)
        logger.warning(
            "event=protocol_error path=%s connection_lost=%s error=%s",
            request.url.path,
            "true" if lost else "false",
            exc,
        )
        return _error(502, str(exc) or "protocol_error")

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        if not cfg.resume_on_start:
            return
        user_ids = await store.user_ids()
        if user_ids:
            resumed = await registry.resume(user_ids)
            logger.info("stage=resume_done candidates=%s resumed=%s", len(user_ids), len(resumed))

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await registry.shutdown()
        await dispatcher.aclose()
        await client_factory.aclose()
        await store.close()

    def current_identity(request: Request) -> Identity:
        token = extract_token(request)
        identity = credentials.verify_token(token) if token else None
        if identity is None:
            logger.info("event=token_invalid path=%s token_present=%s", request.url.path, bool(token))
            raise HTTPException(status_code=401, detail=UNAUTHORIZED_MESSAGE)
        return identity

    async def current_session(identity: Identity = Depends(current_identity)) -> SessionHandle:
        return await registry.get_or_create(identity.id)

    @app.get("/auth/check")
    async def auth_check():
        return {"hasUsers": credentials.user_exists_any()}

    @app.get("/auth/me")
    async def auth_me(identity: Identity = Depends(current_identity)):
        return identity.to_payload()

    @app.get("/api/status")
    async def status(session: SessionHandle = Depends(current_session)):
        return JSONResponse(session.state.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.get("/api/stats")
    async def stats(session: SessionHandle = Depends(current_session)):
        record = await store.load(session.user_id)
        body: dict[str, Any] = record.stats.to_payload()
        body["webhookCount"] = len(record.webhooks)
        body["status"] = session.status
        return body

    @app.get("/api/messages")
    async def messages(
        limit: Optional[str] = Query(default=None),
        session: SessionHandle = Depends(current_session),
    ):
        record = await store.load(session.user_id)
        return [message.to_payload() for message in record.recent_messages(_parse_limit(limit))]

    @app.get("/api/groups")
    async def groups(session: SessionHandle = Depends(current_session)):
        record = await store.load(session.user_id)
        if session.status == READY and (session.groups_stale or not record.groups):
            refreshed = await session.refresh_groups()
            return [group.to_payload() for group in refreshed]
        return [group.to_payload() for group in record.groups]

    @app.post("/api/send-message")
    async def send_message(
        payload: SendMessageRequest,
        session: SessionHandle = Depends(current_session),
    ):
        message = await session.send_message(payload.number, payload.body)
        return {"success": True, "message": message.to_payload()}

    @app.post("/api/send-group-message")
    async def send_group_message(
        payload: SendGroupMessageRequest,
        session: SessionHandle = Depends(current_session),
    ):
        message = await session.send_group_message(payload.group_id, payload.body)
        return {"success": True, "message": message.to_payload()}

    @app.post("/api/join-group")
    async def join_group(
        payload: JoinGroupRequest,
        session: SessionHandle = Depends(current_session),
    ):
        group_id = await session.join_group(payload.invite_link)
        return {"success": True, "groupId": group_id}

    @app.post("/api/leave-group")
    async def leave_group(
        payload: LeaveGroupRequest,
        session: SessionHandle = Depends(current_session),
    ):
        await session.leave_group(payload.group_id)
        return {"success": True}

    @app.post("/api/add-to-group")
    async def add_to_group(
        payload: AddToGroupRequest,
        session: SessionHandle = Depends(current_session),
    ):
        result = await session.add_participants(payload.group_id, payload.participants)
        return {"success": True, "result": result}

    @app.get("/api/hooks")
    async def list_hooks(session: SessionHandle = Depends(current_session)):
        record = await store.load(session.user_id)
        return [hook.to_payload() for hook in record.webhooks]

    @app.post("/api/hooks/register", status_code=201)
    async def register_hook(
        payload: RegisterWebhookRequest,
        session: SessionHandle = Depends(current_session),
    ):
        if not payload.url.startswith(("http://", "https://")):
            return _error(400, "url must start with http:// or https://")
        hook = await store.register_webhook(session.user_id, payload.url, payload.name)
        return {"success": True, "webhook": hook.to_payload()}

    @app.delete("/api/hooks/unregister")
    async def unregister_hook(
        payload: Optional[UnregisterWebhookRequest] = Body(default=None),
        session: SessionHandle = Depends(current_session),
    ):
        hook_id = payload.id if payload else None
        url = payload.url if payload else None
        if not hook_id and not url:
            return _error(400, "id or url is required")
        removed = await store.unregister_webhook(session.user_id, webhook_id=hook_id, url=url)
        if not removed:
            raise WebhookNotFoundError("Webhook not found")
        return {"success": True, "removed": removed}

    @app.post("/api/disconnect")
    async def disconnect(identity: Identity = Depends(current_identity)):
        await registry.disconnect(identity.id)
        return {"success": True, "message": "WhatsApp disconnected"}

    @app.post("/api/reconnect")
    async def reconnect(
        payload: Optional[ReconnectRequest] = Body(default=None),
        identity: Identity = Depends(current_identity),
    ):
        request = payload or ReconnectRequest()
        state = await registry.connect(identity.id, request.method, request.phone_number)
        return {
            "success": True,
            "message": f"Reconnecting via {request.method}...",
            "status": state.status,
        }

    @app.post("/events/{user_id}")
    async def ingest_event(user_id: str, request: Request):
        if cfg.events_token:
            supplied = request.headers.get("X-Webhook-Token", "").strip()
            if not hmac.compare_digest(supplied.encode("utf-8"), cfg.events_token.encode("utf-8")):
                logger.warning("event=events_token_invalid user_id=%s", user_id)
                return _error(401, "not_authorized")
        validate_user_id(user_id)
        try:
            data = await request.json()
        except ValueError:
            return _error(400, "invalid json")
        if not isinstance(data, dict):
            return _error(400, "event must be a JSON object")

        handle = registry.get(user_id)
        client = handle.client if handle is not None else None
        if client is None:
            logger.info("stage=event_ignored user_id=%s reason=no_active_client", user_id)
            return JSONResponse({"ok": True, "ignored": True}, status_code=202)
        try:
            event = await client.feed(data)
        except ValueError as exc:
            return _error(422, str(exc))
        return {"ok": True, "event": event.kind}

    @app.get("/health")
    async def health():
        return {"ok": True, "botName": cfg.bot_name, "sessions": registry.stats_snapshot()}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
