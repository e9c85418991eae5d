from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .events import EventIngestion
from .metrics import SESSIONS
from .protocol import ClientFactory, ProtocolClient, ProtocolEvent
from .session import QR, STATUSES, SessionHandle, SessionState
from .store import UserStore, validate_user_id


LOGGER = logging.getLogger("wagateway")


async def _discard_event(client: ProtocolClient, event: ProtocolEvent) -> None:
    LOGGER.debug("stage=probe_event_dropped user_id=%s kind=%s", client.user_id, event.kind)


class SessionRegistry:
    """Process-wide map of user id to :class:`SessionHandle`.

    Lookups are lock-free on the hit path; creation re-checks under the
    registry lock so concurrent first access yields a single handle. The
    registry is the only place protocol clients are built, and handles only
    install clients produced here.
    """

    def __init__(
        self,
        store: UserStore,
        ingestion: EventIngestion,
        client_factory: ClientFactory,
    ) -> None:
        self._store = store
        self._ingestion = ingestion
        self._client_factory = client_factory
        self._handles: Dict[str, SessionHandle] = {}
        self._lock = asyncio.Lock()
        ingestion.bind(self)

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, user_id: str) -> Optional[SessionHandle]:
        return self._handles.get(user_id)

    async def get_or_create(self, user_id: str) -> SessionHandle:
        validate_user_id(user_id)
        handle = self._handles.get(user_id)
        if handle is not None:
            return handle
        async with self._lock:
            handle = self._handles.get(user_id)
            if handle is None:
                handle = SessionHandle(
                    user_id,
                    self._store,
                    self._ingestion,
                    on_change=self._update_metrics,
                )
                self._handles[user_id] = handle
                LOGGER.info("stage=session_created user_id=%s", user_id)
                self._update_metrics()
        await self._store.load(user_id)
        return handle

    async def connect(
        self,
        user_id: str,
        method: str = QR,
        phone_number: str | None = None,
    ) -> SessionState:
        handle = await self.get_or_create(user_id)
        return await handle.connect(
            lambda sink: self._client_factory(user_id, sink),
            method,
            phone_number,
        )

    async def disconnect(self, user_id: str) -> SessionState:
        handle = await self.get_or_create(user_id)
        return await handle.disconnect()

    async def resume(self, user_ids: Iterable[str]) -> List[str]:
        """Reconnect users whose device is still linked at the protocol side."""

        resumed: List[str] = []
        for user_id in user_ids:
            try:
                validate_user_id(user_id)
                probe = self._client_factory(user_id, _discard_event)
                if not await probe.has_session():
                    continue
                await self.connect(user_id, QR)
                resumed.append(user_id)
                LOGGER.info("stage=session_resume user_id=%s", user_id)
            except Exception as exc:
                LOGGER.warning("stage=session_resume_fail user_id=%s error=%s", user_id, exc)
        return resumed

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for handle in list(self._handles.values()):
            counts[handle.status] = counts.get(handle.status, 0) + 1
        return counts

    def _update_metrics(self) -> None:
        for status, count in self.stats_snapshot().items():
            SESSIONS.labels(status).set(count)

    async def shutdown(self) -> None:
        for handle in list(self._handles.values()):
            try:
                await handle.close()
            except Exception:
                LOGGER.exception("stage=session_close_fail user_id=%s", handle.user_id)


__all__ = ["SessionRegistry"]
