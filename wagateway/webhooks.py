from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Set

import httpx

from .metrics import WEBHOOK_DELIVERIES_TOTAL
from .models import Message, Webhook
from .store import UserStore


LOGGER = logging.getLogger("wagateway.webhooks")


class WebhookDispatcher:
    """Best-effort, fire-and-forget fan-out of messages to user webhooks.

    Each registered URL gets exactly one POST in its own task; failures are
    logged and counted, never retried and never raised to the caller.
    """

    def __init__(
        self,
        store: UserStore,
        *,
        timeout: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch(self, user_id: str, message: Message) -> asyncio.Task[Any]:
        return self._spawn(self._fan_out(user_id, message))

    def deliver_all(self, user_id: str, webhooks: Iterable[Webhook], payload: Dict[str, Any]) -> int:
        count = 0
        for hook in webhooks:
            self._spawn(self._deliver(user_id, hook, payload))
            count += 1
        return count

    async def _fan_out(self, user_id: str, message: Message) -> None:
        try:
            record = await self._store.load(user_id)
        except Exception:
            LOGGER.exception("stage=webhook_lookup_fail user_id=%s", user_id)
            return
        if not record.webhooks:
            return
        count = self.deliver_all(user_id, record.webhooks, message.to_payload())
        LOGGER.debug("stage=webhook_fan_out user_id=%s targets=%s", user_id, count)

    async def _deliver(self, user_id: str, hook: Webhook, payload: Dict[str, Any]) -> None:
        try:
            response = await self._http.post(
                hook.url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            WEBHOOK_DELIVERIES_TOTAL.labels("error").inc()
            LOGGER.warning(
                "stage=webhook_fail user_id=%s webhook_id=%s url=%s error=%s",
                user_id,
                hook.id,
                hook.url,
                exc,
            )
            return
        except Exception:
            WEBHOOK_DELIVERIES_TOTAL.labels("error").inc()
            LOGGER.exception(
                "stage=webhook_fail user_id=%s webhook_id=%s url=%s", user_id, hook.id, hook.url
            )
            return
        if response.status_code >= 400:
            WEBHOOK_DELIVERIES_TOTAL.labels("rejected").inc()
            LOGGER.warning(
                "stage=webhook_rejected user_id=%s webhook_id=%s url=%s status=%s",
                user_id,
                hook.id,
                hook.url,
                response.status_code,
            )
            return
        WEBHOOK_DELIVERIES_TOTAL.labels("ok").inc()

    async def drain(self, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                LOGGER.warning("stage=webhook_drain_timeout pending=%s", len(self._tasks))
                return
            await asyncio.wait(set(self._tasks), timeout=remaining)

    async def aclose(self, timeout: float = 5.0) -> None:
        await self.drain(timeout)
        for task in list(self._tasks):
            task.cancel()
        await self._http.aclose()


__all__ = ["WebhookDispatcher"]
