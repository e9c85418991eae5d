"""Per-user durable records with per-user write serialization."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import secrets
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import redis.asyncio as redis_async
from pydantic import ValidationError

from .errors import DuplicateWebhookError, InvalidUserIdError
from .models import MESSAGE_LIMIT, STAT_FIELDS, GroupSummary, Message, UserRecord, UserStats, Webhook


LOGGER = logging.getLogger("wagateway.store")

_USER_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")
_ITEM_MODELS = (("messages", Message), ("groups", GroupSummary), ("webhooks", Webhook))


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not _USER_ID_RE.fullmatch(user_id):
        raise InvalidUserIdError(f"invalid user id: {user_id!r}")
    return user_id


class UserLocks:
    """Lazily created per-user locks that live for the process lifetime."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks.setdefault(user_id, asyncio.Lock())
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class UserStore:
    """Base store: backends provide raw document IO, this class owns the semantics.

    Every compound helper runs load, mutate and save while holding the user's
    lock, so concurrent appends and increments for one user never lose
    updates while different users proceed independently. Plain ``load`` is a
    snapshot read and does not take the lock once the record exists.
    """

    backend = "base"

    def __init__(self) -> None:
        self._locks = UserLocks()

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _write(self, user_id: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def exists(self, user_id: str) -> bool:
        raise NotImplementedError

    async def user_ids(self) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def _decode(self, user_id: str, raw: Dict[str, Any]) -> UserRecord:
        try:
            return UserRecord.model_validate(raw)
        except ValidationError as exc:
            LOGGER.warning(
                "stage=record_invalid user_id=%s backend=%s errors=%s",
                user_id,
                self.backend,
                exc.error_count(),
            )
        return self._salvage(user_id, raw)

    def _salvage(self, user_id: str, raw: Dict[str, Any]) -> UserRecord:
        """Keep every item that validates on its own and drop the rest."""

        kept: Dict[str, List[Any]] = {}
        for key, model in _ITEM_MODELS:
            items = raw.get(key)
            kept[key] = []
            if not isinstance(items, list):
                continue
            for index, item in enumerate(items):
                try:
                    kept[key].append(model.model_validate(item))
                except ValidationError as exc:
                    LOGGER.warning(
                        "stage=record_item_dropped user_id=%s backend=%s field=%s index=%s errors=%s",
                        user_id,
                        self.backend,
                        key,
                        index,
                        exc.error_count(),
                    )

        counters: Dict[str, Any] = {}
        stats = raw.get("stats")
        if isinstance(stats, dict):
            for key in STAT_FIELDS:
                if key not in stats:
                    continue
                try:
                    UserStats.model_validate({key: stats[key]})
                except ValidationError:
                    LOGGER.warning(
                        "stage=record_stat_dropped user_id=%s backend=%s field=%s", user_id, self.backend, key
                    )
                    continue
                counters[key] = stats[key]

        return UserRecord(
            messages=kept["messages"][-MESSAGE_LIMIT:],
            groups=kept["groups"],
            webhooks=kept["webhooks"],
            stats=UserStats.model_validate(counters),
        )

    async def load(self, user_id: str) -> UserRecord:
        validate_user_id(user_id)
        raw = await self._read(user_id)
        if raw is not None:
            return self._decode(user_id, raw)
        async with self._locks.get(user_id):
            raw = await self._read(user_id)
            if raw is not None:
                return self._decode(user_id, raw)
            record = UserRecord()
            await self._write(user_id, record.to_document())
            LOGGER.info("stage=record_created user_id=%s backend=%s", user_id, self.backend)
            return record

    async def save(self, user_id: str, record: UserRecord) -> None:
        validate_user_id(user_id)
        async with self._locks.get(user_id):
            await self._write(user_id, record.to_document())

    @contextlib.asynccontextmanager
    async def _mutate(self, user_id: str) -> AsyncIterator[UserRecord]:
        validate_user_id(user_id)
        async with self._locks.get(user_id):
            raw = await self._read(user_id)
            record = UserRecord() if raw is None else self._decode(user_id, raw)
            yield record
            await self._write(user_id, record.to_document())

    async def append_message(self, user_id: str, message: Message) -> None:
        async with self._mutate(user_id) as record:
            record.append_message(message)

    async def increment_stat(self, user_id: str, key: str, amount: int = 1) -> int:
        async with self._mutate(user_id) as record:
            return record.stats.increment(key, amount)

    async def record_message(self, user_id: str, message: Message, stat: str) -> None:
        """Append a message and bump its counter in one locked update."""

        async with self._mutate(user_id) as record:
            record.append_message(message)
            record.stats.increment(stat)

    async def register_webhook(self, user_id: str, url: str, name: str | None = None) -> Webhook:
        async with self._mutate(user_id) as record:
            if record.find_webhook(url) is not None:
                raise DuplicateWebhookError(url)
            hook = Webhook(id=secrets.token_hex(8), url=url, name=name or url)
            record.webhooks.append(hook)
        LOGGER.info("stage=webhook_registered user_id=%s webhook_id=%s", user_id, hook.id)
        return hook

    async def unregister_webhook(
        self,
        user_id: str,
        *,
        webhook_id: str | None = None,
        url: str | None = None,
    ) -> int:
        if not webhook_id and not url:
            raise ValueError("id or url is required")
        async with self._mutate(user_id) as record:
            before = len(record.webhooks)
            record.webhooks = [
                hook
                for hook in record.webhooks
                if not ((webhook_id and hook.id == webhook_id) or (url and hook.url == url))
            ]
            removed = before - len(record.webhooks)
        if removed:
            LOGGER.info("stage=webhook_unregistered user_id=%s removed=%s", user_id, removed)
        return removed

    async def replace_groups(self, user_id: str, groups: Iterable[GroupSummary]) -> None:
        async with self._mutate(user_id) as record:
            record.groups = list(groups)

    async def clear_bot_data(self, user_id: str) -> None:
        async with self._mutate(user_id) as record:
            record.clear_bot_data()
        LOGGER.info("stage=bot_data_cleared user_id=%s", user_id)


class FileUserStore(UserStore):
    """JSON documents under ``<data_dir>/users/<user_id>/data.json``."""

    backend = "file"

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self._users_dir = Path(data_dir) / "users"
        self._users_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, user_id: str) -> Path:
        return self._users_dir / validate_user_id(user_id) / "data.json"

    def _read_sync(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return None
        except ValueError as exc:
            LOGGER.warning("stage=record_unreadable path=%s error=%s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_sync(self, path: Path, document: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_sync, self.path_for(user_id))

    async def _write(self, user_id: str, document: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_sync, self.path_for(user_id), document)

    async def exists(self, user_id: str) -> bool:
        return self.path_for(user_id).exists()

    async def user_ids(self) -> List[str]:
        found: List[str] = []
        for entry in sorted(self._users_dir.iterdir()):
            if entry.is_dir() and _USER_ID_RE.fullmatch(entry.name) and (entry / "data.json").exists():
                found.append(entry.name)
        return found


class RedisUserStore(UserStore):
    """One JSON string per user at ``<prefix>:user:<user_id>``."""

    backend = "redis"

    def __init__(self, client: redis_async.Redis, *, prefix: str = "wagw") -> None:
        super().__init__()
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "wagw") -> "RedisUserStore":
        return cls(redis_async.from_url(url, decode_responses=True), prefix=prefix)

    def key_for(self, user_id: str) -> str:
        return f"{self._prefix}:user:{validate_user_id(user_id)}"

    async def _read(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(self.key_for(user_id))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            LOGGER.warning("stage=record_unreadable key=%s error=%s", self.key_for(user_id), exc)
            return {}
        return data if isinstance(data, dict) else {}

    async def _write(self, user_id: str, document: Dict[str, Any]) -> None:
        await self._redis.set(self.key_for(user_id), json.dumps(document, ensure_ascii=False))

    async def exists(self, user_id: str) -> bool:
        return bool(await self._redis.exists(self.key_for(user_id)))

    async def user_ids(self) -> List[str]:
        marker = f"{self._prefix}:user:"
        found: List[str] = []
        async for key in self._redis.scan_iter(match=f"{marker}*"):
            user_id = key[len(marker):]
            if _USER_ID_RE.fullmatch(user_id):
                found.append(user_id)
        return sorted(found)

    async def close(self) -> None:
        await self._redis.aclose()


def build_store(cfg) -> UserStore:
    if cfg.store_backend == "redis":
        LOGGER.info("stage=store_backend backend=redis url=%s", cfg.redis_url)
        return RedisUserStore.from_url(cfg.redis_url, prefix=cfg.redis_prefix)
    return FileUserStore(cfg.data_dir)


__all__ = [
    "validate_user_id",
    "UserLocks",
    "UserStore",
    "FileUserStore",
    "RedisUserStore",
    "build_store",
]
