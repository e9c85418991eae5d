"""Environment-driven configuration for the gateway service."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict


LOGGER = logging.getLogger("wagateway")

DEFAULT_WA_WEB_URL = "http://waweb:9001"
DEFAULT_APP_INTERNAL_URL = "http://app:3000"
DEFAULT_REDIS_URL = "redis://redis:6379/0"
DEFAULT_GLOBAL_CONFIG: Dict[str, Any] = {
    "botName": "WA Bot Server",
    "port": 3000,
    "tunnelEnabled": False,
}


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    data_dir: Path
    store_backend: str
    redis_url: str
    redis_prefix: str
    waweb_url: str
    waweb_token: str | None
    internal_url: str
    events_token: str | None
    webhook_timeout: float
    waweb_timeout: float
    resume_on_start: bool
    port: int
    bot_name: str


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


def _optional(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


def _resolve_data_dir(raw: str | None) -> Path:
    candidate = Path(raw or "data")
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wagateway-data")
        alt.mkdir(parents=True, exist_ok=True)
        LOGGER.warning("stage=data_dir_fallback requested=%s using=%s", candidate, alt)
        return alt
    return candidate


def read_global_config(data_dir: Path) -> Dict[str, Any]:
    """Load ``global.json``, creating it with defaults on first use."""

    path = data_dir / "global.json"
    merged = dict(DEFAULT_GLOBAL_CONFIG)
    if not path.exists():
        path.write_text(json.dumps(merged, ensure_ascii=False, indent=2), encoding="utf-8")
        return merged
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("stage=global_config_unreadable path=%s error=%s", path, exc)
        return merged
    if isinstance(raw, dict):
        merged.update(raw)
    return merged


def gateway_config() -> GatewayConfig:
    data_dir = _resolve_data_dir(os.getenv("WAGW_DATA_DIR"))
    global_cfg = read_global_config(data_dir)

    backend = (os.getenv("WAGW_STORE_BACKEND") or "file").strip().lower() or "file"
    if backend not in {"file", "redis"}:
        LOGGER.warning("stage=config_invalid key=WAGW_STORE_BACKEND value=%s fallback=file", backend)
        backend = "file"

    default_port = _coerce_int(str(global_cfg.get("port") or ""), 3000) or 3000
    bot_name = str(global_cfg.get("botName") or DEFAULT_GLOBAL_CONFIG["botName"])

    return GatewayConfig(
        data_dir=data_dir,
        store_backend=backend,
        redis_url=(os.getenv("REDIS_URL") or DEFAULT_REDIS_URL).strip(),
        redis_prefix=(os.getenv("WAGW_REDIS_PREFIX") or "wagw").strip() or "wagw",
        waweb_url=_normalize_url(os.getenv("WA_WEB_URL"), DEFAULT_WA_WEB_URL),
        waweb_token=_optional("WA_WEB_TOKEN"),
        internal_url=_normalize_url(os.getenv("APP_INTERNAL_URL"), DEFAULT_APP_INTERNAL_URL),
        events_token=_optional("WEBHOOK_SECRET"),
        webhook_timeout=_parse_duration(os.getenv("WEBHOOK_TIMEOUT"), default=10.0),
        waweb_timeout=_parse_duration(os.getenv("WA_WEB_TIMEOUT"), default=15.0),
        resume_on_start=_env_bool("WAGW_RESUME_ON_START", True),
        port=_coerce_int(os.getenv("PORT"), default_port),
        bot_name=bot_name,
    )


__all__ = ["GatewayConfig", "gateway_config", "read_global_config", "DEFAULT_GLOBAL_CONFIG"]
