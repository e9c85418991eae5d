from __future__ import annotations

import json

import pytest

from wagateway.config import DEFAULT_GLOBAL_CONFIG, _parse_duration, gateway_config, read_global_config


ENV_KEYS = (
    "WAGW_STORE_BACKEND",
    "REDIS_URL",
    "WAGW_REDIS_PREFIX",
    "WA_WEB_URL",
    "WA_WEB_TOKEN",
    "APP_INTERNAL_URL",
    "WEBHOOK_SECRET",
    "WEBHOOK_TIMEOUT",
    "WA_WEB_TIMEOUT",
    "WAGW_RESUME_ON_START",
    "PORT",
)


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("WAGW_DATA_DIR", str(tmp_path))
    return tmp_path


def test_defaults(clean_env):
    cfg = gateway_config()

    assert cfg.data_dir == clean_env
    assert cfg.store_backend == "file"
    assert cfg.waweb_url == "http://waweb:9001"
    assert cfg.internal_url == "http://app:3000"
    assert cfg.waweb_token is None
    assert cfg.events_token is None
    assert cfg.webhook_timeout == 10.0
    assert cfg.resume_on_start is True
    assert cfg.port == 3000
    assert cfg.bot_name == "WA Bot Server"


def test_env_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("WAGW_STORE_BACKEND", "Redis")
    monkeypatch.setenv("WA_WEB_URL", "http://sidecar:9001/")
    monkeypatch.setenv("WA_WEB_TOKEN", "  shared  ")
    monkeypatch.setenv("WEBHOOK_TIMEOUT", "3s")
    monkeypatch.setenv("WAGW_RESUME_ON_START", "off")
    monkeypatch.setenv("PORT", "8080")

    cfg = gateway_config()

    assert cfg.store_backend == "redis"
    assert cfg.waweb_url == "http://sidecar:9001"
    assert cfg.waweb_token == "shared"
    assert cfg.webhook_timeout == 3.0
    assert cfg.resume_on_start is False
    assert cfg.port == 8080


def test_unknown_backend_falls_back_to_file(clean_env, monkeypatch):
    monkeypatch.setenv("WAGW_STORE_BACKEND", "sqlite")
    assert gateway_config().store_backend == "file"


def test_global_config_is_created_and_merged(tmp_path):
    assert read_global_config(tmp_path) == DEFAULT_GLOBAL_CONFIG
    assert json.loads((tmp_path / "global.json").read_text(encoding="utf-8")) == DEFAULT_GLOBAL_CONFIG

    (tmp_path / "global.json").write_text(json.dumps({"botName": "Shop Bot", "port": 4000}), encoding="utf-8")
    merged = read_global_config(tmp_path)
    assert merged["botName"] == "Shop Bot"
    assert merged["port"] == 4000
    assert merged["tunnelEnabled"] is False


def test_global_config_port_is_used_without_env(clean_env):
    (clean_env / "global.json").write_text(json.dumps({"port": 4100}), encoding="utf-8")
    assert gateway_config().port == 4100


@pytest.mark.parametrize(
    "raw,expected",
    [(None, 5.0), ("", 5.0), ("2.5", 2.5), ("7s", 7.0), ("-1", 5.0), ("soon", 5.0)],
)
def test_parse_duration(raw, expected):
    assert _parse_duration(raw, default=5.0) == expected
