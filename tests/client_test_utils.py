from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
import yaml
from fastapi.testclient import TestClient

from combo_router.main import app
from combo_router.settings import get_settings

DEFAULT_GATEWAY_CONFIG: dict[str, Any] = {
    "accounts": [
        {
            "name": "openai-primary",
            "provider": "openai",
            "base_url": "https://openai.test/v1",
            "api_key": "sk-primary",
            "models": ["gpt-4o-mini"],
        },
        {
            "name": "claude-backup",
            "provider": "claude",
            "base_url": "https://anthropic.test",
            "api_key": "sk-ant-backup",
            "models": ["claude-sonnet-4"],
            "priority": 1,
        },
    ],
    "combos": [
        {
            "name": "smart",
            "entries": ["openai-primary:gpt-4o-mini", "claude-backup:claude-sonnet-4"],
        }
    ],
    "fallback": {"default_cooldown_seconds": 30},
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def write_gateway_config(path: Path, payload: dict[str, Any] | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload or DEFAULT_GATEWAY_CONFIG, handle, sort_keys=False)
    return path


def build_test_client(
    monkeypatch: Any,
    tmp_path: Path,
    config: dict[str, Any] | None = None,
    **env: Any,
) -> TestClient:
    config_path = write_gateway_config(tmp_path / "combo-router.yaml", config)
    monkeypatch.setenv("COMBO_ROUTER_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("USAGE_LOG_ENABLED", "false")
    monkeypatch.setenv("EVENT_LOG_ENABLED", "false")
    monkeypatch.setenv("PERSIST_REFRESHED_TOKENS", "false")
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)


def install_upstream(client: TestClient, handler: Callable[[httpx.Request], Any]) -> None:
    """Route every outbound call of the running app through ``handler``."""
    pipeline = client.app.state.pipeline
    pipeline.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))


def sse_body(*events: Any) -> bytes:
    chunks = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        chunks.append(f"data: {payload}\n\n")
    return "".join(chunks).encode("utf-8")
