from __future__ import annotations

from functools import lru_cache

import httpx
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    combo_router_config_path: str = "combo-router.yaml"
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 10.0
    upstream_max_connections: int = 512
    upstream_max_keepalive_connections: int = 128
    refresh_margin_seconds: float = 300.0
    persist_refreshed_tokens: bool = True
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    api_key_secret: str | None = None
    accept_signed_api_keys: bool = False
    usage_log_enabled: bool = True
    usage_log_path: str = "logs/usage.jsonl"
    event_log_enabled: bool = False
    event_log_path: str = "logs/pipeline_events.jsonl"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    def upstream_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            timeout=None,
            connect=self.upstream_connect_timeout_seconds,
            read=self.upstream_read_timeout_seconds,
            write=self.upstream_write_timeout_seconds,
            pool=self.upstream_pool_timeout_seconds,
        )

    def upstream_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self.upstream_max_connections,
            max_keepalive_connections=self.upstream_max_keepalive_connections,
        )


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
