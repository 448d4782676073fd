from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator, model_validator

from combo_router.executors import SUPPORTED_PROVIDERS
from combo_router.fallback import FallbackPolicy
from combo_router.models import Account
from combo_router.utils.persistence import load_yaml_dict


def _resolve_env_or_value(env_name: str | None, value: str | None) -> str | None:
    if env_name:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return value


def validate_base_url(base_url: str) -> str | None:
    """Return why ``base_url`` is unsafe for outbound calls, or None when it is allowed."""
    if not base_url or not isinstance(base_url, str):
        return "Invalid base URL"
    try:
        parts = urlsplit(base_url.strip())
    except ValueError:
        return "Invalid base URL"
    if parts.scheme != "https" or not parts.hostname:
        return "Only HTTPS URLs are allowed"
    hostname = parts.hostname.lower()
    if hostname == "localhost" or hostname.endswith(".local"):
        return "Localhost URLs are not allowed"
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return None
    if address.is_loopback:
        return "Loopback is not allowed"
    if address.is_link_local:
        return "Link-local is not allowed"
    if address.is_private:
        return "Private IP ranges are not allowed"
    return None


class AccountConfig(BaseModel):
    name: str
    provider: str = "openai"
    base_url: str | None = None
    auth_mode: Literal["api_key", "oauth"] = "api_key"
    api_key: str | None = None
    api_key_env: str | None = None
    oauth_access_token: str | None = None
    oauth_access_token_env: str | None = None
    oauth_refresh_token: str | None = None
    oauth_refresh_token_env: str | None = None
    oauth_expires_at: float | None = None
    oauth_expires_at_env: str | None = None
    oauth_token_url: str | None = None
    oauth_client_id: str | None = None
    oauth_client_id_env: str | None = None
    oauth_client_secret: str | None = None
    oauth_client_secret_env: str | None = None
    chatgpt_account_id: str | None = None
    chatgpt_account_id_env: str | None = None
    machine_id: str | None = None
    machine_id_env: str | None = None
    mac_machine_id: str | None = None
    organization: str | None = None
    project: str | None = None
    models: list[str] = Field(default_factory=list)
    priority: int = 0
    timeout_seconds: float | None = None
    enabled: bool = True

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> str:
        provider = str(value or "").strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported provider '{value}'. Expected one of: {', '.join(SUPPORTED_PROVIDERS)}."
            )
        return provider

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item).strip() for item in value if str(item).strip()]

    @model_validator(mode="after")
    def _check_provider_requirements(self) -> AccountConfig:
        if self.provider == "openai-compatible" and not self.base_url:
            raise ValueError(f"Account '{self.name}': openai-compatible accounts need a base_url.")
        if self.provider == "codex" and self.auth_mode != "oauth":
            raise ValueError(f"Account '{self.name}': codex accounts use auth_mode 'oauth'.")
        return self

    def resolved_api_key(self) -> str | None:
        if self.auth_mode != "api_key":
            return None
        return _resolve_env_or_value(self.api_key_env, self.api_key)

    def resolved_oauth_access_token(self) -> str | None:
        if self.auth_mode != "oauth":
            return None
        return _resolve_env_or_value(self.oauth_access_token_env, self.oauth_access_token)

    def resolved_oauth_refresh_token(self) -> str | None:
        if self.auth_mode != "oauth":
            return None
        return _resolve_env_or_value(self.oauth_refresh_token_env, self.oauth_refresh_token)

    def resolved_oauth_expires_at(self) -> float | None:
        if self.auth_mode != "oauth":
            return None
        raw: str | float | None = self.oauth_expires_at
        if self.oauth_expires_at_env:
            env_value = os.getenv(self.oauth_expires_at_env, "").strip()
            if env_value:
                raw = env_value
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    def persistable_fields(self) -> set[str]:
        """Token fields that may be written back to the config file."""
        fields = {
            "oauth_access_token": self.oauth_access_token_env,
            "oauth_refresh_token": self.oauth_refresh_token_env,
            "oauth_expires_at": self.oauth_expires_at_env,
            "chatgpt_account_id": self.chatgpt_account_id_env,
        }
        return {name for name, env_name in fields.items() if env_name is None}

    def to_account(self) -> Account:
        extras: dict[str, Any] = {}
        optional = {
            "oauth_token_url": self.oauth_token_url,
            "oauth_client_id": _resolve_env_or_value(self.oauth_client_id_env, self.oauth_client_id),
            "oauth_client_secret": _resolve_env_or_value(self.oauth_client_secret_env, self.oauth_client_secret),
            "chatgpt_account_id": _resolve_env_or_value(self.chatgpt_account_id_env, self.chatgpt_account_id),
            "machine_id": _resolve_env_or_value(self.machine_id_env, self.machine_id),
            "mac_machine_id": self.mac_machine_id,
            "organization": self.organization,
            "project": self.project,
        }
        for key, value in optional.items():
            if value:
                extras[key] = value
        return Account(
            id=self.name,
            provider=self.provider,
            auth=self.auth_mode,
            api_key=self.resolved_api_key(),
            access_token=self.resolved_oauth_access_token(),
            refresh_token=self.resolved_oauth_refresh_token(),
            expires_at=self.resolved_oauth_expires_at(),
            base_url=self.base_url,
            priority=self.priority,
            timeout_seconds=self.timeout_seconds,
            extras=extras,
        )


class ComboEntryConfig(BaseModel):
    account: str
    model: str

    @model_validator(mode="before")
    @classmethod
    def _parse_shorthand(cls, value: Any) -> Any:
        # "account:model" shorthand.
        if isinstance(value, str):
            account, sep, model = value.partition(":")
            if not sep or not account.strip() or not model.strip():
                raise ValueError(f"Combo entry '{value}' must look like 'account:model'.")
            return {"account": account.strip(), "model": model.strip()}
        return value


class ComboConfig(BaseModel):
    name: str
    entries: list[ComboEntryConfig] = Field(min_length=1)


class FallbackPolicyConfig(BaseModel):
    transient_retry_limit: int = Field(default=1, ge=0)
    default_cooldown_seconds: float = Field(default=60.0, gt=0)
    provider_cooldown_seconds: dict[str, float] = Field(default_factory=dict)
    honor_retry_after: bool = True
    min_cooldown_seconds: float = Field(default=1.0, ge=0)
    max_cooldown_seconds: float = Field(default=3600.0, gt=0)

    @model_validator(mode="after")
    def _check_caps(self) -> FallbackPolicyConfig:
        if self.min_cooldown_seconds > self.max_cooldown_seconds:
            raise ValueError("min_cooldown_seconds must not exceed max_cooldown_seconds.")
        return self

    def to_policy(self) -> FallbackPolicy:
        return FallbackPolicy(
            transient_retry_limit=self.transient_retry_limit,
            default_cooldown_seconds=self.default_cooldown_seconds,
            provider_cooldown_seconds=dict(self.provider_cooldown_seconds),
            honor_retry_after=self.honor_retry_after,
            min_cooldown_seconds=self.min_cooldown_seconds,
            max_cooldown_seconds=self.max_cooldown_seconds,
        )


class GatewayConfig(BaseModel):
    accounts: list[AccountConfig] = Field(default_factory=list)
    combos: list[ComboConfig] = Field(default_factory=list)
    fallback: FallbackPolicyConfig = Field(default_factory=FallbackPolicyConfig)
    require_https_base_urls: bool = False

    @model_validator(mode="after")
    def _check_references(self) -> GatewayConfig:
        names = [account.name for account in self.accounts]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate account names: {', '.join(duplicates)}.")
        known = set(names)
        combo_names: set[str] = set()
        for combo in self.combos:
            if combo.name in combo_names:
                raise ValueError(f"Duplicate combo name '{combo.name}'.")
            combo_names.add(combo.name)
            for entry in combo.entries:
                if entry.account not in known:
                    raise ValueError(f"Combo '{combo.name}' references unknown account '{entry.account}'.")
        if self.require_https_base_urls:
            for account in self.accounts:
                if account.base_url is None:
                    continue
                problem = validate_base_url(account.base_url)
                if problem:
                    raise ValueError(f"Account '{account.name}' base_url rejected: {problem}.")
        return self

    def account(self, name: str) -> AccountConfig | None:
        for account in self.accounts:
            if account.name == name:
                return account
        return None

    def available_models(self) -> list[str]:
        discovered = {combo.name for combo in self.combos}
        for account in self.accounts:
            if not account.enabled:
                continue
            for model in account.models:
                discovered.add(model if "/" in model else f"{account.provider}/{model}")
        return sorted(discovered)


def load_gateway_config(path: str | Path) -> GatewayConfig:
    resolved = Path(path)
    if not resolved.exists():
        raise FileNotFoundError(
            f"Gateway config not found at '{path}'. Create it or set COMBO_ROUTER_CONFIG_PATH."
        )
    raw = load_yaml_dict(resolved, error_message=f"Expected YAML object in '{path}'.")
    return GatewayConfig.model_validate(raw)
