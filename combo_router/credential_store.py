from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol

from combo_router.config import AccountConfig, GatewayConfig
from combo_router.errors import UnknownModelError
from combo_router.models import Account, Combo, ComboEntry
from combo_router.utils.persistence import YamlFileStore

logger = logging.getLogger("uvicorn.error")


class CredentialStore(Protocol):
    def resolve_combo(self, alias: str) -> Combo: ...

    async def persist_account(self, account: Account) -> None: ...

    def available_models(self) -> list[str]: ...


class InMemoryCredentialStore:
    """Fixed combos held in memory; persisted snapshots are kept for inspection."""

    def __init__(self, combos: Iterable[Combo]) -> None:
        self.combos = {combo.name: combo for combo in combos}
        self.persisted: list[dict[str, Any]] = []

    def resolve_combo(self, alias: str) -> Combo:
        combo = self.combos.get(alias)
        if combo is None:
            raise UnknownModelError(alias, self.available_models())
        return combo

    async def persist_account(self, account: Account) -> None:
        self.persisted.append(
            {
                "id": account.id,
                "access_token": account.access_token,
                "refresh_token": account.refresh_token,
                "expires_at": account.expires_at,
            }
        )

    def available_models(self) -> list[str]:
        return sorted(self.combos)


class YamlCredentialStore:
    """Accounts and combos built once from the gateway config.

    Account objects are shared by every combo that names them, so cooldowns and
    refreshed tokens carry across requests. Refreshed tokens are written back to
    the YAML file unless the field is sourced from an environment variable.
    """

    def __init__(self, config: GatewayConfig, *, path: str | Path | None = None) -> None:
        self.config = config
        self.path = Path(path) if path is not None else None
        self._persist_lock = asyncio.Lock()
        self._account_configs: dict[str, AccountConfig] = {
            account.name: account for account in config.accounts if account.enabled
        }
        self.accounts: dict[str, Account] = {
            name: account_config.to_account() for name, account_config in self._account_configs.items()
        }
        self._combos: dict[str, Combo] = {}
        for combo_config in config.combos:
            entries = tuple(
                ComboEntry(account=self.accounts[entry.account], model=entry.model)
                for entry in combo_config.entries
                if entry.account in self.accounts
            )
            if not entries:
                logger.warning("combo_skipped combo=%s reason=no_enabled_accounts", combo_config.name)
                continue
            self._combos[combo_config.name] = Combo(name=combo_config.name, entries=entries)

    def _ordered_accounts(self, provider: str | None = None) -> list[Account]:
        candidates = [
            account for account in self.accounts.values() if provider is None or account.provider == provider
        ]
        return sorted(candidates, key=lambda account: (account.priority, account.id))

    def _supports(self, account: Account, model: str) -> bool:
        models = self._account_configs[account.id].models
        if not models:
            return True
        return model in models or f"{account.provider}/{model}" in models

    def resolve_combo(self, alias: str) -> Combo:
        alias = alias.strip()
        combo = self._combos.get(alias)
        if combo is not None:
            return combo

        provider, sep, model = alias.partition("/")
        if sep and provider and model:
            entries = tuple(
                ComboEntry(account=account, model=model)
                for account in self._ordered_accounts(provider.lower())
                if self._supports(account, model)
            )
        else:
            # A bare model id matches every account that lists it explicitly.
            entries = tuple(
                ComboEntry(account=account, model=alias)
                for account in self._ordered_accounts()
                if alias in self._account_configs[account.id].models
            )
        if not entries:
            raise UnknownModelError(alias, self.available_models())
        combo = Combo(name=alias, entries=entries)
        self._combos[alias] = combo
        return combo

    def available_models(self) -> list[str]:
        return self.config.available_models()

    async def persist_account(self, account: Account) -> None:
        if self.path is None:
            return
        account_config = self._account_configs.get(account.id)
        if account_config is None:
            return
        allowed = account_config.persistable_fields()
        if not allowed:
            return
        values: dict[str, Any] = {
            "oauth_access_token": account.access_token,
            "oauth_refresh_token": account.refresh_token,
            "oauth_expires_at": int(account.expires_at) if account.expires_at is not None else None,
            "chatgpt_account_id": account.extras.get("chatgpt_account_id"),
        }
        updates = {key: value for key, value in values.items() if key in allowed and value is not None}
        async with self._persist_lock:
            await asyncio.to_thread(self._persist_sync, account.id, updates)

    def _persist_sync(self, account_id: str, updates: dict[str, Any]) -> None:
        assert self.path is not None
        store = YamlFileStore(self.path)
        if not store.exists():
            logger.warning(
                "credential_persist_skipped account=%s reason=config_not_found path=%s", account_id, self.path
            )
            return

        def mutate(document: dict[str, Any]) -> bool:
            accounts = document.get("accounts")
            if not isinstance(accounts, list):
                logger.warning(
                    "credential_persist_skipped account=%s reason=missing_accounts path=%s", account_id, self.path
                )
                return False
            for entry in accounts:
                if isinstance(entry, dict) and str(entry.get("name", "")).strip() == account_id:
                    changed = False
                    for key, value in updates.items():
                        if entry.get(key) != value:
                            entry[key] = value
                            changed = True
                    return changed
            logger.warning(
                "credential_persist_skipped account=%s reason=account_not_found path=%s", account_id, self.path
            )
            return False

        if store.update(mutate):
            logger.info("credential_persisted account=%s fields=%s", account_id, ",".join(sorted(updates)))
