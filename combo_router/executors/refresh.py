from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from combo_router.errors import RefreshError
from combo_router.executors.base import CredentialUpdate, ProviderExecutor
from combo_router.models import Account

logger = logging.getLogger("uvicorn.error")

PersistCallback = Callable[[Account], Awaitable[None]]


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Keep unobserved refresh failures out of the loop's error log."""
    try:
        _ = fut.exception()
    except asyncio.CancelledError:
        return


async def apply_credential_update(account: Account, update: CredentialUpdate) -> None:
    async with account.lock:
        account.access_token = update.access_token
        if update.refresh_token:
            account.refresh_token = update.refresh_token
        account.expires_at = update.expires_at
        for key, value in update.extras.items():
            if value is not None:
                account.extras[key] = value


class RefreshCoordinator:
    """Single-flight credential refresh keyed by account id.

    The refresh runs in a task owned by the coordinator. Every caller, the first
    one included, awaits it through ``asyncio.shield``, so a caller that goes
    away does not take the refresh down with it: the rotated token pair still
    lands on the account and the remaining callers see the same result or error.
    """

    def __init__(self, *, persist: PersistCallback | None = None) -> None:
        self._tasks: dict[str, asyncio.Task[CredentialUpdate]] = {}
        self._persist = persist

    async def refresh(
        self,
        executor: ProviderExecutor,
        client: httpx.AsyncClient,
        account: Account,
    ) -> CredentialUpdate:
        task = self._tasks.get(account.id)
        if task is None:
            task = asyncio.create_task(self._run(executor, client, account))
            task.add_done_callback(consume_future_exception)
            task.add_done_callback(lambda done: self._forget(account.id, done))
            self._tasks[account.id] = task
        else:
            logger.info("oauth_refresh_join account=%s", account.id)
        return await asyncio.shield(task)

    def _forget(self, account_id: str, task: asyncio.Task[CredentialUpdate]) -> None:
        if self._tasks.get(account_id) is task:
            del self._tasks[account_id]

    async def _run(
        self,
        executor: ProviderExecutor,
        client: httpx.AsyncClient,
        account: Account,
    ) -> CredentialUpdate:
        try:
            update = await executor.refresh_credentials(client, account)
            await apply_credential_update(account, update)
        except RefreshError:
            raise
        except Exception as exc:
            raise RefreshError(
                f"Credential refresh failed: {exc}",
                provider=account.provider,
                account_id=account.id,
            ) from exc
        logger.info("oauth_refresh_success account=%s expires_at=%s", account.id, update.expires_at)

        if self._persist is not None:
            try:
                await self._persist(account)
            except Exception as exc:
                # The new tokens are already live in memory; a failed write only loses durability.
                logger.warning("oauth_refresh_persist_error account=%s error=%s", account.id, exc)
        return update
