from __future__ import annotations

import asyncio
import logging
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from combo_router.errors import RefreshError
from combo_router.executors import GuardedExecutor, RefreshCoordinator
from combo_router.executors.base import CredentialUpdate
from combo_router.executors.codex import CodexExecutor
from combo_router.executors.openai import ChatCompletionsExecutor
from combo_router.models import Account


class CountingExecutor:
    provider = "codex"
    target_format = "openai-responses"

    def __init__(self, *, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail

    async def refresh_credentials(self, client: httpx.AsyncClient, account: Account) -> CredentialUpdate:
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.fail:
            raise RefreshError("invalid_grant", status=400, account_id=account.id)
        return CredentialUpdate(
            access_token=f"access-{self.calls}",
            refresh_token=f"refresh-{self.calls}",
            expires_at=time.time() + 3600,
        )


def _oauth_account(**overrides) -> Account:
    values = {
        "id": "codex-main",
        "provider": "codex",
        "auth": "oauth",
        "access_token": "old-access",
        "refresh_token": "old-refresh",
        "expires_at": time.time() - 10,
    }
    values.update(overrides)
    return Account(**values)


def test_concurrent_refreshes_share_one_upstream_call() -> None:
    executor = CountingExecutor()
    persisted: list[str] = []

    async def persist(account: Account) -> None:
        persisted.append(account.access_token or "")

    coordinator = RefreshCoordinator(persist=persist)
    account = _oauth_account()

    async def scenario() -> list[CredentialUpdate]:
        async with httpx.AsyncClient() as client:
            return await asyncio.gather(*(coordinator.refresh(executor, client, account) for _ in range(5)))

    updates = asyncio.run(scenario())

    assert executor.calls == 1
    assert {update.access_token for update in updates} == {"access-1"}
    assert account.access_token == "access-1"
    assert account.refresh_token == "refresh-1"
    assert persisted == ["access-1"]


def test_concurrent_waiters_see_the_same_refresh_error() -> None:
    executor = CountingExecutor(fail=True)
    coordinator = RefreshCoordinator()
    account = _oauth_account()

    async def scenario() -> list[object]:
        async with httpx.AsyncClient() as client:
            return await asyncio.gather(
                *(coordinator.refresh(executor, client, account) for _ in range(3)),
                return_exceptions=True,
            )

    results = asyncio.run(scenario())

    assert executor.calls == 1
    assert all(isinstance(result, RefreshError) for result in results)
    assert {result.message for result in results} == {"invalid_grant"}
    assert account.access_token == "old-access"


def test_refresh_after_completion_starts_a_new_flight() -> None:
    executor = CountingExecutor()
    coordinator = RefreshCoordinator()
    account = _oauth_account()

    async def scenario() -> None:
        async with httpx.AsyncClient() as client:
            await coordinator.refresh(executor, client, account)
            await coordinator.refresh(executor, client, account)

    asyncio.run(scenario())

    assert executor.calls == 2
    assert account.access_token == "access-2"


def test_cancelled_first_caller_does_not_cancel_joined_refresh() -> None:
    executor = CountingExecutor()
    coordinator = RefreshCoordinator()
    account = _oauth_account()

    async def scenario() -> tuple[str, str | None]:
        async with httpx.AsyncClient() as client:
            first = asyncio.create_task(coordinator.refresh(executor, client, account))
            await asyncio.sleep(0)
            second = asyncio.create_task(coordinator.refresh(executor, client, account))
            await asyncio.sleep(0)
            first.cancel()
            update = await second
            with pytest.raises(asyncio.CancelledError):
                await first
            return "ok", update.access_token

    assert asyncio.run(scenario()) == ("ok", "access-1")
    assert executor.calls == 1
    assert account.access_token == "access-1"


def test_refresh_completes_after_its_only_caller_is_cancelled() -> None:
    executor = CountingExecutor()
    coordinator = RefreshCoordinator()
    account = _oauth_account()

    async def scenario() -> None:
        async with httpx.AsyncClient() as client:
            caller = asyncio.create_task(coordinator.refresh(executor, client, account))
            await asyncio.sleep(0)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            # A rotated refresh token must not be lost with the caller.
            await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert executor.calls == 1
    assert account.refresh_token == "refresh-1"


def test_persist_failure_is_logged_and_tokens_stay_live(caplog: pytest.LogCaptureFixture) -> None:
    async def persist(account: Account) -> None:
        raise OSError("disk full")

    coordinator = RefreshCoordinator(persist=persist)
    account = _oauth_account()

    async def scenario() -> CredentialUpdate:
        async with httpx.AsyncClient() as client:
            return await coordinator.refresh(CountingExecutor(), client, account)

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        update = asyncio.run(scenario())

    assert update.access_token == "access-1"
    assert account.access_token == "access-1"
    assert "oauth_refresh_persist_error account=codex-main" in caplog.text


def test_guarded_executor_refreshes_only_expiring_tokens() -> None:
    executor = CountingExecutor()
    guarded = GuardedExecutor(executor, refresher=RefreshCoordinator(), refresh_margin_seconds=300)
    fresh = _oauth_account(id="fresh", expires_at=time.time() + 3600)
    expiring = _oauth_account(id="expiring", expires_at=time.time() + 60)
    api_key = Account(id="key", provider="openai", api_key="sk-test")

    async def scenario() -> None:
        async with httpx.AsyncClient() as client:
            for account in (fresh, expiring, api_key):
                await guarded.ensure_fresh(client, account)

    asyncio.run(scenario())

    assert executor.calls == 1
    assert fresh.access_token == "old-access"
    assert expiring.access_token == "access-1"


def test_http_refresh_posts_form_and_reads_expires_in() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["content_type"] = request.headers["content-type"]
        captured["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})

    account = _oauth_account(provider="openai", extras={"oauth_client_id": "client-1"})

    async def scenario() -> CredentialUpdate:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await ChatCompletionsExecutor("openai").refresh_credentials(client, account)

    before = time.time()
    update = asyncio.run(scenario())

    assert captured["url"] == "https://auth.openai.com/oauth/token"
    assert "application/x-www-form-urlencoded" in str(captured["content_type"])
    assert captured["form"] == {
        "grant_type": ["refresh_token"],
        "refresh_token": ["old-refresh"],
        "client_id": ["client-1"],
    }
    assert update.access_token == "new-access"
    # Refresh token rotation is optional; the previous one is kept.
    assert update.refresh_token == "old-refresh"
    assert update.expires_at is not None
    assert before + 3590 <= update.expires_at <= time.time() + 3610


def test_http_refresh_rejects_response_without_access_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"token_type": "bearer"})

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await ChatCompletionsExecutor("openai").refresh_credentials(client, _oauth_account(provider="openai"))

    with pytest.raises(RefreshError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.status == 502


def test_http_refresh_surfaces_vendor_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"})

    async def scenario() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await ChatCompletionsExecutor("openai").refresh_credentials(client, _oauth_account(provider="openai"))

    with pytest.raises(RefreshError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.status == 400
    assert exc_info.value.message == "invalid_grant"


def test_refresh_requires_oauth_and_refresh_token() -> None:
    async def scenario(executor: ChatCompletionsExecutor, account: Account) -> None:
        async with httpx.AsyncClient() as client:
            await executor.refresh_credentials(client, account)

    with pytest.raises(RefreshError) as exc_info:
        asyncio.run(scenario(ChatCompletionsExecutor("openai"), Account(id="k", provider="openai", api_key="sk")))
    assert exc_info.value.status == 401

    with pytest.raises(RefreshError):
        asyncio.run(scenario(ChatCompletionsExecutor("openai"), _oauth_account(provider="openai", refresh_token=None)))

    with pytest.raises(RefreshError):
        asyncio.run(scenario(ChatCompletionsExecutor("openai-compatible"), _oauth_account(provider="openai-compatible")))


def test_codex_refresh_takes_expiry_and_account_id_from_jwt() -> None:
    exp = int(time.time()) + 7200
    token = jwt.encode(
        {"exp": exp, "https://api.openai.com/auth": {"chatgpt_account_id": "acct-42"}},
        "not-verified",
        algorithm="HS256",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": token, "refresh_token": "rotated"})

    account = _oauth_account()

    async def scenario() -> CredentialUpdate:
        coordinator = RefreshCoordinator()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await coordinator.refresh(CodexExecutor(), client, account)

    update = asyncio.run(scenario())

    assert update.expires_at == exp
    assert account.refresh_token == "rotated"
    assert account.extras["chatgpt_account_id"] == "acct-42"
