from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

import httpx

from combo_router.errors import ExecutionError
from combo_router.executors.base import (
    CredentialUpdate,
    OutboundRequest,
    OutboundResponse,
    ProviderExecutor,
    ResponseShape,
)
from combo_router.executors.claude import MessagesExecutor
from combo_router.executors.codex import CodexExecutor
from combo_router.executors.cursor import ConnectRpcExecutor
from combo_router.executors.gemini import GenerateContentExecutor
from combo_router.executors.guarded import GuardedExecutor
from combo_router.executors.openai import ChatCompletionsExecutor
from combo_router.executors.refresh import PersistCallback, RefreshCoordinator

SUPPORTED_PROVIDERS = ("openai", "openai-compatible", "claude", "gemini", "codex", "cursor")


def build_executor_table(
    *,
    refresher: RefreshCoordinator | None = None,
    persist: PersistCallback | None = None,
    refresh_margin_seconds: float = 300.0,
    default_timeout: httpx.Timeout | None = None,
) -> Mapping[str, GuardedExecutor]:
    coordinator = refresher or RefreshCoordinator(persist=persist)
    inner: list[ProviderExecutor] = [
        ChatCompletionsExecutor("openai"),
        ChatCompletionsExecutor("openai-compatible"),
        MessagesExecutor(),
        GenerateContentExecutor(),
        CodexExecutor(),
        ConnectRpcExecutor(),
    ]
    return MappingProxyType(
        {
            executor.provider: GuardedExecutor(
                executor,
                refresher=coordinator,
                refresh_margin_seconds=refresh_margin_seconds,
                default_timeout=default_timeout,
            )
            for executor in inner
        }
    )


def executor_for(table: Mapping[str, GuardedExecutor], provider: str) -> GuardedExecutor:
    executor = table.get(provider)
    if executor is None:
        raise ExecutionError(
            f"No executor is registered for provider '{provider}'.",
            status=400,
            retryable=False,
            provider=provider,
        )
    return executor


__all__ = [
    "CredentialUpdate",
    "GuardedExecutor",
    "OutboundRequest",
    "OutboundResponse",
    "ProviderExecutor",
    "RefreshCoordinator",
    "ResponseShape",
    "SUPPORTED_PROVIDERS",
    "build_executor_table",
    "executor_for",
]
