from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator

import httpx

from combo_router.errors import ExecutionError
from combo_router.executors.base import (
    CredentialUpdate,
    OutboundRequest,
    OutboundResponse,
    ProviderExecutor,
    ResponseShape,
    request_error_details,
    transport_error_kind,
)
from combo_router.executors.refresh import RefreshCoordinator
from combo_router.models import Account, CanonicalRequest

logger = logging.getLogger("uvicorn.error")


class GuardedExecutor:
    """Wraps a provider executor with refresh gating and bounded timeouts."""

    def __init__(
        self,
        inner: ProviderExecutor,
        *,
        refresher: RefreshCoordinator,
        refresh_margin_seconds: float = 300.0,
        default_timeout: httpx.Timeout | None = None,
    ) -> None:
        self.inner = inner
        self.refresher = refresher
        self.refresh_margin_seconds = refresh_margin_seconds
        self.default_timeout = default_timeout

    @property
    def provider(self) -> str:
        return self.inner.provider

    @property
    def target_format(self) -> str:
        return self.inner.target_format

    def _timeout_for(self, account: Account) -> httpx.Timeout | None:
        if account.timeout_seconds is None or account.timeout_seconds <= 0:
            return self.default_timeout
        connect = self.default_timeout.connect if self.default_timeout is not None else None
        return httpx.Timeout(
            timeout=account.timeout_seconds,
            connect=min(connect, account.timeout_seconds) if connect else account.timeout_seconds,
        )

    async def ensure_fresh(self, client: httpx.AsyncClient, account: Account) -> None:
        if account.expires_within(self.refresh_margin_seconds):
            await self.force_refresh(client, account)

    async def force_refresh(self, client: httpx.AsyncClient, account: Account) -> CredentialUpdate:
        return await self.refresher.refresh(self.inner, client, account)

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        outbound = self.inner.build_request(account, request, model)
        if outbound.timeout is None:
            outbound.timeout = self._timeout_for(account)
        return outbound

    async def execute(
        self,
        client: httpx.AsyncClient,
        account: Account,
        request: CanonicalRequest,
        model: str,
    ) -> OutboundResponse:
        await self.ensure_fresh(client, account)
        outbound = self.build_request(account, request, model)
        started = time.perf_counter()
        try:
            upstream = await self.inner.execute(client, outbound)
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            kind = transport_error_kind(exc)
            logger.warning(
                "executor_request_error account=%s provider=%s model=%s kind=%s error_type=%s error=%s",
                account.id,
                self.provider,
                model,
                kind,
                details["error_type"],
                details["error"],
            )
            raise ExecutionError(
                f"Could not reach upstream ({details['error_type']}): {details['error']}",
                kind=kind,
                body=details,
                provider=self.provider,
                account_id=account.id,
            ) from exc
        upstream.connect_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "executor_upstream_connected account=%s provider=%s model=%s connect_ms=%.2f status=%d shape=%s",
            account.id,
            self.provider,
            model,
            upstream.connect_ms,
            upstream.response.status_code,
            upstream.shape.value,
        )
        return upstream

    def classify_response_shape(self, response: httpx.Response) -> ResponseShape:
        return self.inner.classify_response_shape(response)

    def iter_events(self, response: httpx.Response) -> AsyncIterator[Any]:
        return self.inner.iter_events(response)
