from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Protocol

import httpx

from combo_router.errors import ExecutionError, RefreshError
from combo_router.models import Account, CanonicalRequest
from combo_router.sse import iter_sse_events
from combo_router.tokens import TokenMetadataParser

logger = logging.getLogger("uvicorn.error")


class ResponseShape(str, Enum):
    STREAM = "stream"
    WHOLE = "whole"


@dataclass(slots=True)
class OutboundRequest:
    method: str
    url: str
    headers: dict[str, str]
    target_format: str
    stream: bool
    json_body: Any = None
    content: bytes | None = None
    params: dict[str, str] = field(default_factory=dict)
    timeout: httpx.Timeout | None = None
    account_id: str = ""
    provider: str = ""
    model: str = ""


@dataclass(slots=True)
class OutboundResponse:
    response: httpx.Response
    shape: ResponseShape
    target_format: str
    account_id: str
    provider: str
    model: str
    connect_ms: float = 0.0

    async def aclose(self) -> None:
        await self.response.aclose()


@dataclass(frozen=True, slots=True)
class CredentialUpdate:
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None
    extras: Mapping[str, Any] = field(default_factory=dict)


class ProviderExecutor(Protocol):
    provider: str
    target_format: str

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest: ...

    async def execute(self, client: httpx.AsyncClient, outbound: OutboundRequest) -> OutboundResponse: ...

    async def refresh_credentials(self, client: httpx.AsyncClient, account: Account) -> CredentialUpdate: ...

    def classify_response_shape(self, response: httpx.Response) -> ResponseShape: ...

    def iter_events(self, response: httpx.Response) -> AsyncIterator[Any]: ...


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url.copy_remove_param("key"))
    return details


def transport_error_kind(exc: httpx.RequestError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connect"
    return "network"


def parse_retry_after_seconds(headers: httpx.Headers | Mapping[str, str]) -> float | None:
    raw = headers.get("retry-after")
    if not raw:
        return None
    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else None

    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    return float(delta) if delta > 0 else None


def parse_error_body(raw: bytes) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text.strip() or None


def vendor_error_message(body: Any) -> str | None:
    """Pull the human-readable message out of any vendor's error envelope."""
    if isinstance(body, str):
        return body[:500] or None
    if isinstance(body, list) and body:
        return vendor_error_message(body[0])
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    for key in ("message", "detail", "error_description"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def upstream_error(
    response: httpx.Response,
    *,
    provider: str,
    account_id: str,
) -> ExecutionError:
    try:
        raw = await response.aread()
    finally:
        await response.aclose()
    body = parse_error_body(raw)
    message = vendor_error_message(body) or f"Upstream returned HTTP {response.status_code}."
    return ExecutionError(
        message,
        status=response.status_code,
        body=body,
        retry_after=parse_retry_after_seconds(response.headers),
        provider=provider,
        account_id=account_id,
    )


class HttpExecutor:
    """Shared HTTP plumbing for JSON vendors; subclasses supply URLs and headers."""

    provider: str = ""
    target_format: str = ""
    default_base_url: str | None = None
    token_url: str | None = None
    refresh_uses_json: bool = False

    def __init__(self, provider: str | None = None) -> None:
        if provider is not None:
            self.provider = provider

    def base_url(self, account: Account) -> str:
        base = account.base_url or self.default_base_url
        if not base:
            raise ExecutionError(
                f"Account '{account.id}' has no base_url configured.",
                status=400,
                retryable=False,
                provider=self.provider,
                account_id=account.id,
            )
        return base.rstrip("/")

    def build_request(self, account: Account, request: CanonicalRequest, model: str) -> OutboundRequest:
        raise NotImplementedError

    async def execute(self, client: httpx.AsyncClient, outbound: OutboundRequest) -> OutboundResponse:
        http_request = client.build_request(
            method=outbound.method,
            url=outbound.url,
            params=outbound.params or None,
            json=outbound.json_body if outbound.content is None else None,
            content=outbound.content,
            headers=outbound.headers,
            timeout=outbound.timeout if outbound.timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response = await client.send(http_request, stream=True)
        if response.status_code >= 400:
            raise await upstream_error(response, provider=outbound.provider, account_id=outbound.account_id)
        return OutboundResponse(
            response=response,
            shape=self.classify_response_shape(response),
            target_format=outbound.target_format,
            account_id=outbound.account_id,
            provider=outbound.provider,
            model=outbound.model,
        )

    def classify_response_shape(self, response: httpx.Response) -> ResponseShape:
        content_type = response.headers.get("content-type", "").lower()
        if "text/event-stream" in content_type:
            return ResponseShape.STREAM
        return ResponseShape.WHOLE

    def iter_events(self, response: httpx.Response) -> AsyncIterator[Any]:
        return iter_sse_events(response.aiter_bytes())

    def effective_token_url(self, account: Account) -> str | None:
        configured = account.extras.get("oauth_token_url")
        if isinstance(configured, str) and configured.strip():
            return configured.strip()
        return self.token_url

    async def refresh_credentials(self, client: httpx.AsyncClient, account: Account) -> CredentialUpdate:
        token_url = self.effective_token_url(account)
        if account.auth != "oauth" or not token_url:
            raise RefreshError(
                f"Provider '{self.provider}' does not support credential refresh.",
                status=401,
                retryable=False,
                provider=self.provider,
                account_id=account.id,
            )
        if not account.refresh_token:
            raise RefreshError(
                f"Account '{account.id}' has no refresh token.",
                status=401,
                retryable=False,
                provider=self.provider,
                account_id=account.id,
            )

        payload: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
        }
        for source, target in (("oauth_client_id", "client_id"), ("oauth_client_secret", "client_secret")):
            value = account.extras.get(source)
            if isinstance(value, str) and value.strip():
                payload[target] = value.strip()

        logger.info("oauth_refresh_start account=%s token_url=%s", account.id, token_url)
        try:
            if self.refresh_uses_json:
                response = await client.post(token_url, json=payload, headers={"Accept": "application/json"})
            else:
                response = await client.post(token_url, data=payload, headers={"Accept": "application/json"})
        except httpx.RequestError as exc:
            details = request_error_details(exc)
            logger.warning(
                "oauth_refresh_error account=%s reason=request_error error_type=%s error=%s",
                account.id,
                details["error_type"],
                details["error"],
            )
            raise RefreshError(
                f"Credential refresh failed: {details['error']}",
                kind=transport_error_kind(exc),
                provider=self.provider,
                account_id=account.id,
            ) from exc

        if response.status_code >= 400:
            body = parse_error_body(response.content)
            logger.warning("oauth_refresh_error account=%s status=%d", account.id, response.status_code)
            raise RefreshError(
                vendor_error_message(body) or f"Credential refresh failed with HTTP {response.status_code}.",
                status=response.status_code,
                body=body,
                provider=self.provider,
                account_id=account.id,
            )

        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("oauth_refresh_error account=%s reason=invalid_json", account.id)
            raise RefreshError(
                "Credential refresh returned invalid JSON.",
                status=502,
                provider=self.provider,
                account_id=account.id,
            ) from exc

        raw_access = body.get("access_token") if isinstance(body, dict) else None
        access_token = str(raw_access).strip() if raw_access is not None else ""
        if not access_token:
            logger.warning("oauth_refresh_error account=%s reason=missing_access_token", account.id)
            raise RefreshError(
                "Credential refresh response has no access_token.",
                status=502,
                body=body,
                provider=self.provider,
                account_id=account.id,
            )
        raw_refresh = body.get("refresh_token")
        next_refresh = (str(raw_refresh).strip() if raw_refresh is not None else account.refresh_token) or None
        expires_at = TokenMetadataParser.extract_expires_at(body)
        if expires_at is None:
            expires_at = TokenMetadataParser.token_expiry(access_token)
        return CredentialUpdate(
            access_token=access_token,
            refresh_token=next_refresh,
            expires_at=float(expires_at) if expires_at is not None else None,
            extras=self.extras_from_token(access_token),
        )

    def extras_from_token(self, access_token: str) -> dict[str, Any]:
        return {}
