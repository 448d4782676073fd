from __future__ import annotations

import asyncio
import json

import httpx
import jwt
import pytest

from combo_router.errors import ExecutionError
from combo_router.executors import SUPPORTED_PROVIDERS, ResponseShape, build_executor_table, executor_for
from combo_router.executors.base import parse_retry_after_seconds, upstream_error, vendor_error_message
from combo_router.models import Account, CanonicalMessage, CanonicalRequest, TextPart

REQUEST = CanonicalRequest(
    model="smart",
    messages=(CanonicalMessage(role="user", parts=(TextPart("hi"),)),),
)
STREAM_REQUEST = CanonicalRequest(model="smart", messages=REQUEST.messages, stream=True)


def _build(provider: str, account: Account, request: CanonicalRequest = REQUEST, model: str = "m"):
    return executor_for(build_executor_table(), provider).build_request(account, request, model)


def test_table_covers_every_supported_provider() -> None:
    table = build_executor_table()
    assert set(table) == set(SUPPORTED_PROVIDERS)
    with pytest.raises(ExecutionError) as exc_info:
        executor_for(table, "ollama")
    assert exc_info.value.status == 400


def test_openai_request_uses_bearer_key_and_org_headers() -> None:
    account = Account(id="o", provider="openai", api_key="sk-1", extras={"organization": "org-1", "project": "p-1"})
    outbound = _build("openai", account, model="gpt-4o-mini")

    assert outbound.url == "https://api.openai.com/v1/chat/completions"
    assert outbound.headers["Authorization"] == "Bearer sk-1"
    assert outbound.headers["OpenAI-Organization"] == "org-1"
    assert outbound.headers["OpenAI-Project"] == "p-1"
    assert outbound.json_body["model"] == "gpt-4o-mini"
    assert outbound.target_format == "openai"


def test_openai_compatible_requires_base_url() -> None:
    account = Account(id="c", provider="openai-compatible", api_key="k")
    with pytest.raises(ExecutionError, match="no base_url"):
        _build("openai-compatible", account)

    account.base_url = "https://llm.internal.example/v1/"
    assert _build("openai-compatible", account).url == "https://llm.internal.example/v1/chat/completions"


def test_claude_headers_for_api_key_and_oauth() -> None:
    keyed = _build("claude", Account(id="k", provider="claude", api_key="sk-ant"), STREAM_REQUEST)
    assert keyed.url == "https://api.anthropic.com/v1/messages"
    assert keyed.headers["x-api-key"] == "sk-ant"
    assert keyed.headers["anthropic-version"] == "2023-06-01"
    assert keyed.headers["Accept"] == "text/event-stream"
    assert "Authorization" not in keyed.headers

    oauth = _build("claude", Account(id="o", provider="claude", auth="oauth", access_token="at"))
    assert oauth.headers["Authorization"] == "Bearer at"
    assert oauth.headers["anthropic-beta"].startswith("oauth-")
    assert "x-api-key" not in oauth.headers


def test_gemini_uses_key_param_and_stream_action() -> None:
    account = Account(id="g", provider="gemini", api_key="AIza")
    whole = _build("gemini", account, model="models/gemini-2.5-pro")
    streaming = _build("gemini", account, STREAM_REQUEST, model="gemini-2.5-pro")

    assert whole.url.endswith("/v1beta/models/gemini-2.5-pro:generateContent")
    assert whole.params == {"key": "AIza"}
    assert streaming.url.endswith(":streamGenerateContent")
    assert streaming.params == {"alt": "sse", "key": "AIza"}


def test_codex_always_streams_and_sends_account_id_from_token() -> None:
    token = jwt.encode({"https://api.openai.com/auth": {"chatgpt_account_id": "acct-3"}}, "k", algorithm="HS256")
    account = Account(id="x", provider="codex", auth="oauth", access_token=token)
    outbound = _build("codex", account, model="gpt-5-codex")

    assert outbound.url == "https://chatgpt.com/backend-api/codex/responses"
    assert outbound.stream is True
    assert outbound.json_body["stream"] is True
    assert outbound.headers["chatgpt-account-id"] == "acct-3"
    assert outbound.target_format == "openai-responses"


def test_cursor_requires_machine_id_and_strips_token_prefix() -> None:
    missing = Account(id="cu", provider="cursor", auth="oauth", access_token="user_1::tok")
    with pytest.raises(ExecutionError, match="machine_id"):
        _build("cursor", missing)

    account = Account(id="cu", provider="cursor", auth="oauth", access_token="user_1::tok", extras={"machine_id": "mid"})
    outbound = _build("cursor", account, model="claude-4-sonnet")

    assert outbound.headers["Authorization"] == "Bearer tok"
    assert outbound.headers["Content-Type"] == "application/connect+proto"
    assert outbound.headers["x-cursor-checksum"].endswith("mid")
    assert isinstance(outbound.content, bytes)
    assert outbound.stream is True


def test_account_timeout_overrides_default() -> None:
    table = build_executor_table(default_timeout=httpx.Timeout(timeout=None, connect=10.0, read=120.0))
    account = Account(id="o", provider="openai", api_key="k", timeout_seconds=5.0)
    outbound = table["openai"].build_request(account, REQUEST, "m")

    assert outbound.timeout is not None
    assert outbound.timeout.read == 5.0
    assert outbound.timeout.connect == 5.0


@pytest.mark.parametrize(
    ("headers", "expected"),
    [({"retry-after": "12"}, 12.0), ({"retry-after": "0"}, None), ({"retry-after": "soon"}, None), ({}, None)],
)
def test_parse_retry_after_seconds(headers: dict[str, str], expected: float | None) -> None:
    assert parse_retry_after_seconds(httpx.Headers(headers)) == expected


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"error": {"message": " quota "}}, "quota"),
        ({"error": "invalid_grant"}, "invalid_grant"),
        ({"detail": "nope"}, "nope"),
        ([{"error": {"message": "gemini style"}}], "gemini style"),
        ("plain", "plain"),
        ({}, None),
    ],
)
def test_vendor_error_message(body: object, expected: str | None) -> None:
    assert vendor_error_message(body) == expected


def test_upstream_error_reads_body_and_retry_after() -> None:
    response = httpx.Response(
        429,
        headers={"retry-after": "7"},
        content=json.dumps({"error": {"message": "slow down"}}).encode(),
    )

    error = asyncio.run(upstream_error(response, provider="openai", account_id="a"))

    assert error.status == 429
    assert error.retry_after == 7.0
    assert error.message == "slow down"
    assert error.account_id == "a"


def test_execute_classifies_response_shape() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream; charset=utf-8"}, content=b"data: {}\n\n")

    account = Account(id="o", provider="openai", api_key="k", base_url="https://openai.test/v1")
    table = build_executor_table()

    async def scenario() -> ResponseShape:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            upstream = await table["openai"].execute(client, account, STREAM_REQUEST, "m")
            await upstream.aclose()
            return upstream.shape

    assert asyncio.run(scenario()) is ResponseShape.STREAM
