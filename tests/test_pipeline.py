from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable

import httpx
import pytest

from combo_router.errors import (
    ComboExhaustedError,
    RequestCancelledError,
    UnknownModelError,
    UnsupportedFormatError,
)
from combo_router.executors import build_executor_table
from combo_router.fallback import FallbackPolicy
from combo_router.formats import build_format_registry
from combo_router.models import Account, CancellationToken, Combo, ComboEntry
from combo_router.pipeline import ChatPipeline, StreamResult, WholeResult
from combo_router.usage import InMemoryUsageSink
from tests.client_test_utils import sse_body

OPENAI_URL = "https://openai.test/v1/chat/completions"
CLAUDE_URL = "https://anthropic.test/v1/messages"

CHAT_BODY = {"model": "smart", "messages": [{"role": "user", "content": "hi"}]}


def _openai_completion(text: str = "hello") -> dict[str, Any]:
    return {
        "id": "chatcmpl-up",
        "object": "chat.completion",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 7, "completion_tokens": 2, "total_tokens": 9},
    }


def _claude_message(text: str = "from claude") -> dict[str, Any]:
    return {
        "id": "msg_up",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4",
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 4, "output_tokens": 3},
    }


def _accounts() -> tuple[Account, Account]:
    primary = Account(id="openai-primary", provider="openai", api_key="sk-primary", base_url="https://openai.test/v1")
    backup = Account(id="claude-backup", provider="claude", api_key="sk-ant", base_url="https://anthropic.test")
    return primary, backup


def _combo(*accounts: Account) -> Combo:
    models = {"openai": "gpt-4o-mini", "claude": "claude-sonnet-4"}
    return Combo(name="smart", entries=tuple(ComboEntry(account=a, model=models[a.provider]) for a in accounts))


def _resolver(combo: Combo) -> Callable[[str], Combo]:
    def resolve(alias: str) -> Combo:
        if alias != combo.name:
            raise UnknownModelError(alias, [combo.name])
        return combo

    return resolve


class Recorder:
    def __init__(self, routes: dict[str, list[httpx.Response]]) -> None:
        self.routes = routes
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes[str(request.url.copy_with(query=None))]
        template = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.calls]


def _pipeline(handler: Any, **kwargs: Any) -> tuple[ChatPipeline, InMemoryUsageSink]:
    sink = InMemoryUsageSink()
    pipeline = ChatPipeline(
        registry=build_format_registry(),
        executors=build_executor_table(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        usage_sink=sink,
        **kwargs,
    )
    return pipeline, sink


async def _drain(result: StreamResult) -> bytes:
    return b"".join([frame async for frame in result.frames])


def test_whole_response_is_translated_to_caller_format() -> None:
    recorder = Recorder({OPENAI_URL: [httpx.Response(200, json=_openai_completion())]})
    pipeline, sink = _pipeline(recorder)
    combo = _combo(*_accounts())
    body = {"model": "smart", "max_tokens": 64, "messages": [{"role": "user", "content": "hi"}]}

    result = asyncio.run(pipeline.execute_chat("claude", body, _resolver(combo), request_id="req-1"))

    assert isinstance(result, WholeResult)
    assert result.body["type"] == "message"
    assert result.body["content"] == [{"type": "text", "text": "hello"}]
    assert result.body["usage"] == {"input_tokens": 7, "output_tokens": 2}
    assert result.headers["x-router-account"] == "openai-primary"
    assert result.headers["x-router-attempts"] == "1"
    upstream = json.loads(recorder.calls[0].content)
    assert upstream["model"] == "gpt-4o-mini"
    assert upstream["max_tokens"] == 64
    assert recorder.calls[0].headers["authorization"] == "Bearer sk-primary"

    record = sink.records[0]
    assert record.status == "ok"
    assert record.request_id == "req-1"
    assert (record.prompt_tokens, record.completion_tokens) == (7, 2)
    assert record.target_format == "openai"


def test_quota_error_cools_down_account_and_falls_back() -> None:
    recorder = Recorder(
        {
            OPENAI_URL: [httpx.Response(429, headers={"retry-after": "45"}, json={"error": {"message": "slow down"}})],
            CLAUDE_URL: [httpx.Response(200, json=_claude_message())],
        }
    )
    pipeline, _ = _pipeline(recorder)
    primary, backup = _accounts()
    combo = _combo(primary, backup)

    before = time.time()
    result = asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(combo)))

    assert result.body["choices"][0]["message"]["content"] == "from claude"
    assert result.headers["x-router-account"] == "claude-backup"
    assert result.headers["x-router-attempts"] == "2"
    assert primary.cooled_down_until >= before + 45
    assert primary.last_error_class == "quota_exceeded"
    assert backup.cooled_down_until == 0

    # The cooling account is skipped on the next request without a network call.
    recorder.calls.clear()
    asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(combo)))
    assert recorder.urls() == [CLAUDE_URL]


def test_exhausted_when_every_account_is_cooling_down() -> None:
    recorder = Recorder({})
    pipeline, sink = _pipeline(recorder)
    primary, backup = _accounts()
    future = time.time() + 600
    primary.cooled_down_until = future
    backup.cooled_down_until = future

    with pytest.raises(ComboExhaustedError) as exc_info:
        asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(primary, backup))))

    assert exc_info.value.status_code == 429
    assert [failure.error_type for failure in exc_info.value.failures] == ["cooling_down", "cooling_down"]
    assert recorder.calls == []
    assert sink.records[0].status == "exhausted"


def test_unauthorized_triggers_refresh_then_retries_same_account() -> None:
    token_url = "https://auth.openai.com/oauth/token"
    recorder = Recorder(
        {
            OPENAI_URL: [
                httpx.Response(401, json={"error": {"message": "token expired"}}),
                httpx.Response(200, json=_openai_completion("after refresh")),
            ],
            token_url: [httpx.Response(200, json={"access_token": "fresh-token", "expires_in": 3600})],
        }
    )
    pipeline, _ = _pipeline(recorder)
    account = Account(
        id="oauth-openai",
        provider="openai",
        auth="oauth",
        access_token="stale-token",
        refresh_token="refresh-1",
        expires_at=time.time() + 3600,
        base_url="https://openai.test/v1",
    )

    result = asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(account))))

    assert result.body["choices"][0]["message"]["content"] == "after refresh"
    assert recorder.urls() == [OPENAI_URL, token_url, OPENAI_URL]
    assert recorder.calls[2].headers["authorization"] == "Bearer fresh-token"
    assert account.access_token == "fresh-token"


def test_transient_error_retries_same_account_then_advances() -> None:
    recorder = Recorder(
        {
            OPENAI_URL: [httpx.Response(503, json={"error": {"message": "busy"}})],
            CLAUDE_URL: [httpx.Response(200, json=_claude_message())],
        }
    )
    pipeline, _ = _pipeline(recorder, policy=FallbackPolicy(transient_retry_limit=1))

    result = asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(*_accounts()))))

    assert recorder.urls() == [OPENAI_URL, OPENAI_URL, CLAUDE_URL]
    assert result.headers["x-router-attempts"] == "3"


def test_fatal_errors_exhaust_combo_with_502() -> None:
    recorder = Recorder(
        {
            OPENAI_URL: [httpx.Response(400, json={"error": {"message": "bad request"}})],
            CLAUDE_URL: [httpx.Response(400, json={"error": {"type": "invalid_request_error", "message": "nope"}})],
        }
    )
    pipeline, _ = _pipeline(recorder)
    primary, backup = _accounts()

    with pytest.raises(ComboExhaustedError) as exc_info:
        asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(primary, backup))))

    error = exc_info.value
    assert error.status_code == 502
    assert [failure.message for failure in error.failures] == ["bad request", "nope"]
    assert primary.cooled_down_until == 0
    assert primary.last_error_class == "fatal"


def test_streaming_response_is_translated() -> None:
    upstream = sse_body(
        {"id": "c1", "model": "gpt-4o-mini", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hi"}}]},
        {"id": "c1", "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
        "[DONE]",
    )
    recorder = Recorder(
        {OPENAI_URL: [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=upstream)]}
    )
    pipeline, sink = _pipeline(recorder)
    body = {"model": "smart", "max_tokens": 32, "stream": True, "messages": [{"role": "user", "content": "hi"}]}

    async def scenario() -> tuple[StreamResult, bytes]:
        result = await pipeline.execute_chat("claude", body, _resolver(_combo(*_accounts())))
        assert isinstance(result, StreamResult)
        return result, await _drain(result)

    result, payload = asyncio.run(scenario())

    text = payload.decode()
    assert "event: message_start" in text
    assert '"text":"Hi"' in text
    assert text.rstrip().endswith('data: {"type":"message_stop"}')
    assert result.headers["Cache-Control"] == "no-cache"
    assert sink.records[-1].status == "ok"
    assert sink.records[-1].stream is True


def test_stream_error_before_first_frame_falls_back() -> None:
    error_stream = sse_body({"type": "error", "error": {"type": "overloaded_error", "message": "overloaded"}})
    recorder = Recorder(
        {
            CLAUDE_URL: [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=error_stream)],
            OPENAI_URL: [
                httpx.Response(
                    200,
                    headers={"content-type": "text/event-stream"},
                    content=sse_body(
                        {"choices": [{"index": 0, "delta": {"content": "ok"}, "finish_reason": "stop"}]}, "[DONE]"
                    ),
                )
            ],
        }
    )
    pipeline, _ = _pipeline(recorder, policy=FallbackPolicy(transient_retry_limit=0))
    primary, backup = _accounts()
    body = dict(CHAT_BODY, stream=True)

    async def scenario() -> tuple[StreamResult, bytes]:
        result = await pipeline.execute_chat("openai", body, _resolver(_combo(backup, primary)))
        return result, await _drain(result)

    result, payload = asyncio.run(scenario())

    assert recorder.urls() == [CLAUDE_URL, OPENAI_URL]
    assert result.account_id == "openai-primary"
    # Same-format upstream is forwarded byte for byte.
    assert b'"content": "ok"' in payload


def test_non_streaming_caller_aggregates_stream_only_upstream() -> None:
    upstream = sse_body(
        {"choices": [{"index": 0, "delta": {"content": "agg"}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
        "[DONE]",
    )
    recorder = Recorder(
        {OPENAI_URL: [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=upstream)]}
    )
    pipeline, _ = _pipeline(recorder)

    result = asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(*_accounts()))))

    assert isinstance(result, WholeResult)
    assert result.body["choices"][0]["message"]["content"] == "agg"


def test_unknown_model_and_unsupported_format_fail_before_network() -> None:
    recorder = Recorder({})
    pipeline, _ = _pipeline(recorder)
    resolver = _resolver(_combo(*_accounts()))

    with pytest.raises(UnknownModelError):
        asyncio.run(pipeline.execute_chat("openai", dict(CHAT_BODY, model="nope"), resolver))
    with pytest.raises(UnsupportedFormatError):
        asyncio.run(pipeline.execute_chat("cursor", CHAT_BODY, resolver))
    assert recorder.calls == []


def test_connect_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "openai.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json=_claude_message())

    pipeline, _ = _pipeline(handler, policy=FallbackPolicy(transient_retry_limit=0))
    primary, backup = _accounts()

    result = asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(primary, backup))))

    assert result.headers["x-router-account"] == "claude-backup"
    assert primary.last_error_class == "transient"


def test_event_hook_receives_pipeline_events() -> None:
    events: list[dict[str, Any]] = []
    recorder = Recorder({OPENAI_URL: [httpx.Response(200, json=_openai_completion())]})
    pipeline, _ = _pipeline(recorder, event_hook=events.append)

    asyncio.run(pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(*_accounts()))))

    names = [event["event"] for event in events]
    assert names[0] == "pipeline_received"
    assert "pipeline_attempt" in names
    assert names[-1] == "pipeline_completed"


async def _slow_body(payload: dict[str, Any]) -> Any:
    encoded = json.dumps(payload).encode()
    yield encoded[:5]
    await asyncio.sleep(1)
    yield encoded[5:]


@pytest.mark.parametrize("stall", ["headers", "body"])
def test_cancel_interrupts_a_stalled_upstream(stall: str) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if stall == "headers":
            await asyncio.sleep(1)
            return httpx.Response(200, json=_openai_completion())
        return httpx.Response(
            200, headers={"content-type": "application/json"}, content=_slow_body(_openai_completion())
        )

    pipeline, sink = _pipeline(handler)
    token = CancellationToken()

    async def scenario() -> float:
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        started = time.monotonic()
        with pytest.raises(RequestCancelledError):
            await pipeline.execute_chat("openai", CHAT_BODY, _resolver(_combo(*_accounts())), token)
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())

    assert elapsed < 0.5
    assert [record.status for record in sink.records] == ["cancelled"]
    assert sink.records[0].account_id == "openai-primary"


@pytest.mark.parametrize(
    ("path", "body", "expected_format", "marker"),
    [
        (
            "/v1/messages",
            {"model": "smart", "max_tokens": 32, "messages": [{"role": "user", "content": "hi"}]},
            "claude",
            "content",
        ),
        (
            "",
            {"model": "smart", "contents": [{"role": "user", "parts": [{"text": "hi"}]}]},
            "gemini",
            "candidates",
        ),
        ("/v1/chat/completions", CHAT_BODY, "openai", "choices"),
    ],
)
def test_caller_format_is_detected_when_not_given(
    path: str, body: dict[str, Any], expected_format: str, marker: str
) -> None:
    events: list[dict[str, Any]] = []
    recorder = Recorder({OPENAI_URL: [httpx.Response(200, json=_openai_completion())]})
    pipeline, _ = _pipeline(recorder, event_hook=events.append)

    result = asyncio.run(pipeline.execute_chat(None, body, _resolver(_combo(*_accounts())), path=path))

    assert isinstance(result, WholeResult)
    assert marker in result.body
    detected = [event for event in events if event["event"] == "pipeline_detected"]
    assert detected == [
        {
            "event": "pipeline_detected",
            "request_id": detected[0]["request_id"],
            "state": "detected",
            "caller_format": expected_format,
            "source": "path" if path else "body",
        }
    ]


def test_undetectable_body_fails_before_network() -> None:
    recorder = Recorder({})
    pipeline, _ = _pipeline(recorder)

    resolver = _resolver(_combo(*_accounts()))

    with pytest.raises(UnsupportedFormatError):
        asyncio.run(pipeline.execute_chat(None, {"prompt": "hi"}, resolver, path="/proxy"))
    assert recorder.calls == []
