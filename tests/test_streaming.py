from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import httpx
import pytest

from combo_router.errors import ExecutionError, RequestCancelledError, StreamTruncatedError
from combo_router.formats.claude import MessagesStreamDecoder, MessagesStreamEncoder
from combo_router.formats.openai import ChatCompletionsStreamDecoder, ChatCompletionsStreamEncoder
from combo_router.models import CancellationToken, CanonicalResponse, ToolCallPart, Usage
from combo_router.sse import iter_sse_events
from combo_router.streaming import StreamController, StreamMode, replay_whole_as_stream
from combo_router.telemetry import start_telemetry


def _openai_chunk(content: str | None = None, finish: str | None = None, **extra: Any) -> str:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    payload = {"id": "chatcmpl-up", "model": "gpt-4o-mini", "choices": [{"index": 0, "delta": delta, "finish_reason": finish}]}
    payload.update(extra)
    return json.dumps(payload)


def _wire(*payloads: str) -> bytes:
    return "".join(f"data: {payload}\n\n" for payload in payloads).encode()


async def _events(wire: bytes, *, chunk_size: int = 7) -> AsyncIterator[Any]:
    async def chunks() -> AsyncIterator[bytes]:
        for index in range(0, len(wire), chunk_size):
            yield wire[index : index + chunk_size]

    async for event in iter_sse_events(chunks()):
        yield event


class Clock:
    def __init__(self, start: float = 1000.0, step: float = 0.1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def _controller(decoder: Any, **kwargs: Any) -> StreamController:
    return StreamController(decoder=decoder, telemetry=start_telemetry(now=1000.0), clock=Clock(), **kwargs)


async def _collect(frames: AsyncIterator[bytes]) -> list[bytes]:
    return [frame async for frame in frames]


def _sse_payloads(frames: list[bytes]) -> list[Any]:
    payloads = []
    for line in b"".join(frames).decode().splitlines():
        if line.startswith("data: "):
            data = line[len("data: ") :]
            payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


def test_translate_openai_stream_into_claude_events() -> None:
    wire = _wire(
        _openai_chunk("Hel"),
        _openai_chunk("lo"),
        _openai_chunk(finish="stop"),
        json.dumps({"id": "chatcmpl-up", "choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2}}),
        "[DONE]",
    )
    controller = _controller(ChatCompletionsStreamDecoder())

    frames = asyncio.run(
        _collect(controller.run(_events(wire), StreamMode.TRANSLATE, MessagesStreamEncoder("msg_1", "smart")))
    )

    events = _sse_payloads(frames)
    kinds = [event["type"] for event in events]
    assert kinds[0] == "message_start"
    assert kinds[-1] == "message_stop"
    text = "".join(
        event["delta"]["text"] for event in events if event["type"] == "content_block_delta"
    )
    assert text == "Hello"
    assert controller.telemetry.completed is True
    assert controller.telemetry.prompt_tokens == 9
    assert controller.telemetry.completion_tokens == 2
    assert controller.telemetry.chunk_count == 5


def test_passthrough_forwards_upstream_bytes_unchanged() -> None:
    wire = _wire(_openai_chunk("hi"), _openai_chunk(finish="stop"), "[DONE]")
    controller = _controller(ChatCompletionsStreamDecoder())

    frames = asyncio.run(
        _collect(
            controller.run(_events(wire), StreamMode.PASSTHROUGH, ChatCompletionsStreamEncoder("id", "m"))
        )
    )

    assert b"".join(frames) == wire
    assert controller.accumulator.text == ["hi"]


def test_stream_without_terminal_event_is_truncated() -> None:
    wire = (
        b'event: message_start\ndata: {"type":"message_start","message":{"id":"m","usage":{"input_tokens":3}}}\n\n'
        b'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,'
        b'"delta":{"type":"text_delta","text":"partial"}}\n\n'
    )
    controller = _controller(MessagesStreamDecoder())
    frames: list[bytes] = []

    async def scenario() -> None:
        async for frame in controller.run(_events(wire), StreamMode.TRANSLATE, ChatCompletionsStreamEncoder("id", "m")):
            frames.append(frame)

    with pytest.raises(StreamTruncatedError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.chunk_count == 2
    assert controller.telemetry.error == "truncated"
    assert controller.telemetry.completed is False
    # Partial frames reached the caller before the failure.
    assert any(b"partial" in frame for frame in frames)


def test_openai_stream_closing_after_finish_reason_counts_as_complete() -> None:
    wire = _wire(_openai_chunk("done"), _openai_chunk(finish="stop"))
    controller = _controller(ChatCompletionsStreamDecoder())

    frames = asyncio.run(
        _collect(controller.run(_events(wire), StreamMode.TRANSLATE, ChatCompletionsStreamEncoder("id", "m")))
    )

    assert frames[-1] == b"data: [DONE]\n\n"
    assert controller.telemetry.completed is True


def test_cancelled_stream_closes_upstream_and_stops() -> None:
    token = CancellationToken()
    closed: list[str] = []

    async def upstream() -> AsyncIterator[Any]:
        try:
            async for event in _events(_wire(_openai_chunk("a"), _openai_chunk("b"), _openai_chunk(finish="stop"))):
                yield event
        finally:
            closed.append("events")

    controller = _controller(
        ChatCompletionsStreamDecoder(), cancel_token=token, on_close=lambda: closed.append("callback")
    )
    frames: list[bytes] = []

    async def scenario() -> None:
        async for frame in controller.run(upstream(), StreamMode.TRANSLATE, ChatCompletionsStreamEncoder("id", "m")):
            frames.append(frame)
            token.cancel()

    with pytest.raises(RequestCancelledError):
        asyncio.run(scenario())

    assert closed == ["events", "callback"]
    assert controller.telemetry.error == "cancelled"
    assert not any(b'"b"' in frame for frame in frames)


def test_transport_error_mid_stream_becomes_execution_error() -> None:
    async def upstream() -> AsyncIterator[Any]:
        async for event in _events(_wire(_openai_chunk("a"))):
            yield event
        raise httpx.ReadError("connection reset")

    controller = _controller(ChatCompletionsStreamDecoder())

    with pytest.raises(ExecutionError) as exc_info:
        asyncio.run(
            _collect(controller.run(upstream(), StreamMode.TRANSLATE, ChatCompletionsStreamEncoder("id", "m")))
        )

    assert exc_info.value.kind == "network"
    assert controller.telemetry.error == "transport_network"


def test_aggregate_builds_whole_response_with_tool_calls() -> None:
    tool_start = {
        "choices": [
            {
                "index": 0,
                "delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "lookup", "arguments": '{"q":'}}]},
                "finish_reason": None,
            }
        ]
    }
    tool_rest = {
        "choices": [
            {"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"x"}'}}]}, "finish_reason": None}
        ]
    }
    wire = _wire(
        _openai_chunk("thinking about it"),
        json.dumps(tool_start),
        json.dumps(tool_rest),
        _openai_chunk(finish="tool_calls"),
        "[DONE]",
    )
    controller = _controller(ChatCompletionsStreamDecoder(), prompt_estimate=11)

    response = asyncio.run(controller.aggregate(_events(wire), response_id="fallback-id", model="smart"))

    assert response.id == "chatcmpl-up"
    assert response.model == "gpt-4o-mini"
    assert response.text == "thinking about it"
    assert response.tool_calls == (ToolCallPart(id="call_1", name="lookup", arguments='{"q":"x"}'),)
    assert response.finish_reason == "tool_calls"
    # Upstream reported no usage, so both sides are estimated.
    assert response.usage.prompt_tokens == 11
    assert response.usage.completion_tokens > 0


def test_translate_emits_estimated_usage_frame_when_upstream_reports_none() -> None:
    wire = _wire(_openai_chunk("twelve chars"), _openai_chunk(finish="stop"), "[DONE]")
    controller = _controller(ChatCompletionsStreamDecoder(), prompt_estimate=4)

    frames = asyncio.run(
        _collect(controller.run(_events(wire), StreamMode.TRANSLATE, ChatCompletionsStreamEncoder("id", "m")))
    )

    usage_events = [event for event in _sse_payloads(frames) if isinstance(event, dict) and "usage" in event]
    assert usage_events[-1]["usage"] == {"prompt_tokens": 4, "completion_tokens": 3, "total_tokens": 7}


def test_replay_whole_response_as_stream() -> None:
    response = CanonicalResponse(
        id="resp-1",
        model="smart",
        text="hi there",
        finish_reason="stop",
        usage=Usage.of(5, 2),
    )

    frames = asyncio.run(_collect(replay_whole_as_stream(response, ChatCompletionsStreamEncoder("resp-1", "smart"))))
    payloads = _sse_payloads(frames)

    assert payloads[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert payloads[1]["choices"][0]["delta"] == {"content": "hi there"}
    assert payloads[2]["choices"][0]["finish_reason"] == "stop"
    assert payloads[3]["usage"]["total_tokens"] == 7
    assert payloads[-1] == "[DONE]"


def test_replay_honours_cancellation() -> None:
    token = CancellationToken()
    token.cancel()
    response = CanonicalResponse(id="r", model="m", text="x")

    with pytest.raises(RequestCancelledError):
        asyncio.run(
            _collect(replay_whole_as_stream(response, ChatCompletionsStreamEncoder("r", "m"), cancel_token=token))
        )
