from __future__ import annotations

import asyncio

from combo_router.sse import SseParser, encode_done, encode_sse, iter_sse_events


def test_parser_dispatches_on_blank_line_across_feeds() -> None:
    parser = SseParser()
    assert parser.feed("event: message_start\nda") == []
    events = parser.feed('ta: {"a":1}\r\n\r\n')

    assert len(events) == 1
    assert events[0].event == "message_start"
    assert events[0].json() == {"a": 1}
    assert events[0].raw == b'event: message_start\ndata: {"a":1}\n\n'


def test_parser_joins_multiline_data_and_ignores_comments() -> None:
    parser = SseParser()
    events = parser.feed(": keepalive\ndata: first\ndata: second\n\n")

    assert [event.data for event in events] == ["first\nsecond"]
    assert events[0].json() is None


def test_flush_emits_trailing_event_without_blank_line() -> None:
    parser = SseParser()
    assert parser.feed("data: [DONE]") == []
    events = parser.flush()

    assert len(events) == 1
    assert events[0].is_done


def test_iter_sse_events_handles_split_utf8() -> None:
    payload = 'data: {"text":"héllo"}\n\n'.encode()
    split = payload.index("é".encode()) + 1

    async def chunks():
        yield payload[:split]
        yield payload[split:]

    async def collect():
        return [event async for event in iter_sse_events(chunks())]

    events = asyncio.run(collect())
    assert events[0].json() == {"text": "héllo"}


def test_encoders() -> None:
    assert encode_sse({"a": 1}) == b'data: {"a":1}\n\n'
    assert encode_sse({"type": "ping"}, event="ping") == b'event: ping\ndata: {"type":"ping"}\n\n'
    assert encode_done() == b"data: [DONE]\n\n"
