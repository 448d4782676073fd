from __future__ import annotations

import asyncio
import base64
import gzip
import json

import pytest

from combo_router.cursor_protocol import (
    FLAG_COMPRESSED,
    FLAG_END_STREAM,
    ConnectFrameParser,
    cursor_checksum,
    decode_message,
    decode_varint,
    encode_frame,
    encode_message,
    encode_varint,
    end_stream_error,
    field_text,
    first_field,
    iter_connect_frames,
)
from combo_router.errors import ErrorClass, ExecutionError
from combo_router.fallback import classify
from combo_router.formats import cursor
from combo_router.models import CanonicalMessage, CanonicalRequest, TextPart, ToolCallPart


def _response_frame(text: str = "", thinking: str = "") -> bytes:
    inner: list[tuple[int, object]] = []
    if text:
        inner.append((cursor.RESPONSE_TEXT_FIELD, text))
    if thinking:
        inner.append((cursor.RESPONSE_THINKING_FIELD, [(cursor.THINKING_TEXT_FIELD, thinking)]))
    return encode_frame(encode_message([(cursor.RESPONSE_WRAPPER_FIELD, inner)]))


@pytest.mark.parametrize("value", [0, 1, 127, 128, 300, 2**32, 2**63 - 1])
def test_varint_encoding_is_reversible(value: int) -> None:
    encoded = encode_varint(value)
    assert decode_varint(encoded) == (value, len(encoded))


def test_varint_known_bytes() -> None:
    assert encode_varint(300) == b"\xac\x02"
    assert len(encode_varint(-1)) == 10


def test_decode_varint_rejects_truncated_input() -> None:
    with pytest.raises(ValueError):
        decode_varint(b"\x80")


def test_encode_message_orders_fields_and_skips_none() -> None:
    payload = encode_message([(2, "b"), (1, 5), (3, None), (4, [(1, "nested")])])
    fields = decode_message(payload)

    assert list(fields) == [1, 2, 4]
    assert first_field(fields, 1) == 5
    assert field_text(fields, 2) == "b"
    nested = decode_message(first_field(fields, 4))
    assert field_text(nested, 1) == "nested"
    assert field_text(fields, 9) == ""


def test_frame_parser_handles_split_and_coalesced_chunks() -> None:
    first = encode_frame(b"hello")
    second = encode_frame(b"world", FLAG_COMPRESSED)
    end = encode_frame(json.dumps({}).encode(), FLAG_END_STREAM)
    wire = first + second + end

    parser = ConnectFrameParser()
    frames = parser.feed(wire[:3])
    assert frames == []
    assert parser.pending == 3
    frames = parser.feed(wire[3:])

    assert [frame.payload for frame in frames] == [b"hello", b"world", b"{}"]
    assert frames[1].raw == second
    assert frames[2].is_end_stream
    assert parser.pending == 0


def test_compressed_frame_length_counts_gzip_bytes() -> None:
    frame = encode_frame(b"x" * 100, FLAG_COMPRESSED)
    length = int.from_bytes(frame[1:5], "big")
    assert length == len(frame) - 5
    assert gzip.decompress(frame[5:]) == b"x" * 100


def test_frame_parser_rejects_bad_gzip() -> None:
    bogus = bytes([FLAG_COMPRESSED]) + (4).to_bytes(4, "big") + b"nope"
    with pytest.raises(ExecutionError) as exc_info:
        ConnectFrameParser().feed(bogus)
    assert exc_info.value.kind == "invalid_response"


def test_iter_connect_frames_reassembles_byte_chunks() -> None:
    wire = encode_frame(b"abc") + encode_frame(b"def")

    async def chunks():
        for index in range(len(wire)):
            yield wire[index : index + 1]

    async def collect() -> list[bytes]:
        return [frame.payload async for frame in iter_connect_frames(chunks())]

    assert asyncio.run(collect()) == [b"abc", b"def"]


@pytest.mark.parametrize(
    ("code", "status", "error_class"),
    [
        ("resource_exhausted", 429, ErrorClass.QUOTA_EXCEEDED),
        ("unauthenticated", 401, ErrorClass.AUTH_EXPIRED),
        ("invalid_argument", 400, ErrorClass.FATAL),
        ("unavailable", 503, ErrorClass.TRANSIENT),
        ("internal", 500, ErrorClass.TRANSIENT),
    ],
)
def test_end_stream_error_maps_connect_codes(code: str, status: int, error_class: ErrorClass) -> None:
    trailer = encode_frame(json.dumps({"error": {"code": code, "message": "nope"}}).encode(), FLAG_END_STREAM)
    frame = ConnectFrameParser().feed(trailer)[0]
    error = end_stream_error(frame)

    assert error is not None
    assert error.status == status
    assert error.message == "nope"
    assert classify(error) is error_class


def test_end_stream_without_error_is_clean() -> None:
    frame = ConnectFrameParser().feed(encode_frame(b"{}", FLAG_END_STREAM))[0]
    assert end_stream_error(frame) is None


def test_checksum_is_deterministic_for_fixed_clock() -> None:
    now_ms = 1_700_000_000_000
    first = cursor_checksum("machine", now_ms=now_ms)
    second = cursor_checksum("machine", now_ms=now_ms)
    assert first == second
    prefix = first[: -len("machine")]
    assert first.endswith("machine")
    assert len(base64.urlsafe_b64decode(prefix)) == 6

    with_mac = cursor_checksum("machine", "mac", now_ms=now_ms)
    assert with_mac == f"{prefix}machine/mac"


def test_checksum_changes_with_time_bucket() -> None:
    assert cursor_checksum("m", now_ms=1_000_000_000) != cursor_checksum("m", now_ms=2_000_000_000)


def test_request_message_carries_model_instruction_and_flattened_tools() -> None:
    request = CanonicalRequest(
        model="claude-4-sonnet",
        system="be terse",
        messages=(
            CanonicalMessage(role="user", parts=(TextPart("hi"),)),
            CanonicalMessage(role="assistant", parts=(ToolCallPart(id="c1", name="grep", arguments='{"q":"x"}'),)),
        ),
    )
    payload = cursor.request_message(request, conversation_id="conv-1")
    wrapper = decode_message(first_field(decode_message(payload), cursor.REQUEST_WRAPPER_FIELD))

    messages = [decode_message(raw) for raw in wrapper[cursor.REQUEST_MESSAGES_FIELD]]
    assert field_text(messages[0], cursor.MESSAGE_CONTENT_FIELD) == "hi"
    assert first_field(messages[0], cursor.MESSAGE_ROLE_FIELD) == cursor.ROLE_USER
    assert first_field(messages[1], cursor.MESSAGE_ROLE_FIELD) == cursor.ROLE_ASSISTANT
    assert "[tool call grep]" in field_text(messages[1], cursor.MESSAGE_CONTENT_FIELD)
    model = decode_message(first_field(wrapper, cursor.REQUEST_MODEL_FIELD))
    assert field_text(model, 1) == "claude-4-sonnet"
    instruction = decode_message(first_field(wrapper, cursor.REQUEST_INSTRUCTION_FIELD))
    assert field_text(instruction, 1) == "be terse"
    assert field_text(wrapper, cursor.REQUEST_CONVERSATION_ID_FIELD) == "conv-1"


def test_stream_decoder_emits_text_thinking_and_stop() -> None:
    decoder = cursor.ConnectStreamDecoder()
    parser = ConnectFrameParser()
    frames = parser.feed(
        _response_frame(thinking="pondering")
        + _response_frame(text="Hello")
        + encode_frame(b"{}", FLAG_END_STREAM)
    )

    chunks = [chunk for frame in frames for chunk in decoder.decode(frame)]

    assert chunks[0].role == "assistant"
    assert chunks[0].reasoning == "pondering"
    assert chunks[1].text == "Hello"
    assert chunks[1].role is None
    assert chunks[-1].finish_reason == "stop"
    assert decoder.terminal is True


def test_stream_decoder_raises_end_stream_error() -> None:
    decoder = cursor.ConnectStreamDecoder()
    frame = ConnectFrameParser().feed(
        encode_frame(json.dumps({"error": {"code": "resource_exhausted"}}).encode(), FLAG_END_STREAM)
    )[0]
    with pytest.raises(ExecutionError) as exc_info:
        decoder.decode(frame)
    assert exc_info.value.status == 429


def test_stream_decoder_rejects_malformed_payload() -> None:
    decoder = cursor.ConnectStreamDecoder()
    frame = ConnectFrameParser().feed(encode_frame(b"\x0a\xff"))[0]
    with pytest.raises(ExecutionError) as exc_info:
        decoder.decode(frame)
    assert exc_info.value.kind == "invalid_response"
