from __future__ import annotations

import base64
import gzip
import json
import struct
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Union

from combo_router.errors import ExecutionError

FLAG_COMPRESSED = 0x01
FLAG_END_STREAM = 0x02

_HEADER = struct.Struct(">BI")

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_FIXED32 = 5

CHECKSUM_SEED = 165

# Connect end-stream error codes mapped onto HTTP statuses for classification.
CONNECT_ERROR_STATUS: dict[str, int] = {
    "resource_exhausted": 429,
    "unauthenticated": 401,
    "permission_denied": 403,
    "invalid_argument": 400,
    "not_found": 404,
    "failed_precondition": 400,
    "unavailable": 503,
    "deadline_exceeded": 504,
}

FieldValue = Union[int, bool, str, bytes, "list[tuple[int, Any]]"]


def encode_varint(value: int) -> bytes:
    if value < 0:
        # Negative int64 values use the 10-byte two's complement form.
        value &= (1 << 64) - 1
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buffer: bytes, position: int = 0) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if position >= len(buffer):
            raise ValueError("Truncated varint.")
        byte = buffer[position]
        position += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, position
        shift += 7
        if shift >= 70:
            raise ValueError("Varint is too long.")


def _encode_field(number: int, value: FieldValue) -> bytes:
    if isinstance(value, bool):
        return encode_varint(number << 3 | WIRE_VARINT) + encode_varint(int(value))
    if isinstance(value, int):
        return encode_varint(number << 3 | WIRE_VARINT) + encode_varint(value)
    if isinstance(value, str):
        payload = value.encode("utf-8")
    elif isinstance(value, (bytes, bytearray)):
        payload = bytes(value)
    elif isinstance(value, list):
        payload = encode_message(value)
    else:
        raise TypeError(f"Unsupported protobuf field value for field {number}: {type(value).__name__}")
    return encode_varint(number << 3 | WIRE_LENGTH_DELIMITED) + encode_varint(len(payload)) + payload


def encode_message(fields: Iterable[tuple[int, FieldValue | None]]) -> bytes:
    """Encode ``(field_number, value)`` pairs in ascending field order.

    Nested messages are given as lists of pairs. ``None`` values are skipped and
    repeated fields keep their relative order.
    """
    ordered = sorted(
        ((number, value) for number, value in fields if value is not None),
        key=lambda item: item[0],
    )
    return b"".join(_encode_field(number, value) for number, value in ordered)


def decode_message(buffer: bytes) -> dict[int, list[Any]]:
    """Decode a protobuf message into ``{field_number: [values]}``.

    Varints decode to ints and length-delimited fields stay as bytes; callers
    decode nested messages on demand.
    """
    fields: dict[int, list[Any]] = {}
    position = 0
    while position < len(buffer):
        key, position = decode_varint(buffer, position)
        number, wire_type = key >> 3, key & 0x07
        if wire_type == WIRE_VARINT:
            value, position = decode_varint(buffer, position)
        elif wire_type == WIRE_LENGTH_DELIMITED:
            length, position = decode_varint(buffer, position)
            end = position + length
            if end > len(buffer):
                raise ValueError(f"Truncated length-delimited field {number}.")
            value = buffer[position:end]
            position = end
        elif wire_type == WIRE_FIXED64:
            value = buffer[position : position + 8]
            position += 8
        elif wire_type == WIRE_FIXED32:
            value = buffer[position : position + 4]
            position += 4
        else:
            raise ValueError(f"Unsupported protobuf wire type {wire_type} for field {number}.")
        fields.setdefault(number, []).append(value)
    return fields


def first_field(fields: dict[int, list[Any]], number: int) -> Any:
    values = fields.get(number)
    return values[0] if values else None


def field_text(fields: dict[int, list[Any]], number: int) -> str:
    value = first_field(fields, number)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return ""


@dataclass(frozen=True, slots=True)
class ConnectFrame:
    flags: int
    payload: bytes
    raw: bytes = b""

    @property
    def is_end_stream(self) -> bool:
        return bool(self.flags & FLAG_END_STREAM)

    def json(self) -> dict[str, Any] | None:
        if not self.payload:
            return None
        try:
            parsed = json.loads(self.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None


def encode_frame(payload: bytes, flags: int = 0) -> bytes:
    if flags & FLAG_COMPRESSED:
        payload = gzip.compress(payload)
    return _HEADER.pack(flags, len(payload)) + payload


class ConnectFrameParser:
    """Incremental parser for ``flags:u8 | length:u32 | payload`` frames."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[ConnectFrame]:
        self._buffer.extend(data)
        frames: list[ConnectFrame] = []
        while len(self._buffer) >= _HEADER.size:
            flags, length = _HEADER.unpack_from(self._buffer, 0)
            end = _HEADER.size + length
            if len(self._buffer) < end:
                break
            raw = bytes(self._buffer[:end])
            payload = raw[_HEADER.size :]
            del self._buffer[:end]
            if flags & FLAG_COMPRESSED:
                try:
                    payload = gzip.decompress(payload)
                except (OSError, EOFError) as exc:
                    raise ExecutionError(
                        f"Invalid gzip frame from upstream: {exc}",
                        kind="invalid_response",
                        retryable=False,
                    ) from exc
            frames.append(ConnectFrame(flags=flags, payload=payload, raw=raw))
        return frames


async def iter_connect_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[ConnectFrame]:
    parser = ConnectFrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame


def end_stream_error(frame: ConnectFrame) -> ExecutionError | None:
    trailer = frame.json()
    if trailer is None:
        return None
    error = trailer.get("error")
    if not isinstance(error, dict):
        return None
    code = str(error.get("code") or "unknown").lower()
    message = str(error.get("message") or f"Upstream RPC failed with {code}.")
    status = CONNECT_ERROR_STATUS.get(code, 500)
    return ExecutionError(message, status=status, body=trailer)


def cursor_checksum(
    machine_id: str,
    mac_machine_id: str | None = None,
    *,
    now_ms: int | None = None,
) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    timestamp = int(now_ms // 1_000_000)
    data = bytearray(timestamp.to_bytes(6, "big"))
    key = CHECKSUM_SEED
    for index in range(len(data)):
        data[index] = ((data[index] ^ key) + index) & 0xFF
        key = data[index]
    encoded = base64.urlsafe_b64encode(bytes(data)).decode("ascii")
    if mac_machine_id:
        return f"{encoded}{machine_id}/{mac_machine_id}"
    return f"{encoded}{machine_id}"
