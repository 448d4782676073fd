from __future__ import annotations

from typing import Any
from uuid import uuid4

from combo_router.cursor_protocol import (
    ConnectFrame,
    decode_message,
    encode_frame,
    encode_message,
    end_stream_error,
    field_text,
    first_field,
)
from combo_router.errors import ExecutionError
from combo_router.formats._common import as_arguments_text
from combo_router.formats.base import FormatAdapter
from combo_router.models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    ImagePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

FORMAT_KEY = "cursor"

ROLE_USER = 1
ROLE_ASSISTANT = 2

# Request message layout.
REQUEST_WRAPPER_FIELD = 1
REQUEST_MESSAGES_FIELD = 1
REQUEST_INSTRUCTION_FIELD = 3
REQUEST_MODEL_FIELD = 5
REQUEST_CONVERSATION_ID_FIELD = 23
MESSAGE_CONTENT_FIELD = 1
MESSAGE_ROLE_FIELD = 2
MESSAGE_ID_FIELD = 13

# Response message layout.
RESPONSE_WRAPPER_FIELD = 2
RESPONSE_TEXT_FIELD = 1
RESPONSE_THINKING_FIELD = 25
THINKING_TEXT_FIELD = 1


def _flatten_message(message: CanonicalMessage) -> str:
    # Tool calls and results have no slot in the RPC schema; they travel as text.
    chunks: list[str] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            chunks.append(part.text)
        elif isinstance(part, ToolCallPart):
            chunks.append(f"[tool call {part.name}] {as_arguments_text(part.arguments)}")
        elif isinstance(part, ToolResultPart):
            label = part.name or part.tool_call_id
            chunks.append(f"[tool result {label}] {part.content}")
        elif isinstance(part, ImagePart):
            continue
    return "\n".join(chunk for chunk in chunks if chunk)


def _message_fields(message: CanonicalMessage) -> list[tuple[int, Any]]:
    role = ROLE_ASSISTANT if message.role == "assistant" else ROLE_USER
    return [
        (MESSAGE_CONTENT_FIELD, _flatten_message(message)),
        (MESSAGE_ROLE_FIELD, role),
        (MESSAGE_ID_FIELD, str(uuid4())),
    ]


def request_message(request: CanonicalRequest, *, conversation_id: str | None = None) -> bytes:
    fields: list[tuple[int, Any]] = [
        (REQUEST_MESSAGES_FIELD, _message_fields(message)) for message in request.messages
    ]
    if request.system:
        fields.append((REQUEST_INSTRUCTION_FIELD, [(1, request.system)]))
    fields.append((REQUEST_MODEL_FIELD, [(1, request.model)]))
    fields.append((REQUEST_CONVERSATION_ID_FIELD, conversation_id or str(uuid4())))
    return encode_message([(REQUEST_WRAPPER_FIELD, encode_message(fields))])


def request_from_canonical(request: CanonicalRequest) -> bytes:
    return encode_frame(request_message(request))


class ConnectStreamDecoder:
    def __init__(self) -> None:
        self.terminal = False
        self._started = False

    @staticmethod
    def _decode(payload: bytes) -> dict[int, list[Any]]:
        try:
            return decode_message(payload)
        except ValueError as exc:
            raise ExecutionError(
                f"Malformed RPC frame from upstream: {exc}",
                kind="invalid_response",
                retryable=False,
            ) from exc

    def decode(self, event: ConnectFrame) -> list[CanonicalChunk]:
        if event.is_end_stream:
            self.terminal = True
            error = end_stream_error(event)
            if error is not None:
                raise error
            return [CanonicalChunk(finish_reason="stop")]

        fields = self._decode(event.payload)
        wrapped = first_field(fields, RESPONSE_WRAPPER_FIELD)
        if isinstance(wrapped, (bytes, bytearray)):
            fields = self._decode(bytes(wrapped))
        text = field_text(fields, RESPONSE_TEXT_FIELD)
        reasoning = ""
        thinking = first_field(fields, RESPONSE_THINKING_FIELD)
        if isinstance(thinking, (bytes, bytearray)):
            reasoning = field_text(self._decode(bytes(thinking)), THINKING_TEXT_FIELD)

        role = None
        if not self._started and (text or reasoning):
            self._started = True
            role = "assistant"
        chunk = CanonicalChunk(role=role, text=text, reasoning=reasoning)
        return [] if chunk.is_empty else [chunk]

    def complete_on_close(self) -> bool:
        return False


def build_adapter() -> FormatAdapter:
    return FormatAdapter(
        key=FORMAT_KEY,
        request_to_canonical=None,
        request_from_canonical=request_from_canonical,
        response_to_canonical=None,
        response_from_canonical=None,
        stream_decoder=ConnectStreamDecoder,
        stream_encoder=None,
    )
