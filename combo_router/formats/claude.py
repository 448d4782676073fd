from __future__ import annotations

from dataclasses import replace
from typing import Any

from combo_router.errors import ExecutionError, GatewayError, TranslationError
from combo_router.formats._common import (
    as_arguments_text,
    block_extensions,
    extract_text_content,
    merge_adjacent_roles,
    merge_passthrough,
    new_id,
    opaque_part,
    optional_float,
    optional_int,
    parse_arguments,
    require_model,
    require_object,
    request_extensions,
    restore_extensions,
    stop_sequences,
    unmodeled_choice,
)
from combo_router.formats.base import FormatAdapter
from combo_router.models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    ContentPart,
    FinishReason,
    ImagePart,
    OpaquePart,
    ReasoningPart,
    SamplingParams,
    TextPart,
    ToolCallDelta,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    Usage,
    VendorExtensions,
)
from combo_router.sse import SseEvent, encode_sse

FORMAT_KEY = "claude"
DEFAULT_MAX_TOKENS = 4096

KNOWN_FIELDS = {
    "model",
    "messages",
    "system",
    "max_tokens",
    "temperature",
    "top_p",
    "stop_sequences",
    "tools",
    "tool_choice",
    "stream",
}

STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}

FINISH_TO_STOP_REASON: dict[str, str] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "refusal",
    "error": "end_turn",
}

ERROR_TYPES_BY_STATUS: dict[int, str] = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    499: "request_cancelled",
    529: "overloaded_error",
}


def _system_text(raw: Any) -> str | None:
    if raw is None:
        return None
    text = extract_text_content(raw)
    return text or None


def _system_has_extras(raw: Any) -> bool:
    # cache_control and citations live on system blocks.
    return isinstance(raw, list) and any(
        isinstance(block, dict) and set(block) - {"type", "text"} for block in raw
    )


def _image_part(block: dict[str, Any]) -> ImagePart | None:
    source = block.get("source")
    if not isinstance(source, dict):
        return None
    if source.get("type") == "base64" and isinstance(source.get("data"), str):
        return ImagePart(data=source["data"], media_type=source.get("media_type"))
    if source.get("type") == "url" and isinstance(source.get("url"), str):
        return ImagePart(url=source["url"])
    return None


def _tool_result_text(content: Any) -> str:
    if isinstance(content, list):
        return extract_text_content(
            [block for block in content if isinstance(block, dict) and block.get("type") == "text"]
        )
    return extract_text_content(content)


def _message_to_canonical(raw_message: dict[str, Any]) -> list[CanonicalMessage]:
    role = str(raw_message.get("role", "")).strip().lower()
    if role not in {"user", "assistant"}:
        raise TranslationError(f"Unsupported message role '{role}'.", format_key=FORMAT_KEY)
    content = raw_message.get("content")
    if isinstance(content, str):
        return [CanonicalMessage(role=role, parts=(TextPart(text=content),))] if content else []
    if not isinstance(content, list):
        raise TranslationError("Message content must be a string or a list of blocks.", format_key=FORMAT_KEY)

    tool_results: list[CanonicalMessage] = []
    parts: list[ContentPart] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        image = _image_part(block) if block_type == "image" and role == "user" else None
        if block_type == "text" and isinstance(block.get("text"), str):
            parts.append(TextPart(text=block["text"], extras=_block_extras(block, "type", "text")))
        elif image is not None:
            parts.append(
                replace(
                    image,
                    extras=block_extensions(
                        block,
                        format_key=FORMAT_KEY,
                        known_fields={"type"},
                        nested={"source": {"type", "data", "media_type", "url"}},
                    ),
                )
            )
        elif block_type == "tool_use" and role == "assistant":
            parts.append(
                ToolCallPart(
                    id=str(block.get("id") or new_id("toolu_")),
                    name=str(block.get("name") or ""),
                    arguments=as_arguments_text(block.get("input")),
                    extras=_block_extras(block, "type", "id", "name", "input"),
                )
            )
        elif block_type == "tool_result":
            tool_results.append(
                CanonicalMessage(
                    role="tool",
                    parts=(
                        ToolResultPart(
                            tool_call_id=str(block.get("tool_use_id") or ""),
                            content=_tool_result_text(block.get("content")),
                            is_error=bool(block.get("is_error")),
                            extras=_tool_result_extras(block),
                        ),
                    ),
                )
            )
        elif block_type == "thinking" and role == "assistant":
            # The signature is kept so the block can be replayed with tool use.
            parts.append(
                ReasoningPart(text=str(block.get("thinking") or ""), extras=_block_extras(block, "thinking"))
            )
        elif block_type == "redacted_thinking" and role == "assistant":
            parts.append(ReasoningPart(text="", extras=_block_extras(block)))
        else:
            parts.append(opaque_part(block, format_key=FORMAT_KEY))
    messages = list(tool_results)
    if parts:
        messages.append(CanonicalMessage(role=role, parts=tuple(parts)))
    return messages


def _block_extras(block: dict[str, Any], *known: str) -> VendorExtensions | None:
    return block_extensions(block, format_key=FORMAT_KEY, known_fields=known)


def _tool_result_extras(block: dict[str, Any]) -> VendorExtensions | None:
    content = block.get("content")
    plain_text = isinstance(content, list) and all(
        isinstance(item, dict) and item.get("type") == "text" and set(item) <= {"type", "text"}
        for item in content
    )
    if isinstance(content, list) and not plain_text:
        # Images or documents in the result; keep the block list as sent.
        return _block_extras(block, "type", "tool_use_id", "is_error")
    return _block_extras(block, "type", "tool_use_id", "content", "is_error")


def _tool_choice_to_canonical(choice: Any) -> str | None:
    if not isinstance(choice, dict):
        return None
    choice_type = choice.get("type")
    if choice_type == "any":
        return "required"
    if choice_type == "tool" and isinstance(choice.get("name"), str):
        return choice["name"]
    if choice_type in {"auto", "none"}:
        return str(choice_type)
    return None


def request_to_canonical(raw: dict[str, Any]) -> CanonicalRequest:
    payload = require_object(raw, format_key=FORMAT_KEY)
    model = require_model(payload, format_key=FORMAT_KEY)
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        raise TranslationError("Expected 'messages' to be a list.", format_key=FORMAT_KEY)

    messages: list[CanonicalMessage] = []
    for raw_message in raw_messages:
        if not isinstance(raw_message, dict):
            raise TranslationError("Each message must be an object.", format_key=FORMAT_KEY)
        messages.extend(_message_to_canonical(raw_message))

    tools: list[ToolDefinition] = []
    server_tools: list[dict[str, Any]] = []
    for tool in payload.get("tools") or []:
        if not isinstance(tool, dict) or not tool.get("name"):
            continue
        if "input_schema" not in tool and tool.get("type") not in (None, "custom"):
            # Server tools (web search, bash, ...) only make sense to Anthropic.
            server_tools.append(tool)
            continue
        tools.append(
            ToolDefinition(
                name=str(tool["name"]),
                description=tool.get("description"),
                parameters=tool.get("input_schema"),
                extras=_block_extras(tool, "name", "description", "input_schema"),
            )
        )

    tool_choice = _tool_choice_to_canonical(payload.get("tool_choice"))
    known_fields = set(KNOWN_FIELDS)
    if _system_has_extras(payload.get("system")):
        known_fields.discard("system")
    return CanonicalRequest(
        model=model,
        messages=tuple(messages),
        system=_system_text(payload.get("system")),
        sampling=SamplingParams(
            temperature=optional_float(payload.get("temperature")),
            top_p=optional_float(payload.get("top_p")),
            max_tokens=optional_int(payload.get("max_tokens")),
            stop=stop_sequences(payload.get("stop_sequences")),
        ),
        tools=tuple(tools),
        tool_choice=tool_choice,
        stream=bool(payload.get("stream")),
        passthrough=request_extensions(
            payload,
            format_key=FORMAT_KEY,
            known_fields=known_fields,
            choice_extras=unmodeled_choice(payload.get("tool_choice"), tool_choice, {"type", "name"}),
            tools=server_tools,
        ),
    )


def _content_blocks(message: CanonicalMessage) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            if part.text:
                blocks.append(restore_extensions({"type": "text", "text": part.text}, part.extras, FORMAT_KEY))
        elif isinstance(part, ImagePart):
            if part.data:
                source = {"type": "base64", "media_type": part.media_type or "image/png", "data": part.data}
            elif part.url:
                source = {"type": "url", "url": part.url}
            else:
                continue
            blocks.append(restore_extensions({"type": "image", "source": source}, part.extras, FORMAT_KEY))
        elif isinstance(part, ToolCallPart):
            blocks.append(
                restore_extensions(
                    {
                        "type": "tool_use",
                        "id": part.id,
                        "name": part.name,
                        "input": parse_arguments(part.arguments),
                    },
                    part.extras,
                    FORMAT_KEY,
                )
            )
        elif isinstance(part, ToolResultPart):
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.tool_call_id,
                "content": part.content,
            }
            if part.is_error:
                block["is_error"] = True
            raw_content = part.extras.for_format(FORMAT_KEY).get("content") if part.extras else None
            if isinstance(raw_content, list) and _tool_result_text(raw_content) == part.content:
                block["content"] = raw_content
            blocks.append(restore_extensions(block, part.extras, FORMAT_KEY))
        elif isinstance(part, ReasoningPart):
            # Thinking from another vendor carries no valid signature.
            if part.extras is None or part.extras.format != FORMAT_KEY:
                continue
            thinking = dict(part.extras.fields)
            thinking.setdefault("type", "thinking")
            if thinking["type"] == "thinking":
                thinking["thinking"] = part.text
            blocks.append(thinking)
        elif isinstance(part, OpaquePart) and part.extras.format == FORMAT_KEY:
            blocks.append(dict(part.extras.fields))
    return blocks


def _tool_payload(tool: ToolDefinition) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": tool.name}
    if tool.description:
        payload["description"] = tool.description
    payload["input_schema"] = (
        dict(tool.parameters) if tool.parameters is not None else {"type": "object", "properties": {}}
    )
    return restore_extensions(payload, tool.extras, FORMAT_KEY)


def request_from_canonical(request: CanonicalRequest) -> dict[str, Any]:
    raw_messages: list[dict[str, Any]] = []
    for message in request.messages:
        role = "assistant" if message.role == "assistant" else "user"
        blocks = _content_blocks(message)
        if blocks:
            raw_messages.append({"role": role, "content": blocks})

    payload: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.sampling.max_tokens or DEFAULT_MAX_TOKENS,
        "messages": merge_adjacent_roles(raw_messages, content_key="content"),
    }
    if request.system:
        raw_system = request.passthrough.for_format(FORMAT_KEY).get("system")
        if _system_has_extras(raw_system) and _system_text(raw_system) == request.system:
            payload["system"] = raw_system
        else:
            payload["system"] = request.system
    if request.sampling.temperature is not None:
        payload["temperature"] = request.sampling.temperature
    if request.sampling.top_p is not None:
        payload["top_p"] = request.sampling.top_p
    if request.sampling.stop:
        payload["stop_sequences"] = list(request.sampling.stop)
    tools = [_tool_payload(tool) for tool in request.tools] + request.passthrough.tools_for(FORMAT_KEY)
    if tools:
        payload["tools"] = tools
    if request.tool_choice:
        if request.tool_choice == "required":
            payload["tool_choice"] = {"type": "any"}
        elif request.tool_choice in {"auto", "none"}:
            payload["tool_choice"] = {"type": request.tool_choice}
        else:
            payload["tool_choice"] = {"type": "tool", "name": request.tool_choice}
    if request.stream:
        payload["stream"] = True
    return merge_passthrough(payload, request.passthrough, FORMAT_KEY)


def _usage_from(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    prompt = (
        (optional_int(raw.get("input_tokens")) or 0)
        + (optional_int(raw.get("cache_read_input_tokens")) or 0)
        + (optional_int(raw.get("cache_creation_input_tokens")) or 0)
    )
    return Usage.of(prompt, raw.get("output_tokens"))


def response_to_canonical(body: dict[str, Any]) -> CanonicalResponse:
    content = body.get("content")
    if not isinstance(content, list):
        raise TranslationError("Messages response has no content list.", format_key=FORMAT_KEY)
    text_chunks: list[str] = []
    reasoning_chunks: list[str] = []
    tool_calls: list[ToolCallPart] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            text_chunks.append(str(block.get("text") or ""))
        elif block_type == "thinking":
            reasoning_chunks.append(str(block.get("thinking") or ""))
        elif block_type == "tool_use":
            tool_calls.append(
                ToolCallPart(
                    id=str(block.get("id") or new_id("toolu_")),
                    name=str(block.get("name") or ""),
                    arguments=as_arguments_text(block.get("input")),
                )
            )
    return CanonicalResponse(
        id=str(body.get("id") or new_id("msg_")),
        model=str(body.get("model") or ""),
        text="".join(text_chunks),
        reasoning="".join(reasoning_chunks),
        tool_calls=tuple(tool_calls),
        finish_reason=STOP_REASONS.get(str(body.get("stop_reason") or "end_turn"), "stop"),
        usage=_usage_from(body.get("usage")) or Usage(),
    )


def response_from_canonical(response: CanonicalResponse) -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    if response.reasoning:
        content.append({"type": "thinking", "thinking": response.reasoning})
    if response.text or not response.tool_calls:
        content.append({"type": "text", "text": response.text})
    for call in response.tool_calls:
        content.append(
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": parse_arguments(call.arguments),
            }
        )
    return {
        "id": response.id,
        "type": "message",
        "role": "assistant",
        "model": response.model,
        "content": content,
        "stop_reason": FINISH_TO_STOP_REASON.get(response.finish_reason, "end_turn"),
        "stop_sequence": None,
        "usage": {
            "input_tokens": response.usage.prompt_tokens,
            "output_tokens": response.usage.completion_tokens,
        },
    }


class MessagesStreamDecoder:
    def __init__(self) -> None:
        self.terminal = False
        self._tool_index_by_block: dict[int, int] = {}
        self._prompt_tokens = 0
        self._finish: FinishReason | None = None

    def decode(self, event: SseEvent) -> list[CanonicalChunk]:
        data = event.json()
        if data is None:
            return []
        event_type = str(data.get("type") or event.event or "")
        if event_type == "message_start":
            message = data.get("message") if isinstance(data.get("message"), dict) else {}
            usage = _usage_from(message.get("usage"))
            if usage is not None:
                self._prompt_tokens = usage.prompt_tokens
            return [CanonicalChunk(role="assistant", id=message.get("id"), model=message.get("model"))]
        if event_type == "content_block_start":
            block = data.get("content_block") if isinstance(data.get("content_block"), dict) else {}
            block_index = optional_int(data.get("index")) or 0
            if block.get("type") == "tool_use":
                tool_index = len(self._tool_index_by_block)
                self._tool_index_by_block[block_index] = tool_index
                return [
                    CanonicalChunk(
                        tool_calls=(
                            ToolCallDelta(index=tool_index, id=block.get("id"), name=block.get("name")),
                        )
                    )
                ]
            if block.get("type") == "text" and block.get("text"):
                return [CanonicalChunk(text=str(block["text"]))]
            return []
        if event_type == "content_block_delta":
            delta = data.get("delta") if isinstance(data.get("delta"), dict) else {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [CanonicalChunk(text=str(delta.get("text") or ""))]
            if delta_type == "thinking_delta":
                return [CanonicalChunk(reasoning=str(delta.get("thinking") or ""))]
            if delta_type == "input_json_delta":
                block_index = optional_int(data.get("index")) or 0
                tool_index = self._tool_index_by_block.get(block_index)
                if tool_index is None:
                    return []
                return [
                    CanonicalChunk(
                        tool_calls=(
                            ToolCallDelta(index=tool_index, arguments=str(delta.get("partial_json") or "")),
                        )
                    )
                ]
            return []
        if event_type == "message_delta":
            delta = data.get("delta") if isinstance(data.get("delta"), dict) else {}
            stop_reason = delta.get("stop_reason")
            if stop_reason:
                self._finish = STOP_REASONS.get(str(stop_reason), "stop")
            raw_usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
            usage = Usage.of(self._prompt_tokens, raw_usage.get("output_tokens"))
            return [CanonicalChunk(finish_reason=self._finish, usage=usage)]
        if event_type == "message_stop":
            self.terminal = True
            return []
        if event_type == "error":
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            status = 529 if error.get("type") == "overloaded_error" else None
            raise ExecutionError(
                str(error.get("message") or "Upstream stream error."),
                status=status,
                body=data,
                retryable=False,
            )
        return []

    def complete_on_close(self) -> bool:
        return False


class MessagesStreamEncoder:
    def __init__(self, response_id: str, model: str) -> None:
        self._id = response_id
        self._model = model
        self._started = False
        self._block_index = -1
        self._open_block: str | None = None
        self._tool_blocks: dict[int, int] = {}
        self._finish: str | None = None
        self._usage: Usage | None = None

    def _start(self) -> list[bytes]:
        if self._started:
            return []
        self._started = True
        return [
            encode_sse(
                {
                    "type": "message_start",
                    "message": {
                        "id": self._id,
                        "type": "message",
                        "role": "assistant",
                        "model": self._model,
                        "content": [],
                        "stop_reason": None,
                        "stop_sequence": None,
                        "usage": {"input_tokens": 0, "output_tokens": 0},
                    },
                },
                event="message_start",
            )
        ]

    def _close_block(self) -> list[bytes]:
        if self._open_block is None:
            return []
        self._open_block = None
        return [
            encode_sse(
                {"type": "content_block_stop", "index": self._block_index},
                event="content_block_stop",
            )
        ]

    def _open(self, kind: str, block: dict[str, Any]) -> list[bytes]:
        frames = self._close_block()
        self._block_index += 1
        self._open_block = kind
        frames.append(
            encode_sse(
                {"type": "content_block_start", "index": self._block_index, "content_block": block},
                event="content_block_start",
            )
        )
        return frames

    def _delta(self, index: int, delta: dict[str, Any]) -> bytes:
        return encode_sse(
            {"type": "content_block_delta", "index": index, "delta": delta},
            event="content_block_delta",
        )

    def encode(self, chunk: CanonicalChunk) -> list[bytes]:
        frames = self._start()
        if chunk.reasoning:
            if self._open_block != "thinking":
                frames.extend(self._open("thinking", {"type": "thinking", "thinking": ""}))
            frames.append(self._delta(self._block_index, {"type": "thinking_delta", "thinking": chunk.reasoning}))
        if chunk.text:
            if self._open_block != "text":
                frames.extend(self._open("text", {"type": "text", "text": ""}))
            frames.append(self._delta(self._block_index, {"type": "text_delta", "text": chunk.text}))
        for call in chunk.tool_calls:
            if call.index not in self._tool_blocks:
                frames.extend(
                    self._open(
                        "tool_use",
                        {
                            "type": "tool_use",
                            "id": call.id or new_id("toolu_"),
                            "name": call.name or "",
                            "input": {},
                        },
                    )
                )
                self._tool_blocks[call.index] = self._block_index
            if call.arguments:
                frames.append(
                    self._delta(
                        self._tool_blocks[call.index],
                        {"type": "input_json_delta", "partial_json": call.arguments},
                    )
                )
        if chunk.finish_reason:
            self._finish = FINISH_TO_STOP_REASON.get(chunk.finish_reason, "end_turn")
        if chunk.usage is not None:
            self._usage = chunk.usage
        return frames

    def finish(self) -> list[bytes]:
        frames = self._start()
        frames.extend(self._close_block())
        usage = self._usage or Usage()
        frames.append(
            encode_sse(
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": self._finish or "end_turn", "stop_sequence": None},
                    "usage": {
                        "input_tokens": usage.prompt_tokens,
                        "output_tokens": usage.completion_tokens,
                    },
                },
                event="message_delta",
            )
        )
        frames.append(encode_sse({"type": "message_stop"}, event="message_stop"))
        return frames

    def error(self, error: GatewayError) -> list[bytes]:
        return [encode_sse(error_envelope(error), event="error")]


def error_envelope(error: GatewayError) -> dict[str, Any]:
    error_type = ERROR_TYPES_BY_STATUS.get(error.status_code)
    if error_type is None:
        error_type = "api_error" if error.status_code >= 500 else error.error_type
    return {"type": "error", "error": {"type": error_type, "message": error.message}}


def build_adapter() -> FormatAdapter:
    return FormatAdapter(
        key=FORMAT_KEY,
        request_to_canonical=request_to_canonical,
        request_from_canonical=request_from_canonical,
        response_to_canonical=response_to_canonical,
        response_from_canonical=response_from_canonical,
        stream_decoder=MessagesStreamDecoder,
        stream_encoder=MessagesStreamEncoder,
        error_envelope=error_envelope,
    )
