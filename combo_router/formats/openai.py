from __future__ import annotations

from dataclasses import replace
from typing import Any

from combo_router.errors import ExecutionError, GatewayError, TranslationError
from combo_router.formats._common import (
    as_arguments_text,
    block_extensions,
    extract_text_content,
    merge_passthrough,
    new_id,
    now_seconds,
    opaque_part,
    optional_float,
    optional_int,
    parse_data_url,
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
    SamplingParams,
    TextPart,
    ToolCallDelta,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    Usage,
    VendorExtensions,
)
from combo_router.sse import SseEvent, encode_done, encode_sse

FORMAT_KEY = "openai"

KNOWN_FIELDS = {
    "model",
    "messages",
    "temperature",
    "top_p",
    "max_tokens",
    "stop",
    "seed",
    "tools",
    "tool_choice",
    "functions",
    "function_call",
    "stream",
    "stream_options",
}

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}


MESSAGE_FIELDS: dict[str, set[str]] = {
    "user": {"role", "content"},
    "assistant": {"role", "content", "tool_calls", "function_call"},
    "tool": {"role", "content", "tool_call_id", "name"},
    "function": {"role", "content", "name"},
}


def _parts_from_content(content: Any) -> list[ContentPart]:
    if isinstance(content, str):
        return [TextPart(text=content)] if content else []
    if not isinstance(content, list):
        text = extract_text_content(content)
        return [TextPart(text=text)] if text else []

    parts: list[ContentPart] = []
    for item in content:
        if isinstance(item, str):
            if item:
                parts.append(TextPart(text=item))
            continue
        if not isinstance(item, dict):
            continue
        item_type = str(item.get("type", "text")).strip().lower()
        if item_type == "image_url":
            image_url = item.get("image_url")
            if isinstance(image_url, dict):
                image_url = image_url.get("url")
            if isinstance(image_url, str) and image_url.strip():
                extras = block_extensions(
                    item, format_key=FORMAT_KEY, known_fields={"type"}, nested={"image_url": {"url"}}
                )
                parts.append(replace(parse_data_url(image_url.strip()), extras=extras))
            continue
        if item_type == "text":
            text = item.get("text")
            if isinstance(text, str) and text:
                extras = block_extensions(item, format_key=FORMAT_KEY, known_fields={"type", "text"})
                parts.append(TextPart(text=text, extras=extras))
            continue
        # Audio, files and other inputs have no canonical form.
        parts.append(opaque_part(item, format_key=FORMAT_KEY))
    return parts


def _tool_calls_from_message(message: dict[str, Any]) -> list[ToolCallPart]:
    calls: list[ToolCallPart] = []
    raw_calls = message.get("tool_calls")
    if isinstance(raw_calls, list):
        for index, call in enumerate(raw_calls):
            if not isinstance(call, dict):
                continue
            function = call.get("function")
            if not isinstance(function, dict):
                raise TranslationError(
                    "Assistant tool call is missing its 'function' object.",
                    format_key=FORMAT_KEY,
                )
            call_id = call.get("id")
            calls.append(
                ToolCallPart(
                    id=call_id if isinstance(call_id, str) and call_id else f"call_{index}",
                    name=str(function.get("name") or ""),
                    arguments=as_arguments_text(function.get("arguments")),
                    extras=block_extensions(
                        call,
                        format_key=FORMAT_KEY,
                        known_fields={"id", "type"},
                        nested={"function": {"name", "arguments"}},
                    ),
                )
            )
    legacy = message.get("function_call")
    if isinstance(legacy, dict) and not calls:
        name = str(legacy.get("name") or "")
        calls.append(
            ToolCallPart(id=name or "call_0", name=name, arguments=as_arguments_text(legacy.get("arguments")))
        )
    return calls


def _tool_choice_to_canonical(choice: Any) -> str | None:
    if isinstance(choice, str):
        return choice
    if isinstance(choice, dict):
        function = choice.get("function")
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            return function["name"]
        name = choice.get("name")
        if isinstance(name, str):
            return name
    return None


def _message_extras(raw_message: dict[str, Any], role: str) -> VendorExtensions | None:
    return block_extensions(raw_message, format_key=FORMAT_KEY, known_fields=MESSAGE_FIELDS[role])


def _tools_to_canonical(payload: dict[str, Any]) -> tuple[list[ToolDefinition], list[dict[str, Any]]]:
    tools: list[ToolDefinition] = []
    vendor_tools: list[dict[str, Any]] = []
    raw_tools = payload.get("tools")
    if isinstance(raw_tools, list):
        for tool in raw_tools:
            if not isinstance(tool, dict):
                continue
            if str(tool.get("type") or "function") != "function":
                vendor_tools.append(tool)
                continue
            function = tool.get("function")
            if not isinstance(function, dict) or not function.get("name"):
                raise TranslationError("Tool definitions need a function name.", format_key=FORMAT_KEY)
            tools.append(
                ToolDefinition(
                    name=str(function["name"]),
                    description=function.get("description"),
                    parameters=function.get("parameters"),
                    extras=block_extensions(
                        tool,
                        format_key=FORMAT_KEY,
                        known_fields={"type"},
                        nested={"function": {"name", "description", "parameters"}},
                    ),
                )
            )
    elif isinstance(payload.get("functions"), list):
        for function in payload["functions"]:
            if isinstance(function, dict) and function.get("name"):
                tools.append(
                    ToolDefinition(
                        name=str(function["name"]),
                        description=function.get("description"),
                        parameters=function.get("parameters"),
                    )
                )
    return tools, vendor_tools


def request_to_canonical(raw: dict[str, Any]) -> CanonicalRequest:
    payload = require_object(raw, format_key=FORMAT_KEY)
    model = require_model(payload, format_key=FORMAT_KEY)
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        raise TranslationError("Expected 'messages' to be a list.", format_key=FORMAT_KEY)

    system_chunks: list[str] = []
    system_roles: set[str] = set()
    messages: list[CanonicalMessage] = []
    for raw_message in raw_messages:
        if not isinstance(raw_message, dict):
            raise TranslationError("Each message must be an object.", format_key=FORMAT_KEY)
        role = str(raw_message.get("role", "")).strip().lower()
        content = raw_message.get("content")
        if role in {"system", "developer"}:
            text = extract_text_content(content)
            if text:
                system_chunks.append(text)
                system_roles.add(role)
            continue
        if role == "user":
            parts = _parts_from_content(content)
            if parts:
                messages.append(
                    CanonicalMessage(role="user", parts=tuple(parts), extras=_message_extras(raw_message, role))
                )
            continue
        if role == "assistant":
            assistant_parts: list[ContentPart] = [
                part for part in _parts_from_content(content) if isinstance(part, TextPart)
            ]
            assistant_parts.extend(_tool_calls_from_message(raw_message))
            extras = _message_extras(raw_message, role)
            if assistant_parts or extras is not None:
                messages.append(CanonicalMessage(role="assistant", parts=tuple(assistant_parts), extras=extras))
            continue
        if role in {"tool", "function"}:
            call_id = raw_message.get("tool_call_id") or raw_message.get("name") or ""
            name = raw_message.get("name")
            messages.append(
                CanonicalMessage(
                    role="tool",
                    parts=(
                        ToolResultPart(
                            tool_call_id=str(call_id),
                            content=extract_text_content(content),
                            name=name if isinstance(name, str) else None,
                        ),
                    ),
                    extras=_message_extras(raw_message, role),
                )
            )
            continue
        raise TranslationError(f"Unsupported message role '{role}'.", format_key=FORMAT_KEY)

    tools, vendor_tools = _tools_to_canonical(payload)
    tool_choice = _tool_choice_to_canonical(
        payload.get("tool_choice", payload.get("function_call"))
    )

    known_fields = set(KNOWN_FIELDS)
    field_names: dict[str, str] = {}
    max_tokens = optional_int(payload.get("max_tokens"))
    if max_tokens is None and "max_completion_tokens" in payload:
        # Reasoning models reject max_tokens, so replay the caller's spelling.
        max_tokens = optional_int(payload.get("max_completion_tokens"))
        field_names["max_tokens"] = "max_completion_tokens"
        known_fields.add("max_completion_tokens")
    if system_roles == {"developer"}:
        field_names["system_role"] = "developer"

    return CanonicalRequest(
        model=model,
        messages=tuple(messages),
        system="\n\n".join(system_chunks) if system_chunks else None,
        sampling=SamplingParams(
            temperature=optional_float(payload.get("temperature")),
            top_p=optional_float(payload.get("top_p")),
            max_tokens=max_tokens,
            stop=stop_sequences(payload.get("stop")),
            seed=optional_int(payload.get("seed")),
        ),
        tools=tuple(tools),
        tool_choice=tool_choice,
        stream=bool(payload.get("stream")),
        passthrough=request_extensions(
            payload,
            format_key=FORMAT_KEY,
            known_fields=known_fields,
            choice_extras=unmodeled_choice(payload.get("tool_choice"), tool_choice, {"type", "function"}),
            tools=vendor_tools,
            field_names=field_names,
        ),
    )


def _user_content(parts: tuple[ContentPart, ...]) -> Any:
    parts = tuple(
        part for part in parts if not isinstance(part, OpaquePart) or part.extras.format == FORMAT_KEY
    )
    if all(isinstance(part, TextPart) and part.extras is None for part in parts):
        return "".join(part.text for part in parts if isinstance(part, TextPart))
    content: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            content.append(restore_extensions({"type": "text", "text": part.text}, part.extras, FORMAT_KEY))
        elif isinstance(part, ImagePart):
            url = part.as_data_url()
            if url:
                content.append(
                    restore_extensions({"type": "image_url", "image_url": {"url": url}}, part.extras, FORMAT_KEY)
                )
        elif isinstance(part, OpaquePart) and part.extras.format == FORMAT_KEY:
            content.append(dict(part.extras.fields))
    return content


def _tool_call_payload(call: ToolCallPart) -> dict[str, Any]:
    return restore_extensions(
        {
            "id": call.id,
            "type": "function",
            "function": {"name": call.name, "arguments": call.arguments},
        },
        call.extras,
        FORMAT_KEY,
    )


def _tool_payload(tool: ToolDefinition) -> dict[str, Any]:
    function = {
        key: value
        for key, value in (
            ("name", tool.name),
            ("description", tool.description),
            ("parameters", dict(tool.parameters) if tool.parameters is not None else None),
        )
        if value is not None
    }
    return restore_extensions({"type": "function", "function": function}, tool.extras, FORMAT_KEY)


def request_from_canonical(request: CanonicalRequest) -> dict[str, Any]:
    passthrough = request.passthrough
    messages: list[dict[str, Any]] = []
    if request.system:
        system_role = passthrough.field_name(FORMAT_KEY, "system_role", "system")
        messages.append({"role": system_role, "content": request.system})
    for message in request.messages:
        if message.role == "user":
            messages.append(
                restore_extensions(
                    {"role": "user", "content": _user_content(message.parts)}, message.extras, FORMAT_KEY
                )
            )
        elif message.role == "assistant":
            calls = message.parts_of(ToolCallPart)
            assistant: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if calls:
                assistant["tool_calls"] = [_tool_call_payload(call) for call in calls]
            messages.append(restore_extensions(assistant, message.extras, FORMAT_KEY))
        elif message.role == "tool":
            for part in message.parts_of(ToolResultPart):
                messages.append(
                    restore_extensions(
                        {"role": "tool", "tool_call_id": part.tool_call_id, "content": part.content},
                        message.extras,
                        FORMAT_KEY,
                    )
                )
        elif message.role == "system" and message.text:
            messages.append({"role": "system", "content": message.text})

    payload: dict[str, Any] = {"model": request.model, "messages": messages}
    sampling = request.sampling
    if sampling.temperature is not None:
        payload["temperature"] = sampling.temperature
    if sampling.top_p is not None:
        payload["top_p"] = sampling.top_p
    if sampling.max_tokens is not None:
        payload[passthrough.field_name(FORMAT_KEY, "max_tokens", "max_tokens")] = sampling.max_tokens
    if sampling.stop:
        payload["stop"] = list(sampling.stop)
    if sampling.seed is not None:
        payload["seed"] = sampling.seed
    tools = [_tool_payload(tool) for tool in request.tools] + passthrough.tools_for(FORMAT_KEY)
    if tools:
        payload["tools"] = tools
    if request.tool_choice:
        if request.tool_choice in {"auto", "none", "required"}:
            payload["tool_choice"] = request.tool_choice
        else:
            payload["tool_choice"] = {"type": "function", "function": {"name": request.tool_choice}}
    payload["stream"] = request.stream
    if request.stream:
        payload["stream_options"] = {"include_usage": True}
    return merge_passthrough(payload, passthrough, FORMAT_KEY)


def _usage_from(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage.of(raw.get("prompt_tokens"), raw.get("completion_tokens"))


def response_to_canonical(body: dict[str, Any]) -> CanonicalResponse:
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise TranslationError("Chat completion response has no choices.", format_key=FORMAT_KEY)
    choice = choices[0]
    message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
    tool_calls = _tool_calls_from_message(message)
    reasoning = message.get("reasoning_content") or message.get("reasoning") or ""
    finish = FINISH_REASONS.get(str(choice.get("finish_reason") or "stop"), "stop")
    if tool_calls and finish == "stop":
        finish = "tool_calls"
    return CanonicalResponse(
        id=str(body.get("id") or new_id("chatcmpl-")),
        model=str(body.get("model") or ""),
        text=extract_text_content(message.get("content")),
        reasoning=reasoning if isinstance(reasoning, str) else "",
        tool_calls=tuple(tool_calls),
        finish_reason=finish,
        usage=_usage_from(body.get("usage")) or Usage(),
        created=optional_int(body.get("created")) or now_seconds(),
    )


def response_from_canonical(response: CanonicalResponse) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": response.text or None}
    if response.reasoning:
        message["reasoning_content"] = response.reasoning
    if response.tool_calls:
        message["tool_calls"] = [_tool_call_payload(call) for call in response.tool_calls]
    if message["content"] is None and not response.tool_calls:
        message["content"] = ""
    return {
        "id": response.id,
        "object": "chat.completion",
        "created": response.created,
        "model": response.model,
        "choices": [
            {"index": 0, "message": message, "finish_reason": response.finish_reason}
        ],
        "usage": {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        },
    }


class ChatCompletionsStreamDecoder:
    def __init__(self) -> None:
        self.terminal = False
        self._saw_finish = False

    def decode(self, event: SseEvent) -> list[CanonicalChunk]:
        if event.is_done:
            self.terminal = True
            return []
        data = event.json()
        if data is None:
            return []
        error = data.get("error")
        if isinstance(error, dict):
            raise ExecutionError(
                str(error.get("message") or "Upstream stream error."),
                status=optional_int(error.get("code")),
                body=data,
                retryable=False,
            )

        chunks: list[CanonicalChunk] = []
        usage = _usage_from(data.get("usage"))
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
            tool_deltas: list[ToolCallDelta] = []
            for raw_call in delta.get("tool_calls") or []:
                if not isinstance(raw_call, dict):
                    continue
                function = raw_call.get("function") if isinstance(raw_call.get("function"), dict) else {}
                arguments = function.get("arguments")
                tool_deltas.append(
                    ToolCallDelta(
                        index=optional_int(raw_call.get("index")) or 0,
                        id=raw_call.get("id"),
                        name=function.get("name"),
                        arguments=arguments if isinstance(arguments, str) else "",
                    )
                )
            raw_finish = choice.get("finish_reason")
            finish = FINISH_REASONS.get(str(raw_finish), "stop") if raw_finish else None
            if finish is not None:
                self._saw_finish = True
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            content = delta.get("content")
            chunk = CanonicalChunk(
                role="assistant" if delta.get("role") == "assistant" else None,
                text=content if isinstance(content, str) else "",
                reasoning=reasoning if isinstance(reasoning, str) else "",
                tool_calls=tuple(tool_deltas),
                finish_reason=finish,
                usage=usage,
                id=data.get("id"),
                model=data.get("model"),
            )
            if not chunk.is_empty:
                chunks.append(chunk)
        elif usage is not None:
            chunks.append(CanonicalChunk(usage=usage, id=data.get("id"), model=data.get("model")))
        return chunks

    def complete_on_close(self) -> bool:
        return self._saw_finish


class ChatCompletionsStreamEncoder:
    def __init__(self, response_id: str, model: str) -> None:
        self._id = response_id
        self._model = model
        self._created = now_seconds()
        self._sent_role = False

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        return encode_sse(
            {
                "id": self._id,
                "object": "chat.completion.chunk",
                "created": self._created,
                "model": self._model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
        )

    def encode(self, chunk: CanonicalChunk) -> list[bytes]:
        frames: list[bytes] = []
        has_delta = bool(chunk.text or chunk.reasoning or chunk.tool_calls)
        if not self._sent_role and (chunk.role or has_delta or chunk.finish_reason):
            self._sent_role = True
            frames.append(self._chunk({"role": "assistant", "content": ""}))
        if chunk.reasoning:
            frames.append(self._chunk({"reasoning_content": chunk.reasoning}))
        if chunk.text:
            frames.append(self._chunk({"content": chunk.text}))
        for call in chunk.tool_calls:
            function: dict[str, Any] = {"arguments": call.arguments}
            if call.name is not None:
                function["name"] = call.name
            tool_delta: dict[str, Any] = {"index": call.index, "function": function}
            if call.id is not None:
                tool_delta["id"] = call.id
                tool_delta["type"] = "function"
            frames.append(self._chunk({"tool_calls": [tool_delta]}))
        if chunk.finish_reason:
            frames.append(self._chunk({}, chunk.finish_reason))
        if chunk.usage is not None:
            frames.append(
                encode_sse(
                    {
                        "id": self._id,
                        "object": "chat.completion.chunk",
                        "created": self._created,
                        "model": self._model,
                        "choices": [],
                        "usage": {
                            "prompt_tokens": chunk.usage.prompt_tokens,
                            "completion_tokens": chunk.usage.completion_tokens,
                            "total_tokens": chunk.usage.total_tokens,
                        },
                    }
                )
            )
        return frames

    def finish(self) -> list[bytes]:
        return [encode_done()]

    def error(self, error: GatewayError) -> list[bytes]:
        return [encode_sse(error_envelope(error))]


def error_envelope(error: GatewayError) -> dict[str, Any]:
    return {
        "error": {
            "message": error.message,
            "type": error.error_type,
            "code": error.status_code,
        }
    }


def build_adapter() -> FormatAdapter:
    return FormatAdapter(
        key=FORMAT_KEY,
        request_to_canonical=request_to_canonical,
        request_from_canonical=request_from_canonical,
        response_to_canonical=response_to_canonical,
        response_from_canonical=response_from_canonical,
        stream_decoder=ChatCompletionsStreamDecoder,
        stream_encoder=ChatCompletionsStreamEncoder,
        error_envelope=error_envelope,
    )
