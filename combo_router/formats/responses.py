from __future__ import annotations

from dataclasses import replace
from typing import Any

from combo_router.errors import ExecutionError, GatewayError, TranslationError
from combo_router.formats._common import (
    as_arguments_text,
    block_extensions,
    coerce_text,
    extract_text_content,
    merge_passthrough,
    new_id,
    now_seconds,
    opaque_part,
    optional_float,
    optional_int,
    parse_data_url,
    require_model,
    request_extensions,
    require_object,
    restore_extensions,
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

FORMAT_KEY = "openai-responses"
DEFAULT_INSTRUCTIONS = "You are a helpful assistant."

KNOWN_FIELDS = {
    "model",
    "input",
    "instructions",
    "temperature",
    "top_p",
    "max_output_tokens",
    "tools",
    "tool_choice",
    "stream",
}


def _as_input_text_part(value: str) -> dict[str, str]:
    return {"type": "input_text", "text": value}


def _as_output_text_part(value: str) -> dict[str, str]:
    return {"type": "output_text", "text": value}


def _normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in {"assistant", "system", "developer", "user"}:
        return "user"
    return normalized


def _part_extras(item: dict[str, Any], *known: str) -> VendorExtensions | None:
    return block_extensions(item, format_key=FORMAT_KEY, known_fields=set(known))


def _content_parts(content: Any) -> list[ContentPart]:
    if isinstance(content, str):
        return [TextPart(text=content)] if content else []
    if not isinstance(content, list):
        text = coerce_text(content)
        return [TextPart(text=text)] if text else []

    parts: list[ContentPart] = []
    for item in content:
        if isinstance(item, str):
            if item:
                parts.append(TextPart(text=item))
            continue
        if not isinstance(item, dict):
            continue
        item_type = str(item.get("type", "")).strip().lower()
        if item_type in {"text", "input_text", "output_text"}:
            raw_text = item.get("text")
            if isinstance(raw_text, str) and raw_text:
                parts.append(TextPart(text=raw_text, extras=_part_extras(item, "type", "text")))
            continue
        if item_type in {"image_url", "input_image"}:
            image_url = item.get("image_url")
            if isinstance(image_url, dict):
                image_url = image_url.get("url")
            if isinstance(image_url, str) and image_url.strip():
                image = parse_data_url(image_url.strip())
                parts.append(replace(image, extras=_part_extras(item, "type", "image_url")))
            continue
        # input_file, refusal and other content we do not model.
        parts.append(opaque_part(item, format_key=FORMAT_KEY))
    return parts


def _input_items(input_value: Any) -> list[Any]:
    if isinstance(input_value, str):
        return [{"role": "user", "content": input_value}] if input_value else []
    if isinstance(input_value, dict):
        return [input_value]
    if isinstance(input_value, list):
        return input_value
    raise TranslationError("Expected 'input' to be a string or a list of items.", format_key=FORMAT_KEY)


def _tool_choice_to_canonical(choice: Any) -> str | None:
    if isinstance(choice, str):
        return choice
    if isinstance(choice, dict):
        if choice.get("type") not in {None, "function"}:
            return None
        name = choice.get("name")
        if isinstance(name, str) and name:
            return name
        function = choice.get("function")
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            return function["name"]
    return None


def _tools_to_canonical(raw_tools: Any) -> tuple[list[ToolDefinition], list[dict[str, Any]]]:
    tools: list[ToolDefinition] = []
    hosted_tools: list[dict[str, Any]] = []
    for tool in raw_tools or []:
        if not isinstance(tool, dict):
            continue
        if str(tool.get("type") or "function") != "function":
            # web_search, file_search, code_interpreter, mcp, ...
            hosted_tools.append(tool)
            continue
        nested = isinstance(tool.get("function"), dict)
        function = tool["function"] if nested else tool
        if not function.get("name"):
            raise TranslationError("Function tools need a name.", format_key=FORMAT_KEY)
        tools.append(
            ToolDefinition(
                name=str(function["name"]),
                description=function.get("description"),
                parameters=function.get("parameters"),
                extras=None
                if nested
                else _part_extras(tool, "type", "name", "description", "parameters"),
            )
        )
    return tools, hosted_tools


def request_to_canonical(raw: dict[str, Any]) -> CanonicalRequest:
    payload = require_object(raw, format_key=FORMAT_KEY)
    model = require_model(payload, format_key=FORMAT_KEY)

    system_chunks: list[str] = []
    instructions = payload.get("instructions")
    if isinstance(instructions, str) and instructions.strip():
        system_chunks.append(instructions.strip())

    messages: list[CanonicalMessage] = []
    # Reasoning, function calls and hosted tool items between two messages.
    pending: list[ContentPart] = []

    def flush_pending() -> None:
        if pending:
            messages.append(CanonicalMessage(role="assistant", parts=tuple(pending)))
            pending.clear()

    for item in _input_items(payload.get("input", [])):
        if isinstance(item, str):
            flush_pending()
            if item:
                messages.append(CanonicalMessage(role="user", parts=(TextPart(text=item),)))
            continue
        if not isinstance(item, dict):
            raise TranslationError("Input items must be strings or objects.", format_key=FORMAT_KEY)
        item_type = str(item.get("type") or "message")
        if item_type == "function_call":
            pending.append(
                ToolCallPart(
                    id=str(item.get("call_id") or item.get("id") or new_id("call_")),
                    name=str(item.get("name") or ""),
                    arguments=as_arguments_text(item.get("arguments")),
                    extras=_part_extras(item, "type", "call_id", "name", "arguments"),
                )
            )
            continue
        if item_type == "reasoning":
            summary = [
                str(entry.get("text") or "")
                for entry in item.get("summary") or []
                if isinstance(entry, dict)
            ]
            # Replayed whole, encrypted_content included.
            pending.append(ReasoningPart(text="".join(summary), extras=_part_extras(item)))
            continue
        if item_type not in {"message", "function_call_output"}:
            pending.append(opaque_part(item, format_key=FORMAT_KEY))
            continue
        flush_pending()
        if item_type == "function_call_output":
            output = item.get("output")
            messages.append(
                CanonicalMessage(
                    role="tool",
                    parts=(
                        ToolResultPart(
                            tool_call_id=str(item.get("call_id") or ""),
                            content=extract_text_content(output),
                            extras=_part_extras(item, "type", "call_id")
                            if isinstance(output, list)
                            else _part_extras(item, "type", "call_id", "output"),
                        ),
                    ),
                )
            )
            continue
        role = _normalize_role(str(item.get("role") or "user"))
        if role in {"system", "developer"}:
            text = extract_text_content(item.get("content"))
            if text:
                system_chunks.append(text)
            continue
        parts = _content_parts(item.get("content"))
        if role == "assistant":
            parts = [part for part in parts if not isinstance(part, ImagePart)]
        extras = _part_extras(item, "type", "role", "content")
        if parts or extras is not None:
            if role == "assistant" and messages and messages[-1].role == "assistant":
                previous = messages.pop()
                parts = list(previous.parts) + parts
                extras = extras or previous.extras
            messages.append(CanonicalMessage(role=role, parts=tuple(parts), extras=extras))
    flush_pending()

    tools, hosted_tools = _tools_to_canonical(payload.get("tools"))
    tool_choice = _tool_choice_to_canonical(payload.get("tool_choice"))

    return CanonicalRequest(
        model=model,
        messages=tuple(messages),
        system="\n\n".join(system_chunks) if system_chunks else None,
        sampling=SamplingParams(
            temperature=optional_float(payload.get("temperature")),
            top_p=optional_float(payload.get("top_p")),
            max_tokens=optional_int(payload.get("max_output_tokens")),
        ),
        tools=tuple(tools),
        tool_choice=tool_choice,
        stream=bool(payload.get("stream")),
        passthrough=request_extensions(
            payload,
            format_key=FORMAT_KEY,
            known_fields=KNOWN_FIELDS,
            choice_extras=unmodeled_choice(
                payload.get("tool_choice"), tool_choice, {"type", "name", "function"}
            ),
            tools=hosted_tools,
        ),
    )


def _content_item(part: ContentPart, role: str) -> dict[str, Any] | None:
    if isinstance(part, TextPart) and part.text:
        if role == "assistant":
            item = _as_output_text_part(part.text)
        else:
            item = _as_input_text_part(part.text)
        return restore_extensions(item, part.extras, FORMAT_KEY)
    if isinstance(part, ImagePart) and role != "assistant":
        url = part.as_data_url()
        if url:
            return restore_extensions({"type": "input_image", "image_url": url}, part.extras, FORMAT_KEY)
    if isinstance(part, OpaquePart) and part.extras.format == FORMAT_KEY:
        return dict(part.extras.fields)
    return None


def _is_content_type(item_type: Any) -> bool:
    return isinstance(item_type, str) and (
        item_type.startswith(("input_", "output_")) or item_type in {"text", "refusal"}
    )


def _message_input(message: CanonicalMessage) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    if message.role == "tool":
        for part in message.parts_of(ToolResultPart):
            item = restore_extensions(
                {"type": "function_call_output", "call_id": part.tool_call_id}, part.extras, FORMAT_KEY
            )
            item.setdefault("output", part.content)
            items.append(item)
        return items

    role = _normalize_role(message.role)
    content: list[dict[str, Any]] = []

    def flush_content() -> None:
        if content:
            item = {"role": role, "content": list(content)}
            items.append(restore_extensions(item, message.extras, FORMAT_KEY))
            content.clear()

    # Items stay in their original order; reasoning must precede the call it explains.
    for part in message.parts:
        if isinstance(part, ToolCallPart):
            flush_content()
            call = {
                "type": "function_call",
                "call_id": part.id,
                "name": part.name,
                "arguments": part.arguments,
            }
            items.append(restore_extensions(call, part.extras, FORMAT_KEY))
        elif isinstance(part, ReasoningPart):
            if part.extras is not None and part.extras.format == FORMAT_KEY:
                flush_content()
                items.append(dict(part.extras.fields))
        elif isinstance(part, OpaquePart) and part.extras.format == FORMAT_KEY:
            if _is_content_type(part.extras.fields.get("type")):
                content.append(dict(part.extras.fields))
            else:
                flush_content()
                items.append(dict(part.extras.fields))
        else:
            item = _content_item(part, message.role)
            if item is not None:
                content.append(item)
    flush_content()
    return items


def request_from_canonical(request: CanonicalRequest) -> dict[str, Any]:
    input_items: list[dict[str, Any]] = []
    for message in request.messages:
        input_items.extend(_message_input(message))

    payload: dict[str, Any] = {
        "model": request.model,
        "store": False,
        "stream": request.stream,
        "instructions": request.system or DEFAULT_INSTRUCTIONS,
        "input": input_items,
    }
    if request.sampling.temperature is not None:
        payload["temperature"] = request.sampling.temperature
    if request.sampling.top_p is not None:
        payload["top_p"] = request.sampling.top_p
    if request.sampling.max_tokens is not None:
        payload["max_output_tokens"] = request.sampling.max_tokens
    tools = [
        restore_extensions(
            {
                "type": "function",
                "name": tool.name,
                **({"description": tool.description} if tool.description else {}),
                **({"parameters": dict(tool.parameters)} if tool.parameters is not None else {}),
            },
            tool.extras,
            FORMAT_KEY,
        )
        for tool in request.tools
    ] + request.passthrough.tools_for(FORMAT_KEY)
    if tools:
        payload["tools"] = tools
    if request.tool_choice:
        if request.tool_choice in {"auto", "none", "required"}:
            payload["tool_choice"] = request.tool_choice
        else:
            payload["tool_choice"] = {"type": "function", "name": request.tool_choice}
    return merge_passthrough(payload, request.passthrough, FORMAT_KEY)


def _usage_from(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage.of(raw.get("input_tokens"), raw.get("output_tokens"))


def _finish_reason(response_obj: dict[str, Any], saw_tool_call: bool, text: str) -> FinishReason:
    status = response_obj.get("status")
    details = response_obj.get("incomplete_details")
    if status == "incomplete" and isinstance(details, dict):
        if details.get("reason") == "content_filter":
            return "content_filter"
        return "length"
    if status == "failed":
        return "error"
    if saw_tool_call and not text:
        return "tool_calls"
    return "stop"


def response_to_canonical(body: dict[str, Any]) -> CanonicalResponse:
    output = body.get("output")
    if not isinstance(output, list):
        raise TranslationError("Responses payload has no output list.", format_key=FORMAT_KEY)
    text_chunks: list[str] = []
    reasoning_chunks: list[str] = []
    tool_calls: list[ToolCallPart] = []
    for item in output:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "message":
            for part in item.get("content") or []:
                if isinstance(part, dict) and part.get("type") == "output_text":
                    text_chunks.append(str(part.get("text") or ""))
        elif item_type == "function_call":
            tool_calls.append(
                ToolCallPart(
                    id=str(item.get("call_id") or item.get("id") or new_id("call_")),
                    name=str(item.get("name") or ""),
                    arguments=as_arguments_text(item.get("arguments")),
                )
            )
        elif item_type == "reasoning":
            for summary in item.get("summary") or []:
                if isinstance(summary, dict) and isinstance(summary.get("text"), str):
                    reasoning_chunks.append(summary["text"])
    text = "".join(text_chunks)
    return CanonicalResponse(
        id=str(body.get("id") or new_id("resp_")),
        model=str(body.get("model") or ""),
        text=text,
        reasoning="".join(reasoning_chunks),
        tool_calls=tuple(tool_calls),
        finish_reason=_finish_reason(body, bool(tool_calls), text),
        usage=_usage_from(body.get("usage")) or Usage(),
        created=optional_int(body.get("created_at")) or now_seconds(),
    )


def _output_items(response: CanonicalResponse) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    if response.reasoning:
        items.append(
            {
                "type": "reasoning",
                "id": f"rs_{response.id}",
                "summary": [{"type": "summary_text", "text": response.reasoning}],
            }
        )
    if response.text or not response.tool_calls:
        items.append(
            {
                "type": "message",
                "id": f"msg_{response.id}",
                "status": "completed",
                "role": "assistant",
                "content": [{"type": "output_text", "text": response.text, "annotations": []}],
            }
        )
    for call in response.tool_calls:
        items.append(
            {
                "type": "function_call",
                "id": f"fc_{call.id}",
                "call_id": call.id,
                "name": call.name,
                "arguments": call.arguments,
                "status": "completed",
            }
        )
    return items


def response_from_canonical(response: CanonicalResponse) -> dict[str, Any]:
    body: dict[str, Any] = {
        "id": response.id,
        "object": "response",
        "created_at": response.created,
        "model": response.model,
        "status": "incomplete" if response.finish_reason in {"length", "content_filter"} else "completed",
        "output": _output_items(response),
        "usage": {
            "input_tokens": response.usage.prompt_tokens,
            "output_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        },
    }
    if body["status"] == "incomplete":
        reason = "content_filter" if response.finish_reason == "content_filter" else "max_output_tokens"
        body["incomplete_details"] = {"reason": reason}
    return body


class ResponsesStreamDecoder:
    def __init__(self) -> None:
        self.terminal = False
        self._tool_index_by_item_id: dict[str, int] = {}
        self._tool_index_by_output_index: dict[int, int] = {}
        self._tool_args_seen: set[int] = set()
        self._tool_count = 0
        self._saw_text_delta = False
        self._text_seen = False

    def _match_tool(self, event: dict[str, Any]) -> int | None:
        item_id = event.get("item_id")
        if isinstance(item_id, str) and item_id in self._tool_index_by_item_id:
            return self._tool_index_by_item_id[item_id]
        output_index = event.get("output_index")
        if isinstance(output_index, int):
            return self._tool_index_by_output_index.get(output_index)
        return None

    def decode(self, event: SseEvent) -> list[CanonicalChunk]:
        data = event.json()
        if data is None:
            return []
        event_type = str(data.get("type") or event.event or "")

        if event_type == "response.created":
            response_obj = data.get("response") if isinstance(data.get("response"), dict) else {}
            return [CanonicalChunk(role="assistant", id=response_obj.get("id"), model=response_obj.get("model"))]

        if event_type == "response.output_item.added":
            item = data.get("item")
            if isinstance(item, dict) and item.get("type") == "function_call":
                tool_index = self._tool_count
                self._tool_count += 1
                output_index = data.get("output_index")
                if isinstance(output_index, int):
                    self._tool_index_by_output_index[output_index] = tool_index
                item_id = item.get("id")
                if isinstance(item_id, str):
                    self._tool_index_by_item_id[item_id] = tool_index
                call_id = item.get("call_id")
                name = item.get("name")
                return [
                    CanonicalChunk(
                        tool_calls=(
                            ToolCallDelta(
                                index=tool_index,
                                id=call_id if isinstance(call_id, str) else None,
                                name=name if isinstance(name, str) else None,
                            ),
                        )
                    )
                ]
            return []

        if event_type == "response.function_call_arguments.delta":
            delta = data.get("delta")
            tool_index = self._match_tool(data)
            if not isinstance(delta, str) or not delta or tool_index is None:
                return []
            self._tool_args_seen.add(tool_index)
            return [CanonicalChunk(tool_calls=(ToolCallDelta(index=tool_index, arguments=delta),))]

        if event_type == "response.function_call_arguments.done":
            arguments = data.get("arguments")
            tool_index = self._match_tool(data)
            if not isinstance(arguments, str) or tool_index is None or tool_index in self._tool_args_seen:
                return []
            self._tool_args_seen.add(tool_index)
            return [CanonicalChunk(tool_calls=(ToolCallDelta(index=tool_index, arguments=arguments),))]

        if event_type == "response.output_text.delta":
            delta = data.get("delta")
            if not isinstance(delta, str) or not delta:
                return []
            self._saw_text_delta = True
            self._text_seen = True
            return [CanonicalChunk(text=delta)]

        if event_type == "response.output_text.done":
            final_text = data.get("text")
            if self._saw_text_delta or not isinstance(final_text, str) or not final_text:
                return []
            self._text_seen = True
            return [CanonicalChunk(text=final_text)]

        if event_type in {"response.reasoning_summary_text.delta", "response.reasoning_text.delta"}:
            delta = data.get("delta")
            if isinstance(delta, str) and delta:
                return [CanonicalChunk(reasoning=delta)]
            return []

        if event_type in {"response.completed", "response.incomplete"}:
            self.terminal = True
            response_obj = data.get("response") if isinstance(data.get("response"), dict) else {}
            finish = _finish_reason(response_obj, self._tool_count > 0, "x" if self._text_seen else "")
            return [CanonicalChunk(finish_reason=finish, usage=_usage_from(response_obj.get("usage")))]

        if event_type in {"response.failed", "error"}:
            response_obj = data.get("response") if isinstance(data.get("response"), dict) else {}
            error = response_obj.get("error") if isinstance(response_obj.get("error"), dict) else data
            code = str(error.get("code") or "")
            status = 429 if code in {"rate_limit_exceeded", "insufficient_quota"} else None
            raise ExecutionError(
                str(error.get("message") or "Upstream response failed."),
                status=status,
                body=data,
                retryable=False,
            )
        return []

    def complete_on_close(self) -> bool:
        return False


class ResponsesStreamEncoder:
    def __init__(self, response_id: str, model: str) -> None:
        self._id = response_id
        self._model = model
        self._created = now_seconds()
        self._sequence = 0
        self._started = False
        self._message_open = False
        self._text: list[str] = []
        self._reasoning: list[str] = []
        self._calls: dict[int, dict[str, str]] = {}
        self._output_index = 0
        self._message_output_index: int | None = None
        self._call_output_index: dict[int, int] = {}
        self._finish: FinishReason = "stop"
        self._usage: Usage | None = None

    def _event(self, event_type: str, body: dict[str, Any]) -> bytes:
        self._sequence += 1
        return encode_sse({"type": event_type, "sequence_number": self._sequence, **body}, event=event_type)

    def _response_obj(self, status: str) -> dict[str, Any]:
        return {
            "id": self._id,
            "object": "response",
            "created_at": self._created,
            "model": self._model,
            "status": status,
            "output": [],
        }

    def _start(self) -> list[bytes]:
        if self._started:
            return []
        self._started = True
        return [self._event("response.created", {"response": self._response_obj("in_progress")})]

    def _open_message(self) -> list[bytes]:
        if self._message_open:
            return []
        self._message_open = True
        self._message_output_index = self._output_index
        self._output_index += 1
        return [
            self._event(
                "response.output_item.added",
                {
                    "output_index": self._message_output_index,
                    "item": {
                        "type": "message",
                        "id": f"msg_{self._id}",
                        "status": "in_progress",
                        "role": "assistant",
                        "content": [],
                    },
                },
            ),
            self._event(
                "response.content_part.added",
                {
                    "item_id": f"msg_{self._id}",
                    "output_index": self._message_output_index,
                    "content_index": 0,
                    "part": {"type": "output_text", "text": "", "annotations": []},
                },
            ),
        ]

    def encode(self, chunk: CanonicalChunk) -> list[bytes]:
        frames = self._start()
        if chunk.reasoning:
            self._reasoning.append(chunk.reasoning)
            frames.append(
                self._event(
                    "response.reasoning_summary_text.delta",
                    {"item_id": f"rs_{self._id}", "output_index": 0, "summary_index": 0, "delta": chunk.reasoning},
                )
            )
        if chunk.text:
            frames.extend(self._open_message())
            self._text.append(chunk.text)
            frames.append(
                self._event(
                    "response.output_text.delta",
                    {
                        "item_id": f"msg_{self._id}",
                        "output_index": self._message_output_index,
                        "content_index": 0,
                        "delta": chunk.text,
                    },
                )
            )
        for call in chunk.tool_calls:
            if call.index not in self._calls:
                call_id = call.id or new_id("call_")
                self._calls[call.index] = {"call_id": call_id, "name": call.name or "", "arguments": ""}
                self._call_output_index[call.index] = self._output_index
                self._output_index += 1
                frames.append(
                    self._event(
                        "response.output_item.added",
                        {
                            "output_index": self._call_output_index[call.index],
                            "item": {
                                "type": "function_call",
                                "id": f"fc_{call_id}",
                                "call_id": call_id,
                                "name": call.name or "",
                                "arguments": "",
                                "status": "in_progress",
                            },
                        },
                    )
                )
            if call.arguments:
                state = self._calls[call.index]
                state["arguments"] += call.arguments
                frames.append(
                    self._event(
                        "response.function_call_arguments.delta",
                        {
                            "item_id": f"fc_{state['call_id']}",
                            "output_index": self._call_output_index[call.index],
                            "delta": call.arguments,
                        },
                    )
                )
        if chunk.finish_reason:
            self._finish = chunk.finish_reason
        if chunk.usage is not None:
            self._usage = chunk.usage
        return frames

    def finish(self) -> list[bytes]:
        frames = self._start()
        text = "".join(self._text)
        if self._message_open:
            frames.append(
                self._event(
                    "response.output_text.done",
                    {
                        "item_id": f"msg_{self._id}",
                        "output_index": self._message_output_index,
                        "content_index": 0,
                        "text": text,
                    },
                )
            )
        for index, state in sorted(self._calls.items()):
            frames.append(
                self._event(
                    "response.function_call_arguments.done",
                    {
                        "item_id": f"fc_{state['call_id']}",
                        "output_index": self._call_output_index[index],
                        "arguments": state["arguments"],
                    },
                )
            )
        response = CanonicalResponse(
            id=self._id,
            model=self._model,
            text=text,
            reasoning="".join(self._reasoning),
            tool_calls=tuple(
                ToolCallPart(id=state["call_id"], name=state["name"], arguments=state["arguments"])
                for _, state in sorted(self._calls.items())
            ),
            finish_reason=self._finish,
            usage=self._usage or Usage(),
            created=self._created,
        )
        body = response_from_canonical(response)
        event_type = "response.incomplete" if body["status"] == "incomplete" else "response.completed"
        frames.append(self._event(event_type, {"response": body}))
        return frames

    def error(self, error: GatewayError) -> list[bytes]:
        return [
            self._event(
                "error",
                {"code": error.error_type, "message": error.message, "param": None},
            )
        ]


def error_envelope(error: GatewayError) -> dict[str, Any]:
    return {
        "error": {
            "message": error.message,
            "type": error.error_type,
            "code": error.status_code,
            "param": None,
        }
    }


def build_adapter() -> FormatAdapter:
    return FormatAdapter(
        key=FORMAT_KEY,
        request_to_canonical=request_to_canonical,
        request_from_canonical=request_from_canonical,
        response_to_canonical=response_to_canonical,
        response_from_canonical=response_from_canonical,
        stream_decoder=ResponsesStreamDecoder,
        stream_encoder=ResponsesStreamEncoder,
        error_envelope=error_envelope,
    )
