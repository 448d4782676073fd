from __future__ import annotations

import json
from types import MappingProxyType
from typing import Any

from combo_router.errors import ExecutionError, GatewayError, TranslationError
from combo_router.formats._common import (
    as_arguments_text,
    block_extensions,
    extract_text_content,
    merge_adjacent_roles,
    new_id,
    opaque_part,
    optional_float,
    optional_int,
    parse_arguments,
    require_model,
    require_object,
    restore_extensions,
    stop_sequences,
    tool_names_by_call_id,
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

FORMAT_KEY = "gemini"

KNOWN_GENERATION_FIELDS = {
    "temperature",
    "topP",
    "maxOutputTokens",
    "stopSequences",
    "seed",
}

FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
    "MALFORMED_FUNCTION_CALL": "error",
    "OTHER": "error",
}

FINISH_TO_GEMINI: dict[str, str] = {
    "stop": "STOP",
    "tool_calls": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
    "error": "OTHER",
}

STATUS_NAMES: dict[int, str] = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    429: "RESOURCE_EXHAUSTED",
    499: "CANCELLED",
    500: "INTERNAL",
    502: "UNAVAILABLE",
    503: "UNAVAILABLE",
    504: "DEADLINE_EXCEEDED",
}


def _call_id(name: str, index: int) -> str:
    return f"call_{name}_{index}"


def _part_extras(
    raw_part: dict[str, Any], known: set[str], nested: dict[str, set[str]] | None = None
) -> VendorExtensions | None:
    return block_extensions(raw_part, format_key=FORMAT_KEY, known_fields=known, nested=nested)


def _parts_to_canonical(
    role: str, raw_parts: list[Any], call_ids: dict[str, str], counter: list[int]
) -> list[CanonicalMessage]:
    tool_results: list[CanonicalMessage] = []
    parts: list[ContentPart] = []
    for raw_part in raw_parts:
        if not isinstance(raw_part, dict):
            continue
        if isinstance(raw_part.get("text"), str):
            # thoughtSignature may ride on any part and must be echoed back.
            if raw_part.get("thought"):
                parts.append(ReasoningPart(text=raw_part["text"], extras=_part_extras(raw_part, {"text"})))
            else:
                parts.append(TextPart(text=raw_part["text"], extras=_part_extras(raw_part, {"text"})))
            continue
        inline = raw_part.get("inlineData") or raw_part.get("inline_data")
        if isinstance(inline, dict) and isinstance(inline.get("data"), str):
            parts.append(
                ImagePart(
                    data=inline["data"],
                    media_type=inline.get("mimeType") or inline.get("mime_type"),
                    extras=_part_extras(raw_part, {"inlineData", "inline_data"}),
                )
            )
            continue
        file_data = raw_part.get("fileData") or raw_part.get("file_data")
        if isinstance(file_data, dict) and isinstance(file_data.get("fileUri"), str):
            parts.append(
                ImagePart(
                    url=file_data["fileUri"],
                    media_type=file_data.get("mimeType"),
                    extras=_part_extras(raw_part, {"fileData", "file_data"}),
                )
            )
            continue
        function_call = raw_part.get("functionCall")
        if isinstance(function_call, dict):
            name = str(function_call.get("name") or "")
            call_id = function_call.get("id")
            if not isinstance(call_id, str) or not call_id:
                call_id = _call_id(name, counter[0])
            counter[0] += 1
            call_ids[name] = call_id
            parts.append(
                ToolCallPart(
                    id=call_id,
                    name=name,
                    arguments=as_arguments_text(function_call.get("args")),
                    extras=_part_extras(raw_part, set(), {"functionCall": {"name", "args"}}),
                )
            )
            continue
        function_response = raw_part.get("functionResponse")
        if isinstance(function_response, dict):
            name = str(function_response.get("name") or "")
            response = function_response.get("response")
            wrapped = isinstance(response, dict) and set(response) == {"content"}
            if wrapped and isinstance(response["content"], str):
                content = response["content"]
            else:
                content = as_arguments_text(response)
            call_id = function_response.get("id")
            if not isinstance(call_id, str) or not call_id:
                call_id = call_ids.get(name, name)
            tool_results.append(
                CanonicalMessage(
                    role="tool",
                    parts=(
                        ToolResultPart(
                            tool_call_id=call_id,
                            content=content,
                            name=name,
                            extras=_part_extras(raw_part, set(), {"functionResponse": {"name", "response"}}),
                        ),
                    ),
                )
            )
            continue
        # executableCode, codeExecutionResult and friends.
        parts.append(opaque_part(raw_part, format_key=FORMAT_KEY))
    messages = list(tool_results)
    if parts:
        messages.append(CanonicalMessage(role="assistant" if role == "model" else "user", parts=tuple(parts)))
    return messages


def _tool_choice_to_canonical(tool_config: Any) -> str | None:
    if not isinstance(tool_config, dict):
        return None
    config = tool_config.get("functionCallingConfig")
    if not isinstance(config, dict):
        return None
    mode = str(config.get("mode") or "").upper()
    allowed = config.get("allowedFunctionNames")
    if mode == "ANY" and isinstance(allowed, list) and len(allowed) == 1:
        return str(allowed[0])
    return {"ANY": "required", "NONE": "none", "AUTO": "auto"}.get(mode)


def _tools_to_canonical(raw_tools: Any) -> tuple[list[ToolDefinition], list[dict[str, Any]]]:
    tools: list[ToolDefinition] = []
    builtin_tools: list[dict[str, Any]] = []
    for tool in raw_tools or []:
        if not isinstance(tool, dict):
            continue
        for declaration in tool.get("functionDeclarations") or []:
            if isinstance(declaration, dict) and declaration.get("name"):
                tools.append(
                    ToolDefinition(
                        name=str(declaration["name"]),
                        description=declaration.get("description"),
                        parameters=declaration.get("parameters"),
                        extras=_part_extras(declaration, {"name", "description", "parameters"}),
                    )
                )
        # googleSearch, codeExecution, urlContext, ...
        builtin = {key: value for key, value in tool.items() if key != "functionDeclarations"}
        if builtin:
            builtin_tools.append(builtin)
    return tools, builtin_tools


def request_to_canonical(raw: dict[str, Any]) -> CanonicalRequest:
    """Gemini carries the model and stream mode in the URL; the caller injects both as body keys."""
    payload = require_object(raw, format_key=FORMAT_KEY)
    model = require_model(payload, format_key=FORMAT_KEY)
    contents = payload.get("contents")
    if not isinstance(contents, list):
        raise TranslationError("Expected 'contents' to be a list.", format_key=FORMAT_KEY)

    call_ids: dict[str, str] = {}
    counter = [0]
    messages: list[CanonicalMessage] = []
    for content in contents:
        if not isinstance(content, dict):
            raise TranslationError("Each content entry must be an object.", format_key=FORMAT_KEY)
        role = str(content.get("role") or "user").lower()
        raw_parts = content.get("parts")
        if not isinstance(raw_parts, list):
            raise TranslationError("Content entries need a 'parts' list.", format_key=FORMAT_KEY)
        messages.extend(_parts_to_canonical(role, raw_parts, call_ids, counter))

    system_instruction = payload.get("systemInstruction") or payload.get("system_instruction")
    system = None
    if isinstance(system_instruction, dict):
        system = extract_text_content(system_instruction.get("parts")) or None
    elif isinstance(system_instruction, str):
        system = system_instruction or None

    generation = payload.get("generationConfig")
    generation = generation if isinstance(generation, dict) else {}
    tools, builtin_tools = _tools_to_canonical(payload.get("tools"))
    tool_choice = _tool_choice_to_canonical(payload.get("toolConfig"))

    extras: dict[str, Any] = {
        key: value
        for key, value in payload.items()
        if key
        not in {
            "model",
            "stream",
            "contents",
            "systemInstruction",
            "system_instruction",
            "generationConfig",
            "tools",
            "toolConfig",
        }
    }
    generation_extras = {
        key: value for key, value in generation.items() if key not in KNOWN_GENERATION_FIELDS
    }
    if generation_extras:
        extras["generationConfig"] = generation_extras
    tool_config = payload.get("toolConfig")
    if isinstance(tool_config, dict):
        tool_config_extras = (
            dict(tool_config)
            if tool_choice is None
            else {key: value for key, value in tool_config.items() if key != "functionCallingConfig"}
        )
        if tool_config_extras:
            extras["toolConfig"] = tool_config_extras

    return CanonicalRequest(
        model=model.removeprefix("models/"),
        messages=tuple(messages),
        system=system,
        sampling=SamplingParams(
            temperature=optional_float(generation.get("temperature")),
            top_p=optional_float(generation.get("topP")),
            max_tokens=optional_int(generation.get("maxOutputTokens")),
            stop=stop_sequences(generation.get("stopSequences")),
            seed=optional_int(generation.get("seed")),
        ),
        tools=tuple(tools),
        tool_choice=tool_choice,
        stream=bool(payload.get("stream")),
        passthrough=VendorExtensions(
            format=FORMAT_KEY,
            fields=MappingProxyType(extras),
            tools=tuple(MappingProxyType(tool) for tool in builtin_tools),
        ),
    )


def _function_response_body(content: str) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return {"content": content}


def _parts_from_canonical(message: CanonicalMessage, call_names: dict[str, str]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            if part.text:
                parts.append(restore_extensions({"text": part.text}, part.extras, FORMAT_KEY))
        elif isinstance(part, ImagePart):
            if part.data:
                image = {"inlineData": {"mimeType": part.media_type or "image/png", "data": part.data}}
            elif part.url:
                image = {"fileData": {"mimeType": part.media_type or "image/png", "fileUri": part.url}}
            else:
                continue
            parts.append(restore_extensions(image, part.extras, FORMAT_KEY))
        elif isinstance(part, ToolCallPart):
            call = {"functionCall": {"name": part.name, "args": parse_arguments(part.arguments)}}
            parts.append(restore_extensions(call, part.extras, FORMAT_KEY))
        elif isinstance(part, ToolResultPart):
            name = part.name or call_names.get(part.tool_call_id) or part.tool_call_id
            result = {"functionResponse": {"name": name, "response": _function_response_body(part.content)}}
            parts.append(restore_extensions(result, part.extras, FORMAT_KEY))
        elif isinstance(part, ReasoningPart):
            if part.extras is not None and part.extras.format == FORMAT_KEY:
                parts.append({"text": part.text, **part.extras.fields})
        elif isinstance(part, OpaquePart) and part.extras.format == FORMAT_KEY:
            parts.append(dict(part.extras.fields))
    return parts


def request_from_canonical(request: CanonicalRequest) -> dict[str, Any]:
    call_names = tool_names_by_call_id(request.messages)
    contents: list[dict[str, Any]] = []
    for message in request.messages:
        parts = _parts_from_canonical(message, call_names)
        if parts:
            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})

    payload: dict[str, Any] = {"contents": merge_adjacent_roles(contents, content_key="parts")}
    if request.system:
        payload["systemInstruction"] = {"parts": [{"text": request.system}]}

    extras = request.passthrough.for_format(FORMAT_KEY)
    generation: dict[str, Any] = dict(extras.pop("generationConfig", None) or {})
    sampling = request.sampling
    if sampling.temperature is not None:
        generation["temperature"] = sampling.temperature
    if sampling.top_p is not None:
        generation["topP"] = sampling.top_p
    if sampling.max_tokens is not None:
        generation["maxOutputTokens"] = sampling.max_tokens
    if sampling.stop:
        generation["stopSequences"] = list(sampling.stop)
    if sampling.seed is not None:
        generation["seed"] = sampling.seed
    if generation:
        payload["generationConfig"] = generation

    tools: list[dict[str, Any]] = []
    if request.tools:
        tools.append(
            {
                "functionDeclarations": [
                    restore_extensions(
                        {
                            "name": tool.name,
                            **({"description": tool.description} if tool.description else {}),
                            **({"parameters": dict(tool.parameters)} if tool.parameters is not None else {}),
                        },
                        tool.extras,
                        FORMAT_KEY,
                    )
                    for tool in request.tools
                ]
            }
        )
    tools.extend(request.passthrough.tools_for(FORMAT_KEY))
    if tools:
        payload["tools"] = tools

    tool_config: dict[str, Any] = dict(extras.pop("toolConfig", None) or {})
    if request.tool_choice:
        if request.tool_choice in {"auto", "none", "required"}:
            mode = {"auto": "AUTO", "none": "NONE", "required": "ANY"}[request.tool_choice]
            tool_config["functionCallingConfig"] = {"mode": mode}
        else:
            tool_config["functionCallingConfig"] = {"mode": "ANY", "allowedFunctionNames": [request.tool_choice]}
    if tool_config:
        payload["toolConfig"] = tool_config
    for key, value in extras.items():
        payload.setdefault(key, value)
    return payload


def _usage_from(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    completion = (optional_int(raw.get("candidatesTokenCount")) or 0) + (
        optional_int(raw.get("thoughtsTokenCount")) or 0
    )
    return Usage.of(raw.get("promptTokenCount"), completion)


def _candidate(body: dict[str, Any]) -> dict[str, Any] | None:
    candidates = body.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        return candidates[0]
    return None


def response_to_canonical(body: dict[str, Any]) -> CanonicalResponse:
    candidate = _candidate(body)
    if candidate is None:
        feedback = body.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            return CanonicalResponse(
                id=str(body.get("responseId") or new_id("gen-")),
                model=str(body.get("modelVersion") or ""),
                finish_reason="content_filter",
                usage=_usage_from(body.get("usageMetadata")) or Usage(),
            )
        raise TranslationError("generateContent response has no candidates.", format_key=FORMAT_KEY)
    content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
    text_chunks: list[str] = []
    reasoning_chunks: list[str] = []
    tool_calls: list[ToolCallPart] = []
    for raw_part in content.get("parts") or []:
        if not isinstance(raw_part, dict):
            continue
        if isinstance(raw_part.get("text"), str):
            if raw_part.get("thought"):
                reasoning_chunks.append(raw_part["text"])
            else:
                text_chunks.append(raw_part["text"])
            continue
        function_call = raw_part.get("functionCall")
        if isinstance(function_call, dict):
            name = str(function_call.get("name") or "")
            call_id = function_call.get("id")
            tool_calls.append(
                ToolCallPart(
                    id=call_id if isinstance(call_id, str) and call_id else _call_id(name, len(tool_calls)),
                    name=name,
                    arguments=as_arguments_text(function_call.get("args")),
                    extras=_part_extras(raw_part, set(), {"functionCall": {"name", "args"}}),
                )
            )
    finish = FINISH_REASONS.get(str(candidate.get("finishReason") or "STOP"), "stop")
    if tool_calls and finish == "stop":
        finish = "tool_calls"
    return CanonicalResponse(
        id=str(body.get("responseId") or new_id("gen-")),
        model=str(body.get("modelVersion") or ""),
        text="".join(text_chunks),
        reasoning="".join(reasoning_chunks),
        tool_calls=tuple(tool_calls),
        finish_reason=finish,
        usage=_usage_from(body.get("usageMetadata")) or Usage(),
    )


def _usage_metadata(usage: Usage) -> dict[str, int]:
    return {
        "promptTokenCount": usage.prompt_tokens,
        "candidatesTokenCount": usage.completion_tokens,
        "totalTokenCount": usage.total_tokens,
    }


def response_from_canonical(response: CanonicalResponse) -> dict[str, Any]:
    parts: list[dict[str, Any]] = []
    if response.reasoning:
        parts.append({"text": response.reasoning, "thought": True})
    if response.text or not response.tool_calls:
        parts.append({"text": response.text})
    for call in response.tool_calls:
        call_part = {"functionCall": {"name": call.name, "args": parse_arguments(call.arguments)}}
        parts.append(restore_extensions(call_part, call.extras, FORMAT_KEY))
    return {
        "candidates": [
            {
                "content": {"role": "model", "parts": parts},
                "finishReason": FINISH_TO_GEMINI.get(response.finish_reason, "STOP"),
                "index": 0,
            }
        ],
        "usageMetadata": _usage_metadata(response.usage),
        "modelVersion": response.model,
        "responseId": response.id,
    }


class GenerateContentStreamDecoder:
    def __init__(self) -> None:
        self.terminal = False
        self._tool_count = 0

    def decode(self, event: SseEvent) -> list[CanonicalChunk]:
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
        usage = _usage_from(data.get("usageMetadata"))
        candidate = _candidate(data)
        if candidate is None:
            return [CanonicalChunk(usage=usage)] if usage is not None else []

        text_chunks: list[str] = []
        reasoning_chunks: list[str] = []
        tool_deltas: list[ToolCallDelta] = []
        content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
        for raw_part in content.get("parts") or []:
            if not isinstance(raw_part, dict):
                continue
            if isinstance(raw_part.get("text"), str):
                if raw_part.get("thought"):
                    reasoning_chunks.append(raw_part["text"])
                else:
                    text_chunks.append(raw_part["text"])
                continue
            function_call = raw_part.get("functionCall")
            if isinstance(function_call, dict):
                name = str(function_call.get("name") or "")
                call_id = function_call.get("id")
                tool_deltas.append(
                    ToolCallDelta(
                        index=self._tool_count,
                        id=call_id if isinstance(call_id, str) and call_id else _call_id(name, self._tool_count),
                        name=name,
                        arguments=as_arguments_text(function_call.get("args")),
                    )
                )
                self._tool_count += 1

        finish: FinishReason | None = None
        raw_finish = candidate.get("finishReason")
        if raw_finish:
            self.terminal = True
            finish = FINISH_REASONS.get(str(raw_finish), "stop")
            if self._tool_count and finish == "stop":
                finish = "tool_calls"
        chunk = CanonicalChunk(
            role="assistant",
            text="".join(text_chunks),
            reasoning="".join(reasoning_chunks),
            tool_calls=tuple(tool_deltas),
            finish_reason=finish,
            usage=usage,
            id=data.get("responseId"),
            model=data.get("modelVersion"),
        )
        return [chunk]

    def complete_on_close(self) -> bool:
        return False


class GenerateContentStreamEncoder:
    def __init__(self, response_id: str, model: str) -> None:
        self._id = response_id
        self._model = model
        self._pending_calls: dict[int, dict[str, Any]] = {}
        self._finish: str | None = None
        self._usage: Usage | None = None

    def _frame(self, parts: list[dict[str, Any]], finish_reason: str | None = None) -> bytes:
        candidate: dict[str, Any] = {"content": {"role": "model", "parts": parts}, "index": 0}
        if finish_reason:
            candidate["finishReason"] = finish_reason
        body: dict[str, Any] = {
            "candidates": [candidate],
            "modelVersion": self._model,
            "responseId": self._id,
        }
        if finish_reason and self._usage is not None:
            body["usageMetadata"] = _usage_metadata(self._usage)
        return encode_sse(body)

    def encode(self, chunk: CanonicalChunk) -> list[bytes]:
        parts: list[dict[str, Any]] = []
        if chunk.reasoning:
            parts.append({"text": chunk.reasoning, "thought": True})
        if chunk.text:
            parts.append({"text": chunk.text})
        for call in chunk.tool_calls:
            pending = self._pending_calls.setdefault(call.index, {"name": "", "arguments": ""})
            if call.name:
                pending["name"] = call.name
            pending["arguments"] += call.arguments
        if chunk.finish_reason:
            self._finish = FINISH_TO_GEMINI.get(chunk.finish_reason, "STOP")
        if chunk.usage is not None:
            self._usage = chunk.usage
        return [self._frame(parts)] if parts else []

    def finish(self) -> list[bytes]:
        # Function calls need complete arguments, so they are flushed with the final frame.
        parts = [
            {"functionCall": {"name": call["name"], "args": parse_arguments(call["arguments"])}}
            for _, call in sorted(self._pending_calls.items())
        ]
        return [self._frame(parts, self._finish or "STOP")]

    def error(self, error: GatewayError) -> list[bytes]:
        return [encode_sse(error_envelope(error))]


def error_envelope(error: GatewayError) -> dict[str, Any]:
    return {
        "error": {
            "code": error.status_code,
            "message": error.message,
            "status": STATUS_NAMES.get(error.status_code, "INTERNAL" if error.status_code >= 500 else "FAILED_PRECONDITION"),
        }
    }


def build_adapter() -> FormatAdapter:
    return FormatAdapter(
        key=FORMAT_KEY,
        request_to_canonical=request_to_canonical,
        request_from_canonical=request_from_canonical,
        response_to_canonical=response_to_canonical,
        response_from_canonical=response_from_canonical,
        stream_decoder=GenerateContentStreamDecoder,
        stream_encoder=GenerateContentStreamEncoder,
        error_envelope=error_envelope,
    )
