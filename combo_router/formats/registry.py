from __future__ import annotations

from functools import lru_cache
from types import MappingProxyType
from typing import Any, Mapping

from combo_router.errors import GatewayError, TranslationError, UnsupportedFormatError
from combo_router.formats import claude, cursor, gemini, openai, responses
from combo_router.formats.base import FormatAdapter, StreamDecoder, StreamEncoder
from combo_router.models import CanonicalRequest, CanonicalResponse


class FormatRegistry:
    def __init__(self, adapters: Mapping[str, FormatAdapter]) -> None:
        self._adapters: Mapping[str, FormatAdapter] = MappingProxyType(dict(adapters))

    def keys(self) -> list[str]:
        return sorted(self._adapters)

    def caller_formats(self) -> list[str]:
        return sorted(key for key, adapter in self._adapters.items() if adapter.accepts_callers)

    def get(self, format_key: str) -> FormatAdapter:
        adapter = self._adapters.get(format_key)
        if adapter is None:
            raise UnsupportedFormatError(format_key)
        return adapter

    def _caller_adapter(self, format_key: str, direction: str) -> FormatAdapter:
        adapter = self.get(format_key)
        if not adapter.accepts_callers:
            raise UnsupportedFormatError(
                format_key, f"Format '{format_key}' cannot be used as a caller format ({direction})."
            )
        return adapter

    def to_canonical(self, source_format: str, raw_request: Any) -> CanonicalRequest:
        adapter = self._caller_adapter(source_format, "request_to_canonical")
        assert adapter.request_to_canonical is not None
        if not isinstance(raw_request, dict):
            raise TranslationError("Expected a JSON object request body.", format_key=source_format)
        return adapter.request_to_canonical(raw_request)

    def from_canonical(self, target_format: str, request: CanonicalRequest) -> Any:
        return self.get(target_format).request_from_canonical(request)

    def provider_response_to_canonical(self, format_key: str, body: Any) -> CanonicalResponse:
        adapter = self.get(format_key)
        if adapter.response_to_canonical is None:
            raise UnsupportedFormatError(
                format_key, f"Format '{format_key}' has no whole-response body; read it as a stream."
            )
        if not isinstance(body, dict):
            raise TranslationError("Expected a JSON object response body.", format_key=format_key)
        return adapter.response_to_canonical(body)

    def canonical_to_caller_format(self, format_key: str, response: CanonicalResponse) -> dict[str, Any]:
        adapter = self._caller_adapter(format_key, "response_from_canonical")
        assert adapter.response_from_canonical is not None
        return adapter.response_from_canonical(response)

    def stream_decoder(self, format_key: str) -> StreamDecoder:
        return self.get(format_key).stream_decoder()

    def stream_encoder(self, format_key: str, response_id: str, model: str) -> StreamEncoder:
        adapter = self._caller_adapter(format_key, "stream_encoder")
        assert adapter.stream_encoder is not None
        return adapter.stream_encoder(response_id, model)

    def error_envelope(self, format_key: str | None, error: GatewayError) -> dict[str, Any]:
        adapter = self._adapters.get(format_key or "")
        if adapter is None or adapter.error_envelope is None:
            adapter = self._adapters[openai.FORMAT_KEY]
        assert adapter.error_envelope is not None
        return adapter.error_envelope(error)


@lru_cache(maxsize=1)
def build_format_registry() -> FormatRegistry:
    adapters = [
        openai.build_adapter(),
        responses.build_adapter(),
        claude.build_adapter(),
        gemini.build_adapter(),
        cursor.build_adapter(),
    ]
    return FormatRegistry({adapter.key: adapter for adapter in adapters})


def detect_format(path: str, payload: Any = None) -> str:
    normalized = path.rstrip("/")
    if normalized.endswith("/messages") and "/chat/" not in normalized:
        return claude.FORMAT_KEY
    if normalized.endswith("/responses"):
        return responses.FORMAT_KEY
    if ":generateContent" in normalized or ":streamGenerateContent" in normalized or "/v1beta/models" in normalized:
        return gemini.FORMAT_KEY
    if normalized.endswith("/chat/completions"):
        return openai.FORMAT_KEY

    if isinstance(payload, dict):
        if "contents" in payload:
            return gemini.FORMAT_KEY
        if "input" in payload and "messages" not in payload:
            return responses.FORMAT_KEY
        if "messages" in payload:
            if "system" in payload or "anthropic_version" in payload or _has_claude_blocks(payload["messages"]):
                return claude.FORMAT_KEY
            return openai.FORMAT_KEY
    raise UnsupportedFormatError(path or "unknown", f"Cannot detect request format for '{path}'.")


def _has_claude_blocks(messages: Any) -> bool:
    if not isinstance(messages, list):
        return False
    for message in messages:
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            continue
        for block in message["content"]:
            if isinstance(block, dict) and block.get("type") in {"tool_use", "tool_result", "thinking"}:
                return True
    return False
