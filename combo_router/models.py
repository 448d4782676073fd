from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, Mapping, Union

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error"]


@dataclass(frozen=True, slots=True)
class VendorExtensions:
    """Vendor data with no canonical equivalent, keyed by the format it came from.

    ``fields`` are unmodeled keys of the object they were read from, ``tools``
    are raw tool entries that are not plain functions (server or built-in
    tools), and ``field_names`` maps a canonical field to the vendor key that
    carried it when the vendor accepts more than one spelling.
    """

    format: str | None = None
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    tools: tuple[Mapping[str, Any], ...] = ()
    field_names: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def for_format(self, format_key: str) -> dict[str, Any]:
        if self.format != format_key:
            return {}
        return dict(self.fields)

    def tools_for(self, format_key: str) -> list[dict[str, Any]]:
        if self.format != format_key:
            return []
        return [dict(tool) for tool in self.tools]

    def field_name(self, format_key: str, canonical_name: str, default: str) -> str:
        if self.format != format_key:
            return default
        return self.field_names.get(canonical_name, default)


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"
    extras: VendorExtensions | None = None


@dataclass(frozen=True, slots=True)
class ImagePart:
    # Either a remote URL or inline base64 data with its media type.
    url: str | None = None
    data: str | None = None
    media_type: str | None = None
    type: Literal["image"] = "image"
    extras: VendorExtensions | None = None

    def as_data_url(self) -> str | None:
        if self.url:
            return self.url
        if self.data:
            return f"data:{self.media_type or 'image/png'};base64,{self.data}"
        return None


@dataclass(frozen=True, slots=True)
class ToolCallPart:
    id: str
    name: str
    arguments: str
    type: Literal["tool_call"] = "tool_call"
    extras: VendorExtensions | None = None


@dataclass(frozen=True, slots=True)
class ToolResultPart:
    tool_call_id: str
    content: str
    name: str | None = None
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"
    extras: VendorExtensions | None = None


@dataclass(frozen=True, slots=True)
class ReasoningPart:
    """Model thinking carried back in a later turn.

    Signatures are only valid for the vendor that issued them, so only the
    format named in ``extras`` re-emits the part.
    """

    text: str
    type: Literal["reasoning"] = "reasoning"
    extras: VendorExtensions | None = None


@dataclass(frozen=True, slots=True)
class OpaquePart:
    # A vendor block with no canonical meaning, replayed verbatim into its own format.
    extras: VendorExtensions
    type: Literal["opaque"] = "opaque"


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart, ReasoningPart, OpaquePart]


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    role: Role
    parts: tuple[ContentPart, ...]
    extras: VendorExtensions | None = None

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def parts_of(self, kind: type) -> list[Any]:
        return [part for part in self.parts if isinstance(part, kind)]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    name: str
    description: str | None = None
    parameters: Mapping[str, Any] | None = None
    extras: VendorExtensions | None = None


@dataclass(frozen=True, slots=True)
class SamplingParams:
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()
    seed: int | None = None


@dataclass(frozen=True, slots=True)
class CanonicalRequest:
    model: str
    messages: tuple[CanonicalMessage, ...]
    system: str | None = None
    sampling: SamplingParams = field(default_factory=SamplingParams)
    tools: tuple[ToolDefinition, ...] = ()
    # "auto", "none", "required" or a tool name to force.
    tool_choice: str | None = None
    stream: bool = False
    passthrough: VendorExtensions = field(default_factory=VendorExtensions)

    def with_model(self, model: str) -> CanonicalRequest:
        return CanonicalRequest(
            model=model,
            messages=self.messages,
            system=self.system,
            sampling=self.sampling,
            tools=self.tools,
            tool_choice=self.tool_choice,
            stream=self.stream,
            passthrough=self.passthrough,
        )


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int | None, completion_tokens: int | None) -> Usage:
        prompt = max(0, int(prompt_tokens or 0))
        completion = max(0, int(completion_tokens or 0))
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class CanonicalChunk:
    role: Role | None = None
    text: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCallDelta, ...] = ()
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    id: str | None = None
    model: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.role is None
            and not self.text
            and not self.reasoning
            and not self.tool_calls
            and self.finish_reason is None
            and self.usage is None
        )


@dataclass(frozen=True, slots=True)
class CanonicalResponse:
    id: str
    model: str
    text: str = ""
    reasoning: str = ""
    tool_calls: tuple[ToolCallPart, ...] = ()
    finish_reason: FinishReason = "stop"
    usage: Usage = field(default_factory=Usage)
    created: int = field(default_factory=lambda: int(time.time()))


@dataclass(slots=True)
class Account:
    id: str
    provider: str
    auth: Literal["api_key", "oauth"] = "api_key"
    api_key: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    base_url: str | None = None
    priority: int = 0
    timeout_seconds: float | None = None
    extras: dict[str, Any] = field(default_factory=dict)
    cooled_down_until: float = 0.0
    last_error_class: str | None = None
    last_error_message: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def bearer_token(self) -> str | None:
        if self.auth == "oauth":
            return self.access_token
        return self.api_key

    def is_cooling_down(self, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return self.cooled_down_until > current

    def expires_within(self, margin_seconds: float, now: float | None = None) -> bool:
        if self.auth != "oauth":
            return False
        if not self.access_token:
            return bool(self.refresh_token)
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at <= current + margin_seconds


@dataclass(frozen=True, slots=True)
class ComboEntry:
    account: Account
    model: str

    @property
    def label(self) -> str:
        return f"{self.account.id}:{self.model}"


@dataclass(frozen=True, slots=True)
class Combo:
    name: str
    entries: tuple[ComboEntry, ...]

    def __len__(self) -> int:
        return len(self.entries)


class PipelineState(str, Enum):
    RECEIVED = "received"
    DETECTED = "detected"
    TRANSLATED = "translated"
    ACCOUNT_SELECTED = "account_selected"
    EXECUTING = "executing"
    CLASSIFYING = "classifying"
    STREAMING_RESPONSE = "streaming_response"
    WHOLE_RESPONSE = "whole_response"
    EXHAUSTED = "exhausted"
    COMPLETED = "completed"
    FAILED = "failed"


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "caller_disconnected") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class StreamTelemetry:
    request_started_at: float
    first_byte_at: float | None = None
    last_byte_at: float | None = None
    chunk_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    completed: bool = False
    error: str | None = None

    def mark_first_byte(self, now: float) -> None:
        if self.first_byte_at is None:
            self.first_byte_at = now

    def mark_last_byte(self, now: float) -> None:
        if self.first_byte_at is None:
            self.first_byte_at = now
        self.last_byte_at = max(now, self.first_byte_at)

    @property
    def ttfb_ms(self) -> float | None:
        if self.first_byte_at is None:
            return None
        return max(0.0, (self.first_byte_at - self.request_started_at) * 1000.0)

    @property
    def latency_ms(self) -> float | None:
        end = self.last_byte_at if self.last_byte_at is not None else self.first_byte_at
        if end is None:
            return None
        return max(0.0, (end - self.request_started_at) * 1000.0)

    @property
    def output_duration_ms(self) -> float | None:
        if self.first_byte_at is None or self.last_byte_at is None:
            return None
        return (self.last_byte_at - self.first_byte_at) * 1000.0


@dataclass(slots=True)
class ExecutionContext:
    request: CanonicalRequest
    combo: Combo
    caller_format: str
    request_id: str
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    position: int = 0
    attempts: int = 0
    state: PipelineState = PipelineState.RECEIVED
    # Keyed by combo position; one account may back several entries.
    errors: dict[int, Any] = field(default_factory=dict)
    auth_retried: set[int] = field(default_factory=set)
    transient_retries: dict[int, int] = field(default_factory=dict)
    # Keyed by account id; a dead refresh token is dead for every entry.
    refresh_failed: set[str] = field(default_factory=set)
    started_at: float = field(default_factory=time.time)

    def next_attempt(self) -> int:
        self.attempts += 1
        return self.attempts
