from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Callable

import httpx

from combo_router.errors import ExecutionError, RequestCancelledError, StreamTruncatedError
from combo_router.executors.base import request_error_details, transport_error_kind
from combo_router.formats.base import StreamDecoder, StreamEncoder
from combo_router.models import (
    CancellationToken,
    CanonicalChunk,
    CanonicalResponse,
    FinishReason,
    StreamTelemetry,
    ToolCallDelta,
    ToolCallPart,
    Usage,
)
from combo_router.telemetry import apply_usage, estimate_tokens

logger = logging.getLogger("uvicorn.error")


class StreamMode(str, Enum):
    PASSTHROUGH = "passthrough"
    TRANSLATE = "translate"


class ChunkAccumulator:
    """Folds canonical chunks into a whole response."""

    def __init__(self) -> None:
        self.text: list[str] = []
        self.reasoning: list[str] = []
        self.tool_calls: dict[int, dict[str, str]] = {}
        self.finish_reason: FinishReason | None = None
        self.usage: Usage | None = None
        self.response_id: str | None = None
        self.model: str | None = None

    def add(self, chunk: CanonicalChunk) -> None:
        if chunk.text:
            self.text.append(chunk.text)
        if chunk.reasoning:
            self.reasoning.append(chunk.reasoning)
        for delta in chunk.tool_calls:
            slot = self.tool_calls.setdefault(delta.index, {"id": "", "name": "", "arguments": ""})
            if delta.id:
                slot["id"] = delta.id
            if delta.name:
                slot["name"] = delta.name
            slot["arguments"] += delta.arguments
        if chunk.finish_reason is not None:
            self.finish_reason = chunk.finish_reason
        if chunk.usage is not None:
            self.usage = chunk.usage
        if chunk.id and self.response_id is None:
            self.response_id = chunk.id
        if chunk.model and self.model is None:
            self.model = chunk.model

    def estimated_completion_tokens(self) -> int:
        parts = self.text + self.reasoning + [call["arguments"] for call in self.tool_calls.values()]
        return estimate_tokens("".join(parts))

    def build(self, *, response_id: str, model: str, prompt_tokens: int = 0) -> CanonicalResponse:
        tool_calls = tuple(
            ToolCallPart(
                id=call["id"] or f"call_{index}",
                name=call["name"],
                arguments=call["arguments"] or "{}",
            )
            for index, call in sorted(self.tool_calls.items())
        )
        usage = self.usage
        if usage is None or (usage.prompt_tokens == 0 and usage.completion_tokens == 0):
            usage = Usage.of(prompt_tokens, self.estimated_completion_tokens())
        finish = self.finish_reason or ("tool_calls" if tool_calls else "stop")
        return CanonicalResponse(
            id=response_id,
            model=model,
            text="".join(self.text),
            reasoning="".join(self.reasoning),
            tool_calls=tool_calls,
            finish_reason=finish,
            usage=usage,
        )


class StreamController:
    def __init__(
        self,
        *,
        decoder: StreamDecoder,
        telemetry: StreamTelemetry,
        cancel_token: CancellationToken | None = None,
        on_close: Callable[[], Any] | None = None,
        prompt_estimate: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.decoder = decoder
        self.telemetry = telemetry
        self.cancel_token = cancel_token
        self.accumulator = ChunkAccumulator()
        self._on_close = on_close
        self._prompt_estimate = prompt_estimate
        self._clock = clock

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None and self.cancel_token.cancelled:
            self.telemetry.error = "cancelled"
            raise RequestCancelledError()

    def _finalize_tokens(self) -> None:
        if self.telemetry.prompt_tokens == 0:
            self.telemetry.prompt_tokens = self._prompt_estimate
        if self.telemetry.completion_tokens == 0:
            self.telemetry.completion_tokens = self.accumulator.estimated_completion_tokens()

    async def _close(self, events: AsyncIterator[Any]) -> None:
        closer = getattr(events, "aclose", None)
        if closer is not None:
            await closer()
        if self._on_close is not None:
            result = self._on_close()
            if hasattr(result, "__await__"):
                await result

    async def _decoded(self, events: AsyncIterator[Any]) -> AsyncIterator[tuple[Any, list[CanonicalChunk]]]:
        terminal = False
        try:
            self._check_cancelled()
            try:
                async for event in events:
                    self._check_cancelled()
                    self.telemetry.mark_first_byte(self._clock())
                    self.telemetry.chunk_count += 1
                    chunks = self.decoder.decode(event)
                    for chunk in chunks:
                        self.accumulator.add(chunk)
                        apply_usage(self.telemetry, chunk.usage)
                    yield event, chunks
                    if self.decoder.terminal:
                        terminal = True
                        break
            except httpx.RequestError as exc:
                details = request_error_details(exc)
                self.telemetry.error = f"transport_{transport_error_kind(exc)}"
                raise ExecutionError(
                    f"Upstream stream failed ({details['error_type']}): {details['error']}",
                    kind=transport_error_kind(exc),
                    body=details,
                ) from exc
            except ExecutionError as exc:
                self.telemetry.error = exc.error_type
                raise

            if not terminal and not self.decoder.complete_on_close():
                self.telemetry.error = "truncated"
                logger.warning(
                    "stream_truncated chunk_count=%d completion_tokens=%d",
                    self.telemetry.chunk_count,
                    self.telemetry.completion_tokens,
                )
                raise StreamTruncatedError(chunk_count=self.telemetry.chunk_count)

            self.telemetry.mark_last_byte(self._clock())
            self.telemetry.completed = True
            self._finalize_tokens()
        finally:
            if not self.telemetry.completed and self.telemetry.first_byte_at is not None:
                self.telemetry.mark_last_byte(self._clock())
                self._finalize_tokens()
            await self._close(events)

    async def run(
        self,
        events: AsyncIterator[Any],
        mode: StreamMode,
        encoder: StreamEncoder,
    ) -> AsyncIterator[bytes]:
        """Yield caller frames lazily; raises after the partial frames on failure."""
        async for event, chunks in self._decoded(events):
            if mode is StreamMode.PASSTHROUGH:
                raw = getattr(event, "raw", b"")
                if raw:
                    yield raw
                continue
            for chunk in chunks:
                for frame in encoder.encode(chunk):
                    yield frame
        if mode is StreamMode.TRANSLATE:
            if self.accumulator.usage is None and self.telemetry.completion_tokens:
                # Vendors that never report usage still get a usage frame from estimates.
                usage = Usage.of(self.telemetry.prompt_tokens, self.telemetry.completion_tokens)
                for frame in encoder.encode(CanonicalChunk(usage=usage)):
                    yield frame
            for frame in encoder.finish():
                yield frame

    async def aggregate(self, events: AsyncIterator[Any], *, response_id: str, model: str) -> CanonicalResponse:
        async for _event, _chunks in self._decoded(events):
            pass
        return self.accumulator.build(
            response_id=self.accumulator.response_id or response_id,
            model=self.accumulator.model or model,
            prompt_tokens=self.telemetry.prompt_tokens,
        )


def response_to_chunks(response: CanonicalResponse) -> list[CanonicalChunk]:
    chunks = [CanonicalChunk(role="assistant", id=response.id, model=response.model)]
    if response.reasoning:
        chunks.append(CanonicalChunk(reasoning=response.reasoning))
    if response.text:
        chunks.append(CanonicalChunk(text=response.text))
    for index, call in enumerate(response.tool_calls):
        chunks.append(
            CanonicalChunk(
                tool_calls=(ToolCallDelta(index=index, id=call.id, name=call.name, arguments=call.arguments),)
            )
        )
    chunks.append(CanonicalChunk(finish_reason=response.finish_reason, usage=response.usage))
    return chunks


async def replay_whole_as_stream(
    response: CanonicalResponse,
    encoder: StreamEncoder,
    *,
    cancel_token: CancellationToken | None = None,
) -> AsyncIterator[bytes]:
    for chunk in response_to_chunks(response):
        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelledError()
        for frame in encoder.encode(chunk):
            yield frame
    for frame in encoder.finish():
        yield frame
