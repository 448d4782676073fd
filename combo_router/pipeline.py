from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, NoReturn, TypeVar, Union
from uuid import uuid4

import httpx

from combo_router.errors import (
    AttemptFailure,
    ComboExhaustedError,
    ExecutionError,
    GatewayError,
    RefreshError,
    RequestCancelledError,
    StreamTruncatedError,
    TranslationError,
    UnsupportedFormatError,
)
from combo_router.executors import GuardedExecutor, OutboundResponse, ResponseShape, executor_for
from combo_router.fallback import (
    EXHAUSTED,
    AccountSelector,
    FallbackAction,
    FallbackPolicy,
    mark_cooldown,
    record_error,
)
from combo_router.formats._common import new_id
from combo_router.formats.base import StreamEncoder
from combo_router.formats.registry import FormatRegistry, detect_format
from combo_router.models import (
    CancellationToken,
    CanonicalRequest,
    CanonicalResponse,
    Combo,
    ComboEntry,
    ExecutionContext,
    PipelineState,
    StreamTelemetry,
)
from combo_router.streaming import StreamController, StreamMode, replay_whole_as_stream
from combo_router.telemetry import apply_usage, estimate_tokens, start_telemetry
from combo_router.usage import UsageRecord, UsageSink

logger = logging.getLogger("uvicorn.error")

ComboResolver = Callable[[str], Union[Combo, Awaitable[Combo]]]
EventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")

RESPONSE_ID_PREFIXES = {
    "openai": "chatcmpl-",
    "claude": "msg_",
    "openai-responses": "resp_",
    "gemini": "gen-",
}


@dataclass(slots=True)
class _Outcome:
    entry: ComboEntry
    executor: GuardedExecutor
    telemetry: StreamTelemetry


@dataclass(slots=True)
class WholeResult:
    body: dict[str, Any]
    request_id: str
    account_id: str
    provider: str
    model: str
    attempts: int
    telemetry: StreamTelemetry
    status_code: int = 200

    @property
    def headers(self) -> dict[str, str]:
        return _router_headers(self.request_id, self.account_id, self.provider, self.model, self.attempts)


@dataclass(slots=True)
class StreamResult:
    frames: AsyncIterator[bytes]
    request_id: str
    account_id: str
    provider: str
    model: str
    attempts: int
    telemetry: StreamTelemetry
    media_type: str = "text/event-stream"
    status_code: int = 200

    @property
    def headers(self) -> dict[str, str]:
        headers = _router_headers(self.request_id, self.account_id, self.provider, self.model, self.attempts)
        headers["Cache-Control"] = "no-cache"
        return headers


def _router_headers(request_id: str, account_id: str, provider: str, model: str, attempts: int) -> dict[str, str]:
    return {
        "x-request-id": request_id,
        "x-router-account": account_id,
        "x-router-provider": provider,
        "x-router-model": model,
        "x-router-attempts": str(attempts),
    }


@dataclass(slots=True)
class _PreparedStream:
    first_frames: list[bytes] = field(default_factory=list)
    rest: AsyncIterator[bytes] | None = None


def _prompt_estimate(request: CanonicalRequest) -> int:
    text = (request.system or "") + "".join(message.text for message in request.messages)
    return estimate_tokens(text)


class ChatPipeline:
    def __init__(
        self,
        *,
        registry: FormatRegistry,
        executors: Mapping[str, GuardedExecutor],
        client: httpx.AsyncClient,
        policy: FallbackPolicy | None = None,
        selector: AccountSelector | None = None,
        usage_sink: UsageSink | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.registry = registry
        self.executors = executors
        self.client = client
        self.policy = policy or FallbackPolicy()
        self.selector = selector or AccountSelector()
        self.usage_sink = usage_sink
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        hook = self.event_hook
        if hook is None:
            return
        try:
            hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("pipeline_event_hook_failed event=%s error=%s", event, exc)

    def _submit_usage(self, record: UsageRecord) -> None:
        sink = self.usage_sink
        if sink is None:
            return
        try:
            sink.submit(record)
        except Exception as exc:
            logger.debug("usage_submit_failed request_id=%s error=%s", record.request_id, exc)

    def translate_request(self, format_key: str, raw_body: Any) -> CanonicalRequest:
        return self.registry.to_canonical(format_key, raw_body)

    def translate_response(self, format_key: str, response: CanonicalResponse) -> dict[str, Any]:
        return self.registry.canonical_to_caller_format(format_key, response)

    async def execute_chat(
        self,
        caller_format: str | None,
        raw_body: Any,
        combo_resolver: ComboResolver,
        cancel_token: CancellationToken | None = None,
        *,
        request_id: str | None = None,
        path: str = "",
    ) -> WholeResult | StreamResult:
        """Run one chat request through the combo.

        ``caller_format`` may be ``None``, in which case the format is detected
        from ``path`` and the body shape.
        """
        request_id = request_id or uuid4().hex[:12]
        cancel_token = cancel_token or CancellationToken()
        self._emit("pipeline_received", request_id=request_id, caller_format=caller_format, path=path)

        caller_format = self._detect(request_id, caller_format, raw_body, path)
        # Unknown and target-only formats raise UnsupportedFormatError here.
        request = self.translate_request(caller_format, raw_body)

        resolved = combo_resolver(request.model)
        combo = await resolved if inspect.isawaitable(resolved) else resolved
        context = ExecutionContext(
            request=request,
            combo=combo,
            caller_format=caller_format,
            request_id=request_id,
            cancel_token=cancel_token,
            state=PipelineState.TRANSLATED,
        )
        logger.info(
            "pipeline_translated request_id=%s caller_format=%s model=%s combo=%s entries=%d stream=%s",
            request_id,
            caller_format,
            request.model,
            combo.name,
            len(combo),
            request.stream,
        )
        return await self._run_attempts(context)

    def _detect(self, request_id: str, caller_format: str | None, raw_body: Any, path: str) -> str:
        if caller_format is None:
            caller_format = detect_format(path, raw_body)
            source = "path" if path else "body"
        else:
            source = "route"
            try:
                body_format = detect_format("", raw_body)
            except UnsupportedFormatError:
                body_format = None
            # Claude bodies without system or tool blocks read as openai; only flag the rest.
            if body_format is not None and body_format != caller_format and caller_format != "claude":
                logger.warning(
                    "pipeline_body_format_mismatch request_id=%s caller_format=%s body_format=%s",
                    request_id,
                    caller_format,
                    body_format,
                )
        logger.debug(
            "pipeline_detected request_id=%s caller_format=%s source=%s", request_id, caller_format, source
        )
        self._emit(
            "pipeline_detected",
            request_id=request_id,
            state=PipelineState.DETECTED.value,
            caller_format=caller_format,
            source=source,
        )
        return caller_format

    def _check_cancelled(self, context: ExecutionContext) -> None:
        if context.cancel_token.cancelled:
            context.state = PipelineState.FAILED
            logger.info("pipeline_cancelled request_id=%s attempts=%d", context.request_id, context.attempts)
            raise RequestCancelledError()

    async def _until_cancelled(self, context: ExecutionContext, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the caller goes away first."""
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(context.cancel_token.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            cancelled.cancel()
        if work.done():
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        self._check_cancelled(context)
        raise RequestCancelledError()

    async def _run_attempts(self, context: ExecutionContext) -> WholeResult | StreamResult:
        combo = context.combo
        while True:
            self._check_cancelled(context)
            selected = self.selector.select_next(combo, context)
            if selected is EXHAUSTED:
                self._exhausted(context)
            entry = selected
            account = entry.account
            context.state = PipelineState.ACCOUNT_SELECTED
            attempt = context.next_attempt()
            self._emit(
                "pipeline_attempt",
                request_id=context.request_id,
                attempt=attempt,
                position=context.position,
                account=account.id,
                provider=account.provider,
                model=entry.model,
            )
            logger.info(
                "pipeline_attempt request_id=%s attempt=%d position=%d/%d account=%s provider=%s model=%s",
                context.request_id,
                attempt,
                context.position + 1,
                len(combo),
                account.id,
                account.provider,
                entry.model,
            )

            telemetry = start_telemetry()
            try:
                executor = executor_for(self.executors, account.provider)
                context.state = PipelineState.EXECUTING
                self._check_cancelled(context)
                upstream = await self._until_cancelled(
                    context, executor.execute(self.client, account, context.request, entry.model)
                )
            except RequestCancelledError:
                context.state = PipelineState.FAILED
                self._cancelled_before_response(context, entry)
                raise
            except ExecutionError as exc:
                await self._handle_failure(context, entry, exc)
                continue

            outcome = _Outcome(entry=entry, executor=executor, telemetry=telemetry)
            try:
                if context.request.stream:
                    return await self._stream_result(context, outcome, upstream)
                return await self._whole_result(context, outcome, upstream)
            except RequestCancelledError:
                context.state = PipelineState.FAILED
                await upstream.aclose()
                self._completed(context, outcome, upstream, status="cancelled")
                raise
            except ExecutionError as exc:
                await self._handle_failure(context, entry, exc)

    def _cancelled_before_response(self, context: ExecutionContext, entry: ComboEntry) -> None:
        self._submit_usage(
            UsageRecord(
                request_id=context.request_id,
                combo=context.combo.name,
                caller_format=context.caller_format,
                stream=context.request.stream,
                status="cancelled",
                attempts=context.attempts,
                provider=entry.account.provider,
                account_id=entry.account.id,
                model=entry.model,
                error=RequestCancelledError.error_type,
            )
        )

    def _exhausted(self, context: ExecutionContext) -> NoReturn:
        context.state = PipelineState.EXHAUSTED
        failures = list(context.errors.values())
        error = ComboExhaustedError(context.combo.name, failures)
        logger.warning(
            "pipeline_exhausted request_id=%s combo=%s attempts=%d status=%d last_error=%s",
            context.request_id,
            context.combo.name,
            context.attempts,
            error.status_code,
            error.last_message,
        )
        self._emit(
            "pipeline_exhausted",
            request_id=context.request_id,
            combo=context.combo.name,
            attempts=context.attempts,
            failures=[failure.to_dict() for failure in failures],
        )
        context.state = PipelineState.FAILED
        self._submit_usage(
            UsageRecord(
                request_id=context.request_id,
                combo=context.combo.name,
                caller_format=context.caller_format,
                stream=context.request.stream,
                status="exhausted",
                attempts=context.attempts,
                error=error.last_message,
            )
        )
        raise error

    async def _handle_failure(self, context: ExecutionContext, entry: ComboEntry, error: ExecutionError) -> None:
        context.state = PipelineState.CLASSIFYING
        account = entry.account
        decision = self.policy.decide(error, entry, context)
        context.errors[context.position] = AttemptFailure(
            account_id=account.id,
            provider=account.provider,
            model=entry.model,
            error_type=error.error_type,
            message=error.message,
            status=error.status,
            error_class=decision.error_class.value,
        )
        logger.warning(
            "pipeline_attempt_failed request_id=%s account=%s status=%s kind=%s class=%s action=%s error=%s",
            context.request_id,
            account.id,
            error.status,
            error.kind,
            decision.error_class.value,
            decision.action.value,
            error.message,
        )

        if decision.action is FallbackAction.RETRY_SAME:
            self._emit(
                "pipeline_retry",
                request_id=context.request_id,
                account=account.id,
                reason=decision.error_class.value,
                status=error.status,
            )
            return

        if decision.action is FallbackAction.REFRESH_AND_RETRY:
            self._emit("pipeline_retry", request_id=context.request_id, account=account.id, reason="auth_expired")
            try:
                self._check_cancelled(context)
                executor = executor_for(self.executors, account.provider)
                await self._until_cancelled(context, executor.force_refresh(self.client, account))
            except RefreshError as refresh_error:
                await self._handle_failure(context, entry, refresh_error)
            return

        if decision.action is FallbackAction.COOLDOWN_AND_ADVANCE:
            seconds = decision.cooldown_seconds or self.policy.default_cooldown_seconds
            until = await mark_cooldown(account, seconds, error_class=decision.error_class, message=error.message)
            self._emit(
                "pipeline_cooldown",
                request_id=context.request_id,
                account=account.id,
                provider=account.provider,
                seconds=round(seconds, 3),
                until_epoch=until,
            )
        else:
            await record_error(account, decision.error_class, error.message)
        self.selector.advance(context)
        context.state = PipelineState.ACCOUNT_SELECTED

    async def _read_whole(
        self, context: ExecutionContext, upstream: OutboundResponse, telemetry: StreamTelemetry
    ) -> CanonicalResponse:
        response = upstream.response
        try:
            raw = await self._until_cancelled(context, response.aread())
        finally:
            await response.aclose()
        now = time.time()
        telemetry.mark_first_byte(now)
        telemetry.mark_last_byte(now)
        telemetry.chunk_count = 1
        try:
            body = json.loads(raw) if raw else None
        except ValueError as exc:
            raise ExecutionError(
                "Upstream returned a non-JSON body.",
                kind="invalid_response",
                retryable=False,
                provider=upstream.provider,
                account_id=upstream.account_id,
            ) from exc
        try:
            canonical = self.registry.provider_response_to_canonical(upstream.target_format, body)
        except TranslationError as exc:
            raise ExecutionError(
                f"Upstream response could not be translated: {exc.message}",
                kind="invalid_response",
                body=body,
                retryable=False,
                provider=upstream.provider,
                account_id=upstream.account_id,
            ) from exc
        apply_usage(telemetry, canonical.usage)
        telemetry.completed = True
        return canonical

    def _response_id(self, context: ExecutionContext) -> str:
        return new_id(RESPONSE_ID_PREFIXES.get(context.caller_format, "gen-"))

    async def _whole_result(
        self,
        context: ExecutionContext,
        outcome: _Outcome,
        upstream: OutboundResponse,
    ) -> WholeResult:
        telemetry = outcome.telemetry
        if upstream.shape is ResponseShape.STREAM:
            controller = StreamController(
                decoder=self.registry.stream_decoder(upstream.target_format),
                telemetry=telemetry,
                cancel_token=context.cancel_token,
                on_close=upstream.aclose,
                prompt_estimate=_prompt_estimate(context.request),
            )
            try:
                canonical = await controller.aggregate(
                    outcome.executor.iter_events(upstream.response),
                    response_id=self._response_id(context),
                    model=outcome.entry.model,
                )
            except StreamTruncatedError as exc:
                raise ExecutionError(exc.message, kind="network", provider=upstream.provider) from exc
        else:
            canonical = await self._read_whole(context, upstream, telemetry)

        context.state = PipelineState.WHOLE_RESPONSE
        body = self.translate_response(context.caller_format, canonical)
        self._check_cancelled(context)
        context.state = PipelineState.COMPLETED
        self._completed(context, outcome, upstream, status="ok")
        return WholeResult(
            body=body,
            request_id=context.request_id,
            account_id=outcome.entry.account.id,
            provider=upstream.provider,
            model=outcome.entry.model,
            attempts=context.attempts,
            telemetry=telemetry,
        )

    async def _stream_result(
        self,
        context: ExecutionContext,
        outcome: _Outcome,
        upstream: OutboundResponse,
    ) -> StreamResult:
        encoder = self.registry.stream_encoder(context.caller_format, self._response_id(context), context.request.model)
        telemetry = outcome.telemetry
        if upstream.shape is ResponseShape.WHOLE:
            canonical = await self._read_whole(context, upstream, telemetry)
            frames = replay_whole_as_stream(canonical, encoder, cancel_token=context.cancel_token)
        else:
            mode = StreamMode.PASSTHROUGH if upstream.target_format == context.caller_format else StreamMode.TRANSLATE
            controller = StreamController(
                decoder=self.registry.stream_decoder(upstream.target_format),
                telemetry=telemetry,
                cancel_token=context.cancel_token,
                on_close=upstream.aclose,
                prompt_estimate=_prompt_estimate(context.request),
            )
            frames = controller.run(outcome.executor.iter_events(upstream.response), mode, encoder)

        # Pull the first frame while fallback is still possible.
        prepared = _PreparedStream(rest=frames)
        try:
            prepared.first_frames.append(await frames.__anext__())
        except StopAsyncIteration:
            pass
        except StreamTruncatedError as exc:
            await frames.aclose()
            raise ExecutionError(exc.message, kind="network", provider=upstream.provider) from exc
        except GatewayError:
            await frames.aclose()
            raise

        context.state = PipelineState.STREAMING_RESPONSE
        logger.info(
            "pipeline_streaming request_id=%s account=%s provider=%s target_format=%s caller_format=%s",
            context.request_id,
            outcome.entry.account.id,
            upstream.provider,
            upstream.target_format,
            context.caller_format,
        )
        return StreamResult(
            frames=self._stream_body(context, outcome, upstream, prepared, encoder),
            request_id=context.request_id,
            account_id=outcome.entry.account.id,
            provider=upstream.provider,
            model=outcome.entry.model,
            attempts=context.attempts,
            telemetry=telemetry,
        )

    async def _stream_body(
        self,
        context: ExecutionContext,
        outcome: _Outcome,
        upstream: OutboundResponse,
        prepared: _PreparedStream,
        encoder: StreamEncoder,
    ) -> AsyncIterator[bytes]:
        status = "ok"
        rest = prepared.rest
        try:
            for frame in prepared.first_frames:
                yield frame
            if rest is not None:
                async for frame in rest:
                    yield frame
            context.state = PipelineState.COMPLETED
        except RequestCancelledError:
            status = "cancelled"
            context.state = PipelineState.FAILED
            logger.info("pipeline_stream_cancelled request_id=%s", context.request_id)
        except GatewayError as exc:
            status = "error"
            context.state = PipelineState.FAILED
            outcome.telemetry.error = outcome.telemetry.error or exc.error_type
            logger.warning(
                "pipeline_stream_failed request_id=%s account=%s error_type=%s error=%s",
                context.request_id,
                outcome.entry.account.id,
                exc.error_type,
                exc.message,
            )
            for frame in encoder.error(exc):
                yield frame
        finally:
            if rest is not None and hasattr(rest, "aclose"):
                await rest.aclose()
            if context.state is not PipelineState.COMPLETED and status == "ok":
                status = "cancelled"
                context.state = PipelineState.FAILED
            self._completed(context, outcome, upstream, status=status)

    def _completed(
        self,
        context: ExecutionContext,
        outcome: _Outcome,
        upstream: OutboundResponse,
        *,
        status: str,
    ) -> None:
        telemetry = outcome.telemetry
        record = UsageRecord.from_telemetry(
            telemetry,
            request_id=context.request_id,
            combo=context.combo.name,
            caller_format=context.caller_format,
            stream=context.request.stream,
            status=status,
            attempts=context.attempts,
            provider=upstream.provider,
            account_id=outcome.entry.account.id,
            model=outcome.entry.model,
            target_format=upstream.target_format,
            error=telemetry.error,
        )
        logger.info(
            "pipeline_completed request_id=%s account=%s status=%s attempts=%d prompt_tokens=%d "
            "completion_tokens=%d ttfb_ms=%s latency_ms=%s tokens_per_second=%s",
            context.request_id,
            outcome.entry.account.id,
            status,
            context.attempts,
            record.prompt_tokens,
            record.completion_tokens,
            record.ttfb_ms,
            record.latency_ms,
            record.tokens_per_second,
        )
        self._emit("pipeline_completed", **record.to_dict())
        self._submit_usage(record)
