from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from combo_router.auth import AuthConfigurationError, Authenticator
from combo_router.config import load_gateway_config
from combo_router.credential_store import YamlCredentialStore
from combo_router.errors import ComboExhaustedError, GatewayError
from combo_router.event_log import JsonlEventLogger
from combo_router.executors import build_executor_table
from combo_router.fallback import AccountSelector
from combo_router.formats import build_format_registry
from combo_router.formats.claude import FORMAT_KEY as CLAUDE_FORMAT
from combo_router.formats.gemini import FORMAT_KEY as GEMINI_FORMAT
from combo_router.formats.openai import FORMAT_KEY as OPENAI_FORMAT
from combo_router.formats.responses import FORMAT_KEY as RESPONSES_FORMAT
from combo_router.models import CancellationToken
from combo_router.pipeline import ChatPipeline, StreamResult
from combo_router.settings import get_settings
from combo_router.usage import JsonlUsageSink

app = FastAPI(
    title="Combo Router",
    description="Multi-format LLM gateway that fails over across provider accounts.",
    version="0.1.0",
)
logger = logging.getLogger("uvicorn.error")

GEMINI_ACTIONS = {"generateContent": False, "streamGenerateContent": True}
DISCONNECT_POLL_SECONDS = 0.25


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if not request.url.path.startswith("/v1"):
        return await call_next(request)
    authenticator: Authenticator = request.app.state.authenticator
    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return auth_error
    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = load_gateway_config(settings.combo_router_config_path)
    store = YamlCredentialStore(
        config,
        path=settings.combo_router_config_path if settings.persist_refreshed_tokens else None,
    )
    client = httpx.AsyncClient(timeout=settings.upstream_timeout(), limits=settings.upstream_limits())
    usage_sink = JsonlUsageSink(settings.usage_log_path, enabled=settings.usage_log_enabled)
    event_logger = JsonlEventLogger(settings.event_log_path, enabled=settings.event_log_enabled)
    executors = build_executor_table(
        persist=store.persist_account,
        refresh_margin_seconds=settings.refresh_margin_seconds,
        default_timeout=settings.upstream_timeout(),
    )

    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.store = store
    app.state.usage_sink = usage_sink
    app.state.event_logger = event_logger
    app.state.pipeline = ChatPipeline(
        registry=build_format_registry(),
        executors=executors,
        client=client,
        policy=config.fallback.to_policy(),
        selector=AccountSelector(),
        usage_sink=usage_sink,
        event_hook=event_logger.log if settings.event_log_enabled else None,
    )
    logger.info(
        "router_started accounts=%d combos=%d config=%s",
        len(store.accounts),
        len(config.combos),
        settings.combo_router_config_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    pipeline: ChatPipeline = app.state.pipeline
    await pipeline.client.aclose()
    app.state.usage_sink.close()
    app.state.event_logger.close()


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or request.headers.get("x-correlation-id") or uuid4().hex[:12]


async def _json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")
    return payload


async def _watch_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            token.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _error_response(caller_format: str, error: GatewayError, request_id: str) -> JSONResponse:
    pipeline: ChatPipeline = app.state.pipeline
    content = pipeline.registry.error_envelope(caller_format, error)
    if isinstance(error, ComboExhaustedError) and isinstance(content.get("error"), dict):
        content["error"]["attempts"] = [failure.to_dict() for failure in error.failures]
    return JSONResponse(status_code=error.status_code, content=content, headers={"x-request-id": request_id})


async def _stream_frames(frames: AsyncIterator[bytes], token: CancellationToken) -> AsyncIterator[bytes]:
    try:
        async for frame in frames:
            yield frame
    finally:
        # The server stops iterating when the caller goes away; close the upstream.
        if not token.cancelled:
            token.cancel("stream_closed")
        with contextlib.suppress(RuntimeError):
            await frames.aclose()


async def _run_chat(
    request: Request,
    caller_format: str,
    overrides: dict[str, Any] | None = None,
) -> JSONResponse | StreamingResponse:
    payload = await _json_payload(request)
    if overrides:
        payload = {**payload, **overrides}
    request_id = _request_id(request)
    pipeline: ChatPipeline = request.app.state.pipeline
    store: YamlCredentialStore = request.app.state.store

    token = CancellationToken()
    watcher = asyncio.create_task(_watch_disconnect(request, token))
    try:
        result = await pipeline.execute_chat(
            caller_format,
            payload,
            store.resolve_combo,
            token,
            request_id=request_id,
            path=request.url.path,
        )
    except GatewayError as exc:
        logger.info(
            "request_failed request_id=%s caller_format=%s status=%d error_type=%s",
            request_id,
            caller_format,
            exc.status_code,
            exc.error_type,
        )
        return _error_response(caller_format, exc, request_id)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    if isinstance(result, StreamResult):
        return StreamingResponse(
            _stream_frames(result.frames, token),
            status_code=result.status_code,
            media_type=result.media_type,
            headers=result.headers,
        )
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def list_models(request: Request) -> dict[str, Any]:
    store: YamlCredentialStore = request.app.state.store
    return {
        "object": "list",
        "data": [
            {"id": model, "object": "model", "owned_by": "combo-router"}
            for model in store.available_models()
        ],
    }


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    return await _run_chat(request, OPENAI_FORMAT)


@app.post("/v1/messages")
async def messages(request: Request):
    return await _run_chat(request, CLAUDE_FORMAT)


@app.post("/v1/responses")
async def responses(request: Request):
    return await _run_chat(request, RESPONSES_FORMAT)


@app.post("/v1beta/models/{model_action:path}")
async def generate_content(model_action: str, request: Request):
    model, _, action = model_action.rpartition(":")
    if not model or action not in GEMINI_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unsupported Gemini action '{model_action}'.")
    return await _run_chat(request, GEMINI_FORMAT, {"model": model, "stream": GEMINI_ACTIONS[action]})


@app.exception_handler(FileNotFoundError)
async def missing_file_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(AuthConfigurationError)
async def auth_configuration_error_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("combo_router.main:app", host=settings.host, port=settings.port, reload=False)
