from __future__ import annotations

import math
import time
from typing import Literal

from combo_router.models import StreamTelemetry, Usage

InputCategory = Literal["low", "medium", "high"]
OutputCategory = Literal["short", "medium", "long"]


def calculate_throughput(
    completion_tokens: int | None,
    latency_ms: float | None,
    output_duration_ms: float | None = None,
) -> float | None:
    """Tokens per second over the output window, falling back to total latency."""
    if not completion_tokens or completion_tokens <= 0:
        return None
    if latency_ms is None or latency_ms <= 0:
        return None
    duration_ms = (
        output_duration_ms
        if output_duration_ms is not None and output_duration_ms > 0
        else latency_ms
    )
    value = (completion_tokens / duration_ms) * 1000.0
    if not math.isfinite(value) or value < 0:
        return None
    return value


def categorize_input_tokens(tokens: int) -> InputCategory:
    if tokens < 500:
        return "low"
    if tokens <= 2000:
        return "medium"
    return "high"


def categorize_output_tokens(tokens: int) -> OutputCategory:
    if tokens < 100:
        return "short"
    if tokens <= 500:
        return "medium"
    return "long"


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


def start_telemetry(now: float | None = None) -> StreamTelemetry:
    return StreamTelemetry(request_started_at=time.time() if now is None else now)


def apply_usage(telemetry: StreamTelemetry, usage: Usage | None) -> None:
    if usage is None:
        return
    if usage.prompt_tokens:
        telemetry.prompt_tokens = usage.prompt_tokens
    if usage.completion_tokens:
        telemetry.completion_tokens = usage.completion_tokens


def telemetry_summary(telemetry: StreamTelemetry) -> dict[str, object]:
    latency_ms = telemetry.latency_ms
    output_duration_ms = telemetry.output_duration_ms
    throughput = calculate_throughput(
        telemetry.completion_tokens, latency_ms, output_duration_ms
    )
    return {
        "ttfb_ms": _round(telemetry.ttfb_ms),
        "latency_ms": _round(latency_ms),
        "output_duration_ms": _round(output_duration_ms),
        "chunk_count": telemetry.chunk_count,
        "prompt_tokens": telemetry.prompt_tokens,
        "completion_tokens": telemetry.completion_tokens,
        "tokens_per_second": _round(throughput),
        "input_category": categorize_input_tokens(telemetry.prompt_tokens),
        "output_category": categorize_output_tokens(telemetry.completion_tokens),
        "completed": telemetry.completed,
        "error": telemetry.error,
    }


def _round(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value, 3)
