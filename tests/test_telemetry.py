from __future__ import annotations

import pytest

from combo_router.models import StreamTelemetry, Usage
from combo_router.telemetry import (
    apply_usage,
    calculate_throughput,
    categorize_input_tokens,
    categorize_output_tokens,
    estimate_tokens,
    telemetry_summary,
)


@pytest.mark.parametrize(
    ("completion_tokens", "latency_ms", "output_duration_ms", "expected"),
    [
        (100, 2000.0, None, 50.0),
        (100, 2000.0, 500.0, 200.0),
        (100, 2000.0, 0.0, 50.0),
        (0, 2000.0, None, None),
        (None, 2000.0, None, None),
        (-5, 2000.0, None, None),
        (100, 0.0, None, None),
        (100, None, 500.0, None),
    ],
)
def test_calculate_throughput(
    completion_tokens: int | None,
    latency_ms: float | None,
    output_duration_ms: float | None,
    expected: float | None,
) -> None:
    assert calculate_throughput(completion_tokens, latency_ms, output_duration_ms) == expected


@pytest.mark.parametrize(
    ("tokens", "expected"),
    [(0, "low"), (499, "low"), (500, "medium"), (2000, "medium"), (2001, "high")],
)
def test_categorize_input_tokens(tokens: int, expected: str) -> None:
    assert categorize_input_tokens(tokens) == expected


@pytest.mark.parametrize(
    ("tokens", "expected"),
    [(0, "short"), (99, "short"), (100, "medium"), (500, "medium"), (501, "long")],
)
def test_categorize_output_tokens(tokens: int, expected: str) -> None:
    assert categorize_output_tokens(tokens) == expected


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("a") == 1
    assert estimate_tokens("abcdefgh") == 2
    assert estimate_tokens("abcdefghi") == 3


def test_telemetry_timings_never_go_negative() -> None:
    telemetry = StreamTelemetry(request_started_at=100.0)
    assert telemetry.ttfb_ms is None
    assert telemetry.latency_ms is None

    telemetry.mark_first_byte(99.0)
    telemetry.mark_last_byte(98.0)

    assert telemetry.ttfb_ms == 0.0
    assert telemetry.latency_ms == 0.0
    assert telemetry.output_duration_ms == 0.0


def test_apply_usage_keeps_known_counts() -> None:
    telemetry = StreamTelemetry(request_started_at=0.0)
    apply_usage(telemetry, Usage.of(40, 0))
    apply_usage(telemetry, Usage.of(0, 12))
    apply_usage(telemetry, None)

    assert telemetry.prompt_tokens == 40
    assert telemetry.completion_tokens == 12


def test_telemetry_summary_reports_output_window_throughput() -> None:
    telemetry = StreamTelemetry(request_started_at=10.0, chunk_count=4, prompt_tokens=600, completion_tokens=50)
    telemetry.mark_first_byte(10.5)
    telemetry.mark_last_byte(11.0)
    telemetry.completed = True

    summary = telemetry_summary(telemetry)

    assert summary["ttfb_ms"] == 500.0
    assert summary["latency_ms"] == 1000.0
    assert summary["output_duration_ms"] == 500.0
    assert summary["tokens_per_second"] == 100.0
    assert summary["input_category"] == "medium"
    assert summary["output_category"] == "short"
    assert summary["completed"] is True
    assert summary["error"] is None
