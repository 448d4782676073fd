from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from combo_router.event_log import JsonlEventLogger
from combo_router.models import StreamTelemetry
from combo_router.telemetry import telemetry_summary


@dataclass(frozen=True, slots=True)
class UsageRecord:
    request_id: str
    combo: str
    caller_format: str
    stream: bool
    status: str
    attempts: int
    provider: str | None = None
    account_id: str | None = None
    model: str | None = None
    target_format: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    ttfb_ms: float | None = None
    latency_ms: float | None = None
    output_duration_ms: float | None = None
    tokens_per_second: float | None = None
    input_category: str | None = None
    output_category: str | None = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_telemetry(cls, telemetry: StreamTelemetry, **fields: Any) -> UsageRecord:
        summary = telemetry_summary(telemetry)
        return cls(
            prompt_tokens=telemetry.prompt_tokens,
            completion_tokens=telemetry.completion_tokens,
            ttfb_ms=summary["ttfb_ms"],  # type: ignore[arg-type]
            latency_ms=summary["latency_ms"],  # type: ignore[arg-type]
            output_duration_ms=summary["output_duration_ms"],  # type: ignore[arg-type]
            tokens_per_second=summary["tokens_per_second"],  # type: ignore[arg-type]
            input_category=str(summary["input_category"]),
            output_category=str(summary["output_category"]),
            **fields,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class UsageSink(Protocol):
    def submit(self, record: UsageRecord) -> None: ...


class InMemoryUsageSink:
    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    def submit(self, record: UsageRecord) -> None:
        self.records.append(record)


class JsonlUsageSink:
    def __init__(self, path: str | Path, *, enabled: bool = True, max_queue_size: int = 8192) -> None:
        self._writer = JsonlEventLogger(
            path,
            enabled=enabled,
            max_queue_size=max_queue_size,
            thread_name="combo-router-usage-writer",
        )

    def submit(self, record: UsageRecord) -> None:
        self._writer.log({"event": "usage", **record.to_dict()})

    def close(self) -> None:
        self._writer.close()
