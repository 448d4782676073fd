from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol

from combo_router.errors import GatewayError
from combo_router.models import CanonicalChunk, CanonicalRequest, CanonicalResponse


class StreamDecoder(Protocol):
    terminal: bool

    def decode(self, event: Any) -> list[CanonicalChunk]: ...

    def complete_on_close(self) -> bool: ...


class StreamEncoder(Protocol):
    def encode(self, chunk: CanonicalChunk) -> list[bytes]: ...

    def finish(self) -> list[bytes]: ...

    def error(self, error: GatewayError) -> list[bytes]: ...


@dataclass(frozen=True, slots=True)
class FormatAdapter:
    key: str
    request_to_canonical: Callable[[dict[str, Any]], CanonicalRequest] | None
    request_from_canonical: Callable[[CanonicalRequest], Any]
    response_to_canonical: Callable[[dict[str, Any]], CanonicalResponse] | None
    response_from_canonical: Callable[[CanonicalResponse], dict[str, Any]] | None
    stream_decoder: Callable[[], StreamDecoder]
    stream_encoder: Callable[[str, str], StreamEncoder] | None
    error_envelope: Callable[[GatewayError], dict[str, Any]] | None = None

    @property
    def accepts_callers(self) -> bool:
        return self.request_to_canonical is not None and self.stream_encoder is not None
