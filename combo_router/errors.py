from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    AUTH_EXPIRED = "auth_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    FATAL = "fatal"


class GatewayError(Exception):
    status_code: int = 500
    error_type: str = "gateway_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.error_type, "message": self.message}


class UnsupportedFormatError(GatewayError):
    status_code = 400
    error_type = "unsupported_format"

    def __init__(self, format_key: str, detail: str | None = None) -> None:
        message = detail or f"Format '{format_key}' is not registered."
        super().__init__(message)
        self.format_key = format_key


class TranslationError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, message: str, *, format_key: str | None = None) -> None:
        super().__init__(message)
        self.format_key = format_key


class UnknownModelError(GatewayError):
    status_code = 400
    error_type = "invalid_model"

    def __init__(self, model: str, available: list[str] | None = None) -> None:
        super().__init__(f"No combo or provider route is configured for model '{model}'.")
        self.model = model
        self.available = list(available or [])


class ExecutionError(GatewayError):
    error_type = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        kind: str | None = None,
        body: Any = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
        provider: str | None = None,
        account_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        # Transport failure kind when no HTTP status was received: timeout, connect, network.
        self.kind = kind
        self.body = body
        self.retry_after = retry_after
        if retryable is None:
            retryable = kind is not None or status is None or status == 429 or status >= 500
        self.retryable = retryable
        self.provider = provider
        self.account_id = account_id
        self.error_class: ErrorClass | None = None
        if status is not None and status >= 400:
            self.status_code = status
        else:
            self.status_code = 502

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.error_type,
            "message": self.message,
            "status": self.status,
        }
        if self.kind:
            payload["kind"] = self.kind
        if self.error_class is not None:
            payload["class"] = self.error_class.value
        return payload


class RefreshError(ExecutionError):
    error_type = "credential_refresh_failed"


class StreamTruncatedError(GatewayError):
    status_code = 502
    error_type = "stream_truncated"

    def __init__(self, message: str = "Upstream closed the stream without a terminal event.", *, chunk_count: int = 0) -> None:
        super().__init__(message)
        self.chunk_count = chunk_count


class RequestCancelledError(GatewayError):
    status_code = 499
    error_type = "request_cancelled"

    def __init__(self, message: str = "Caller disconnected.") -> None:
        super().__init__(message)


@dataclass(slots=True)
class AttemptFailure:
    account_id: str
    provider: str
    model: str
    error_type: str
    message: str
    status: int | None = None
    error_class: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account_id,
            "provider": self.provider,
            "model": self.model,
            "type": self.error_type,
            "message": self.message,
            "status": self.status,
            "class": self.error_class,
        }


class ComboExhaustedError(GatewayError):
    error_type = "combo_exhausted"

    def __init__(self, combo_name: str, failures: list[AttemptFailure]) -> None:
        super().__init__(
            f"All {len(failures)} account(s) in combo '{combo_name}' failed or are cooling down."
        )
        self.combo_name = combo_name
        self.failures = list(failures)
        quota_like = {ErrorClass.QUOTA_EXCEEDED.value, "cooling_down"}
        if failures and all(
            (failure.error_class in quota_like) or failure.error_type == "cooling_down"
            for failure in failures
        ):
            self.status_code = 429
        else:
            self.status_code = 502

    @property
    def last_message(self) -> str | None:
        for failure in reversed(self.failures):
            if failure.message:
                return failure.message
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message,
            "combo": self.combo_name,
            "attempts": [failure.to_dict() for failure in self.failures],
        }
