from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

from combo_router.errors import AttemptFailure, ErrorClass, ExecutionError, GatewayError, RefreshError
from combo_router.models import Account, Combo, ComboEntry, ExecutionContext

logger = logging.getLogger("uvicorn.error")

TOKEN_EXPIRY_MARKERS = (
    "token expired",
    "token_expired",
    "token has expired",
    "expired token",
    "expired_token",
    "invalid_token",
    "jwt expired",
    "session expired",
    "access token is expired",
)

QUOTA_MARKERS = (
    "insufficient_quota",
    "resource_exhausted",
    "rate_limit",
    "rate limit",
    "quota exceeded",
    "quota_exceeded",
    "usage_limit_reached",
)

TRANSIENT_STATUSES = frozenset({408, 529})


class Exhausted(Enum):
    EXHAUSTED = "exhausted"


EXHAUSTED = Exhausted.EXHAUSTED


class FallbackAction(str, Enum):
    RETRY_SAME = "retry_same"
    REFRESH_AND_RETRY = "refresh_and_retry"
    COOLDOWN_AND_ADVANCE = "cooldown_and_advance"
    ADVANCE = "advance"


@dataclass(frozen=True, slots=True)
class FallbackDecision:
    action: FallbackAction
    error_class: ErrorClass
    cooldown_seconds: float | None = None


def _body_text(error: ExecutionError) -> str:
    body = error.body
    if body is None:
        text = ""
    elif isinstance(body, str):
        text = body
    else:
        try:
            text = json.dumps(body, default=str)
        except (TypeError, ValueError):
            text = str(body)
    return f"{text} {error.message}".lower()


def has_marker(error: ExecutionError, markers: tuple[str, ...]) -> bool:
    text = _body_text(error)
    return any(marker in text for marker in markers)


def classify(error: GatewayError, *, refresh_failed_before: bool = False) -> ErrorClass:
    if isinstance(error, RefreshError):
        return ErrorClass.FATAL if refresh_failed_before else ErrorClass.AUTH_EXPIRED
    if not isinstance(error, ExecutionError):
        return ErrorClass.FATAL
    if error.kind == "invalid_response":
        return ErrorClass.FATAL
    if error.kind is not None:
        return ErrorClass.TRANSIENT

    status = error.status
    if status is None:
        return ErrorClass.TRANSIENT if error.retryable else ErrorClass.FATAL
    if status == 401:
        return ErrorClass.AUTH_EXPIRED
    if status == 403 and has_marker(error, TOKEN_EXPIRY_MARKERS):
        return ErrorClass.AUTH_EXPIRED
    if status == 429:
        return ErrorClass.QUOTA_EXCEEDED
    if status in TRANSIENT_STATUSES or status >= 500:
        return ErrorClass.TRANSIENT
    if 400 <= status < 500:
        if has_marker(error, QUOTA_MARKERS):
            return ErrorClass.QUOTA_EXCEEDED
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


@dataclass(slots=True)
class FallbackPolicy:
    transient_retry_limit: int = 1
    default_cooldown_seconds: float = 60.0
    provider_cooldown_seconds: Mapping[str, float] = field(default_factory=dict)
    honor_retry_after: bool = True
    min_cooldown_seconds: float = 1.0
    max_cooldown_seconds: float = 3600.0

    def cooldown_seconds(self, error: GatewayError, provider: str) -> float:
        seconds: float | None = None
        retry_after = getattr(error, "retry_after", None)
        if self.honor_retry_after and retry_after is not None and retry_after > 0:
            seconds = float(retry_after)
        elif provider in self.provider_cooldown_seconds:
            seconds = float(self.provider_cooldown_seconds[provider])
        if seconds is None:
            seconds = float(self.default_cooldown_seconds)
        return min(max(seconds, self.min_cooldown_seconds), self.max_cooldown_seconds)

    def decide(self, error: GatewayError, entry: ComboEntry, context: ExecutionContext) -> FallbackDecision:
        account_id = entry.account.id
        error_class = classify(error, refresh_failed_before=account_id in context.refresh_failed)
        if isinstance(error, RefreshError):
            context.refresh_failed.add(account_id)
        if isinstance(error, ExecutionError):
            error.error_class = error_class

        if error_class is ErrorClass.AUTH_EXPIRED:
            if context.position in context.auth_retried:
                return FallbackDecision(FallbackAction.ADVANCE, error_class)
            context.auth_retried.add(context.position)
            return FallbackDecision(FallbackAction.REFRESH_AND_RETRY, error_class)

        if error_class is ErrorClass.QUOTA_EXCEEDED:
            return FallbackDecision(
                FallbackAction.COOLDOWN_AND_ADVANCE,
                error_class,
                cooldown_seconds=self.cooldown_seconds(error, entry.account.provider),
            )

        if error_class is ErrorClass.TRANSIENT:
            used = context.transient_retries.get(context.position, 0)
            if used < self.transient_retry_limit:
                context.transient_retries[context.position] = used + 1
                return FallbackDecision(FallbackAction.RETRY_SAME, error_class)
            return FallbackDecision(FallbackAction.ADVANCE, error_class)

        return FallbackDecision(FallbackAction.ADVANCE, error_class)


async def mark_cooldown(
    account: Account,
    seconds: float,
    *,
    error_class: ErrorClass | str | None = None,
    message: str | None = None,
    now: float | None = None,
) -> float:
    current = time.time() if now is None else now
    until = current + max(0.0, seconds)
    async with account.lock:
        if until > account.cooled_down_until:
            account.cooled_down_until = until
        if error_class is not None:
            account.last_error_class = error_class.value if isinstance(error_class, ErrorClass) else error_class
        if message:
            account.last_error_message = message
        effective = account.cooled_down_until
    logger.info(
        "account_cooldown account=%s provider=%s seconds=%.1f until_epoch=%.0f",
        account.id,
        account.provider,
        seconds,
        effective,
    )
    return effective


async def record_error(account: Account, error_class: ErrorClass, message: str | None) -> None:
    async with account.lock:
        account.last_error_class = error_class.value
        account.last_error_message = message


class AccountSelector:
    """Walks a combo in order, skipping accounts that are still cooling down."""

    def __init__(self, *, clock: Any = time.time) -> None:
        self._clock = clock

    def select_next(self, combo: Combo, context: ExecutionContext) -> ComboEntry | Literal[Exhausted.EXHAUSTED]:
        now = self._clock()
        while context.position < len(combo.entries):
            entry = combo.entries[context.position]
            account = entry.account
            if not account.is_cooling_down(now):
                return entry
            remaining = account.cooled_down_until - now
            context.errors[context.position] = AttemptFailure(
                account_id=account.id,
                provider=account.provider,
                model=entry.model,
                error_type="cooling_down",
                message=account.last_error_message or f"Account is cooling down for {remaining:.0f}s.",
                error_class="cooling_down",
            )
            logger.info(
                "account_skipped_cooling_down account=%s remaining_seconds=%.1f",
                account.id,
                remaining,
            )
            context.position += 1
        return EXHAUSTED

    @staticmethod
    def advance(context: ExecutionContext) -> None:
        context.position += 1
