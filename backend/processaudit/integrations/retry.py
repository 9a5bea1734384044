from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import random
from typing import Awaitable, Callable, Generic, TypeVar

from processaudit.core.metrics import integration_retries_total
from processaudit.core.settings import Settings
from processaudit.integrations.errors import (
    FatalIntegrationError,
    IntegrationError,
    RetryExhaustedError,
    classify_integration_error,
)


T = TypeVar("T")

logger = logging.getLogger("processaudit.integrations.retry")

ErrorClassifier = Callable[[BaseException], IntegrationError]


class ErrorDisposition(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class RetryContext:
    max_attempts: int
    attempt: int = 0
    delays: list[float] = field(default_factory=list)
    last_error: IntegrationError | None = None


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    value: T
    attempts: int
    delays: tuple[float, ...]


def classifier_from_disposition(classify: Callable[[BaseException], ErrorDisposition]) -> ErrorClassifier:
    """Adapt a caller's RETRYABLE/FATAL decision onto the canonical error taxonomy."""

    def _classify(exc: BaseException) -> IntegrationError:
        base = classify_integration_error(exc)
        disposition = classify(exc)
        if disposition is ErrorDisposition.FATAL and base.retryable:
            return FatalIntegrationError(
                str(base),
                error_code=base.error_code,
                reason_code=base.reason_code,
                severity=base.severity,
                provider=base.provider,
                status_code=base.status_code,
                correlation_id=base.correlation_id,
                upstream_payload=base.upstream_payload,
            )
        if disposition is ErrorDisposition.RETRYABLE and not base.retryable:
            return IntegrationError(
                str(base),
                error_code=base.error_code,
                reason_code=base.reason_code,
                retryable=True,
                severity=base.severity,
                provider=base.provider,
                status_code=base.status_code,
                retry_after=base.retry_after,
                correlation_id=base.correlation_id,
                upstream_payload=base.upstream_payload,
            )
        return base

    return _classify


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        multiplier: float = 2.0,
        max_delay_seconds: float = 30.0,
        jitter_ratio: float = 0.1,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_fn: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay_seconds < 0 or max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.multiplier = multiplier
        self.max_delay_seconds = max_delay_seconds
        self.jitter_ratio = jitter_ratio
        self.sleep_fn = sleep_fn
        self.random_fn = random_fn

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RetryPolicy":
        options = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay_seconds": settings.retry_base_delay_seconds,
            "multiplier": settings.retry_multiplier,
            "max_delay_seconds": settings.retry_max_delay_seconds,
            "jitter_ratio": settings.retry_jitter_ratio,
        }
        options.update(overrides)
        return cls(**options)

    def delay_for_attempt(self, attempt_number: int, *, retry_after: float | None = None) -> float:
        base = min(self.max_delay_seconds, self.base_delay_seconds * (self.multiplier ** (attempt_number - 1)))
        if self.jitter_ratio > 0:
            jitter_multiplier = 1.0 + self.random_fn(-self.jitter_ratio, self.jitter_ratio)
            base = max(0.0, min(self.max_delay_seconds, base * jitter_multiplier))
        # The provider's own reset hint wins when it asks for a longer wait.
        if retry_after is not None and retry_after > base:
            return retry_after
        return base

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        classify_error: ErrorClassifier = classify_integration_error,
    ) -> T:
        outcome = await self.execute_with_report(operation, classify_error=classify_error)
        return outcome.value

    async def execute_with_report(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        classify_error: ErrorClassifier = classify_integration_error,
        context: RetryContext | None = None,
        provider: str = "unknown",
    ) -> RetryOutcome[T]:
        ctx = context or RetryContext(max_attempts=self.max_attempts)
        ctx.max_attempts = self.max_attempts
        while True:
            ctx.attempt += 1
            try:
                value = await operation()
            except Exception as exc:  # noqa: BLE001
                integration_error = classify_error(exc)
                ctx.last_error = integration_error
                if not integration_error.retryable:
                    if integration_error is exc:
                        raise
                    raise integration_error from exc
                if ctx.attempt >= self.max_attempts:
                    raise RetryExhaustedError(last_error=integration_error, attempts=ctx.attempt) from exc
                delay = self.delay_for_attempt(ctx.attempt, retry_after=integration_error.retry_after)
                ctx.delays.append(delay)
                integration_retries_total.labels(provider=provider).inc()
                logger.info(
                    "integration attempt failed; retrying",
                    extra={
                        "provider": provider,
                        "attempts": ctx.attempt,
                        "reason": integration_error.reason_code,
                        "delay_seconds": delay,
                    },
                )
                await self.sleep_fn(delay)
                continue
            return RetryOutcome(value=value, attempts=ctx.attempt, delays=tuple(ctx.delays))
