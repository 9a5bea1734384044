from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable
import uuid

from processaudit.core.metrics import integration_call_duration_seconds, integration_calls_total
from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.circuit_breaker import CircuitBreakerRegistry, CircuitBreakerSnapshot
from processaudit.integrations.errors import (
    IntegrationError,
    QuotaExceededError,
    RetryExhaustedError,
    classify_integration_error,
)
from processaudit.integrations.execution_types import GatewayRequest, GatewayResult, UsageSample
from processaudit.integrations.retry import RetryContext, RetryPolicy, classifier_from_disposition
from processaudit.integrations.usage import Provider, UsageTracker
from processaudit.observability.events import emit_retry_outcome


logger = logging.getLogger("processaudit.integrations.gateway")


class IntegrationGateway:
    """Runs outbound calls under one circuit admission with retries inside it.

    Each attempt is bounded by the call timeout. The final outcome, not each
    attempt, feeds the target's breaker and the organization's usage window.
    """

    def __init__(
        self,
        *,
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        tracker: UsageTracker,
        timeout_seconds: float = 15.0,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than 0")
        self._breakers = breakers
        self._retry_policy = retry_policy
        self._tracker = tracker
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "IntegrationGateway":
        resolved = settings or get_settings()
        return cls(
            breakers=CircuitBreakerRegistry.from_settings(resolved),
            retry_policy=RetryPolicy.from_settings(resolved),
            tracker=UsageTracker.from_settings(resolved),
            timeout_seconds=resolved.integration_timeout_seconds,
        )

    @property
    def tracker(self) -> UsageTracker:
        return self._tracker

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    def health(self) -> list[CircuitBreakerSnapshot]:
        return self._breakers.snapshots()

    async def execute(self, request: GatewayRequest) -> GatewayResult:
        provider = Provider(request.provider).value
        target = request.target or provider
        correlation_id = request.correlation_id or f"{provider}_{uuid.uuid4().hex[:16]}"
        breaker = self._breakers.get(target)
        timeout_seconds = request.timeout_seconds or self._timeout_seconds
        classify = classifier_from_disposition(request.classify) if request.classify else classify_integration_error
        context = RetryContext(max_attempts=self._retry_policy.max_attempts)
        started_at = time.perf_counter()

        if request.quota_limit is not None:
            check = self._tracker.check_threshold(request.organization_id, provider, request.quota_limit)
            if check.used + request.usage_amount > request.quota_limit:
                quota_error = QuotaExceededError(
                    f"Usage quota exceeded for {provider}.",
                    organization_id=request.organization_id,
                    used=check.used,
                    limit=request.quota_limit,
                    provider=provider,
                    correlation_id=correlation_id,
                )
                return await self._finish_failure(
                    request,
                    provider=provider,
                    target=target,
                    correlation_id=correlation_id,
                    error=quota_error,
                    attempts=0,
                    started_at=started_at,
                    timeout_seconds=timeout_seconds,
                )

        async def _attempt() -> Any:
            async with asyncio.timeout(timeout_seconds):
                return await request.operation()

        async def _with_retries() -> Any:
            return await self._retry_policy.execute_with_report(
                _attempt,
                classify_error=classify,
                context=context,
                provider=provider,
            )

        try:
            outcome = await breaker.execute(_with_retries)
        except IntegrationError as exc:
            error = self._annotate(exc, provider=provider, correlation_id=correlation_id)
            attempts = exc.attempts if isinstance(exc, RetryExhaustedError) else context.attempt
            if attempts:
                emit_retry_outcome(
                    provider=provider,
                    target=target,
                    success=False,
                    attempts=attempts,
                    correlation_id=correlation_id,
                    reason_code=error.reason_code,
                )
                self._tracker.record(
                    request.organization_id,
                    provider,
                    0,
                    {"success": False, "response_time_ms": _elapsed_ms(started_at)},
                )
            return await self._finish_failure(
                request,
                provider=provider,
                target=target,
                correlation_id=correlation_id,
                error=error,
                attempts=attempts,
                started_at=started_at,
                timeout_seconds=timeout_seconds,
            )

        latency_ms = _elapsed_ms(started_at)
        emit_retry_outcome(
            provider=provider,
            target=target,
            success=True,
            attempts=outcome.attempts,
            correlation_id=correlation_id,
        )
        if outcome.attempts > 1:
            logger.info(
                "%s request succeeded after retry",
                provider,
                extra={"provider": provider, "attempts": outcome.attempts, "correlation_id": correlation_id},
            )
        sample = self._usage_sample(request, outcome.value)
        self._tracker.record(
            request.organization_id,
            provider,
            sample.amount,
            {**sample.metadata, "success": True, "response_time_ms": latency_ms},
        )
        integration_calls_total.labels(provider=provider, outcome="success").inc()
        integration_call_duration_seconds.labels(provider=provider).observe(latency_ms / 1000)
        return GatewayResult(
            success=True,
            provider=provider,
            target=target,
            correlation_id=correlation_id,
            latency_ms=latency_ms,
            attempts=outcome.attempts,
            data=outcome.value,
            circuit_state=breaker.state.value,
        )

    async def _finish_failure(
        self,
        request: GatewayRequest,
        *,
        provider: str,
        target: str,
        correlation_id: str,
        error: IntegrationError,
        attempts: int,
        started_at: float,
        timeout_seconds: float,
    ) -> GatewayResult:
        circuit_state = self._breakers.get(target).state.value
        if request.fallback is None:
            logger.warning(
                "%s integration call failed: %s",
                provider,
                error.reason_code,
                extra={"provider": provider, "target": target, "attempts": attempts, "correlation_id": correlation_id},
            )
            integration_calls_total.labels(provider=provider, outcome=error.reason_code).inc()
            return GatewayResult(
                success=False,
                provider=provider,
                target=target,
                correlation_id=correlation_id,
                latency_ms=_elapsed_ms(started_at),
                attempts=attempts,
                error=error,
                circuit_state=circuit_state,
            )

        logger.warning(
            "%s integration failed, using fallback",
            provider,
            extra={"provider": provider, "target": target, "reason": error.reason_code, "correlation_id": correlation_id},
        )
        try:
            data = await _run_with_timeout(request.fallback, timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            fallback_error = self._annotate(classify_integration_error(exc), provider=provider, correlation_id=correlation_id)
            integration_calls_total.labels(provider=provider, outcome="fallback_failed").inc()
            return GatewayResult(
                success=False,
                provider=provider,
                target=target,
                correlation_id=correlation_id,
                latency_ms=_elapsed_ms(started_at),
                attempts=attempts,
                error=fallback_error,
                primary_error=error,
                used_fallback=True,
                circuit_state=circuit_state,
            )
        integration_calls_total.labels(provider=provider, outcome="fallback").inc()
        return GatewayResult(
            success=True,
            provider=provider,
            target=target,
            correlation_id=correlation_id,
            latency_ms=_elapsed_ms(started_at),
            attempts=attempts,
            data=data,
            primary_error=error,
            used_fallback=True,
            circuit_state=circuit_state,
        )

    def _usage_sample(self, request: GatewayRequest, value: Any) -> UsageSample:
        if request.meter is None:
            return UsageSample(amount=request.usage_amount)
        return request.meter(value)

    def _annotate(self, error: IntegrationError, *, provider: str, correlation_id: str) -> IntegrationError:
        if error.provider is None:
            error.provider = provider
        if error.correlation_id is None:
            error.correlation_id = correlation_id
        return error


async def _run_with_timeout(operation: Callable[[], Awaitable[Any]], timeout_seconds: float) -> Any:
    async with asyncio.timeout(timeout_seconds):
        return await operation()


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)
