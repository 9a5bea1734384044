import asyncio

import httpx
import pytest

from processaudit.integrations.errors import (
    FatalIntegrationError,
    IntegrationAuthError,
    IntegrationRateLimitError,
    IntegrationTimeoutError,
    RetryExhaustedError,
)
from processaudit.integrations.retry import ErrorDisposition, RetryPolicy, classifier_from_disposition


def _recording_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.mark.asyncio
async def test_retry_policy_retries_until_success() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.5,
        max_delay_seconds=5.0,
        jitter_ratio=0.0,
        sleep_fn=_recording_sleep(sleeps),
    )

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise IntegrationTimeoutError()
        return "ok"

    assert await policy.execute(_op) == "ok"
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_policy_raises_exhausted_for_retryable_error() -> None:
    policy = RetryPolicy(max_attempts=2, jitter_ratio=0.0, sleep_fn=_recording_sleep([]))

    async def _op() -> None:
        raise IntegrationTimeoutError()

    with pytest.raises(RetryExhaustedError) as exc:
        await policy.execute(_op)
    assert exc.value.attempts == 2
    assert exc.value.last_error.reason_code == "timeout"
    assert str(exc.value).startswith("Retry exhausted after 2 attempts")


@pytest.mark.asyncio
async def test_retry_policy_propagates_non_retryable_without_sleep() -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=5, sleep_fn=_recording_sleep(sleeps))

    async def _op() -> None:
        raise IntegrationAuthError("bad token")

    with pytest.raises(IntegrationAuthError):
        await policy.execute(_op)
    assert sleeps == []


@pytest.mark.asyncio
async def test_retry_policy_classifies_raw_transport_errors() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.25, jitter_ratio=0.0, sleep_fn=_recording_sleep(sleeps))

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused")
        return "ok"

    outcome = await policy.execute_with_report(_op)
    assert outcome.value == "ok"
    assert outcome.attempts == 2
    assert outcome.delays == (0.25,)


@pytest.mark.asyncio
async def test_retry_policy_waits_for_provider_reset_hint() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=2, base_delay_seconds=0.5, jitter_ratio=0.0, sleep_fn=_recording_sleep(sleeps))

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] == 1:
            raise IntegrationRateLimitError(retry_after=7.0)
        return "ok"

    assert await policy.execute(_op) == "ok"
    assert sleeps == [7.0]


@pytest.mark.asyncio
async def test_retry_policy_does_not_retry_cancellation() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(max_attempts=3, sleep_fn=_recording_sleep(sleeps))

    async def _op() -> None:
        calls["count"] += 1
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await policy.execute(_op)
    assert calls["count"] == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_disposition_classifier_can_stop_retries_for_timeouts() -> None:
    calls = {"count": 0}
    policy = RetryPolicy(max_attempts=3, sleep_fn=_recording_sleep([]))

    async def _op() -> None:
        calls["count"] += 1
        raise TimeoutError("slow")

    with pytest.raises(FatalIntegrationError) as exc:
        await policy.execute(_op, classify_error=classifier_from_disposition(lambda _exc: ErrorDisposition.FATAL))
    assert calls["count"] == 1
    assert exc.value.reason_code == "timeout"


@pytest.mark.asyncio
async def test_disposition_classifier_can_retry_unknown_errors() -> None:
    calls = {"count": 0}
    policy = RetryPolicy(max_attempts=3, jitter_ratio=0.0, sleep_fn=_recording_sleep([]))

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise ValueError("transient parse failure")
        return "ok"

    result = await policy.execute(_op, classify_error=classifier_from_disposition(lambda _exc: ErrorDisposition.RETRYABLE))
    assert result == "ok"
    assert calls["count"] == 2


def test_delay_for_attempt_is_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=5.0, jitter_ratio=0.0)
    assert [policy.delay_for_attempt(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_delay_for_attempt_applies_jitter() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, jitter_ratio=0.1, random_fn=lambda _low, high: high)
    assert policy.delay_for_attempt(1) == pytest.approx(1.1)


def test_reset_hint_is_not_capped_by_max_delay() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=30.0, jitter_ratio=0.0)
    assert policy.delay_for_attempt(1, retry_after=120.0) == 120.0
    assert policy.delay_for_attempt(3, retry_after=0.5) == 4.0


def test_retry_policy_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay_seconds=-1.0)
    with pytest.raises(ValueError):
        RetryPolicy(multiplier=0.5)


def _http_status_error(status_code: int) -> httpx.HTTPStatusError:
    req = httpx.Request("POST", "https://api.pagerduty.com/incidents")
    return httpx.HTTPStatusError("upstream", request=req, response=httpx.Response(status_code, request=req))


@pytest.mark.asyncio
async def test_service_unavailable_twice_then_success() -> None:
    calls = {"count": 0}
    sleeps: list[float] = []
    policy = RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0.1,
        multiplier=2.0,
        jitter_ratio=0.0,
        sleep_fn=_recording_sleep(sleeps),
    )

    async def _op() -> str:
        calls["count"] += 1
        if calls["count"] <= 2:
            raise _http_status_error(503)
        return "created"

    outcome = await policy.execute_with_report(_op)
    assert outcome.value == "created"
    assert outcome.attempts == 3
    assert sleeps == [pytest.approx(0.1), pytest.approx(0.2)]


@pytest.mark.asyncio
async def test_unauthorized_short_circuits_and_unavailable_exhausts() -> None:
    calls = {"count": 0}
    policy = RetryPolicy(max_attempts=3, jitter_ratio=0.0, sleep_fn=_recording_sleep([]))

    async def _unauthorized() -> None:
        calls["count"] += 1
        raise _http_status_error(401)

    with pytest.raises(FatalIntegrationError) as fatal:
        await policy.execute(_unauthorized)
    assert calls["count"] == 1
    assert fatal.value.reason_code == "auth_failed"

    calls["count"] = 0

    async def _unavailable() -> None:
        calls["count"] += 1
        raise _http_status_error(503)

    with pytest.raises(RetryExhaustedError) as exhausted:
        await policy.execute(_unavailable)
    assert calls["count"] == 3
    assert exhausted.value.attempts == 3
    assert exhausted.value.status_code == 503
