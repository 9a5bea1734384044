from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Mapping

import httpx


@dataclass(frozen=True)
class ErrorClassification:
    error_code: str
    reason_code: str
    retryable: bool
    severity: str


class IntegrationError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str,
        reason_code: str,
        retryable: bool,
        severity: str,
        provider: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        correlation_id: str | None = None,
        upstream_payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.reason_code = reason_code
        self.retryable = retryable
        self.severity = severity
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.correlation_id = correlation_id
        self.upstream_payload = upstream_payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "error_code": self.error_code,
            "reason_code": self.reason_code,
            "retryable": self.retryable,
            "severity": self.severity,
            "provider": self.provider,
            "status_code": self.status_code,
            "correlation_id": self.correlation_id,
        }


class IntegrationTimeoutError(IntegrationError):
    def __init__(self, message: str = "Integration request timed out.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_timeout",
            reason_code="timeout",
            retryable=True,
            severity="error",
            **kwargs,
        )


class IntegrationConnectionError(IntegrationError):
    def __init__(self, message: str = "Integration connection failed.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_connection",
            reason_code="connection_error",
            retryable=True,
            severity="error",
            **kwargs,
        )


class IntegrationRateLimitError(IntegrationError):
    def __init__(self, message: str = "Rate limit exceeded.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_rate_limited",
            reason_code="rate_limited",
            retryable=True,
            severity="warning",
            **kwargs,
        )


class IntegrationDependencyError(IntegrationError):
    def __init__(self, message: str = "Integration dependency unavailable.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_dependency_unavailable",
            reason_code="dependency_unavailable",
            retryable=True,
            severity="error",
            **kwargs,
        )


class FatalIntegrationError(IntegrationError):
    """Non-retryable response from the target (bad credentials, bad request, not found)."""

    def __init__(
        self,
        message: str = "Integration rejected the request.",
        *,
        error_code: str = "integration_fatal",
        reason_code: str = "fatal",
        severity: str = "error",
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code=error_code,
            reason_code=reason_code,
            retryable=False,
            severity=severity,
            **kwargs,
        )


class IntegrationAuthError(FatalIntegrationError):
    def __init__(self, message: str = "Integration authentication failed.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_auth",
            reason_code="auth_failed",
            severity="critical",
            **kwargs,
        )


class IntegrationBadRequestError(FatalIntegrationError):
    def __init__(self, message: str = "Integration rejected request payload.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_bad_request",
            reason_code="bad_request",
            **kwargs,
        )


class IntegrationResponseFormatError(FatalIntegrationError):
    def __init__(self, message: str = "Integration response format is invalid.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_response_invalid",
            reason_code="response_invalid",
            **kwargs,
        )


class CircuitOpenError(IntegrationError):
    def __init__(self, message: str = "Circuit breaker is OPEN.", **kwargs: Any) -> None:
        super().__init__(
            message,
            error_code="integration_circuit_open",
            reason_code="circuit_open",
            retryable=False,
            severity="warning",
            **kwargs,
        )


class RetryExhaustedError(IntegrationError):
    def __init__(self, last_error: IntegrationError, attempts: int) -> None:
        super().__init__(
            f"Retry exhausted after {attempts} attempts: {last_error}",
            error_code="integration_retry_exhausted",
            reason_code=last_error.reason_code,
            retryable=False,
            severity=last_error.severity,
            provider=last_error.provider,
            status_code=last_error.status_code,
            retry_after=last_error.retry_after,
            correlation_id=last_error.correlation_id,
            upstream_payload=last_error.upstream_payload,
        )
        self.last_error = last_error
        self.attempts = attempts


class QuotaExceededError(IntegrationError):
    def __init__(
        self,
        message: str = "Usage quota exceeded.",
        *,
        organization_id: str | None = None,
        used: float | None = None,
        limit: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message,
            error_code="integration_quota_exceeded",
            reason_code="quota_exceeded",
            retryable=False,
            severity="warning",
            **kwargs,
        )
        self.organization_id = organization_id
        self.used = used
        self.limit = limit


class WebhookVerificationError(Exception):
    def __init__(self, message: str = "Webhook verification failed.", *, provider: str, reason: str) -> None:
        super().__init__(message)
        self.provider = provider
        self.reason = reason


class WebhookPayloadError(ValueError):
    pass


def parse_retry_after(headers: Mapping[str, str], *, now: float | None = None) -> float | None:
    """Seconds to wait before retrying, from ``retry-after`` or ``x-ratelimit-reset``.

    ``retry-after`` is a delay in seconds. ``x-ratelimit-reset`` is read as an
    epoch timestamp when it is larger than the current time, otherwise as a
    delay in seconds.
    """
    raw = headers.get("retry-after")
    if raw is not None:
        try:
            return max(0.0, float(raw))
        except ValueError:
            return None
    raw = headers.get("x-ratelimit-reset")
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    now_value = time.time() if now is None else now
    if value > now_value:
        return max(0.0, value - now_value)
    return max(0.0, value)


def classification_from_exception(exc: BaseException) -> ErrorClassification:
    if isinstance(exc, IntegrationError):
        return ErrorClassification(
            error_code=exc.error_code,
            reason_code=exc.reason_code,
            retryable=exc.retryable,
            severity=exc.severity,
        )
    if isinstance(exc, TimeoutError | httpx.TimeoutException):
        return ErrorClassification("integration_timeout", "timeout", True, "error")
    if isinstance(exc, ConnectionError | httpx.ConnectError):
        return ErrorClassification("integration_connection", "connection_error", True, "error")
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code if exc.response is not None else 0
        if status_code == 401 or status_code == 403:
            return ErrorClassification("integration_auth", "auth_failed", False, "critical")
        if status_code == 429:
            return ErrorClassification("integration_rate_limited", "rate_limited", True, "warning")
        if status_code == 408:
            return ErrorClassification("integration_timeout", "timeout", True, "error")
        if 400 <= status_code < 500:
            return ErrorClassification("integration_bad_request", "bad_request", False, "error")
        if status_code >= 500:
            return ErrorClassification("integration_dependency_unavailable", "dependency_unavailable", True, "error")
    if isinstance(exc, httpx.HTTPError):
        return ErrorClassification("integration_dependency_unavailable", "dependency_unavailable", True, "error")
    return ErrorClassification("integration_internal_error", "internal_error", False, "critical")


def classify_integration_error(exc: BaseException) -> IntegrationError:
    if isinstance(exc, IntegrationError):
        return exc
    classification = classification_from_exception(exc)
    status_code = None
    retry_after = None
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status_code = exc.response.status_code
        if status_code == 429:
            retry_after = parse_retry_after(exc.response.headers)
    message = str(exc) or classification.reason_code
    if not classification.retryable:
        return FatalIntegrationError(
            message,
            error_code=classification.error_code,
            reason_code=classification.reason_code,
            severity=classification.severity,
            status_code=status_code,
        )
    return IntegrationError(
        message,
        error_code=classification.error_code,
        reason_code=classification.reason_code,
        retryable=True,
        severity=classification.severity,
        status_code=status_code,
        retry_after=retry_after,
    )


def raise_for_integration_error(response: httpx.Response, *, provider: str, service_name: str) -> None:
    status = response.status_code
    if status < 400:
        return
    body = _safe_json(response)
    message = f"{service_name} request failed with status {status}."
    common: dict[str, Any] = {"provider": provider, "status_code": status, "upstream_payload": body}
    if status in {401, 403}:
        raise IntegrationAuthError(message, **common)
    if status == 429:
        raise IntegrationRateLimitError(
            "Rate limit exceeded.",
            retry_after=parse_retry_after(response.headers),
            **common,
        )
    if status in {408, 504}:
        raise IntegrationTimeoutError(message, **common)
    if 400 <= status < 500:
        raise IntegrationBadRequestError(message, **common)
    raise IntegrationDependencyError(message, **common)


_SANITIZED_MESSAGES = (
    ("connection refused", "Service temporarily unavailable"),
    ("timeout", "Request timeout - please try again"),
    ("timed out", "Request timeout - please try again"),
    ("unauthorized", "Access denied - insufficient permissions"),
    ("authentication", "Access denied - insufficient permissions"),
    ("rate limit", "Too many requests - please try again later"),
    ("circuit breaker", "Service temporarily unavailable"),
    ("quota", "Usage limit reached for your plan"),
    ("service unavailable", "Service temporarily unavailable"),
)


def sanitize_error_message(message: str) -> str:
    lowered = message.lower()
    for pattern, sanitized in _SANITIZED_MESSAGES:
        if pattern in lowered:
            return sanitized
    return "An error occurred - please try again or contact support"


def _safe_json(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload
