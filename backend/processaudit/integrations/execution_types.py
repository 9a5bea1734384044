from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from processaudit.integrations.errors import IntegrationError
from processaudit.integrations.retry import ErrorDisposition
from processaudit.integrations.usage import Provider


T = TypeVar("T")


@dataclass(frozen=True)
class UsageSample:
    amount: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRequest(Generic[T]):
    organization_id: str
    provider: Provider | str
    operation: Callable[[], Awaitable[T]]
    target: str | None = None
    classify: Callable[[BaseException], ErrorDisposition] | None = None
    timeout_seconds: float | None = None
    usage_amount: float = 1
    meter: Callable[[T], UsageSample] | None = None
    quota_limit: float | None = None
    fallback: Callable[[], Awaitable[T]] | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    success: bool
    provider: str
    target: str
    correlation_id: str
    latency_ms: int
    attempts: int = 0
    data: T | None = None
    error: IntegrationError | None = None
    primary_error: IntegrationError | None = None
    used_fallback: bool = False
    circuit_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "provider": self.provider,
            "target": self.target,
            "correlation_id": self.correlation_id,
            "latency_ms": self.latency_ms,
            "attempts": self.attempts,
            "used_fallback": self.used_fallback,
            "circuit_state": self.circuit_state,
            "error": self.error.to_dict() if self.error is not None else None,
        }
