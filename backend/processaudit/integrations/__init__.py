from processaudit.integrations.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from processaudit.integrations.errors import (
    CircuitOpenError,
    FatalIntegrationError,
    IntegrationError,
    QuotaExceededError,
    RetryExhaustedError,
)
from processaudit.integrations.execution_types import GatewayRequest, GatewayResult
from processaudit.integrations.gateway import IntegrationGateway
from processaudit.integrations.retry import ErrorDisposition, RetryPolicy
from processaudit.integrations.usage import InMemoryUsageStore, Provider, UsageTracker
from processaudit.integrations.webhooks import (
    SignatureScheme,
    WebhookEnvelope,
    verify,
    verify_pagerduty_signature,
    verify_slack_signature,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitOpenError",
    "FatalIntegrationError",
    "IntegrationError",
    "QuotaExceededError",
    "RetryExhaustedError",
    "ErrorDisposition",
    "RetryPolicy",
    "GatewayRequest",
    "GatewayResult",
    "IntegrationGateway",
    "InMemoryUsageStore",
    "Provider",
    "UsageTracker",
    "SignatureScheme",
    "WebhookEnvelope",
    "verify",
    "verify_pagerduty_signature",
    "verify_slack_signature",
]
