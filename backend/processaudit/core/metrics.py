from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


integration_calls_total = Counter(
    "integration_calls_total",
    "Outbound integration calls by final outcome.",
    ["provider", "outcome"],
)

integration_retries_total = Counter(
    "integration_retries_total",
    "Retry attempts scheduled for outbound integration calls.",
    ["provider"],
)

integration_call_duration_seconds = Histogram(
    "integration_call_duration_seconds",
    "Outbound integration call duration in seconds, including retries.",
    ["provider"],
)

integration_circuit_state = Gauge(
    "integration_circuit_state",
    "Circuit state per target (0=closed, 1=half_open, 2=open).",
    ["target"],
)

webhook_verifications_total = Counter(
    "webhook_verifications_total",
    "Inbound webhook verification results.",
    ["provider", "result"],
)

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests.",
    ["method", "path", "status"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
