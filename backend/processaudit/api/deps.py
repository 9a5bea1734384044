from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Request

from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.events import LoggingEventSink, WebhookEventSink
from processaudit.integrations.gateway import IntegrationGateway


@dataclass
class IntegrationRuntime:
    """Process-wide integration state shared by every request."""

    settings: Settings
    gateway: IntegrationGateway
    event_sink: WebhookEventSink = field(default_factory=LoggingEventSink)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, event_sink: WebhookEventSink | None = None) -> "IntegrationRuntime":
        resolved = settings or get_settings()
        return cls(
            settings=resolved,
            gateway=IntegrationGateway.from_settings(resolved),
            event_sink=event_sink or LoggingEventSink(),
        )


def get_runtime(request: Request) -> IntegrationRuntime:
    return request.app.state.runtime
