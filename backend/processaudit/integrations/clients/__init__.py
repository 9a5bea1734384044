from processaudit.integrations.clients.ai import AICompletion, AIUsageRecorder, ClaudeClient, OpenAIClient, ai_usage_meter
from processaudit.integrations.clients.base import IntegrationClient
from processaudit.integrations.clients.pagerduty import (
    PagerDutyAlert,
    PagerDutyClient,
    PagerDutyIncident,
    SeverityMapping,
    map_alert_severity,
    validate_pagerduty_service_key,
)
from processaudit.integrations.clients.slack import SlackClient, SlackMessage, SlackPostResult, validate_slack_webhook_url

__all__ = [
    "IntegrationClient",
    "PagerDutyClient",
    "PagerDutyAlert",
    "PagerDutyIncident",
    "SeverityMapping",
    "SlackClient",
    "SlackMessage",
    "SlackPostResult",
    "ClaudeClient",
    "OpenAIClient",
    "AICompletion",
    "AIUsageRecorder",
    "ai_usage_meter",
    "map_alert_severity",
    "validate_pagerduty_service_key",
    "validate_slack_webhook_url",
]
