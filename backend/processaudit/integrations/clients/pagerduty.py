from __future__ import annotations

from dataclasses import dataclass, field
import json
import re
from typing import Any, Mapping

import httpx

from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.clients.base import IntegrationClient
from processaudit.integrations.errors import IntegrationAuthError, IntegrationBadRequestError, IntegrationResponseFormatError


SERVICE_TYPES = ("primary", "security", "business")
_SERVICE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9]{20,}$")


@dataclass(frozen=True)
class SeverityMapping:
    urgency: str
    service_type: str


@dataclass(frozen=True)
class ServiceKeyValidation:
    is_valid: bool
    service_type: str
    errors: tuple[str, ...] = ()
    escalation_level: str | None = None
    priority: str | None = None


@dataclass(frozen=True)
class PagerDutyAlert:
    summary: str
    source: str
    severity: str = "critical"
    component: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    service_type: str | None = None
    dedup_key: str | None = None


@dataclass(frozen=True)
class PagerDutyIncident:
    id: str
    status: str
    title: str
    urgency: str
    service_type: str
    incident_number: int | None = None


def map_alert_severity(severity: str, component: str | None = None) -> SeverityMapping:
    normalized = (severity or "").strip().lower()
    if normalized == "critical":
        mapping = SeverityMapping(urgency="high", service_type="primary")
    elif normalized == "warning":
        mapping = SeverityMapping(urgency="low", service_type="primary")
    else:
        mapping = SeverityMapping(urgency="low", service_type="business")
    if component and component.strip().lower() == "security":
        return SeverityMapping(urgency="high" if normalized == "critical" else mapping.urgency, service_type="security")
    return mapping


def validate_pagerduty_service_key(service_key: str | None, service_type: str = "primary") -> ServiceKeyValidation:
    if not service_key:
        return ServiceKeyValidation(is_valid=False, service_type=service_type, errors=("Service key not configured",))

    errors: list[str] = []
    if not _SERVICE_KEY_PATTERN.match(service_key):
        errors.append("Invalid service key format")
    if service_type not in SERVICE_TYPES:
        errors.append(f"Invalid service type. Must be one of: {', '.join(SERVICE_TYPES)}")

    if service_type == "security":
        return ServiceKeyValidation(
            is_valid=not errors,
            service_type=service_type,
            errors=tuple(errors),
            escalation_level="immediate",
            priority="high",
        )
    return ServiceKeyValidation(is_valid=not errors, service_type=service_type, errors=tuple(errors))


class PagerDutyClient(IntegrationClient):
    provider = "pagerduty"
    service_name = "PagerDuty"

    def __init__(
        self,
        *,
        service_keys: Mapping[str, str],
        from_email: str,
        api_url: str = "https://api.pagerduty.com/incidents",
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, transport=transport)
        self._service_keys = {key: value for key, value in service_keys.items() if value}
        self._from_email = from_email
        self._api_url = api_url

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "PagerDutyClient":
        resolved = settings or get_settings()
        return cls(
            service_keys={
                "primary": resolved.pagerduty_service_key,
                "security": resolved.pagerduty_security_service_key,
                "business": resolved.pagerduty_business_service_key,
            },
            from_email=resolved.pagerduty_from_email,
            api_url=resolved.pagerduty_api_url,
            timeout_seconds=resolved.integration_timeout_seconds,
            transport=transport,
        )

    def _service_key_for(self, service_type: str) -> str:
        # Business alerts page through the primary service when no business key exists.
        key = self._service_keys.get(service_type)
        if key is None and service_type == "business":
            key = self._service_keys.get("primary")
        if key is None:
            raise IntegrationAuthError(
                f"PagerDuty {service_type} service key is not configured.",
                provider=self.provider,
            )
        return key

    def build_incident_body(self, alert: PagerDutyAlert, mapping: SeverityMapping) -> dict[str, Any]:
        title = alert.summary.strip()
        if mapping.service_type == "security" and not title.upper().startswith("SECURITY"):
            title = f"SECURITY: {title}"
        details = {
            "summary": alert.summary,
            "source": alert.source,
            "severity": alert.severity,
            "component": alert.component,
            **alert.details,
        }
        incident: dict[str, Any] = {
            "type": "incident",
            "title": title,
            "urgency": mapping.urgency,
            "body": {"type": "incident_body", "details": json.dumps(details, sort_keys=True, default=str)},
        }
        if alert.dedup_key:
            incident["incident_key"] = alert.dedup_key
        return {"incident": incident}

    async def create_incident(self, alert: PagerDutyAlert) -> PagerDutyIncident:
        if not alert.summary.strip() or not alert.source.strip():
            raise IntegrationBadRequestError("summary and source are required for PagerDuty incidents.", provider=self.provider)
        mapping = map_alert_severity(alert.severity, alert.component)
        if alert.service_type is not None:
            mapping = SeverityMapping(urgency=mapping.urgency, service_type=alert.service_type)
        service_key = self._service_key_for(mapping.service_type)

        response = await self._post(
            self._api_url,
            headers={
                "Authorization": f"Token token={service_key}",
                "From": self._from_email,
                "Accept": "application/vnd.pagerduty+json;version=2",
                "Content-Type": "application/json",
            },
            json=self.build_incident_body(alert, mapping),
        )
        body = self._json_object(response)
        incident = body.get("incident")
        if not isinstance(incident, dict) or not incident.get("id"):
            raise IntegrationResponseFormatError("PagerDuty response is missing the incident.", provider=self.provider)
        incident_number = incident.get("incident_number")
        return PagerDutyIncident(
            id=str(incident["id"]),
            status=str(incident.get("status", "triggered")),
            title=str(incident.get("title", "")),
            urgency=str(incident.get("urgency", mapping.urgency)),
            service_type=mapping.service_type,
            incident_number=int(incident_number) if isinstance(incident_number, int) else None,
        )
