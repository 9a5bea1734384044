from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from threading import Lock
from typing import Any, Mapping, Protocol, Sequence
from urllib.parse import parse_qs

from processaudit.integrations.errors import WebhookPayloadError


logger = logging.getLogger("processaudit.integrations.events")

INVALID_PAYLOAD_MESSAGE = "Invalid webhook payload format"


@dataclass(frozen=True)
class IncidentEvent:
    message_id: str
    event_type: str
    incident_id: str
    status: str
    title: str
    urgency: str | None = None


@dataclass(frozen=True)
class SlackEvent:
    kind: str
    event_type: str | None = None
    challenge: str | None = None
    team_id: str | None = None
    event_id: str | None = None
    user: str | None = None
    channel: str | None = None
    text: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_challenge(self) -> bool:
        return self.kind == "url_verification"


def parse_json_body(raw_body: bytes | str) -> Any:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE) from exc


def _incident_from(message_id: str, event_type: str, incident: Any) -> IncidentEvent:
    if not isinstance(incident, Mapping) or not incident.get("id"):
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
    urgency = incident.get("urgency")
    return IncidentEvent(
        message_id=message_id,
        event_type=event_type,
        incident_id=str(incident["id"]),
        status=str(incident.get("status", "")),
        title=str(incident.get("title") or incident.get("summary") or ""),
        urgency=str(urgency) if urgency is not None else None,
    )


def normalize_pagerduty_webhook(payload: Any) -> list[IncidentEvent]:
    """Flatten a PagerDuty webhook into incident events.

    Accepts the batched ``messages`` envelope and the single ``event`` envelope
    of newer webhook subscriptions.
    """
    if not isinstance(payload, Mapping):
        logger.error("Invalid PagerDuty webhook payload", extra={"reason": "not_an_object"})
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)

    try:
        if isinstance(payload.get("messages"), list) and payload["messages"]:
            events = []
            for message in payload["messages"]:
                if not isinstance(message, Mapping):
                    raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
                event_type = str(message.get("type") or message.get("event") or "")
                data = message.get("data") if isinstance(message.get("data"), Mapping) else {}
                incident = data.get("incident") or message.get("incident")
                events.append(_incident_from(str(message.get("id", "")), event_type, incident))
            return events

        event = payload.get("event")
        if isinstance(event, Mapping):
            data = event.get("data")
            if isinstance(data, Mapping) and isinstance(data.get("incident"), Mapping):
                data = data["incident"]
            return [_incident_from(str(event.get("id", "")), str(event.get("event_type", "")), data)]
    except WebhookPayloadError:
        logger.error("Invalid PagerDuty webhook payload", extra={"reason": "missing_incident"})
        raise

    logger.error("Invalid PagerDuty webhook payload", extra={"reason": "unknown_envelope"})
    raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)


def parse_slack_body(raw_body: bytes | str, content_type: str | None) -> dict[str, Any]:
    """Decode a Slack request body; form posts carry either fields or a ``payload`` JSON string."""
    try:
        text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    except UnicodeDecodeError as exc:
        logger.error("Invalid Slack webhook payload", extra={"reason": "undecodable_body"})
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE) from exc
    if content_type and "application/x-www-form-urlencoded" in content_type:
        fields = {key: values[0] for key, values in parse_qs(text, keep_blank_values=True).items()}
        if "payload" in fields:
            decoded = parse_json_body(fields["payload"])
            if not isinstance(decoded, dict):
                raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
            return decoded
        return fields
    decoded = parse_json_body(text)
    if not isinstance(decoded, dict):
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
    return decoded


def normalize_slack_event(payload: Mapping[str, Any]) -> SlackEvent:
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)

    kind = payload.get("type")
    if kind == "url_verification":
        challenge = payload.get("challenge")
        if not isinstance(challenge, str) or not challenge:
            raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
        return SlackEvent(kind="url_verification", challenge=challenge, raw=dict(payload))

    if kind == "event_callback":
        event = payload.get("event")
        if not isinstance(event, Mapping):
            raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)
        return SlackEvent(
            kind="event_callback",
            event_type=event.get("type"),
            team_id=payload.get("team_id"),
            event_id=payload.get("event_id"),
            user=event.get("user"),
            channel=event.get("channel"),
            text=event.get("text"),
            raw=dict(payload),
        )

    if "command" in payload:
        return SlackEvent(
            kind="slash_command",
            event_type=str(payload["command"]),
            team_id=payload.get("team_id"),
            user=payload.get("user_id"),
            channel=payload.get("channel_id"),
            text=payload.get("text"),
            raw=dict(payload),
        )

    if isinstance(kind, str) and kind:
        # Interactive payloads: block_actions, view_submission, shortcut, ...
        user = payload.get("user")
        channel = payload.get("channel")
        team = payload.get("team")
        return SlackEvent(
            kind="interaction",
            event_type=kind,
            team_id=team.get("id") if isinstance(team, Mapping) else None,
            user=user.get("id") if isinstance(user, Mapping) else None,
            channel=channel.get("id") if isinstance(channel, Mapping) else None,
            raw=dict(payload),
        )

    raise WebhookPayloadError(INVALID_PAYLOAD_MESSAGE)


class WebhookEventSink(Protocol):
    def publish(self, provider: str, events: Sequence[IncidentEvent | SlackEvent]) -> None:
        ...


class LoggingEventSink:
    def publish(self, provider: str, events: Sequence[IncidentEvent | SlackEvent]) -> None:
        for event in events:
            if isinstance(event, IncidentEvent):
                logger.info(
                    "PagerDuty incident webhook processed",
                    extra={"provider": provider, "incident_id": event.incident_id, "status": event.status},
                )
            else:
                logger.info(
                    "Slack event received",
                    extra={"provider": provider, "kind": event.kind, "event_type": event.event_type},
                )


class InMemoryEventSink:
    def __init__(self) -> None:
        self.published: list[tuple[str, IncidentEvent | SlackEvent]] = []
        self._lock = Lock()

    def publish(self, provider: str, events: Sequence[IncidentEvent | SlackEvent]) -> None:
        with self._lock:
            self.published.extend((provider, event) for event in events)
