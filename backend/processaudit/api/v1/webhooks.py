import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from processaudit.api.deps import IntegrationRuntime, get_runtime
from processaudit.api.response import envelope, unauthorized_webhook_body
from processaudit.integrations.errors import WebhookPayloadError
from processaudit.integrations.events import (
    normalize_pagerduty_webhook,
    normalize_slack_event,
    parse_json_body,
    parse_slack_body,
)
from processaudit.integrations.usage import Provider
from processaudit.integrations.webhooks import SignatureScheme, WebhookEnvelope, verify_and_audit


logger = logging.getLogger("processaudit.api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _unauthorized() -> JSONResponse:
    # Every verification failure gets the same body so callers learn nothing about why.
    return JSONResponse(status_code=401, content=unauthorized_webhook_body())


@router.post("/pagerduty")
async def pagerduty_webhook(
    request: Request,
    organization_id: str = Query(default="platform", min_length=1),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    raw_body = await request.body()
    verification = verify_and_audit(
        WebhookEnvelope(
            raw_payload=raw_body,
            provided_signature=request.headers.get("X-PagerDuty-Signature"),
            secret=runtime.settings.pagerduty_webhook_secret,
        ),
        SignatureScheme.RAW,
        provider=Provider.PAGERDUTY.value,
        correlation_id=getattr(request.state, "request_id", None),
    )
    if not verification.valid:
        return _unauthorized()

    try:
        events = normalize_pagerduty_webhook(parse_json_body(raw_body))
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    runtime.gateway.tracker.record(organization_id, Provider.PAGERDUTY, len(events), {"success": True})
    runtime.event_sink.publish(Provider.PAGERDUTY.value, events)
    return envelope(
        request,
        {
            "processed": True,
            "count": len(events),
            "incident_ids": [event.incident_id for event in events],
        },
    )


@router.post("/slack")
async def slack_webhook(
    request: Request,
    organization_id: str = Query(default="platform", min_length=1),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    raw_body = await request.body()
    verification = verify_and_audit(
        WebhookEnvelope(
            raw_payload=raw_body,
            provided_signature=request.headers.get("X-Slack-Signature"),
            secret=runtime.settings.slack_signing_secret,
            provided_timestamp=request.headers.get("X-Slack-Request-Timestamp"),
        ),
        SignatureScheme.TIMESTAMPED,
        provider=Provider.SLACK.value,
        tolerance_seconds=runtime.settings.webhook_tolerance_seconds,
        correlation_id=getattr(request.state, "request_id", None),
    )
    if not verification.valid:
        return _unauthorized()

    try:
        event = normalize_slack_event(parse_slack_body(raw_body, request.headers.get("content-type")))
    except WebhookPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if event.is_challenge:
        return {"challenge": event.challenge}

    runtime.gateway.tracker.record(organization_id, Provider.SLACK, 1, {"success": True})
    runtime.event_sink.publish(Provider.SLACK.value, [event])
    return envelope(request, {"processed": True, "kind": event.kind, "event_type": event.event_type})
