import json
import logging
import time

from processaudit.integrations.webhooks import sign_pagerduty_payload, sign_slack_payload


UNAUTHORIZED = {"message": "Unauthorized", "reason_code": "webhook_unauthorized"}

PAGERDUTY_BODY = json.dumps(
    {
        "messages": [
            {
                "id": "webhook_123",
                "type": "incident.triggered",
                "data": {"incident": {"id": "incident_456", "status": "triggered", "title": "ProcessAudit AI Alert"}},
            }
        ]
    }
).encode("utf-8")


def _slack_headers(body: bytes, secret: str, timestamp: int | None = None) -> dict[str, str]:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "content-type": "application/json",
        "X-Slack-Request-Timestamp": str(timestamp),
        "X-Slack-Signature": sign_slack_payload(body, timestamp, secret),
    }


def test_pagerduty_webhook_accepts_signed_payload(client, settings, event_sink) -> None:
    response = client.post(
        "/api/v1/webhooks/pagerduty",
        content=PAGERDUTY_BODY,
        headers={
            "content-type": "application/json",
            "X-PagerDuty-Signature": sign_pagerduty_payload(PAGERDUTY_BODY, settings.pagerduty_webhook_secret),
        },
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] is True
    assert data["incident_ids"] == ["incident_456"]
    assert [provider for provider, _event in event_sink.published] == ["pagerduty"]

    usage = client.get("/api/v1/integrations/usage/platform", params={"provider": "pagerduty"})
    assert usage.json()["data"]["total_amount"] == 1.0


def test_pagerduty_webhook_rejects_bad_signature_uniformly(client, event_sink) -> None:
    mismatched = client.post(
        "/api/v1/webhooks/pagerduty",
        content=PAGERDUTY_BODY,
        headers={"X-PagerDuty-Signature": "v1=" + "00" * 32},
    )
    missing = client.post("/api/v1/webhooks/pagerduty", content=PAGERDUTY_BODY)
    malformed = client.post(
        "/api/v1/webhooks/pagerduty",
        content=PAGERDUTY_BODY,
        headers={"X-PagerDuty-Signature": "v1=zz"},
    )
    for response in (mismatched, missing, malformed):
        assert response.status_code == 401
        assert response.json() == UNAUTHORIZED
    assert event_sink.published == []


def test_pagerduty_webhook_rejects_signed_but_malformed_payload(client, settings) -> None:
    body = b'{"invalid": "structure"}'
    response = client.post(
        "/api/v1/webhooks/pagerduty",
        content=body,
        headers={"X-PagerDuty-Signature": sign_pagerduty_payload(body, settings.pagerduty_webhook_secret)},
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "http_400"
    assert error["message"] == "Invalid webhook payload format"


def test_slack_url_verification_returns_challenge(client, settings) -> None:
    body = json.dumps({"type": "url_verification", "challenge": "challenge-token"}).encode("utf-8")
    response = client.post("/api/v1/webhooks/slack", content=body, headers=_slack_headers(body, settings.slack_signing_secret))
    assert response.status_code == 200
    assert response.json() == {"challenge": "challenge-token"}


def test_slack_event_is_counted_for_organization(client, settings, event_sink) -> None:
    body = json.dumps(
        {"type": "event_callback", "team_id": "T1", "event": {"type": "app_mention", "user": "U1", "text": "hi"}}
    ).encode("utf-8")
    response = client.post(
        "/api/v1/webhooks/slack",
        params={"organization_id": "org_1"},
        content=body,
        headers=_slack_headers(body, settings.slack_signing_secret),
    )
    assert response.status_code == 200
    assert response.json()["data"]["event_type"] == "app_mention"
    assert event_sink.published[0][1].team_id == "T1"

    usage = client.get("/api/v1/integrations/usage/org_1", params={"provider": "slack"})
    assert usage.json()["data"]["total_requests"] == 1


def test_slack_webhook_rejects_stale_timestamp(client, settings, event_sink) -> None:
    body = json.dumps({"type": "url_verification", "challenge": "abc"}).encode("utf-8")
    stale = int(time.time()) - settings.webhook_tolerance_seconds - 60
    response = client.post(
        "/api/v1/webhooks/slack",
        content=body,
        headers=_slack_headers(body, settings.slack_signing_secret, timestamp=stale),
    )
    assert response.status_code == 401
    assert response.json() == UNAUTHORIZED
    assert event_sink.published == []


def test_slack_webhook_rejects_wrong_secret(client) -> None:
    body = json.dumps({"type": "url_verification", "challenge": "abc"}).encode("utf-8")
    response = client.post("/api/v1/webhooks/slack", content=body, headers=_slack_headers(body, "not-the-secret"))
    assert response.status_code == 401
    assert response.json() == UNAUTHORIZED


def test_integrations_health_reports_open_circuits(client, runtime) -> None:
    response = client.get("/api/v1/integrations/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
    assert response.json()["data"]["circuits"] == []

    breaker = runtime.gateway.breakers.get("claude")
    for _ in range(runtime.settings.circuit_failure_threshold):
        breaker.record_failure()

    data = client.get("/api/v1/integrations/health").json()["data"]
    assert data["status"] == "degraded"
    assert data["circuits"][0]["target"] == "claude"
    assert data["circuits"][0]["state"] == "open"


def test_usage_endpoint_includes_threshold_when_limit_given(client, runtime) -> None:
    runtime.gateway.tracker.record("org_9", "openai", 95)
    response = client.get("/api/v1/integrations/usage/org_9", params={"provider": "openai", "limit": 100})
    assert response.status_code == 200
    threshold = response.json()["data"]["threshold"]
    assert threshold["warning"] is True
    assert threshold["within_limit"] is True
    assert threshold["remaining"] == 5.0


def test_usage_endpoint_validates_provider(client) -> None:
    response = client.get("/api/v1/integrations/usage/org_9", params={"provider": "gemini"})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_request_id_is_echoed(client) -> None:
    response = client.get("/api/v1/integrations/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["meta"]["request_id"] == "req-123"


def test_slack_webhook_rejects_signed_body_that_is_not_utf8(client, settings, event_sink) -> None:
    body = b"\xff\xfe{}"
    response = client.post("/api/v1/webhooks/slack", content=body, headers=_slack_headers(body, settings.slack_signing_secret))
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Invalid webhook payload format"
    assert event_sink.published == []


def test_request_log_carries_correlation_and_delivery_ids(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="processaudit.api")
    response = client.get(
        "/api/v1/integrations/health",
        headers={"X-Correlation-ID": "corr-789", "X-Webhook-Id": "webhook_123"},
    )
    assert response.headers["X-Request-ID"] == "corr-789"
    records = [record for record in caplog.records if record.name == "processaudit.api"]
    assert records
    assert records[-1].correlation_id == "corr-789"
    assert records[-1].x_webhook_id == "webhook_123"
    assert records[-1].getMessage() == "GET /api/v1/integrations/health -> 200"
