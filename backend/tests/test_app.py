import json
import logging

from fastapi.testclient import TestClient
import pytest

from processaudit.core import settings as settings_module
from processaudit.core.logging_config import JsonFormatter
from processaudit.core.settings import Settings
from processaudit.main import create_app


def test_get_settings_in_test_mode(monkeypatch) -> None:
    settings_module.get_settings.cache_clear()
    try:
        monkeypatch.setenv("APP_ENV", "test")
        monkeypatch.delenv("PAGERDUTY_WEBHOOK_SECRET", raising=False)

        settings = settings_module.get_settings()

        assert settings.app_env == "test"
        assert settings.pagerduty_webhook_secret == "webhook_secret_key"
        assert settings.retry_base_delay_seconds == 0.0
    finally:
        settings_module.get_settings.cache_clear()


def test_production_settings_require_webhook_secrets() -> None:
    with pytest.raises(ValueError):
        Settings(
            app_env="production",
            pagerduty_service_key="",
            pagerduty_webhook_secret="",
            slack_signing_secret="",
        )


def test_production_settings_accept_complete_configuration() -> None:
    settings = Settings(
        app_env="production",
        pagerduty_service_key="abcdefghij0123456789abcd",
        pagerduty_webhook_secret="pd-secret",
        slack_signing_secret="slack-secret",
        slack_webhook_url="https://hooks.slack.com/services/T000/B000/XXXX",
        anthropic_api_key="sk-ant-live",
    )
    assert settings.app_env == "production"


@pytest.mark.parametrize(
    "overrides",
    [
        {"circuit_failure_threshold": 0},
        {"circuit_cooldown_seconds": 0},
        {"retry_max_attempts": 0},
        {"usage_soft_threshold": 1.5},
    ],
)
def test_settings_reject_non_positive_thresholds(overrides) -> None:
    with pytest.raises(ValueError):
        Settings(app_env="test", **overrides)


def test_metrics_endpoint_when_enabled(settings) -> None:
    app = create_app(settings.model_copy(update={"metrics_enabled": True}))
    with TestClient(app) as client:
        response = client.get("/metrics")
    assert response.status_code == 200
    assert "integration_calls_total" in response.text


def test_metrics_endpoint_absent_when_disabled(settings) -> None:
    with TestClient(create_app(settings)) as client:
        response = client.get("/metrics")
    assert response.status_code == 404


def test_json_formatter_includes_integration_fields() -> None:
    record = logging.LogRecord("processaudit.integrations.retry", logging.INFO, __file__, 1, "retrying", None, None)
    record.provider = "claude"
    record.attempts = 2
    payload = json.loads(JsonFormatter().format(record))
    assert payload["logger"] == "processaudit.integrations.retry"
    assert payload["provider"] == "claude"
    assert payload["attempts"] == 2
    assert payload["correlation_id"] is None
