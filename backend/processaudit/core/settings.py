import os
import re
import sys
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "ProcessAudit Integration Gateway"
    app_env: str = "local"
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"
    metrics_enabled: bool = False

    circuit_failure_threshold: int = 3
    circuit_cooldown_seconds: float = 60.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0
    retry_jitter_ratio: float = 0.1
    integration_timeout_seconds: float = 15.0

    webhook_tolerance_seconds: int = 300
    usage_window_seconds: int = 86400
    usage_soft_threshold: float = 0.9

    pagerduty_api_url: str = "https://api.pagerduty.com/incidents"
    pagerduty_service_key: str = ""
    pagerduty_security_service_key: str = ""
    pagerduty_business_service_key: str = ""
    pagerduty_from_email: str = "alerts@processaudit.ai"
    pagerduty_webhook_secret: str = ""

    slack_webhook_url: str = ""
    slack_bot_token: str = ""
    slack_api_url: str = "https://slack.com/api/chat.postMessage"
    slack_signing_secret: str = ""

    anthropic_api_key: str = ""
    anthropic_api_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_version: str = "2023-06-01"
    anthropic_model: str = "claude-3-sonnet-20240229"
    openai_api_key: str = ""
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    openai_model: str = "gpt-4"
    ai_max_tokens: int = 4000

    @model_validator(mode="after")
    def validate_production_guardrails(self) -> "Settings":
        if self.circuit_failure_threshold <= 0:
            raise ValueError("CIRCUIT_FAILURE_THRESHOLD must be greater than 0.")
        if self.circuit_cooldown_seconds <= 0:
            raise ValueError("CIRCUIT_COOLDOWN_SECONDS must be greater than 0.")
        if self.retry_max_attempts < 1:
            raise ValueError("RETRY_MAX_ATTEMPTS must be at least 1.")
        if self.integration_timeout_seconds <= 0:
            raise ValueError("INTEGRATION_TIMEOUT_SECONDS must be greater than 0.")
        if not 0 < self.usage_soft_threshold <= 1:
            raise ValueError("USAGE_SOFT_THRESHOLD must be within (0, 1].")

        if self.app_env.lower() != "production":
            return self

        required = {
            "PAGERDUTY_SERVICE_KEY": self.pagerduty_service_key,
            "PAGERDUTY_WEBHOOK_SECRET": self.pagerduty_webhook_secret,
            "SLACK_SIGNING_SECRET": self.slack_signing_secret,
        }
        missing = [key for key, value in required.items() if not str(value).strip()]
        if missing:
            raise ValueError(f"Production is missing required settings: {', '.join(missing)}")
        if not (self.slack_webhook_url.strip() or self.slack_bot_token.strip()):
            raise ValueError("Production requires SLACK_WEBHOOK_URL or SLACK_BOT_TOKEN.")
        if not (self.anthropic_api_key.strip() or self.openai_api_key.strip()):
            raise ValueError("Production requires ANTHROPIC_API_KEY or OPENAI_API_KEY.")
        if not re.fullmatch(r"[A-Za-z0-9]{20,}", self.pagerduty_service_key):
            raise ValueError("Production requires PAGERDUTY_SERVICE_KEY in PagerDuty integration key format.")
        return self


@lru_cache
def get_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "").lower()
    is_pytest_runtime = "pytest" in sys.modules
    if app_env == "test" or (not app_env and is_pytest_runtime):
        def _env_or_default(name: str, default: str) -> str:
            value = os.getenv(name)
            if value is None:
                return default
            stripped = value.strip()
            return stripped if stripped else default

        return Settings(
            app_env="test",
            pagerduty_service_key=_env_or_default("PAGERDUTY_SERVICE_KEY", "test_pagerduty_primary_key_123456789012345678"),
            pagerduty_security_service_key=_env_or_default(
                "PAGERDUTY_SECURITY_SERVICE_KEY", "test_pagerduty_security_key_123456789012345678"
            ),
            pagerduty_business_service_key=_env_or_default(
                "PAGERDUTY_BUSINESS_SERVICE_KEY", "test_pagerduty_business_key_123456789012345678"
            ),
            pagerduty_webhook_secret=_env_or_default("PAGERDUTY_WEBHOOK_SECRET", "webhook_secret_key"),
            slack_signing_secret=_env_or_default("SLACK_SIGNING_SECRET", "slack_signing_secret"),
            slack_webhook_url=_env_or_default("SLACK_WEBHOOK_URL", "https://hooks.slack.com/services/T000/B000/XXXX"),
            anthropic_api_key=_env_or_default("ANTHROPIC_API_KEY", "sk-ant-test-key"),
            openai_api_key=_env_or_default("OPENAI_API_KEY", "sk-test-openai-key"),
            retry_base_delay_seconds=0.0,
            retry_jitter_ratio=0.0,
        )
    return Settings()
