from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import httpx

from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.clients.base import IntegrationClient
from processaudit.integrations.errors import (
    IntegrationAuthError,
    IntegrationBadRequestError,
    IntegrationRateLimitError,
    parse_retry_after,
)


SLACK_WEBHOOK_HOST = "hooks.slack.com"
_AUTH_ERRORS = {"invalid_auth", "not_authed", "account_inactive", "token_revoked", "token_expired"}


@dataclass(frozen=True)
class SlackMessage:
    text: str
    channel: str | None = None
    blocks: list[dict[str, Any]] = field(default_factory=list)
    attachments: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.text}
        if self.channel:
            payload["channel"] = self.channel
        if self.blocks:
            payload["blocks"] = self.blocks
        if self.attachments:
            payload["attachments"] = self.attachments
        return payload


@dataclass(frozen=True)
class SlackPostResult:
    ok: bool
    channel: str | None = None
    ts: str | None = None


def validate_slack_webhook_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme == "https" and parsed.hostname == SLACK_WEBHOOK_HOST and len(parsed.path.strip("/")) > 0


class SlackClient(IntegrationClient):
    """Posts through an incoming webhook when configured, otherwise chat.postMessage."""

    provider = "slack"
    service_name = "Slack"

    def __init__(
        self,
        *,
        webhook_url: str = "",
        bot_token: str = "",
        api_url: str = "https://slack.com/api/chat.postMessage",
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, transport=transport)
        if webhook_url and not validate_slack_webhook_url(webhook_url):
            raise ValueError("webhook_url must be an https://hooks.slack.com/ URL")
        self._webhook_url = webhook_url
        self._bot_token = bot_token
        self._api_url = api_url

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SlackClient":
        resolved = settings or get_settings()
        return cls(
            webhook_url=resolved.slack_webhook_url,
            bot_token=resolved.slack_bot_token,
            api_url=resolved.slack_api_url,
            timeout_seconds=resolved.integration_timeout_seconds,
            transport=transport,
        )

    async def post_message(self, message: SlackMessage) -> SlackPostResult:
        if not message.text.strip() and not message.blocks:
            raise IntegrationBadRequestError("Slack message requires text or blocks.", provider=self.provider)

        if self._webhook_url:
            await self._post(
                self._webhook_url,
                headers={"Content-Type": "application/json"},
                json=message.to_payload(),
            )
            return SlackPostResult(ok=True, channel=message.channel)

        if not self._bot_token:
            raise IntegrationAuthError("Slack webhook URL or bot token is required.", provider=self.provider)
        if not message.channel:
            raise IntegrationBadRequestError("channel is required when posting with a bot token.", provider=self.provider)

        response = await self._post(
            self._api_url,
            headers={
                "Authorization": f"Bearer {self._bot_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            json=message.to_payload(),
        )
        body = self._json_object(response)
        if body.get("ok") is True:
            return SlackPostResult(ok=True, channel=body.get("channel"), ts=body.get("ts"))

        # The Web API reports failures as HTTP 200 with {"ok": false, "error": ...}.
        error = str(body.get("error") or "unknown_error")
        message_text = f"Slack API error: {error}"
        if error in {"rate_limited", "ratelimited"}:
            raise IntegrationRateLimitError(
                retry_after=parse_retry_after(response.headers),
                provider=self.provider,
                status_code=response.status_code,
                upstream_payload=body,
            )
        if error in _AUTH_ERRORS:
            raise IntegrationAuthError(message_text, provider=self.provider, upstream_payload=body)
        raise IntegrationBadRequestError(message_text, provider=self.provider, upstream_payload=body)
