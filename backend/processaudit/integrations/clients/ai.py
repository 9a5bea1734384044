from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
from typing import Any, Sequence

import httpx

from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.clients.base import IntegrationClient
from processaudit.integrations.errors import IntegrationBadRequestError, IntegrationResponseFormatError
from processaudit.integrations.execution_types import GatewayRequest, GatewayResult, UsageSample
from processaudit.integrations.gateway import IntegrationGateway


logger = logging.getLogger("processaudit.integrations.ai")

# USD per 1K tokens as (input, output).
MODEL_PRICING = {
    "claude-3-sonnet-20240229": (0.003, 0.015),
    "claude-3-5-sonnet-20241022": (0.003, 0.015),
    "claude-3-haiku-20240307": (0.00025, 0.00125),
    "gpt-4": (0.03, 0.06),
    "gpt-4o": (0.005, 0.015),
}


@dataclass(frozen=True)
class AICompletion:
    provider: str
    text: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float | None:
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return None
    input_price, output_price = pricing
    return round(input_tokens / 1000 * input_price + output_tokens / 1000 * output_price, 6)


def _estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))


def ai_usage_meter(completion: AICompletion) -> UsageSample:
    metadata: dict[str, Any] = {
        "input_tokens": completion.input_tokens,
        "output_tokens": completion.output_tokens,
        "model": completion.model,
    }
    cost = estimate_cost(completion.model, completion.input_tokens, completion.output_tokens)
    if cost is not None:
        metadata["cost"] = cost
    return UsageSample(amount=completion.total_tokens, metadata=metadata)


class ClaudeClient(IntegrationClient):
    provider = "claude"
    service_name = "Anthropic"

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        api_version: str = "2023-06-01",
        model: str = "claude-3-sonnet-20240229",
        max_tokens: int = 4000,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, transport=transport)
        self._api_key = api_key
        self._api_url = api_url
        self._api_version = api_version
        self.model = model
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ClaudeClient":
        resolved = settings or get_settings()
        return cls(
            api_key=resolved.anthropic_api_key,
            api_url=resolved.anthropic_api_url,
            api_version=resolved.anthropic_version,
            model=resolved.anthropic_model,
            max_tokens=resolved.ai_max_tokens,
            timeout_seconds=resolved.integration_timeout_seconds,
            transport=transport,
        )

    async def complete(self, prompt: str, *, system: str | None = None, max_tokens: int | None = None) -> AICompletion:
        if not prompt.strip():
            raise IntegrationBadRequestError("prompt cannot be empty.", provider=self.provider)
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        response = await self._post(
            self._api_url,
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": self._api_version,
                "content-type": "application/json",
            },
            json=payload,
        )
        body = self._json_object(response)
        content = body.get("content")
        if not isinstance(content, list) or not content or not isinstance(content[0], dict):
            raise IntegrationResponseFormatError("Anthropic response is missing content.", provider=self.provider)
        text = "".join(str(block.get("text", "")) for block in content if isinstance(block, dict))
        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return AICompletion(
            provider=self.provider,
            text=text,
            model=str(body.get("model") or self.model),
            input_tokens=int(usage.get("input_tokens") or _estimate_tokens(prompt)),
            output_tokens=int(usage.get("output_tokens") or _estimate_tokens(text)),
        )


class OpenAIClient(IntegrationClient):
    provider = "openai"
    service_name = "OpenAI"

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str = "https://api.openai.com/v1/chat/completions",
        model: str = "gpt-4",
        max_tokens: int = 4000,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds, transport=transport)
        self._api_key = api_key
        self._api_url = api_url
        self.model = model
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OpenAIClient":
        resolved = settings or get_settings()
        return cls(
            api_key=resolved.openai_api_key,
            api_url=resolved.openai_api_url,
            model=resolved.openai_model,
            max_tokens=resolved.ai_max_tokens,
            timeout_seconds=resolved.integration_timeout_seconds,
            transport=transport,
        )

    async def complete(self, prompt: str, *, system: str | None = None, max_tokens: int | None = None) -> AICompletion:
        if not prompt.strip():
            raise IntegrationBadRequestError("prompt cannot be empty.", provider=self.provider)
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        response = await self._post(
            self._api_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json={"model": self.model, "max_tokens": max_tokens or self.max_tokens, "messages": messages},
        )
        body = self._json_object(response)
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise IntegrationResponseFormatError("OpenAI response is missing choices.", provider=self.provider)
        message = choices[0].get("message")
        text = str(message.get("content") or "") if isinstance(message, dict) else ""
        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return AICompletion(
            provider=self.provider,
            text=text,
            model=str(body.get("model") or self.model),
            input_tokens=int(usage.get("prompt_tokens") or _estimate_tokens(prompt)),
            output_tokens=int(usage.get("completion_tokens") or _estimate_tokens(text)),
        )


class AIUsageRecorder:
    """Runs completions through the gateway, falling back across AI providers.

    Each provider is its own circuit target and usage key, so a Claude outage
    opens only Claude's breaker while OpenAI calls keep flowing.
    """

    def __init__(self, gateway: IntegrationGateway, clients: Sequence[ClaudeClient | OpenAIClient]) -> None:
        if not clients:
            raise ValueError("at least one AI client is required")
        self._gateway = gateway
        self._clients = list(clients)

    async def complete(
        self,
        organization_id: str,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int | None = None,
        quota_limit: float | None = None,
        correlation_id: str | None = None,
    ) -> GatewayResult:
        result: GatewayResult | None = None
        primary_error = None
        for index, client in enumerate(self._clients):

            async def _operation(client=client) -> AICompletion:
                return await client.complete(prompt, system=system, max_tokens=max_tokens)

            result = await self._gateway.execute(
                GatewayRequest(
                    organization_id=organization_id,
                    provider=client.provider,
                    operation=_operation,
                    meter=ai_usage_meter,
                    usage_amount=_estimate_tokens(prompt),
                    quota_limit=quota_limit,
                    correlation_id=correlation_id,
                )
            )
            if result.success:
                if index == 0:
                    return result
                return replace(result, used_fallback=True, primary_error=primary_error)
            if primary_error is None:
                primary_error = result.error
            if index + 1 < len(self._clients):
                logger.warning(
                    "%s completion failed, trying %s",
                    client.provider,
                    self._clients[index + 1].provider,
                    extra={"provider": client.provider, "reason": result.error.reason_code if result.error else None},
                )
        return replace(result, used_fallback=len(self._clients) > 1, primary_error=primary_error)
