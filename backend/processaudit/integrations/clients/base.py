from __future__ import annotations

from typing import Any, Mapping

import httpx

from processaudit.integrations.errors import (
    IntegrationConnectionError,
    IntegrationDependencyError,
    IntegrationResponseFormatError,
    IntegrationTimeoutError,
    raise_for_integration_error,
)


class IntegrationClient:
    """Single-shot HTTP calls to one upstream service.

    Clients raise the integration error taxonomy and never retry; retries and
    circuit admission belong to the gateway wrapping them.
    """

    provider = "unknown"
    service_name = "Integration"

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be greater than 0")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def _post(self, url: str, *, headers: Mapping[str, str], json: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_seconds) as client:
                response = await client.post(url, headers=dict(headers), json=json)
        except httpx.TimeoutException as exc:
            raise IntegrationTimeoutError(f"{self.service_name} request timed out.", provider=self.provider) from exc
        except httpx.ConnectError as exc:
            raise IntegrationConnectionError(f"{self.service_name} connection failed.", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            raise IntegrationDependencyError(
                f"{self.service_name} dependency call failed.", provider=self.provider
            ) from exc

        raise_for_integration_error(response, provider=self.provider, service_name=self.service_name)
        return response

    def _json_object(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise IntegrationResponseFormatError(
                f"{self.service_name} response is not valid JSON.", provider=self.provider
            ) from exc
        if not isinstance(body, dict):
            raise IntegrationResponseFormatError(
                f"{self.service_name} response must be a JSON object.", provider=self.provider
            )
        return body
