from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


logger = logging.getLogger("processaudit.api")

# Headers that identify one webhook delivery across provider retries.
DELIVERY_HEADERS = ("X-Webhook-Id", "X-Slack-Retry-Num")


def _delivery_fields(request: Request) -> dict[str, str]:
    fields: dict[str, str] = {}
    for header in DELIVERY_HEADERS:
        value = request.headers.get(header)
        if value:
            fields[header.lower().replace("-", "_")] = value
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns the correlation id every webhook audit event and integration call log carries."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or f"req_{uuid.uuid4().hex}"
        )
        request.state.request_id = correlation_id
        started_at = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        response.headers.setdefault("X-Request-ID", correlation_id)
        logger.info(
            "%s %s -> %s",
            request.method,
            getattr(route, "path", request.url.path),
            response.status_code,
            extra={
                "correlation_id": correlation_id,
                "status_code": response.status_code,
                "latency_ms": round((time.perf_counter() - started_at) * 1000, 2),
                **_delivery_fields(request),
            },
        )
        return response
