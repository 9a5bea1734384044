from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from processaudit.core.metrics import http_requests_total


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        # Label by route template so organization ids never become label values.
        route_path = getattr(route, "path", None) or "unmatched"
        http_requests_total.labels(
            method=request.method,
            path=route_path,
            status=str(response.status_code),
        ).inc()
        return response
