import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from processaudit.api.deps import IntegrationRuntime
from processaudit.api.response import exception_envelope
from processaudit.api.v1.router import api_router
from processaudit.core.logging_config import configure_logging
from processaudit.core.metrics import render_metrics
from processaudit.core.middleware import MetricsMiddleware, RequestLoggingMiddleware
from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.errors import CircuitOpenError, IntegrationError, QuotaExceededError, sanitize_error_message


logger = logging.getLogger("processaudit.api")


def _integration_status_code(exc: IntegrationError) -> int:
    if isinstance(exc, QuotaExceededError):
        return 429
    if isinstance(exc, CircuitOpenError):
        return 503
    return 502


def create_app(settings: Settings | None = None, *, runtime: IntegrationRuntime | None = None) -> FastAPI:
    resolved = settings or (runtime.settings if runtime is not None else get_settings())
    app = FastAPI(title=resolved.app_name)
    app.state.runtime = runtime or IntegrationRuntime.from_settings(resolved)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.include_router(api_router, prefix=resolved.api_v1_prefix)

    if resolved.metrics_enabled:
        @app.get("/metrics", include_in_schema=False)
        async def metrics() -> Response:
            payload, content_type = render_metrics()
            return Response(content=payload, media_type=content_type)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        details: dict[str, object] = exc.detail if isinstance(exc.detail, dict) else {}
        payload = exception_envelope(
            request=request,
            status_code=exc.status_code,
            message=message,
            code=f"http_{exc.status_code}",
            details=details,
        )
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        payload = exception_envelope(
            request=request,
            status_code=422,
            message="Validation failed",
            code="validation_error",
            details={"errors": exc.errors()},
        )
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(IntegrationError)
    async def integration_exception_handler(request: Request, exc: IntegrationError) -> JSONResponse:
        status_code = _integration_status_code(exc)
        logger.warning(
            "integration error surfaced to client",
            extra={"provider": exc.provider, "reason": exc.reason_code, "correlation_id": exc.correlation_id},
        )
        payload = exception_envelope(
            request=request,
            status_code=status_code,
            message=sanitize_error_message(str(exc)),
            code=exc.error_code,
            details={"reason_code": exc.reason_code, "retryable": exc.retryable},
        )
        return JSONResponse(status_code=status_code, content=payload)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
        logger.exception("unhandled exception")
        payload = exception_envelope(
            request=request,
            status_code=500,
            message="Internal server error",
            code="internal_server_error",
        )
        return JSONResponse(status_code=500, content=payload)

    return app


settings = get_settings()
configure_logging(log_level=settings.log_level, app_env=settings.app_env)
app = create_app(settings)
