from processaudit.core.middleware.metrics import MetricsMiddleware
from processaudit.core.middleware.request_logging import RequestLoggingMiddleware

__all__ = [
    "MetricsMiddleware",
    "RequestLoggingMiddleware",
]
