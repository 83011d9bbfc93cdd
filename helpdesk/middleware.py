"""
HTTP middleware for the service shell.
"""
import uuid
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import structlog

CORRELATION_HEADER = "x-correlation-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID to every HTTP request.

    - Uses the X-Correlation-ID header if present, else a new UUID
    - Binds it to the structlog context for the request
    - Echoes it in the response headers
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Records Prometheus HTTP metrics.

    - Request count by method, path, status
    - Request duration histogram
    - Active requests gauge
    """

    def __init__(self, app, metrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        # The scrape endpoint is not counted
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        service = self.metrics.service_name
        active = self.metrics.http_requests_active.labels(service=service)
        active.inc()
        start_time = time.monotonic()
        logger = structlog.get_logger()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            return response
        except Exception as e:
            logger.error(
                "http.request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            raise
        finally:
            duration = time.monotonic() - start_time
            self.metrics.http_requests_total.labels(
                service=service,
                method=request.method,
                path=request.url.path,
                status=status,
            ).inc()
            self.metrics.http_request_duration.labels(
                service=service,
                method=request.method,
                path=request.url.path,
            ).observe(duration)
            active.dec()
            logger.debug("http.request", http_status=status, duration_ms=round(duration * 1000, 2))
