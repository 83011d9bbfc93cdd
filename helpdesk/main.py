"""
Helpdesk service shell.

Runs one logical service (ticket, status, user, notification or
satisfaction) selected by SERVICE_NAME, and exposes:
- /health and /health/ready checks
- /metrics (Prometheus)
- /stats (in-process messaging metrics)
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import Settings, get_settings
from .health import HealthChecker
from .logging import setup_logging, get_logger
from .messaging.runtime import AdapterFactory
from .metrics.collector import collector
from .metrics.prometheus import Metrics
from .middleware import CorrelationIdMiddleware, MetricsMiddleware
from .services import build_service

VERSION = "0.1.0"


def create_app(
    service_name: str | None = None,
    settings: Settings | None = None,
    adapter_factory: AdapterFactory | None = None,
    **options,
) -> FastAPI:
    """
    Build the FastAPI app of one service.

    The service runtime starts with the application and stops with it.
    """
    settings = settings or get_settings()
    service_name = service_name or settings.SERVICE_NAME

    setup_logging(json_output=settings.LOG_JSON, service_name=service_name, level=settings.LOG_LEVEL)
    logger = get_logger()

    metrics = Metrics(service_name=service_name, version=VERSION)
    runtime = build_service(
        service_name,
        settings=settings,
        adapter_factory=adapter_factory,
        metrics=metrics,
        **options,
    )
    health_checker = HealthChecker(service_name=service_name, version=VERSION, runtime=runtime, settings=settings)

    app = FastAPI(
        title=f"Helpdesk {service_name} service",
        version=VERSION,
        description="Helpdesk service communicating over a topic broker",
    )
    app.state.runtime = runtime
    app.state.metrics = metrics

    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(CorrelationIdMiddleware)

    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    @app.get("/health")
    async def health():
        """Liveness check."""
        return health_checker.liveness()

    @app.get("/health/ready")
    async def health_ready():
        """
        Readiness check.

        Returns:
            200: All broker connections are up
            503: Service is not ready
        """
        result = await health_checker.readiness()
        status_code = 200 if result["status"] == "ready" else 503
        return JSONResponse(result, status_code=status_code)

    @app.get("/stats")
    async def stats():
        """In-process messaging counters and latency histograms."""
        metrics.update_system_metrics()
        return {
            "service": service_name,
            "pending_calls": len(runtime.registry),
            **collector.get_metrics(),
        }

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "service.starting",
            version=VERSION,
            env=settings.ENV,
            broker=settings.BROKER_ADAPTER,
        )
        await runtime.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("service.stopping")
        await runtime.stop()
        metrics.app_up.labels(service=service_name, version=VERSION).set(0)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
    )
