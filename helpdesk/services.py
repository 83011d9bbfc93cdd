"""Builds each logical service on top of a ServiceRuntime."""
from typing import Callable
import structlog
from .config import Settings, get_settings
from .messaging.runtime import AdapterFactory, ServiceRuntime, create_adapter_factory
from .notifications.dispatcher import NotificationDispatcher
from .notifications.email import EmailTransport, create_email_transport
from .notifications.handlers import register_notification_handlers
from .notifications.persistence import NotificationPersistence
from .satisfaction.handlers import register_satisfaction_handlers
from .satisfaction.service import SatisfactionService
from .status.catalog import StatusCatalog
from .status.handlers import register_status_handlers
from .tickets.handlers import register_ticket_handlers
from .tickets.orchestrator import TicketWorkflowOrchestrator
from .tickets.persistence import TicketPersistence
from .users.directory import UserDirectory
from .users.handlers import register_user_handlers

log = structlog.get_logger()

# Remote services each service calls through its gateway
SERVICE_REMOTES: dict[str, tuple[str, ...]] = {
    "ticket": ("ticket", "status"),
    "status": (),
    "user": (),
    "notification": ("ticket", "user", "status"),
    "satisfaction": (),
}


def remote_services(service_name: str, settings: Settings) -> list[str]:
    """Services this one needs a broker client for: call targets plus event subscribers."""
    remotes = list(SERVICE_REMOTES[service_name])
    if service_name == "ticket":
        remotes += settings.status_changed_subscribers
        remotes += settings.ticket_created_subscribers
        remotes += settings.ticket_assigned_subscribers
    return list(dict.fromkeys(remotes))


def _build_ticket(runtime: ServiceRuntime, settings: Settings, **_):
    persistence = TicketPersistence()
    orchestrator = TicketWorkflowOrchestrator(runtime.gateway, runtime.fanout, persistence, settings)
    register_ticket_handlers(runtime.endpoint, persistence, orchestrator)
    runtime.components.update(persistence=persistence, orchestrator=orchestrator)


def _build_status(runtime: ServiceRuntime, settings: Settings, **_):
    catalog = StatusCatalog()
    register_status_handlers(runtime.endpoint, catalog)
    runtime.components.update(catalog=catalog)


def _build_user(runtime: ServiceRuntime, settings: Settings, directory: UserDirectory | None = None, **_):
    directory = directory or UserDirectory()
    register_user_handlers(runtime.endpoint, directory)
    runtime.components.update(directory=directory)


def _build_notification(
    runtime: ServiceRuntime,
    settings: Settings,
    email_transport: EmailTransport | None = None,
    **_,
):
    persistence = NotificationPersistence()
    transport = email_transport or create_email_transport(settings)
    dispatcher = NotificationDispatcher(runtime.gateway, persistence, transport, settings)
    register_notification_handlers(runtime.endpoint, persistence, dispatcher)
    runtime.components.update(persistence=persistence, dispatcher=dispatcher, email_transport=transport)


def _build_satisfaction(runtime: ServiceRuntime, settings: Settings, **_):
    service = SatisfactionService(settings)
    register_satisfaction_handlers(runtime.endpoint, service)
    runtime.components.update(satisfaction=service)


BUILDERS: dict[str, Callable[..., None]] = {
    "ticket": _build_ticket,
    "status": _build_status,
    "user": _build_user,
    "notification": _build_notification,
    "satisfaction": _build_satisfaction,
}


def build_service(
    service_name: str,
    settings: Settings | None = None,
    adapter_factory: AdapterFactory | None = None,
    metrics=None,
    **options,
) -> ServiceRuntime:
    """
    Create the runtime of one service with its handlers registered.

    Args:
        service_name: One of ``BUILDERS``
        settings: Settings (defaults to ``get_settings()``)
        adapter_factory: Broker connection factory (defaults from settings)
        metrics: Optional Prometheus ``Metrics``
        **options: Service-specific collaborators (``directory`` for the
            user service, ``email_transport`` for the notification service)

    Raises:
        ValueError: If the service name is unknown
    """
    if service_name not in BUILDERS:
        raise ValueError(f"Unknown service '{service_name}'")
    settings = settings or get_settings()
    adapter_factory = adapter_factory or create_adapter_factory(settings)
    runtime = ServiceRuntime(
        service_name,
        adapter_factory,
        remote_services=remote_services(service_name, settings),
        settings=settings,
        metrics=metrics,
    )
    BUILDERS[service_name](runtime, settings, **options)
    log.info("service.built", service=service_name, topics=runtime.endpoint.topics)
    return runtime
