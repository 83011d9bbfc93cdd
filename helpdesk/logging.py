"""
Structured logging configuration using structlog.

Every entry is one JSON object:
{
    "ts": "2025-01-15T10:00:00.123456Z",
    "level": "info",
    "event": "rpc.request_handled",
    "service": "ticket",
    "correlation_id": "uuid-v4",
    "topic": "ticket.status.update",
    "module": "helpdesk.messaging.endpoint",
    "function": "_handle_request",
    "line": 42,
    ...event fields...
}

The endpoint binds ``correlation_id``/``event_id`` and ``topic`` with
structlog contextvars while it handles a message, and the HTTP middleware
binds ``correlation_id`` per request, so both show up on every entry
written in that scope.
"""
import logging
from typing import Any
import structlog


def service_name_processor(service_name: str):
    """Build a processor that stamps entries with the process's service name."""

    def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_name


def add_module_info(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Add module, function, and line number to log entries."""
    frame = structlog._frames._find_first_app_frame_and_name()[0]
    if frame:
        event_dict["module"] = frame.f_globals.get("__name__", "unknown")
        event_dict["function"] = frame.f_code.co_name
        event_dict["line"] = frame.f_lineno
    return event_dict


def resolve_level(level: str | int) -> int:
    """Map a level name such as "debug" to its number; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def build_processors(service_name: str, json_output: bool) -> list:
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        service_name_processor(service_name),
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
        structlog.processors.add_log_level,
        add_module_info,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def setup_logging(json_output: bool = True, service_name: str = "helpdesk", level: str | int = "INFO"):
    """
    Configure structured logging for one service process.

    Args:
        json_output: If True, output JSON logs. If False, use console format.
        service_name: Logical service this process runs (ticket, status, ...).
        level: Minimum level, as a name or a number.
    """
    log_level = resolve_level(level)

    structlog.configure(
        processors=build_processors(service_name, json_output),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level)

    # uvicorn's own handlers would duplicate access lines
    logging.getLogger("uvicorn.error").handlers = []
    logging.getLogger("uvicorn.access").handlers = []


def get_logger(**initial_values: Any):
    """Get a structlog logger, optionally pre-bound with ``initial_values``."""
    return structlog.get_logger(**initial_values)
