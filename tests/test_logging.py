"""Tests for the structured log format."""
import logging
import orjson
import structlog
from helpdesk.logging import build_processors, resolve_level


def render(processors, **event_dict):
    for processor in processors:
        event_dict = processor(None, "info", event_dict)
    return event_dict


def test_json_entry_carries_standard_fields():
    """Test service, level, timestamp and call-site fields."""
    line = render(build_processors("ticket", json_output=True), event="rpc.request_handled", topic="ticket.get.info")

    entry = orjson.loads(line)
    assert entry["event"] == "rpc.request_handled"
    assert entry["service"] == "ticket"
    assert entry["level"] == "info"
    assert entry["ts"].endswith("Z")
    assert entry["topic"] == "ticket.get.info"
    assert {"module", "function", "line"} <= entry.keys()


def test_bound_message_context_is_merged():
    """Test correlation_id bound for a message shows up on the entry."""
    with structlog.contextvars.bound_contextvars(correlation_id="corr-1", service="notification"):
        line = render(build_processors("ticket", json_output=True), event="notification.created")

    entry = orjson.loads(line)
    assert entry["correlation_id"] == "corr-1"
    assert entry["service"] == "notification"


def test_resolve_level():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level("WARNING") == logging.WARNING
    assert resolve_level("chatty") == logging.INFO
    assert resolve_level(logging.ERROR) == logging.ERROR
