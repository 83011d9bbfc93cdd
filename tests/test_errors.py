"""Tests for the error taxonomy and its wire form."""
import pytest
from helpdesk.errors import (
    error_from_payload,
    HelpdeskError,
    InvalidArgumentError,
    InvalidStatusError,
    NotFoundError,
    RemoteError,
    RequestTimeoutError,
    TransportClosedError,
    TransportError,
)


@pytest.mark.parametrize(
    "error",
    [
        NotFoundError("Ticket not found", ticket_id=7),
        InvalidArgumentError("'status_id' is required", field="status_id"),
        InvalidStatusError("Unknown status", status_id=99),
        RequestTimeoutError("no reply"),
        TransportClosedError("client closed"),
    ],
)
def test_error_survives_the_wire(error):
    """Test an error rebuilt from its payload has the same class and details."""
    rebuilt = error_from_payload(error.to_payload())

    assert type(rebuilt) is type(error)
    assert rebuilt.message == error.message
    assert rebuilt.details == error.details


def test_unknown_kind_becomes_remote_error():
    rebuilt = error_from_payload({"kind": "DatabaseDown", "message": "pool exhausted"})

    assert isinstance(rebuilt, RemoteError)
    assert rebuilt.message == "pool exhausted"
    assert rebuilt.details == {"remote_kind": "DatabaseDown"}


def test_payload_without_details():
    assert NotFoundError("gone").to_payload() == {"kind": "NotFound", "message": "gone"}


def test_hierarchy():
    """Test the catch-all classes callers rely on."""
    assert issubclass(InvalidStatusError, InvalidArgumentError)
    assert issubclass(TransportClosedError, TransportError)
    assert issubclass(RequestTimeoutError, TimeoutError)
    assert isinstance(RemoteError("x"), HelpdeskError)


def test_default_message_is_kind():
    assert str(TransportError()) == "TransportError"
