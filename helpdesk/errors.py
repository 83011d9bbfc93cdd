"""Error taxonomy shared by the messaging core and the services.

Every error carries a ``kind`` that survives a trip over the broker: a
responder turns an exception into ``{"kind": ..., "message": ...}`` and the
gateway turns that payload back into the matching exception class.
"""
from typing import Any


class HelpdeskError(Exception):
    """Base exception for all helpdesk errors."""

    kind = "Error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        """Serialize the error for a reply envelope."""
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(HelpdeskError):
    """Referenced entity is absent (or disabled)."""

    kind = "NotFound"


class InvalidArgumentError(HelpdeskError):
    """Request carries an invalid value."""

    kind = "InvalidArgument"


class InvalidStatusError(InvalidArgumentError):
    """Target status does not exist."""

    kind = "InvalidStatus"


class RequestTimeoutError(HelpdeskError, TimeoutError):
    """No reply arrived before the call deadline."""

    kind = "Timeout"


class TransportError(HelpdeskError):
    """Broker unreachable or publish failed."""

    kind = "TransportError"


class TransportClosedError(TransportError):
    """Client was closed (or never connected) when used."""

    kind = "TransportClosed"


class RemoteError(HelpdeskError):
    """Remote handler failed with an error that has no local class."""

    kind = "RemoteError"


class DuplicateSuppressed(HelpdeskError):
    """Idempotency short-circuit; never surfaced to end users."""

    kind = "DuplicateSuppressed"

    def __init__(self, message: str = "", existing: Any = None, **details: Any):
        super().__init__(message, **details)
        self.existing = existing


_KINDS: dict[str, type[HelpdeskError]] = {
    cls.kind: cls
    for cls in (
        NotFoundError,
        InvalidArgumentError,
        InvalidStatusError,
        RequestTimeoutError,
        TransportError,
        TransportClosedError,
        RemoteError,
        DuplicateSuppressed,
    )
}


def error_from_payload(payload: dict[str, Any]) -> HelpdeskError:
    """
    Rebuild an exception from a wire error payload.

    Unknown kinds become ``RemoteError`` with the original kind kept in
    ``details["remote_kind"]``.
    """
    kind = str(payload.get("kind", "RemoteError"))
    message = str(payload.get("message", ""))
    details = payload.get("details") or {}
    cls = _KINDS.get(kind)
    if cls is None:
        return RemoteError(message, remote_kind=kind, **details)
    return cls(message, **details)
