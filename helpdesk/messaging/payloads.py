"""Helpers for reading request values inside handlers."""
from typing import Any
from ..errors import InvalidArgumentError


def as_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidArgumentError("Request value must be an object")
    return value


def require_int(payload: dict[str, Any], key: str) -> int:
    """
    Read a required integer field.

    Raises:
        InvalidArgumentError: If the field is missing or not an integer
    """
    value = payload.get(key)
    if value is None:
        raise InvalidArgumentError(f"'{key}' is required", field=key)
    return _to_int(value, key)


def optional_int(payload: dict[str, Any], key: str, default: int | None = None) -> int | None:
    value = payload.get(key)
    if value is None:
        return default
    return _to_int(value, key)


def int_list(payload: dict[str, Any], key: str) -> list[int]:
    values = payload.get(key) or []
    if not isinstance(values, list):
        raise InvalidArgumentError(f"'{key}' must be a list", field=key)
    return [_to_int(value, key) for value in values]


def _to_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError(f"'{key}' must be an integer", field=key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"'{key}' must be an integer", field=key) from None
