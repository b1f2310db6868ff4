"""Emit sync, queue and orchestration events as flat structured log records."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Any

_SCALARS = (str, int, float, bool, type(None))

# Keys reserved by ``logging.LogRecord``; passing them via ``extra`` raises KeyError.
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def _field_value(name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, _SCALARS):
        return value
    raise TypeError(f"log field '{name}' must be a scalar, got {type(value).__name__}")


def log_event(logger: Any, event: str, /, **fields: Any) -> None:
    """Log ``event`` with ``fields`` attached to the record as attributes.

    ``level`` picks the log level (INFO by default). Field values must be
    scalars so every record stays greppable as ``key=value``.
    """

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")

    level = fields.pop("level", logging.INFO)
    extra: dict[str, Any] = {"event": event}
    for name, value in fields.items():
        key = f"field_{name}" if name in _RESERVED else name
        extra[key] = _field_value(name, value)
    logger.log(level, event, extra=extra)


__all__ = ["log_event"]
