"""Process wide logging setup for the API and the queue workers."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "event"}

_QUIET_LOGGERS = ("httpx", "httpcore")


class SyncEventFormatter(logging.Formatter):
    """Append the structured fields of a sync event as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = [
            f"{name}={value}"
            for name, value in sorted(vars(record).items())
            if name not in _RECORD_ATTRS and not name.startswith("_")
        ]
        if not fields:
            return line
        return f"{line} | {' '.join(fields)}"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    formatter = SyncEventFormatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=resolved, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, resolved))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["LOG_FORMAT", "SyncEventFormatter", "configure_logging", "get_logger"]
