"""Error taxonomy shared by the sync handlers, the job queue and the HTTP API."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
import logging
from typing import Any, ClassVar
from uuid import uuid4

from fastapi import status
from fastapi.responses import JSONResponse

from setlist_sync.logging import get_logger

_logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Error codes exposed to API callers and stored on failed jobs."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """Base class; subclasses pin ``code`` and ``http_status``."""

    code: ClassVar[ErrorCode] = ErrorCode.INTERNAL_ERROR
    http_status: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.meta = dict(meta) if meta else None

    def envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.meta:
            body["meta"] = dict(self.meta)
        return body

    def as_response(self, *, request_path: str, method: str) -> JSONResponse:
        return to_response(self, request_path=request_path, method=method)


class ValidationAppError(AppError):
    """Malformed task or job input; rejected up front and never retried."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    """The entity is absent at every source that could resolve it."""

    code = ErrorCode.NOT_FOUND
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(
        self,
        message: str = "Entity not found.",
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        located = entity_type is not None or entity_id is not None
        super().__init__(
            message,
            meta={"entity_type": entity_type, "entity_id": entity_id} if located else None,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ProviderError(AppError):
    """HTTP failure or malformed payload returned by Ticketmaster, Spotify or setlist.fm."""

    code = ErrorCode.PROVIDER_ERROR
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        retryable: bool = False,
        retry_after_ms: int | None = None,
    ) -> None:
        meta: dict[str, Any] = {"provider": provider}
        if status_code is not None:
            meta["status"] = status_code
        super().__init__(message, meta=meta)
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms

    @property
    def is_not_found(self) -> bool:
        return self.status_code == status.HTTP_404_NOT_FOUND


class PersistenceError(AppError):
    """A write to the canonical store failed."""

    code = ErrorCode.PERSISTENCE_ERROR

    def __init__(
        self,
        message: str = "Failed to persist entity.",
        *,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, meta=meta)


def to_response(error: AppError, *, request_path: str, method: str) -> JSONResponse:
    """Render ``error`` as ``{"ok": false, "error": {...}}`` with an X-Debug-Id header."""

    debug_id = uuid4().hex
    response = JSONResponse(
        status_code=error.http_status,
        content={"ok": False, "error": error.envelope()},
        headers={"X-Debug-Id": debug_id},
    )
    if error.http_status >= 500:
        level = logging.ERROR
    elif error.code is ErrorCode.NOT_FOUND:
        level = logging.INFO
    else:
        level = logging.WARNING
    _logger.log(
        level,
        "API request failed",
        extra={
            "event": "api.error",
            "code": error.code.value,
            "status": error.http_status,
            "path": request_path,
            "method": method,
            "debug_id": debug_id,
        },
    )
    return response


def error_code(exc: BaseException) -> ErrorCode:
    if isinstance(exc, AppError):
        return exc.code
    return ErrorCode.INTERNAL_ERROR


def truncate_error(message: str, limit: int = 500) -> str:
    """Trim persisted error messages to ``limit`` characters."""

    text = (message or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, AppError):
        return exc.message
    return str(exc).strip() or type(exc).__name__


__all__ = [
    "AppError",
    "ErrorCode",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "ValidationAppError",
    "describe_error",
    "error_code",
    "to_response",
    "truncate_error",
]
