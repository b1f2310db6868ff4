"""Structured logging helpers for orchestration."""

from __future__ import annotations

import logging
from typing import Any

from setlist_sync.logging_events import log_event

_EVENT = "sync.orchestrator"


def emit_task_event(
    logger: Any,
    *,
    entity_type: str,
    entity_id: str,
    operation: str,
    status: str,
    attempt: int,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "operation": operation,
        "status": status,
        "attempt": attempt,
    }
    if error is not None:
        payload["error"] = error
    log_event(logger, _EVENT, **payload)


def emit_batch_event(
    logger: Any,
    *,
    status: str,
    operation_id: str | None,
    total: int,
    completed: int | None = None,
    failed: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "status": status,
        "operation_id": operation_id,
        "total": total,
    }
    if completed is not None:
        payload["completed"] = completed
    if failed is not None:
        payload["failed"] = failed
    log_event(logger, _EVENT, **payload)


def emit_tracking_failure(logger: Any, *, action: str, error: str) -> None:
    log_event(
        logger,
        _EVENT,
        status="tracking_failed",
        action=action,
        error=error,
        level=logging.WARNING,
    )


__all__ = ["emit_batch_event", "emit_task_event", "emit_tracking_failure"]
