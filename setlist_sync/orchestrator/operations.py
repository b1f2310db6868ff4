"""Persistence of orchestration operation records."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import select

from setlist_sync.db import session_scope
from setlist_sync.models import SyncOperation, SyncOperationStatus
from setlist_sync.utils.time import now_utc


def start_operation(
    *,
    task: str,
    entity_type: str | None,
    entity_id: str | None,
    operation: str | None = None,
    parent_id: str | None = None,
) -> str:
    with session_scope() as session:
        record = SyncOperation(
            task=task,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            parent_id=parent_id,
            status=SyncOperationStatus.STARTED.value,
            started_at=now_utc(),
        )
        session.add(record)
        session.flush()
        return str(record.id)


def finish_operation(
    operation_id: str,
    status: SyncOperationStatus,
    *,
    error: str | None = None,
    result: Mapping[str, Any] | None = None,
) -> None:
    with session_scope() as session:
        record = session.get(SyncOperation, operation_id)
        if record is None:
            return
        record.status = status.value
        record.error = error
        record.result = dict(result) if result is not None else None
        record.completed_at = now_utc()


def list_operations(parent_id: str | None = None) -> list[dict[str, Any]]:
    """Return operation records, children of ``parent_id`` when given."""

    with session_scope() as session:
        stmt = select(SyncOperation).order_by(SyncOperation.started_at.asc())
        if parent_id is not None:
            stmt = stmt.where(SyncOperation.parent_id == parent_id)
        rows = session.execute(stmt).scalars().all()
        return [
            {
                "id": row.id,
                "task": row.task,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "operation": row.operation,
                "parent_id": row.parent_id,
                "status": row.status,
                "error": row.error,
                "result": row.result,
            }
            for row in rows
        ]


__all__ = ["finish_operation", "list_operations", "start_operation"]
