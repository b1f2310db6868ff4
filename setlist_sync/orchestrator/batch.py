"""Run ad-hoc batches of sync tasks with bounded parallelism."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from setlist_sync.config import ENTITY_TYPES, OrchestratorConfig, load_config
from setlist_sync.errors import AppError, ValidationAppError, describe_error, truncate_error
from setlist_sync.logging import get_logger
from setlist_sync.models import SyncOperationStatus
from setlist_sync.orchestrator import operations
from setlist_sync.orchestrator.events import (
    emit_batch_event,
    emit_task_event,
    emit_tracking_failure,
)
from setlist_sync.sync.base import SyncOperation, SyncOutcome, SyncRequest
from setlist_sync.sync.registry import BoundHandler, handler_for

logger = get_logger(__name__)

PRIORITY_RANKS: Mapping[str, int] = {"high": 3, "medium": 2, "low": 1}
DEFAULT_PRIORITY = "medium"
_ERROR_MAX_LENGTH = 500


@dataclass(slots=True, frozen=True)
class SyncTask:
    type: str
    id: str
    operation: str = SyncOperation.REFRESH.value
    priority: str | int = DEFAULT_PRIORITY
    payload: Mapping[str, Any] = field(default_factory=dict)
    attempts: int = 0

    @property
    def rank(self) -> int:
        if isinstance(self.priority, int):
            return self.priority
        return PRIORITY_RANKS[self.priority]

    @property
    def queue_priority(self) -> int:
        # Queue priorities run the other way: lower is more urgent.
        return max(0, 4 - self.rank)

    @property
    def label(self) -> str:
        return f"{self.type} {self.id}"


@dataclass(slots=True, frozen=True)
class OrchestrationOptions:
    track_in_database: bool = True
    parallel_limit: int = 5
    retry_failed: bool = True
    dependency_check: bool = True

    @classmethod
    def from_config(
        cls, config: OrchestratorConfig, overrides: Mapping[str, Any] | None = None
    ) -> OrchestrationOptions:
        values = {
            "track_in_database": config.track_in_database,
            "parallel_limit": config.parallel_limit,
            "retry_failed": config.retry_failed,
        }
        for key, value in (overrides or {}).items():
            if value is not None and key in cls.__dataclass_fields__:
                values[key] = value
        values["parallel_limit"] = max(1, int(values["parallel_limit"]))
        return cls(**values)


@dataclass(slots=True)
class OrchestrationResult:
    success: bool
    operation_id: str | None
    completed_tasks: int
    failed_tasks: int
    errors: list[str]
    message: str

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "operation_id": self.operation_id,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "message": self.message,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


@dataclass(slots=True)
class _TaskResult:
    success: bool
    error: str | None = None
    outcome: SyncOutcome | None = None


def validate_task(raw: SyncTask | Mapping[str, Any]) -> SyncTask:
    """Normalise a task mapping, raising ``ValidationAppError`` on bad input."""

    if isinstance(raw, SyncTask):
        data: Mapping[str, Any] = {
            "type": raw.type,
            "id": raw.id,
            "operation": raw.operation,
            "priority": raw.priority,
            "payload": raw.payload,
        }
    elif isinstance(raw, Mapping):
        data = raw
    else:
        raise ValidationAppError("Task must be an object")

    entity_type = str(data.get("type") or "").strip().lower()
    if entity_type not in ENTITY_TYPES:
        raise ValidationAppError(
            f"Invalid entity type: {data.get('type')!r}",
            meta={"allowed": list(ENTITY_TYPES)},
        )
    entity_id = str(data.get("id") or "").strip()
    if not entity_id:
        raise ValidationAppError("Task id must be provided", meta={"entity_type": entity_type})
    operation = str(data.get("operation") or SyncOperation.REFRESH.value).strip().lower()
    allowed_operations = [item.value for item in SyncOperation]
    if operation not in allowed_operations:
        raise ValidationAppError(
            f"Invalid operation: {data.get('operation')!r}",
            meta={"allowed": allowed_operations, "entity_type": entity_type, "entity_id": entity_id},
        )
    priority = data.get("priority", DEFAULT_PRIORITY)
    if priority is None:
        priority = DEFAULT_PRIORITY
    if isinstance(priority, bool) or not isinstance(priority, (str, int)):
        raise ValidationAppError("Task priority must be a name or an integer")
    if isinstance(priority, str):
        priority = priority.strip().lower()
        if priority not in PRIORITY_RANKS:
            raise ValidationAppError(
                f"Invalid priority: {data.get('priority')!r}",
                meta={"allowed": list(PRIORITY_RANKS)},
            )
    elif priority < 0:
        raise ValidationAppError("Task priority must not be negative")
    payload = data.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise ValidationAppError("Task payload must be an object")
    return SyncTask(
        type=entity_type,
        id=entity_id,
        operation=operation,
        priority=priority,
        payload=dict(payload),
    )


def validate_tasks(tasks: Sequence[SyncTask | Mapping[str, Any]]) -> list[SyncTask]:
    if not tasks:
        raise ValidationAppError("At least one task is required")
    return [validate_task(task) for task in tasks]


class Orchestrator:
    """Execute task batches directly against the handlers, bypassing the queue."""

    def __init__(
        self,
        handlers: Mapping[str, BoundHandler],
        *,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._handlers = dict(handlers)
        self._config = config or load_config().orchestrator

    async def run(
        self,
        tasks: SyncTask | Mapping[str, Any] | Sequence[SyncTask | Mapping[str, Any]],
        options: OrchestrationOptions | Mapping[str, Any] | None = None,
    ) -> OrchestrationResult:
        """Validate, prioritise and execute ``tasks``.

        Tasks run in chunks of ``parallel_limit``; a failed task is retried
        once when ``retry_failed`` is set. Every attempt is recorded as a
        child of one orchestration operation when tracking is enabled.
        """

        if isinstance(tasks, (SyncTask, Mapping)):
            task_list = validate_tasks([tasks])
        else:
            task_list = validate_tasks(list(tasks))
        if isinstance(options, OrchestrationOptions):
            resolved = options
        else:
            resolved = OrchestrationOptions.from_config(self._config, options)

        # Stable sort keeps submission order within a priority.
        ordered = sorted(task_list, key=lambda task: task.rank, reverse=True)
        parent_id = None
        if resolved.track_in_database:
            parent_id = await self._track(
                "start_parent",
                operations.start_operation,
                task="orchestration",
                entity_type="batch",
                entity_id="multiple",
            )
        emit_batch_event(logger, status="started", operation_id=parent_id, total=len(ordered))

        completed = 0
        failed = 0
        errors: list[str] = []
        limit = resolved.parallel_limit
        for start in range(0, len(ordered), limit):
            chunk = ordered[start : start + limit]
            results = await asyncio.gather(
                *(self._process_task(task, parent_id, resolved) for task in chunk)
            )
            for result in results:
                if result.success:
                    completed += 1
                else:
                    failed += 1
                    if result.error:
                        errors.append(result.error)

        if parent_id is not None:
            await self._track(
                "finish_parent",
                operations.finish_operation,
                parent_id,
                SyncOperationStatus.COMPLETED_WITH_ERRORS
                if failed
                else SyncOperationStatus.COMPLETED,
                error=truncate_error("\n".join(errors), _ERROR_MAX_LENGTH) if errors else None,
                result={"completed_tasks": completed, "failed_tasks": failed},
            )
        emit_batch_event(
            logger,
            status="completed",
            operation_id=parent_id,
            total=len(ordered),
            completed=completed,
            failed=failed,
        )
        return OrchestrationResult(
            success=failed == 0,
            operation_id=parent_id,
            completed_tasks=completed,
            failed_tasks=failed,
            errors=errors,
            message=f"Completed {completed} tasks with {failed} failures",
        )

    async def _process_task(
        self,
        task: SyncTask,
        parent_id: str | None,
        options: OrchestrationOptions,
    ) -> _TaskResult:
        record_id = None
        if parent_id is not None:
            record_id = await self._track(
                "start_task",
                operations.start_operation,
                task=task.operation,
                entity_type=task.type,
                entity_id=task.id,
                operation=task.operation,
                parent_id=parent_id,
            )
        attempt = task.attempts + 1
        emit_task_event(
            logger,
            entity_type=task.type,
            entity_id=task.id,
            operation=task.operation,
            status="started",
            attempt=attempt,
        )
        try:
            handler = handler_for(self._handlers, task.type)
            request = SyncRequest.for_operation(
                task.id,
                task.operation,
                reference_data=task.payload,
                priority=task.queue_priority,
            )
            outcome = await handler(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = f"{task.label}: {describe_error(exc)}"
            if not isinstance(exc, AppError):
                logger.exception(
                    "Unexpected error while running sync task",
                    extra={"event": "sync.orchestrator.task_error", "task": task.label},
                )
            if record_id is not None:
                await self._track(
                    "finish_task",
                    operations.finish_operation,
                    record_id,
                    SyncOperationStatus.FAILED,
                    error=truncate_error(message, _ERROR_MAX_LENGTH),
                )
            emit_task_event(
                logger,
                entity_type=task.type,
                entity_id=task.id,
                operation=task.operation,
                status="failed",
                attempt=attempt,
                error=message,
            )
            retryable = not isinstance(exc, ValidationAppError)
            if options.retry_failed and retryable and task.attempts < 1:
                return await self._process_task(
                    replace(task, attempts=task.attempts + 1), parent_id, options
                )
            return _TaskResult(success=False, error=message)

        if record_id is not None:
            await self._track(
                "finish_task",
                operations.finish_operation,
                record_id,
                SyncOperationStatus.COMPLETED,
                result=outcome.as_dict(),
            )
        emit_task_event(
            logger,
            entity_type=task.type,
            entity_id=task.id,
            operation=task.operation,
            status="completed",
            attempt=attempt,
        )
        return _TaskResult(success=True, outcome=outcome)

    async def _track(self, action: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Write an operation record; tracking problems never fail the batch."""

        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except SQLAlchemyError as exc:
            emit_tracking_failure(logger, action=action, error=describe_error(exc))
            return None


def sync_artist(artist_id: str, operation: str = SyncOperation.REFRESH.value) -> SyncTask:
    return SyncTask(type="artist", id=artist_id, operation=operation, priority="high")


def sync_show(show_id: str, operation: str = SyncOperation.REFRESH.value) -> SyncTask:
    return SyncTask(type="show", id=show_id, operation=operation, priority="medium")


def sync_venue(venue_id: str, operation: str = SyncOperation.REFRESH.value) -> SyncTask:
    return SyncTask(type="venue", id=venue_id, operation=operation, priority="low")


def sync_setlist(setlist_id: str, operation: str = SyncOperation.REFRESH.value) -> SyncTask:
    return SyncTask(type="setlist", id=setlist_id, operation=operation, priority="medium")


def sync_song(song_id: str, operation: str = SyncOperation.REFRESH.value) -> SyncTask:
    return SyncTask(type="song", id=song_id, operation=operation, priority="low")


__all__ = [
    "OrchestrationOptions",
    "OrchestrationResult",
    "Orchestrator",
    "PRIORITY_RANKS",
    "SyncTask",
    "sync_artist",
    "sync_setlist",
    "sync_show",
    "sync_song",
    "sync_venue",
    "validate_task",
    "validate_tasks",
]
