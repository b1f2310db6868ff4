"""Queue worker claiming sync jobs and dispatching them to entity handlers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from setlist_sync.config import QueueConfig, load_config
from setlist_sync.errors import ValidationAppError, describe_error, error_code
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event
from setlist_sync.sync.base import SyncRequest
from setlist_sync.sync.registry import BoundHandler, handler_for
from setlist_sync.workers import persistence
from setlist_sync.workers.persistence import SyncJobDTO

logger = get_logger(__name__)

_COMPONENT = "queue.worker"


@dataclass(slots=True)
class BatchSummary:
    processed: int = 0
    completed: int = 0
    retrying: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "retrying": self.retrying,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class SyncQueueWorker:
    """Drive queued jobs through the handler registry.

    Several workers (or several claim slots of one worker) may poll the
    same queue; ``claim_next`` guarantees each job is handed out once.
    """

    def __init__(
        self,
        handlers: Mapping[str, BoundHandler],
        *,
        config: QueueConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._handlers = dict(handlers)
        self._config = config or load_config().queue
        self._sleep = sleep

    async def process_job(self, job: SyncJobDTO) -> SyncJobDTO | None:
        """Run one claimed job and record its completion or failure."""

        try:
            handler = handler_for(self._handlers, job.entity_type)
            outcome = await handler(SyncRequest.from_job(job))
        except asyncio.CancelledError:
            raise
        except ValidationAppError as exc:
            return await persistence.fail_async(
                job.id,
                self._error_message(job, exc),
                terminal=True,
                code=error_code(exc).value,
            )
        except Exception as exc:
            logger.warning(
                "Sync job failed",
                extra={
                    "event": "sync.worker.job_failed",
                    "job_id": job.id,
                    "entity_type": job.entity_type,
                    "entity_id": job.entity_id,
                    "error": describe_error(exc),
                },
            )
            return await persistence.fail_async(
                job.id, self._error_message(job, exc), code=error_code(exc).value
            )
        if not await persistence.complete_async(job.id, attempts=job.attempts):
            logger.warning(
                "Sync job claim was lost before completion",
                extra={
                    "event": "sync.worker.claim_lost",
                    "job_id": job.id,
                    "attempts": job.attempts,
                },
            )
            return await asyncio.to_thread(persistence.get_job, job.id)
        log_event(
            logger,
            "sync.worker",
            component=_COMPONENT,
            status="job_completed",
            job_id=job.id,
            entity_type=job.entity_type,
            entity_id=job.entity_id,
            outcome=outcome.status,
            cascaded=len(outcome.cascaded),
        )
        return await asyncio.to_thread(persistence.get_job, job.id)

    @staticmethod
    def _error_message(job: SyncJobDTO, exc: BaseException) -> str:
        return f"{job.entity_type} {job.entity_id}: {describe_error(exc)}"

    async def process_batch(
        self,
        max_items: int | None = None,
        delay_s: float | None = None,
    ) -> BatchSummary:
        """Claim and process up to ``max_items`` jobs sequentially.

        ``delay_s`` pauses between jobs to spread provider load.
        """

        limit = max(1, int(max_items if max_items is not None else self._config.batch_max_items))
        delay = (
            float(delay_s)
            if delay_s is not None
            else self._config.batch_delay_ms / 1000.0
        )
        summary = BatchSummary()
        for index in range(limit):
            job = await persistence.claim_next_async()
            if job is None:
                break
            if index > 0 and delay > 0:
                await self._sleep(delay)
            result = await self.process_job(job)
            summary.processed += 1
            self._tally(summary, job, result)
        log_event(
            logger,
            "sync.worker",
            component=_COMPONENT,
            status="batch_completed",
            processed=summary.processed,
            completed=summary.completed,
            retrying=summary.retrying,
            failed=summary.failed,
        )
        return summary

    @staticmethod
    def _tally(summary: BatchSummary, job: SyncJobDTO, result: SyncJobDTO | None) -> None:
        status = result.status.value if result is not None else "missing"
        if status == "completed":
            summary.completed += 1
            return
        if status == "retrying":
            summary.retrying += 1
        else:
            summary.failed += 1
        error = (result.last_error or {}).get("message") if result is not None else None
        summary.errors.append(
            {
                "job_id": job.id,
                "entity_type": job.entity_type,
                "entity_id": job.entity_id,
                "status": status,
                "error": error,
            }
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll the queue with ``worker_concurrency`` claim slots until stopped."""

        slots = max(1, int(self._config.worker_concurrency))
        log_event(logger, "sync.worker", component=_COMPONENT, status="started", slots=slots)
        try:
            await asyncio.gather(*(self._slot(stop_event) for _ in range(slots)))
        finally:
            log_event(logger, "sync.worker", component=_COMPONENT, status="stopped")

    async def _slot(self, stop_event: asyncio.Event) -> None:
        poll_s = self._config.poll_interval_ms / 1000.0
        while not stop_event.is_set():
            job = await persistence.claim_next_async()
            if job is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_s)
                except TimeoutError:
                    pass
                continue
            await self.process_job(job)


__all__ = ["BatchSummary", "SyncQueueWorker"]
