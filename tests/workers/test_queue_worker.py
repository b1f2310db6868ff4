from __future__ import annotations

from typing import Any

import pytest

from setlist_sync.config import load_config
from setlist_sync.db import init_db
from setlist_sync.errors import NotFoundError, ValidationAppError
from setlist_sync.models import SyncJobStatus
from setlist_sync.sync.base import SyncOutcome, SyncRequest
from setlist_sync.workers import persistence
from setlist_sync.workers.queue_worker import SyncQueueWorker


class _RecordingHandler:
    def __init__(self, entity_type: str, error: Exception | None = None) -> None:
        self.entity_type = entity_type
        self.error = error
        self.requests: list[SyncRequest] = []

    async def __call__(self, request: SyncRequest) -> SyncOutcome:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return SyncOutcome(self.entity_type, "internal-1", "synced")


def _worker(handlers: dict[str, Any], sleeps: list[float] | None = None) -> SyncQueueWorker:
    async def sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return SyncQueueWorker(handlers, config=load_config().queue, sleep=sleep)


@pytest.mark.asyncio
async def test_process_batch_completes_and_fails_jobs() -> None:
    init_db()
    artist = _RecordingHandler("artist")
    venue = _RecordingHandler("venue", NotFoundError("gone", entity_type="venue"))
    ok_job = persistence.enqueue("artist", "K1", {"forceRefresh": True}, priority=1)
    bad_job = persistence.enqueue("venue", "V1", priority=2)
    sleeps: list[float] = []

    summary = await _worker({"artist": artist, "venue": venue}, sleeps).process_batch(
        max_items=5, delay_s=0.25
    )

    assert summary.processed == 2
    assert summary.completed == 1
    assert summary.retrying == 1
    assert summary.errors[0]["entity_id"] == "V1"
    assert summary.errors[0]["error"] == "venue V1: gone"
    assert sleeps == [0.25]
    assert artist.requests[0].force is True
    done = persistence.get_job(ok_job.id)
    retrying = persistence.get_job(bad_job.id)
    assert done is not None and done.status is SyncJobStatus.COMPLETED
    assert retrying is not None and retrying.status is SyncJobStatus.RETRYING
    assert retrying.last_error is not None
    assert retrying.last_error["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_validation_errors_fail_jobs_terminally() -> None:
    init_db()
    handler = _RecordingHandler("show", ValidationAppError("malformed reference"))
    job = persistence.enqueue("show", "E1")

    summary = await _worker({"show": handler}).process_batch(max_items=1)

    assert summary.failed == 1
    failed = persistence.get_job(job.id)
    assert failed is not None
    assert failed.status is SyncJobStatus.FAILED
    assert failed.attempts == 1
    assert failed.last_error is not None
    assert failed.last_error["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_missing_handler_is_a_terminal_failure() -> None:
    init_db()
    job = persistence.enqueue("song", "T1")

    await _worker({}).process_batch(max_items=1)

    failed = persistence.get_job(job.id)
    assert failed is not None
    assert failed.status is SyncJobStatus.FAILED
    assert failed.last_error is not None
    assert "No sync handler registered" in failed.last_error["message"]


@pytest.mark.asyncio
async def test_process_batch_respects_max_items() -> None:
    init_db()
    handler = _RecordingHandler("artist")
    for index in range(4):
        persistence.enqueue("artist", f"K{index}")

    summary = await _worker({"artist": handler}).process_batch(max_items=3, delay_s=0)

    assert summary.processed == 3
    assert persistence.count_by_status()["pending"] == 1
