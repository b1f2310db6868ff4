from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import threading

import anyio
import pytest
from sqlalchemy import func, select

from setlist_sync.db import init_db, session_scope
from setlist_sync.errors import ValidationAppError
from setlist_sync.models import SyncJob, SyncJobStatus
from setlist_sync.utils.time import now_utc
from setlist_sync.workers import persistence


def _active_rows(entity_type: str, entity_id: str) -> int:
    with session_scope() as session:
        return session.execute(
            select(func.count())
            .select_from(SyncJob)
            .where(
                SyncJob.entity_type == entity_type,
                SyncJob.entity_id == entity_id,
                SyncJob.status.in_(["pending", "retrying"]),
            )
        ).scalar_one()


def test_enqueue_folds_into_active_job() -> None:
    init_db()

    first = persistence.enqueue("artist", "K1", {"name": "First"}, priority=3)
    second = persistence.enqueue("artist", "K1", None, priority=1)
    third = persistence.enqueue("artist", "K1", {"name": "Third"}, priority=5)

    assert first.deduplicated is False
    assert second.deduplicated is True
    assert first.id == second.id == third.id
    assert third.priority == 1
    assert third.reference_data == {"name": "Third"}
    assert second.reference_data == {"name": "First"}
    assert _active_rows("artist", "K1") == 1


def test_enqueue_rejects_invalid_input() -> None:
    init_db()

    with pytest.raises(ValidationAppError):
        persistence.enqueue("playlist", "x")
    with pytest.raises(ValidationAppError):
        persistence.enqueue("artist", "   ")


@pytest.mark.anyio
async def test_concurrent_enqueue_leaves_single_active_row() -> None:
    init_db()
    ids: list[int] = []

    async def call(index: int) -> None:
        job = await anyio.to_thread.run_sync(
            lambda: persistence.enqueue("show", "E1", {"value": index}, priority=index % 4)
        )
        ids.append(job.id)

    async with anyio.create_task_group() as tg:
        for index in range(12):
            tg.start_soon(call, index)

    assert len(ids) == 12
    assert len(set(ids)) == 1
    assert _active_rows("show", "E1") == 1
    job = persistence.find_active("show", "E1")
    assert job is not None
    assert job.priority == 0


def test_claim_orders_by_priority_then_attempts_then_age() -> None:
    init_db()
    low = persistence.enqueue("venue", "V-low", priority=5)
    urgent = persistence.enqueue("venue", "V-urgent", priority=1)
    older = persistence.enqueue("venue", "V-older", priority=3)
    newer = persistence.enqueue("venue", "V-newer", priority=3)

    claimed = [persistence.claim_next() for _ in range(4)]

    assert [job.id for job in claimed if job] == [urgent.id, older.id, newer.id, low.id]
    assert all(job is not None and job.status is SyncJobStatus.PROCESSING for job in claimed)
    assert all(job is not None and job.attempts == 1 for job in claimed)
    assert persistence.claim_next() is None


def test_concurrent_claims_never_hand_out_a_job_twice() -> None:
    init_db()
    for index in range(6):
        persistence.enqueue("artist", f"A{index}")

    workers = 10
    barrier = threading.Barrier(workers)

    def claim() -> int | None:
        barrier.wait()
        job = persistence.claim_next()
        return job.id if job is not None else None

    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(lambda _: claim(), range(workers)))

    claimed = [job_id for job_id in results if job_id is not None]
    assert len(claimed) == len(set(claimed))
    assert len(claimed) == 6
    assert persistence.count_by_status()["processing"] == 6


def test_fail_retries_until_attempts_are_exhausted() -> None:
    init_db()
    job = persistence.enqueue("song", "T1", max_attempts=2)

    claimed = persistence.claim_next()
    assert claimed is not None and claimed.id == job.id
    retrying = persistence.fail(job.id, "song T1: upstream timeout")

    assert retrying is not None
    assert retrying.status is SyncJobStatus.RETRYING
    assert retrying.last_error is not None
    assert retrying.last_error["message"] == "song T1: upstream timeout"
    assert retrying.available_at == claimed.last_attempted_at + timedelta(seconds=300)
    assert persistence.claim_next() is None

    later = retrying.available_at + timedelta(seconds=1)
    second = persistence.claim_next(now=later)
    assert second is not None and second.attempts == 2
    failed = persistence.fail(job.id, "song T1: upstream timeout again")

    assert failed is not None
    assert failed.status is SyncJobStatus.FAILED
    assert failed.processed_at is not None


def test_terminal_failure_skips_retry() -> None:
    init_db()
    job = persistence.enqueue("artist", "bad")
    persistence.claim_next()

    failed = persistence.fail(job.id, "artist bad: invalid", terminal=True)

    assert failed is not None
    assert failed.status is SyncJobStatus.FAILED
    assert failed.attempts == 1


def test_failing_job_is_superseded_by_newer_active_job() -> None:
    init_db()
    job = persistence.enqueue("venue", "V1")
    persistence.claim_next()
    newer = persistence.enqueue("venue", "V1")
    assert newer.id != job.id

    failed = persistence.fail(job.id, "venue V1: boom")

    assert failed is not None
    assert failed.status is SyncJobStatus.FAILED
    assert failed.last_error is not None
    assert failed.last_error["superseded_by"] == newer.id
    assert _active_rows("venue", "V1") == 1


def test_error_messages_are_truncated() -> None:
    init_db()
    job = persistence.enqueue("artist", "K-long")
    persistence.claim_next()

    result = persistence.fail(job.id, "x" * 2000)

    assert result is not None and result.last_error is not None
    assert len(result.last_error["message"]) == 500


def test_complete_marks_job_done() -> None:
    init_db()
    job = persistence.enqueue("setlist", "S1")
    persistence.claim_next()

    assert persistence.complete(job.id) is True
    done = persistence.get_job(job.id)

    assert done is not None
    assert done.status is SyncJobStatus.COMPLETED
    assert done.processed_at is not None
    assert persistence.complete(999_999) is False
    assert persistence.complete(job.id) is False


def test_late_completion_does_not_override_a_newer_claim() -> None:
    init_db()
    job = persistence.enqueue("show", "E-slow")
    first_claim = persistence.claim_next()
    assert first_claim is not None and first_claim.attempts == 1

    later = now_utc() + timedelta(hours=1)
    assert persistence.reclaim_stale(stale_after_s=60, now=later) == 1
    second_claim = persistence.claim_next(now=later)
    assert second_claim is not None
    assert second_claim.id == job.id and second_claim.attempts == 2

    assert persistence.complete(job.id, attempts=first_claim.attempts) is False
    still_running = persistence.get_job(job.id)
    assert still_running is not None
    assert still_running.status is SyncJobStatus.PROCESSING

    assert persistence.complete(job.id, attempts=second_claim.attempts) is True
    done = persistence.get_job(job.id)
    assert done is not None and done.status is SyncJobStatus.COMPLETED


def test_reclaim_stale_returns_abandoned_jobs() -> None:
    init_db()
    retry_job = persistence.enqueue("artist", "stuck", max_attempts=3)
    exhausted_job = persistence.enqueue("artist", "exhausted", max_attempts=1)
    persistence.claim_next()
    persistence.claim_next()

    assert persistence.reclaim_stale(stale_after_s=60) == 0

    later = now_utc() + timedelta(minutes=5)
    assert persistence.reclaim_stale(stale_after_s=60, now=later) == 2

    reclaimed = persistence.get_job(retry_job.id)
    abandoned = persistence.get_job(exhausted_job.id)
    assert reclaimed is not None and reclaimed.status is SyncJobStatus.RETRYING
    assert abandoned is not None and abandoned.status is SyncJobStatus.FAILED
    again = persistence.claim_next(now=later)
    assert again is not None and again.id == retry_job.id
