"""Persistence helpers for the durable `SyncJob` queue."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from setlist_sync.config import ENTITY_TYPES, QueueConfig, load_config
from setlist_sync.db import session_scope
from setlist_sync.errors import PersistenceError, ValidationAppError, truncate_error
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event
from setlist_sync.models import ACTIVE_JOB_STATUSES, SyncJob, SyncJobStatus
from setlist_sync.utils.time import as_utc, now_utc

logger = get_logger(__name__)

_COMPONENT = "queue.persistence"
_ENQUEUE_ATTEMPTS = 3
_CLAIM_CANDIDATES = 5


@dataclass(slots=True)
class SyncJobDTO:
    """Lightweight data transfer object for sync jobs."""

    id: int
    entity_type: str
    entity_id: str
    reference_data: dict[str, Any] | None
    status: SyncJobStatus
    priority: int
    attempts: int
    max_attempts: int
    last_attempted_at: datetime | None
    available_at: datetime | None
    last_error: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None
    deduplicated: bool = False


def _to_dto(record: SyncJob, *, deduplicated: bool = False) -> SyncJobDTO:
    return SyncJobDTO(
        id=int(record.id),
        entity_type=str(record.entity_type),
        entity_id=str(record.entity_id),
        reference_data=dict(record.reference_data) if record.reference_data else None,
        status=SyncJobStatus(record.status),
        priority=int(record.priority or 0),
        attempts=int(record.attempts or 0),
        max_attempts=int(record.max_attempts or 1),
        last_attempted_at=as_utc(record.last_attempted_at),
        available_at=as_utc(record.available_at),
        last_error=dict(record.last_error) if record.last_error else None,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        processed_at=as_utc(record.processed_at),
        deduplicated=deduplicated,
    )


def _queue_config() -> QueueConfig:
    return load_config().queue


def _emit_job_event(job: SyncJobDTO, status: str, **extra: Any) -> None:
    payload: dict[str, Any] = {
        "component": _COMPONENT,
        "job_id": job.id,
        "entity_type": job.entity_type,
        "entity_id": job.entity_id,
        "status": status,
        "attempts": job.attempts,
        "priority": job.priority,
    }
    payload.update({key: value for key, value in extra.items() if value is not None})
    log_event(logger, "sync.job", **payload)


def _validate_job_input(entity_type: str, entity_id: str) -> tuple[str, str]:
    resolved_type = (entity_type or "").strip().lower()
    if resolved_type not in ENTITY_TYPES:
        raise ValidationAppError(
            f"Unsupported entity type: {entity_type!r}",
            meta={"entity_type": entity_type, "allowed": list(ENTITY_TYPES)},
        )
    resolved_id = str(entity_id or "").strip()
    if not resolved_id:
        raise ValidationAppError(
            "entity_id must be provided", meta={"entity_type": resolved_type}
        )
    return resolved_type, resolved_id


def _active_job_query(entity_type: str, entity_id: str) -> Select[tuple[SyncJob]]:
    return select(SyncJob).where(
        SyncJob.entity_type == entity_type,
        SyncJob.entity_id == entity_id,
        SyncJob.status.in_(ACTIVE_JOB_STATUSES),
    )


def _merge_into_active(
    session: Session,
    *,
    entity_type: str,
    entity_id: str,
    reference_data: Mapping[str, Any] | None,
    priority: int,
    now: datetime,
) -> int | None:
    """Fold a new request into the active row, returning its id if one exists."""

    dialect = session.get_bind().dialect.name
    # sqlite spells the scalar minimum min(), postgres least().
    smaller = func.min if dialect == "sqlite" else func.least
    values: dict[str, Any] = {
        "priority": smaller(SyncJob.priority, priority),
        "updated_at": now,
    }
    if reference_data is not None:
        values["reference_data"] = dict(reference_data)
    stmt = (
        update(SyncJob)
        .where(
            SyncJob.entity_type == entity_type,
            SyncJob.entity_id == entity_id,
            SyncJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .values(**values)
        .returning(SyncJob.id)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).scalar_one_or_none()


def enqueue(
    entity_type: str,
    entity_id: str,
    reference_data: Mapping[str, Any] | None = None,
    *,
    priority: int | None = None,
    max_attempts: int | None = None,
) -> SyncJobDTO:
    """Insert a sync job or fold the request into the entity's active job.

    While a pending or retrying job exists for ``(entity_type, entity_id)``
    it is updated in place: the priority keeps the more urgent value and
    ``reference_data`` is replaced only when a new mapping is supplied. An
    insert that loses the race against a concurrent enqueue is retried as
    an update.
    """

    resolved_type, resolved_id = _validate_job_input(entity_type, entity_id)
    config = _queue_config()
    resolved_priority = max(0, int(priority if priority is not None else config.default_priority))
    resolved_max = max(
        1, int(max_attempts if max_attempts is not None else config.default_max_attempts)
    )
    payload = dict(reference_data) if reference_data is not None else None

    for attempt in range(1, _ENQUEUE_ATTEMPTS + 1):
        try:
            with session_scope() as session:
                now = now_utc()
                existing_id = _merge_into_active(
                    session,
                    entity_type=resolved_type,
                    entity_id=resolved_id,
                    reference_data=payload,
                    priority=resolved_priority,
                    now=now,
                )
                deduplicated = existing_id is not None
                if existing_id is None:
                    record = SyncJob(
                        entity_type=resolved_type,
                        entity_id=resolved_id,
                        reference_data=payload,
                        status=SyncJobStatus.PENDING.value,
                        priority=resolved_priority,
                        attempts=0,
                        max_attempts=resolved_max,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(record)
                    session.flush()
                else:
                    record = session.get(SyncJob, existing_id, populate_existing=True)
                    if record is None:
                        raise RuntimeError("Sync job missing after in-place update")
                dto = _to_dto(record, deduplicated=deduplicated)
        except IntegrityError:
            if attempt >= _ENQUEUE_ATTEMPTS:
                raise PersistenceError(
                    "Failed to enqueue sync job after concurrent conflicts",
                    meta={"entity_type": resolved_type, "entity_id": resolved_id},
                ) from None
            logger.debug(
                "Sync job insert lost race; retrying as update",
                extra={
                    "event": "sync.job.enqueue_conflict",
                    "entity_type": resolved_type,
                    "entity_id": resolved_id,
                    "attempt": attempt,
                },
            )
            continue
        _emit_job_event(dto, "deduplicated" if dto.deduplicated else "enqueued")
        return dto
    raise RuntimeError("Enqueue loop exited unexpectedly")


def _claimable_query(now: datetime) -> Select[tuple[SyncJob]]:
    pending = SyncJob.status == SyncJobStatus.PENDING.value
    retry_due = (SyncJob.status == SyncJobStatus.RETRYING.value) & (
        SyncJob.available_at.is_(None) | (SyncJob.available_at <= now)
    )
    return (
        select(SyncJob)
        .where(pending | retry_due)
        .order_by(
            SyncJob.priority.asc(),
            SyncJob.attempts.asc(),
            SyncJob.created_at.asc(),
            SyncJob.id.asc(),
        )
        .limit(_CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True)
    )


def claim_next(*, now: datetime | None = None) -> SyncJobDTO | None:
    """Claim the most urgent eligible job, or return ``None``.

    Candidates are read with ``FOR UPDATE SKIP LOCKED`` where the dialect
    supports it; the transition itself is a status-guarded update so a
    worker that loses a race moves on to the next candidate instead of
    blocking.
    """

    timestamp = as_utc(now) or now_utc()
    with session_scope() as session:
        candidates = session.execute(_claimable_query(timestamp)).scalars().all()
        for candidate in candidates:
            expected_status = candidate.status
            stmt = (
                update(SyncJob)
                .where(
                    SyncJob.id == candidate.id,
                    SyncJob.status == expected_status,
                    SyncJob.attempts == candidate.attempts,
                )
                .values(
                    status=SyncJobStatus.PROCESSING.value,
                    attempts=SyncJob.attempts + 1,
                    last_attempted_at=timestamp,
                    updated_at=timestamp,
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            if result.rowcount != 1:
                continue
            record = session.get(SyncJob, candidate.id, populate_existing=True)
            if record is None:  # pragma: no cover - row vanished inside our txn
                continue
            dto = _to_dto(record)
            break
        else:
            return None
    _emit_job_event(dto, "claimed")
    return dto


def complete(job_id: int, *, attempts: int | None = None) -> bool:
    """Mark a claimed job as completed.

    Only a ``processing`` row is touched. With ``attempts`` the update also
    requires the attempt count of the caller's claim, so a worker whose job
    was reclaimed and handed to another worker cannot overwrite that claim.
    """

    timestamp = now_utc()
    conditions = [
        SyncJob.id == int(job_id),
        SyncJob.status == SyncJobStatus.PROCESSING.value,
    ]
    if attempts is not None:
        conditions.append(SyncJob.attempts == int(attempts))
    with session_scope() as session:
        stmt = (
            update(SyncJob)
            .where(*conditions)
            .values(
                status=SyncJobStatus.COMPLETED.value,
                processed_at=timestamp,
                updated_at=timestamp,
            )
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount != 1:
            return False
        record = session.get(SyncJob, int(job_id), populate_existing=True)
        if record is None:  # pragma: no cover - row vanished inside our txn
            return False
        dto = _to_dto(record)
    _emit_job_event(dto, "completed")
    return True


def _has_active_sibling(session: Session, record: SyncJob) -> int | None:
    stmt = (
        select(SyncJob.id)
        .where(
            SyncJob.entity_type == record.entity_type,
            SyncJob.entity_id == record.entity_id,
            SyncJob.status.in_(ACTIVE_JOB_STATUSES),
            SyncJob.id != record.id,
        )
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def fail(
    job_id: int,
    error_message: str,
    *,
    terminal: bool = False,
    code: str | None = None,
    now: datetime | None = None,
) -> SyncJobDTO | None:
    """Record a failed attempt and decide between ``retrying`` and ``failed``.

    ``attempts >= max_attempts`` (or ``terminal=True``) ends the job. A
    retrying job becomes claimable again after ``retry_backoff_s * attempts``.
    """

    config = _queue_config()
    timestamp = as_utc(now) or now_utc()
    message = truncate_error(error_message, config.error_max_length)
    with session_scope() as session:
        record = session.get(SyncJob, int(job_id))
        if record is None:
            return None
        error_payload: dict[str, Any] = {
            "message": message,
            "timestamp": timestamp.isoformat(),
        }
        if code is not None:
            error_payload["code"] = code
        attempts = int(record.attempts or 0)
        exhausted = terminal or attempts >= int(record.max_attempts or 1)
        superseded_by = None if exhausted else _has_active_sibling(session, record)
        if exhausted or superseded_by is not None:
            record.status = SyncJobStatus.FAILED.value
            record.processed_at = timestamp
            if superseded_by is not None:
                error_payload["superseded_by"] = int(superseded_by)
        else:
            anchor = as_utc(record.last_attempted_at) or timestamp
            record.status = SyncJobStatus.RETRYING.value
            record.available_at = anchor + timedelta(seconds=config.retry_backoff_s * attempts)
        record.last_error = error_payload
        record.updated_at = timestamp
        session.flush()
        dto = _to_dto(record)
    _emit_job_event(
        dto,
        "failed" if dto.status is SyncJobStatus.FAILED else "retrying",
        error=message,
        terminal=terminal or None,
    )
    return dto


def reclaim_stale(
    *,
    stale_after_s: int | None = None,
    now: datetime | None = None,
) -> int:
    """Return jobs stuck in ``processing`` to the pool.

    A job whose claim is older than ``stale_after_s`` is treated as
    abandoned by a crashed worker. It becomes ``retrying`` and immediately
    claimable, or ``failed`` once its attempts are exhausted or when a newer
    active job already covers the same entity.
    """

    config = _queue_config()
    threshold = max(1, int(stale_after_s if stale_after_s is not None else config.stale_after_s))
    timestamp = as_utc(now) or now_utc()
    cutoff = timestamp - timedelta(seconds=threshold)
    reclaimed: list[SyncJobDTO] = []
    with session_scope() as session:
        stmt = (
            select(SyncJob)
            .where(
                SyncJob.status == SyncJobStatus.PROCESSING.value,
                SyncJob.last_attempted_at.is_not(None),
                SyncJob.last_attempted_at <= cutoff,
            )
            .order_by(SyncJob.id.asc())
            .with_for_update(skip_locked=True)
        )
        for record in session.execute(stmt).scalars().all():
            error_payload: dict[str, Any] = {
                "message": f"Job exceeded {threshold}s in processing without completing",
                "timestamp": timestamp.isoformat(),
            }
            superseded_by = _has_active_sibling(session, record)
            if superseded_by is not None or int(record.attempts or 0) >= int(
                record.max_attempts or 1
            ):
                record.status = SyncJobStatus.FAILED.value
                record.processed_at = timestamp
                if superseded_by is not None:
                    error_payload["superseded_by"] = int(superseded_by)
            else:
                record.status = SyncJobStatus.RETRYING.value
                record.available_at = timestamp
            record.last_error = error_payload
            record.updated_at = timestamp
            session.flush()
            reclaimed.append(_to_dto(record))
    for dto in reclaimed:
        _emit_job_event(dto, "reclaimed", outcome=dto.status.value)
    return len(reclaimed)


def get_job(job_id: int) -> SyncJobDTO | None:
    with session_scope() as session:
        record = session.get(SyncJob, int(job_id))
        return _to_dto(record) if record is not None else None


def find_active(entity_type: str, entity_id: str) -> SyncJobDTO | None:
    """Return the pending or retrying job for an entity if one exists."""

    with session_scope() as session:
        record = session.execute(_active_job_query(entity_type, entity_id)).scalars().first()
        return _to_dto(record) if record is not None else None


def count_by_status() -> dict[str, int]:
    with session_scope() as session:
        rows = session.execute(
            select(SyncJob.status, func.count()).group_by(SyncJob.status)
        ).all()
    counts = {status.value: 0 for status in SyncJobStatus}
    for status, total in rows:
        counts[str(status)] = int(total)
    return counts


async def enqueue_async(
    entity_type: str,
    entity_id: str,
    reference_data: Mapping[str, Any] | None = None,
    *,
    priority: int | None = None,
    max_attempts: int | None = None,
) -> SyncJobDTO:
    """Async wrapper around :func:`enqueue` using a worker thread."""

    return await asyncio.to_thread(
        enqueue,
        entity_type,
        entity_id,
        reference_data,
        priority=priority,
        max_attempts=max_attempts,
    )


async def claim_next_async(*, now: datetime | None = None) -> SyncJobDTO | None:
    """Async wrapper around :func:`claim_next`."""

    return await asyncio.to_thread(claim_next, now=now)


async def complete_async(job_id: int, *, attempts: int | None = None) -> bool:
    """Async wrapper around :func:`complete`."""

    return await asyncio.to_thread(complete, job_id, attempts=attempts)


async def fail_async(
    job_id: int,
    error_message: str,
    *,
    terminal: bool = False,
    code: str | None = None,
) -> SyncJobDTO | None:
    """Async wrapper around :func:`fail`."""

    return await asyncio.to_thread(
        fail, job_id, error_message, terminal=terminal, code=code
    )


async def reclaim_stale_async(*, stale_after_s: int | None = None) -> int:
    return await asyncio.to_thread(reclaim_stale, stale_after_s=stale_after_s)


__all__ = [
    "SyncJobDTO",
    "claim_next",
    "claim_next_async",
    "complete",
    "complete_async",
    "count_by_status",
    "enqueue",
    "enqueue_async",
    "fail",
    "fail_async",
    "find_active",
    "get_job",
    "reclaim_stale",
    "reclaim_stale_async",
]
