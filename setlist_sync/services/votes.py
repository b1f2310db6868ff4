"""Idempotent vote recording with denormalised counters."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from setlist_sync.db import session_scope
from setlist_sync.errors import NotFoundError, ValidationAppError
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event
from setlist_sync.models import SetlistSong, Song, Vote, VoteTarget
from setlist_sync.utils.time import now_utc

logger = get_logger(__name__)

_TARGET_MODELS: dict[str, Any] = {
    VoteTarget.SONG.value: Song,
    VoteTarget.SETLIST_SONG.value: SetlistSong,
}


@dataclass(slots=True, frozen=True)
class VoteResult:
    recorded: bool
    vote_count: int


def _insert_ignore(session: Session, values: dict[str, Any]) -> bool:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(Vote)
    elif dialect == "sqlite":
        stmt = sqlite_insert(Vote)
    else:
        raise RuntimeError(f"Vote recording does not support the {dialect} dialect")
    stmt = stmt.values(**values).on_conflict_do_nothing(
        index_elements=["target_type", "target_id", "voter_key"]
    )
    result = session.execute(stmt.returning(Vote.id))
    return result.scalar_one_or_none() is not None


def record_vote(target_type: str, target_id: str, voter_key: str) -> VoteResult:
    """Record one vote per voter and target, counting it at most once.

    The insert and the counter increment share a transaction; the counter
    only moves when the insert actually created a row.
    """

    resolved_type = (target_type or "").strip().lower()
    model = _TARGET_MODELS.get(resolved_type)
    if model is None:
        raise ValidationAppError(
            f"Unsupported vote target: {target_type!r}",
            meta={"allowed": sorted(_TARGET_MODELS)},
        )
    resolved_id = str(target_id or "").strip()
    resolved_voter = str(voter_key or "").strip()
    if not resolved_id or not resolved_voter:
        raise ValidationAppError("target_id and voter_key must be provided")

    with session_scope() as session:
        exists = session.execute(
            select(model.id).where(model.id == resolved_id)
        ).scalar_one_or_none()
        if exists is None:
            raise NotFoundError(
                "Vote target not found.", entity_type=resolved_type, entity_id=resolved_id
            )
        inserted = _insert_ignore(
            session,
            {
                "target_type": resolved_type,
                "target_id": resolved_id,
                "voter_key": resolved_voter,
                "created_at": now_utc(),
            },
        )
        if inserted:
            session.execute(
                update(model)
                .where(model.id == resolved_id)
                .values(vote_count=model.vote_count + 1)
                .execution_options(synchronize_session=False)
            )
        vote_count = session.execute(
            select(model.vote_count).where(model.id == resolved_id)
        ).scalar_one()

    log_event(
        logger,
        "sync.vote",
        target_type=resolved_type,
        target_id=resolved_id,
        recorded=inserted,
        vote_count=int(vote_count),
    )
    return VoteResult(recorded=inserted, vote_count=int(vote_count))


async def record_vote_async(target_type: str, target_id: str, voter_key: str) -> VoteResult:
    return await asyncio.to_thread(record_vote, target_type, target_id, voter_key)


__all__ = ["VoteResult", "record_vote", "record_vote_async"]
