"""Database models for the setlist sync engine."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from setlist_sync.db import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp for ORM defaults."""

    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class SyncJobStatus(str, Enum):
    """Lifecycle states of a durable sync job."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES: tuple[str, ...] = (
    SyncJobStatus.PENDING.value,
    SyncJobStatus.RETRYING.value,
)

_ACTIVE_JOB_PREDICATE = "status IN ('pending','retrying')"


class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        CheckConstraint("priority >= 0", name="ck_sync_jobs_priority_non_negative"),
        CheckConstraint("attempts >= 0", name="ck_sync_jobs_attempts_non_negative"),
        CheckConstraint("max_attempts >= 1", name="ck_sync_jobs_max_attempts_positive"),
        CheckConstraint(
            "status IN ('pending','processing','retrying','completed','failed')",
            name="ck_sync_jobs_status_valid",
        ),
        CheckConstraint(
            "entity_type IN ('artist','venue','show','setlist','song')",
            name="ck_sync_jobs_entity_type_valid",
        ),
        Index(
            "uq_sync_jobs_active_entity",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=text(_ACTIVE_JOB_PREDICATE),
            postgresql_where=text(_ACTIVE_JOB_PREDICATE),
        ),
        Index(
            "ix_sync_jobs_claim_order",
            "status",
            "priority",
            "attempts",
            "created_at",
        ),
        Index("ix_sync_jobs_last_attempted_at", "last_attempted_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(255), nullable=False)
    reference_data = Column(JSON, nullable=True)
    status = Column(String(32), nullable=False, default=SyncJobStatus.PENDING.value)
    priority = Column(Integer, nullable=False, default=3)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_attempted_at = Column(DateTime(timezone=True), nullable=True)
    available_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)


class Artist(Base):
    __tablename__ = "artists"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(512), nullable=False)
    image_url = Column(Text, nullable=True)
    url = Column(Text, nullable=True)
    spotify_url = Column(Text, nullable=True)
    genres = Column(JSON, nullable=False, default=list)
    popularity = Column(Integer, nullable=True)
    followers = Column(Integer, nullable=True)
    ticketmaster_id = Column(String(128), nullable=True, unique=True)
    spotify_id = Column(String(128), nullable=True, unique=True)
    setlist_fm_mbid = Column(String(64), nullable=True, unique=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class Venue(Base):
    __tablename__ = "venues"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(512), nullable=False)
    city = Column(String(255), nullable=True)
    state = Column(String(255), nullable=True)
    country = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    postal_code = Column(String(32), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    url = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    ticketmaster_id = Column(String(128), nullable=True, unique=True)
    setlist_fm_id = Column(String(64), nullable=True, unique=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class Show(Base):
    __tablename__ = "shows"
    __table_args__ = (
        Index("ix_shows_artist_date", "artist_id", "date"),
        Index("ix_shows_venue_id", "venue_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(512), nullable=False)
    date = Column(DateTime(timezone=True), nullable=True)
    artist_id = Column(String(36), ForeignKey("artists.id", ondelete="SET NULL"), nullable=True)
    venue_id = Column(String(36), ForeignKey("venues.id", ondelete="SET NULL"), nullable=True)
    ticket_url = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    status = Column(String(64), nullable=True)
    ticketmaster_id = Column(String(128), nullable=True, unique=True)
    setlist_fm_id = Column(String(64), nullable=True, unique=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class Song(Base):
    __tablename__ = "songs"
    __table_args__ = (
        CheckConstraint("vote_count >= 0", name="ck_songs_vote_count_non_negative"),
        Index("ix_songs_artist_id", "artist_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(512), nullable=False)
    artist_id = Column(String(36), ForeignKey("artists.id", ondelete="CASCADE"), nullable=False)
    spotify_id = Column(String(128), nullable=True, unique=True)
    album_name = Column(String(512), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    popularity = Column(Integer, nullable=True)
    preview_url = Column(Text, nullable=True)
    vote_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class SetlistKind(str, Enum):
    """Votable pre-show setlists versus historical played setlists."""

    VOTABLE = "votable"
    PLAYED = "played"


class Setlist(Base):
    __tablename__ = "setlists"
    __table_args__ = (
        CheckConstraint("kind IN ('votable','played')", name="ck_setlists_kind_valid"),
        Index(
            "uq_setlists_votable_show",
            "show_id",
            unique=True,
            sqlite_where=text("kind = 'votable'"),
            postgresql_where=text("kind = 'votable'"),
        ),
        Index("ix_setlists_artist_id", "artist_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    kind = Column(String(16), nullable=False, default=SetlistKind.PLAYED.value)
    artist_id = Column(String(36), ForeignKey("artists.id", ondelete="CASCADE"), nullable=False)
    show_id = Column(String(36), ForeignKey("shows.id", ondelete="SET NULL"), nullable=True)
    setlist_fm_id = Column(String(64), nullable=True, unique=True)
    date = Column(DateTime(timezone=True), nullable=True)
    venue_name = Column(String(512), nullable=True)
    venue_city = Column(String(255), nullable=True)
    tour_name = Column(String(512), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class SetlistSong(Base):
    __tablename__ = "setlist_songs"
    __table_args__ = (
        UniqueConstraint("setlist_id", "position", name="uq_setlist_songs_setlist_position"),
        CheckConstraint("position >= 1", name="ck_setlist_songs_position_positive"),
        CheckConstraint("vote_count >= 0", name="ck_setlist_songs_vote_count_non_negative"),
        Index("ix_setlist_songs_song_id", "song_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    setlist_id = Column(
        String(36), ForeignKey("setlists.id", ondelete="CASCADE"), nullable=False
    )
    song_id = Column(String(36), ForeignKey("songs.id", ondelete="SET NULL"), nullable=True)
    position = Column(Integer, nullable=False)
    is_encore = Column(Boolean, nullable=False, default=False)
    name = Column(String(512), nullable=False)
    vote_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class VoteTarget(str, Enum):
    SONG = "song"
    SETLIST_SONG = "setlist_song"


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint(
            "target_type",
            "target_id",
            "voter_key",
            name="uq_votes_target_voter",
        ),
        CheckConstraint(
            "target_type IN ('song','setlist_song')",
            name="ck_votes_target_type_valid",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    target_type = Column(String(32), nullable=False)
    target_id = Column(String(36), nullable=False)
    voter_key = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SyncOperationStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class SyncOperation(Base):
    __tablename__ = "sync_operations"
    __table_args__ = (
        Index("ix_sync_operations_parent_id", "parent_id"),
        Index("ix_sync_operations_entity", "entity_type", "entity_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    task = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=True)
    entity_id = Column(String(255), nullable=True)
    operation = Column(String(32), nullable=True)
    parent_id = Column(
        String(36), ForeignKey("sync_operations.id", ondelete="CASCADE"), nullable=True
    )
    status = Column(String(32), nullable=False, default=SyncOperationStatus.STARTED.value)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
