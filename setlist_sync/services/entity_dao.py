"""Persistence facade for canonical entities touched by the sync handlers."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from setlist_sync.db import session_scope
from setlist_sync.errors import PersistenceError
from setlist_sync.logging import get_logger
from setlist_sync.models import Artist, Setlist, SetlistKind, SetlistSong, Show, Song, Venue
from setlist_sync.services.identity import (
    MODELS,
    Resolution,
    resolve_in_session,
    resolve_many_in_session,
)
from setlist_sync.services.song_matcher import CatalogEntry, load_catalog
from setlist_sync.utils.time import as_utc, now_utc, same_utc_day

logger = get_logger(__name__)

# External id columns guarded by unique constraints, per entity type.
IDENTIFIER_COLUMNS: Mapping[str, tuple[str, ...]] = {
    "artist": ("ticketmaster_id", "spotify_id", "setlist_fm_mbid"),
    "venue": ("ticketmaster_id", "setlist_fm_id"),
    "show": ("ticketmaster_id", "setlist_fm_id"),
    "setlist": ("setlist_fm_id",),
    "song": ("spotify_id",),
}

_UPSERT_ATTEMPTS = 2


def snapshot(record: Any) -> dict[str, Any]:
    """Detach a row into a plain mapping of its column values."""

    values: dict[str, Any] = {}
    for column in record.__table__.columns:
        value = getattr(record, column.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        elif isinstance(value, list):
            value = list(value)
        values[column.key] = value
    return values


@dataclass(slots=True, frozen=True)
class LinkEntry:
    position: int
    name: str
    is_encore: bool = False
    song_id: str | None = None


class EntityDao:
    """Read and upsert helpers; every write runs in its own transaction."""

    def __init__(self, *, now_factory: Callable[[], datetime] | None = None) -> None:
        self._now_factory = now_factory or now_utc

    def now(self) -> datetime:
        return self._now_factory()

    def load(
        self,
        entity_type: str,
        any_id: str | None,
        hints: Mapping[str, str | None] | None = None,
    ) -> tuple[Resolution, dict[str, Any] | None]:
        """Resolve ``any_id`` (then typed ``hints``) and return the stored row."""

        model = MODELS[entity_type]
        with session_scope() as session:
            resolution = resolve_in_session(session, entity_type, any_id)
            if not resolution.found and hints:
                resolution = resolve_many_in_session(session, entity_type, hints)
            if not resolution.found:
                return resolution, None
            record = session.get(model, resolution.internal_id)
            return resolution, snapshot(record) if record is not None else None

    def get(self, entity_type: str, internal_id: str) -> dict[str, Any] | None:
        with session_scope() as session:
            record = session.get(MODELS[entity_type], internal_id)
            return snapshot(record) if record is not None else None

    def upsert(
        self,
        entity_type: str,
        *,
        internal_id: str | None,
        identifiers: Mapping[str, str | None],
        values: Mapping[str, Any],
        synced: bool = True,
    ) -> dict[str, Any]:
        """Insert or update an entity located by internal id or external ids.

        A racing insert of the same external id surfaces as an
        ``IntegrityError``; the write is retried once, at which point the
        winning row is found through its identifiers and updated instead.
        """

        model = MODELS[entity_type]
        allowed = IDENTIFIER_COLUMNS[entity_type]
        resolved_identifiers = {
            column: str(value).strip()
            for column, value in identifiers.items()
            if column in allowed and value not in (None, "")
        }

        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                with session_scope() as session:
                    record = self._locate(session, model, internal_id, resolved_identifiers)
                    if record is None:
                        record = model()
                        session.add(record)
                    for column, value in resolved_identifiers.items():
                        setattr(record, column, value)
                    for column, value in values.items():
                        setattr(record, column, value)
                    if synced and hasattr(model, "last_synced_at"):
                        record.last_synced_at = self.now()
                    session.flush()
                    return snapshot(record)
            except IntegrityError as exc:
                if attempt >= _UPSERT_ATTEMPTS:
                    raise PersistenceError(
                        f"Failed to upsert {entity_type}",
                        meta={
                            "entity_type": entity_type,
                            "entity_id": internal_id,
                            "identifiers": dict(resolved_identifiers),
                        },
                    ) from exc
                logger.debug(
                    "Entity upsert lost race; retrying as update",
                    extra={"event": "sync.entity.upsert_conflict", "entity_type": entity_type},
                )
        raise RuntimeError("Entity upsert loop exited unexpectedly")

    @staticmethod
    def _locate(
        session: Session,
        model: Any,
        internal_id: str | None,
        identifiers: Mapping[str, str],
    ) -> Any | None:
        if internal_id:
            record = session.get(model, internal_id)
            if record is not None:
                return record
        if not identifiers:
            return None
        clauses = [getattr(model, column) == value for column, value in identifiers.items()]
        return session.execute(select(model).where(or_(*clauses)).limit(1)).scalars().first()

    def upsert_songs(
        self,
        artist_id: str,
        tracks: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = 500,
    ) -> list[str]:
        """Upsert songs keyed by ``spotify_id`` in batches; returns their ids."""

        by_spotify: dict[str, Mapping[str, Any]] = {}
        for track in tracks:
            spotify_id = str(track.get("spotify_id") or "").strip()
            if spotify_id and track.get("name"):
                by_spotify[spotify_id] = track
        ordered = list(by_spotify.items())
        song_ids: list[str] = []
        step = max(1, int(batch_size))
        for start in range(0, len(ordered), step):
            song_ids.extend(self._upsert_song_batch(artist_id, ordered[start : start + step]))
        return song_ids

    def _upsert_song_batch(
        self, artist_id: str, batch: Sequence[tuple[str, Mapping[str, Any]]]
    ) -> list[str]:
        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                with session_scope() as session:
                    timestamp = self.now()
                    existing = {
                        record.spotify_id: record
                        for record in session.execute(
                            select(Song).where(Song.spotify_id.in_([key for key, _ in batch]))
                        ).scalars()
                    }
                    ids: list[str] = []
                    for spotify_id, track in batch:
                        record = existing.get(spotify_id)
                        if record is None:
                            record = Song(spotify_id=spotify_id, artist_id=artist_id)
                            session.add(record)
                        record.name = str(track["name"]).strip()
                        for column in ("album_name", "duration_ms", "popularity", "preview_url"):
                            if track.get(column) is not None:
                                setattr(record, column, track[column])
                        record.last_synced_at = timestamp
                        session.flush()
                        ids.append(str(record.id))
                    return ids
            except IntegrityError as exc:
                if attempt >= _UPSERT_ATTEMPTS:
                    raise PersistenceError(
                        "Failed to upsert song catalog batch",
                        meta={"entity_type": "song", "artist_id": artist_id},
                    ) from exc
        raise RuntimeError("Song batch loop exited unexpectedly")

    def top_songs(self, artist_id: str, limit: int) -> list[str]:
        """Return up to ``limit`` catalog song ids, most popular first."""

        with session_scope() as session:
            rows = session.execute(
                select(Song.id)
                .where(Song.artist_id == artist_id)
                .order_by(
                    Song.popularity.is_(None),
                    Song.popularity.desc(),
                    Song.name.asc(),
                )
                .limit(max(0, int(limit)))
            ).scalars()
            return [str(song_id) for song_id in rows]

    def song_names(self, song_ids: Sequence[str]) -> dict[str, str]:
        if not song_ids:
            return {}
        with session_scope() as session:
            rows = session.execute(select(Song.id, Song.name).where(Song.id.in_(song_ids))).all()
            return {str(song_id): str(name) for song_id, name in rows}

    def votable_setlist_id(self, show_id: str) -> str | None:
        with session_scope() as session:
            return session.execute(
                select(Setlist.id).where(
                    Setlist.show_id == show_id,
                    Setlist.kind == SetlistKind.VOTABLE.value,
                )
            ).scalar_one_or_none()

    def catalog(self, artist_id: str) -> list[CatalogEntry]:
        with session_scope() as session:
            return load_catalog(session, artist_id)

    def ensure_votable_setlist(
        self, show_id: str, artist_id: str, song_ids: Sequence[str]
    ) -> tuple[dict[str, Any], bool]:
        """Return the show's votable setlist, creating and seeding it once.

        An existing votable setlist is never reseeded so recorded votes
        survive repeated show syncs.
        """

        names = self.song_names(song_ids)
        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(Setlist).where(
                            Setlist.show_id == show_id,
                            Setlist.kind == SetlistKind.VOTABLE.value,
                        )
                    ).scalars().first()
                    if record is not None:
                        return snapshot(record), False
                    show = session.get(Show, show_id)
                    record = Setlist(
                        kind=SetlistKind.VOTABLE.value,
                        show_id=show_id,
                        artist_id=artist_id,
                        date=show.date if show is not None else None,
                        last_synced_at=self.now(),
                    )
                    session.add(record)
                    session.flush()
                    position = 0
                    for song_id in song_ids:
                        if song_id not in names:
                            continue
                        position += 1
                        session.add(
                            SetlistSong(
                                setlist_id=record.id,
                                song_id=song_id,
                                position=position,
                                name=names[song_id],
                            )
                        )
                    session.flush()
                    return snapshot(record), True
            except IntegrityError as exc:
                if attempt >= _UPSERT_ATTEMPTS:
                    raise PersistenceError(
                        "Failed to create votable setlist",
                        meta={"entity_type": "setlist", "show_id": show_id},
                    ) from exc
        raise RuntimeError("Votable setlist loop exited unexpectedly")

    def find_show_on_day(
        self,
        artist_id: str,
        day: datetime,
        *,
        venue_id: str | None = None,
        venue_name: str | None = None,
    ) -> str | None:
        """Locate the artist's show on the UTC day of ``day``.

        When several shows fall on that day the venue narrows the choice.
        """

        start, end = same_utc_day(day)
        with session_scope() as session:
            stmt = (
                select(Show.id, Show.venue_id, Venue.name)
                .outerjoin(Venue, Venue.id == Show.venue_id)
                .where(Show.artist_id == artist_id, Show.date >= start, Show.date < end)
                .order_by(Show.date.asc(), Show.id.asc())
            )
            rows = session.execute(stmt).all()
        if not rows:
            return None
        if venue_id:
            for show_id, show_venue_id, _name in rows:
                if show_venue_id == venue_id:
                    return str(show_id)
        if venue_name:
            folded = venue_name.strip().casefold()
            for show_id, _venue_id, name in rows:
                if name and name.strip().casefold() == folded:
                    return str(show_id)
        return str(rows[0][0])

    def find_artist_by_name(self, name: str) -> str | None:
        folded = (name or "").strip().lower()
        if not folded:
            return None
        with session_scope() as session:
            return session.execute(
                select(Artist.id).where(func.lower(Artist.name) == folded).limit(1)
            ).scalar_one_or_none()

    def replace_setlist_songs(self, setlist_id: str, entries: Sequence[LinkEntry]) -> int:
        """Delete every link of the setlist and insert ``entries`` in one transaction."""

        with session_scope() as session:
            session.execute(delete(SetlistSong).where(SetlistSong.setlist_id == setlist_id))
            for entry in entries:
                session.add(
                    SetlistSong(
                        setlist_id=setlist_id,
                        song_id=entry.song_id,
                        position=entry.position,
                        is_encore=entry.is_encore,
                        name=entry.name,
                    )
                )
            session.flush()
        return len(entries)

    def setlist_songs(self, setlist_id: str) -> list[dict[str, Any]]:
        with session_scope() as session:
            rows = session.execute(
                select(SetlistSong)
                .where(SetlistSong.setlist_id == setlist_id)
                .order_by(SetlistSong.position.asc())
            ).scalars()
            return [snapshot(row) for row in rows]

    def link_show_setlist(self, show_id: str, setlist_fm_id: str) -> None:
        with session_scope() as session:
            show = session.get(Show, show_id)
            if show is None or show.setlist_fm_id:
                return
            taken = session.execute(
                select(Show.id).where(Show.setlist_fm_id == setlist_fm_id).limit(1)
            ).scalar_one_or_none()
            if taken is None:
                show.setlist_fm_id = setlist_fm_id


__all__ = ["EntityDao", "IDENTIFIER_COLUMNS", "LinkEntry", "snapshot"]
