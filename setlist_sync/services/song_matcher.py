"""Match free-text song titles to an artist's canonical song catalog."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from setlist_sync.db import session_scope
from setlist_sync.models import Song
from setlist_sync.utils.text_normalization import normalize_title

MIN_NORMALIZED_LENGTH = 3
ACCEPT_THRESHOLD = 0.6


@dataclass(slots=True, frozen=True)
class CatalogEntry:
    song_id: str
    name: str


def score(query: str, candidate: str) -> float:
    """Containment score of two normalised titles.

    ``len(shorter) / len(longer)`` when one contains the other, else 0.
    Titles shorter than three characters never score.
    """

    if len(query) < MIN_NORMALIZED_LENGTH or len(candidate) < MIN_NORMALIZED_LENGTH:
        return 0.0
    shorter, longer = sorted((query, candidate), key=len)
    if shorter not in longer:
        return 0.0
    return len(shorter) / len(longer)


def load_catalog(session: Session, artist_id: str) -> list[CatalogEntry]:
    rows = session.execute(
        select(Song.id, Song.name).where(Song.artist_id == artist_id).order_by(Song.name, Song.id)
    ).all()
    return [CatalogEntry(song_id=str(song_id), name=str(name)) for song_id, name in rows]


def match(
    song_name: str,
    artist_id: str,
    *,
    catalog: Sequence[CatalogEntry] | None = None,
) -> str | None:
    """Return the id of the catalog song matching ``song_name`` or ``None``.

    A case-insensitive exact match wins outright. Otherwise both sides are
    normalised and the best containment score above 0.6 is accepted.
    """

    title = (song_name or "").strip()
    if not title:
        return None
    if catalog is None:
        with session_scope() as session:
            catalog = load_catalog(session, artist_id)
    folded = title.casefold()
    for entry in catalog:
        if entry.name.strip().casefold() == folded:
            return entry.song_id

    query = normalize_title(title)
    if len(query) < MIN_NORMALIZED_LENGTH:
        return None
    best_id: str | None = None
    best_score = 0.0
    for entry in catalog:
        candidate_score = score(query, normalize_title(entry.name))
        if candidate_score > best_score:
            best_score = candidate_score
            best_id = entry.song_id
    if best_score > ACCEPT_THRESHOLD:
        return best_id
    return None


__all__ = ["ACCEPT_THRESHOLD", "CatalogEntry", "load_catalog", "match", "score"]
