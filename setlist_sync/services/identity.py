"""Resolve any known identifier of an entity to its internal id."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from setlist_sync.errors import ValidationAppError
from setlist_sync.models import Artist, Setlist, Show, Song, Venue

Lookup = Callable[[str], str | None]

MATCHED_NONE = "none"
MATCHED_INTERNAL = "internal"

# Ordered strategies per entity type: (matched_by, model column name).
STRATEGIES: Mapping[str, tuple[tuple[str, str], ...]] = {
    "artist": (
        (MATCHED_INTERNAL, "id"),
        ("ticketmaster", "ticketmaster_id"),
        ("spotify", "spotify_id"),
        ("setlistfm", "setlist_fm_mbid"),
    ),
    "venue": (
        (MATCHED_INTERNAL, "id"),
        ("ticketmaster", "ticketmaster_id"),
        ("setlistfm", "setlist_fm_id"),
    ),
    "show": (
        (MATCHED_INTERNAL, "id"),
        ("ticketmaster", "ticketmaster_id"),
        ("setlistfm", "setlist_fm_id"),
    ),
    "setlist": (
        (MATCHED_INTERNAL, "id"),
        ("setlistfm", "setlist_fm_id"),
    ),
    "song": (
        (MATCHED_INTERNAL, "id"),
        ("spotify", "spotify_id"),
    ),
}

MODELS: Mapping[str, Any] = {
    "artist": Artist,
    "venue": Venue,
    "show": Show,
    "setlist": Setlist,
    "song": Song,
}


@dataclass(slots=True, frozen=True)
class Resolution:
    internal_id: str | None
    matched_by: str = MATCHED_NONE

    @property
    def found(self) -> bool:
        return self.internal_id is not None


def _strategies(entity_type: str) -> tuple[tuple[str, str], ...]:
    try:
        return STRATEGIES[entity_type]
    except KeyError:
        raise ValidationAppError(
            f"Unsupported entity type: {entity_type!r}",
            meta={"entity_type": entity_type},
        ) from None


def resolve(
    entity_type: str,
    any_id: str | None,
    *,
    lookups: Mapping[str, Lookup],
) -> Resolution:
    """Try ``any_id`` against each identifier column in order.

    ``lookups`` maps a strategy name (``internal``, ``ticketmaster``,
    ``spotify``, ``setlistfm``) to a callable returning the internal id for
    a value in that column, or ``None``. Strategies without a lookup are
    skipped.
    """

    candidate = (any_id or "").strip()
    if not candidate:
        return Resolution(None)
    for matched_by, _column in _strategies(entity_type):
        lookup = lookups.get(matched_by)
        if lookup is None:
            continue
        internal_id = lookup(candidate)
        if internal_id is not None:
            return Resolution(str(internal_id), matched_by)
    return Resolution(None)


def resolve_many(
    entity_type: str,
    candidates: Mapping[str, str | None] | Iterable[tuple[str, str | None]],
    *,
    lookups: Mapping[str, Lookup],
) -> Resolution:
    """Resolve from typed hints such as ``{"ticketmaster": ..., "spotify": ...}``.

    Each hint is only tried against its own column, in strategy order. An
    ``"any"`` hint is tried against every column.
    """

    hints = dict(candidates.items() if isinstance(candidates, Mapping) else candidates)
    untyped = hints.pop("any", None)
    for matched_by, _column in _strategies(entity_type):
        value = (hints.get(matched_by) or "").strip()
        lookup = lookups.get(matched_by)
        if not value or lookup is None:
            continue
        internal_id = lookup(value)
        if internal_id is not None:
            return Resolution(str(internal_id), matched_by)
    if untyped:
        return resolve(entity_type, untyped, lookups=lookups)
    return Resolution(None)


def _column_lookup(session: Session, model: Any, column_name: str) -> Lookup:
    column = getattr(model, column_name)

    def _lookup(value: str) -> str | None:
        return session.execute(
            select(model.id).where(column == value).limit(1)
        ).scalar_one_or_none()

    return _lookup


def session_lookups(session: Session, entity_type: str) -> dict[str, Lookup]:
    """Bind the default column lookups for ``entity_type`` to ``session``."""

    model = MODELS[entity_type]
    return {
        matched_by: _column_lookup(session, model, column_name)
        for matched_by, column_name in _strategies(entity_type)
    }


def resolve_in_session(session: Session, entity_type: str, any_id: str | None) -> Resolution:
    return resolve(entity_type, any_id, lookups=session_lookups(session, entity_type))


def resolve_many_in_session(
    session: Session,
    entity_type: str,
    candidates: Mapping[str, str | None],
) -> Resolution:
    return resolve_many(entity_type, candidates, lookups=session_lookups(session, entity_type))


__all__ = [
    "Lookup",
    "MODELS",
    "Resolution",
    "STRATEGIES",
    "resolve",
    "resolve_in_session",
    "resolve_many",
    "resolve_many_in_session",
    "session_lookups",
]
