"""Played setlist sync from setlist.fm with fuzzy song linking."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from setlist_sync.errors import NotFoundError
from setlist_sync.integrations.setlistfm import flatten_sets
from setlist_sync.models import SetlistKind
from setlist_sync.services import song_matcher
from setlist_sync.services.entity_dao import LinkEntry
from setlist_sync.sync.base import SyncContext, SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.utils.time import parse_provider_datetime

ENTITY_TYPE = "setlist"
SHOW_PREFIX = "show:"


def _nested(payload: Mapping[str, Any] | None, *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


async def _find_for_show(ctx: SyncContext, show_id: str) -> Mapping[str, Any] | None:
    """Search setlist.fm for the played setlist of a stored show."""

    deps = ctx.deps
    show = await asyncio.to_thread(deps.dao.get, "show", show_id)
    if show is None:
        raise NotFoundError("Show not found.", entity_type="show", entity_id=show_id)
    artist = None
    if show.get("artist_id"):
        artist = await asyncio.to_thread(deps.dao.get, "artist", show["artist_id"])
    if artist is None or show.get("date") is None:
        raise NotFoundError(
            "Show has no artist or date to search setlists with.",
            entity_type="show",
            entity_id=show_id,
        )
    results = await ctx.fetch(
        "search_setlists",
        deps.clients.setlistfm.search_setlists(artist["name"], show["date"]),
    )
    return results[0] if results else None


async def _resolve_artist(ctx: SyncContext, payload: Mapping[str, Any]) -> str:
    deps = ctx.deps
    mbid = _nested(payload, "artist", "mbid")
    name = _nested(payload, "artist", "name")
    hinted = ctx.request.ref("artist_id")
    _resolution, artist = await asyncio.to_thread(
        deps.dao.load, "artist", hinted, {"setlistfm": mbid}
    )
    if artist is not None:
        return str(artist["id"])
    if name:
        found = await asyncio.to_thread(deps.dao.find_artist_by_name, name)
        if found is not None:
            return str(found)
    if mbid or name:
        await ctx.cascade(
            "artist",
            mbid or name,
            {"setlist_fm_mbid": mbid, "name": name, "forceRefresh": True},
            priority=1,
        )
    raise NotFoundError(
        "Setlist artist is not stored yet.",
        entity_type="artist",
        entity_id=mbid or name,
    )


async def sync_setlist(request: SyncRequest, deps: SyncDeps) -> SyncOutcome:
    ctx = SyncContext(ENTITY_TYPE, request, deps)
    show_id = request.ref("show_id")
    if request.entity_id.startswith(SHOW_PREFIX):
        show_id = request.entity_id[len(SHOW_PREFIX) :]
        payload = await _find_for_show(ctx, show_id)
        if payload is None:
            # Not every past show has a published setlist.
            return ctx.outcome("no_setlist", None)
        setlist_fm_id = payload.get("id")
        _resolution, existing = await asyncio.to_thread(
            deps.dao.load, ENTITY_TYPE, None, {"setlistfm": setlist_fm_id}
        )
        if existing is not None and not request.force and deps.is_fresh(ENTITY_TYPE, existing):
            return ctx.outcome("fresh", existing)
    else:
        _resolution, existing = await asyncio.to_thread(
            deps.dao.load, ENTITY_TYPE, request.entity_id
        )
        if existing is not None and existing.get("kind") == SetlistKind.VOTABLE.value:
            raise NotFoundError(
                "Votable setlists are not synced from providers.",
                entity_type=ENTITY_TYPE,
                entity_id=request.entity_id,
            )
        if existing is not None and not request.force and deps.is_fresh(ENTITY_TYPE, existing):
            return ctx.outcome("fresh", existing)
        setlist_fm_id = (existing or {}).get("setlist_fm_id") or request.entity_id
        payload = await ctx.fetch("setlist", deps.clients.setlistfm.get_setlist(setlist_fm_id))
        if payload is None:
            raise NotFoundError(
                "Setlist could not be fetched from setlist.fm.",
                entity_type=ENTITY_TYPE,
                entity_id=request.entity_id,
            )

    if not setlist_fm_id:
        raise NotFoundError(
            "Setlist payload has no id.", entity_type=ENTITY_TYPE, entity_id=request.entity_id
        )
    artist_id = await _resolve_artist(ctx, payload)
    event_date = parse_provider_datetime(payload.get("eventDate"))
    venue_name = _nested(payload, "venue", "name")
    if show_id is None and event_date is not None:
        show_id = await asyncio.to_thread(
            deps.dao.find_show_on_day, artist_id, event_date, venue_name=venue_name
        )

    values: dict[str, Any] = {
        "kind": SetlistKind.PLAYED.value,
        "artist_id": artist_id,
        "date": event_date,
        "venue_name": venue_name,
        "venue_city": _nested(payload, "venue", "city", "name"),
        "tour_name": _nested(payload, "tour", "name"),
    }
    if show_id is not None:
        values["show_id"] = show_id
    record = await asyncio.to_thread(
        deps.dao.upsert,
        ENTITY_TYPE,
        internal_id=(existing or {}).get("id"),
        identifiers={"setlist_fm_id": setlist_fm_id},
        values=values,
    )

    catalog = await asyncio.to_thread(deps.dao.catalog, artist_id)
    entries = [
        LinkEntry(
            position=position,
            name=name,
            is_encore=is_encore,
            song_id=song_matcher.match(name, artist_id, catalog=catalog),
        )
        for position, name, is_encore in flatten_sets(payload)
    ]
    await asyncio.to_thread(deps.dao.replace_setlist_songs, record["id"], entries)
    if show_id is not None:
        await asyncio.to_thread(deps.dao.link_show_setlist, show_id, setlist_fm_id)
    return ctx.outcome("synced", record)


__all__ = ["sync_setlist"]
