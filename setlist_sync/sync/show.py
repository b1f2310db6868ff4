"""Show sync from Ticketmaster events, with dependency and setlist cascades."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from setlist_sync.errors import NotFoundError
from setlist_sync.integrations import pick_best_image
from setlist_sync.integrations.ticketmaster import first_embedded
from setlist_sync.sync.base import SyncContext, SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.sync.merge import FieldMerger
from setlist_sync.sync.song import track_values
from setlist_sync.utils.time import as_utc, parse_provider_datetime

ENTITY_TYPE = "show"
DEPENDENCY_PRIORITY = 1


def _event_date(event: Mapping[str, Any]) -> datetime | None:
    dates = event.get("dates")
    start = dates.get("start") if isinstance(dates, Mapping) else None
    if not isinstance(start, Mapping):
        return None
    return parse_provider_datetime(start.get("dateTime") or start.get("localDate"))


def _event_status(event: Mapping[str, Any]) -> str | None:
    dates = event.get("dates")
    status = dates.get("status") if isinstance(dates, Mapping) else None
    return status.get("code") if isinstance(status, Mapping) else None


async def _resolve_dependency(
    ctx: SyncContext,
    entity_type: str,
    payload: Mapping[str, Any] | None,
) -> str | None:
    """Return the internal id for an embedded attraction or venue.

    Unknown dependencies are enqueued with ``forceRefresh`` at high urgency
    and the show keeps a null reference until a later sync.
    """

    if not payload or not payload.get("id"):
        return None
    tm_id = str(payload["id"])
    _resolution, record = await asyncio.to_thread(
        ctx.deps.dao.load, entity_type, None, {"ticketmaster": tm_id}
    )
    if record is not None:
        return str(record["id"])
    await ctx.cascade(
        entity_type,
        tm_id,
        {"tm_id": tm_id, "name": payload.get("name"), "forceRefresh": True},
        priority=DEPENDENCY_PRIORITY,
    )
    return None


def _missing_references(show: Mapping[str, Any]) -> bool:
    # Dependencies enqueued on an earlier sync may have landed since.
    return not show.get("artist_id") or not show.get("venue_id")


async def _ensure_votable_setlist(ctx: SyncContext, show: Mapping[str, Any]) -> None:
    deps = ctx.deps
    artist_id = show.get("artist_id")
    if not artist_id:
        return
    existing = await asyncio.to_thread(deps.dao.votable_setlist_id, show["id"])
    if existing is not None:
        return
    limit = deps.config.top_tracks_limit
    song_ids = await asyncio.to_thread(deps.dao.top_songs, artist_id, limit)
    if not song_ids:
        artist = await asyncio.to_thread(deps.dao.get, "artist", artist_id)
        spotify_id = artist.get("spotify_id") if artist else None
        if spotify_id:
            tracks = await ctx.fetch(
                "top_tracks", deps.clients.spotify.get_artist_top_tracks(spotify_id)
            )
            song_ids = await asyncio.to_thread(
                deps.dao.upsert_songs,
                artist_id,
                [track_values(track) for track in (tracks or [])[:limit]],
            )
    await asyncio.to_thread(deps.dao.ensure_votable_setlist, show["id"], artist_id, song_ids)


async def cascade_show(ctx: SyncContext, record: Mapping[str, Any]) -> None:
    date = as_utc(record.get("date"))
    if date is not None and date < ctx.deps.dao.now() and not record.get("setlist_fm_id"):
        await ctx.cascade("setlist", f"show:{record['id']}", {"show_id": record["id"]})


async def sync_show(request: SyncRequest, deps: SyncDeps) -> SyncOutcome:
    ctx = SyncContext(ENTITY_TYPE, request, deps)
    hinted_tm = request.ref("tm_id") or request.ref("ticketmaster_id")
    resolution, existing = await asyncio.to_thread(
        deps.dao.load, ENTITY_TYPE, request.entity_id, {"ticketmaster": hinted_tm}
    )
    if (
        existing is not None
        and not request.force
        and not _missing_references(existing)
        and deps.is_fresh(ENTITY_TYPE, existing)
    ):
        if request.expand:
            await cascade_show(ctx, existing)
        return ctx.outcome("fresh", existing)

    current: dict[str, Any] = dict(existing or {})
    tm_id = hinted_tm or current.get("ticketmaster_id")
    if tm_id is None and resolution.matched_by in {"none", "ticketmaster"}:
        tm_id = request.entity_id
    event = None
    if tm_id:
        event = await ctx.fetch("event", deps.clients.ticketmaster.get_event(tm_id))
    if event is None:
        raise NotFoundError(
            "Show event could not be fetched from Ticketmaster.",
            entity_type=ENTITY_TYPE,
            entity_id=request.entity_id,
        )

    artist_id = await _resolve_dependency(ctx, "artist", first_embedded(event, "attractions"))
    venue_id = await _resolve_dependency(ctx, "venue", first_embedded(event, "venues"))

    merger = FieldMerger(ENTITY_TYPE, deps.config.precedence_for, current)
    name = merger.pick("name", ticketmaster=event.get("name"))
    if not name:
        raise NotFoundError(
            "Show event has no name.", entity_type=ENTITY_TYPE, entity_id=request.entity_id
        )
    values: dict[str, Any] = {
        "name": name,
        "date": _event_date(event) or current.get("date"),
        "ticket_url": event.get("url") or current.get("ticket_url"),
        "image_url": merger.pick(
            "image_url", ticketmaster=pick_best_image(event.get("images"))
        ),
        "status": _event_status(event) or current.get("status"),
    }
    if artist_id is not None:
        values["artist_id"] = artist_id
    if venue_id is not None:
        values["venue_id"] = venue_id
    record = await asyncio.to_thread(
        deps.dao.upsert,
        ENTITY_TYPE,
        internal_id=current.get("id"),
        identifiers={"ticketmaster_id": tm_id},
        values=values,
    )
    await _ensure_votable_setlist(ctx, record)
    await cascade_show(ctx, record)
    return ctx.outcome("synced", record)


__all__ = ["cascade_show", "sync_show"]
