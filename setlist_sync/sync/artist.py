"""Artist sync: Ticketmaster attraction, Spotify artist and setlist.fm MBID."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from setlist_sync.errors import NotFoundError
from setlist_sync.integrations import pick_best_image
from setlist_sync.sync.base import SyncContext, SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.sync.merge import FieldMerger

ENTITY_TYPE = "artist"


def _tm_genres(attraction: Mapping[str, Any] | None) -> list[str]:
    if not attraction:
        return []
    genres: list[str] = []
    for classification in attraction.get("classifications") or []:
        if not isinstance(classification, Mapping):
            continue
        for key in ("genre", "subGenre"):
            entry = classification.get(key)
            name = entry.get("name") if isinstance(entry, Mapping) else None
            if isinstance(name, str) and name and name != "Undefined" and name not in genres:
                genres.append(name)
    return genres


def _followers(artist: Mapping[str, Any] | None) -> int | None:
    if not artist:
        return None
    followers = artist.get("followers")
    if isinstance(followers, Mapping) and followers.get("total") is not None:
        return int(followers["total"])
    return None


def _field(payload: Mapping[str, Any] | None, key: str) -> Any:
    return payload.get(key) if payload else None


async def cascade_artist(ctx: SyncContext, record: Mapping[str, Any]) -> None:
    """Enqueue catalog, upcoming show and recent setlist jobs for the artist."""

    deps = ctx.deps
    spotify_id = record.get("spotify_id")
    if spotify_id:
        await ctx.cascade(
            "song",
            f"catalog:{spotify_id}",
            {"catalog": True, "artist_spotify_id": spotify_id, "artist_id": record["id"]},
        )

    tm_id = record.get("ticketmaster_id")
    if tm_id and deps.config.upcoming_show_limit > 0:
        events = await ctx.fetch(
            "search_events",
            deps.clients.ticketmaster.search_events(tm_id, size=deps.config.upcoming_show_limit),
        )
        for event in events or []:
            await ctx.cascade("show", event.get("id"), {"tm_id": event.get("id")})

    mbid = record.get("setlist_fm_mbid")
    if mbid and deps.config.past_setlist_limit > 0:
        setlists = await ctx.fetch(
            "artist_setlists", deps.clients.setlistfm.get_artist_setlists(mbid)
        )
        for setlist in (setlists or [])[: deps.config.past_setlist_limit]:
            await ctx.cascade("setlist", setlist.get("id"), {"artist_id": record["id"]})


async def sync_artist(request: SyncRequest, deps: SyncDeps) -> SyncOutcome:
    ctx = SyncContext(ENTITY_TYPE, request, deps)
    hinted_tm = request.ref("tm_id") or request.ref("ticketmaster_id")
    hinted_spotify = request.ref("spotify_id")
    hinted_mbid = request.ref("setlist_fm_mbid") or request.ref("mbid")
    resolution, existing = await asyncio.to_thread(
        deps.dao.load,
        ENTITY_TYPE,
        request.entity_id,
        {"ticketmaster": hinted_tm, "spotify": hinted_spotify, "setlistfm": hinted_mbid},
    )
    if existing is not None and not request.force and deps.is_fresh(ENTITY_TYPE, existing):
        if request.expand:
            await cascade_artist(ctx, existing)
        return ctx.outcome("fresh", existing)

    current: dict[str, Any] = dict(existing or {})
    # An id that matched nothing and is not a typed hint is a Ticketmaster attraction id.
    untyped = None
    if resolution.matched_by in {"none", "ticketmaster"} and request.entity_id not in {
        hinted_spotify,
        hinted_mbid,
    }:
        untyped = request.entity_id
    tm_id = hinted_tm or current.get("ticketmaster_id") or untyped
    spotify_id = hinted_spotify or current.get("spotify_id")
    if spotify_id is None and resolution.matched_by == "spotify":
        spotify_id = request.entity_id
    mbid = hinted_mbid or current.get("setlist_fm_mbid")
    if mbid is None and resolution.matched_by == "setlistfm":
        mbid = request.entity_id

    attraction = None
    if tm_id:
        attraction = await ctx.fetch(
            "attraction", deps.clients.ticketmaster.get_attraction(tm_id)
        )
    known_name = _field(attraction, "name") or current.get("name") or request.ref("name")

    spotify_artist = None
    if spotify_id:
        spotify_artist = await ctx.fetch("artist", deps.clients.spotify.get_artist(spotify_id))
    elif known_name:
        spotify_artist = await ctx.fetch(
            "search_artist", deps.clients.spotify.search_artist(known_name)
        )
        if spotify_artist:
            spotify_id = spotify_artist.get("id")

    merger = FieldMerger(ENTITY_TYPE, deps.config.precedence_for, current)
    name = merger.pick(
        "name",
        spotify=_field(spotify_artist, "name"),
        ticketmaster=_field(attraction, "name"),
    ) or request.ref("name")
    if not name:
        raise NotFoundError(
            "Artist could not be resolved at any provider.",
            entity_type=ENTITY_TYPE,
            entity_id=request.entity_id,
        )

    if not mbid:
        hit = await ctx.fetch("search_artist", deps.clients.setlistfm.search_artist(name))
        mbid = _field(hit, "mbid")

    external_urls = _field(spotify_artist, "external_urls") or {}
    values = {
        "name": name,
        "image_url": merger.pick(
            "image_url",
            spotify=pick_best_image(_field(spotify_artist, "images")),
            ticketmaster=pick_best_image(_field(attraction, "images")),
        ),
        "url": merger.pick("url", ticketmaster=_field(attraction, "url")),
        "spotify_url": external_urls.get("spotify") or current.get("spotify_url"),
        "genres": list(
            merger.pick(
                "genres",
                spotify=_field(spotify_artist, "genres"),
                ticketmaster=_tm_genres(attraction),
            )
            or []
        ),
        "popularity": merger.pick("popularity", spotify=_field(spotify_artist, "popularity")),
        "followers": _followers(spotify_artist) or current.get("followers"),
    }
    record = await asyncio.to_thread(
        deps.dao.upsert,
        ENTITY_TYPE,
        internal_id=current.get("id"),
        identifiers={
            # Only ids confirmed by a provider response are persisted.
            "ticketmaster_id": tm_id if attraction else current.get("ticketmaster_id"),
            "spotify_id": spotify_id if spotify_artist else current.get("spotify_id"),
            "setlist_fm_mbid": mbid,
        },
        values=values,
    )
    await cascade_artist(ctx, record)
    return ctx.outcome("synced", record)


__all__ = ["cascade_artist", "sync_artist"]
