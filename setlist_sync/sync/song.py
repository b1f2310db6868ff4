"""Song sync: single Spotify tracks and full artist catalog imports."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from setlist_sync.errors import NotFoundError
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event
from setlist_sync.sync.base import SyncContext, SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.sync.merge import FieldMerger

logger = get_logger(__name__)

ENTITY_TYPE = "song"
CATALOG_PREFIX = "catalog:"


def track_values(
    track: Mapping[str, Any], album: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Map a Spotify track (and optionally its album) onto song columns."""

    album_payload = album or track.get("album") or {}
    return {
        "spotify_id": track.get("id"),
        "name": track.get("name"),
        "album_name": album_payload.get("name") if isinstance(album_payload, Mapping) else None,
        "duration_ms": track.get("duration_ms"),
        "popularity": track.get("popularity"),
        "preview_url": track.get("preview_url"),
    }


def _artist_ids(track: Mapping[str, Any]) -> list[str]:
    return [
        str(artist.get("id"))
        for artist in track.get("artists") or []
        if isinstance(artist, Mapping) and artist.get("id")
    ]


async def import_catalog(
    ctx: SyncContext, artist_id: str, artist_spotify_id: str
) -> list[str]:
    """Import every album and single track credited to the artist."""

    deps = ctx.deps
    albums = await ctx.fetch(
        "artist_albums", deps.clients.spotify.get_artist_albums(artist_spotify_id)
    )
    tracks: list[dict[str, Any]] = []
    for album in albums or []:
        album_id = album.get("id")
        if not album_id:
            continue
        album_tracks = await ctx.fetch(
            "album_tracks", deps.clients.spotify.get_album_tracks(album_id)
        )
        for track in album_tracks or []:
            if artist_spotify_id in _artist_ids(track):
                tracks.append(track_values(track, album))
    song_ids = await asyncio.to_thread(
        deps.dao.upsert_songs,
        artist_id,
        tracks,
        batch_size=deps.config.catalog_batch_size,
    )
    log_event(
        logger,
        "sync.entity",
        entity_type=ENTITY_TYPE,
        entity_id=ctx.request.entity_id,
        status="catalog_imported",
        albums=len(albums or []),
        songs=len(song_ids),
    )
    return song_ids


async def _sync_catalog(ctx: SyncContext, artist_spotify_id: str) -> SyncOutcome:
    request = ctx.request
    deps = ctx.deps
    _resolution, artist = await asyncio.to_thread(
        deps.dao.load,
        "artist",
        request.ref("artist_id"),
        {"spotify": artist_spotify_id},
    )
    if artist is None:
        raise NotFoundError(
            "Artist for catalog import is not stored yet.",
            entity_type="artist",
            entity_id=artist_spotify_id,
        )
    await import_catalog(ctx, artist["id"], artist_spotify_id)
    return ctx.outcome("catalog_imported", artist)


async def sync_song(request: SyncRequest, deps: SyncDeps) -> SyncOutcome:
    ctx = SyncContext(ENTITY_TYPE, request, deps)
    catalog_artist = request.ref("artist_spotify_id")
    if request.entity_id.startswith(CATALOG_PREFIX):
        catalog_artist = catalog_artist or request.entity_id[len(CATALOG_PREFIX) :]
        return await _sync_catalog(ctx, catalog_artist)
    if request.reference_data.get("catalog") and catalog_artist:
        return await _sync_catalog(ctx, catalog_artist)

    resolution, existing = await asyncio.to_thread(
        deps.dao.load, ENTITY_TYPE, request.entity_id, {"spotify": request.ref("spotify_id")}
    )
    if existing is not None and not request.force and deps.is_fresh(ENTITY_TYPE, existing):
        return ctx.outcome("fresh", existing)

    current: dict[str, Any] = dict(existing or {})
    spotify_id = request.ref("spotify_id") or current.get("spotify_id")
    if spotify_id is None and resolution.matched_by in {"none", "spotify"}:
        spotify_id = request.entity_id
    track = None
    if spotify_id:
        track = await ctx.fetch("track", deps.clients.spotify.get_track(spotify_id))
    if track is None:
        if existing is not None:
            return ctx.outcome("stale", existing)
        raise NotFoundError(
            "Song could not be resolved at Spotify.",
            entity_type=ENTITY_TYPE,
            entity_id=request.entity_id,
        )

    artist_id = current.get("artist_id")
    if artist_id is None:
        artist_spotify_ids = _artist_ids(track)
        artist = None
        if artist_spotify_ids:
            _resolution, artist = await asyncio.to_thread(
                deps.dao.load, "artist", None, {"spotify": artist_spotify_ids[0]}
            )
        if artist is None:
            raise NotFoundError(
                "Song artist is not stored yet.",
                entity_type="artist",
                entity_id=artist_spotify_ids[0] if artist_spotify_ids else None,
            )
        artist_id = artist["id"]

    fetched = track_values(track)
    merger = FieldMerger(ENTITY_TYPE, deps.config.precedence_for, current)
    values = {
        key: value
        for key, value in fetched.items()
        if key != "spotify_id" and value is not None
    }
    values["name"] = merger.pick("name", spotify=fetched.get("name"))
    values["artist_id"] = artist_id
    record = await asyncio.to_thread(
        deps.dao.upsert,
        ENTITY_TYPE,
        internal_id=current.get("id"),
        identifiers={"spotify_id": spotify_id},
        values=values,
    )
    return ctx.outcome("synced", record)


__all__ = ["CATALOG_PREFIX", "import_catalog", "sync_song", "track_values"]
