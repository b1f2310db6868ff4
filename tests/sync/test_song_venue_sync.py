from __future__ import annotations

import pytest
from sqlalchemy import func, select

from setlist_sync.db import init_db, session_scope
from setlist_sync.errors import NotFoundError
from setlist_sync.models import SyncJob
from setlist_sync.services.entity_dao import EntityDao
from setlist_sync.sync.base import SyncRequest
from setlist_sync.sync.song import sync_song
from setlist_sync.sync.venue import sync_venue

from tests.stubs import StubSpotify, StubTicketmaster, make_clients, make_deps


def _job_count() -> int:
    with session_scope() as session:
        return session.execute(select(func.count()).select_from(SyncJob)).scalar_one()


def _seed_artist() -> dict:
    return EntityDao().upsert(
        "artist",
        internal_id=None,
        identifiers={"spotify_id": "sp1"},
        values={"name": "The Band"},
    )


@pytest.mark.asyncio
async def test_catalog_import_keeps_only_tracks_credited_to_artist() -> None:
    init_db()
    artist = _seed_artist()
    spotify = StubSpotify(
        albums={"sp1": [{"id": "al1", "name": "First"}, {"id": "al2", "name": "Second"}]},
        album_tracks={
            "al1": [
                {"id": "t1", "name": "Alpha", "artists": [{"id": "sp1"}], "duration_ms": 1000},
                {"id": "t2", "name": "Guest Spot", "artists": [{"id": "other"}]},
            ],
            "al2": [
                {"id": "t3", "name": "Bravo", "artists": [{"id": "other"}, {"id": "sp1"}]},
                {"id": "t1", "name": "Alpha", "artists": [{"id": "sp1"}]},
            ],
        },
    )
    deps = make_deps(make_clients(spotify=spotify))

    outcome = await sync_song(
        SyncRequest(
            entity_id="catalog:sp1",
            reference_data={"catalog": True, "artist_spotify_id": "sp1", "artist_id": artist["id"]},
        ),
        deps,
    )

    assert outcome.status == "catalog_imported"
    assert outcome.internal_id == artist["id"]
    catalog = deps.dao.catalog(artist["id"])
    assert sorted(entry.name for entry in catalog) == ["Alpha", "Bravo"]
    assert _job_count() == 0


@pytest.mark.asyncio
async def test_catalog_import_requires_stored_artist() -> None:
    init_db()
    deps = make_deps(make_clients())

    with pytest.raises(NotFoundError):
        await sync_song(SyncRequest(entity_id="catalog:sp-unknown"), deps)


@pytest.mark.asyncio
async def test_single_song_sync_is_a_leaf() -> None:
    init_db()
    artist = _seed_artist()
    spotify = StubSpotify(
        tracks={
            "t5": {
                "id": "t5",
                "name": "Five",
                "artists": [{"id": "sp1"}],
                "album": {"name": "LP"},
                "duration_ms": 200_000,
                "popularity": 40,
            }
        }
    )
    deps = make_deps(make_clients(spotify=spotify))

    outcome = await sync_song(SyncRequest(entity_id="t5"), deps)

    assert outcome.status == "synced"
    assert outcome.record is not None
    assert outcome.record["artist_id"] == artist["id"]
    assert outcome.record["spotify_id"] == "t5"
    assert outcome.record["album_name"] == "LP"
    assert outcome.cascaded == []
    assert _job_count() == 0

    again = await sync_song(SyncRequest(entity_id=outcome.record["id"]), deps)
    assert again.status == "fresh"
    assert spotify.calls.count(("get_track", "t5")) == 1


@pytest.mark.asyncio
async def test_song_with_unknown_artist_is_not_stored() -> None:
    init_db()
    spotify = StubSpotify(
        tracks={"t6": {"id": "t6", "name": "Six", "artists": [{"id": "sp-unknown"}]}}
    )
    deps = make_deps(make_clients(spotify=spotify))

    with pytest.raises(NotFoundError):
        await sync_song(SyncRequest(entity_id="t6"), deps)


VENUE = {
    "id": "V1",
    "name": "Arena",
    "city": {"name": "Springfield"},
    "state": {"stateCode": "IL"},
    "country": {"countryCode": "US"},
    "address": {"line1": "1 Main St"},
    "postalCode": "62701",
    "location": {"latitude": "39.78", "longitude": "-89.65"},
    "url": "https://tm.example/V1",
}


@pytest.mark.asyncio
async def test_venue_sync_and_stale_fallback() -> None:
    init_db()
    deps = make_deps(make_clients(ticketmaster=StubTicketmaster(venues={"V1": VENUE})))

    outcome = await sync_venue(SyncRequest(entity_id="V1"), deps)

    assert outcome.status == "synced"
    record = outcome.record
    assert record is not None
    assert record["name"] == "Arena"
    assert record["city"] == "Springfield"
    assert record["state"] == "IL"
    assert record["country"] == "US"
    assert record["latitude"] == pytest.approx(39.78)
    assert record["longitude"] == pytest.approx(-89.65)

    failing = make_deps(make_clients(ticketmaster=StubTicketmaster(failing=True)))
    stale = await sync_venue(SyncRequest(entity_id="V1", force=True), failing)

    assert stale.status == "stale"
    assert stale.internal_id == record["id"]
    assert stale.provider_errors


@pytest.mark.asyncio
async def test_venue_without_any_source_raises_not_found() -> None:
    init_db()
    deps = make_deps(make_clients())

    with pytest.raises(NotFoundError):
        await sync_venue(SyncRequest(entity_id="V-missing"), deps)
