from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from setlist_sync.db import init_db, session_scope
from setlist_sync.errors import NotFoundError
from setlist_sync.models import SyncJob
from setlist_sync.services.entity_dao import EntityDao
from setlist_sync.sync.base import SyncRequest
from setlist_sync.sync.show import sync_show
from setlist_sync.utils.time import now_utc

from tests.stubs import StubSpotify, StubTicketmaster, make_clients, make_deps


def _event(event_id: str, start: str, *, attraction: dict, venue: dict) -> dict:
    return {
        "id": event_id,
        "name": "The Band Live",
        "url": f"https://tm.example/{event_id}",
        "dates": {"start": {"dateTime": start}, "status": {"code": "onsale"}},
        "images": [{"url": "https://img/show", "width": 640}],
        "_embedded": {"attractions": [attraction], "venues": [venue]},
    }


def _pending_jobs() -> list[tuple[str, str, int, dict | None]]:
    with session_scope() as session:
        rows = session.execute(
            select(
                SyncJob.entity_type, SyncJob.entity_id, SyncJob.priority, SyncJob.reference_data
            ).order_by(SyncJob.id)
        ).all()
    return [(str(kind), str(entity_id), int(priority), data) for kind, entity_id, priority, data in rows]


@pytest.mark.asyncio
async def test_future_show_enqueues_unknown_dependencies() -> None:
    init_db()
    start = (now_utc() + timedelta(days=30)).strftime("%Y-%m-%dT%H:%M:%SZ")
    ticketmaster = StubTicketmaster(
        events={
            "E1": _event(
                "E1",
                start,
                attraction={"id": "K2", "name": "New Band"},
                venue={"id": "V1", "name": "Arena"},
            )
        }
    )
    deps = make_deps(make_clients(ticketmaster=ticketmaster))

    outcome = await sync_show(SyncRequest(entity_id="E1"), deps)

    assert outcome.status == "synced"
    assert outcome.record is not None
    assert outcome.record["ticketmaster_id"] == "E1"
    assert outcome.record["artist_id"] is None
    assert outcome.record["venue_id"] is None
    assert outcome.record["status"] == "onsale"
    assert _pending_jobs() == [
        ("artist", "K2", 1, {"tm_id": "K2", "name": "New Band", "forceRefresh": True}),
        ("venue", "V1", 1, {"tm_id": "V1", "name": "Arena", "forceRefresh": True}),
    ]
    assert deps.dao.votable_setlist_id(outcome.record["id"]) is None

    again = await sync_show(SyncRequest(entity_id="E1"), deps)
    assert again.status == "synced"
    assert ticketmaster.calls.count(("get_event", "E1")) == 2
    assert len(_pending_jobs()) == 2


@pytest.mark.asyncio
async def test_past_show_seeds_votable_setlist_once_and_cascades_setlist_lookup() -> None:
    init_db()
    dao = EntityDao()
    artist = dao.upsert(
        "artist",
        internal_id=None,
        identifiers={"ticketmaster_id": "K3", "spotify_id": "sp3"},
        values={"name": "The Band"},
    )
    venue = dao.upsert(
        "venue",
        internal_id=None,
        identifiers={"ticketmaster_id": "V3"},
        values={"name": "Hall", "city": "Springfield"},
    )
    ticketmaster = StubTicketmaster(
        events={
            "E9": _event(
                "E9",
                "2020-05-01T20:00:00Z",
                attraction={"id": "K3", "name": "The Band"},
                venue={"id": "V3", "name": "Hall"},
            )
        }
    )
    spotify = StubSpotify(
        top_tracks={
            "sp3": [
                {"id": "t1", "name": "One", "popularity": 80},
                {"id": "t2", "name": "Two", "popularity": 60},
            ]
        }
    )
    deps = make_deps(make_clients(ticketmaster=ticketmaster, spotify=spotify))

    outcome = await sync_show(SyncRequest(entity_id="E9"), deps)

    assert outcome.status == "synced"
    show = outcome.record
    assert show is not None
    assert show["artist_id"] == artist["id"]
    assert show["venue_id"] == venue["id"]
    votable_id = deps.dao.votable_setlist_id(show["id"])
    assert votable_id is not None
    links = deps.dao.setlist_songs(votable_id)
    assert [(link["position"], link["name"]) for link in links] == [(1, "One"), (2, "Two")]
    assert all(link["song_id"] for link in links)
    assert _pending_jobs() == [
        ("setlist", f"show:{show['id']}", 4, {"show_id": show["id"]}),
    ]

    forced = await sync_show(SyncRequest(entity_id="E9", force=True), deps)

    assert forced.status == "synced"
    assert forced.internal_id == show["id"]
    assert deps.dao.votable_setlist_id(show["id"]) == votable_id
    assert len(deps.dao.setlist_songs(votable_id)) == 2
    assert spotify.calls.count(("get_artist_top_tracks", "sp3")) == 1
    assert len(_pending_jobs()) == 1


@pytest.mark.asyncio
async def test_missing_event_raises_not_found() -> None:
    init_db()
    deps = make_deps(make_clients())

    with pytest.raises(NotFoundError):
        await sync_show(SyncRequest(entity_id="E-missing"), deps)
