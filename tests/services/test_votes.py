from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading

import pytest

from setlist_sync.db import init_db
from setlist_sync.errors import NotFoundError, ValidationAppError
from setlist_sync.services.entity_dao import EntityDao, LinkEntry
from setlist_sync.services.votes import record_vote


def _seed() -> tuple[str, str]:
    dao = EntityDao()
    artist = dao.upsert(
        "artist", internal_id=None, identifiers={"spotify_id": "sp1"}, values={"name": "Band"}
    )
    [song_id] = dao.upsert_songs(artist["id"], [{"spotify_id": "t1", "name": "Anthem"}])
    setlist = dao.upsert(
        "setlist",
        internal_id=None,
        identifiers={"setlist_fm_id": "sfm-1"},
        values={"kind": "played", "artist_id": artist["id"]},
    )
    dao.replace_setlist_songs(setlist["id"], [LinkEntry(1, "Anthem", song_id=song_id)])
    [link] = dao.setlist_songs(setlist["id"])
    return song_id, link["id"]


def test_repeated_votes_count_once() -> None:
    init_db()
    song_id, _link_id = _seed()

    first = record_vote("song", song_id, "voter-a")
    repeat = record_vote("song", song_id, "voter-a")
    other = record_vote("song", song_id, "voter-b")

    assert first.recorded is True and first.vote_count == 1
    assert repeat.recorded is False and repeat.vote_count == 1
    assert other.recorded is True and other.vote_count == 2


def test_setlist_song_votes_are_counted_separately() -> None:
    init_db()
    song_id, link_id = _seed()

    record_vote("song", song_id, "voter-a")
    result = record_vote("setlist_song", link_id, "voter-a")

    assert result.recorded is True
    assert result.vote_count == 1


def test_concurrent_duplicate_votes_increment_once() -> None:
    init_db()
    song_id, _link_id = _seed()
    workers = 8
    barrier = threading.Barrier(workers)

    def vote() -> bool:
        barrier.wait()
        return record_vote("song", song_id, "same-voter").recorded

    with ThreadPoolExecutor(max_workers=workers) as executor:
        outcomes = list(executor.map(lambda _: vote(), range(workers)))

    assert outcomes.count(True) == 1
    assert record_vote("song", song_id, "same-voter").vote_count == 1


def test_invalid_votes_are_rejected() -> None:
    init_db()

    with pytest.raises(ValidationAppError):
        record_vote("show", "x", "voter")
    with pytest.raises(ValidationAppError):
        record_vote("song", "x", " ")
    with pytest.raises(NotFoundError):
        record_vote("song", "missing-song", "voter")
