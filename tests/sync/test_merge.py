from __future__ import annotations

from setlist_sync.config import DEFAULT_MERGE_PRECEDENCE, parse_merge_precedence
from setlist_sync.sync.merge import FieldMerger


def _precedence(field_name: str) -> tuple[str, ...]:
    return tuple(DEFAULT_MERGE_PRECEDENCE.get(field_name, ("existing",)))


def test_first_non_empty_source_wins() -> None:
    merger = FieldMerger("artist", _precedence, {"name": "Stored"})

    assert merger.pick("name", spotify="From Spotify", ticketmaster="From TM") == "From Spotify"
    assert merger.pick("name", spotify="  ", ticketmaster="From TM") == "From TM"
    assert merger.pick("name", spotify=None, ticketmaster=None) == "Stored"


def test_empty_lists_fall_through_to_next_source() -> None:
    merger = FieldMerger("artist", _precedence, {"genres": ["stored"]})

    assert merger.pick("genres", spotify=[], ticketmaster=["Rock"]) == ["Rock"]
    assert merger.pick("genres", spotify=[], ticketmaster=[]) == ["stored"]


def test_unconfigured_field_uses_candidate_order_then_existing() -> None:
    merger = FieldMerger("venue", _precedence, {"address": "Old"})

    assert merger.pick("address", ticketmaster=None, setlistfm="New") == "New"
    assert merger.pick("address", ticketmaster=None) == "Old"


def test_override_reorders_sources() -> None:
    precedence = parse_merge_precedence("artist.name:ticketmaster>spotify", DEFAULT_MERGE_PRECEDENCE)
    merger = FieldMerger("artist", lambda name: precedence.get(name, ("existing",)), None)

    assert merger.pick("name", spotify="From Spotify", ticketmaster="From TM") == "From TM"
