"""setlist.fm REST client for historical setlists."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from setlist_sync.errors import ProviderError
from setlist_sync.integrations.base import RateLimitedClient

PROVIDER = "setlistfm"


@dataclass(slots=True)
class SetlistFmClient(RateLimitedClient):
    """Historical setlist catalog; the tightest rate limit of the three."""

    provider: str = PROVIDER
    base_url: str = "https://api.setlist.fm/rest/1.0"
    api_key: str | None = None

    async def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderError(PROVIDER, "setlist.fm API key is not configured")
        return {"x-api-key": self.api_key}

    async def get_setlist(self, setlist_id: str) -> Mapping[str, Any]:
        payload = await self.call(f"/setlist/{setlist_id}")
        if not isinstance(payload, Mapping):
            raise ProviderError(PROVIDER, "Unexpected setlist payload")
        return payload

    async def search_artist(self, name: str) -> Mapping[str, Any] | None:
        """Return the first artist hit that carries an MBID."""

        try:
            payload = await self.call(
                "/search/artists", {"artistName": name, "sort": "relevance"}
            )
        except ProviderError as exc:
            # setlist.fm answers an empty search with 404.
            if exc.is_not_found:
                return None
            raise
        for artist in _list_field(payload, "artist"):
            if artist.get("mbid"):
                return artist
        return None

    async def get_artist_setlists(self, mbid: str, *, page: int = 1) -> list[Mapping[str, Any]]:
        try:
            payload = await self.call(f"/artist/{mbid}/setlists", {"p": max(1, int(page))})
        except ProviderError as exc:
            if exc.is_not_found:
                return []
            raise
        return _list_field(payload, "setlist")

    async def search_setlists(
        self, artist_name: str, date: datetime | None = None
    ) -> list[Mapping[str, Any]]:
        params: dict[str, Any] = {"artistName": artist_name}
        if date is not None:
            params["date"] = date.strftime("%d-%m-%Y")
        try:
            payload = await self.call("/search/setlists", params)
        except ProviderError as exc:
            if exc.is_not_found:
                return []
            raise
        return _list_field(payload, "setlist")


def _list_field(payload: Any, key: str) -> list[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    items = payload.get(key)
    if isinstance(items, Mapping):
        items = [items]
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping)]


def flatten_sets(setlist: Mapping[str, Any]) -> list[tuple[int, str, bool]]:
    """Flatten ``sets.set[].song[]`` into ``(position, name, is_encore)``.

    Positions are 1-based and continue across sets. ``set`` and ``song`` may
    each be a single object instead of a list.
    """

    sets_payload = setlist.get("sets")
    if not isinstance(sets_payload, Mapping):
        return []
    flattened: list[tuple[int, str, bool]] = []
    position = 0
    for set_entry in _list_field(sets_payload, "set"):
        is_encore = bool(set_entry.get("encore"))
        for song in _list_field(set_entry, "song"):
            name = str(song.get("name") or "").strip()
            if not name:
                continue
            position += 1
            flattened.append((position, name, is_encore))
    return flattened


__all__ = ["PROVIDER", "SetlistFmClient", "flatten_sets"]
