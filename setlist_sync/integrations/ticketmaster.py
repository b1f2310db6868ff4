"""Ticketmaster Discovery API client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from setlist_sync.errors import ProviderError
from setlist_sync.integrations.base import RateLimitedClient

PROVIDER = "ticketmaster"


@dataclass(slots=True)
class TicketmasterClient(RateLimitedClient):
    """Events catalog: attractions (artists), venues and events (shows)."""

    provider: str = PROVIDER
    base_url: str = "https://app.ticketmaster.com/discovery/v2"
    api_key: str | None = None

    async def _auth_params(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderError(PROVIDER, "Ticketmaster API key is not configured")
        return {"apikey": self.api_key}

    async def get_attraction(self, attraction_id: str) -> Mapping[str, Any]:
        return await self._get_object(f"/attractions/{attraction_id}.json")

    async def get_event(self, event_id: str) -> Mapping[str, Any]:
        return await self._get_object(f"/events/{event_id}.json")

    async def get_venue(self, venue_id: str) -> Mapping[str, Any]:
        return await self._get_object(f"/venues/{venue_id}.json")

    async def search_events(
        self,
        attraction_id: str,
        *,
        size: int = 20,
        page: int = 0,
    ) -> list[Mapping[str, Any]]:
        """Return upcoming music events for an attraction, soonest first."""

        payload = await self.call(
            "/events.json",
            {
                "attractionId": attraction_id,
                "classificationName": "music",
                "sort": "date,asc",
                "size": max(1, int(size)),
                "page": max(0, int(page)),
            },
        )
        if not isinstance(payload, Mapping):
            return []
        embedded = payload.get("_embedded")
        if not isinstance(embedded, Mapping):
            return []
        events = embedded.get("events")
        if not isinstance(events, list):
            return []
        return [event for event in events if isinstance(event, Mapping)]

    async def _get_object(self, endpoint: str) -> Mapping[str, Any]:
        payload = await self.call(endpoint)
        if not isinstance(payload, Mapping):
            raise ProviderError(PROVIDER, f"Unexpected payload for {endpoint}")
        return payload


def first_embedded(payload: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    """Return ``payload._embedded[key][0]`` when present."""

    embedded = payload.get("_embedded")
    if not isinstance(embedded, Mapping):
        return None
    items = embedded.get(key)
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return None


__all__ = ["PROVIDER", "TicketmasterClient", "first_embedded"]
