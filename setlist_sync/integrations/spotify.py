"""Spotify Web API client using the client-credentials flow."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

import httpx

from setlist_sync.errors import ProviderError
from setlist_sync.integrations.base import RateLimitedClient
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event

logger = get_logger(__name__)

PROVIDER = "spotify"
_PAGE_LIMIT = 50


@dataclass(slots=True)
class SpotifyToken:
    access_token: str
    expires_at: float


@dataclass(slots=True)
class SpotifyClient(RateLimitedClient):
    """Music metadata catalog.

    The bearer token is cached on the instance together with its expiry
    and refreshed ``token_refresh_margin_s`` seconds before it lapses. A
    401 invalidates the cached token and the call is retried exactly once
    with a fresh one.
    """

    provider: str = PROVIDER
    base_url: str = "https://api.spotify.com/v1"
    client_id: str | None = None
    client_secret: str | None = None
    token_url: str = "https://accounts.spotify.com/api/token"
    token_refresh_margin_s: int = 60
    market: str = "US"
    _token: SpotifyToken | None = field(default=None, init=False, repr=False)
    _token_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    token_fetches: int = field(default=0, init=False)

    async def call(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> Any:
        response = await self._authorised_request(
            method, endpoint, params=params, headers=headers, data=data
        )
        return self._decode_json(response)

    async def _authorised_request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, Any] | None = None,
        url: str | None = None,
    ) -> httpx.Response:
        try:
            return await self._request(
                method, endpoint, params=params, headers=headers, data=data, url=url
            )
        except ProviderError as exc:
            if exc.status_code != httpx.codes.UNAUTHORIZED:
                raise
        self.invalidate_token()
        return await self._request(
            method, endpoint, params=params, headers=headers, data=data, url=url
        )

    def invalidate_token(self) -> None:
        self._token = None

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"Bearer {token}"}

    async def _ensure_token(self) -> str:
        async with self._token_lock:
            token = self._token
            margin = max(0, int(self.token_refresh_margin_s))
            if token is not None and self.clock() < token.expires_at - margin:
                return token.access_token
            self._token = await self._fetch_token()
            return self._token.access_token

    async def _fetch_token(self) -> SpotifyToken:
        if not self.client_id or not self.client_secret:
            raise ProviderError(PROVIDER, "Spotify client credentials are not configured")
        credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        response = await self._request(
            "POST",
            "/api/token",
            url=self.token_url,
            headers={
                "Authorization": "Basic " + base64.b64encode(credentials).decode("ascii"),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data={"grant_type": "client_credentials"},
            authenticate=False,
        )
        payload = self._decode_json(response)
        access_token = payload.get("access_token") if isinstance(payload, Mapping) else None
        if not isinstance(access_token, str) or not access_token:
            raise ProviderError(PROVIDER, "Spotify token response did not include a token")
        try:
            expires_in = int(payload.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600
        self.token_fetches += 1
        log_event(
            logger,
            "sync.provider",
            provider=PROVIDER,
            status="token_refreshed",
            expires_in=expires_in,
        )
        return SpotifyToken(access_token=access_token, expires_at=self.clock() + expires_in)

    async def get_artist(self, spotify_id: str) -> Mapping[str, Any]:
        payload = await self.call(f"/artists/{spotify_id}")
        if not isinstance(payload, Mapping):
            raise ProviderError(PROVIDER, "Unexpected artist payload")
        return payload

    async def search_artist(self, name: str) -> Mapping[str, Any] | None:
        """Return the first artist matching ``name`` or ``None``."""

        payload = await self.call("/search", {"q": name, "type": "artist", "limit": 1})
        if not isinstance(payload, Mapping):
            return None
        artists = payload.get("artists")
        items = artists.get("items") if isinstance(artists, Mapping) else None
        if isinstance(items, list) and items and isinstance(items[0], Mapping):
            return items[0]
        return None

    async def get_artist_top_tracks(
        self, spotify_id: str, *, market: str | None = None
    ) -> list[Mapping[str, Any]]:
        payload = await self.call(
            f"/artists/{spotify_id}/top-tracks", {"market": market or self.market}
        )
        tracks = payload.get("tracks") if isinstance(payload, Mapping) else None
        if not isinstance(tracks, list):
            return []
        return [track for track in tracks if isinstance(track, Mapping)]

    async def get_track(self, track_id: str) -> Mapping[str, Any]:
        payload = await self.call(f"/tracks/{track_id}")
        if not isinstance(payload, Mapping):
            raise ProviderError(PROVIDER, "Unexpected track payload")
        return payload

    async def get_artist_albums(self, spotify_id: str) -> list[Mapping[str, Any]]:
        """Return every album and single of the artist, following ``next`` links."""

        return [
            album
            async for album in self._paginate(
                f"/artists/{spotify_id}/albums",
                {"include_groups": "album,single", "limit": _PAGE_LIMIT},
            )
        ]

    async def get_album_tracks(self, album_id: str) -> list[Mapping[str, Any]]:
        return [
            track
            async for track in self._paginate(
                f"/albums/{album_id}/tracks", {"limit": _PAGE_LIMIT}
            )
        ]

    async def _paginate(
        self, endpoint: str, params: Mapping[str, Any]
    ) -> AsyncIterator[Mapping[str, Any]]:
        response = await self._authorised_request("GET", endpoint, params=params)
        while True:
            payload = self._decode_json(response)
            if not isinstance(payload, Mapping):
                return
            for item in payload.get("items") or []:
                if isinstance(item, Mapping):
                    yield item
            next_url = payload.get("next")
            if not isinstance(next_url, str) or not next_url:
                return
            response = await self._authorised_request("GET", endpoint, url=next_url)


__all__ = ["PROVIDER", "SpotifyClient", "SpotifyToken"]
