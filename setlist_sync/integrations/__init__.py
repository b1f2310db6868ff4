"""Rate limited clients for the external catalogs."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from setlist_sync.config import AppConfig, load_config
from setlist_sync.integrations.base import RateLimitedClient, pick_best_image
from setlist_sync.integrations.setlistfm import SetlistFmClient
from setlist_sync.integrations.spotify import SpotifyClient
from setlist_sync.integrations.ticketmaster import TicketmasterClient


@dataclass(slots=True)
class ProviderClients:
    """One long-lived client per provider, shared by every handler."""

    ticketmaster: TicketmasterClient
    spotify: SpotifyClient
    setlistfm: SetlistFmClient


def build_clients(
    config: AppConfig | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderClients:
    resolved = config or load_config()
    policy = resolved.external
    common = {
        "transport": transport,
        "timeout_ms": policy.timeout_ms,
        "max_attempts": max(1, policy.retry_max),
        "backoff_base_ms": policy.backoff_base_ms,
        "jitter_pct": policy.jitter_pct,
    }
    return ProviderClients(
        ticketmaster=TicketmasterClient(
            base_url=resolved.ticketmaster.base_url,
            min_interval_ms=resolved.ticketmaster.min_interval_ms,
            api_key=resolved.ticketmaster.api_key,
            **common,
        ),
        spotify=SpotifyClient(
            base_url=resolved.spotify.base_url,
            min_interval_ms=resolved.spotify.min_interval_ms,
            client_id=resolved.spotify.client_id,
            client_secret=resolved.spotify.client_secret,
            token_url=resolved.spotify.token_url,
            token_refresh_margin_s=resolved.spotify.token_refresh_margin_s,
            market=resolved.spotify.market,
            **common,
        ),
        setlistfm=SetlistFmClient(
            base_url=resolved.setlistfm.base_url,
            min_interval_ms=resolved.setlistfm.min_interval_ms,
            api_key=resolved.setlistfm.api_key,
            **common,
        ),
    )


__all__ = [
    "ProviderClients",
    "RateLimitedClient",
    "SetlistFmClient",
    "SpotifyClient",
    "TicketmasterClient",
    "build_clients",
    "pick_best_image",
]
