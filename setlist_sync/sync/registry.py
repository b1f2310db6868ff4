"""Entity type to handler mapping shared by the queue worker and orchestrator."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from functools import partial

from setlist_sync.errors import ValidationAppError
from setlist_sync.sync.artist import sync_artist
from setlist_sync.sync.base import SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.sync.setlist import sync_setlist
from setlist_sync.sync.show import sync_show
from setlist_sync.sync.song import sync_song
from setlist_sync.sync.venue import sync_venue

Handler = Callable[[SyncRequest, SyncDeps], Awaitable[SyncOutcome]]
BoundHandler = Callable[[SyncRequest], Awaitable[SyncOutcome]]

HANDLERS: Mapping[str, Handler] = {
    "artist": sync_artist,
    "venue": sync_venue,
    "show": sync_show,
    "setlist": sync_setlist,
    "song": sync_song,
}


def build_handlers(
    deps: SyncDeps,
    overrides: Mapping[str, Handler] | None = None,
) -> dict[str, BoundHandler]:
    """Bind every handler to ``deps``; ``overrides`` replace individual types."""

    merged = dict(HANDLERS)
    if overrides:
        merged.update(overrides)
    return {entity_type: partial(handler, deps=deps) for entity_type, handler in merged.items()}


def handler_for(handlers: Mapping[str, BoundHandler], entity_type: str) -> BoundHandler:
    try:
        return handlers[entity_type]
    except KeyError:
        raise ValidationAppError(
            f"No sync handler registered for {entity_type!r}",
            meta={"entity_type": entity_type, "allowed": sorted(handlers)},
        ) from None


__all__ = ["BoundHandler", "HANDLERS", "Handler", "build_handlers", "handler_for"]
