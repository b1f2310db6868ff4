"""Venue sync from the Ticketmaster venue record."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from setlist_sync.errors import NotFoundError
from setlist_sync.integrations import pick_best_image
from setlist_sync.sync.base import SyncContext, SyncDeps, SyncOutcome, SyncRequest
from setlist_sync.sync.merge import FieldMerger

ENTITY_TYPE = "venue"


def _nested(payload: Mapping[str, Any] | None, *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def venue_values(venue: Mapping[str, Any]) -> dict[str, Any]:
    """Map a Ticketmaster venue payload onto venue columns."""

    return {
        "name": venue.get("name"),
        "city": _nested(venue, "city", "name"),
        "state": _nested(venue, "state", "stateCode") or _nested(venue, "state", "name"),
        "country": _nested(venue, "country", "countryCode"),
        "address": _nested(venue, "address", "line1"),
        "postal_code": venue.get("postalCode"),
        "latitude": _as_float(_nested(venue, "location", "latitude")),
        "longitude": _as_float(_nested(venue, "location", "longitude")),
        "url": venue.get("url"),
        "image_url": pick_best_image(venue.get("images")),
    }


async def sync_venue(request: SyncRequest, deps: SyncDeps) -> SyncOutcome:
    ctx = SyncContext(ENTITY_TYPE, request, deps)
    hinted_tm = request.ref("tm_id") or request.ref("ticketmaster_id")
    resolution, existing = await asyncio.to_thread(
        deps.dao.load, ENTITY_TYPE, request.entity_id, {"ticketmaster": hinted_tm}
    )
    if existing is not None and not request.force and deps.is_fresh(ENTITY_TYPE, existing):
        return ctx.outcome("fresh", existing)

    current: dict[str, Any] = dict(existing or {})
    tm_id = hinted_tm or current.get("ticketmaster_id")
    if tm_id is None and resolution.matched_by in {"none", "ticketmaster"}:
        tm_id = request.entity_id

    payload = None
    if tm_id:
        payload = await ctx.fetch("venue", deps.clients.ticketmaster.get_venue(tm_id))
    if payload is None and existing is not None:
        return ctx.outcome("stale", existing)

    fetched = venue_values(payload) if payload else {}
    merger = FieldMerger(ENTITY_TYPE, deps.config.precedence_for, current)
    name = merger.pick(
        "name", ticketmaster=fetched.get("name"), setlistfm=request.ref("name")
    )
    if not name:
        raise NotFoundError(
            "Venue could not be resolved at any provider.",
            entity_type=ENTITY_TYPE,
            entity_id=request.entity_id,
        )
    values = {key: value for key, value in fetched.items() if value is not None}
    values["name"] = name
    values["city"] = merger.pick(
        "city", ticketmaster=fetched.get("city"), setlistfm=request.ref("city")
    )
    record = await asyncio.to_thread(
        deps.dao.upsert,
        ENTITY_TYPE,
        internal_id=current.get("id"),
        identifiers={
            "ticketmaster_id": tm_id if payload else None,
            "setlist_fm_id": request.ref("setlist_fm_id"),
        },
        values=values,
    )
    return ctx.outcome("synced", record)


__all__ = ["sync_venue", "venue_values"]
