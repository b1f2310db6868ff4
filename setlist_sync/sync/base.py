"""Shared request, outcome and dependency types for entity sync handlers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from setlist_sync.config import SyncConfig, load_config
from setlist_sync.errors import ProviderError
from setlist_sync.integrations import ProviderClients
from setlist_sync.logging import get_logger
from setlist_sync.logging_events import log_event
from setlist_sync.services.entity_dao import EntityDao
from setlist_sync.utils.time import is_fresh
from setlist_sync.workers import persistence
from setlist_sync.workers.persistence import SyncJobDTO

logger = get_logger(__name__)

Enqueuer = Callable[..., Awaitable[SyncJobDTO]]


class SyncOperation(str, Enum):
    """How an orchestrated task drives a handler."""

    CREATE = "create"
    REFRESH = "refresh"
    EXPAND_RELATIONS = "expand_relations"
    CASCADE_SYNC = "cascade_sync"


def _flag(payload: Mapping[str, Any] | None, *names: str) -> bool:
    if not payload:
        return False
    for name in names:
        value = payload.get(name)
        if isinstance(value, str):
            if value.strip().lower() in {"1", "true", "yes", "on"}:
                return True
        elif value:
            return True
    return False


@dataclass(slots=True)
class SyncRequest:
    """One handler invocation.

    ``force`` ignores the freshness window, ``expand`` runs the cascade even
    when the row is fresh, and ``propagate`` passes ``forceRefresh`` on to
    every cascaded job.
    """

    entity_id: str
    reference_data: Mapping[str, Any] = field(default_factory=dict)
    force: bool = False
    expand: bool = False
    propagate: bool = False
    priority: int = 3

    @classmethod
    def from_job(cls, job: SyncJobDTO) -> SyncRequest:
        reference = dict(job.reference_data or {})
        return cls(
            entity_id=job.entity_id,
            reference_data=reference,
            force=_flag(reference, "forceRefresh", "force"),
            expand=_flag(reference, "expandRelations"),
            propagate=_flag(reference, "cascadeSync"),
            priority=job.priority,
        )

    @classmethod
    def for_operation(
        cls,
        entity_id: str,
        operation: SyncOperation | str,
        *,
        reference_data: Mapping[str, Any] | None = None,
        priority: int = 3,
    ) -> SyncRequest:
        resolved = SyncOperation(operation)
        reference = dict(reference_data or {})
        return cls(
            entity_id=entity_id,
            reference_data=reference,
            force=resolved is SyncOperation.CASCADE_SYNC
            or _flag(reference, "forceRefresh", "force"),
            expand=resolved in {SyncOperation.EXPAND_RELATIONS, SyncOperation.CASCADE_SYNC},
            propagate=resolved is SyncOperation.CASCADE_SYNC,
            priority=priority,
        )

    def ref(self, key: str) -> str | None:
        value = self.reference_data.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @property
    def cascade_priority(self) -> int:
        return self.priority + 1


@dataclass(slots=True)
class SyncOutcome:
    entity_type: str
    internal_id: str | None
    status: str
    record: dict[str, Any] | None = None
    cascaded: list[int] = field(default_factory=list)
    provider_errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "internal_id": self.internal_id,
            "status": self.status,
            "cascaded": list(self.cascaded),
            "provider_errors": list(self.provider_errors),
        }


@dataclass(slots=True)
class SyncDeps:
    """Collaborators injected into every handler."""

    clients: ProviderClients
    dao: EntityDao = field(default_factory=EntityDao)
    config: SyncConfig = field(default_factory=lambda: load_config().sync)
    enqueue: Enqueuer = persistence.enqueue_async

    def is_fresh(self, entity_type: str, record: Mapping[str, Any] | None) -> bool:
        if record is None:
            return False
        return is_fresh(
            record.get("last_synced_at"),
            self.config.freshness_for(entity_type),
            now=self.dao.now(),
        )


class SyncContext:
    """Per-invocation bookkeeping: tolerated provider errors and cascades."""

    def __init__(self, entity_type: str, request: SyncRequest, deps: SyncDeps) -> None:
        self.entity_type = entity_type
        self.request = request
        self.deps = deps
        self.provider_errors: list[str] = []
        self.cascaded: list[int] = []

    async def fetch(self, label: str, call: Awaitable[Any]) -> Any:
        """Await a provider call, recording and swallowing ``ProviderError``."""

        try:
            return await call
        except ProviderError as exc:
            self.provider_errors.append(f"{exc.provider}: {exc.message}")
            log_event(
                logger,
                "sync.provider",
                provider=exc.provider,
                status="error",
                call=label,
                http_status=exc.status_code,
                entity_type=self.entity_type,
                entity_id=self.request.entity_id,
                error=exc.message,
            )
            return None

    async def cascade(
        self,
        entity_type: str,
        entity_id: str | None,
        reference_data: Mapping[str, Any] | None = None,
        *,
        priority: int | None = None,
    ) -> SyncJobDTO | None:
        if not entity_id:
            return None
        payload = dict(reference_data or {})
        if self.request.propagate:
            payload.setdefault("forceRefresh", True)
            payload.setdefault("cascadeSync", True)
        job = await self.deps.enqueue(
            entity_type,
            entity_id,
            payload or None,
            priority=self.request.cascade_priority if priority is None else priority,
        )
        self.cascaded.append(job.id)
        return job

    def outcome(
        self, status: str, record: Mapping[str, Any] | None
    ) -> SyncOutcome:
        internal_id = str(record["id"]) if record and record.get("id") else None
        log_event(
            logger,
            "sync.entity",
            entity_type=self.entity_type,
            entity_id=self.request.entity_id,
            internal_id=internal_id,
            status=status,
            cascaded=len(self.cascaded),
            provider_errors=len(self.provider_errors),
        )
        return SyncOutcome(
            entity_type=self.entity_type,
            internal_id=internal_id,
            status=status,
            record=dict(record) if record else None,
            cascaded=list(self.cascaded),
            provider_errors=list(self.provider_errors),
        )


__all__ = [
    "SyncContext",
    "SyncDeps",
    "SyncOperation",
    "SyncOutcome",
    "SyncRequest",
]
