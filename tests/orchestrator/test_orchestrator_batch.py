from __future__ import annotations

from collections.abc import Mapping

import pytest
from sqlalchemy.exc import OperationalError

from setlist_sync.config import ENTITY_TYPES, OrchestratorConfig
from setlist_sync.db import init_db
from setlist_sync.errors import NotFoundError, ValidationAppError
from setlist_sync.orchestrator import batch, operations
from setlist_sync.orchestrator.batch import (
    OrchestrationOptions,
    Orchestrator,
    SyncTask,
    validate_task,
    validate_tasks,
)
from setlist_sync.sync.base import SyncOutcome, SyncRequest


class _Handlers:
    """Record handler invocations and fail configured ids a number of times."""

    def __init__(
        self,
        failures: Mapping[str, int] | None = None,
        invalid: set[str] | None = None,
    ) -> None:
        self.calls: list[tuple[str, SyncRequest]] = []
        self.remaining_failures = dict(failures or {})
        self.invalid = set(invalid or ())

    def mapping(self) -> dict:
        return {entity_type: self._bind(entity_type) for entity_type in ENTITY_TYPES}

    def _bind(self, entity_type: str):
        async def _handler(request: SyncRequest) -> SyncOutcome:
            self.calls.append((entity_type, request))
            if request.entity_id in self.invalid:
                raise ValidationAppError("malformed reference data")
            if self.remaining_failures.get(request.entity_id, 0) > 0:
                self.remaining_failures[request.entity_id] -= 1
                raise NotFoundError("gone", entity_type=entity_type, entity_id=request.entity_id)
            return SyncOutcome(entity_type, f"internal-{request.entity_id}", "synced")

        return _handler


def _orchestrator(handlers: _Handlers, *, parallel_limit: int = 5) -> Orchestrator:
    config = OrchestratorConfig(
        parallel_limit=parallel_limit, retry_failed=True, track_in_database=True
    )
    return Orchestrator(handlers.mapping(), config=config)


@pytest.mark.asyncio
async def test_tasks_run_in_priority_order_with_queue_priorities() -> None:
    init_db()
    handlers = _Handlers()
    orchestrator = _orchestrator(handlers, parallel_limit=1)

    result = await orchestrator.run(
        [
            batch.sync_venue("V1"),
            batch.sync_artist("K1"),
            batch.sync_show("E1"),
            {"type": "setlist", "id": "s1", "priority": "medium"},
            batch.sync_song("t1"),
        ]
    )

    assert result.success is True
    assert result.completed_tasks == 5
    assert result.failed_tasks == 0
    assert result.message == "Completed 5 tasks with 0 failures"
    assert [(kind, request.entity_id) for kind, request in handlers.calls] == [
        ("artist", "K1"),
        ("show", "E1"),
        ("setlist", "s1"),
        ("venue", "V1"),
        ("song", "t1"),
    ]
    assert [request.priority for _kind, request in handlers.calls] == [1, 2, 2, 3, 3]
    assert "errors" not in result.as_dict()


@pytest.mark.asyncio
async def test_operations_map_onto_request_flags() -> None:
    init_db()
    handlers = _Handlers()
    orchestrator = _orchestrator(handlers)

    await orchestrator.run(
        [
            batch.sync_artist("A1", "create"),
            batch.sync_artist("A2", "refresh"),
            batch.sync_artist("A3", "expand_relations"),
            batch.sync_artist("A4", "cascade_sync"),
        ]
    )

    flags = {
        request.entity_id: (request.force, request.expand, request.propagate)
        for _kind, request in handlers.calls
    }
    assert flags == {
        "A1": (False, False, False),
        "A2": (False, False, False),
        "A3": (False, True, False),
        "A4": (True, True, True),
    }


@pytest.mark.asyncio
async def test_failed_task_is_retried_once_and_each_attempt_recorded() -> None:
    init_db()
    handlers = _Handlers(failures={"E-flaky": 1, "E-dead": 5})
    orchestrator = _orchestrator(handlers)

    result = await orchestrator.run(
        [batch.sync_show("E-flaky"), batch.sync_show("E-dead"), batch.sync_artist("K1")]
    )

    assert result.success is False
    assert result.completed_tasks == 2
    assert result.failed_tasks == 1
    assert result.errors == ["show E-dead: gone"]
    assert result.message == "Completed 2 tasks with 1 failures"
    assert [request.entity_id for _kind, request in handlers.calls].count("E-dead") == 2

    parent = [row for row in operations.list_operations() if row["parent_id"] is None]
    assert len(parent) == 1
    assert parent[0]["id"] == result.operation_id
    assert parent[0]["task"] == "orchestration"
    assert parent[0]["entity_type"] == "batch"
    assert parent[0]["entity_id"] == "multiple"
    assert parent[0]["status"] == "completed_with_errors"
    assert parent[0]["result"] == {"completed_tasks": 2, "failed_tasks": 1}

    children = operations.list_operations(result.operation_id)
    by_entity: dict[str, list[str]] = {}
    for row in children:
        by_entity.setdefault(row["entity_id"], []).append(row["status"])
    assert sorted(by_entity["E-flaky"]) == ["completed", "failed"]
    assert by_entity["E-dead"] == ["failed", "failed"]
    assert by_entity["K1"] == ["completed"]
    assert all(row["task"] == "refresh" for row in children)


@pytest.mark.asyncio
async def test_validation_failures_are_not_retried() -> None:
    init_db()
    handlers = _Handlers(invalid={"E-bad"})
    orchestrator = _orchestrator(handlers)

    result = await orchestrator.run(batch.sync_show("E-bad"))

    assert result.success is False
    assert result.failed_tasks == 1
    assert result.errors == ["show E-bad: malformed reference data"]
    assert len(handlers.calls) == 1
    children = operations.list_operations(result.operation_id)
    assert [row["status"] for row in children] == ["failed"]


@pytest.mark.asyncio
async def test_retry_can_be_disabled_and_tracking_skipped() -> None:
    init_db()
    handlers = _Handlers(failures={"E-dead": 5})
    orchestrator = _orchestrator(handlers)

    result = await orchestrator.run(
        batch.sync_show("E-dead"),
        {"retry_failed": False, "track_in_database": False},
    )

    assert result.failed_tasks == 1
    assert result.operation_id is None
    assert len(handlers.calls) == 1
    assert operations.list_operations() == []


@pytest.mark.asyncio
async def test_tracking_failures_do_not_abort_the_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    init_db()

    def _broken(**_kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(operations, "start_operation", _broken)
    handlers = _Handlers()
    orchestrator = _orchestrator(handlers)

    result = await orchestrator.run([batch.sync_artist("K1"), batch.sync_venue("V1")])

    assert result.success is True
    assert result.completed_tasks == 2
    assert result.operation_id is None


@pytest.mark.asyncio
async def test_missing_handler_counts_as_failure() -> None:
    init_db()
    handlers = _Handlers()
    mapping = handlers.mapping()
    mapping.pop("song")
    orchestrator = Orchestrator(
        mapping,
        config=OrchestratorConfig(parallel_limit=2, retry_failed=False, track_in_database=False),
    )

    result = await orchestrator.run([batch.sync_song("t1")])

    assert result.failed_tasks == 1
    assert result.errors[0].startswith("song t1: No sync handler registered")


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "band", "id": "K1"},
        {"type": "artist", "id": "  "},
        {"type": "artist", "id": "K1", "operation": "delete"},
        {"type": "artist", "id": "K1", "priority": "urgent"},
        {"type": "artist", "id": "K1", "priority": True},
        {"type": "artist", "id": "K1", "priority": -1},
        {"type": "artist", "id": "K1", "payload": ["not", "a", "mapping"]},
        "artist:K1",
    ],
)
def test_invalid_tasks_are_rejected(raw) -> None:
    with pytest.raises(ValidationAppError):
        validate_task(raw)


def test_empty_batch_is_rejected() -> None:
    with pytest.raises(ValidationAppError):
        validate_tasks([])


def test_task_normalisation_and_integer_priority() -> None:
    task = validate_task({"type": " Artist ", "id": " K1 ", "operation": "CREATE", "priority": 7})

    assert task == SyncTask(type="artist", id="K1", operation="create", priority=7)
    assert task.rank == 7
    assert task.queue_priority == 0
    assert validate_task({"type": "venue", "id": "V1"}).priority == "medium"


def test_builders_assign_default_priorities() -> None:
    assert batch.sync_artist("K1").priority == "high"
    assert batch.sync_show("E1").priority == "medium"
    assert batch.sync_venue("V1").priority == "low"
    assert batch.sync_setlist("s1").priority == "medium"
    assert batch.sync_song("t1", "create") == SyncTask(
        type="song", id="t1", operation="create", priority="low"
    )


def test_options_layer_overrides_on_config() -> None:
    config = OrchestratorConfig(parallel_limit=5, retry_failed=True, track_in_database=True)

    options = OrchestrationOptions.from_config(
        config, {"parallel_limit": 0, "retry_failed": None, "dependency_check": False}
    )

    assert options == OrchestrationOptions(
        track_in_database=True, parallel_limit=1, retry_failed=True, dependency_check=False
    )
