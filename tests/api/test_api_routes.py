from __future__ import annotations

from collections.abc import Iterator

from fastapi.testclient import TestClient
import pytest

from setlist_sync.api import create_app
from setlist_sync.config import ENTITY_TYPES
from setlist_sync.services.entity_dao import EntityDao
from setlist_sync.sync.base import SyncOutcome, SyncRequest


class _RecordingHandlers:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def mapping(self) -> dict:
        return {entity_type: self._bind(entity_type) for entity_type in ENTITY_TYPES}

    def _bind(self, entity_type: str):
        async def _handler(request: SyncRequest) -> SyncOutcome:
            self.calls.append((entity_type, request.entity_id))
            return SyncOutcome(entity_type, f"internal-{request.entity_id}", "synced")

        return _handler


@pytest.fixture
def handlers() -> _RecordingHandlers:
    return _RecordingHandlers()


@pytest.fixture
def client(handlers: _RecordingHandlers) -> Iterator[TestClient]:
    app = create_app(handlers=handlers.mapping())
    with TestClient(app) as test_client:
        yield test_client


def test_enqueue_returns_accepted_and_folds_duplicates(client: TestClient) -> None:
    response = client.post(
        "/sync/jobs",
        json={"entity_type": "artist", "entity_id": "K1", "priority": 5},
    )
    assert response.status_code == 202
    first = response.json()
    assert first["status"] == "pending"
    assert first["priority"] == 5
    assert first["deduplicated"] is False

    again = client.post(
        "/sync/jobs",
        json={"entity_type": "artist", "entity_id": "K1", "priority": 2},
    ).json()
    assert again["id"] == first["id"]
    assert again["priority"] == 2
    assert again["deduplicated"] is True


def test_enqueue_rejects_unknown_entity_type(client: TestClient) -> None:
    response = client.post("/sync/jobs", json={"entity_type": "band", "entity_id": "K1"})

    assert response.status_code == 400
    payload = response.json()
    assert payload["ok"] is False
    assert payload["error"]["code"] == "VALIDATION_ERROR"
    assert response.headers.get("X-Debug-Id")


def test_process_runs_queued_jobs(client: TestClient, handlers: _RecordingHandlers) -> None:
    client.post("/sync/jobs", json={"entity_type": "venue", "entity_id": "V1"})
    client.post("/sync/jobs", json={"entity_type": "show", "entity_id": "E1", "priority": 0})

    response = client.post("/sync/jobs/process", json={"max_items": 5, "delay_ms": 0})

    assert response.status_code == 200
    assert response.json() == {
        "processed": 2,
        "completed": 2,
        "retrying": 0,
        "failed": 0,
        "errors": [],
    }
    assert handlers.calls == [("show", "E1"), ("venue", "V1")]


def test_reclaim_reports_count(client: TestClient) -> None:
    response = client.post("/sync/jobs/reclaim", json={"stale_after_s": 60})

    assert response.status_code == 200
    assert response.json() == {"reclaimed": 0}


def test_orchestrate_runs_tasks(client: TestClient, handlers: _RecordingHandlers) -> None:
    response = client.post(
        "/sync/orchestrate",
        json={
            "tasks": [
                {"type": "venue", "id": "V1", "priority": "low"},
                {"type": "artist", "id": "K1", "priority": "high", "operation": "cascade_sync"},
            ],
            "options": {"parallel_limit": 1, "track_in_database": False},
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["completedTasks"] == 2
    assert payload["failedTasks"] == 0
    assert payload["operationId"] is None
    assert "errors" not in payload
    assert payload["message"] == "Completed 2 tasks with 0 failures"
    assert handlers.calls == [("artist", "K1"), ("venue", "V1")]


def test_orchestrate_accepts_camel_case_options(
    client: TestClient, handlers: _RecordingHandlers
) -> None:
    response = client.post(
        "/sync/orchestrate",
        json={
            "task": {"type": "show", "id": "E1"},
            "options": {"trackInDatabase": False, "parallelLimit": 1, "retryFailed": False},
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "operationId": None,
        "completedTasks": 1,
        "failedTasks": 0,
        "message": "Completed 1 tasks with 0 failures",
    }
    assert handlers.calls == [("show", "E1")]

    tracked = client.post("/sync/orchestrate", json={"task": {"type": "show", "id": "E2"}})
    assert tracked.json()["operationId"]


def test_orchestrate_rejects_unknown_option_keys(client: TestClient) -> None:
    response = client.post(
        "/sync/orchestrate",
        json={"task": {"type": "show", "id": "E1"}, "options": {"parallelLimt": 1}},
    )

    assert response.status_code == 422


def test_orchestrate_validation_errors(client: TestClient) -> None:
    missing = client.post("/sync/orchestrate", json={})
    assert missing.status_code == 422

    invalid = client.post("/sync/orchestrate", json={"task": {"type": "band", "id": "x"}})
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"


def test_votes_are_idempotent_per_voter(client: TestClient) -> None:
    dao = EntityDao()
    artist = dao.upsert(
        "artist", internal_id=None, identifiers={"spotify_id": "sp1"}, values={"name": "The Band"}
    )
    (song_id,) = dao.upsert_songs(artist["id"], [{"spotify_id": "t1", "name": "Alpha"}])
    body = {"target_type": "song", "target_id": song_id, "voter_key": "voter-1"}

    first = client.post("/votes", json=body)
    second = client.post("/votes", json=body)

    assert first.json() == {"recorded": True, "vote_count": 1}
    assert second.json() == {"recorded": False, "vote_count": 1}


def test_vote_for_missing_target_returns_not_found(client: TestClient) -> None:
    response = client.post(
        "/votes", json={"target_type": "song", "target_id": "nope", "voter_key": "voter-1"}
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
