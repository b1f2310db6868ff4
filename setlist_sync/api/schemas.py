"""Pydantic request and response bodies for the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EnqueueJobRequest(BaseModel):
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    reference_data: Optional[Dict[str, Any]] = None
    priority: Optional[int] = Field(default=None, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class SyncJobResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    reference_data: Optional[Dict[str, Any]] = None
    status: str
    priority: int
    attempts: int
    max_attempts: int
    last_attempted_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    last_error: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None
    deduplicated: bool = False

    model_config = ConfigDict(from_attributes=True)


class ProcessJobsRequest(BaseModel):
    max_items: Optional[int] = Field(default=None, ge=1, le=100)
    delay_ms: Optional[int] = Field(default=None, ge=0)


class BatchSummaryResponse(BaseModel):
    processed: int
    completed: int
    retrying: int
    failed: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class ReclaimRequest(BaseModel):
    stale_after_s: Optional[int] = Field(default=None, ge=1)


class ReclaimResponse(BaseModel):
    reclaimed: int


class TaskPayload(BaseModel):
    type: str
    id: str
    operation: str = "refresh"
    priority: Union[str, int] = "medium"
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class OrchestrationOptionsPayload(BaseModel):
    track_in_database: Optional[bool] = Field(None, alias="trackInDatabase")
    parallel_limit: Optional[int] = Field(None, alias="parallelLimit", ge=1, le=50)
    retry_failed: Optional[bool] = Field(None, alias="retryFailed")
    dependency_check: Optional[bool] = Field(None, alias="dependencyCheck")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class OrchestrateRequest(BaseModel):
    task: Optional[TaskPayload] = None
    tasks: Optional[List[TaskPayload]] = None
    options: Optional[OrchestrationOptionsPayload] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _require_tasks(self) -> "OrchestrateRequest":
        if self.task is None and not self.tasks:
            raise ValueError("Either task or tasks must be provided")
        return self

    def task_list(self) -> list[dict[str, Any]]:
        items = list(self.tasks or [])
        if self.task is not None:
            items.insert(0, self.task)
        return [item.model_dump() for item in items]


class OrchestrationResponse(BaseModel):
    success: bool
    operation_id: Optional[str] = Field(None, alias="operationId")
    completed_tasks: int = Field(alias="completedTasks")
    failed_tasks: int = Field(alias="failedTasks")
    errors: Optional[List[str]] = None
    message: str

    model_config = ConfigDict(populate_by_name=True)


class VoteRequest(BaseModel):
    target_type: Literal["song", "setlist_song"]
    target_id: str = Field(..., min_length=1)
    voter_key: str = Field(..., min_length=1)


class VoteResponse(BaseModel):
    recorded: bool
    vote_count: int


__all__ = [
    "BatchSummaryResponse",
    "EnqueueJobRequest",
    "OrchestrateRequest",
    "OrchestrationOptionsPayload",
    "OrchestrationResponse",
    "ProcessJobsRequest",
    "ReclaimRequest",
    "ReclaimResponse",
    "SyncJobResponse",
    "TaskPayload",
    "VoteRequest",
    "VoteResponse",
]
