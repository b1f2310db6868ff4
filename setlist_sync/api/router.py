"""Queue control, orchestration and vote endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request, status

from setlist_sync.api.schemas import (
    BatchSummaryResponse,
    EnqueueJobRequest,
    OrchestrateRequest,
    OrchestrationResponse,
    ProcessJobsRequest,
    ReclaimRequest,
    ReclaimResponse,
    SyncJobResponse,
    VoteRequest,
    VoteResponse,
)
from setlist_sync.orchestrator.batch import Orchestrator
from setlist_sync.services.votes import record_vote_async
from setlist_sync.workers import persistence
from setlist_sync.workers.queue_worker import SyncQueueWorker

router = APIRouter(tags=["Sync"])


def get_worker(request: Request) -> SyncQueueWorker:
    return request.app.state.sync_worker


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@router.post(
    "/sync/jobs",
    response_model=SyncJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_job(payload: EnqueueJobRequest) -> SyncJobResponse:
    job = await persistence.enqueue_async(
        payload.entity_type,
        payload.entity_id,
        payload.reference_data,
        priority=payload.priority,
        max_attempts=payload.max_attempts,
    )
    data = asdict(job)
    data["status"] = job.status.value
    return SyncJobResponse.model_validate(data)


@router.post("/sync/jobs/process", response_model=BatchSummaryResponse)
async def process_jobs(
    payload: ProcessJobsRequest | None = None,
    worker: SyncQueueWorker = Depends(get_worker),
) -> BatchSummaryResponse:
    body = payload or ProcessJobsRequest()
    delay_s = body.delay_ms / 1000.0 if body.delay_ms is not None else None
    summary = await worker.process_batch(max_items=body.max_items, delay_s=delay_s)
    return BatchSummaryResponse(**summary.as_dict())


@router.post("/sync/jobs/reclaim", response_model=ReclaimResponse)
async def reclaim_jobs(payload: ReclaimRequest | None = None) -> ReclaimResponse:
    body = payload or ReclaimRequest()
    reclaimed = await persistence.reclaim_stale_async(stale_after_s=body.stale_after_s)
    return ReclaimResponse(reclaimed=reclaimed)


@router.post(
    "/sync/orchestrate",
    response_model=OrchestrationResponse,
    response_model_exclude_unset=True,
)
async def orchestrate(
    payload: OrchestrateRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> OrchestrationResponse:
    options = payload.options.model_dump(exclude_none=True) if payload.options else None
    result = await orchestrator.run(payload.task_list(), options)
    return OrchestrationResponse(**result.as_dict())


@router.post("/votes", response_model=VoteResponse)
async def cast_vote(payload: VoteRequest) -> VoteResponse:
    result = await record_vote_async(payload.target_type, payload.target_id, payload.voter_key)
    return VoteResponse(recorded=result.recorded, vote_count=result.vote_count)


__all__ = ["router"]
